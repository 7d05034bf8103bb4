"""Coordinate-space conversions and box fitting."""

from __future__ import annotations

import numpy as np

from textbehind.segmentation.errors import InvalidDimensions
from textbehind.vision.types import Box, Dimensions, DisplayRect, Point, PointLabel


def _check_dims(d: Dimensions, what: str) -> None:
    if not d.is_valid():
        raise InvalidDimensions(f"{what} must be positive integers, got {d.w}x{d.h}")


def compute_letterbox(source: Dimensions, target: Dimensions) -> Box:
    """Fit `source` inside `target` isotropically, centered on the free axis."""
    _check_dims(source, "source dimensions")
    _check_dims(target, "target dimensions")
    scale = min(target.w / source.w, target.h / source.h)
    if target.w / source.w <= target.h / source.h:
        # Width is the limiting axis.
        w = float(target.w)
        h = min(float(target.h), source.h * scale)
    else:
        h = float(target.h)
        w = min(float(target.w), source.w * scale)
    return Box(x=(target.w - w) / 2.0, y=(target.h - h) / 2.0, w=w, h=h)


def map_pointer_to_model_space(
    pointer: tuple[float, float],
    display: DisplayRect,
    model: Dimensions,
    label: PointLabel = PointLabel.POSITIVE,
) -> Point:
    """Map on-screen pointer coordinates to model input coordinates."""
    if display.width <= 0 or display.height <= 0:
        raise InvalidDimensions(
            f"display rect must be non-degenerate, got {display.width}x{display.height}"
        )
    _check_dims(model, "model dimensions")
    px, py = pointer
    sx = model.w / display.width
    sy = model.h / display.height
    return Point(x=(px - display.left) * sx, y=(py - display.top) * sy, label=label)


def map_model_to_display(
    point: Point, display: DisplayRect, model: Dimensions
) -> tuple[float, float]:
    """Inverse of `map_pointer_to_model_space`."""
    _check_dims(model, "model dimensions")
    return (
        display.left + point.x * display.width / model.w,
        display.top + point.y * display.height / model.h,
    )


def mask_bounds(alpha: np.ndarray) -> tuple[int, int, int, int] | None:
    """Tightest (x1, y1, x2, y2) box around non-zero alpha, exclusive max."""
    ys, xs = np.where(alpha > 0)
    if xs.size == 0 or ys.size == 0:
        return None
    return int(xs.min()), int(ys.min()), int(xs.max() + 1), int(ys.max() + 1)
