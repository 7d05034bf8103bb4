"""Image file → encode once → click prompts → mask, cutout and text-behind composite.

Each object is a list of clicks in original image pixels. Clicks of one object
are additive (each refines the previous mask); every new object starts from
scratch. Object masks are merged into a single selection.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from textbehind.config import SegmentationConfig
from textbehind.engines.base import SupportsInference
from textbehind.segmentation.protocol import (
    DecodeMaskRequest,
    DecodeMaskResponse,
    EncodeImageRequest,
    EncodeImageResponse,
    ErrorResponse,
    InitializeRequest,
    InitializeResponse,
    ResetMaskRequest,
    ResetResponse,
    Response,
    StatsRequest,
    StatsResponse,
)
from textbehind.segmentation.worker import SegmentationWorker
from textbehind.vision.codec import (
    cutout,
    decode_mask_tensor,
    mask_buffer_to_tensor,
    merge_alpha_buffers,
    resize_alpha_buffer,
)
from textbehind.vision.geometry import map_pointer_to_model_space
from textbehind.vision.image import ensure_dir, pad_to_square, read_image, save_rgba, to_rgba_array
from textbehind.vision.types import Box, Dimensions, DisplayRect, Point, PointLabel
from textbehind.vision.vis import TextLayer, composite_text_behind, draw_mask_border, overlay_mask

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class ClickToMaskRun:
    """Run configuration for one image."""

    image_path: Path
    outdir: Path
    objects: list[list[tuple[float, float]]]
    text_layers: list[TextLayer] = field(default_factory=list)
    refine_merged: bool = False
    overwrite: bool = False
    verbose: bool = False


class PipelineError(RuntimeError):
    """A worker request ended with an error response."""

    def __init__(self, response: ErrorResponse) -> None:
        super().__init__(f"{response.operation} failed: {response.status} ({response.detail})")
        self.response = response


def _expect(resp: Response, kind: type) -> Any:
    if isinstance(resp, ErrorResponse):
        raise PipelineError(resp)
    if not isinstance(resp, kind):
        raise RuntimeError(f"Unexpected response {resp.type!r}, wanted {kind.__name__}")
    return resp


def image_point_to_model(
    xy: tuple[float, float],
    placement: Box,
    square_side: int,
    model: Dimensions,
) -> Point:
    """Map a click in original image pixels to model input space."""
    x, y = xy
    ox, oy, _, _ = placement.as_int()
    return map_pointer_to_model_space(
        (x + ox, y + oy),
        DisplayRect(left=0.0, top=0.0, width=float(square_side), height=float(square_side)),
        model,
        PointLabel.POSITIVE,
    )


def _full_res_mask(
    mask_rgba: np.ndarray, cfg: SegmentationConfig, placement: Box, side: int, size: tuple[int, int]
) -> np.ndarray:
    """Upscale a mask-resolution buffer to the padded square and crop the original image area."""
    square = resize_alpha_buffer(mask_rgba, cfg.mask_dims, Dimensions(w=side, h=side))
    x, y, _, _ = placement.as_int()
    w, h = size
    return square[y : y + h, x : x + w]


def run_click_to_mask(
    cfg: ClickToMaskRun,
    *,
    engine: SupportsInference,
    seg_config: SegmentationConfig | None = None,
    timeout_s: float | None = 600.0,
) -> dict[str, Any]:
    """Segment the clicked objects on one image and write outputs.

    Outputs (under `cfg.outdir`):
      - `mask.png`: merged selection at original resolution
      - `cutout.png`: the selected object on a transparent background
      - `overlay.png`: image with mask highlight and dashed border
      - `composite.png`: text layers drawn behind the object (if any)
      - `final.json`: per-object scores and timings

    Returns:
        The dict that is written to `final.json`.
    """
    if cfg.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    if not cfg.objects or any(not clicks for clicks in cfg.objects):
        raise ValueError("Every object needs at least one click.")

    ensure_dir(cfg.outdir)
    final_json = cfg.outdir / "final.json"
    if final_json.exists() and not cfg.overwrite:
        return json.loads(final_json.read_text(encoding="utf-8"))

    seg = seg_config or SegmentationConfig()
    img = read_image(cfg.image_path)
    w, h = img.size
    square, placement = pad_to_square(img)
    side = square.size[0]
    LOG.info(
        "Pipeline start: image=%s size=%sx%s objects=%d outdir=%s",
        cfg.image_path,
        w,
        h,
        len(cfg.objects),
        cfg.outdir,
    )

    md = seg.mask_dims
    objects_out: list[dict[str, Any]] = []
    masks: list[np.ndarray] = []
    with SegmentationWorker(engine, seg) as worker:

        def call(req: Any, kind: type) -> Any:
            return _expect(worker.call(req, timeout=timeout_s), kind)

        init = call(InitializeRequest(request_id=worker.next_request_id()), InitializeResponse)
        enc = call(
            EncodeImageRequest(request_id=worker.next_request_id(), image=to_rgba_array(square)),
            EncodeImageResponse,
        )

        all_points: list[Point] = []
        for i, clicks in enumerate(cfg.objects):
            call(ResetMaskRequest(request_id=worker.next_request_id()), ResetResponse)
            points: list[Point] = []
            for xy in clicks:
                points.append(image_point_to_model(xy, placement, side, seg.input_dims))
                dec = call(
                    DecodeMaskRequest(request_id=worker.next_request_id(), prompts=tuple(points)),
                    DecodeMaskResponse,
                )
            all_points.extend(points)
            masks.append(
                decode_mask_tensor(
                    dec.mask, md.w, md.h, threshold=seg.mask_threshold, color=seg.highlight_color
                )
            )
            objects_out.append(
                {
                    "index": i,
                    "clicks": [list(map(float, xy)) for xy in clicks],
                    "scores": [float(s) for s in dec.scores],
                    "best_index": int(dec.best_index),
                    "duration_ms": float(dec.duration_ms),
                }
            )

        merged = merge_alpha_buffers(masks)
        if cfg.refine_merged and len(masks) > 1:
            dec = call(
                DecodeMaskRequest(
                    request_id=worker.next_request_id(),
                    prompts=tuple(all_points),
                    prior_mask=mask_buffer_to_tensor(merged, md),
                ),
                DecodeMaskResponse,
            )
            refined = decode_mask_tensor(
                dec.mask, md.w, md.h, threshold=seg.mask_threshold, color=seg.highlight_color
            )
            merged = merge_alpha_buffers([merged, refined])

        stats = call(StatsRequest(request_id=worker.next_request_id()), StatsResponse).metrics

    full = _full_res_mask(merged, seg, placement, side, (w, h))
    save_rgba(full, cfg.outdir / "mask.png")
    save_rgba(cutout(to_rgba_array(img), full), cfg.outdir / "cutout.png")
    draw_mask_border(overlay_mask(img, full), full, color=seg.highlight_color).save(
        cfg.outdir / "overlay.png"
    )
    if cfg.text_layers:
        composite_text_behind(img, full, list(cfg.text_layers)).save(cfg.outdir / "composite.png")

    payload: dict[str, Any] = {
        "image": str(cfg.image_path),
        "image_w": int(w),
        "image_h": int(h),
        "device": init.device.device,
        "encode_ms": float(enc.duration_ms),
        "objects": objects_out,
        "stats": {
            "encode_count": stats.encode_count,
            "decode_count": stats.decode_count,
            "last_operation": stats.last_operation,
            "last_duration_ms": stats.last_duration_ms,
        },
    }
    final_json.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return payload
