"""Image I/O and square padding for the segmentation pipeline."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from textbehind.vision.geometry import compute_letterbox
from textbehind.vision.types import Box, Dimensions


def ensure_dir(p: Path) -> None:
    """Create `p` if it doesn't exist."""
    p.mkdir(parents=True, exist_ok=True)


def read_image(path: Path) -> Image.Image:
    """Read an image from disk and convert it to RGBA."""
    return Image.open(path).convert("RGBA")


def pad_to_square(img: Image.Image) -> tuple[Image.Image, Box]:
    """Pad `img` to a `max(w, h)` square, centered, with transparent borders.

    Returns:
        The square image and the placement of the original inside it.
    """
    w, h = img.size
    side = max(w, h)
    box = compute_letterbox(Dimensions(w=w, h=h), Dimensions(w=side, h=side))
    x, y, bw, bh = box.as_int()
    canvas = Image.new("RGBA", (side, side), color=(0, 0, 0, 0))
    src = img.convert("RGBA")
    if (bw, bh) != (w, h):
        src = src.resize((bw, bh), Image.Resampling.BILINEAR)
    canvas.paste(src, (x, y))
    return canvas, box


def to_rgba_array(img: Image.Image) -> np.ndarray:
    """Return the `(H, W, 4)` uint8 pixel buffer of `img`."""
    return np.array(img.convert("RGBA"), dtype=np.uint8)


def save_rgba(pixels: np.ndarray, out_path: Path) -> None:
    """Save an RGBA pixel buffer as PNG."""
    Image.fromarray(np.asarray(pixels, dtype=np.uint8)).save(out_path)
