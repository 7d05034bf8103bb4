"""Rendering helpers: mask overlay, selection border and text-behind composite."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageFont

from textbehind.vision.codec import cutout
from textbehind.vision.geometry import mask_bounds


@dataclass(frozen=True)
class TextLayer:
    """Text drawn behind the extracted object.

    Attributes:
        text: Text content.
        x, y: Top-left position in image pixels.
        font_size: Font size in pixels.
        color: RGBA fill color.
        font_path: Optional TrueType font file; falls back to DejaVuSans.
        opacity: Multiplier in [0, 1] applied to the whole layer.
        stroke_width: Outline width in pixels (0 disables the outline).
        stroke_color: RGBA outline color.
        shadow_blur: Gaussian blur radius of the drop shadow (0 disables it).
        shadow_color: RGBA shadow color.
    """

    text: str
    x: float
    y: float
    font_size: int = 96
    color: tuple[int, int, int, int] = (255, 255, 255, 255)
    font_path: str | None = None
    opacity: float = 1.0
    stroke_width: int = 0
    stroke_color: tuple[int, int, int, int] = (0, 0, 0, 255)
    shadow_blur: float = 0.0
    shadow_color: tuple[int, int, int, int] = (0, 0, 0, 128)

    def __post_init__(self) -> None:
        if not 0.0 <= self.opacity <= 1.0:
            raise ValueError(f"opacity must be in [0, 1], got {self.opacity}")
        if self.stroke_width < 0 or self.shadow_blur < 0:
            raise ValueError("stroke_width and shadow_blur must be non-negative.")


def _font(layer: TextLayer) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    try:
        return ImageFont.truetype(layer.font_path or "DejaVuSans.ttf", layer.font_size)
    except OSError:  # pragma: no cover
        return ImageFont.load_default(size=layer.font_size)


def _render_layer(layer: TextLayer, size: tuple[int, int]) -> Image.Image:
    """Draw one text layer (shadow, outline, fill) on a transparent canvas."""
    font = _font(layer)
    xy = (layer.x, layer.y)
    out = Image.new("RGBA", size, (0, 0, 0, 0))
    if layer.shadow_blur > 0:
        shadow = Image.new("RGBA", size, (0, 0, 0, 0))
        ImageDraw.Draw(shadow).text(
            xy,
            layer.text,
            fill=layer.shadow_color,
            font=font,
            stroke_width=layer.stroke_width,
            stroke_fill=layer.shadow_color,
        )
        out = Image.alpha_composite(out, shadow.filter(ImageFilter.GaussianBlur(layer.shadow_blur)))
    ImageDraw.Draw(out).text(
        xy,
        layer.text,
        fill=layer.color,
        font=font,
        stroke_width=layer.stroke_width,
        stroke_fill=layer.stroke_color,
    )
    if layer.opacity < 1.0:
        out.putalpha(out.getchannel("A").point(lambda a: round(a * layer.opacity)))
    return out


def _fit_mask(mask: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    if mask.shape[1::-1] == size:
        return mask
    return np.array(Image.fromarray(mask).resize(size, Image.Resampling.BILINEAR))


def overlay_mask(image: Image.Image, mask: np.ndarray, opacity: float = 0.5) -> Image.Image:
    """Blend the highlight mask over `image` at `opacity`."""
    base = image.convert("RGBA")
    m = _fit_mask(mask, base.size).copy()
    m[..., 3] = (m[..., 3].astype(np.float32) * opacity).astype(np.uint8)
    return Image.alpha_composite(base, Image.fromarray(m))


def draw_mask_border(
    image: Image.Image,
    mask: np.ndarray,
    color: tuple[int, int, int] = (37, 99, 235),
    width: int = 2,
    dash: tuple[int, int] = (6, 4),
) -> Image.Image:
    """Draw a dashed rectangle around the non-transparent part of `mask`."""
    vis = image.convert("RGBA").copy()
    m = _fit_mask(mask, vis.size)
    bounds = mask_bounds(m[..., 3])
    if bounds is None:
        return vis
    x1, y1, x2, y2 = bounds
    x2, y2 = x2 - 1, y2 - 1
    dr = ImageDraw.Draw(vis)
    on, off = dash
    # Dashes along each edge of the box.
    for (ax, ay), (bx, by) in (
        ((x1, y1), (x2, y1)),
        ((x2, y1), (x2, y2)),
        ((x2, y2), (x1, y2)),
        ((x1, y2), (x1, y1)),
    ):
        length = max(abs(bx - ax), abs(by - ay))
        if length == 0:
            dr.point((ax, ay), fill=color)
            continue
        dx, dy = (bx - ax) / length, (by - ay) / length
        for start in range(0, length, on + off):
            end = min(start + on, length)
            dr.line(
                [(ax + dx * start, ay + dy * start), (ax + dx * end, ay + dy * end)],
                fill=color,
                width=width,
            )
    return vis


def composite_text_behind(
    image: Image.Image,
    mask: np.ndarray,
    layers: list[TextLayer],
) -> Image.Image:
    """Draw `layers` over `image`, then paste the masked object back on top."""
    base = image.convert("RGBA")
    text_img = base.copy()
    for layer in layers:
        text_img = Image.alpha_composite(text_img, _render_layer(layer, base.size))
    fg = cutout(np.array(base), _fit_mask(mask, base.size))
    return Image.alpha_composite(text_img, Image.fromarray(fg))
