"""Conversions between RGBA pixel buffers and model tensors.

Pixel buffers are `uint8` arrays shaped `(H, W, 4)` (RGBA, row-major), the same
layout as a canvas' image data. Model tensors are `textbehind.vision.types.Tensor`.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
from PIL import Image

from textbehind.segmentation.errors import DecodingError, EncodingError, InvalidDimensions
from textbehind.vision.geometry import compute_letterbox
from textbehind.vision.types import Dimensions, Tensor

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)
HIGHLIGHT_RGB: tuple[int, int, int] = (37, 99, 235)
# Decoder mask logits are clamped to this magnitude.
MASK_LOGIT_LIMIT = 32.0

_RESAMPLE = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
}


def _as_rgba(pixels: np.ndarray, what: str, error: type[Exception]) -> np.ndarray:
    arr = np.asarray(pixels)
    if arr.ndim != 3 or arr.shape[0] == 0 or arr.shape[1] == 0:
        raise error(f"{what} must be a non-empty (H, W, 4) buffer, got shape {arr.shape}")
    if arr.shape[2] != 4:
        raise error(f"{what} must have 4 channels (RGBA), got {arr.shape[2]}")
    if arr.dtype != np.uint8:
        raise error(f"{what} must be uint8, got {arr.dtype}")
    return arr


def encode_image_tensor(
    pixels: np.ndarray,
    target: Dimensions,
    *,
    mean: Sequence[float] = IMAGENET_MEAN,
    std: Sequence[float] = IMAGENET_STD,
) -> Tensor:
    """Letterbox an RGBA buffer into `target` and return a planar `[1, 3, H, W]` tensor.

    Channel values are scaled to [0, 1] then normalized with the per-channel
    `mean`/`std` expected by the encoder. Padding is black before normalization.

    Raises:
        InvalidDimensions: If `target` is not a positive integer pair.
        EncodingError: If the buffer is empty or lacks RGBA channels.
    """
    if not target.is_valid():
        raise InvalidDimensions(f"target dimensions must be positive, got {target.w}x{target.h}")
    if len(mean) != 3 or len(std) != 3 or any(s == 0 for s in std):
        raise EncodingError("mean/std must hold 3 values with non-zero std")
    rgba = _as_rgba(pixels, "image buffer", EncodingError)
    h, w = rgba.shape[:2]

    box = compute_letterbox(Dimensions(w=int(w), h=int(h)), target)
    bx, by, bw, bh = box.as_int()
    bw, bh = max(1, bw), max(1, bh)

    src = Image.fromarray(rgba).convert("RGB")
    if (bw, bh) != (w, h):
        src = src.resize((bw, bh), Image.Resampling.BILINEAR)
    canvas = Image.new("RGB", (target.w, target.h), color=(0, 0, 0))
    canvas.paste(src, (bx, by))

    rgb = np.asarray(canvas, dtype=np.float32) / 255.0
    rgb = (rgb - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    planar = np.ascontiguousarray(rgb.transpose(2, 0, 1))[None, ...]
    tensor = Tensor.from_array("image", planar)
    if len(tensor) != 3 * target.w * target.h:
        raise EncodingError(f"encoded length {len(tensor)} != 3*{target.h}*{target.w}")
    return tensor


def decode_mask_tensor(
    mask: Tensor,
    width: int,
    height: int,
    *,
    threshold: float = 0.0,
    color: tuple[int, int, int] = HIGHLIGHT_RGB,
) -> np.ndarray:
    """Turn a single-channel mask tensor into an RGBA highlight buffer.

    Pixels whose value is above `threshold` become opaque `color`; the rest are
    fully transparent. Works for both logits (threshold 0.0) and probabilities
    (threshold 0.5).

    Raises:
        DecodingError: If the tensor length is not `width * height`.
    """
    if width <= 0 or height <= 0:
        raise DecodingError(f"mask dimensions must be positive, got {width}x{height}")
    if len(mask) != width * height:
        raise DecodingError(
            f"mask tensor {mask.name!r} has {len(mask)} values, expected {width}x{height}"
        )
    values = mask.data.reshape(height, width)
    out = np.zeros((height, width, 4), dtype=np.uint8)
    on = values > threshold
    out[on, :3] = color
    out[on, 3] = 255
    return out


def resize_alpha_buffer(
    pixels: np.ndarray,
    src: Dimensions,
    dst: Dimensions,
    *,
    resample: str = "bilinear",
) -> np.ndarray:
    """Resample an RGBA mask buffer from `src` to `dst` dimensions."""
    if not src.is_valid() or not dst.is_valid():
        raise InvalidDimensions(f"cannot resize {src.w}x{src.h} -> {dst.w}x{dst.h}")
    rgba = _as_rgba(pixels, "mask buffer", DecodingError)
    if rgba.shape[:2] != (src.h, src.w):
        raise DecodingError(f"mask buffer shape {rgba.shape[:2]} != ({src.h}, {src.w})")
    if src == dst:
        return rgba.copy()
    try:
        method = _RESAMPLE[resample]
    except KeyError as e:
        raise ValueError(f"Unknown resample mode: {resample}") from e
    resized = Image.fromarray(rgba).resize((dst.w, dst.h), method)
    return np.array(resized, dtype=np.uint8)


def merge_alpha_buffers(buffers: Sequence[np.ndarray]) -> np.ndarray:
    """Pixel-wise union of several RGBA mask buffers (max alpha wins)."""
    if not buffers:
        raise DecodingError("Nothing to merge.")
    arrays = [_as_rgba(b, "mask buffer", DecodingError) for b in buffers]
    if any(a.shape != arrays[0].shape for a in arrays):
        raise DecodingError("All mask buffers must share the same shape.")
    stack = np.stack(arrays)
    winner = np.argmax(stack[..., 3], axis=0)
    return np.take_along_axis(stack, winner[None, ..., None], axis=0)[0]


def mask_buffer_to_tensor(
    pixels: np.ndarray, dims: Dimensions, *, name: str = "mask_input"
) -> Tensor:
    """Convert an RGBA mask buffer back to a `[1, 1, H, W]` logit tensor.

    The buffer is resampled to `dims` first, so a full-resolution selection can
    be fed back to the decoder as a low-resolution prior mask. Pixels with alpha
    above one half become `+MASK_LOGIT_LIMIT`, the rest `-MASK_LOGIT_LIMIT`, the
    same range as the decoder's own clamped masks.
    """
    rgba = _as_rgba(pixels, "mask buffer", DecodingError)
    h, w = rgba.shape[:2]
    rgba = resize_alpha_buffer(rgba, Dimensions(w=int(w), h=int(h)), dims)
    on = rgba[..., 3].astype(np.float32) / 255.0 > 0.5
    logits = np.where(on, MASK_LOGIT_LIMIT, -MASK_LOGIT_LIMIT).astype(np.float32)
    return Tensor.from_array(name, logits[None, None, ...])


def cutout(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Keep only the masked part of `image`; everything else becomes transparent."""
    img = _as_rgba(image, "image buffer", EncodingError)
    h, w = img.shape[:2]
    m = _as_rgba(mask, "mask buffer", DecodingError)
    if m.shape[:2] != (h, w):
        mh, mw = m.shape[:2]
        m = resize_alpha_buffer(m, Dimensions(w=int(mw), h=int(mh)), Dimensions(w=int(w), h=int(h)))
    out = img.copy()
    out[..., 3] = np.minimum(img[..., 3], m[..., 3])
    return out
