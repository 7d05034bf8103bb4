from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from textbehind.vision.image import pad_to_square, read_image, save_rgba, to_rgba_array
from textbehind.vision.vis import TextLayer, composite_text_behind, draw_mask_border, overlay_mask


def _mask(h: int, w: int, box: tuple[int, int, int, int]) -> np.ndarray:
    x1, y1, x2, y2 = box
    m = np.zeros((h, w, 4), dtype=np.uint8)
    m[y1:y2, x1:x2] = (37, 99, 235, 255)
    return m


def test_pad_to_square_centers_image() -> None:
    img = Image.new("RGB", (40, 20), color=(255, 0, 0))
    square, box = pad_to_square(img)
    assert square.size == (40, 40)
    assert square.mode == "RGBA"
    assert box.as_int() == (0, 10, 40, 20)
    arr = to_rgba_array(square)
    assert tuple(arr[20, 20]) == (255, 0, 0, 255)
    assert arr[5, 20, 3] == 0
    assert arr[35, 20, 3] == 0


def test_read_and_save_rgba(tmp_path: Path) -> None:
    p = tmp_path / "in.png"
    Image.new("RGB", (5, 3), color=(1, 2, 3)).save(p)
    img = read_image(p)
    assert img.mode == "RGBA"
    out = tmp_path / "out.png"
    save_rgba(to_rgba_array(img), out)
    assert Image.open(out).size == (5, 3)


def test_overlay_mask_tints_only_masked_area() -> None:
    img = Image.new("RGB", (20, 20), color=(0, 0, 0))
    vis = np.array(overlay_mask(img, _mask(20, 20, (5, 5, 10, 10))))
    assert vis[7, 7, 2] > 0
    assert tuple(vis[0, 0, :3]) == (0, 0, 0)


def test_overlay_mask_resizes_low_res_mask() -> None:
    img = Image.new("RGB", (16, 16), color=(0, 0, 0))
    vis = np.array(overlay_mask(img, _mask(4, 4, (0, 0, 2, 2))))
    assert vis.shape == (16, 16, 4)
    assert vis[2, 2, 2] > 0
    assert tuple(vis[14, 14, :3]) == (0, 0, 0)


def test_draw_mask_border_draws_around_bounds() -> None:
    img = Image.new("RGB", (50, 50), color=(0, 0, 0))
    vis = np.array(draw_mask_border(img, _mask(50, 50, (10, 10, 40, 30)), color=(255, 0, 0)))
    assert vis[9:12, 10:16, 0].max() == 255
    assert vis[20, 25, 0] == 0

    empty = np.array(draw_mask_border(img, np.zeros((50, 50, 4), dtype=np.uint8)))
    assert int(empty[..., :3].sum()) == 0


def test_composite_text_behind_keeps_object_in_front() -> None:
    img = Image.new("RGB", (200, 100), color=(0, 0, 0))
    # Object covers the left half; text is drawn across the whole image.
    mask = _mask(100, 200, (0, 0, 100, 100))
    layer = TextLayer(text="HELLO WORLD", x=0, y=20, font_size=40, color=(255, 255, 255, 255))
    out = np.array(composite_text_behind(img, mask, [layer]))
    assert out.shape == (100, 200, 4)
    assert int(out[:, :100, :3].sum()) == 0
    assert int(out[:, 100:, :3].sum()) > 0


def test_composite_text_layer_opacity_and_stroke() -> None:
    img = Image.new("RGB", (200, 100), color=(0, 0, 0))
    mask = np.zeros((100, 200, 4), dtype=np.uint8)

    hidden = TextLayer(text="HELLO", x=10, y=20, font_size=40, opacity=0.0)
    assert int(np.array(composite_text_behind(img, mask, [hidden]))[..., :3].sum()) == 0

    half = TextLayer(text="HELLO", x=10, y=20, font_size=40, opacity=0.5)
    faded = np.array(composite_text_behind(img, mask, [half]))
    assert 0 < int(faded[..., 0].max()) < 255

    outlined = TextLayer(
        text="HELLO", x=10, y=20, font_size=40, stroke_width=3, stroke_color=(255, 0, 0, 255)
    )
    out = np.array(composite_text_behind(img, mask, [outlined]))
    red = (out[..., 0] == 255) & (out[..., 1] == 0) & (out[..., 2] == 0)
    white = (out[..., 0] == 255) & (out[..., 1] == 255) & (out[..., 2] == 255)
    assert red.any()
    assert white.any()


def test_composite_text_layer_shadow_extends_past_text() -> None:
    img = Image.new("RGB", (200, 100), color=(0, 0, 0))
    mask = np.zeros((100, 200, 4), dtype=np.uint8)
    plain = TextLayer(text="HI", x=20, y=20, font_size=40, color=(0, 0, 0, 255))
    shadowed = TextLayer(
        text="HI",
        x=20,
        y=20,
        font_size=40,
        color=(0, 0, 0, 255),
        shadow_blur=4,
        shadow_color=(0, 255, 0, 255),
    )
    assert int(np.array(composite_text_behind(img, mask, [plain]))[..., 1].sum()) == 0
    assert int(np.array(composite_text_behind(img, mask, [shadowed]))[..., 1].sum()) > 0


@pytest.mark.parametrize(
    "kwargs",
    [{"opacity": 1.5}, {"opacity": -0.1}, {"stroke_width": -1}, {"shadow_blur": -2.0}],
)
def test_text_layer_rejects_invalid_style(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        TextLayer(text="x", x=0, y=0, **kwargs)
