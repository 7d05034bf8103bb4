from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np
import pytest
from PIL import Image

from textbehind.config import SegmentationConfig
from textbehind.pipelines.click_to_mask import (
    ClickToMaskRun,
    image_point_to_model,
    run_click_to_mask,
)
from textbehind.vision.codec import MASK_LOGIT_LIMIT
from textbehind.vision.types import (
    Box,
    DeviceInfo,
    Dimensions,
    ImageEmbedding,
    MaskCandidateSet,
    Tensor,
)
from textbehind.vision.vis import TextLayer

_SEG = SegmentationConfig(input_size=32, mask_size=8)


class _FakeEngine:
    def __init__(self) -> None:
        self.loads = 0
        self.encoded: list[Tensor] = []
        self.mask_inputs: list[Tensor | None] = []
        self.point_counts: list[int] = []

    def load(self, progress: Any = None) -> DeviceInfo:
        self.loads += 1
        return DeviceInfo(device="cpu", engine="fake")

    def encode(self, image: Tensor) -> ImageEmbedding:
        self.encoded.append(image)
        return ImageEmbedding(image_embed=Tensor.from_array("image_embed", np.zeros((1, 1, 2, 2))))

    def decode(
        self,
        embedding: ImageEmbedding,
        point_coords: Tensor,
        point_labels: Tensor,
        mask_input: Tensor | None = None,
    ) -> MaskCandidateSet:
        self.mask_inputs.append(mask_input)
        self.point_counts.append(point_coords.dims[1])
        masks = np.full((1, 3, 8, 8), -10.0, dtype=np.float32)
        for i in range(3):
            side = (i + 1) * 2
            masks[0, i, :side, :side] = 10.0
        return MaskCandidateSet(masks=Tensor.from_array("masks", masks), scores=(0.2, 0.9, 0.5))


def _write_image(path: Path) -> Path:
    Image.new("RGB", (40, 20), (200, 100, 50)).save(path)
    return path


def test_image_point_to_model_accounts_for_padding() -> None:
    placement = Box(x=0.0, y=10.0, w=40.0, h=20.0)
    p = image_point_to_model((20.0, 10.0), placement, 40, Dimensions(w=32, h=32))
    assert p.x == pytest.approx(16.0)
    assert p.y == pytest.approx(16.0)


def test_run_click_to_mask_writes_outputs(tmp_path: Path) -> None:
    engine = _FakeEngine()
    cfg = ClickToMaskRun(
        image_path=_write_image(tmp_path / "in.png"),
        outdir=tmp_path / "out",
        objects=[[(10.0, 5.0), (12.0, 6.0)], [(30.0, 10.0)]],
        text_layers=[TextLayer(text="HI", x=2, y=2, font_size=12)],
        refine_merged=True,
    )
    payload = run_click_to_mask(cfg, engine=engine, seg_config=_SEG, timeout_s=5.0)

    for name in ("mask.png", "cutout.png", "overlay.png", "composite.png", "final.json"):
        assert (cfg.outdir / name).is_file()

    mask = np.asarray(Image.open(cfg.outdir / "mask.png").convert("RGBA"))
    assert mask.shape == (20, 40, 4)
    assert mask[..., 3].max() == 255
    assert mask[..., 3].min() == 0

    assert engine.loads == 1
    assert len(engine.encoded) == 1
    assert engine.encoded[0].dims == (1, 3, 32, 32)
    # object 1: fresh click, then refine with cached mask; object 2: fresh; merged refine
    assert engine.mask_inputs[0] is None
    assert engine.mask_inputs[1] is not None
    assert engine.mask_inputs[2] is None
    assert engine.mask_inputs[3] is not None
    assert engine.mask_inputs[3].dims == (1, 1, 8, 8)
    cached = engine.mask_inputs[1].numpy()
    override = engine.mask_inputs[3].numpy()
    assert np.abs(override).max() == MASK_LOGIT_LIMIT
    assert set(np.unique(override)) == {-MASK_LOGIT_LIMIT, MASK_LOGIT_LIMIT}
    assert np.array_equal(np.sign(override), np.sign(cached))
    assert engine.point_counts == [1, 2, 1, 3]

    assert payload["image_w"] == 40
    assert payload["image_h"] == 20
    assert payload["device"] == "cpu"
    assert [o["best_index"] for o in payload["objects"]] == [1, 1]
    assert payload["objects"][0]["clicks"] == [[10.0, 5.0], [12.0, 6.0]]
    assert payload["stats"]["encode_count"] == 1
    assert payload["stats"]["decode_count"] == 4
    assert payload["stats"]["last_operation"] == "decodeMask"
    assert json.loads((cfg.outdir / "final.json").read_text(encoding="utf-8")) == payload


def test_run_click_to_mask_reuses_existing_results(tmp_path: Path) -> None:
    cfg = ClickToMaskRun(
        image_path=_write_image(tmp_path / "in.png"),
        outdir=tmp_path / "out",
        objects=[[(10.0, 5.0)]],
    )
    first = run_click_to_mask(cfg, engine=_FakeEngine(), seg_config=_SEG, timeout_s=5.0)
    assert not (cfg.outdir / "composite.png").exists()

    engine = _FakeEngine()
    again = run_click_to_mask(cfg, engine=engine, seg_config=_SEG, timeout_s=5.0)
    assert again == first
    assert engine.loads == 0

    forced = ClickToMaskRun(
        image_path=cfg.image_path, outdir=cfg.outdir, objects=cfg.objects, overwrite=True
    )
    run_click_to_mask(forced, engine=engine, seg_config=_SEG, timeout_s=5.0)
    assert engine.loads == 1


@pytest.mark.parametrize("objects", [[], [[(1.0, 1.0)], []]])
def test_run_click_to_mask_requires_clicks(tmp_path: Path, objects: list[Any]) -> None:
    cfg = ClickToMaskRun(
        image_path=_write_image(tmp_path / "in.png"), outdir=tmp_path / "out", objects=objects
    )
    with pytest.raises(ValueError):
        run_click_to_mask(cfg, engine=_FakeEngine(), seg_config=_SEG)
