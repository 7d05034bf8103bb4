from __future__ import annotations

from pathlib import Path
from typing import Any

import numpy as np
import pytest

torch = pytest.importorskip("torch")

from textbehind.engines.sam2_torch import Sam2TorchEngine  # noqa: E402
from textbehind.vision.types import ImageEmbedding, Tensor  # noqa: E402


class _FakePromptEncoder:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    def __call__(self, *, points: Any, boxes: Any, masks: Any) -> tuple[Any, Any]:
        self.calls.append({"points": points, "boxes": boxes, "masks": masks})
        return torch.zeros(1, 2, 4), torch.zeros(1, 4, 2, 2)

    def get_dense_pe(self) -> Any:
        return torch.zeros(1, 4, 2, 2)


class _FakeMaskDecoder:
    def __init__(self) -> None:
        self.kwargs: dict[str, Any] = {}

    def __call__(self, **kwargs: Any) -> tuple[Any, Any, Any, Any]:
        self.kwargs = kwargs
        masks = torch.zeros(1, 3, 8, 8)
        masks[0, 0] = 100.0
        masks[0, 2] = -100.0
        return masks, torch.tensor([[0.1, 0.7, 0.4]]), None, None


class _FakeSam2:
    directly_add_no_mem_embed = True

    def __init__(self) -> None:
        self.no_mem_embed = torch.ones(1, 1, 4)
        self.sam_prompt_encoder = _FakePromptEncoder()
        self.sam_mask_decoder = _FakeMaskDecoder()
        self.eval_calls = 0
        self.images: list[Any] = []

    def eval(self) -> _FakeSam2:
        self.eval_calls += 1
        return self

    def forward_image(self, image: Any) -> dict[str, Any]:
        self.images.append(image)
        return {}

    def _prepare_backbone_features(self, backbone_out: dict[str, Any]) -> tuple[Any, ...]:
        feats = [torch.zeros(64, 1, 4), torch.zeros(16, 1, 4), torch.zeros(4, 1, 4)]
        return backbone_out, feats, None, None


def _engine(model: Any | None = None, **kwargs: Any) -> Sam2TorchEngine:
    return Sam2TorchEngine(
        "configs/sam2.1/sam2.1_hiera_t.yaml",
        "missing.pt",
        "cpu",
        input_size=32,
        torch_module=torch,
        model=model,
        **kwargs,
    )


def test_load_builds_model_and_reports_progress(tmp_path: Path) -> None:
    built: list[tuple[str, str, str]] = []
    model = _FakeSam2()

    def builder(cfg: str, ckpt: str, device: str) -> Any:
        built.append((cfg, ckpt, device))
        return model

    phases: list[str] = []
    engine = _engine(sam_builder=builder)
    engine.sam2_ckpt = str(tmp_path / "missing.pt")
    info = engine.load(phases.append)
    assert info.device == "cpu"
    assert info.engine == "sam2"
    assert phases == ["downloading", "loadingModel"]
    assert built == [("configs/sam2.1/sam2.1_hiera_t.yaml", str(tmp_path / "missing.pt"), "cpu")]
    assert model.eval_calls == 1

    ckpt = tmp_path / "present.pt"
    ckpt.write_bytes(b"")
    phases.clear()
    other = _engine(sam_builder=builder)
    other.sam2_ckpt = str(ckpt)
    other.load(phases.append)
    assert phases == ["loadingModel"]


def test_load_resolves_auto_device() -> None:
    engine = Sam2TorchEngine("cfg", "ckpt", "auto", torch_module=torch, model=_FakeSam2())
    info = engine.load()
    assert info.device == ("cuda" if torch.cuda.is_available() else "cpu")


def test_encode_returns_embedding_and_high_res_features() -> None:
    model = _FakeSam2()
    engine = _engine(model)
    engine.load()
    image = Tensor.from_array("image", np.zeros((1, 3, 32, 32), dtype=np.float32))
    emb = engine.encode(image)
    assert emb.image_embed.dims == (1, 4, 2, 2)
    # no_mem_embed is added to the lowest resolution level only
    assert np.all(emb.image_embed.data == 1.0)
    assert [f.dims for f in emb.features] == [(1, 4, 8, 8), (1, 4, 4, 4)]
    assert tuple(model.images[0].shape) == (1, 3, 32, 32)


def test_decode_returns_clamped_candidates_and_scores() -> None:
    model = _FakeSam2()
    engine = _engine(model)
    engine.load()
    emb = ImageEmbedding(
        image_embed=Tensor.from_array("image_embed", np.zeros((1, 4, 2, 2))),
        features=(
            Tensor.from_array("high_res_feats_0", np.zeros((1, 4, 8, 8))),
            Tensor.from_array("high_res_feats_1", np.zeros((1, 4, 4, 4))),
        ),
    )
    coords = Tensor.from_array("point_coords", np.array([[[4.0, 5.0]]]))
    labels = Tensor.from_array("point_labels", np.array([[1.0]]))
    prior = Tensor.from_array("mask_input", np.zeros((1, 1, 8, 8)))

    out = engine.decode(emb, coords, labels, prior)
    assert out.count == 3
    assert out.scores == pytest.approx((0.1, 0.7, 0.4))
    masks = out.masks.numpy()
    assert masks[0, 0].max() == 32.0
    assert masks[0, 2].min() == -32.0

    call = model.sam_prompt_encoder.calls[-1]
    pts, lbls = call["points"]
    assert lbls.dtype == torch.int32
    assert tuple(pts.shape) == (1, 1, 2)
    assert call["boxes"] is None
    assert tuple(call["masks"].shape) == (1, 1, 8, 8)
    assert model.sam_mask_decoder.kwargs["multimask_output"] is True
    assert len(model.sam_mask_decoder.kwargs["high_res_features"]) == 2

    engine.decode(emb, coords, labels)
    assert model.sam_prompt_encoder.calls[-1]["masks"] is None


def test_encode_requires_load() -> None:
    engine = Sam2TorchEngine("cfg", "ckpt", "cpu", torch_module=torch)
    with pytest.raises(RuntimeError):
        engine.encode(Tensor.from_array("image", np.zeros((1, 3, 4, 4))))
