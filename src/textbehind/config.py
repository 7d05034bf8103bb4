"""Configuration for the segmentation session and its inference engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from textbehind.vision.types import Dimensions


class SegmentationConfig(BaseModel):
    """Fixed tensor contract of the loaded model plus runtime options.

    Attributes:
        input_size: Side of the square encoder input.
        mask_size: Side of the square low-resolution masks returned by the decoder.
        channels: Image channels expected by the encoder.
        pixel_mean, pixel_std: Per-channel normalization applied to [0, 1] RGB.
        mask_threshold: Logit threshold used when turning masks into pixels.
        highlight_color: RGB used for decoded mask pixels.
        sam2_config, sam2_ckpt: SAM2 model config name and checkpoint path.
        device: "auto", "cpu", or "cuda".
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    input_size: int = Field(default=1024, gt=0)
    mask_size: int = Field(default=256, gt=0)
    channels: Literal[3] = 3
    pixel_mean: tuple[float, float, float] = (0.485, 0.456, 0.406)
    pixel_std: tuple[float, float, float] = (0.229, 0.224, 0.225)
    mask_threshold: float = 0.0
    highlight_color: tuple[int, int, int] = (37, 99, 235)
    sam2_config: str = "configs/sam2.1/sam2.1_hiera_t.yaml"
    sam2_ckpt: str = "checkpoints/sam2.1_hiera_tiny.pt"
    device: Literal["auto", "cpu", "cuda"] = "auto"

    @field_validator("pixel_std")
    @classmethod
    def _non_zero_std(cls, v: tuple[float, float, float]) -> tuple[float, float, float]:
        if any(s == 0 for s in v):
            raise ValueError("pixel_std values must be non-zero.")
        return v

    @field_validator("highlight_color")
    @classmethod
    def _rgb_range(cls, v: tuple[int, int, int]) -> tuple[int, int, int]:
        if any(not 0 <= c <= 255 for c in v):
            raise ValueError("highlight_color components must be in [0, 255].")
        return v

    @property
    def input_dims(self) -> Dimensions:
        """Encoder input dimensions."""
        return Dimensions(w=self.input_size, h=self.input_size)

    @property
    def mask_dims(self) -> Dimensions:
        """Decoder low-resolution mask dimensions."""
        return Dimensions(w=self.mask_size, h=self.mask_size)


def load_config(path: Path | None = None, **overrides: Any) -> SegmentationConfig:
    """Load a YAML config file (optional) and apply keyword overrides."""
    raw: dict[str, Any] = {}
    if path is not None:
        loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        if loaded is not None and not isinstance(loaded, dict):
            raise RuntimeError(f"Config file must contain a mapping: {path}")
        raw.update(loaded or {})
    raw.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return SegmentationConfig.model_validate(raw)
    except ValidationError as e:
        raise RuntimeError(f"Invalid segmentation config: {path or overrides}") from e
