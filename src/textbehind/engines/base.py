"""Inference engine contract consumed by the session controller."""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal, Protocol

from textbehind.vision.types import DeviceInfo, ImageEmbedding, MaskCandidateSet, Tensor

ProgressPhase = Literal["loadingModel", "downloading"]
ProgressCallback = Callable[[ProgressPhase], None]


class SupportsInference(Protocol):
    """Protocol for a two-stage (encoder/decoder) promptable segmentation model."""

    def load(self, progress: ProgressCallback | None = None) -> DeviceInfo:
        """Prepare weights and device; called once per process."""
        ...

    def encode(self, image: Tensor) -> ImageEmbedding:
        """Encode a `[1, 3, H, W]` image tensor."""
        ...

    def decode(
        self,
        embedding: ImageEmbedding,
        point_coords: Tensor,
        point_labels: Tensor,
        mask_input: Tensor | None = None,
    ) -> MaskCandidateSet:
        """Decode `[1, N, 2]` points and `[1, N]` labels into K candidate masks."""
        ...
