"""SAM2 wrapper exposing the encoder and the prompt decoder as separate calls."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import numpy as np

from textbehind.engines.base import ProgressCallback
from textbehind.vision.codec import MASK_LOGIT_LIMIT
from textbehind.vision.types import DeviceInfo, ImageEmbedding, MaskCandidateSet, Tensor

LOG = logging.getLogger(__name__)


class Sam2TorchEngine:
    """Segment Anything Model v2 (SAM2) split into `encode` and `decode`."""

    def __init__(
        self,
        sam2_config: str,
        sam2_ckpt: str,
        device: str = "auto",
        *,
        input_size: int = 1024,
        torch_module: Any | None = None,
        model: Any | None = None,
        sam_builder: Callable[[str, str, str], Any] | None = None,
    ) -> None:
        """Initialize the engine; weights are loaded by `load()`.

        Args:
            sam2_config: SAM2 config name.
            sam2_ckpt: SAM2 checkpoint path.
            device: "auto", "cpu", or "cuda".
            input_size: Side of the square image the encoder expects.
            torch_module: Optional torch-like module for dependency injection.
            model: Optional pre-built SAM2 model (for tests).
            sam_builder: Optional builder `(config, ckpt, device) -> model`.
        """
        self.sam2_config = sam2_config
        self.sam2_ckpt = sam2_ckpt
        self.device = device
        self.input_size = input_size
        self.torch = torch_module
        self.model = model
        self._sam_builder = sam_builder
        # Backbone feature map sizes, highest resolution first.
        hires = input_size // 4
        self._feat_sizes = [(hires // (2**k), hires // (2**k)) for k in range(3)]

    def load(self, progress: ProgressCallback | None = None) -> DeviceInfo:
        """Select the device and build the model (once)."""
        if self.torch is None:
            import torch  # local import to keep module import lightweight

            self.torch = torch

        if self.device == "auto":
            self.device = "cuda" if self.torch.cuda.is_available() else "cpu"

        if self.model is None:
            builder = self._sam_builder
            if builder is None:
                from sam2.build_sam import build_sam2

                def builder(cfg: str, ckpt: str, device: str) -> Any:
                    return build_sam2(cfg, ckpt, device=device)

            if not Path(self.sam2_ckpt).is_file() and progress is not None:
                progress("downloading")
            if progress is not None:
                progress("loadingModel")
            LOG.info(
                "Loading SAM2 config=%s ckpt=%s device=%s",
                self.sam2_config,
                self.sam2_ckpt,
                self.device,
            )
            self.model = builder(self.sam2_config, self.sam2_ckpt, self.device)

        self.model.eval()
        return DeviceInfo(device=str(self.device), engine="sam2")

    def _to_torch(self, t: Tensor, dtype: Any | None = None) -> Any:
        x = self.torch.from_numpy(np.array(t.numpy(), copy=True))
        if dtype is not None:
            x = x.to(dtype)
        return x.to(self.device)

    @staticmethod
    def _to_tensor(name: str, x: Any) -> Tensor:
        return Tensor.from_array(name, x.detach().float().cpu().numpy())

    def encode(self, image: Tensor) -> ImageEmbedding:
        """Run the image encoder on a `[1, 3, S, S]` tensor."""
        if self.model is None:
            raise RuntimeError("Engine not loaded; call load() first.")
        torch = self.torch
        with torch.inference_mode():
            backbone_out = self.model.forward_image(self._to_torch(image))
            _, vision_feats, _, _ = self.model._prepare_backbone_features(backbone_out)
            if self.model.directly_add_no_mem_embed:
                vision_feats[-1] = vision_feats[-1] + self.model.no_mem_embed
            feats = [
                feat.permute(1, 2, 0).reshape(1, -1, *size)
                for feat, size in zip(vision_feats[::-1], self._feat_sizes[::-1], strict=True)
            ][::-1]
        return ImageEmbedding(
            image_embed=self._to_tensor("image_embed", feats[-1]),
            features=tuple(
                self._to_tensor(f"high_res_feats_{i}", f) for i, f in enumerate(feats[:-1])
            ),
        )

    def decode(
        self,
        embedding: ImageEmbedding,
        point_coords: Tensor,
        point_labels: Tensor,
        mask_input: Tensor | None = None,
    ) -> MaskCandidateSet:
        """Run prompt encoder + mask decoder, returning 3 low-resolution candidates."""
        if self.model is None:
            raise RuntimeError("Engine not loaded; call load() first.")
        torch = self.torch
        with torch.inference_mode():
            points = (
                self._to_torch(point_coords),
                self._to_torch(point_labels, dtype=torch.int32),
            )
            masks = self._to_torch(mask_input) if mask_input is not None else None
            sparse, dense = self.model.sam_prompt_encoder(points=points, boxes=None, masks=masks)
            low_res_masks, iou_predictions, _, _ = self.model.sam_mask_decoder(
                image_embeddings=self._to_torch(embedding.image_embed),
                image_pe=self.model.sam_prompt_encoder.get_dense_pe(),
                sparse_prompt_embeddings=sparse,
                dense_prompt_embeddings=dense,
                multimask_output=True,
                repeat_image=False,
                high_res_features=[self._to_torch(f) for f in embedding.features],
            )
            low_res_masks = torch.clamp(low_res_masks, -MASK_LOGIT_LIMIT, MASK_LOGIT_LIMIT)
        scores = iou_predictions.detach().float().cpu().numpy().reshape(-1)
        return MaskCandidateSet(
            masks=self._to_tensor("masks", low_res_masks),
            scores=tuple(float(s) for s in scores),
        )
