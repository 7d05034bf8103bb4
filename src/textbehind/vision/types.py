"""Core data types shared by the segmentation session pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from math import prod

import numpy as np


@dataclass(frozen=True)
class Dimensions:
    """Width/height pair in pixels."""

    w: int
    h: int

    @property
    def area(self) -> int:
        """Return the number of pixels."""
        return self.w * self.h

    def is_valid(self) -> bool:
        """Return True when both sides are positive integers."""
        return isinstance(self.w, int) and isinstance(self.h, int) and self.w > 0 and self.h > 0


@dataclass(frozen=True)
class Box:
    """Placement of a source rectangle inside a destination rectangle.

    Attributes:
        x, y: Top-left offset inside the destination, possibly sub-pixel.
        w, h: Scaled size of the source rectangle.
    """

    x: float
    y: float
    w: float
    h: float

    def as_int(self) -> tuple[int, int, int, int]:
        """Round to integer pixel placement (x, y, w, h)."""
        return round(self.x), round(self.y), round(self.w), round(self.h)


@dataclass(frozen=True)
class DisplayRect:
    """On-screen rectangle of the displayed canvas (e.g. a bounding client rect)."""

    left: float
    top: float
    width: float
    height: float


class PointLabel(IntEnum):
    """Prompt intent understood by the decoder."""

    NEGATIVE = 0
    POSITIVE = 1


@dataclass(frozen=True)
class Point:
    """Point prompt in model input space."""

    x: float
    y: float
    label: PointLabel = PointLabel.POSITIVE


@dataclass(frozen=True, eq=False)
class Tensor:
    """Named multi-dimensional float buffer.

    The flat buffer is copied on construction and marked read-only, so a tensor
    never aliases the producer's array.
    """

    name: str
    dims: tuple[int, ...]
    data: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        dims = tuple(int(d) for d in self.dims)
        data = np.array(self.data, dtype=np.float32, copy=True).reshape(-1)
        if data.size != prod(dims):
            raise ValueError(
                f"Tensor {self.name!r}: buffer length {data.size} != product of dims {dims}"
            )
        data.setflags(write=False)
        object.__setattr__(self, "dims", dims)
        object.__setattr__(self, "data", data)

    @classmethod
    def from_array(cls, name: str, arr: np.ndarray) -> Tensor:
        """Build a tensor whose dims are the shape of `arr`."""
        return cls(name=name, dims=tuple(arr.shape), data=arr)

    def numpy(self) -> np.ndarray:
        """Return a read-only view shaped as `dims`."""
        return self.data.reshape(self.dims)

    def __len__(self) -> int:
        return int(self.data.size)


@dataclass(frozen=True)
class ImageEmbedding:
    """Encoder output: a primary embedding plus optional auxiliary feature maps."""

    image_embed: Tensor
    features: tuple[Tensor, ...] = ()


@dataclass(frozen=True)
class MaskCandidateSet:
    """Decoder output: `[1, K, maskH, maskW]` candidate masks with K scores."""

    masks: Tensor
    scores: tuple[float, ...]

    @property
    def count(self) -> int:
        """Return K, the number of candidates."""
        return int(self.masks.dims[1]) if len(self.masks.dims) == 4 else 0

    @property
    def mask_dims(self) -> Dimensions:
        """Return the (maskW, maskH) of one candidate."""
        return Dimensions(w=int(self.masks.dims[3]), h=int(self.masks.dims[2]))


@dataclass(frozen=True)
class DeviceInfo:
    """Compute device selected by the inference engine."""

    device: str
    engine: str = ""


@dataclass(frozen=True)
class Metrics:
    """Cumulative session statistics."""

    state: str
    device: str | None
    encode_count: int
    decode_count: int
    last_operation: str | None
    last_duration_ms: float | None
    prompt_count: int
