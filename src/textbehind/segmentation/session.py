"""Session controller: encode an image once, decode masks many times.

The controller owns the cached image embedding, the previous mask fed back to
the decoder and the prompt history. It is an explicit state machine:

    IDLE -> LOADING -> READY -> ENCODING -> ENCODED -> DECODING -> ENCODED

Requests that arrive while ENCODING/DECODING are rejected with `Busy`. A failed
encode/decode leaves the previous state and cache untouched. Initialization
failures move the controller to FAILED until `initialize()` succeeds again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from time import perf_counter

import numpy as np

from textbehind.config import SegmentationConfig
from textbehind.engines.base import ProgressCallback, SupportsInference
from textbehind.segmentation.errors import (
    Busy,
    DecodingError,
    EncodingError,
    InitializationError,
    InvalidState,
    SegmentationError,
)
from textbehind.segmentation.selector import select_best
from textbehind.vision.codec import decode_mask_tensor, encode_image_tensor
from textbehind.vision.types import (
    DeviceInfo,
    ImageEmbedding,
    MaskCandidateSet,
    Metrics,
    Point,
    Tensor,
)

LOG = logging.getLogger(__name__)


class SessionState(str, Enum):
    """States of the session controller."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ENCODING = "encoding"
    ENCODED = "encoded"
    DECODING = "decoding"
    FAILED = "failed"


_IN_FLIGHT = (SessionState.ENCODING, SessionState.DECODING, SessionState.LOADING)


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of one successful decode."""

    mask: Tensor
    index: int
    candidates: MaskCandidateSet
    duration_ms: float

    @property
    def scores(self) -> tuple[float, ...]:
        """Quality scores of all candidates."""
        return self.candidates.scores


class SessionController:
    """Single-user, single-image segmentation session."""

    def __init__(
        self,
        engine: SupportsInference,
        config: SegmentationConfig | None = None,
        *,
        progress: ProgressCallback | None = None,
        clock: Callable[[], float] = perf_counter,
    ) -> None:
        self.engine = engine
        self.config = config or SegmentationConfig()
        self._progress = progress
        self._clock = clock

        self._state = SessionState.IDLE
        self._device: DeviceInfo | None = None
        self._embedding: ImageEmbedding | None = None
        self._previous_mask: Tensor | None = None
        self._prompt_history: tuple[Point, ...] = ()

        self._encode_count = 0
        self._decode_count = 0
        self._last_operation: str | None = None
        self._last_duration_ms: float | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def device(self) -> DeviceInfo | None:
        return self._device

    @property
    def embedding(self) -> ImageEmbedding | None:
        return self._embedding

    @property
    def previous_mask(self) -> Tensor | None:
        return self._previous_mask

    @property
    def prompt_history(self) -> tuple[Point, ...]:
        return self._prompt_history

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            LOG.debug("Session state: %s -> %s", self._state.value, state.value)
        self._state = state

    def _require(self, operation: str, *allowed: SessionState) -> None:
        if self._state in _IN_FLIGHT:
            raise Busy(f"{operation} rejected: session is {self._state.value}")
        if self._state not in allowed:
            raise InvalidState(f"{operation} not allowed while session is {self._state.value}")

    def _record(self, operation: str, started: float) -> float:
        duration_ms = (self._clock() - started) * 1000.0
        self._last_operation = operation
        self._last_duration_ms = duration_ms
        return duration_ms

    def initialize(self) -> DeviceInfo:
        """Load the inference engine once and report the selected device.

        Raises:
            InitializationError: If the engine cannot be loaded. The session
                moves to FAILED; calling `initialize()` again retries.
        """
        if self._device is not None and self._state is not SessionState.FAILED:
            return self._device
        self._require("initialize", SessionState.IDLE, SessionState.FAILED)

        self._set_state(SessionState.LOADING)
        started = self._clock()
        try:
            device = self.engine.load(self._progress)
        except Exception as e:
            self._set_state(SessionState.FAILED)
            LOG.error("Engine initialization failed: %s", e)
            raise InitializationError(f"Could not load inference engine: {e}") from e

        self._device = device
        duration_ms = self._record("initialize", started)
        self._set_state(SessionState.READY)
        LOG.info("Engine ready on device=%s in %.1f ms", device.device, duration_ms)
        return device

    def reinitialize(self) -> DeviceInfo:
        """Drop all state and load the engine again (the way out of FAILED)."""
        self._require("reinitialize", *SessionState)
        self._device = None
        self._clear(embedding=True)
        self._set_state(SessionState.IDLE)
        return self.initialize()

    def encode_image(self, image: np.ndarray | Tensor) -> float:
        """Encode an image and make it the current one.

        Args:
            image: Either an RGBA pixel buffer `(H, W, 4)`, letterboxed into
                the model input square here, or an already encoded planar
                `[1, 3, H, W]` tensor.

        Returns:
            Duration of the operation in milliseconds.

        Raises:
            Busy: Another request is in flight.
            InvalidState: The engine is not initialized.
            EncodingError: Malformed input or encoder failure; the session keeps
                its previous embedding and state.
        """
        self._require("encodeImage", SessionState.READY, SessionState.ENCODED)
        previous = self._state
        self._set_state(SessionState.ENCODING)
        started = self._clock()
        try:
            tensor = self._image_tensor(image)
            embedding = self.engine.encode(tensor)
        except SegmentationError:
            self._set_state(previous)
            raise
        except Exception as e:
            self._set_state(previous)
            raise EncodingError(f"Encoder failed: {e}") from e

        self._embedding = embedding
        self._clear(embedding=False)
        self._encode_count += 1
        duration_ms = self._record("encodeImage", started)
        self._set_state(SessionState.ENCODED)
        LOG.info("Image encoded in %.1f ms", duration_ms)
        return duration_ms

    def decode_mask(
        self,
        prompts: Sequence[Point],
        prior_mask: Tensor | None = None,
        *,
        use_cached_mask: bool = True,
    ) -> DecodeResult:
        """Decode a mask for `prompts` on the current image.

        Args:
            prompts: Non-empty ordered point prompts in model input space.
            prior_mask: Explicit `[1, 1, maskH, maskW]` prior mask overriding
                the cached previous mask (e.g. a merged selection).
            use_cached_mask: Feed the cached previous mask when no explicit
                `prior_mask` is given.

        Raises:
            Busy: Another request is in flight.
            InvalidState: No image has been encoded.
            DecodingError: Malformed prompts/prior mask or decoder failure.
            EmptyCandidateSet, IndexOutOfRange: The model broke its output contract.
        """
        self._require("decodeMask", SessionState.ENCODED)
        embedding = self._embedding
        if embedding is None:
            raise InvalidState("decodeMask requires an encoded image")
        if prior_mask is None and use_cached_mask:
            prior_mask = self._previous_mask

        self._set_state(SessionState.DECODING)
        started = self._clock()
        try:
            coords, labels = self._prompt_tensors(prompts)
            if prior_mask is not None:
                self._check_prior_mask(prior_mask)
            candidates = self.engine.decode(embedding, coords, labels, prior_mask)
            mask, index = select_best(candidates)
        except SegmentationError:
            self._set_state(SessionState.ENCODED)
            raise
        except Exception as e:
            self._set_state(SessionState.ENCODED)
            raise DecodingError(f"Decoder failed: {e}") from e

        self._previous_mask = mask
        self._extend_history(prompts)
        self._decode_count += 1
        duration_ms = self._record("decodeMask", started)
        self._set_state(SessionState.ENCODED)
        LOG.info(
            "Mask decoded in %.1f ms: best=%d scores=%s prompts=%d",
            duration_ms,
            index,
            [round(s, 4) for s in candidates.scores],
            len(self._prompt_history),
        )
        return DecodeResult(mask=mask, index=index, candidates=candidates, duration_ms=duration_ms)

    def click(self, point: Point, *, additive: bool = False) -> DecodeResult:
        """Decode after a user click.

        An additive click extends the current prompt sequence and refines the
        previous mask; a plain click starts a new object from scratch. Unlike a
        browser canvas that always resends the last mask, a plain click never
        feeds the cached mask to the decoder, so it cannot bias the new object.
        """
        if additive:
            return self.decode_mask([*self._prompt_history, point])
        return self.decode_mask([point], use_cached_mask=False)

    def reset_mask(self) -> None:
        """Forget the previous mask and prompts; keep the image embedding."""
        self._require("resetMask", SessionState.READY, SessionState.ENCODED)
        self._clear(embedding=False)
        LOG.debug("Mask reset")

    def reset_session(self) -> None:
        """Forget everything about the current image."""
        self._require("resetSession", SessionState.READY, SessionState.ENCODED)
        self._clear(embedding=True)
        self._set_state(SessionState.READY)
        LOG.debug("Session reset")

    def stats(self) -> Metrics:
        """Cumulative counters; no side effects."""
        return Metrics(
            state=self._state.value,
            device=self._device.device if self._device is not None else None,
            encode_count=self._encode_count,
            decode_count=self._decode_count,
            last_operation=self._last_operation,
            last_duration_ms=self._last_duration_ms,
            prompt_count=len(self._prompt_history),
        )

    def mask_pixels(self, mask: Tensor | None = None) -> np.ndarray | None:
        """Render `mask` (default: previous mask) as an RGBA buffer at mask resolution."""
        mask = mask if mask is not None else self._previous_mask
        if mask is None:
            return None
        md = self.config.mask_dims
        return decode_mask_tensor(
            mask,
            md.w,
            md.h,
            threshold=self.config.mask_threshold,
            color=self.config.highlight_color,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _clear(self, *, embedding: bool) -> None:
        if embedding:
            self._embedding = None
        self._previous_mask = None
        self._prompt_history = ()

    def _extend_history(self, prompts: Sequence[Point]) -> None:
        prompts = tuple(prompts)
        n = len(self._prompt_history)
        if prompts[:n] == self._prompt_history:
            self._prompt_history = self._prompt_history + prompts[n:]
        else:
            self._prompt_history = prompts

    def _image_tensor(self, image: np.ndarray | Tensor) -> Tensor:
        cfg = self.config
        if isinstance(image, Tensor):
            expected = (1, cfg.channels, cfg.input_size, cfg.input_size)
            if image.dims != expected:
                raise EncodingError(f"image tensor dims {image.dims} != {expected}")
            return image
        return encode_image_tensor(
            image, cfg.input_dims, mean=cfg.pixel_mean, std=cfg.pixel_std
        )

    def _prompt_tensors(self, prompts: Sequence[Point]) -> tuple[Tensor, Tensor]:
        if not prompts:
            raise DecodingError("decodeMask requires at least one prompt")
        coords = np.array([[p.x, p.y] for p in prompts], dtype=np.float32)
        if not np.isfinite(coords).all():
            raise DecodingError("prompt coordinates must be finite")
        labels = np.array([int(p.label) for p in prompts], dtype=np.float32)
        return (
            Tensor.from_array("point_coords", coords[None, ...]),
            Tensor.from_array("point_labels", labels[None, ...]),
        )

    def _check_prior_mask(self, mask: Tensor) -> None:
        size = self.config.mask_size
        expected = (1, 1, size, size)
        if mask.dims != expected:
            raise DecodingError(f"prior mask dims {mask.dims} != {expected}")
        if not np.isfinite(mask.data).all():
            raise DecodingError("prior mask contains non-finite values")
