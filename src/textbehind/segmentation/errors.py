"""Error taxonomy for the segmentation session pipeline.

Each error carries a machine-readable `kind` and a human-readable `status`
string; the caller decides how to display them.
"""

from __future__ import annotations


class SegmentationError(RuntimeError):
    """Base class for all session pipeline errors."""

    kind = "error"
    status = "Error"
    recoverable = True


class InitializationError(SegmentationError):
    """Inference engine or compute device unavailable."""

    kind = "initialization"
    status = "Error loading model"
    recoverable = False


class EncodingError(SegmentationError):
    """Malformed image input or encoder failure."""

    kind = "encoding"
    status = "Error encoding image"


class InvalidDimensions(EncodingError):
    """A dimension pair is zero, negative or non-integer."""

    kind = "invalid_dimensions"
    status = "Invalid image dimensions"


class DecodingError(SegmentationError):
    """Malformed prompt/mask input or decoder failure."""

    kind = "decoding"
    status = "Error decoding mask"


class FatalSelectionError(SegmentationError):
    """The model produced output that violates the candidate set contract."""

    recoverable = False


class EmptyCandidateSet(FatalSelectionError):
    """The decoder returned no candidate masks."""

    kind = "empty_candidate_set"
    status = "Model returned no masks"


class IndexOutOfRange(FatalSelectionError):
    """A candidate index lies outside the batched mask buffer."""

    kind = "index_out_of_range"
    status = "Mask index out of range"


class InvalidState(SegmentationError):
    """The operation is not allowed in the current session state."""

    kind = "invalid_state"
    status = "Not ready"


class Busy(SegmentationError):
    """Another encode/decode request is still in flight."""

    kind = "busy"
    status = "Busy, try again"
