"""Typed request/response messages between a caller and the segmentation worker.

Every request carries a caller-assigned `request_id` that is echoed back in the
response, so a late result can never be mistaken for the answer to a newer
request. Plain `{"type": ..., ...}` dicts (e.g. from a JSON transport) are
validated with pydantic and converted to the dataclasses below.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from textbehind.engines.base import ProgressPhase
from textbehind.segmentation.errors import DecodingError, SegmentationError
from textbehind.segmentation.session import SessionController
from textbehind.vision.types import DeviceInfo, MaskCandidateSet, Metrics, Point, PointLabel, Tensor

LOG = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, kw_only=True)
class InitializeRequest:
    request_id: int
    type: Literal["initialize"] = "initialize"


@dataclass(frozen=True, slots=True, kw_only=True)
class EncodeImageRequest:
    """Encode an RGBA pixel buffer or an already planar `[1, 3, H, W]` tensor."""

    request_id: int
    image: np.ndarray | Tensor
    type: Literal["encodeImage"] = "encodeImage"


@dataclass(frozen=True, slots=True, kw_only=True)
class DecodeMaskRequest:
    """Decode a mask for `prompts`; `prior_mask` overrides the cached previous mask."""

    request_id: int
    prompts: tuple[Point, ...]
    prior_mask: Tensor | None = None
    use_cached_mask: bool = True
    type: Literal["decodeMask"] = "decodeMask"


@dataclass(frozen=True, slots=True, kw_only=True)
class ResetMaskRequest:
    request_id: int
    type: Literal["resetMask"] = "resetMask"


@dataclass(frozen=True, slots=True, kw_only=True)
class ResetSessionRequest:
    request_id: int
    type: Literal["resetSession"] = "resetSession"


@dataclass(frozen=True, slots=True, kw_only=True)
class StatsRequest:
    request_id: int
    type: Literal["stats"] = "stats"


Request = (
    InitializeRequest
    | EncodeImageRequest
    | DecodeMaskRequest
    | ResetMaskRequest
    | ResetSessionRequest
    | StatsRequest
)

# Requests that run inference; only one may be in flight.
INFERENCE_REQUESTS: tuple[type, ...] = (InitializeRequest, EncodeImageRequest, DecodeMaskRequest)
# Requests rejected rather than queued while an inference request is in flight.
BUSY_REJECTED_REQUESTS: tuple[type, ...] = (
    *INFERENCE_REQUESTS,
    ResetMaskRequest,
    ResetSessionRequest,
)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, kw_only=True)
class InitializeResponse:
    request_id: int
    device: DeviceInfo
    type: Literal["initializeDone"] = "initializeDone"


@dataclass(frozen=True, slots=True, kw_only=True)
class EncodeImageResponse:
    request_id: int
    duration_ms: float
    type: Literal["encodeImageDone"] = "encodeImageDone"


@dataclass(frozen=True, slots=True, kw_only=True)
class DecodeMaskResponse:
    """All candidates and scores, plus the selected mask and its index."""

    request_id: int
    candidates: MaskCandidateSet
    best_index: int
    mask: Tensor
    duration_ms: float
    type: Literal["decodeMaskResult"] = "decodeMaskResult"

    @property
    def scores(self) -> tuple[float, ...]:
        return self.candidates.scores


@dataclass(frozen=True, slots=True, kw_only=True)
class ResetResponse:
    request_id: int
    operation: Literal["resetMask", "resetSession"]
    type: Literal["resetDone"] = "resetDone"


@dataclass(frozen=True, slots=True, kw_only=True)
class StatsResponse:
    request_id: int
    metrics: Metrics
    type: Literal["stats"] = "stats"


@dataclass(frozen=True, slots=True, kw_only=True)
class ErrorResponse:
    """Terminal status for a failed request."""

    request_id: int | None
    operation: str
    kind: str
    status: str
    detail: str = ""
    type: Literal["error"] = "error"


@dataclass(frozen=True, slots=True, kw_only=True)
class ProgressMessage:
    """Unsolicited progress update while the engine loads."""

    phase: ProgressPhase
    request_id: int | None = None
    type: Literal["progress"] = "progress"


Response = (
    InitializeResponse
    | EncodeImageResponse
    | DecodeMaskResponse
    | ResetResponse
    | StatsResponse
    | ErrorResponse
    | ProgressMessage
)


def error_response(request_id: int | None, operation: str, err: Exception) -> ErrorResponse:
    """Map an exception to a single status string plus a machine-readable kind."""
    if isinstance(err, SegmentationError):
        return ErrorResponse(
            request_id=request_id,
            operation=operation,
            kind=err.kind,
            status=err.status,
            detail=str(err),
        )
    return ErrorResponse(
        request_id=request_id,
        operation=operation,
        kind="internal",
        status="Error (see logs)",
        detail=f"{type(err).__name__}: {err}",
    )


def handle(controller: SessionController, request: Request) -> Response:
    """Run one request against `controller` and build its response."""
    rid = request.request_id
    try:
        if isinstance(request, InitializeRequest):
            return InitializeResponse(request_id=rid, device=controller.initialize())
        if isinstance(request, EncodeImageRequest):
            return EncodeImageResponse(
                request_id=rid, duration_ms=controller.encode_image(request.image)
            )
        if isinstance(request, DecodeMaskRequest):
            res = controller.decode_mask(
                request.prompts,
                request.prior_mask,
                use_cached_mask=request.use_cached_mask,
            )
            return DecodeMaskResponse(
                request_id=rid,
                candidates=res.candidates,
                best_index=res.index,
                mask=res.mask,
                duration_ms=res.duration_ms,
            )
        if isinstance(request, ResetMaskRequest):
            controller.reset_mask()
            return ResetResponse(request_id=rid, operation="resetMask")
        if isinstance(request, ResetSessionRequest):
            controller.reset_session()
            return ResetResponse(request_id=rid, operation="resetSession")
        if isinstance(request, StatsRequest):
            return StatsResponse(request_id=rid, metrics=controller.stats())
    except SegmentationError as e:
        LOG.warning("%s failed (%s): %s", request.type, e.kind, e)
        return error_response(rid, request.type, e)
    except Exception as e:
        LOG.exception("%s failed unexpectedly", request.type)
        return error_response(rid, request.type, e)
    raise TypeError(f"Unsupported request: {request!r}")


# ---------------------------------------------------------------------------
# Plain-dict (JSON) transport
# ---------------------------------------------------------------------------


class _TensorJson(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dims: list[int] = Field(min_length=1)
    data: list[float]

    @model_validator(mode="after")
    def _validate_length(self) -> _TensorJson:
        n = 1
        for d in self.dims:
            if d < 0:
                raise ValueError("dims must be non-negative.")
            n *= d
        if n != len(self.data):
            raise ValueError(f"data length {len(self.data)} != product of dims {self.dims}")
        return self

    def to_tensor(self, name: str) -> Tensor:
        data = np.asarray(self.data, dtype=np.float32)
        return Tensor(name=name, dims=tuple(self.dims), data=data)


class _PointJson(BaseModel):
    model_config = ConfigDict(extra="forbid")

    x: float
    y: float
    label: Literal[0, 1] = 1


class _InitializeJson(BaseModel):
    type: Literal["initialize"]
    request_id: int = Field(ge=0)


class _EncodeImageJson(BaseModel):
    type: Literal["encodeImage"]
    request_id: int = Field(ge=0)
    image: _TensorJson


class _DecodeMaskJson(BaseModel):
    type: Literal["decodeMask"]
    request_id: int = Field(ge=0)
    prompts: list[_PointJson] = Field(min_length=1)
    prior_mask: _TensorJson | None = None
    use_cached_mask: bool = True


class _ResetMaskJson(BaseModel):
    type: Literal["resetMask"]
    request_id: int = Field(ge=0)


class _ResetSessionJson(BaseModel):
    type: Literal["resetSession"]
    request_id: int = Field(ge=0)


class _StatsJson(BaseModel):
    type: Literal["stats"]
    request_id: int = Field(ge=0)


_REQUEST_ADAPTER: TypeAdapter[Any] = TypeAdapter(
    Annotated[
        _InitializeJson
        | _EncodeImageJson
        | _DecodeMaskJson
        | _ResetMaskJson
        | _ResetSessionJson
        | _StatsJson,
        Field(discriminator="type"),
    ]
)


def parse_request(payload: Mapping[str, Any]) -> Request:
    """Validate a plain-dict message and convert it to a typed request.

    Raises:
        DecodingError: If the message is malformed.
    """
    try:
        msg = _REQUEST_ADAPTER.validate_python(dict(payload))
    except ValidationError as e:
        raise DecodingError(f"Invalid request message: {e}") from e

    rid = msg.request_id
    if isinstance(msg, _InitializeJson):
        return InitializeRequest(request_id=rid)
    if isinstance(msg, _EncodeImageJson):
        return EncodeImageRequest(request_id=rid, image=msg.image.to_tensor("image"))
    if isinstance(msg, _DecodeMaskJson):
        return DecodeMaskRequest(
            request_id=rid,
            prompts=tuple(Point(x=p.x, y=p.y, label=PointLabel(p.label)) for p in msg.prompts),
            prior_mask=msg.prior_mask.to_tensor("mask_input") if msg.prior_mask else None,
            use_cached_mask=msg.use_cached_mask,
        )
    if isinstance(msg, _ResetMaskJson):
        return ResetMaskRequest(request_id=rid)
    if isinstance(msg, _ResetSessionJson):
        return ResetSessionRequest(request_id=rid)
    return StatsRequest(request_id=rid)


def _tensor_payload(t: Tensor) -> dict[str, Any]:
    return {"dims": list(t.dims), "data": t.data.tolist()}


def to_payload(response: Response) -> dict[str, Any]:
    """Serialize a response to a JSON-compatible dict."""
    out: dict[str, Any] = {"type": response.type, "request_id": response.request_id}
    if isinstance(response, InitializeResponse):
        out["device"] = response.device.device
    elif isinstance(response, EncodeImageResponse):
        out["duration_ms"] = float(response.duration_ms)
    elif isinstance(response, DecodeMaskResponse):
        out["masks"] = _tensor_payload(response.candidates.masks)
        out["scores"] = [float(s) for s in response.scores]
        out["best_index"] = int(response.best_index)
        out["duration_ms"] = float(response.duration_ms)
    elif isinstance(response, ResetResponse):
        out["operation"] = response.operation
    elif isinstance(response, StatsResponse):
        m = response.metrics
        out.update(
            state=m.state,
            device=m.device,
            encode_count=m.encode_count,
            decode_count=m.decode_count,
            last_operation=m.last_operation,
            last_duration_ms=m.last_duration_ms,
            prompt_count=m.prompt_count,
        )
    elif isinstance(response, ErrorResponse):
        out.update(
            operation=response.operation,
            kind=response.kind,
            status=response.status,
            detail=response.detail,
        )
    elif isinstance(response, ProgressMessage):
        out["phase"] = response.phase
    return out
