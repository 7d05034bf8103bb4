"""Dedicated worker thread running the session controller behind a message boundary.

The caller never touches the controller: it sends requests with `submit()` and
receives responses (and progress messages) through `outbox` or an `on_message`
callback. Requests run strictly one at a time on the worker thread.
Inference requests (initialize/encode/decode) and resets that arrive while an
inference request is in flight are answered immediately with a `busy` error
instead of being queued. Stats requests are always queued.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from collections.abc import Callable

from textbehind.config import SegmentationConfig
from textbehind.engines.base import ProgressPhase, SupportsInference
from textbehind.segmentation.errors import Busy
from textbehind.segmentation.protocol import (
    BUSY_REJECTED_REQUESTS,
    INFERENCE_REQUESTS,
    ProgressMessage,
    Request,
    Response,
    error_response,
    handle,
)
from textbehind.segmentation.session import SessionController

LOG = logging.getLogger(__name__)

_STOP = object()


class SegmentationWorker:
    """Owns a `SessionController` and serves it from a single background thread."""

    def __init__(
        self,
        engine: SupportsInference,
        config: SegmentationConfig | None = None,
        *,
        on_message: Callable[[Response], None] | None = None,
        name: str = "segmentation-worker",
    ) -> None:
        self.controller = SessionController(engine, config, progress=self._on_progress)
        self.outbox: queue.Queue[Response] = queue.Queue()
        self._on_message = on_message
        self._inbox: queue.Queue[object] = queue.Queue()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._in_flight: Request | None = None
        self._current_id: int | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    def start(self) -> SegmentationWorker:
        self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        """Finish pending requests, then stop the thread."""
        if self._thread.is_alive():
            self._inbox.put(_STOP)
            self._thread.join(timeout)

    def __enter__(self) -> SegmentationWorker:
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def next_request_id(self) -> int:
        """Monotonic correlation id for the next request."""
        return next(self._ids)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._in_flight is not None

    def submit(self, request: Request) -> bool:
        """Send `request` to the worker.

        Returns:
            False if the request was rejected with a `busy` error response.
        """
        if isinstance(request, BUSY_REJECTED_REQUESTS):
            with self._lock:
                in_flight = self._in_flight
                if in_flight is None and isinstance(request, INFERENCE_REQUESTS):
                    self._in_flight = request
            if in_flight is not None:
                LOG.info(
                    "Rejecting %s #%s: %s #%s still running",
                    request.type,
                    request.request_id,
                    in_flight.type,
                    in_flight.request_id,
                )
                self._emit(
                    error_response(
                        request.request_id,
                        request.type,
                        Busy(f"{in_flight.type} #{in_flight.request_id} still running"),
                    )
                )
                return False
        self._inbox.put(request)
        return True

    def call(self, request: Request, timeout: float | None = None) -> Response:
        """Submit `request` and wait for the response with the same `request_id`.

        Progress messages and stale responses are skipped. Only use this when no
        `on_message` callback consumes the outbox.
        """
        self.submit(request)
        while True:
            resp = self.outbox.get(timeout=timeout)
            if isinstance(resp, ProgressMessage):
                continue
            if resp.request_id == request.request_id:
                return resp
            LOG.warning(
                "Dropping stale %s for request #%s (waiting for #%s)",
                resp.type,
                resp.request_id,
                request.request_id,
            )

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _emit(self, message: Response) -> None:
        if self._on_message is None:
            self.outbox.put(message)
            return
        try:
            self._on_message(message)
        except Exception:
            LOG.exception(
                "on_message callback failed on %s #%s", message.type, message.request_id
            )

    def _on_progress(self, phase: ProgressPhase) -> None:
        self._emit(ProgressMessage(phase=phase, request_id=self._current_id))

    def _run(self) -> None:
        LOG.debug("Worker thread started")
        while True:
            item = self._inbox.get()
            if item is _STOP:
                break
            request: Request = item  # type: ignore[assignment]
            self._current_id = request.request_id
            try:
                response = handle(self.controller, request)
            except Exception as e:
                LOG.exception("Worker failed on %s #%s", request.type, request.request_id)
                response = error_response(request.request_id, request.type, e)
            finally:
                self._current_id = None
                if isinstance(request, INFERENCE_REQUESTS):
                    with self._lock:
                        self._in_flight = None
            self._emit(response)
        LOG.debug("Worker thread stopped")
