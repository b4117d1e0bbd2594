"""Event-stream framing and the streaming emitter built on `ResponseSink`."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable

from .coordinator import TerminationCoordinator
from .errors import GatewayFault, fault_from_exception, timeout_fault_for_reason
from .translator import error_chunk, new_completion_id

LOG = logging.getLogger(__name__)

DONE_FRAME = b"data: [DONE]\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

JSON_HEADERS = {"Content-Type": "application/json"}

Producer = Callable[["StreamingEmitter"], Awaitable[Any]]
FaultHandler = Callable[[BaseException, "StreamingEmitter"], Any]


def sse_frame(payload: Any, event_type: str | None = None) -> bytes:
    """Encode one `data:` frame, optionally preceded by an `event:` line."""
    body = f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"
    if event_type:
        body = f"event: {event_type}\n{body}"
    return body.encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat frame."""
    return f": {text}\n\n".encode("utf-8")


class StreamingEmitter:
    """Writes framed incremental events for one request."""

    def __init__(
        self,
        coordinator: TerminationCoordinator,
        *,
        model: str | None = None,
        completion_id: str | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.sink = coordinator.sink
        self.model = model or coordinator.context.model or "unknown"
        self.completion_id = completion_id or new_completion_id()
        self.extra_headers = dict(extra_headers or {})
        self.frames_sent = 0
        coordinator.set_timeout_handler(self._deliver_timeout)

    @property
    def request_id(self) -> str:
        return self.coordinator.request_id

    def start(self, headers: dict[str, str] | None = None) -> bool:
        """Send event-stream headers; false means the response is already gone."""
        merged = {**SSE_HEADERS, **self.extra_headers, **(headers or {})}
        if not self.sink.write_headers(200, merged):
            LOG.debug("stream start refused request_id=%s", self.request_id)
            return False
        self.coordinator.begin_streaming()
        self.coordinator.touch()
        return True

    def emit(self, event: Any, event_type: str | None = None) -> bool:
        """Serialize and write one event; false tells the producer to stop."""
        if not self.sink.can_write():
            return False
        try:
            frame = sse_frame(event, event_type)
        except (TypeError, ValueError) as exc:
            LOG.warning("stream event not serializable request_id=%s error=%s", self.request_id, exc)
            return False
        if not self.sink.write_chunk(frame):
            return False
        self.frames_sent += 1
        self.coordinator.touch()
        return True

    def emit_comment(self, text: str) -> bool:
        """Write a heartbeat comment; does not count as activity."""
        return self.sink.write_chunk(sse_comment(text))

    def emit_terminal_sentinel(self) -> bool:
        return self.sink.write_chunk(DONE_FRAME)

    async def drain(self) -> None:
        """Wait until the transport has flushed its backlog."""
        await self.sink.drain()

    def deliver_fault(self, fault: GatewayFault) -> bool:
        """Tell the client about a fault in whatever form the response still allows."""
        rid = self.request_id
        if self.sink.headers_sent:
            if not self.sink.can_write():
                LOG.info("fault not delivered, response closed request_id=%s code=%s", rid, fault.code)
                return False
            chunk = error_chunk(
                completion_id=self.completion_id,
                model=self.model,
                fault=fault,
                request_id=rid,
            )
            delivered = self.emit(chunk)
            return self.emit_terminal_sentinel() and delivered
        headers = {**JSON_HEADERS, **fault.headers, "X-Request-ID": rid}
        if not self.sink.write_headers(fault.status_code, headers):
            return False
        body = json.dumps(fault.to_payload(rid), ensure_ascii=False)
        return self.sink.write_chunk(body)

    def _deliver_timeout(self, reason: str) -> None:
        fault = timeout_fault_for_reason(reason, request_id=self.request_id)
        if fault is None:
            return
        LOG.warning("request timed out request_id=%s reason=%s", self.request_id, reason)
        self.deliver_fault(fault)

    async def run_with_error_boundary(
        self,
        producer: Producer,
        *,
        on_error: FaultHandler | None = None,
        complete_reason: str | None = "completed",
    ) -> Any:
        """Run ``producer`` and guarantee the response terminates exactly once.

        On a fault the client gets a best-effort error, ``on_error`` runs, the
        request terminates with reason ``error_boundary`` and the original
        exception propagates.
        """
        try:
            result = await producer(self)
        except asyncio.CancelledError:
            if self.coordinator.is_active:
                self.coordinator.terminate("cancelled")
            raise
        except Exception as exc:
            LOG.warning(
                "stream producer failed request_id=%s headers_sent=%s error=%s: %s",
                self.request_id,
                self.sink.headers_sent,
                type(exc).__name__,
                exc,
                exc_info=not isinstance(exc, GatewayFault),
            )
            try:
                try:
                    self.deliver_fault(fault_from_exception(exc, request_id=self.request_id))
                except Exception:
                    LOG.exception("error delivery failed request_id=%s", self.request_id)
                if on_error is not None:
                    try:
                        handled = on_error(exc, self)
                        if inspect.isawaitable(handled):
                            await handled
                    except Exception:
                        LOG.exception("stream error handler failed request_id=%s", self.request_id)
            finally:
                await self.coordinator.terminate("error_boundary")
            raise
        coordinator = self.coordinator
        if complete_reason is not None and coordinator.is_active:
            await coordinator.terminate(complete_reason)
        elif coordinator.record is not None:
            await coordinator.record.handle
        return result
