"""Bind a `ResponseSink` to an ASGI server.

Sink operations are synchronous, so the transport only queues ASGI messages;
`LifecycleResponse` drains that queue into ``send`` and feeds client
disconnects and send failures back into the coordinator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Mapping

from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .coordinator import TerminationCoordinator

LOG = logging.getLogger(__name__)


class TransportClosed(RuntimeError):
    """Raised when a message is queued after finish or abort."""


def _encode_headers(headers: Mapping[str, str]) -> list[tuple[bytes, bytes]]:
    return [(name.lower().encode("latin-1"), str(value).encode("latin-1")) for name, value in headers.items()]


class QueuedTransport:
    """`ResponseTransport` that buffers ASGI messages for `pump`."""

    def __init__(self, *, high_water: int = 64, implicit_status: int = 200) -> None:
        self._messages: deque[tuple[str, Any, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._high_water = high_water
        self._implicit_status = implicit_status
        self._closed = False
        self._finished = False
        self.head_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return len(self._messages)

    def _push(self, kind: str, first: Any = None, second: Any = None) -> None:
        if self._closed:
            raise TransportClosed(f"transport closed, dropped {kind}")
        self._messages.append((kind, first, second))
        if kind in {"end", "abort"}:
            self._closed = True
        if len(self._messages) > self._high_water:
            self._drained.clear()
        self._wakeup.set()

    def send_head(self, status: int, headers: Mapping[str, str]) -> None:
        self._push("head", status, dict(headers))

    def send_body(self, data: bytes) -> None:
        self._push("body", data)

    def finish(self, data: bytes | None = None) -> None:
        self._push("end", data)

    def abort(self) -> None:
        # Abort discards anything not yet handed to the server.
        self._messages.clear()
        self._messages.append(("abort", None, None))
        self._closed = True
        self._drained.set()
        self._wakeup.set()

    async def wait_drained(self) -> None:
        """Block while the backlog is above the high-water mark."""
        if self._finished:
            return
        await self._drained.wait()

    async def _next(self) -> tuple[str, Any, Any]:
        while not self._messages:
            self._wakeup.clear()
            self._drained.set()
            await self._wakeup.wait()
        message = self._messages.popleft()
        if len(self._messages) <= self._high_water:
            self._drained.set()
        return message

    async def _start(self, send: Send, status: int, headers: Mapping[str, str]) -> None:
        self.head_sent = True
        await send({"type": "http.response.start", "status": status, "headers": _encode_headers(headers)})

    async def pump(self, send: Send) -> bool:
        """Forward queued messages to ``send``; return true on a completed response."""
        try:
            while True:
                kind, first, second = await self._next()
                if kind == "head":
                    await self._start(send, first, second)
                elif kind == "body":
                    if not self.head_sent:
                        await self._start(send, self._implicit_status, {})
                    await send({"type": "http.response.body", "body": first, "more_body": True})
                elif kind == "end":
                    if not self.head_sent:
                        await self._start(send, self._implicit_status, {})
                    await send({"type": "http.response.body", "body": first or b"", "more_body": False})
                    return True
                else:
                    return False
        finally:
            self._finished = True
            self._drained.set()


Producer = Callable[[], Awaitable[Any]]

# Termination reasons raised by the producer itself rather than a watchdog or the client.
_PRODUCER_REASONS = frozenset({"completed", "error_boundary"})


class LifecycleResponse(Response):
    """Starlette response whose lifetime is owned by a `TerminationCoordinator`."""

    producer_settle_seconds = 5.0

    def __init__(
        self,
        coordinator: TerminationCoordinator,
        transport: QueuedTransport,
        producer: Producer,
    ) -> None:
        super().__init__()
        self.coordinator = coordinator
        self.transport = transport
        self._producer = producer

    async def _run_producer(self) -> None:
        coordinator = self.coordinator
        try:
            await self._producer()
        except Exception as exc:
            LOG.warning(
                "request production failed request_id=%s error=%s: %s",
                coordinator.request_id,
                type(exc).__name__,
                exc,
            )
            if coordinator.is_active:
                coordinator.terminate("error_boundary")
            return
        if coordinator.is_active:
            coordinator.terminate("completed")

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message.get("type") != "http.disconnect":
                continue
            if self.coordinator.is_active:
                LOG.info("client disconnected request_id=%s", self.coordinator.request_id)
                self.coordinator.terminate("client_disconnect")
            return

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        coordinator = self.coordinator
        producer_task = asyncio.create_task(self._run_producer())
        listener_task = asyncio.create_task(self._listen_for_disconnect(receive))
        completed = False
        try:
            completed = await self.transport.pump(send)
        except Exception as exc:
            LOG.warning("response send failed request_id=%s error=%s", coordinator.request_id, exc)
            coordinator.sink.destroy()
            coordinator.terminate("response_error")
        finally:
            producer_ended_it = coordinator.context.termination_reason in _PRODUCER_REASONS
            if completed and producer_ended_it and not producer_task.done():
                # Producer is still unwinding; its exception surfaces in _run_producer.
                await asyncio.wait({producer_task}, timeout=self.producer_settle_seconds)
            for task in (listener_task, producer_task):
                if not task.done():
                    task.cancel()
            for task in (listener_task, producer_task):
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if coordinator.is_active:
                coordinator.terminate("completed")
            if coordinator.record is not None:
                await coordinator.record.handle
        if self.background is not None:
            await self.background()
