"""Latch-guarded wrapper around one outbound response channel.

The sink is the only object that talks to a response transport. Each latch
(`headers_sent`, `ended`, `destroyed`) is checked and set without an await in
between, so interleaved tasks on one event loop cannot double-send headers or
finalize a response twice.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

LOG = logging.getLogger(__name__)


class ResponseTransport(Protocol):
    """Low-level response channel driven by a `ResponseSink`."""

    def send_head(self, status: int, headers: Mapping[str, str]) -> None: ...

    def send_body(self, data: bytes) -> None: ...

    def finish(self, data: bytes | None = None) -> None: ...

    def abort(self) -> None: ...


def _as_bytes(data: bytes | str) -> bytes:
    """Encode text payloads as UTF-8."""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


class ResponseSink:
    """Idempotent header/body/finalize operations over one transport."""

    def __init__(self, transport: ResponseTransport, *, request_id: str = "-") -> None:
        self._transport = transport
        self.request_id = request_id
        self._headers_sent = False
        self._ended = False
        self._destroyed = False
        self.status_code: int | None = None

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def can_write(self) -> bool:
        """Return true while body bytes may still be written."""
        return not self._ended and not self._destroyed

    def can_write_headers(self) -> bool:
        """Return true while the status line and headers are still unsent."""
        return not self._headers_sent and self.can_write()

    def write_headers(self, status: int, headers: Mapping[str, str] | None = None) -> bool:
        """Send status and headers once; later attempts report false."""
        if not self.can_write_headers():
            LOG.debug(
                "sink header write skipped request_id=%s headers_sent=%s ended=%s destroyed=%s",
                self.request_id,
                self._headers_sent,
                self._ended,
                self._destroyed,
            )
            return False
        self._headers_sent = True
        self.status_code = status
        try:
            self._transport.send_head(status, dict(headers or {}))
        except Exception as exc:
            LOG.warning("sink header write failed request_id=%s error=%s", self.request_id, exc)
            return False
        return True

    def write_chunk(self, data: bytes | str) -> bool:
        """Write one body chunk while the response is open."""
        if not self.can_write():
            return False
        payload = _as_bytes(data)
        if not payload:
            return True
        try:
            self._transport.send_body(payload)
        except Exception as exc:
            LOG.warning("sink chunk write failed request_id=%s error=%s", self.request_id, exc)
            return False
        return True

    def end(self, data: bytes | str | None = None) -> bool:
        """Finalize the response exactly once."""
        if not self.can_write():
            return False
        self._ended = True
        payload: bytes | None = None
        if data is not None:
            if self._headers_sent:
                LOG.debug(
                    "sink end dropped trailing payload after headers request_id=%s bytes=%s",
                    self.request_id,
                    len(_as_bytes(data)),
                )
            else:
                payload = _as_bytes(data)
        try:
            self._transport.finish(payload)
        except Exception as exc:
            LOG.warning("sink finalize failed request_id=%s error=%s", self.request_id, exc)
            return False
        return True

    def destroy(self) -> None:
        """Tear the transport down, even in the middle of a response."""
        if self._destroyed:
            return
        self._destroyed = True
        self._ended = True
        try:
            self._transport.abort()
        except Exception as exc:
            LOG.warning("sink destroy failed request_id=%s error=%s", self.request_id, exc)

    async def drain(self) -> None:
        """Wait for transport backpressure to clear, when the transport has any."""
        waiter = getattr(self._transport, "wait_drained", None)
        if waiter is None or not self.can_write():
            return
        await waiter()

    def snapshot(self) -> dict[str, Any]:
        """Return the latch state for diagnostics."""
        return {
            "headers_sent": self._headers_sent,
            "ended": self._ended,
            "destroyed": self._destroyed,
            "status_code": self.status_code,
            "can_write": self.can_write(),
        }
