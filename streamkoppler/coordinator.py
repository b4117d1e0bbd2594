"""Single authority deciding when one request is done.

Every completion source (normal completion, upstream failure, client
disconnect, watchdogs) calls `TerminationCoordinator.terminate`. The first call
wins: it records its reason and runs the one teardown sequence. Every later
call gets the same awaitable and never re-runs teardown.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generator

from .config import TimeoutConfig
from .registry import ConcurrencyRegistry, get_registry
from .response_sink import ResponseSink, ResponseTransport
from .timers import TimerRegistry

LOG = logging.getLogger(__name__)

EndOfLifeCallback = Callable[[], Any]

_STATUS_BY_REASON = {
    "completed": "completed",
    "client_disconnect": "disconnected",
    "response_error": "error",
    "error_boundary": "error",
    "cancelled": "cancelled",
}


class RequestKind(str, Enum):
    PLAIN = "plain"
    INCREMENTAL = "incremental"


class RequestState(str, Enum):
    ACTIVE = "active"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass
class RequestContext:
    """Identity and bookkeeping for one inbound request."""

    id: str
    kind: RequestKind
    created_at: float
    last_activity_at: float
    state: RequestState = RequestState.ACTIVE
    termination_reason: str | None = None
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    resource_refs: set[str] = field(default_factory=set)
    timeout_events: list[str] = field(default_factory=list)
    race_events: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class TimeoutSettings:
    """Watchdog deadlines for one request, in seconds."""

    base: float
    streaming: float
    inactivity: float
    max_timeout: float

    @classmethod
    def from_config(cls, cfg: TimeoutConfig, model: str | None = None) -> "TimeoutSettings":
        """Derive per-request deadlines, extending them for slow model families."""
        base_ms = cfg.base_timeout_ms
        streaming_ms = cfg.streaming_timeout_ms
        max_ms = cfg.max_timeout_ms
        if cfg.uses_extended_timeouts(model):
            base_ms = streaming_ms = cfg.extended_timeout_ms
            max_ms = max(max_ms, cfg.extended_timeout_ms)
        return cls(
            base=base_ms / 1000.0,
            streaming=streaming_ms / 1000.0,
            inactivity=cfg.inactivity_timeout_ms / 1000.0,
            max_timeout=max_ms / 1000.0,
        )


class TerminationHandle:
    """Awaitable shared by every caller of `terminate` for one request.

    Awaiting is shielded, so cancelling one waiter never cancels the teardown
    the other waiters observe.
    """

    def __init__(self, future: asyncio.Future[None]) -> None:
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def _resolve(self) -> None:
        if not self._future.done():
            self._future.set_result(None)

    def __await__(self) -> Generator[Any, None, None]:
        return asyncio.shield(self._future).__await__()


@dataclass
class TerminationRecord:
    reason: str
    started_at: float
    handle: TerminationHandle
    completed_at: float | None = None


class TerminationCoordinator:
    """Arbitrates racing completion sources into one teardown."""

    def __init__(
        self,
        context: RequestContext,
        sink: ResponseSink,
        *,
        timeouts: TimeoutSettings,
        registry: ConcurrencyRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.context = context
        self.sink = sink
        self.timeouts = timeouts
        self.registry = registry
        self._clock = clock
        self.cancel_event = asyncio.Event()
        self.timers = TimerRegistry(
            context.id,
            max_delay=timeouts.max_timeout,
            activity_source=self._last_activity,
            clock=clock,
            on_fire=self._record_timeout_event,
        )
        self._callbacks: list[tuple[str, EndOfLifeCallback]] = [("cancel_signal", self.cancel_event.set)]
        self._timeout_handler: Callable[[str], Any] | None = None
        self._record: TerminationRecord | None = None
        self._teardown_task: asyncio.Task[None] | None = None

    @property
    def request_id(self) -> str:
        return self.context.id

    @property
    def state(self) -> RequestState:
        return self.context.state

    @property
    def is_active(self) -> bool:
        return self.context.state is RequestState.ACTIVE

    @property
    def record(self) -> TerminationRecord | None:
        return self._record

    def _last_activity(self) -> float:
        return self.context.last_activity_at

    # -- activity and resources --------------------------------------------

    def touch(self) -> None:
        """Record one unit of forwarded output."""
        if not self.is_active:
            return
        self.context.last_activity_at = self._clock()
        if self.registry is not None:
            self.registry.touch(self.context.id)

    def on_terminate(self, callback: EndOfLifeCallback, *, name: str | None = None) -> bool:
        """Register an end-of-life callback; refused once teardown started."""
        if not self.is_active:
            LOG.debug("end-of-life callback refused request_id=%s state=%s", self.context.id, self.context.state.value)
            return False
        self._callbacks.append((name or getattr(callback, "__name__", "callback"), callback))
        return True

    def register_resource(self, key: str, release: EndOfLifeCallback | None = None) -> bool:
        """Attribute an external resource to this request.

        With ``release`` the resource is released and untracked during
        teardown. Without it the owner must call `release_resource` itself;
        otherwise the leak detector reports it.
        """
        if not self.is_active:
            return False
        self.context.resource_refs.add(key)
        if self.registry is not None:
            self.registry.track_resource(self.context.id, key)
        if release is None:
            return True

        async def _release() -> None:
            try:
                result = release()
                if inspect.isawaitable(result):
                    await result
            finally:
                self.release_resource(key)

        self._callbacks.append((f"release:{key}", _release))
        return True

    def release_resource(self, key: str) -> None:
        self.context.resource_refs.discard(key)
        if self.registry is not None:
            self.registry.release_resource(self.context.id, key)

    # -- watchdogs -----------------------------------------------------------

    def set_timeout_handler(self, handler: Callable[[str], Any] | None) -> None:
        """Install the function that tells the client about a fired watchdog."""
        self._timeout_handler = handler

    def install_automatic_timers(self) -> None:
        """Arm the watchdogs that match the request shape."""
        self.timers.set("base_timeout", self.timeouts.base, self._watchdog("base_timeout"))
        if self.context.kind is not RequestKind.INCREMENTAL:
            return
        self.timers.set("streaming_timeout", self.timeouts.streaming, self._watchdog("streaming_timeout"))
        self.timers.set(
            "inactivity_timeout",
            self.timeouts.inactivity,
            self._watchdog("inactivity_timeout"),
            renewable=True,
        )

    def begin_streaming(self) -> None:
        """Restart the streaming cap when the first byte of a stream goes out."""
        if not self.is_active or self.context.kind is not RequestKind.INCREMENTAL:
            return
        self.timers.set("streaming_timeout", self.timeouts.streaming, self._watchdog("streaming_timeout"))

    def _watchdog(self, reason: str) -> Callable[[], Any]:
        async def _expire() -> None:
            if not self.is_active:
                return
            handler = self._timeout_handler
            if handler is not None:
                try:
                    result = handler(reason)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    LOG.exception("timeout handler failed request_id=%s reason=%s", self.context.id, reason)
            await self.terminate(reason)

        _expire.__name__ = f"expire_{reason}"
        return _expire

    def _record_timeout_event(self, name: str) -> None:
        self.context.timeout_events.append(name)
        if self.registry is not None:
            self.registry.track_timeout_event(self.context.id, name)

    # -- termination -----------------------------------------------------------

    def terminate(self, reason: str) -> TerminationHandle:
        """Move to Terminating once and return the shared completion handle.

        Must be called from code running on the event loop.
        """
        record = self._record
        if record is not None:
            if reason != record.reason:
                self._record_race(record.reason, reason)
            return record.handle

        loop = asyncio.get_running_loop()
        record = TerminationRecord(
            reason=reason,
            started_at=self._clock(),
            handle=TerminationHandle(loop.create_future()),
        )
        self._record = record
        self.context.state = RequestState.TERMINATING
        self.context.termination_reason = reason
        self.timers.close()
        LOG.info("request terminating request_id=%s reason=%s", self.context.id, reason)
        self._teardown_task = loop.create_task(self._teardown(record))
        return record.handle

    def abort(self, reason: str = "aborted") -> TerminationHandle:
        """Release the transport immediately, then terminate."""
        if self.is_active:
            self.sink.destroy()
        return self.terminate(reason)

    def _record_race(self, winner: str, contender: str) -> None:
        details = {"winner": winner, "contender": contender, "state": self.context.state.value}
        self.context.race_events.append(details)
        LOG.debug("termination race lost request_id=%s winner=%s contender=%s", self.context.id, winner, contender)
        if self.registry is None:
            return
        try:
            self.registry.track_race_event(self.context.id, "termination_race", details)
        except Exception:
            LOG.exception("race report failed request_id=%s", self.context.id)

    async def _teardown(self, record: TerminationRecord) -> None:
        try:
            self.timers.close()
            await self._run_callbacks()
        finally:
            if not self.sink.ended:
                self.sink.end()
            self.context.state = RequestState.TERMINATED
            record.completed_at = self._clock()
            self._report(record)
            record.handle._resolve()

    async def _run_callbacks(self) -> None:
        callbacks, self._callbacks = self._callbacks, []
        for name, callback in callbacks:
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOG.exception("end-of-life callback failed request_id=%s callback=%s", self.context.id, name)

    def _report(self, record: TerminationRecord) -> None:
        elapsed = (record.completed_at or record.started_at) - record.started_at
        LOG.info(
            "request terminated request_id=%s reason=%s teardown=%.3fs",
            self.context.id,
            record.reason,
            elapsed,
        )
        if self.registry is None:
            return
        reason = record.reason
        status = _STATUS_BY_REASON.get(reason) or ("timeout" if reason.endswith("_timeout") else "terminated")
        try:
            self.registry.complete(self.context.id, status, {"reason": reason, "teardown_seconds": elapsed})
        except Exception:
            LOG.exception("registry completion report failed request_id=%s", self.context.id)

    def timeout_status(self) -> dict[str, Any]:
        """Describe deadlines and activity for diagnostics."""
        now = self._clock()
        return {
            "request_id": self.context.id,
            "kind": self.context.kind.value,
            "state": self.context.state.value,
            "reason": self.context.termination_reason,
            "age": now - self.context.created_at,
            "inactivity": now - self.context.last_activity_at,
            "timers": self.timers.status(),
            "sink": self.sink.snapshot(),
        }


def create_coordinator(
    request_id: str,
    kind: RequestKind,
    timeout_config: TimeoutConfig | TimeoutSettings,
    transport: ResponseTransport,
    *,
    registry: ConcurrencyRegistry | None = None,
    model: str | None = None,
    metadata: dict[str, Any] | None = None,
    clock: Callable[[], float] = time.monotonic,
    install_timers: bool = True,
) -> TerminationCoordinator:
    """Ingress entry point: build, register and arm one request's coordinator."""
    if isinstance(timeout_config, TimeoutConfig):
        timeouts = TimeoutSettings.from_config(timeout_config, model)
    else:
        timeouts = timeout_config
    if registry is None:
        registry = get_registry()
    now = clock()
    context = RequestContext(
        id=request_id,
        kind=kind,
        created_at=now,
        last_activity_at=now,
        model=model,
        metadata=dict(metadata or {}),
    )
    sink = ResponseSink(transport, request_id=request_id)
    coordinator = TerminationCoordinator(context, sink, timeouts=timeouts, registry=registry, clock=clock)
    registry.register(request_id, {"kind": kind.value, "model": model, **context.metadata})
    if install_timers:
        coordinator.install_automatic_timers()
    LOG.debug(
        "coordinator created request_id=%s kind=%s base=%.3fs streaming=%.3fs inactivity=%.3fs",
        request_id,
        kind.value,
        timeouts.base,
        timeouts.streaming,
        timeouts.inactivity,
    )
    return coordinator
