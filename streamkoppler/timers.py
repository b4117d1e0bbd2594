"""Per-request named deadline timers on the running asyncio loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

LOG = logging.getLogger(__name__)

TimerCallback = Callable[[], Any]


@dataclass
class TimerEntry:
    """One scheduled deadline."""

    name: str
    delay: float
    callback: TimerCallback
    renewable: bool = False
    threshold: float | None = None
    deadline: float = 0.0
    rearm_count: int = 0
    handle: asyncio.TimerHandle | None = field(default=None, repr=False)


class TimerRegistry:
    """Named, cancelable watchdogs for one request.

    Renewable entries implement the rearm-on-activity pattern: when they come
    due they compare the idle time reported by ``activity_source`` with their
    threshold and reschedule themselves for the remaining delta instead of
    firing. Activity never touches the timer directly.
    """

    def __init__(
        self,
        request_id: str = "-",
        *,
        max_delay: float | None = None,
        activity_source: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_fire: Callable[[str], None] | None = None,
    ) -> None:
        self.request_id = request_id
        self._max_delay = max_delay
        self._activity_source = activity_source
        self._clock = clock
        self._on_fire = on_fire
        self._entries: dict[str, TimerEntry] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _capped(self, delay: float) -> float:
        delay = max(0.0, float(delay))
        if self._max_delay is not None:
            return min(delay, self._max_delay)
        return delay

    def set(
        self,
        name: str,
        delay: float,
        callback: TimerCallback,
        *,
        renewable: bool = False,
        threshold: float | None = None,
    ) -> TimerEntry | None:
        """Schedule ``callback`` after ``delay`` seconds, replacing any entry named ``name``."""
        if self._closed:
            LOG.debug("timer set ignored after close request_id=%s name=%s", self.request_id, name)
            return None
        self.clear(name)
        delay = self._capped(delay)
        entry = TimerEntry(
            name=name,
            delay=delay,
            callback=callback,
            renewable=renewable,
            threshold=threshold,
        )
        self._schedule(entry, delay)
        self._entries[name] = entry
        LOG.debug(
            "timer set request_id=%s name=%s delay=%.3fs renewable=%s",
            self.request_id,
            name,
            delay,
            renewable,
        )
        return entry

    def _schedule(self, entry: TimerEntry, delay: float) -> None:
        loop = asyncio.get_running_loop()
        entry.deadline = self._clock() + delay
        entry.handle = loop.call_later(delay, self._due, entry)

    def _due(self, entry: TimerEntry) -> None:
        """Loop callback for an entry whose deadline passed."""
        if self._closed or self._entries.get(entry.name) is not entry:
            return
        if entry.renewable and self._activity_source is not None:
            threshold = entry.threshold if entry.threshold is not None else entry.delay
            idle = self._clock() - self._activity_source()
            if idle < threshold:
                entry.rearm_count += 1
                self._schedule(entry, threshold - idle)
                return
        self._entries.pop(entry.name, None)
        LOG.info("timer fired request_id=%s name=%s delay=%.3fs", self.request_id, entry.name, entry.delay)
        if self._on_fire is not None:
            try:
                self._on_fire(entry.name)
            except Exception:
                LOG.exception("timer fire hook failed request_id=%s name=%s", self.request_id, entry.name)
        try:
            result = entry.callback()
        except Exception:
            LOG.exception("timer callback failed request_id=%s name=%s", self.request_id, entry.name)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error(
                "timer callback task failed request_id=%s error=%s",
                self.request_id,
                exc,
                exc_info=exc,
            )

    def clear(self, name: str) -> bool:
        """Cancel one entry; return whether it existed."""
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        if entry.handle is not None:
            entry.handle.cancel()
        return True

    def clear_all(self) -> int:
        """Cancel every entry and return how many were pending."""
        count = 0
        for name in list(self._entries):
            if self.clear(name):
                count += 1
        return count

    def close(self) -> int:
        """Invalidate the registry; no entry fires and no new entry is accepted."""
        self._closed = True
        return self.clear_all()

    def extend(self, name: str, extra: float) -> bool:
        """Push one pending deadline further out, still honouring the cap."""
        entry = self._entries.get(name)
        if entry is None or self._closed:
            return False
        if entry.handle is not None:
            entry.handle.cancel()
        remaining = max(0.0, entry.deadline - self._clock())
        entry.delay = self._capped(entry.delay + extra)
        self._schedule(entry, self._capped(remaining + extra))
        return True

    def names(self) -> list[str]:
        return list(self._entries)

    def status(self) -> list[dict[str, Any]]:
        """Describe pending entries for diagnostics."""
        now = self._clock()
        return [
            {
                "name": entry.name,
                "delay": entry.delay,
                "remaining": max(0.0, entry.deadline - now),
                "renewable": entry.renewable,
                "rearm_count": entry.rearm_count,
            }
            for entry in self._entries.values()
        ]
