"""Process-wide table of live requests with hang, leak and race detection.

Coordinators report into the registry; the registry never calls back into a
coordinator. All timestamps come from an injectable clock so tests can move
time forward without sleeping.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

LOG = logging.getLogger(__name__)

_EVENT_LOG_LIMIT = 50


@dataclass
class HangingThresholds:
    """Independent OR-conditions that flag a live request as hanging."""

    max_age: float = 120.0
    max_inactivity: float = 60.0
    max_timeout_events: int = 2
    max_resources: int = 10


@dataclass
class RegistryEntry:
    """Diagnostic row for one request."""

    request_id: str
    metadata: dict[str, Any]
    started_at: float
    last_activity_at: float
    wall_started_at: str
    status: str = "active"
    reason: str | None = None
    ended_at: float | None = None
    duration: float | None = None
    details: dict[str, Any] = field(default_factory=dict)
    resources: set[str] = field(default_factory=set)
    timeout_events: list[dict[str, Any]] = field(default_factory=list)
    race_events: list[dict[str, Any]] = field(default_factory=list)
    counted_hanging: bool = False

    @property
    def active(self) -> bool:
        return self.status == "active"


class ConcurrencyRegistry:
    """Tracks every request of this process for operational diagnostics."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        grace_seconds: float = 5.0,
        thresholds: HangingThresholds | None = None,
        slow_completion_seconds: float = 60.0,
        hanging_rate_alert: float = 5.0,
        leak_rate_alert: float = 2.0,
    ) -> None:
        self._clock = clock
        self.grace_seconds = grace_seconds
        self.thresholds = thresholds or HangingThresholds()
        self.slow_completion_seconds = slow_completion_seconds
        self.hanging_rate_alert = hanging_rate_alert
        self.leak_rate_alert = leak_rate_alert

        self._rows: dict[str, RegistryEntry] = {}
        self._resource_usage: dict[str, set[str]] = {}
        self._leaks_counted: set[tuple[str, str]] = set()
        self._cleanup_events: list[dict[str, Any]] = []
        self._durations_total = 0.0
        self._completed_count = 0
        self._counters = {
            "total_requests": 0,
            "timeout_conflicts": 0,
            "resource_leaks": 0,
            "race_conditions": 0,
            "hanging_requests": 0,
        }
        self._sweep_task: asyncio.Task[None] | None = None

    def now(self) -> float:
        return self._clock()

    # -- request lifecycle -------------------------------------------------

    def register(self, request_id: str, metadata: dict[str, Any] | None = None) -> RegistryEntry:
        """Add a request row; re-registering an id replaces the stale row."""
        if request_id in self._rows:
            LOG.warning("registry id reused request_id=%s", request_id)
            self.cleanup(request_id)
        now = self._clock()
        entry = RegistryEntry(
            request_id=request_id,
            metadata=dict(metadata or {}),
            started_at=now,
            last_activity_at=now,
            wall_started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._rows[request_id] = entry
        self._counters["total_requests"] += 1
        LOG.debug("registry register request_id=%s metadata=%s", request_id, entry.metadata)
        return entry

    def touch(self, request_id: str) -> None:
        entry = self._rows.get(request_id)
        if entry is not None and entry.active:
            entry.last_activity_at = self._clock()

    def track_resource(self, request_id: str, key: str) -> None:
        """Attribute an external resource to a request."""
        entry = self._rows.get(request_id)
        if entry is None:
            LOG.debug("registry resource for unknown request request_id=%s key=%s", request_id, key)
            return
        entry.resources.add(key)
        self._resource_usage.setdefault(key, set()).add(request_id)

    def release_resource(self, request_id: str, key: str) -> None:
        """Drop one resource attribution after its owner released it."""
        entry = self._rows.get(request_id)
        if entry is not None:
            entry.resources.discard(key)
        self._leaks_counted.discard((key, request_id))
        users = self._resource_usage.get(key)
        if users is None:
            return
        users.discard(request_id)
        if not users:
            del self._resource_usage[key]

    def track_timeout_event(self, request_id: str, name: str) -> None:
        """Record a fired watchdog; a second one on the same request is a conflict."""
        entry = self._rows.get(request_id)
        if entry is None:
            return
        entry.timeout_events.append({"name": name, "at": self._clock()})
        if len(entry.timeout_events) > 1:
            self._counters["timeout_conflicts"] += 1
            self.track_race_event(
                request_id,
                "timeout_conflict",
                {"timeouts": [event["name"] for event in entry.timeout_events]},
            )

    def track_race_event(self, request_id: str, kind: str, details: dict[str, Any] | None = None) -> None:
        """Record a detected race between completion sources."""
        self._counters["race_conditions"] += 1
        event = {"kind": kind, "details": dict(details or {}), "at": self._clock()}
        entry = self._rows.get(request_id)
        if entry is not None:
            entry.race_events.append(event)
            del entry.race_events[:-_EVENT_LOG_LIMIT]
        LOG.warning("race detected request_id=%s kind=%s details=%s", request_id, kind, event["details"])

    def complete(self, request_id: str, status: str = "completed", details: dict[str, Any] | None = None) -> None:
        """Mark a request finished and schedule its eviction."""
        entry = self._rows.get(request_id)
        if entry is None:
            LOG.debug("registry complete for unknown request request_id=%s", request_id)
            return
        if not entry.active:
            return
        now = self._clock()
        entry.status = status
        entry.reason = (details or {}).get("reason", entry.reason)
        entry.details = dict(details or {})
        entry.ended_at = now
        entry.duration = now - entry.started_at
        self._completed_count += 1
        self._durations_total += entry.duration
        if entry.duration > self.slow_completion_seconds:
            self._count_hanging(entry)
            LOG.warning(
                "slow request completed request_id=%s duration=%.3fs status=%s",
                request_id,
                entry.duration,
                status,
            )
        LOG.debug("registry complete request_id=%s status=%s duration=%.3fs", request_id, status, entry.duration)
        with contextlib.suppress(RuntimeError):
            loop = asyncio.get_running_loop()
            loop.call_later(self.grace_seconds, self._evict_if_expired, request_id)

    def _count_hanging(self, entry: RegistryEntry) -> None:
        if entry.counted_hanging:
            return
        entry.counted_hanging = True
        self._counters["hanging_requests"] += 1

    def _evict_if_expired(self, request_id: str) -> None:
        entry = self._rows.get(request_id)
        if entry is None or entry.ended_at is None:
            return
        if self._clock() - entry.ended_at >= self.grace_seconds:
            self.cleanup(request_id)

    def evict_expired(self) -> int:
        """Evict finished rows whose grace window elapsed."""
        now = self._clock()
        expired = [
            rid
            for rid, entry in self._rows.items()
            if entry.ended_at is not None and now - entry.ended_at >= self.grace_seconds
        ]
        for rid in expired:
            self.cleanup(rid)
        return len(expired)

    def cleanup(self, request_id: str) -> bool:
        """Evict a row immediately and drop its resource attributions."""
        entry = self._rows.pop(request_id, None)
        if entry is None:
            return False
        for key in list(entry.resources):
            self._leaks_counted.discard((key, request_id))
            users = self._resource_usage.get(key)
            if users is None:
                continue
            users.discard(request_id)
            if not users:
                del self._resource_usage[key]
        self._cleanup_events.append(
            {"request_id": request_id, "status": entry.status, "resources": len(entry.resources), "at": self._clock()}
        )
        del self._cleanup_events[:-_EVENT_LOG_LIMIT]
        return True

    # -- detectors ---------------------------------------------------------

    def detect_hanging(self) -> list[dict[str, Any]]:
        """Return live requests matching any hanging condition."""
        now = self._clock()
        limits = self.thresholds
        hanging: list[dict[str, Any]] = []
        for entry in self._rows.values():
            if not entry.active:
                continue
            age = now - entry.started_at
            inactivity = now - entry.last_activity_at
            reasons: list[str] = []
            if age > limits.max_age:
                reasons.append("max_age_exceeded")
            if inactivity > limits.max_inactivity:
                reasons.append("inactive")
            if len(entry.timeout_events) > limits.max_timeout_events:
                reasons.append("excessive_timeouts")
            if len(entry.resources) > limits.max_resources:
                reasons.append("excessive_resources")
            if not reasons:
                continue
            self._count_hanging(entry)
            hanging.append(
                {
                    "request_id": entry.request_id,
                    "age": age,
                    "inactivity": inactivity,
                    "timeout_events": len(entry.timeout_events),
                    "resources": len(entry.resources),
                    "reasons": reasons,
                    "metadata": entry.metadata,
                }
            )
        if hanging:
            LOG.error("hanging requests detected count=%s ids=%s", len(hanging), [h["request_id"] for h in hanging])
        return hanging

    def detect_leaks(self) -> list[dict[str, Any]]:
        """Return resource keys still attributed to requests that are no longer live."""
        leaks: list[dict[str, Any]] = []
        new_leaks = 0
        for key, users in self._resource_usage.items():
            stale = sorted(rid for rid in users if rid not in self._rows or not self._rows[rid].active)
            if not stale:
                continue
            leaks.append({"resource": key, "stale_requests": stale, "users": len(users)})
            for rid in stale:
                if (key, rid) not in self._leaks_counted:
                    self._leaks_counted.add((key, rid))
                    new_leaks += 1
        if new_leaks:
            self._counters["resource_leaks"] += new_leaks
            LOG.warning("resource leaks detected new=%s outstanding=%s", new_leaks, len(leaks))
        return leaks

    # -- reporting ---------------------------------------------------------

    def metrics(self) -> dict[str, Any]:
        """Return totals plus rates as percentages of all requests seen."""
        total = self._counters["total_requests"]
        denominator = max(total, 1)
        hanging = self._counters["hanging_requests"]
        active = sum(1 for entry in self._rows.values() if entry.active)
        average = self._durations_total / self._completed_count if self._completed_count else 0.0
        return {
            "total_requests": total,
            "active_requests": active,
            "tracked_requests": len(self._rows),
            "tracked_resources": len(self._resource_usage),
            "hanging_requests": hanging,
            "timeout_conflicts": self._counters["timeout_conflicts"],
            "resource_leaks": self._counters["resource_leaks"],
            "race_conditions": self._counters["race_conditions"],
            "average_request_duration_ms": round(average * 1000.0, 3),
            "rates": {
                "hanging_request_rate": hanging / denominator * 100.0,
                "resource_leak_rate": self._counters["resource_leaks"] / denominator * 100.0,
                "race_condition_rate": self._counters["race_conditions"] / denominator * 100.0,
                "timeout_conflict_rate": self._counters["timeout_conflicts"] / denominator * 100.0,
            },
        }

    def health(self) -> dict[str, Any]:
        """Summarize registry state as healthy, warning or critical."""
        metrics = self.metrics()
        rates = metrics["rates"]
        hanging_now = self.detect_hanging()
        issues: list[str] = []
        status = "healthy"
        if rates["hanging_request_rate"] > self.hanging_rate_alert or hanging_now:
            status = "critical"
            issues.append(f"{len(hanging_now)} hanging requests, rate {rates['hanging_request_rate']:.2f}%")
        else:
            if rates["hanging_request_rate"] > 2.0:
                issues.append(f"elevated hanging rate {rates['hanging_request_rate']:.2f}%")
            if metrics["resource_leaks"] > 0:
                issues.append(f"{metrics['resource_leaks']} resource leaks recorded")
            if rates["race_condition_rate"] > 1.0:
                issues.append(f"race condition rate {rates['race_condition_rate']:.2f}%")
            if issues:
                status = "warning"
        return {"status": status, "issues": issues, "metrics": metrics}

    def _describe(self, entry: RegistryEntry, now: float) -> dict[str, Any]:
        return {
            "request_id": entry.request_id,
            "status": entry.status,
            "reason": entry.reason,
            "metadata": entry.metadata,
            "started_at": entry.wall_started_at,
            "age": now - entry.started_at,
            "inactivity": now - entry.last_activity_at,
            "duration": entry.duration,
            "resources": sorted(entry.resources),
            "timeout_events": list(entry.timeout_events),
            "race_events": list(entry.race_events),
        }

    def request_details(self, request_id: str) -> dict[str, Any] | None:
        entry = self._rows.get(request_id)
        if entry is None:
            return None
        return self._describe(entry, self._clock())

    def list_requests(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        now = self._clock()
        return [
            self._describe(entry, now)
            for entry in self._rows.values()
            if entry.active or not active_only
        ]

    def recent_cleanups(self) -> list[dict[str, Any]]:
        return list(self._cleanup_events)

    def force_cleanup(self) -> int:
        """Mark every live row terminated with reason force_cleanup, then clear the table."""
        marked = 0
        for request_id, entry in list(self._rows.items()):
            if entry.active:
                self.complete(request_id, "terminated", {"reason": "force_cleanup"})
                marked += 1
        for request_id in list(self._rows):
            self.cleanup(request_id)
        self._resource_usage.clear()
        self._leaks_counted.clear()
        LOG.warning("registry force cleanup marked=%s", marked)
        return marked

    # -- background sweep --------------------------------------------------

    def sweep(self) -> dict[str, Any]:
        """Run both detectors, evict stale rows and alert on high rates."""
        evicted = self.evict_expired()
        hanging = self.detect_hanging()
        leaks = self.detect_leaks()
        metrics = self.metrics()
        rates = metrics["rates"]
        if rates["hanging_request_rate"] > self.hanging_rate_alert:
            LOG.error(
                "hanging request rate above threshold rate=%.2f threshold=%.2f",
                rates["hanging_request_rate"],
                self.hanging_rate_alert,
            )
        if rates["resource_leak_rate"] > self.leak_rate_alert:
            LOG.error(
                "resource leak rate above threshold rate=%.2f threshold=%.2f",
                rates["resource_leak_rate"],
                self.leak_rate_alert,
            )
        LOG.debug(
            "registry sweep evicted=%s hanging=%s leaks=%s active=%s",
            evicted,
            len(hanging),
            len(leaks),
            metrics["active_requests"],
        )
        return {"evicted": evicted, "hanging": hanging, "leaks": leaks, "metrics": metrics}

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                LOG.exception("registry sweep failed")

    def start(self, interval: float = 30.0) -> None:
        """Start the periodic sweep on the running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


_REGISTRY: ConcurrencyRegistry | None = None


def init_registry(**kwargs: Any) -> ConcurrencyRegistry:
    """Replace the process registry with a freshly configured one."""
    global _REGISTRY
    _REGISTRY = ConcurrencyRegistry(**kwargs)
    return _REGISTRY


def get_registry() -> ConcurrencyRegistry:
    """Return the process registry, creating a default one on first use."""
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = ConcurrencyRegistry()
    return _REGISTRY


def reset_registry() -> None:
    """Drop the process registry; the next `get_registry` starts empty."""
    global _REGISTRY
    _REGISTRY = None
