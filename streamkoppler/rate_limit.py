"""Fixed-window request limiter keyed by client identity."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

from .errors import RateLimitFault

LOG = logging.getLogger(__name__)


@dataclass
class _Window:
    started_at: float
    count: int = 0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int

    def headers(self) -> dict[str, str]:
        """Headers describing the client's remaining budget."""
        out = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            out["Retry-After"] = str(self.retry_after)
        return out


class FixedWindowRateLimiter:
    """Counts hits per key inside windows that start at the key's first hit."""

    def __init__(self, limit: int, window_seconds: float = 60.0, *, clock: Callable[[], float] = time.time) -> None:
        self.limit = max(1, int(limit))
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._hits_since_prune = 0

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and report whether it may proceed."""
        now = self._clock()
        self._maybe_prune(now)
        window = self._windows.get(key)
        if window is None or now - window.started_at >= self.window_seconds:
            window = _Window(started_at=now)
            self._windows[key] = window
        reset_at = window.started_at + self.window_seconds
        if window.count >= self.limit:
            retry_after = max(1, int(math.ceil(reset_at - now)))
            LOG.info("rate limit exceeded key=%s limit=%s retry_after=%ss", key, self.limit, retry_after)
            return RateLimitDecision(False, self.limit, 0, reset_at, retry_after)
        window.count += 1
        return RateLimitDecision(True, self.limit, self.limit - window.count, reset_at, 0)

    def check(self, key: str, *, request_id: str | None = None) -> RateLimitDecision:
        """Like `hit`, but raise `RateLimitFault` when the key is over budget."""
        decision = self.hit(key)
        if not decision.allowed:
            raise RateLimitFault(
                retry_after=decision.retry_after,
                request_id=request_id,
                headers=decision.headers(),
            )
        return decision

    def _maybe_prune(self, now: float) -> None:
        self._hits_since_prune += 1
        if self._hits_since_prune >= 1000:
            self.prune(now)

    def prune(self, now: float | None = None) -> int:
        """Forget windows that already expired."""
        now = self._clock() if now is None else now
        stale = [key for key, window in self._windows.items() if now - window.started_at >= self.window_seconds]
        for key in stale:
            del self._windows[key]
        self._hits_since_prune = 0
        return len(stale)


def client_key(client_ip: str | None, api_key: str | None) -> str:
    """Build the limiter key from caller address and credential."""
    return f"{client_ip or 'unknown'}:{api_key or 'anonymous'}"
