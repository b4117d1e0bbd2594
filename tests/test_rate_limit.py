import pytest

from streamkoppler.errors import RateLimitFault
from streamkoppler.rate_limit import FixedWindowRateLimiter, client_key


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_limiter_counts_hits_inside_window() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(2, 60.0, clock=clock)

    first = limiter.hit("a")
    second = limiter.hit("a")
    third = limiter.hit("a")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert third.retry_after == 60
    assert third.headers()["Retry-After"] == "60"
    assert limiter.hit("b").allowed is True


def test_window_resets_after_expiry() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(1, 10.0, clock=clock)
    limiter.hit("a")
    clock.now += 10.0

    assert limiter.hit("a").allowed is True


def test_check_raises_fault_with_budget_headers() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(1, 30.0, clock=clock)
    decision = limiter.check("a")
    assert decision.headers() == {
        "X-RateLimit-Limit": "1",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "1030",
    }
    clock.now += 12.5
    with pytest.raises(RateLimitFault) as info:
        limiter.check("a", request_id="r1")
    assert info.value.retry_after == 18
    assert info.value.headers["Retry-After"] == "18"
    assert info.value.request_id == "r1"


def test_prune_forgets_expired_windows() -> None:
    clock = _Clock()
    limiter = FixedWindowRateLimiter(5, 10.0, clock=clock)
    limiter.hit("a")
    clock.now += 5
    limiter.hit("b")
    clock.now += 6

    assert limiter.prune() == 1


def test_client_key_defaults() -> None:
    assert client_key(None, None) == "unknown:anonymous"
    assert client_key("10.0.0.1", "sk") == "10.0.0.1:sk"
