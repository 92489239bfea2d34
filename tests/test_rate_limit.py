from __future__ import annotations

import pytest

from app.infra.rate_limit import RateLimitExceededError
from app.infra.rate_limit import SlidingWindowRateLimiter


def test_allows_up_to_max_requests_then_denies(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)
    results = [limiter.check("ip:1") for _ in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]


def test_keys_are_isolated(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    assert limiter.check("github:get_pull_request").allowed
    assert not limiter.check("github:get_pull_request").allowed
    assert limiter.check("llm:chat").allowed


def test_window_resets_after_expiry(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    first = limiter.check("k")
    assert not limiter.check("k").allowed

    clock.advance(60)
    assert not limiter.check("k").allowed  # now == reset_at，仍在窗口内

    clock.advance(1)
    result = limiter.check("k")
    assert result.allowed
    assert result.remaining == 0
    assert result.reset_at > first.reset_at


def test_enforce_raises_when_denied(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    limiter.enforce("k")
    with pytest.raises(RateLimitExceededError) as exc_info:
        limiter.enforce("k")
    assert exc_info.value.identity == "k"
    assert exc_info.value.reset_at == clock.now + 60


def test_cleanup_removes_expired_windows(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock)
    limiter.check("a")
    clock.advance(5)
    limiter.check("b")
    clock.advance(6)
    assert limiter.cleanup() == 1
    assert len(limiter) == 1


def test_lazy_cleanup_runs_on_interval(clock) -> None:
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock, cleanup_interval_seconds=300)
    for i in range(3):
        limiter.check(f"ip:{i}")
    clock.advance(301)
    limiter.check("ip:new")
    assert len(limiter) == 1


def test_rejects_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_requests=0, window_seconds=60)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_requests=1, window_seconds=0)
