from __future__ import annotations

import pytest

from app.infra.retry import RetryConfig
from app.infra.retry import compute_backoff_delay
from app.infra.retry import with_retry


class _Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_backoff_is_monotonic_and_capped() -> None:
    cfg = RetryConfig(max_attempts=10, base_delay=1.0, max_delay=30.0, multiplier=2.0)
    delays = [compute_backoff_delay(attempt=a, config=cfg) for a in range(1, 10)]
    assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert all(b >= a for a, b in zip(delays, delays[1:]))
    assert max(delays) == 30.0


def test_backoff_rejects_attempt_zero() -> None:
    with pytest.raises(ValueError):
        compute_backoff_delay(attempt=0, config=RetryConfig())


@pytest.mark.anyio
async def test_with_retry_succeeds_after_transient_failures() -> None:
    calls = 0
    sleep = _Recorder()

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("boom")
        return "ok"

    result = await with_retry(flaky, config=RetryConfig(max_attempts=3), retry_on=(ConnectionError,), sleep=sleep)
    assert result == "ok"
    assert calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_with_retry_reraises_last_error() -> None:
    calls = 0
    sleep = _Recorder()

    async def always_fails() -> None:
        nonlocal calls
        calls += 1
        raise ConnectionError(f"failure {calls}")

    with pytest.raises(ConnectionError, match="failure 3"):
        await with_retry(always_fails, config=RetryConfig(max_attempts=3), retry_on=(ConnectionError,), sleep=sleep)
    assert calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.anyio
async def test_with_retry_does_not_retry_other_errors() -> None:
    calls = 0
    sleep = _Recorder()

    async def bad_input() -> None:
        nonlocal calls
        calls += 1
        raise ValueError("not retryable")

    with pytest.raises(ValueError):
        await with_retry(bad_input, retry_on=(ConnectionError,), sleep=sleep)
    assert calls == 1
    assert sleep.delays == []
