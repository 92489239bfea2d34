"""
限流（固定窗口计数，按 key 隔离）。

为什么需要这个模块：
- 入站：/review、/analyze 这类会触发外部调用的接口，按客户端 IP 限流
- 出站：GitHub / LLM 每类调用一个 key（例如 `github:get_pull_request`、`llm:chat`），
  宁可本地拒绝，也不要把上游打到 429

注意：
- 状态只在进程内存里，由 composition root（`app/main.py`）持有实例
- 过期窗口在 `check` 时按间隔惰性清理，也可以手动 `cleanup()`
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0


class RateLimitExceededError(RuntimeError):
    """超过限流窗口时抛出的错误类型。"""

    def __init__(self, identity: str, reset_at: float) -> None:
        super().__init__(f"Rate limit exceeded for {identity}")
        self.identity = identity
        self.reset_at = reset_at


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class SlidingWindowRateLimiter:
    """按 key 计数的窗口限流器：窗口内超过 `max_requests` 的请求被拒绝。"""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._cleanup_interval = cleanup_interval_seconds
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, key: str) -> RateLimitResult:
        """
        记一次请求并返回是否放行。

        - 首次使用或 `now > reset_at`：新开窗口，count=1
        - 窗口内 count 超过上限：拒绝，remaining=0
        """
        if not key:
            raise ValueError("key must be non-empty")
        now = self._clock()
        with self._lock:
            if now - self._last_cleanup >= self._cleanup_interval:
                self._cleanup_locked(now)

            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + self._window_seconds)
                self._windows[key] = window
                return RateLimitResult(allowed=True, remaining=self._max_requests - 1, reset_at=window.reset_at)

            window.count += 1
            if window.count > self._max_requests:
                return RateLimitResult(allowed=False, remaining=0, reset_at=window.reset_at)
            return RateLimitResult(
                allowed=True,
                remaining=self._max_requests - window.count,
                reset_at=window.reset_at,
            )

    def enforce(self, key: str) -> RateLimitResult:
        """同 `check`，但被拒绝时抛 `RateLimitExceededError`。"""
        result = self.check(key)
        if not result.allowed:
            raise RateLimitExceededError(identity=key, reset_at=result.reset_at)
        return result

    def cleanup(self) -> int:
        """删除已过期的窗口，返回删除数量。"""
        with self._lock:
            return self._cleanup_locked(self._clock())

    def _cleanup_locked(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if window.reset_at < now]
        for key in expired:
            del self._windows[key]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
