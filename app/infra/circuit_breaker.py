"""
熔断器（CLOSED / OPEN / HALF_OPEN 三态）。

状态转换：
- CLOSED -> OPEN：连续失败次数达到 `failure_threshold`
- OPEN -> HALF_OPEN：距最后一次失败超过 `reset_timeout_seconds`，下一次调用作为试探放行
- HALF_OPEN -> CLOSED：连续 `success_threshold` 次成功
- HALF_OPEN -> OPEN：试探失败立即重新打开

注意：
- OPEN 期间直接抛 `CircuitOpenError`，不会调用被包裹的操作
- HALF_OPEN 同一时刻只放行一个试探调用，其余调用按 OPEN 处理
- 熔断器本身不吞异常：被包裹操作的异常原样抛出
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(RuntimeError):
    """熔断打开时的快速失败错误（可重试：由队列的 fail/retry 处理）。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is OPEN")
        self.name = name


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    reset_timeout_seconds: float
    success_threshold: int = 2


class CircuitBreaker:
    """保护一个下游依赖的熔断器实例（进程级生命周期，由 composition root 持有）。"""

    def __init__(self, name: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        if config.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if config.success_threshold <= 0:
            raise ValueError("success_threshold must be > 0")
        self._name = name
        self._config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._last_failure_time = 0.0
        self._trial_in_flight = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """在熔断保护下执行一次异步操作。"""
        is_trial = self._acquire()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        else:
            self._on_success(is_trial)
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _acquire(self) -> bool:
        """决定本次调用是否放行；返回 True 表示这是一次 HALF_OPEN 试探。"""
        if self._state is CircuitState.OPEN:
            if self._clock() - self._last_failure_time < self._config.reset_timeout_seconds:
                raise CircuitOpenError(self._name)
            self._transition(CircuitState.HALF_OPEN)
            self._successes = 0

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self._name)
            self._trial_in_flight = True
            return True
        return False

    def _on_success(self, is_trial: bool) -> None:
        self._failures = 0
        # 只有试探调用计入恢复：CLOSED 时发出、HALF_OPEN 时才返回的调用不算
        if is_trial and self._state is CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._config.success_threshold:
                self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()
        if self._state is CircuitState.HALF_OPEN or self._failures >= self._config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        logger.info(f"Circuit breaker '{self._name}': {self._state.value} -> {state.value}")
        self._state = state


def build_github_circuit_breaker(clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    """GitHub API：5 次连续失败打开，60s 后试探。"""
    return CircuitBreaker(
        name="github",
        config=CircuitBreakerConfig(failure_threshold=5, reset_timeout_seconds=60.0),
        clock=clock,
    )


def build_llm_circuit_breaker(clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
    """LLM provider：3 次连续失败打开，30s 后试探。"""
    return CircuitBreaker(
        name="llm",
        config=CircuitBreakerConfig(failure_threshold=3, reset_timeout_seconds=30.0),
        clock=clock,
    )
