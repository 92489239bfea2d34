"""
通用重试（指数退避）。

约定：
- 延迟公式：`min(base_delay * multiplier^(attempt-1), max_delay)`，不加 jitter
- 只重试 `retry_on` 里声明的异常类型，其它异常直接抛出
- 最后一次失败的异常原样抛出（不包装），便于上游按类型分类
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    """重试参数（单位：秒）。"""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0


def compute_backoff_delay(attempt: int, config: RetryConfig) -> float:
    """第 `attempt` 次失败后的等待时间（attempt 从 1 开始）。"""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(config.base_delay * config.multiplier ** (attempt - 1), config.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleep = anyio.sleep,
) -> T:
    """
    执行 `operation`，失败时按指数退避重试。

    - config: 不传则用默认 RetryConfig
    - retry_on: 可重试的异常类型
    - sleep: 可注入（测试里替换成不真正等待的实现）
    """
    cfg = config or RetryConfig()
    if cfg.max_attempts <= 0:
        raise ValueError("max_attempts must be > 0")

    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= cfg.max_attempts:
                raise
            delay = compute_backoff_delay(attempt=attempt, config=cfg)
            logger.warning(f"Attempt {attempt}/{cfg.max_attempts} failed ({exc!r}), retrying in {delay:.1f}s")
            await sleep(delay)
            attempt += 1
