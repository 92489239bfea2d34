"""
持久化 review 任务队列（异步门面）。

生命周期：
  enqueue -> pending -> claim -> processing -> completed
                                    |-> fail：attempts < max -> pending（带 next_retry_at 退避）
                                    |-> fail：attempts >= max -> failed（终态）
  processing 超过 10 分钟没结束（worker 崩溃）-> recover_stale_jobs 放回 pending
  failed 超过 7 天 -> move_to_dead_letter 搬进死信表

说明：
- 原子性由 store 保证（insert-if-absent / 条件 update）；这里不持有任何跨 await 的锁
- store 是同步阻塞实现，统一通过 `anyio.to_thread.run_sync` 调用
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import anyio

from app.storage.base import ReviewStore
from app.storage.models import DeadLetterJob
from app.storage.models import FailedJobSummary
from app.storage.models import JobStats
from app.storage.models import ReviewJob

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_BASE_DELAY = timedelta(seconds=30)
RETRY_MULTIPLIER = 4
RETRY_MAX_DELAY = timedelta(seconds=480)
STALE_JOB_TIMEOUT = timedelta(minutes=10)
DEAD_LETTER_RETENTION = timedelta(days=7)
DEFAULT_MAX_ATTEMPTS = 3


class DuplicateJobError(RuntimeError):
    """同一 PR 已有 pending/processing 任务。"""

    def __init__(self, repo_full_name: str, pr_number: int) -> None:
        super().__init__("Review already queued")
        self.repo_full_name = repo_full_name
        self.pr_number = pr_number


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_retry_delay(attempts: int) -> timedelta:
    """第 `attempts` 次失败后的重试等待：`min(30s * 4^attempts, 480s)`。"""
    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    # 指数封顶，避免 timedelta 溢出
    exponent = min(attempts, 8)
    return min(RETRY_BASE_DELAY * RETRY_MULTIPLIER**exponent, RETRY_MAX_DELAY)


class JobQueue:
    def __init__(
        self,
        store: ReviewStore,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._store = store
        self._clock = clock
        self._max_attempts = max_attempts

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await anyio.to_thread.run_sync(functools.partial(func, *args))

    async def enqueue(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        analysis: dict[str, Any] | None = None,
    ) -> ReviewJob:
        """
        新建一个 pending 任务。

        - 同一 PR 已有 pending/processing 任务时抛 `DuplicateJobError`
        - 判重与插入是同一个原子操作
        """
        now = self._clock()
        repo_full_name = f"{owner}/{repo}"
        job = ReviewJob(
            id=str(uuid.uuid4()),
            repo_full_name=repo_full_name,
            pr_number=pr_number,
            owner=owner,
            repo=repo,
            max_attempts=self._max_attempts,
            analysis=analysis,
            created_at=now,
            updated_at=now,
        )
        inserted = await self._run(self._store.insert_job_if_absent, job)
        if inserted is None:
            logger.info(f"Review already queued for {repo_full_name}#{pr_number}")
            raise DuplicateJobError(repo_full_name=repo_full_name, pr_number=pr_number)
        logger.info(f"Enqueued review job {inserted.id} for {repo_full_name}#{pr_number}")
        return inserted

    async def claim(self) -> ReviewJob | None:
        """领取最早的可执行任务（pending 且已过 next_retry_at），没有则返回 None。"""
        job = await self._run(self._store.claim_next_job, self._clock())
        if job is not None:
            logger.info(f"Claimed job {job.id} ({job.repo_full_name}#{job.pr_number}, attempts={job.attempts})")
        return job

    async def complete(self, job_id: str) -> None:
        await self._run(self._store.complete_job, job_id, self._clock())
        logger.info(f"Job {job_id} completed")

    async def fail(self, job_id: str, error: str, attempts: int, max_attempts: int | None = None) -> bool:
        """
        记录一次失败。

        - attempts < max_attempts：放回 pending，`next_retry_at = now + compute_retry_delay(attempts)`，返回 False
        - 否则标记 failed（终态），返回 True
        """
        limit = max_attempts if max_attempts is not None else self._max_attempts
        now = self._clock()
        terminal = attempts >= limit
        next_retry_at = None if terminal else now + compute_retry_delay(attempts)
        await self._run(self._store.update_job_failure, job_id, error, attempts, terminal, next_retry_at, now)
        if terminal:
            logger.error(f"Job {job_id} permanently failed after {attempts} attempt(s): {error}")
        else:
            logger.warning(f"Job {job_id} failed (attempt {attempts}/{limit}), retry at {next_retry_at}: {error}")
        return terminal

    async def recover_stale_jobs(self) -> int:
        """processing 状态超过 10 分钟的任务放回 pending，返回数量。"""
        now = self._clock()
        count = await self._run(self._store.reset_stale_jobs, now - STALE_JOB_TIMEOUT, now)
        if count:
            logger.warning(f"Recovered {count} stale job(s)")
        return count

    async def get(self, job_id: str) -> ReviewJob | None:
        return await self._run(self._store.get_job, job_id)

    async def stats(self) -> JobStats:
        now = self._clock()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self._run(self._store.job_stats, today_start)

    async def recent_failures(self, limit: int = 5) -> list[FailedJobSummary]:
        return await self._run(self._store.list_failed_jobs, limit)

    async def move_to_dead_letter(self, retention: timedelta = DEAD_LETTER_RETENTION) -> int:
        """终态失败且超过 `retention` 没有更新的任务搬进死信表，返回数量。"""
        now = self._clock()
        count = await self._run(self._store.move_failed_jobs_to_dead_letter, now - retention, now)
        if count:
            logger.info(f"Moved {count} failed job(s) to dead letter queue")
        return count

    async def dead_letter_jobs(self, limit: int = 20) -> list[DeadLetterJob]:
        return await self._run(self._store.list_dead_letter_jobs, limit)
