"""
存储接口协议（依赖倒置：队列 / orchestrator 只依赖这里，方便替换 Postgres / Memory）。

约定：
- 方法全部是**同步阻塞**调用；异步侧通过 `anyio.to_thread.run_sync` 调用
- `insert_job_if_absent` / `claim_next_job` 必须是原子操作（多个 worker 并发安全）
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from app.storage.models import DeadLetterJob
from app.storage.models import FailedJobSummary
from app.storage.models import JobStats
from app.storage.models import RepoConfig
from app.storage.models import ReviewHistoryRecord
from app.storage.models import ReviewJob


class ReviewStore(Protocol):
    def insert_job_if_absent(self, job: ReviewJob) -> ReviewJob | None:
        """同一 PR 已有 pending/processing 任务时返回 None。"""
        ...

    def claim_next_job(self, now: datetime) -> ReviewJob | None: ...

    def complete_job(self, job_id: str, now: datetime) -> None: ...

    def update_job_failure(
        self,
        job_id: str,
        error: str,
        attempts: int,
        terminal: bool,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> None: ...

    def reset_stale_jobs(self, started_before: datetime, now: datetime) -> int: ...

    def get_job(self, job_id: str) -> ReviewJob | None: ...

    def job_stats(self, today_start: datetime) -> JobStats: ...

    def list_failed_jobs(self, limit: int) -> list[FailedJobSummary]: ...

    def insert_review_history(self, record: ReviewHistoryRecord) -> None: ...

    def get_last_reviewed_sha(self, repo_full_name: str, pr_number: int) -> str | None:
        """最近一次 status=completed 的 review 对应的 head sha。"""
        ...

    def list_recent_review_keys(self, since: datetime) -> set[tuple[str, int, str]]:
        """`since` 之后写入的 review 历史：(repo_full_name, pr_number, head_sha)。"""
        ...

    def get_repo_config(self, full_name: str) -> RepoConfig: ...

    def list_auto_review_repos(self) -> list[RepoConfig]:
        """enabled 且 auto_review 的仓库（轮询入队用）。"""
        ...

    def move_failed_jobs_to_dead_letter(self, updated_before: datetime, now: datetime) -> int:
        """把 `updated_before` 之前就已终态失败的任务搬进死信表，返回搬移数量。"""
        ...

    def list_dead_letter_jobs(self, limit: int) -> list[DeadLetterJob]: ...
