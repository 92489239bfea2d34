"""
内存版 ReviewStore：只用于本地开发 / 单元测试。

一把 `threading.Lock` 保护全部状态，insert-if-absent 与 claim 都在同一个临界区内完成，
语义与 Postgres 版本（partial unique index + SKIP LOCKED）一致。
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from datetime import datetime

from app.storage.models import DeadLetterJob
from app.storage.models import FailedJobSummary
from app.storage.models import JobStats
from app.storage.models import JobStatus
from app.storage.models import LIVE_JOB_STATUSES
from app.storage.models import RepoConfig
from app.storage.models import ReviewHistoryRecord
from app.storage.models import ReviewJob


class InMemoryReviewStore:
    def __init__(self, repo_configs: Mapping[str, RepoConfig] | None = None) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, ReviewJob] = {}
        self._history: list[ReviewHistoryRecord] = []
        self._dead_letters: list[DeadLetterJob] = []
        self._repo_configs: dict[str, RepoConfig] = dict(repo_configs or {})

    def insert_job_if_absent(self, job: ReviewJob) -> ReviewJob | None:
        with self._lock:
            for existing in self._jobs.values():
                if (
                    existing.repo_full_name == job.repo_full_name
                    and existing.pr_number == job.pr_number
                    and existing.status in LIVE_JOB_STATUSES
                ):
                    return None
            self._jobs[job.id] = job
            return job

    def claim_next_job(self, now: datetime) -> ReviewJob | None:
        with self._lock:
            ready = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING and (job.next_retry_at is None or job.next_retry_at <= now)
            ]
            if not ready:
                return None
            oldest = min(ready, key=lambda j: j.created_at)
            claimed = oldest.model_copy(
                update={"status": JobStatus.PROCESSING, "started_at": now, "updated_at": now}
            )
            self._jobs[claimed.id] = claimed
            return claimed

    def complete_job(self, job_id: str, now: datetime) -> None:
        with self._lock:
            job = self._require(job_id)
            self._jobs[job_id] = job.model_copy(
                update={"status": JobStatus.COMPLETED, "completed_at": now, "updated_at": now}
            )

    def update_job_failure(
        self,
        job_id: str,
        error: str,
        attempts: int,
        terminal: bool,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> None:
        with self._lock:
            job = self._require(job_id)
            self._jobs[job_id] = job.model_copy(
                update={
                    "status": JobStatus.FAILED if terminal else JobStatus.PENDING,
                    "error": error,
                    "attempts": attempts,
                    "next_retry_at": None if terminal else next_retry_at,
                    "updated_at": now,
                }
            )

    def reset_stale_jobs(self, started_before: datetime, now: datetime) -> int:
        with self._lock:
            stale = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.PROCESSING and job.started_at is not None and job.started_at < started_before
            ]
            for job in stale:
                self._jobs[job.id] = job.model_copy(update={"status": JobStatus.PENDING, "updated_at": now})
            return len(stale)

    def get_job(self, job_id: str) -> ReviewJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def job_stats(self, today_start: datetime) -> JobStats:
        with self._lock:
            jobs = list(self._jobs.values())
        return JobStats(
            pending=sum(1 for j in jobs if j.status is JobStatus.PENDING),
            processing=sum(1 for j in jobs if j.status is JobStatus.PROCESSING),
            failed=sum(1 for j in jobs if j.status is JobStatus.FAILED),
            completed_today=sum(
                1
                for j in jobs
                if j.status is JobStatus.COMPLETED and j.completed_at is not None and j.completed_at >= today_start
            ),
        )

    def list_failed_jobs(self, limit: int) -> list[FailedJobSummary]:
        with self._lock:
            failed = [j for j in self._jobs.values() if j.status is JobStatus.FAILED]
        failed.sort(key=lambda j: j.updated_at, reverse=True)
        return [
            FailedJobSummary(
                id=j.id,
                repo_full_name=j.repo_full_name,
                pr_number=j.pr_number,
                error=j.error,
                attempts=j.attempts,
                updated_at=j.updated_at,
            )
            for j in failed[:limit]
        ]

    def insert_review_history(self, record: ReviewHistoryRecord) -> None:
        with self._lock:
            self._history.append(record)

    def get_last_reviewed_sha(self, repo_full_name: str, pr_number: int) -> str | None:
        with self._lock:
            matching = [
                r
                for r in self._history
                if r.repo_full_name == repo_full_name and r.pr_number == pr_number and r.status == "completed"
            ]
        if not matching:
            return None
        return max(matching, key=lambda r: r.created_at).head_sha

    def list_review_history(self, repo_full_name: str, pr_number: int) -> list[ReviewHistoryRecord]:
        with self._lock:
            return [r for r in self._history if r.repo_full_name == repo_full_name and r.pr_number == pr_number]

    def list_recent_review_keys(self, since: datetime) -> set[tuple[str, int, str]]:
        with self._lock:
            return {(r.repo_full_name, r.pr_number, r.head_sha) for r in self._history if r.created_at >= since}

    def get_repo_config(self, full_name: str) -> RepoConfig:
        with self._lock:
            config = self._repo_configs.get(full_name)
        return config if config is not None else RepoConfig(full_name=full_name)

    def list_auto_review_repos(self) -> list[RepoConfig]:
        with self._lock:
            return [c for c in self._repo_configs.values() if c.enabled and c.auto_review]

    def move_failed_jobs_to_dead_letter(self, updated_before: datetime, now: datetime) -> int:
        with self._lock:
            expired = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.FAILED and job.attempts >= job.max_attempts and job.updated_at < updated_before
            ]
            for job in expired:
                del self._jobs[job.id]
                self._dead_letters.append(
                    DeadLetterJob(
                        original_job_id=job.id,
                        repo_full_name=job.repo_full_name,
                        pr_number=job.pr_number,
                        owner=job.owner,
                        repo=job.repo,
                        attempts=job.attempts,
                        error=job.error,
                        analysis=job.analysis,
                        original_created_at=job.created_at,
                        moved_at=now,
                        metadata={
                            "status": job.status.value,
                            "max_attempts": job.max_attempts,
                            "started_at": job.started_at.isoformat() if job.started_at else None,
                            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                        },
                    )
                )
            return len(expired)

    def list_dead_letter_jobs(self, limit: int) -> list[DeadLetterJob]:
        with self._lock:
            moved = sorted(self._dead_letters, key=lambda d: d.moved_at, reverse=True)
        return moved[:limit]

    def _require(self, job_id: str) -> ReviewJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job id: {job_id}")
        return job
