"""
Postgres 版 ReviewStore（psycopg 3，同步连接；异步侧走 worker thread）。

原子性：
- 入队：partial unique index `uq_review_jobs_live` + `ON CONFLICT ... DO NOTHING`
- 领取：`UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING`，
  多个 worker 并发领取不会拿到同一个任务
- 死信：`DELETE ... RETURNING` 与插入 `review_jobs_dlq` 在同一条语句里
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import psycopg
from psycopg.types.json import Jsonb

from app.storage.models import DeadLetterJob
from app.storage.models import FailedJobSummary
from app.storage.models import JobStats
from app.storage.models import JobStatus
from app.storage.models import RepoConfig
from app.storage.models import ReviewHistoryRecord
from app.storage.models import ReviewJob

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id, repo_full_name, pr_number, owner, repo, status, attempts, max_attempts, analysis, error, "
    "next_retry_at, created_at, updated_at, started_at, completed_at"
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS review_jobs (
        id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        pr_number INTEGER NOT NULL,
        owner TEXT NOT NULL,
        repo TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        analysis JSONB,
        error TEXT,
        next_retry_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_review_jobs_live
    ON review_jobs (repo_full_name, pr_number)
    WHERE status IN ('pending', 'processing')
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_review_jobs_status_created
    ON review_jobs (status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS review_history (
        id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        pr_number INTEGER NOT NULL,
        head_sha TEXT NOT NULL,
        is_incremental BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'completed',
        result JSONB NOT NULL,
        analysis JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_review_history_pr
    ON review_history (repo_full_name, pr_number, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS repo_configs (
        full_name TEXT PRIMARY KEY,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        auto_review BOOLEAN NOT NULL DEFAULT TRUE,
        categories TEXT[] NOT NULL DEFAULT ARRAY['security', 'bug', 'performance'],
        ignore_paths TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
        custom_instructions TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS review_jobs_dlq (
        original_job_id TEXT PRIMARY KEY,
        repo_full_name TEXT NOT NULL,
        pr_number INTEGER NOT NULL,
        owner TEXT NOT NULL,
        repo TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        error TEXT,
        analysis JSONB,
        original_created_at TIMESTAMPTZ NOT NULL,
        moved_to_dlq_at TIMESTAMPTZ NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::JSONB
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_dlq_moved_at
    ON review_jobs_dlq (moved_to_dlq_at DESC)
    """,
)


def _row_to_job(row: tuple[Any, ...]) -> ReviewJob:
    return ReviewJob(
        id=row[0],
        repo_full_name=row[1],
        pr_number=row[2],
        owner=row[3],
        repo=row[4],
        status=JobStatus(row[5]),
        attempts=row[6],
        max_attempts=row[7],
        analysis=row[8],
        error=row[9],
        next_retry_at=row[10],
        created_at=row[11],
        updated_at=row[12],
        started_at=row[13],
        completed_at=row[14],
    )


class PostgresReviewStore:
    """Postgres 连接器（每次操作一个短连接，操作结束即提交）。"""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn)

    def ensure_schema(self) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                for statement in _SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
        logger.info("Review store schema ensured")

    def insert_job_if_absent(self, job: ReviewJob) -> ReviewJob | None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO review_jobs (
                        id, repo_full_name, pr_number, owner, repo, status, attempts, max_attempts,
                        analysis, created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (repo_full_name, pr_number) WHERE status IN ('pending', 'processing')
                    DO NOTHING
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (
                        job.id,
                        job.repo_full_name,
                        job.pr_number,
                        job.owner,
                        job.repo,
                        job.status.value,
                        job.attempts,
                        job.max_attempts,
                        Jsonb(job.analysis) if job.analysis is not None else None,
                        job.created_at,
                        job.updated_at,
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return _row_to_job(row) if row is not None else None

    def claim_next_job(self, now: datetime) -> ReviewJob | None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE review_jobs
                    SET status = 'processing', started_at = %s, updated_at = %s
                    WHERE id = (
                        SELECT id FROM review_jobs
                        WHERE status = 'pending' AND (next_retry_at IS NULL OR next_retry_at <= %s)
                        ORDER BY created_at
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (now, now, now),
                )
                row = cur.fetchone()
            conn.commit()
        return _row_to_job(row) if row is not None else None

    def complete_job(self, job_id: str, now: datetime) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE review_jobs SET status = 'completed', completed_at = %s, updated_at = %s WHERE id = %s",
                    (now, now, job_id),
                )
            conn.commit()

    def update_job_failure(
        self,
        job_id: str,
        error: str,
        attempts: int,
        terminal: bool,
        next_retry_at: datetime | None,
        now: datetime,
    ) -> None:
        status = JobStatus.FAILED if terminal else JobStatus.PENDING
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE review_jobs
                    SET status = %s, error = %s, attempts = %s, next_retry_at = %s, updated_at = %s
                    WHERE id = %s
                    """,
                    (status.value, error, attempts, None if terminal else next_retry_at, now, job_id),
                )
            conn.commit()

    def reset_stale_jobs(self, started_before: datetime, now: datetime) -> int:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE review_jobs
                    SET status = 'pending', updated_at = %s
                    WHERE status = 'processing' AND started_at < %s
                    """,
                    (now, started_before),
                )
                count = cur.rowcount
            conn.commit()
        return max(count, 0)

    def get_job(self, job_id: str) -> ReviewJob | None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_JOB_COLUMNS} FROM review_jobs WHERE id = %s", (job_id,))
                row = cur.fetchone()
        return _row_to_job(row) if row is not None else None

    def job_stats(self, today_start: datetime) -> JobStats:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) FILTER (WHERE status = 'pending'),
                        COUNT(*) FILTER (WHERE status = 'processing'),
                        COUNT(*) FILTER (WHERE status = 'failed'),
                        COUNT(*) FILTER (WHERE status = 'completed' AND completed_at >= %s)
                    FROM review_jobs
                    """,
                    (today_start,),
                )
                row = cur.fetchone()
        if row is None:
            return JobStats()
        return JobStats(pending=row[0], processing=row[1], failed=row[2], completed_today=row[3])

    def list_failed_jobs(self, limit: int) -> list[FailedJobSummary]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, repo_full_name, pr_number, error, attempts, updated_at
                    FROM review_jobs
                    WHERE status = 'failed'
                    ORDER BY updated_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = cur.fetchall()
        return [
            FailedJobSummary(
                id=row[0],
                repo_full_name=row[1],
                pr_number=row[2],
                error=row[3],
                attempts=row[4],
                updated_at=row[5],
            )
            for row in rows
        ]

    def insert_review_history(self, record: ReviewHistoryRecord) -> None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO review_history (
                        id, repo_full_name, pr_number, head_sha, is_incremental, status, result, analysis, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.repo_full_name,
                        record.pr_number,
                        record.head_sha,
                        record.is_incremental,
                        record.status,
                        Jsonb(record.result),
                        Jsonb(record.analysis) if record.analysis is not None else None,
                        record.created_at,
                    ),
                )
            conn.commit()

    def get_last_reviewed_sha(self, repo_full_name: str, pr_number: int) -> str | None:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT head_sha FROM review_history
                    WHERE repo_full_name = %s AND pr_number = %s AND status = 'completed'
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (repo_full_name, pr_number),
                )
                row = cur.fetchone()
        return row[0] if row is not None else None

    def get_repo_config(self, full_name: str) -> RepoConfig:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT enabled, auto_review, categories, ignore_paths, custom_instructions
                    FROM repo_configs WHERE full_name = %s
                    """,
                    (full_name,),
                )
                row = cur.fetchone()
        if row is None:
            return RepoConfig(full_name=full_name)
        return RepoConfig(
            full_name=full_name,
            enabled=row[0],
            auto_review=row[1],
            categories=list(row[2] or []),
            ignore_paths=list(row[3] or []),
            custom_instructions=row[4],
        )

    def list_recent_review_keys(self, since: datetime) -> set[tuple[str, int, str]]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT repo_full_name, pr_number, head_sha FROM review_history WHERE created_at >= %s",
                    (since,),
                )
                rows = cur.fetchall()
        return {(row[0], row[1], row[2]) for row in rows}

    def list_auto_review_repos(self) -> list[RepoConfig]:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT full_name, enabled, auto_review, categories, ignore_paths, custom_instructions
                    FROM repo_configs
                    WHERE enabled AND auto_review
                    ORDER BY full_name
                    """
                )
                rows = cur.fetchall()
        return [
            RepoConfig(
                full_name=row[0],
                enabled=row[1],
                auto_review=row[2],
                categories=list(row[3] or []),
                ignore_paths=list(row[4] or []),
                custom_instructions=row[5],
            )
            for row in rows
        ]

    def move_failed_jobs_to_dead_letter(self, updated_before: datetime, now: datetime) -> int:
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    WITH moved AS (
                        DELETE FROM review_jobs
                        WHERE status = 'failed' AND attempts >= max_attempts AND updated_at < %s
                        RETURNING id, repo_full_name, pr_number, owner, repo, attempts, error, analysis,
                                  created_at, status, max_attempts, started_at, completed_at
                    )
                    INSERT INTO review_jobs_dlq (
                        original_job_id, repo_full_name, pr_number, owner, repo, attempts, error, analysis,
                        original_created_at, moved_to_dlq_at, metadata
                    )
                    SELECT
                        id, repo_full_name, pr_number, owner, repo, attempts, error, analysis, created_at, %s,
                        jsonb_build_object(
                            'status', status,
                            'max_attempts', max_attempts,
                            'started_at', started_at,
                            'completed_at', completed_at
                        )
                    FROM moved
                    """,
                    (updated_before, now),
                )
                count = cur.rowcount
            conn.commit()
        return max(count, 0)

    def list_dead_letter_jobs(self, limit: int) -> list[DeadLetterJob]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        with self.connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT original_job_id, repo_full_name, pr_number, owner, repo, attempts, error, analysis,
                           original_created_at, moved_to_dlq_at, metadata
                    FROM review_jobs_dlq
                    ORDER BY moved_to_dlq_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = cur.fetchall()
        return [
            DeadLetterJob(
                original_job_id=row[0],
                repo_full_name=row[1],
                pr_number=row[2],
                owner=row[3],
                repo=row[4],
                attempts=row[5],
                error=row[6],
                analysis=row[7],
                original_created_at=row[8],
                moved_at=row[9],
                metadata=row[10] or {},
            )
            for row in rows
        ]
