"""
持久化模型（任务队列 / review 历史 / 仓库配置）。

说明：
- `ReviewJob` 的唯一性约束：同一 (repo_full_name, pr_number) 最多一个 pending/processing 任务
- `ReviewHistoryRecord` 只追加，不修改
- `DeadLetterJob`：保留期外的 failed 任务搬到死信表，原任务行删除
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_CATEGORIES: tuple[str, ...] = ("security", "bug", "performance")


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class ReviewJob(BaseModel):
    id: str
    repo_full_name: str
    pr_number: int
    owner: str
    repo: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    analysis: dict[str, Any] | None = None
    error: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ReviewHistoryRecord(BaseModel):
    id: str
    repo_full_name: str
    pr_number: int
    head_sha: str
    is_incremental: bool = False
    status: str = "completed"
    result: dict[str, Any]
    analysis: dict[str, Any] | None = None
    created_at: datetime


class RepoConfig(BaseModel):
    """仓库级配置；数据库里没有对应行时使用默认值。"""

    full_name: str
    enabled: bool = True
    auto_review: bool = True
    categories: list[str] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    ignore_paths: list[str] = Field(default_factory=list)
    custom_instructions: str | None = None


class FailedJobSummary(BaseModel):
    id: str
    repo_full_name: str
    pr_number: int
    error: str | None = None
    attempts: int = 0
    updated_at: datetime


class JobStats(BaseModel):
    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed_today: int = 0


class DeadLetterJob(BaseModel):
    original_job_id: str
    repo_full_name: str
    pr_number: int
    owner: str
    repo: str
    attempts: int
    error: str | None = None
    analysis: dict[str, Any] | None = None
    original_created_at: datetime
    moved_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
