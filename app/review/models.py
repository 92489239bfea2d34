"""
Review 领域模型（Pydantic）。

用途：
- diff 解析结果（`FileDiff` / `DiffHunk`），解析后不可变
- review 输出（`ReviewResult`），写入历史后不可变；重新 review 产生新记录
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ReviewCategory(str, Enum):
    SECURITY = "security"
    BUG = "bug"
    PERFORMANCE = "performance"
    STYLE = "style"
    SUGGESTION = "suggestion"
    DEPENDENCY = "dependency"
    MAINTAINABILITY = "maintainability"
    OTHER = "other"


ApprovalRecommendation = Literal["approve", "request_changes", "comment"]
FileStatus = Literal["modified", "added", "removed", "renamed"]


class DiffHunk(BaseModel):
    """一个 hunk：content 是原始文本（包含 `@@` 头）。"""

    model_config = ConfigDict(frozen=True)

    path: str
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    content: str


class FileDiff(BaseModel):
    """diff 里的单个文件变更。"""

    model_config = ConfigDict(frozen=True)

    path: str
    status: FileStatus = "modified"
    additions: int = 0
    deletions: int = 0
    hunks: tuple[DiffHunk, ...] = ()


class LineComment(BaseModel):
    """行内评论（path + 新文件行号）。"""

    model_config = ConfigDict(frozen=True)

    path: str
    line: int
    body: str
    severity: Severity
    category: ReviewCategory
    start_line: int | None = None
    suggestion: str | None = None


class FileWalkthrough(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    summary: str
    changes: list[str] = Field(default_factory=list)


class ReviewSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    overview: str = ""
    changes_description: str = ""
    risk_assessment: str = "Unknown"
    recommendations: list[str] = Field(default_factory=list)
    praise: list[str] = Field(default_factory=list)


class ReviewResult(BaseModel):
    """一次 review 的完整结果（对应某个 head commit）。"""

    model_config = ConfigDict(frozen=True)

    summary: ReviewSummary
    walkthrough: list[FileWalkthrough] = Field(default_factory=list)
    line_comments: list[LineComment] = Field(default_factory=list)
    approval_recommendation: ApprovalRecommendation = "comment"
    head_sha: str
    is_incremental: bool = False
