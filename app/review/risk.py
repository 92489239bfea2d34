"""
Risk Classifier（非 AI，纯函数）。

根据 PR 的规模、标题关键词、改动路径、目标分支打分（整数累加，不做归一化），
决定 review 深度、优先级、关注点，以及是否需要 review。

为什么不用 LLM：
- 每个 webhook 事件都会跑一次，必须便宜、确定、可测试
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field

ReviewDepth = Literal["quick", "standard", "deep"]
ReviewPriority = Literal["low", "medium", "high", "critical"]

SENSITIVE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"auth",
        r"login",
        r"password",
        r"secret",
        r"token",
        r"api.?key",
        r"payment",
        r"billing",
        r"security",
        r"encrypt",
        r"middleware",
        r"migration",
        r"schema",
        r"admin",
        r"permission",
    )
)
API_PATH_PATTERN = re.compile(r"route|api/", re.IGNORECASE)
SKIP_LABEL_PATTERN = re.compile(r"skip.?review|no.?review", re.IGNORECASE)
PRODUCTION_BRANCHES = frozenset({"main", "master", "production"})


class PRContext(BaseModel):
    """分类输入：来自 webhook payload + 变更文件列表。"""

    files_changed: int = 0
    additions: int = 0
    deletions: int = 0
    title: str = ""
    labels: list[str] = Field(default_factory=list)
    base_branch: str = "main"
    files: list[str] = Field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return self.additions + self.deletions


class RiskDecision(BaseModel):
    should_review: bool
    depth: ReviewDepth
    priority: ReviewPriority
    reasons: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)


def _is_sensitive(text: str) -> bool:
    return any(p.search(text) for p in SENSITIVE_PATTERNS)


def analyze_pr(ctx: PRContext) -> RiskDecision:
    if any(SKIP_LABEL_PATTERN.search(label) for label in ctx.labels):
        return RiskDecision(
            should_review=False,
            depth="quick",
            priority="low",
            reasons=["skip-review label"],
            focus_areas=[],
        )

    reasons: list[str] = []
    focus_areas: list[str] = []
    score = 0
    total = ctx.total_changes
    title = ctx.title.lower()

    # 规模
    if total > 500:
        score += 3
        reasons.append(f"Large: {total} lines")
    elif total > 200:
        score += 2
        reasons.append(f"Medium: {total} lines")
    if ctx.files_changed > 20:
        score += 2
        reasons.append(f"{ctx.files_changed} files")

    # 标题关键词
    if _is_sensitive(ctx.title):
        score += 3
        reasons.append("Sensitive title")
        focus_areas.append("security")
    if "security" in title or "vulnerability" in title:
        score += 4
        reasons.append("Security fix")
        focus_areas.append("security")
    if "fix" in title or "bug" in title:
        score += 1
        reasons.append("Bug fix")
        focus_areas.append("bug")
    if "perf" in title:
        focus_areas.append("performance")

    # 改动路径
    sensitive_files = [f for f in ctx.files if _is_sensitive(f)]
    if sensitive_files:
        score += 2
        reasons.append(f"Sensitive: {', '.join(sensitive_files[:2])}")
        focus_areas.append("security")
    if any(API_PATH_PATTERN.search(f) for f in ctx.files):
        score += 1
        reasons.append("API changes")
        focus_areas.extend(["security", "bug"])

    if ctx.base_branch in PRODUCTION_BRANCHES:
        score += 1

    return RiskDecision(
        should_review=score >= 1 or total > 30,
        depth=_depth_for_score(score),
        priority=_priority_for_score(score),
        reasons=reasons or ["Standard changes"],
        focus_areas=list(dict.fromkeys(focus_areas)),
    )


def _depth_for_score(score: int) -> ReviewDepth:
    if score >= 6:
        return "deep"
    if score >= 3:
        return "standard"
    return "quick"


def _priority_for_score(score: int) -> ReviewPriority:
    if score >= 7:
        return "critical"
    if score >= 5:
        return "high"
    if score >= 2:
        return "medium"
    return "low"
