"""
GitHub Webhook / API response schemas（Pydantic）。

说明：
- 字段只覆盖 review 流程需要的子集（PR webhook + get PR + list files）
- 未列出的字段默认忽略
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class GitHubOwner(BaseModel):
    login: str


class GitHubRepository(BaseModel):
    name: str
    owner: GitHubOwner
    full_name: str


class GitHubLabel(BaseModel):
    name: str


class GitHubPullRequestHead(BaseModel):
    sha: str
    ref: str


class GitHubPullRequestBase(BaseModel):
    sha: str = ""
    ref: str


class GitHubPullRequest(BaseModel):
    number: int
    title: str = ""
    body: str | None = None
    head: GitHubPullRequestHead
    base: GitHubPullRequestBase
    draft: bool = False
    merged: bool = False
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    labels: list[GitHubLabel] = Field(default_factory=list)


class GitHubPullRequestWebhookEvent(BaseModel):
    """
    GitHub `pull_request` webhook event（最小结构）。

    action: opened/reopened/synchronize 等；只有一部分 action 会触发 review
    """

    action: str
    number: int | None = None
    pull_request: GitHubPullRequest
    repository: GitHubRepository


class GitHubPullRequestFile(BaseModel):
    """
    PR 文件列表 item（GET /pulls/{pull_number}/files）。

    patch 可能缺失（例如大文件/二进制/被截断）。
    """

    filename: str
    status: Literal["added", "modified", "removed", "renamed", "changed", "copied", "unchanged"]
    additions: int = 0
    deletions: int = 0
    patch: str | None = None
