"""
Webhook -> 队列 的接入逻辑。

流程：
- draft PR / 仓库未启用 / 关闭了 auto_review：ignored
- 拉取变更文件路径，构造 PRContext，跑 risk classifier
- 不需要 review：skipped（附原因）；否则入队：queued / already_queued

这里不跑 review 本身，webhook 必须尽快返回。
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Literal

import anyio
from pydantic import BaseModel, Field

from app.github.client import GitHubClient
from app.github.schemas import GitHubPullRequestWebhookEvent
from app.jobs.queue import DuplicateJobError
from app.jobs.queue import JobQueue
from app.review.risk import PRContext
from app.review.risk import analyze_pr
from app.storage.base import ReviewStore

logger = logging.getLogger(__name__)

IntakeStatus = Literal["queued", "already_queued", "skipped", "ignored"]


class IntakeResponse(BaseModel):
    status: IntakeStatus
    job_id: str | None = None
    reasons: list[str] = Field(default_factory=list)


PullRequestEventHandler = Callable[[GitHubPullRequestWebhookEvent], Awaitable[IntakeResponse]]


def build_pull_request_handler(queue: JobQueue, github_client: GitHubClient, store: ReviewStore) -> PullRequestEventHandler:
    """装配 webhook handler：返回一个 `async def handle(event)` 给 webhook 路由调用。"""

    async def handle(event: GitHubPullRequestWebhookEvent) -> IntakeResponse:
        pr = event.pull_request
        owner = event.repository.owner.login
        repo = event.repository.name
        full_name = event.repository.full_name

        if pr.draft:
            logger.info(f"Ignoring draft PR {full_name}#{pr.number}")
            return IntakeResponse(status="ignored", reasons=["draft"])

        repo_config = await anyio.to_thread.run_sync(store.get_repo_config, full_name)
        if not repo_config.enabled or not repo_config.auto_review:
            logger.info(f"Ignoring {full_name}#{pr.number}: auto review disabled")
            return IntakeResponse(status="ignored", reasons=["auto review disabled"])

        files = await github_client.list_pull_request_files(owner=owner, repo=repo, pull_number=pr.number)
        ctx = PRContext(
            files_changed=pr.changed_files or len(files),
            additions=pr.additions,
            deletions=pr.deletions,
            title=pr.title,
            labels=[label.name for label in pr.labels],
            base_branch=pr.base.ref,
            files=[f.filename for f in files],
        )
        decision = analyze_pr(ctx)
        if not decision.should_review:
            logger.info(f"Skipping {full_name}#{pr.number}: {', '.join(decision.reasons)}")
            return IntakeResponse(status="skipped", reasons=decision.reasons)

        try:
            job = await queue.enqueue(owner=owner, repo=repo, pr_number=pr.number, analysis=decision.model_dump())
        except DuplicateJobError:
            return IntakeResponse(status="already_queued")
        logger.info(
            f"Queued {full_name}#{pr.number}: depth={decision.depth}, priority={decision.priority}, "
            f"reasons={decision.reasons}"
        )
        return IntakeResponse(status="queued", job_id=job.id, reasons=decision.reasons)

    return handle
