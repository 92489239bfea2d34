"""
轮询接入：webhook 之外的兜底入队（例如 cron 每 15 分钟一次 `POST /poll`）。

流程：
- 只看 enabled + auto_review 的仓库，每个仓库取最近的 open PR
- 跳过：draft、24 小时内已在同一个 head sha 上 review 过、已有 pending/processing 任务
- 单个仓库出错只记录到 `errors`，不影响其它仓库
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import anyio
import httpx
from pydantic import BaseModel, Field

from app.github.client import GitHubAPIError
from app.github.client import GitHubClient
from app.infra.circuit_breaker import CircuitOpenError
from app.infra.rate_limit import RateLimitExceededError
from app.jobs.queue import DuplicateJobError
from app.jobs.queue import JobQueue
from app.jobs.queue import utc_now
from app.storage.base import ReviewStore

logger = logging.getLogger(__name__)

RECENT_REVIEW_WINDOW = timedelta(hours=24)
MAX_PRS_PER_REPO = 10
DEEP_REVIEW_CHANGES = 500


class PollReport(BaseModel):
    repos_polled: int = 0
    queued: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    count: int = 0


async def poll_repositories(
    queue: JobQueue,
    github_client: GitHubClient,
    store: ReviewStore,
    clock: Callable[[], datetime] = utc_now,
) -> PollReport:
    repos = await anyio.to_thread.run_sync(store.list_auto_review_repos)
    if not repos:
        logger.info("No repos configured for polling")
        return PollReport()

    reviewed = await anyio.to_thread.run_sync(store.list_recent_review_keys, clock() - RECENT_REVIEW_WINDOW)
    queued: list[str] = []
    errors: list[str] = []

    for repo_config in repos:
        full_name = repo_config.full_name
        owner, _, repo = full_name.partition("/")
        try:
            prs = await github_client.list_open_pull_requests(owner=owner, repo=repo, limit=MAX_PRS_PER_REPO)
            for pr in prs:
                if pr.draft or (full_name, pr.number, pr.head.sha) in reviewed:
                    continue
                # 列表接口不带 additions/deletions，需要单独取详情
                detail = await github_client.get_pull_request(owner=owner, repo=repo, pull_number=pr.number)
                total_changes = detail.additions + detail.deletions
                analysis = {
                    "depth": "deep" if total_changes > DEEP_REVIEW_CHANGES else "standard",
                    "title": detail.title,
                }
                try:
                    await queue.enqueue(owner=owner, repo=repo, pr_number=pr.number, analysis=analysis)
                except DuplicateJobError:
                    continue
                queued.append(f"{full_name}#{pr.number}")
        except (GitHubAPIError, httpx.HTTPError, CircuitOpenError, RateLimitExceededError) as exc:
            logger.error(f"Polling {full_name} failed: {exc}")
            errors.append(f"{full_name}: {exc}")

    report = PollReport(repos_polled=len(repos), queued=queued, errors=errors, count=len(queued))
    logger.info(f"Poll finished: repos={report.repos_polled}, queued={report.count}, errors={len(errors)}")
    return report
