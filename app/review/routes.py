"""
Review 相关 HTTP 接口。

- `POST /review`：同步跑一次 review（默认不回写，`post=true` 才提交到 GitHub）
- `POST /review/batch`：一次最多 5 个 PR，并发执行，单个失败不影响其它
- `POST /worker`：排空队列（`Authorization: Bearer <WORKER_SECRET>`）
- `POST /poll`：轮询已启用仓库的 open PR 并入队（同样需要 worker secret）
- `GET /jobs`：队列统计 + 最近失败
- `POST /jobs/dead-letter`：把过期的失败任务搬进死信表；`GET` 查看死信
- `POST /analyze`：只跑 risk classifier

`/review`、`/review/batch`、`/analyze` 按客户端 IP 限流（会触发外部调用 / 便于被刷）。
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

import anyio
import httpx
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from openai import OpenAIError
from pydantic import BaseModel, Field

from app.config import WorkerConfig
from app.github.client import GitHubAPIError
from app.infra.circuit_breaker import CircuitOpenError
from app.infra.notify import NotificationSink
from app.infra.rate_limit import RateLimitExceededError
from app.infra.rate_limit import SlidingWindowRateLimiter
from app.jobs.poller import poll_repositories
from app.jobs.queue import JobQueue
from app.jobs.worker import drain_queue
from app.review.orchestrator import ReviewOrchestrator
from app.review.orchestrator import review_and_post
from app.review.prompts import build_depth_instructions
from app.review.risk import PRContext
from app.review.risk import ReviewDepth
from app.review.risk import analyze_pr

logger = logging.getLogger(__name__)

MAX_BATCH_REVIEWS = 5


class ReviewRequest(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    pr_number: int = Field(gt=0)
    post: bool = False
    depth: ReviewDepth | None = None
    focus_areas: list[str] = Field(default_factory=list)
    categories: list[str] | None = None


class ReviewTarget(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    pr_number: int = Field(gt=0)


class BatchReviewRequest(BaseModel):
    reviews: list[ReviewTarget] = Field(min_length=1, max_length=MAX_BATCH_REVIEWS)
    post: bool = False


class BatchReviewItem(BaseModel):
    owner: str
    repo: str
    pr_number: int
    success: bool
    issues: int = 0


def client_identity(request: Request, trust_proxy_headers: bool = False) -> str:
    """
    限流用的客户端标识。

    `X-Forwarded-For` / `X-Real-IP` 可以被客户端随意伪造，只有部署在可信反向代理后面
    （`RATE_LIMIT_TRUST_PROXY=true`）才使用；否则按 TCP 对端地址计。
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def build_review_router(
    orchestrator: ReviewOrchestrator,
    queue: JobQueue,
    notifier: NotificationSink,
    worker_config: WorkerConfig,
    rate_limiter: SlidingWindowRateLimiter,
    trust_proxy_headers: bool = False,
) -> APIRouter:
    router = APIRouter()

    def limit_by_client(request: Request) -> None:
        result = rate_limiter.check(f"ip:{client_identity(request, trust_proxy_headers)}")
        if not result.allowed:
            raise HTTPException(status_code=429, detail="Too many requests")

    def require_worker_secret(authorization: str | None = Header(default=None)) -> None:
        if not worker_config.secret:
            return
        expected = f"Bearer {worker_config.secret}"
        if not hmac.compare_digest((authorization or "").encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @router.post("/review", dependencies=[Depends(limit_by_client)])
    async def review(body: ReviewRequest) -> dict[str, Any]:
        try:
            outcome = await review_and_post(
                orchestrator=orchestrator,
                owner=body.owner,
                repo=body.repo,
                pr_number=body.pr_number,
                categories=body.categories,
                depth=body.depth,
                focus_areas=body.focus_areas,
                post=body.post,
            )
        except CircuitOpenError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except RateLimitExceededError as exc:
            raise HTTPException(status_code=429, detail=str(exc)) from exc
        except (GitHubAPIError, httpx.HTTPError, OpenAIError) as exc:
            logger.error(f"Review of {body.owner}/{body.repo}#{body.pr_number} failed: {exc}")
            raise HTTPException(status_code=502, detail=str(exc)) from exc

        return {
            "result": outcome.result.model_dump(mode="json"),
            "parse_status": outcome.parse_status,
            "defaulted_fields": list(outcome.defaulted_fields),
            "reviewed_files": outcome.reviewed_files,
            "posted": outcome.posted,
        }

    @router.post("/review/batch", dependencies=[Depends(limit_by_client)])
    async def review_batch(body: BatchReviewRequest) -> dict[str, Any]:
        results: list[BatchReviewItem | None] = [None] * len(body.reviews)

        async def run_one(index: int, target: ReviewTarget) -> None:
            try:
                outcome = await review_and_post(
                    orchestrator=orchestrator,
                    owner=target.owner,
                    repo=target.repo,
                    pr_number=target.pr_number,
                    post=body.post,
                )
            except Exception:
                logger.exception(f"Batch review of {target.owner}/{target.repo}#{target.pr_number} failed")
                return
            results[index] = BatchReviewItem(
                owner=target.owner,
                repo=target.repo,
                pr_number=target.pr_number,
                success=True,
                issues=len(outcome.result.line_comments),
            )

        async with anyio.create_task_group() as tg:
            for index, target in enumerate(body.reviews):
                tg.start_soon(run_one, index, target)

        completed = [item for item in results if item is not None]
        return {
            "completed": [item.model_dump() for item in completed],
            "failed": len(body.reviews) - len(completed),
            "total": len(body.reviews),
        }

    @router.post("/worker", dependencies=[Depends(require_worker_secret)])
    async def worker() -> dict[str, Any]:
        report = await drain_queue(
            queue=queue,
            orchestrator=orchestrator,
            notifier=notifier,
            max_jobs=worker_config.max_jobs,
            time_budget_seconds=worker_config.time_budget_seconds,
        )
        return report.model_dump()

    @router.post("/poll", dependencies=[Depends(require_worker_secret)])
    async def poll() -> dict[str, Any]:
        report = await poll_repositories(
            queue=queue,
            github_client=orchestrator.github_client,
            store=orchestrator.store,
        )
        return report.model_dump()

    @router.get("/jobs")
    async def jobs() -> dict[str, Any]:
        stats = await queue.stats()
        failures = await queue.recent_failures()
        return {
            "stats": stats.model_dump(),
            "recent_failures": [f.model_dump(mode="json") for f in failures],
        }

    @router.post("/jobs/dead-letter", dependencies=[Depends(require_worker_secret)])
    async def move_dead_letters() -> dict[str, int]:
        return {"moved": await queue.move_to_dead_letter()}

    @router.get("/jobs/dead-letter")
    async def dead_letters() -> dict[str, Any]:
        jobs = await queue.dead_letter_jobs()
        return {"jobs": [job.model_dump(mode="json") for job in jobs]}

    @router.post("/analyze", dependencies=[Depends(limit_by_client)])
    async def analyze(ctx: PRContext) -> dict[str, Any]:
        decision = analyze_pr(ctx)
        return {
            "analysis": decision.model_dump(),
            "total_changes": ctx.total_changes,
            "depth_instructions": build_depth_instructions(decision.depth, decision.focus_areas),
        }

    return router
