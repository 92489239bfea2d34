"""
Worker：一次调用排空一批任务（由 `POST /worker` 触发，例如 cron 每分钟一次）。

约定：
- 先回收 stale 任务，再按 max_jobs / 时间预算循环 claim
- 限额在 claim **之前**检查，不会领取了任务又不处理
- 任意异常都转成 `queue.fail(...)`：队列是重试边界
- 通知是 fire-and-forget：sink 抛错只记日志，不影响队列状态和后续任务
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

from app.infra.notify import NotificationSink
from app.jobs.queue import JobQueue
from app.review.orchestrator import ReviewOrchestrator
from app.review.orchestrator import review_and_post
from app.storage.models import ReviewJob

logger = logging.getLogger(__name__)

DEFAULT_MAX_JOBS = 5
DEFAULT_TIME_BUDGET_SECONDS = 55.0


class WorkerReport(BaseModel):
    processed: int = 0
    errors: int = 0
    recovered: int = 0
    count: int = 0
    duration_ms: int = 0


async def _process_job(orchestrator: ReviewOrchestrator, job: ReviewJob) -> int:
    analysis = job.analysis or {}
    outcome = await review_and_post(
        orchestrator=orchestrator,
        owner=job.owner,
        repo=job.repo,
        pr_number=job.pr_number,
        depth=analysis.get("depth"),
        focus_areas=analysis.get("focus_areas") or (),
        post=True,
        analysis=job.analysis,
    )
    return len(outcome.inline_comments)


async def _notify(job: ReviewJob, send: Callable[[], Awaitable[None]]) -> None:
    try:
        await send()
    except Exception:
        logger.exception(f"Notification for job {job.id} ({job.repo_full_name}#{job.pr_number}) failed")


async def drain_queue(
    queue: JobQueue,
    orchestrator: ReviewOrchestrator,
    notifier: NotificationSink,
    max_jobs: int = DEFAULT_MAX_JOBS,
    time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> WorkerReport:
    started = clock()
    recovered = await queue.recover_stale_jobs()
    processed = 0
    errors = 0

    while processed + errors < max_jobs and clock() - started < time_budget_seconds:
        job = await queue.claim()
        if job is None:
            break

        try:
            comment_count = await _process_job(orchestrator, job)
        except Exception as exc:
            errors += 1
            attempts = job.attempts + 1
            logger.exception(f"Review job {job.id} for {job.repo_full_name}#{job.pr_number} failed")
            error = str(exc)
            terminal = await queue.fail(job.id, error, attempts, job.max_attempts)
            await _notify(
                job,
                lambda: notifier.review_failed(
                    repo_full_name=job.repo_full_name,
                    pr_number=job.pr_number,
                    error=error,
                    attempts=attempts,
                    will_retry=not terminal,
                ),
            )
            continue

        await queue.complete(job.id)
        processed += 1
        await _notify(
            job,
            lambda: notifier.review_completed(
                repo_full_name=job.repo_full_name,
                pr_number=job.pr_number,
                comment_count=comment_count,
            ),
        )

    report = WorkerReport(
        processed=processed,
        errors=errors,
        recovered=recovered,
        count=processed + errors,
        duration_ms=int((clock() - started) * 1000),
    )
    logger.info(f"Worker finished: {report.model_dump()}")
    return report
