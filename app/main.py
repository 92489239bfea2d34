"""
FastAPI 服务入口（composition root）。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装外部依赖（HTTP Client / 熔断器 / 限流器 / LLM / GitHub / Store / Queue）
- 装配路由（health + webhook + review/worker/jobs/analyze）

注意：
- 业务流程不写在这里（由 `review/orchestrator.py` 和 `jobs/*` 负责）
- 熔断器、限流器都是进程级实例，只在这里创建，不用模块级全局变量
- 启动方式：`uvicorn app.main:create_app --factory`
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import anyio
import httpx
from fastapi import FastAPI

from app.config import load_config_from_env
from app.github.client import GitHubClient
from app.github.webhook import build_github_webhook_router
from app.infra.circuit_breaker import build_github_circuit_breaker
from app.infra.circuit_breaker import build_llm_circuit_breaker
from app.infra.notify import LoggingNotificationSink
from app.infra.rate_limit import SlidingWindowRateLimiter
from app.jobs.intake import build_pull_request_handler
from app.jobs.queue import JobQueue
from app.llm.client import OpenAICompatLLMClient
from app.review.orchestrator import ReviewOrchestrator
from app.review.routes import build_review_router
from app.storage.base import ReviewStore
from app.storage.memory import InMemoryReviewStore
from app.storage.pg import PostgresReviewStore

logger = logging.getLogger(__name__)

# 出站限流：每类调用每分钟上限（低于 GitHub / provider 的配额）
OUTBOUND_WINDOW_SECONDS = 60.0
OUTBOUND_MAX_REQUESTS = 120


def create_app(environ: Mapping[str, str] | None = None) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""

    # 1) 配置：缺失会直接抛错，启动失败（这是期望行为）
    config = load_config_from_env(os.environ if environ is None else environ)
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # 2) 可复用的 HTTP client：供 GitHub API 与 LLM 调用使用
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.request_timeout_seconds))

    # 3) 韧性组件
    outbound_limiter = SlidingWindowRateLimiter(
        max_requests=OUTBOUND_MAX_REQUESTS,
        window_seconds=OUTBOUND_WINDOW_SECONDS,
    )
    inbound_limiter = SlidingWindowRateLimiter(
        max_requests=config.rate_limit.max_requests,
        window_seconds=config.rate_limit.window_seconds,
    )

    # 4) 外部系统
    llm_client = OpenAICompatLLMClient(
        api_key=config.llm.api_key,
        base_url=str(config.llm.base_url).rstrip("/"),
        http_client=http_client,
        model=config.llm.model,
        circuit_breaker=build_llm_circuit_breaker(),
        rate_limiter=outbound_limiter,
        max_retries=config.llm.max_retries,
    )
    github_client = GitHubClient(
        api_base_url=str(config.github.api_base_url),
        token=config.github.token,
        http_client=http_client,
        circuit_breaker=build_github_circuit_breaker(),
        rate_limiter=outbound_limiter,
    )

    store: ReviewStore
    pg_store: PostgresReviewStore | None = None
    if config.database_url:
        pg_store = PostgresReviewStore(dsn=config.database_url)
        store = pg_store
    else:
        logger.warning("DATABASE_URL not set, using in-memory review store (jobs are lost on restart)")
        store = InMemoryReviewStore()

    queue = JobQueue(store=store)
    orchestrator = ReviewOrchestrator(
        llm_client=llm_client,
        github_client=github_client,
        store=store,
        max_diff_tokens=config.review_max_diff_tokens,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if pg_store is not None:
            await anyio.to_thread.run_sync(pg_store.ensure_schema)
        try:
            yield
        finally:
            await http_client.aclose()

    app = FastAPI(title="AI Code Review", version="0.2.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    webhook_handler = build_pull_request_handler(queue=queue, github_client=github_client, store=store)
    app.include_router(build_github_webhook_router(config=config.github, handler=webhook_handler))
    app.include_router(
        build_review_router(
            orchestrator=orchestrator,
            queue=queue,
            notifier=LoggingNotificationSink(),
            worker_config=config.worker,
            rate_limiter=inbound_limiter,
            trust_proxy_headers=config.rate_limit.trust_proxy_headers,
        )
    )
    return app
