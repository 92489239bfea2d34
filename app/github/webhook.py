"""
GitHub Webhook 接入层。

职责：
- 校验 `X-Hub-Signature-256`（HMAC SHA256）；未配置 secret 时跳过校验并告警
- 校验 event 类型（只处理 pull_request）
- 解析 payload -> Pydantic schema
- 过滤 action（opened/reopened/synchronize/ready_for_review）
- 调用业务 handler（入队），立即返回
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter
from fastapi import Header
from fastapi import HTTPException
from fastapi import Request
from pydantic import ValidationError

from app.config import GitHubConfig
from app.github.schemas import GitHubPullRequestWebhookEvent
from app.jobs.intake import PullRequestEventHandler

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = frozenset({"opened", "reopened", "synchronize", "ready_for_review"})


def verify_github_signature(body: bytes, signature_header: str | None, secret: str) -> None:
    if not signature_header or not signature_header.startswith("sha256="):
        raise HTTPException(status_code=401, detail="Invalid signature header")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature_header):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def build_github_webhook_router(config: GitHubConfig, handler: PullRequestEventHandler) -> APIRouter:
    router = APIRouter()

    @router.post("/webhook")
    async def github_webhook(
        request: Request,
        x_github_event: str | None = Header(default=None, alias="X-GitHub-Event"),
        x_hub_signature_256: str | None = Header(default=None, alias="X-Hub-Signature-256"),
    ) -> dict[str, Any]:
        body = await request.body()
        if config.webhook_secret:
            verify_github_signature(body=body, signature_header=x_hub_signature_256, secret=config.webhook_secret)
        else:
            logger.warning("GITHUB_WEBHOOK_SECRET not configured, skipping webhook signature verification")

        if x_github_event != "pull_request":
            return {"status": "ignored"}

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON payload") from exc

        try:
            event = GitHubPullRequestWebhookEvent.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid pull_request payload") from exc

        if event.action not in REVIEW_ACTIONS:
            return {"status": "ignored"}

        response = await handler(event)
        return response.model_dump(exclude_none=True)

    return router
