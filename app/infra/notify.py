"""
通知出口（接口 + 日志实现）。

真正的 Slack/Discord 等扇出不在本服务里实现；worker 只依赖 `NotificationSink` 协议，
部署时可以替换成其它实现。
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """review 任务结束后的通知接口（fire-and-forget）。"""

    async def review_completed(self, repo_full_name: str, pr_number: int, comment_count: int) -> None: ...

    async def review_failed(
        self,
        repo_full_name: str,
        pr_number: int,
        error: str,
        attempts: int,
        will_retry: bool,
    ) -> None: ...


class LoggingNotificationSink:
    """默认实现：只写日志。"""

    async def review_completed(self, repo_full_name: str, pr_number: int, comment_count: int) -> None:
        logger.info(f"Review completed for {repo_full_name}#{pr_number}: {comment_count} comment(s)")

    async def review_failed(
        self,
        repo_full_name: str,
        pr_number: int,
        error: str,
        attempts: int,
        will_retry: bool,
    ) -> None:
        if will_retry:
            logger.warning(f"Review failed for {repo_full_name}#{pr_number} (attempt {attempts}), will retry: {error}")
            return
        logger.error(f"Review permanently failed for {repo_full_name}#{pr_number} after {attempts} attempt(s): {error}")
