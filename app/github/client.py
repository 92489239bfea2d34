"""
GitHub API 客户端（外部系统连接器）。

约定：
- 这里只做 HTTP 调用 + 错误处理 + schema 校验
- 每次调用：出站限流（key=`github:<operation>`）-> 熔断器 -> 指数退避重试
- 只重试传输错误与 5xx/429；其它 4xx 直接抛 `GitHubAPIError`（不要吞），便于定位与告警
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx

from app.github.schemas import GitHubPullRequest
from app.github.schemas import GitHubPullRequestFile
from app.infra.circuit_breaker import CircuitBreaker
from app.infra.rate_limit import SlidingWindowRateLimiter
from app.infra.retry import RetryConfig
from app.infra.retry import with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


class GitHubAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code


class GitHubTransientError(GitHubAPIError):
    """5xx / 429：可以重试的 GitHub 错误。"""


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    if response.status_code >= 500 or response.status_code == 429:
        raise GitHubTransientError(response.status_code, response.text)
    raise GitHubAPIError(response.status_code, response.text)


class GitHubClient:
    """GitHub REST client：PR 信息 / diff / 文件列表 / 提交 review。"""

    def __init__(
        self,
        api_base_url: str,
        token: str,
        http_client: httpx.AsyncClient,
        circuit_breaker: CircuitBreaker,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._token = token
        self._http_client = http_client
        self._breaker = circuit_breaker
        self._rate_limiter = rate_limiter
        self._retry_config = retry_config or RetryConfig()

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        if self._rate_limiter is not None:
            self._rate_limiter.enforce(f"github:{operation}")

        async def guarded() -> T:
            return await with_retry(
                call,
                config=self._retry_config,
                retry_on=(httpx.TransportError, GitHubTransientError),
            )

        try:
            return await self._breaker.execute(guarded)
        except (GitHubAPIError, httpx.HTTPError) as exc:
            logger.error(f"GitHub {operation} failed: {exc}")
            raise

    async def get_pull_request(self, owner: str, repo: str, pull_number: int) -> GitHubPullRequest:
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}"

        async def call() -> GitHubPullRequest:
            response = await self._http_client.get(url, headers=self._headers())
            _raise_for_status(response)
            return GitHubPullRequest.model_validate(response.json())

        return await self._request("get_pull_request", call)

    async def get_pull_request_diff(self, owner: str, repo: str, pull_number: int) -> str:
        """完整 PR diff（unified diff 文本）。"""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}"

        async def call() -> str:
            response = await self._http_client.get(url, headers=self._headers(accept=DIFF_MEDIA_TYPE))
            _raise_for_status(response)
            return response.text

        return await self._request("get_pull_request_diff", call)

    async def compare_commits_diff(self, owner: str, repo: str, base: str, head: str) -> str:
        """`base...head` 区间的 diff（增量 review 用）。"""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/compare/{base}...{head}"

        async def call() -> str:
            response = await self._http_client.get(url, headers=self._headers(accept=DIFF_MEDIA_TYPE))
            _raise_for_status(response)
            return response.text

        return await self._request("compare_commits_diff", call)

    async def list_open_pull_requests(self, owner: str, repo: str, limit: int = 10) -> list[GitHubPullRequest]:
        """最近的 open PR（只取第一页，轮询入队用）。"""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls"

        async def call() -> list[GitHubPullRequest]:
            response = await self._http_client.get(
                url,
                headers=self._headers(),
                params={"state": "open", "per_page": limit},
            )
            _raise_for_status(response)
            data = response.json()
            if not isinstance(data, list):
                raise GitHubAPIError(response.status_code, f"Unexpected response shape for PR list: {data}")
            return [GitHubPullRequest.model_validate(x) for x in data[:limit]]

        return await self._request("list_open_pull_requests", call)

    async def list_pull_request_files(self, owner: str, repo: str, pull_number: int) -> list[GitHubPullRequestFile]:
        """
        拉取 PR 的变更文件列表。

        注意：GitHub API 有分页；这里会拉取全部文件。
        """
        per_page = 100
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}/files"

        async def fetch_page(page: int) -> list[GitHubPullRequestFile]:
            async def call() -> list[GitHubPullRequestFile]:
                response = await self._http_client.get(
                    url,
                    headers=self._headers(),
                    params={"per_page": per_page, "page": page},
                )
                _raise_for_status(response)
                data = response.json()
                if not isinstance(data, list):
                    raise GitHubAPIError(response.status_code, f"Unexpected response shape for PR files: {data}")
                return [GitHubPullRequestFile.model_validate(x) for x in data]

            return await self._request("list_pull_request_files", call)

        page = 1
        all_items: list[GitHubPullRequestFile] = []
        while True:
            items = await fetch_page(page)
            all_items.extend(items)
            if len(items) < per_page:
                break
            page += 1
        return all_items

    async def create_review(
        self,
        owner: str,
        repo: str,
        pull_number: int,
        body: str,
        event: str,
        comments: Sequence[dict[str, Any]] = (),
        commit_id: str | None = None,
    ) -> None:
        """
        创建一条 PR review（会出现在 GitHub 的 “Reviews” 区域）。

        - event: APPROVE / REQUEST_CHANGES / COMMENT
        - comments: 行内评论（path/line/side/body）
        """
        url = f"{self._api_base_url}/repos/{owner}/{repo}/pulls/{pull_number}/reviews"
        payload: dict[str, Any] = {"body": body, "event": event}
        if comments:
            payload["comments"] = list(comments)
        if commit_id:
            payload["commit_id"] = commit_id

        async def call() -> None:
            response = await self._http_client.post(url, headers=self._headers(), json=payload)
            _raise_for_status(response)

        await self._request("create_review", call)
        logger.info(f"Posted {event} review on {owner}/{repo}#{pull_number} with {len(comments)} inline comment(s)")
