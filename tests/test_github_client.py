from __future__ import annotations

import json

import httpx
import pytest

from app.github.client import DIFF_MEDIA_TYPE
from app.github.client import GitHubAPIError
from app.github.client import GitHubClient
from app.github.client import GitHubTransientError
from app.infra.circuit_breaker import CircuitBreaker
from app.infra.circuit_breaker import CircuitBreakerConfig
from app.infra.rate_limit import RateLimitExceededError
from app.infra.rate_limit import SlidingWindowRateLimiter
from app.infra.retry import RetryConfig

PR_JSON = {
    "number": 7,
    "title": "Add feature",
    "body": "Details",
    "head": {"sha": "head123", "ref": "feature"},
    "base": {"sha": "base123", "ref": "main"},
    "draft": False,
    "additions": 10,
    "deletions": 2,
    "changed_files": 1,
    "labels": [{"name": "enhancement"}],
}


def _client(handler, limiter: SlidingWindowRateLimiter | None = None) -> tuple[GitHubClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = GitHubClient(
        api_base_url="https://api.github.test/",
        token="t",
        http_client=http_client,
        circuit_breaker=CircuitBreaker(name="github", config=CircuitBreakerConfig(failure_threshold=5, reset_timeout_seconds=60)),
        rate_limiter=limiter,
        retry_config=RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0),
    )
    return client, http_client


@pytest.mark.anyio
async def test_get_pull_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/api/pulls/7"
        assert request.headers["Authorization"] == "Bearer t"
        return httpx.Response(200, json=PR_JSON)

    client, http_client = _client(handler)
    async with http_client:
        pr = await client.get_pull_request(owner="acme", repo="api", pull_number=7)
    assert pr.head.sha == "head123"
    assert pr.base.ref == "main"
    assert [label.name for label in pr.labels] == ["enhancement"]


@pytest.mark.anyio
async def test_diff_requests_use_diff_media_type() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Accept"] == DIFF_MEDIA_TYPE
        paths.append(request.url.path)
        return httpx.Response(200, text="diff --git a/a b/a")

    client, http_client = _client(handler)
    async with http_client:
        full = await client.get_pull_request_diff(owner="acme", repo="api", pull_number=7)
        incremental = await client.compare_commits_diff(owner="acme", repo="api", base="old", head="new")
    assert full == incremental == "diff --git a/a b/a"
    assert paths == ["/repos/acme/api/pulls/7", "/repos/acme/api/compare/old...new"]


@pytest.mark.anyio
async def test_list_files_paginates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        count = 100 if page == 1 else 3
        items = [{"filename": f"f{page}_{i}.py", "status": "modified"} for i in range(count)]
        return httpx.Response(200, json=items)

    client, http_client = _client(handler)
    async with http_client:
        files = await client.list_pull_request_files(owner="acme", repo="api", pull_number=7)
    assert len(files) == 103
    assert files[-1].filename == "f2_2.py"


@pytest.mark.anyio
async def test_transient_errors_are_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json=PR_JSON)

    client, http_client = _client(handler)
    async with http_client:
        pr = await client.get_pull_request(owner="acme", repo="api", pull_number=7)
    assert pr.number == 7
    assert calls == 3


@pytest.mark.anyio
async def test_transient_errors_exhaust_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(GitHubTransientError):
            await client.get_pull_request(owner="acme", repo="api", pull_number=7)


@pytest.mark.anyio
async def test_client_errors_are_not_retried() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404, text="not found")

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(GitHubAPIError) as exc_info:
            await client.get_pull_request(owner="acme", repo="api", pull_number=7)
    assert exc_info.value.status_code == 404
    assert not isinstance(exc_info.value, GitHubTransientError)
    assert calls == 1


@pytest.mark.anyio
async def test_create_review_payload() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/repos/acme/api/pulls/7/reviews"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"id": 1})

    client, http_client = _client(handler)
    comments = [{"path": "a.py", "line": 2, "side": "RIGHT", "body": "x"}]
    async with http_client:
        await client.create_review(
            owner="acme", repo="api", pull_number=7, body="LGTM", event="APPROVE", comments=comments, commit_id="head123"
        )
    assert seen == [{"body": "LGTM", "event": "APPROVE", "comments": comments, "commit_id": "head123"}]


@pytest.mark.anyio
async def test_outbound_rate_limit_is_per_operation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Accept"] == DIFF_MEDIA_TYPE:
            return httpx.Response(200, text="")
        return httpx.Response(200, json=PR_JSON)

    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60)
    client, http_client = _client(handler, limiter=limiter)
    async with http_client:
        await client.get_pull_request(owner="acme", repo="api", pull_number=7)
        await client.get_pull_request_diff(owner="acme", repo="api", pull_number=7)
        with pytest.raises(RateLimitExceededError):
            await client.get_pull_request(owner="acme", repo="api", pull_number=7)
