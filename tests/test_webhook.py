from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import GitHubConfig
from app.github.client import GitHubClient
from app.github.schemas import GitHubPullRequestWebhookEvent
from app.github.webhook import build_github_webhook_router
from app.infra.circuit_breaker import CircuitBreaker
from app.infra.circuit_breaker import CircuitBreakerConfig
from app.jobs.intake import IntakeResponse
from app.jobs.intake import build_pull_request_handler
from app.jobs.queue import JobQueue
from app.storage.memory import InMemoryReviewStore
from app.storage.models import RepoConfig

SECRET = "s3cret"


def _event(action: str = "opened", draft: bool = False, title: str = "Fix auth bug", labels: list[str] | None = None) -> dict:
    return {
        "action": action,
        "number": 7,
        "pull_request": {
            "number": 7,
            "title": title,
            "body": None,
            "draft": draft,
            "head": {"sha": "head123", "ref": "feature"},
            "base": {"sha": "base000", "ref": "main"},
            "additions": 40,
            "deletions": 5,
            "changed_files": 2,
            "labels": [{"name": n} for n in (labels or [])],
        },
        "repository": {"name": "api", "full_name": "acme/api", "owner": {"login": "acme"}},
    }


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[GitHubPullRequestWebhookEvent] = []

    async def __call__(self, event: GitHubPullRequestWebhookEvent) -> IntakeResponse:
        self.events.append(event)
        return IntakeResponse(status="queued", job_id="job-1", reasons=["Bug fix"])


def _app(handler, secret: str | None = SECRET) -> TestClient:
    app = FastAPI()
    config = GitHubConfig(api_base_url="https://api.github.com", token="t", webhook_secret=secret)
    app.include_router(build_github_webhook_router(config=config, handler=handler))
    return TestClient(app)


def _post(client: TestClient, payload: dict, signature: str | None = "auto", event: str = "pull_request"):
    body = json.dumps(payload).encode("utf-8")
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if signature == "auto":
        headers["X-Hub-Signature-256"] = _sign(body)
    elif signature is not None:
        headers["X-Hub-Signature-256"] = signature
    return client.post("/webhook", content=body, headers=headers)


def test_valid_signature_reaches_handler() -> None:
    handler = RecordingHandler()
    response = _post(_app(handler), _event())
    assert response.status_code == 200
    assert response.json() == {"status": "queued", "job_id": "job-1", "reasons": ["Bug fix"]}
    assert handler.events[0].pull_request.number == 7


def test_invalid_signature_is_rejected() -> None:
    handler = RecordingHandler()
    response = _post(_app(handler), _event(), signature=_sign(b"other body"))
    assert response.status_code == 401
    assert handler.events == []


def test_missing_signature_is_rejected_when_secret_configured() -> None:
    handler = RecordingHandler()
    response = _post(_app(handler), _event(), signature=None)
    assert response.status_code == 401


def test_no_secret_skips_verification() -> None:
    handler = RecordingHandler()
    response = _post(_app(handler, secret=None), _event(), signature=None)
    assert response.status_code == 200
    assert len(handler.events) == 1


def test_non_pull_request_event_is_ignored() -> None:
    handler = RecordingHandler()
    response = _post(_app(handler), {"zen": "hi"}, event="ping")
    assert response.json() == {"status": "ignored"}
    assert handler.events == []


@pytest.mark.parametrize("action", ["closed", "edited", "labeled"])
def test_non_review_actions_are_ignored(action: str) -> None:
    handler = RecordingHandler()
    response = _post(_app(handler), _event(action=action))
    assert response.json() == {"status": "ignored"}
    assert handler.events == []


def test_invalid_json_is_rejected() -> None:
    client = _app(RecordingHandler())
    body = b"{not json"
    response = client.post(
        "/webhook",
        content=body,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": _sign(body)},
    )
    assert response.status_code == 400


# --- intake（分类 + 入队）---


def _files_handler(request: httpx.Request) -> httpx.Response:
    assert request.url.path == "/repos/acme/api/pulls/7/files"
    return httpx.Response(
        200,
        json=[
            {"filename": "src/auth/login.py", "status": "modified"},
            {"filename": "README.md", "status": "modified"},
        ],
    )


def _intake(store: InMemoryReviewStore, date_clock):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_files_handler))
    github = GitHubClient(
        api_base_url="https://api.github.test",
        token="t",
        http_client=http_client,
        circuit_breaker=CircuitBreaker(name="github", config=CircuitBreakerConfig(failure_threshold=5, reset_timeout_seconds=60)),
    )
    queue = JobQueue(store=store, clock=date_clock)
    return build_pull_request_handler(queue=queue, github_client=github, store=store), queue, http_client


@pytest.mark.anyio
async def test_intake_queues_then_reports_already_queued(date_clock) -> None:
    store = InMemoryReviewStore()
    handle, queue, http_client = _intake(store, date_clock)
    event = GitHubPullRequestWebhookEvent.model_validate(_event())

    async with http_client:
        first = await handle(event)
        second = await handle(event)

    assert first.status == "queued"
    assert first.job_id is not None
    job = await queue.get(first.job_id)
    assert job is not None
    assert job.analysis is not None
    assert job.analysis["should_review"] is True
    assert "security" in job.analysis["focus_areas"]
    assert second.status == "already_queued"


@pytest.mark.anyio
async def test_intake_ignores_drafts_and_disabled_repos(date_clock) -> None:
    store = InMemoryReviewStore(repo_configs={"acme/api": RepoConfig(full_name="acme/api", auto_review=False)})
    handle, _, http_client = _intake(store, date_clock)

    async with http_client:
        draft = await handle(GitHubPullRequestWebhookEvent.model_validate(_event(draft=True)))
        disabled = await handle(GitHubPullRequestWebhookEvent.model_validate(_event()))

    assert draft.status == "ignored"
    assert disabled.status == "ignored"


@pytest.mark.anyio
async def test_intake_skips_when_classifier_says_so(date_clock) -> None:
    store = InMemoryReviewStore()
    handle, queue, http_client = _intake(store, date_clock)

    async with http_client:
        response = await handle(GitHubPullRequestWebhookEvent.model_validate(_event(labels=["no-review"])))

    assert response.status == "skipped"
    assert response.reasons == ["skip-review label"]
    assert (await queue.stats()).pending == 0
