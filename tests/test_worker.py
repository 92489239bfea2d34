from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.jobs import worker as worker_module
from app.jobs.queue import JobQueue
from app.jobs.worker import drain_queue
from app.storage.memory import InMemoryReviewStore
from app.storage.models import JobStatus


class RecordingNotifier:
    def __init__(self) -> None:
        self.completed: list[tuple[str, int, int]] = []
        self.failed: list[dict] = []

    async def review_completed(self, repo_full_name: str, pr_number: int, comment_count: int) -> None:
        self.completed.append((repo_full_name, pr_number, comment_count))

    async def review_failed(
        self,
        repo_full_name: str,
        pr_number: int,
        error: str,
        attempts: int,
        will_retry: bool,
    ) -> None:
        self.failed.append(
            {"pr_number": pr_number, "error": error, "attempts": attempts, "will_retry": will_retry}
        )


class FakeReviewer:
    """替换 `review_and_post`：记录调用参数，可按 PR 号注入失败。"""

    def __init__(self, failing: set[int] | None = None, on_call=None) -> None:
        self.failing = failing or set()
        self.on_call = on_call
        self.calls: list[dict] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.on_call is not None:
            self.on_call()
        if kwargs["pr_number"] in self.failing:
            raise RuntimeError(f"review of #{kwargs['pr_number']} failed")
        return SimpleNamespace(inline_comments=[{"path": "a.py"}, {"path": "b.py"}])


@pytest.fixture
def store() -> InMemoryReviewStore:
    return InMemoryReviewStore()


@pytest.fixture
def queue(store, date_clock) -> JobQueue:
    return JobQueue(store=store, clock=date_clock)


def _install(monkeypatch, reviewer: FakeReviewer) -> None:
    monkeypatch.setattr(worker_module, "review_and_post", reviewer)


@pytest.mark.anyio
async def test_processes_jobs_and_notifies(monkeypatch, queue, clock) -> None:
    reviewer = FakeReviewer()
    _install(monkeypatch, reviewer)
    notifier = RecordingNotifier()
    await queue.enqueue(owner="acme", repo="api", pr_number=1, analysis={"depth": "deep", "focus_areas": ["security"]})
    await queue.enqueue(owner="acme", repo="api", pr_number=2)

    report = await drain_queue(queue=queue, orchestrator=object(), notifier=notifier, clock=clock)

    assert (report.processed, report.errors, report.count, report.recovered) == (2, 0, 2, 0)
    assert notifier.completed == [("acme/api", 1, 2), ("acme/api", 2, 2)]
    assert reviewer.calls[0]["depth"] == "deep"
    assert list(reviewer.calls[0]["focus_areas"]) == ["security"]
    assert reviewer.calls[0]["post"] is True
    assert reviewer.calls[1]["depth"] is None
    stats = await queue.stats()
    assert stats.completed_today == 2


@pytest.mark.anyio
async def test_failure_schedules_retry(monkeypatch, queue, store, clock) -> None:
    _install(monkeypatch, FakeReviewer(failing={2}))
    notifier = RecordingNotifier()
    await queue.enqueue(owner="acme", repo="api", pr_number=1)
    failing = await queue.enqueue(owner="acme", repo="api", pr_number=2)

    report = await drain_queue(queue=queue, orchestrator=object(), notifier=notifier, clock=clock)

    assert (report.processed, report.errors) == (1, 1)
    assert notifier.failed == [
        {"pr_number": 2, "error": "review of #2 failed", "attempts": 1, "will_retry": True}
    ]
    stored = store.get_job(failing.id)
    assert stored is not None
    assert stored.status is JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.next_retry_at is not None


@pytest.mark.anyio
async def test_last_attempt_failure_is_terminal(monkeypatch, queue, store, date_clock, clock) -> None:
    _install(monkeypatch, FakeReviewer(failing={1}))
    notifier = RecordingNotifier()
    job = await queue.enqueue(owner="acme", repo="api", pr_number=1)
    store.update_job_failure(job.id, "earlier", attempts=2, terminal=False, next_retry_at=None, now=date_clock.now)

    await drain_queue(queue=queue, orchestrator=object(), notifier=notifier, clock=clock)

    stored = store.get_job(job.id)
    assert stored is not None
    assert stored.status is JobStatus.FAILED
    assert stored.attempts == 3
    assert notifier.failed[0]["will_retry"] is False


@pytest.mark.anyio
async def test_max_jobs_is_checked_before_claiming(monkeypatch, queue, clock) -> None:
    _install(monkeypatch, FakeReviewer())
    for pr in (1, 2, 3):
        await queue.enqueue(owner="acme", repo="api", pr_number=pr)

    report = await drain_queue(queue=queue, orchestrator=object(), notifier=RecordingNotifier(), max_jobs=2, clock=clock)

    assert report.count == 2
    stats = await queue.stats()
    assert (stats.pending, stats.processing) == (1, 0)


@pytest.mark.anyio
async def test_time_budget_stops_before_next_claim(monkeypatch, queue, clock) -> None:
    _install(monkeypatch, FakeReviewer(on_call=lambda: clock.advance(40)))
    for pr in (1, 2, 3):
        await queue.enqueue(owner="acme", repo="api", pr_number=pr)

    report = await drain_queue(
        queue=queue, orchestrator=object(), notifier=RecordingNotifier(), time_budget_seconds=55, clock=clock
    )

    assert report.processed == 2
    assert report.duration_ms == 80_000
    stats = await queue.stats()
    assert (stats.pending, stats.processing) == (1, 0)


@pytest.mark.anyio
async def test_recovers_stale_jobs_first(monkeypatch, queue, date_clock, clock) -> None:
    _install(monkeypatch, FakeReviewer())
    await queue.enqueue(owner="acme", repo="api", pr_number=1)
    await queue.claim()  # 模拟 worker 崩溃：任务停在 processing
    date_clock.advance(minutes=11)

    report = await drain_queue(queue=queue, orchestrator=object(), notifier=RecordingNotifier(), clock=clock)

    assert report.recovered == 1
    assert report.processed == 1


@pytest.mark.anyio
async def test_empty_queue(monkeypatch, queue, clock) -> None:
    reviewer = FakeReviewer()
    _install(monkeypatch, reviewer)
    report = await drain_queue(queue=queue, orchestrator=object(), notifier=RecordingNotifier(), clock=clock)
    assert report.count == 0
    assert reviewer.calls == []


class ExplodingNotifier(RecordingNotifier):
    async def review_completed(self, repo_full_name: str, pr_number: int, comment_count: int) -> None:
        raise RuntimeError("slack down")

    async def review_failed(self, repo_full_name: str, pr_number: int, error: str, attempts: int, will_retry: bool) -> None:
        raise RuntimeError("slack down")


@pytest.mark.anyio
async def test_notifier_errors_do_not_stop_the_drain(monkeypatch, queue, store, clock) -> None:
    _install(monkeypatch, FakeReviewer(failing={2}))
    jobs = [await queue.enqueue(owner="acme", repo="api", pr_number=pr) for pr in (1, 2, 3)]

    report = await drain_queue(queue=queue, orchestrator=object(), notifier=ExplodingNotifier(), clock=clock)

    assert (report.processed, report.errors, report.count) == (2, 1, 3)
    stats = await queue.stats()
    assert (stats.pending, stats.processing, stats.completed_today) == (1, 0, 2)
    retried = store.get_job(jobs[1].id)
    assert retried is not None
    assert retried.status is JobStatus.PENDING
    assert retried.attempts == 1
