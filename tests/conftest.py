from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ManualClock:
    """单调时钟（秒），测试里手动推进。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualDateClock:
    """UTC datetime 时钟，测试里手动推进。"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def date_clock() -> ManualDateClock:
    return ManualDateClock()


SAMPLE_DIFF = "\n".join(
    [
        "diff --git a/src/app.py b/src/app.py",
        "index 1111111..2222222 100644",
        "--- a/src/app.py",
        "+++ b/src/app.py",
        "@@ -1,3 +1,4 @@",
        " import os",
        "-x = 1",
        "+x = 2",
        "+y = 3",
        " print(x)",
        "diff --git a/package-lock.json b/package-lock.json",
        "--- a/package-lock.json",
        "+++ b/package-lock.json",
        "@@ -1 +1 @@",
        '-{"a": 1}',
        '+{"a": 2}',
        "diff --git a/README.md b/README.md",
        "--- a/README.md",
        "+++ b/README.md",
        "@@ -10,2 +10,3 @@",
        " # Title",
        "+More docs",
        " end",
    ]
)


@pytest.fixture
def sample_diff() -> str:
    return SAMPLE_DIFF
