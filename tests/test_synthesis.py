from __future__ import annotations

from app.review.diff_parser import parse_diff
from app.review.models import FileWalkthrough
from app.review.models import LineComment
from app.review.models import ReviewCategory
from app.review.models import ReviewResult
from app.review.models import ReviewSummary
from app.review.models import Severity
from app.review.synthesis import build_inline_comments
from app.review.synthesis import format_inline_comment
from app.review.synthesis import format_review_body
from app.review.synthesis import review_event_for


def _comment(path: str = "src/app.py", line: int = 2, severity: Severity = Severity.HIGH, **kwargs) -> LineComment:
    return LineComment(path=path, line=line, body="Check this", severity=severity, category=ReviewCategory.BUG, **kwargs)


def _result(is_incremental: bool = False, comments: list[LineComment] | None = None) -> ReviewResult:
    return ReviewResult(
        summary=ReviewSummary(
            overview="Looks fine",
            changes_description="Changes x",
            risk_assessment="Low",
            recommendations=["Add tests"],
            praise=["Small diff"],
        ),
        walkthrough=[FileWalkthrough(path="src/app.py", summary="Tweaks", changes=["x = 2"])],
        line_comments=comments or [],
        head_sha="abc",
        is_incremental=is_incremental,
    )


def test_full_review_body_sections() -> None:
    body = format_review_body(
        _result(comments=[_comment(), _comment(severity=Severity.CRITICAL), _comment(severity=Severity.LOW)])
    )
    assert body.startswith("## 🤖 AI Code Review")
    assert "### Summary\nLooks fine" in body
    assert "### Changes\nChanges x" in body
    assert "**Risk Level:** Low" in body
    assert "### ✨ What's Good\n- Small diff" in body
    assert "<details>" in body and "**src/app.py**: Tweaks" in body
    assert "### Recommendations\n- Add tests" in body
    assert "📊 **3 comments** | 🔴 1 critical | 🟠 1 high | 🟡 1 other" in body


def test_incremental_review_header() -> None:
    body = format_review_body(_result(is_incremental=True))
    assert body.startswith("## 🔄 Incremental Review\n*Reviewing only new changes since last review*")
    assert "📊" not in body


def test_event_mapping() -> None:
    assert review_event_for("approve") == "APPROVE"
    assert review_event_for("request_changes") == "REQUEST_CHANGES"
    assert review_event_for("comment") == "COMMENT"
    assert review_event_for("unknown") == "COMMENT"


def test_inline_comment_body_with_suggestion() -> None:
    body = format_inline_comment(_comment(suggestion="x = 3"))
    assert body == "**[HIGH]** Check this\n\n```suggestion\nx = 3\n```"


def test_inline_comments_keep_only_lines_in_diff(sample_diff) -> None:
    files = parse_diff(sample_diff)
    comments = [
        _comment(line=2),
        _comment(line=99),
        _comment(path="unknown.py", line=1),
        _comment(path="README.md", line=11, start_line=10),
    ]
    payload = build_inline_comments(comments, files)
    assert [(c["path"], c["line"]) for c in payload] == [("src/app.py", 2), ("README.md", 11)]
    assert payload[0]["side"] == "RIGHT"
    assert payload[1]["start_line"] == 10


def test_inline_comments_are_capped(sample_diff) -> None:
    files = parse_diff(sample_diff)
    comments = [_comment(line=2) for _ in range(60)]
    assert len(build_inline_comments(comments, files)) == 50
    assert len(build_inline_comments(comments, files, limit=3)) == 3
