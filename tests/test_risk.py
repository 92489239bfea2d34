from __future__ import annotations

from app.review.risk import PRContext
from app.review.risk import analyze_pr


def test_skip_label_short_circuits() -> None:
    ctx = PRContext(files_changed=50, additions=900, deletions=10, title="Security fix", labels=["Skip-Review"])
    decision = analyze_pr(ctx)
    assert decision.should_review is False
    assert decision.depth == "quick"
    assert decision.priority == "low"
    assert decision.reasons == ["skip-review label"]
    assert decision.focus_areas == []


def test_small_change_to_feature_branch_is_not_reviewed() -> None:
    ctx = PRContext(files_changed=1, additions=5, deletions=2, title="Update copy", base_branch="feature/x", files=["docs/a.md"])
    decision = analyze_pr(ctx)
    assert decision.should_review is False
    assert decision.reasons == ["Standard changes"]
    assert decision.depth == "quick"
    assert decision.priority == "low"


def test_small_change_to_main_is_reviewed() -> None:
    ctx = PRContext(files_changed=1, additions=5, deletions=2, title="Update copy", base_branch="main", files=["docs/a.md"])
    decision = analyze_pr(ctx)
    assert decision.should_review is True
    assert decision.priority == "low"


def test_large_change_without_score_is_reviewed_by_size() -> None:
    ctx = PRContext(files_changed=2, additions=25, deletions=10, title="Refactor", base_branch="develop")
    assert analyze_pr(ctx).should_review is True


def test_security_heavy_pr_is_deep_and_critical() -> None:
    ctx = PRContext(
        files_changed=25,
        additions=450,
        deletions=100,
        title="Fix auth token vulnerability",
        base_branch="main",
        files=["src/auth/session.py", "src/api/routes.py", "src/util.py"],
    )
    decision = analyze_pr(ctx)
    # 3 (large) + 2 (files) + 3 (sensitive title) + 4 (vulnerability) + 1 (fix) + 2 (paths) + 1 (api) + 1 (main)
    assert decision.depth == "deep"
    assert decision.priority == "critical"
    assert decision.should_review is True
    assert decision.reasons[0] == "Large: 550 lines"
    assert "25 files" in decision.reasons
    assert "Sensitive: src/auth/session.py" in decision.reasons
    assert "API changes" in decision.reasons
    assert decision.focus_areas == ["security", "bug"]


def test_medium_size_perf_change() -> None:
    ctx = PRContext(files_changed=4, additions=150, deletions=60, title="perf: cache lookups", base_branch="develop")
    decision = analyze_pr(ctx)
    assert decision.reasons == ["Medium: 210 lines"]
    assert decision.focus_areas == ["performance"]
    assert decision.depth == "quick"
    assert decision.priority == "medium"


def test_standard_depth_for_mid_score() -> None:
    ctx = PRContext(files_changed=3, additions=40, deletions=5, title="Add billing webhook", base_branch="develop")
    decision = analyze_pr(ctx)
    assert decision.depth == "standard"
    assert decision.priority == "medium"
    assert decision.focus_areas == ["security"]


def test_classifier_is_deterministic() -> None:
    ctx = PRContext(files_changed=7, additions=120, deletions=40, title="Fix login bug", files=["app/login.py"])
    assert analyze_pr(ctx) == analyze_pr(ctx)


def test_login_bugfix_on_main_is_deep_and_critical() -> None:
    ctx = PRContext(files_changed=25, additions=600, deletions=50, title="Fix login bug", base_branch="main")
    decision = analyze_pr(ctx)
    # 3 (large) + 2 (files) + 3 (sensitive title) + 1 (fix) + 1 (main)
    assert decision.should_review is True
    assert decision.depth == "deep"
    assert decision.priority == "critical"
    assert {"security", "bug"} <= set(decision.focus_areas)
