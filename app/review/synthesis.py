"""
Synthesis（汇总输出）。

注意：
- 这里是**确定性输出**（不依赖 LLM），便于稳定回写 GitHub
- 行内评论只保留落在本次 diff hunk 里的 path/line，否则 GitHub 会拒绝整个 review
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from app.review.diff_parser import commentable_lines
from app.review.models import FileDiff
from app.review.models import LineComment
from app.review.models import ReviewResult
from app.review.models import Severity

MAX_INLINE_COMMENTS = 50

APPROVAL_EVENTS: dict[str, str] = {
    "approve": "APPROVE",
    "request_changes": "REQUEST_CHANGES",
    "comment": "COMMENT",
}


def review_event_for(recommendation: str) -> str:
    return APPROVAL_EVENTS.get(recommendation, "COMMENT")


def format_review_body(result: ReviewResult) -> str:
    """把 `ReviewResult` 渲染成 GitHub review 正文（markdown）。"""
    summary = result.summary
    lines: list[str] = []

    if result.is_incremental:
        lines.append("## 🔄 Incremental Review")
        lines.append("*Reviewing only new changes since last review*")
    else:
        lines.append("## 🤖 AI Code Review")
    lines.append("")

    lines.append("### Summary")
    lines.append(summary.overview)
    lines.append("")

    if summary.changes_description:
        lines.append("### Changes")
        lines.append(summary.changes_description)
        lines.append("")

    lines.append(f"**Risk Level:** {summary.risk_assessment}")
    lines.append("")

    if summary.praise:
        lines.append("### ✨ What's Good")
        lines.extend(f"- {p}" for p in summary.praise)
        lines.append("")

    if result.walkthrough:
        lines.append("<details>")
        lines.append("<summary>📁 Walkthrough</summary>")
        lines.append("")
        for item in result.walkthrough:
            lines.append(f"**{item.path}**: {item.summary}")
            lines.extend(f"  - {change}" for change in item.changes)
            lines.append("")
        lines.append("</details>")
        lines.append("")

    if summary.recommendations:
        lines.append("### Recommendations")
        lines.extend(f"- {r}" for r in summary.recommendations)
        lines.append("")

    comments = result.line_comments
    if comments:
        critical = sum(1 for c in comments if c.severity == Severity.CRITICAL)
        high = sum(1 for c in comments if c.severity == Severity.HIGH)
        other = len(comments) - critical - high
        lines.append("---")
        lines.append(
            f"📊 **{len(comments)} comments** | 🔴 {critical} critical | 🟠 {high} high | 🟡 {other} other"
        )

    return "\n".join(lines).rstrip() + "\n"


def format_inline_comment(comment: LineComment) -> str:
    body = f"**[{comment.severity.value.upper()}]** {comment.body}"
    if comment.suggestion:
        body += f"\n\n```suggestion\n{comment.suggestion}\n```"
    return body


def build_inline_comments(
    comments: Sequence[LineComment],
    files: Sequence[FileDiff],
    limit: int = MAX_INLINE_COMMENTS,
) -> list[dict[str, Any]]:
    """
    转成 GitHub create-review 的 `comments` 参数。

    - 只保留 path 在 `files` 里、且行号在对应 hunk 新文件侧的评论
    - 超出 `limit` 的部分丢弃（顺序保持模型输出顺序）
    """
    allowed = {f.path: commentable_lines(f) for f in files}
    payload: list[dict[str, Any]] = []
    for comment in comments:
        lines = allowed.get(comment.path)
        if not lines or comment.line not in lines:
            continue
        item: dict[str, Any] = {
            "path": comment.path,
            "line": comment.line,
            "side": "RIGHT",
            "body": format_inline_comment(comment),
        }
        if comment.start_line is not None and comment.start_line < comment.line and comment.start_line in lines:
            item["start_line"] = comment.start_line
            item["start_side"] = "RIGHT"
        payload.append(item)
        if len(payload) >= limit:
            break
    return payload
