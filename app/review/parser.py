"""
LLM review 输出解析。

策略：
- 先从文本里提取 JSON（兼容 ```json 代码块、前后夹杂说明文字）
- 用 Pydantic schema 校验；未知的 severity/category/approval 值**不拒绝**，
  而是降级为安全默认值（medium / other / comment），并记录下被降级的字段
- 完全无法解析时返回降级结果（建议人工 review），而不是抛错：
  模型格式错误不是瞬时故障，重试只会制造重试风暴

结果用 `ParseOutcome.status` 显式区分：parsed / defaulted / unparseable。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator

from app.review.models import ApprovalRecommendation
from app.review.models import FileWalkthrough
from app.review.models import LineComment
from app.review.models import ReviewCategory
from app.review.models import ReviewResult
from app.review.models import ReviewSummary
from app.review.models import Severity

logger = logging.getLogger(__name__)

MAX_RESPONSE_CHARS = 1_000_000
APPROVAL_VALUES: tuple[str, ...] = ("approve", "request_changes", "comment")

ParseStatus = Literal["parsed", "defaulted", "unparseable"]

E = TypeVar("E", bound=Enum)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
_BRACE_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class ParseOutcome:
    status: ParseStatus
    result: ReviewResult
    defaulted_fields: tuple[str, ...] = ()
    error: str | None = None

    @property
    def is_degraded(self) -> bool:
        return self.status == "unparseable"


def _record_default(info: ValidationInfo, field_name: str) -> None:
    context = info.context
    if isinstance(context, dict) and isinstance(context.get("defaulted"), list):
        context["defaulted"].append(field_name)


def _coerce_enum(value: Any, enum_cls: type[E], default: E, field_name: str, info: ValidationInfo) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        _record_default(info, field_name)
        return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_text_list(value: Any, field_name: str, info: ValidationInfo) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        _record_default(info, field_name)
        return []
    return [_as_text(v) for v in value]


def _as_int(value: Any, field_name: str, info: ValidationInfo, default: int | None) -> int | None:
    if value is None:
        return default
    if isinstance(value, bool):
        _record_default(info, field_name)
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        _record_default(info, field_name)
        return default


def _as_dict_list(value: Any, field_name: str, info: ValidationInfo) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        _record_default(info, field_name)
        return []
    items = [v for v in value if isinstance(v, dict)]
    if len(items) != len(value):
        _record_default(info, field_name)
    return items


class _SummaryPayload(BaseModel):
    overview: str = ""
    changes_description: str = ""
    risk_assessment: str = "Unknown"
    recommendations: list[str] = Field(default_factory=list)
    praise: list[str] = Field(default_factory=list)

    @field_validator("overview", "changes_description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("risk_assessment", mode="before")
    @classmethod
    def _risk(cls, value: Any) -> str:
        return _as_text(value) or "Unknown"

    @field_validator("recommendations", "praise", mode="before")
    @classmethod
    def _text_list(cls, value: Any, info: ValidationInfo) -> list[str]:
        return _as_text_list(value, f"summary.{info.field_name}", info)


class _WalkthroughPayload(BaseModel):
    path: str = ""
    summary: str = ""
    changes: list[str] = Field(default_factory=list)

    @field_validator("path", "summary", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("changes", mode="before")
    @classmethod
    def _changes(cls, value: Any, info: ValidationInfo) -> list[str]:
        return _as_text_list(value, "walkthrough.changes", info)


class _LineCommentPayload(BaseModel):
    path: str = ""
    line: int = 0
    body: str = ""
    severity: Severity = Severity.MEDIUM
    category: ReviewCategory = ReviewCategory.OTHER
    start_line: int | None = None
    suggestion: str | None = None

    @field_validator("path", "body", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("line", mode="before")
    @classmethod
    def _line(cls, value: Any, info: ValidationInfo) -> int:
        return _as_int(value, "line_comments.line", info, default=0) or 0

    @field_validator("start_line", mode="before")
    @classmethod
    def _start_line(cls, value: Any, info: ValidationInfo) -> int | None:
        return _as_int(value, "line_comments.start_line", info, default=None) or None

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value: Any, info: ValidationInfo) -> Severity:
        return _coerce_enum(value, Severity, Severity.MEDIUM, "line_comments.severity", info)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any, info: ValidationInfo) -> ReviewCategory:
        return _coerce_enum(value, ReviewCategory, ReviewCategory.OTHER, "line_comments.category", info)

    @field_validator("suggestion", mode="before")
    @classmethod
    def _suggestion(cls, value: Any) -> str | None:
        return _as_text(value) or None


class ReviewPayload(BaseModel):
    """模型应输出的 JSON 结构（宽松版，未知值会被降级）。"""

    summary: _SummaryPayload = Field(default_factory=_SummaryPayload)
    walkthrough: list[_WalkthroughPayload] = Field(default_factory=list)
    line_comments: list[_LineCommentPayload] = Field(default_factory=list)
    approval_recommendation: ApprovalRecommendation = "comment"

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value: Any, info: ValidationInfo) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            _record_default(info, "summary")
            return {}
        return value

    @field_validator("walkthrough", "line_comments", mode="before")
    @classmethod
    def _items(cls, value: Any, info: ValidationInfo) -> list[dict[str, Any]]:
        return _as_dict_list(value, str(info.field_name), info)

    @field_validator("approval_recommendation", mode="before")
    @classmethod
    def _approval(cls, value: Any, info: ValidationInfo) -> str:
        normalized = _as_text(value).strip().lower()
        if normalized in APPROVAL_VALUES:
            return normalized
        if value is not None:
            _record_default(info, "approval_recommendation")
        return "comment"


def extract_json_payload(text: str) -> dict[str, Any]:
    """
    从模型输出里提取 JSON object。

    - 依次尝试：整体解析 -> 代码块 -> 第一个 `{...}` 片段
    - 都失败或结果不是 object 时抛 `ValueError`
    """
    stripped = text.strip()
    if len(stripped) > MAX_RESPONSE_CHARS:
        raise ValueError(f"Response too large ({len(stripped)} chars), max {MAX_RESPONSE_CHARS}")

    candidates = [stripped]
    fence = _FENCE_PATTERN.search(stripped)
    if fence:
        candidates.append(fence.group(1).strip())
    brace = _BRACE_PATTERN.search(stripped)
    if brace:
        candidates.append(brace.group(0))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValueError(f"Could not extract a JSON object from response: {stripped[:200]!r}")


def degraded_review_result(head_sha: str, is_incremental: bool) -> ReviewResult:
    """解析失败时的兜底结果：不带行内评论，提示人工 review。"""
    return ReviewResult(
        summary=ReviewSummary(
            overview="Review completed but parsing failed",
            changes_description="See raw response",
            risk_assessment="Unknown",
            recommendations=["Manual review recommended"],
        ),
        walkthrough=[],
        line_comments=[],
        approval_recommendation="comment",
        head_sha=head_sha,
        is_incremental=is_incremental,
    )


def parse_review_response(raw: str, head_sha: str, is_incremental: bool) -> ParseOutcome:
    try:
        data = extract_json_payload(raw)
    except ValueError as exc:
        logger.warning(f"LLM review response is not parseable JSON: {exc}")
        return ParseOutcome(
            status="unparseable",
            result=degraded_review_result(head_sha=head_sha, is_incremental=is_incremental),
            error=str(exc),
        )

    defaulted: list[str] = []
    try:
        payload = ReviewPayload.model_validate(data, context={"defaulted": defaulted})
    except ValidationError as exc:
        logger.warning(f"LLM review JSON does not match schema: {exc}")
        return ParseOutcome(
            status="unparseable",
            result=degraded_review_result(head_sha=head_sha, is_incremental=is_incremental),
            error=str(exc),
        )

    result = ReviewResult(
        summary=ReviewSummary(**payload.summary.model_dump()),
        walkthrough=[FileWalkthrough(**w.model_dump()) for w in payload.walkthrough],
        line_comments=[LineComment(**c.model_dump()) for c in payload.line_comments],
        approval_recommendation=payload.approval_recommendation,
        head_sha=head_sha,
        is_incremental=is_incremental,
    )
    if defaulted:
        logger.info(f"LLM review parsed with defaults for: {', '.join(sorted(set(defaulted)))}")
        return ParseOutcome(status="defaulted", result=result, defaulted_fields=tuple(dict.fromkeys(defaulted)))
    return ParseOutcome(status="parsed", result=result)
