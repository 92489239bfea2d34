"""
Review Orchestrator（核心流程编排）。

关键思想：
- **流程由工程代码控制**：取 PR -> 选 diff（全量/增量）-> 过滤截断 -> prompt -> LLM -> 解析 -> 回写
- **LLM 只负责生成结构化输出**：单次调用，不 loop

增量 review：
- 上一次 **completed** review 的 head sha 存在且与当前 head 不同 -> compare `last...head`
- compare 失败（force-push 后旧 sha 不存在等）-> 记日志，退回全量 diff，is_incremental=False

失败语义：
- GitHub / LLM 错误直接抛出，由队列的 fail/retry 处理
- 解析失败被吸收：降级结果照常回写，任务正常完成
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

import anyio
import httpx

from app.github.client import GitHubAPIError
from app.github.client import GitHubClient
from app.jobs.queue import utc_now
from app.llm.client import ChatOptions
from app.llm.client import LLMProvider
from app.review.diff_parser import filter_ignored_paths
from app.review.diff_parser import parse_diff
from app.review.diff_parser import render_diff
from app.review.diff_parser import summarize_files
from app.review.diff_parser import truncate_diff
from app.review.models import FileDiff
from app.review.models import ReviewResult
from app.review.parser import ParseStatus
from app.review.parser import parse_review_response
from app.review.prompts import build_depth_instructions
from app.review.prompts import build_incremental_prompt
from app.review.prompts import build_review_prompt
from app.review.prompts import build_system_prompt
from app.review.synthesis import build_inline_comments
from app.review.synthesis import format_review_body
from app.review.synthesis import review_event_for
from app.storage.base import ReviewStore
from app.storage.models import RepoConfig
from app.storage.models import ReviewHistoryRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIFF_TOKENS = 2000


@dataclass(frozen=True)
class ReviewOrchestrator:
    """Orchestrator 运行时依赖集合（由 `app/main.py` 组装）。"""

    llm_client: LLMProvider
    github_client: GitHubClient
    store: ReviewStore
    max_diff_tokens: int = DEFAULT_MAX_DIFF_TOKENS
    temperature: float = 0.1
    max_tokens: int | None = None
    clock: Callable[[], datetime] = utc_now


@dataclass(frozen=True)
class ReviewOutcome:
    result: ReviewResult
    parse_status: ParseStatus
    files: tuple[FileDiff, ...] = ()
    defaulted_fields: tuple[str, ...] = ()
    posted: bool = False
    inline_comments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def reviewed_files(self) -> list[str]:
        return [f.path for f in self.files]


async def _select_diff(
    github_client: GitHubClient,
    owner: str,
    repo: str,
    pr_number: int,
    head_sha: str,
    last_reviewed_sha: str | None,
) -> tuple[str, bool]:
    """返回 (diff 文本, is_incremental)。"""
    if last_reviewed_sha and last_reviewed_sha != head_sha:
        try:
            diff = await github_client.compare_commits_diff(owner=owner, repo=repo, base=last_reviewed_sha, head=head_sha)
            logger.info(f"Incremental review for {owner}/{repo}#{pr_number}: {last_reviewed_sha[:7]}...{head_sha[:7]}")
            return diff, True
        except (GitHubAPIError, httpx.HTTPError) as exc:
            logger.warning(f"Incremental diff unavailable for {owner}/{repo}#{pr_number}, falling back to full diff: {exc}")
    diff = await github_client.get_pull_request_diff(owner=owner, repo=repo, pull_number=pr_number)
    return diff, False


async def run_review(
    orchestrator: ReviewOrchestrator,
    owner: str,
    repo: str,
    pr_number: int,
    categories: Sequence[str],
    depth: str | None,
    focus_areas: Sequence[str],
    repo_config: RepoConfig,
    last_reviewed_sha: str | None,
) -> ReviewOutcome:
    """
    跑一次 review（不回写），返回解析后的结果与实际 review 的文件。

    - categories: 关注类别（security/bug/performance/best_practices）
    - depth/focus_areas: risk classifier 的结论，为空时不追加深度说明
    """
    github = orchestrator.github_client
    pr = await github.get_pull_request(owner=owner, repo=repo, pull_number=pr_number)
    head_sha = pr.head.sha

    raw_diff, is_incremental = await _select_diff(
        github_client=github,
        owner=owner,
        repo=repo,
        pr_number=pr_number,
        head_sha=head_sha,
        last_reviewed_sha=last_reviewed_sha,
    )

    files = filter_ignored_paths(parse_diff(raw_diff), repo_config.ignore_paths)
    files_summary = summarize_files(files)
    diff_content = truncate_diff(render_diff(files), max_tokens=orchestrator.max_diff_tokens)
    reviewed = tuple(parse_diff(diff_content))

    depth_instructions = build_depth_instructions(depth, focus_areas)
    if is_incremental:
        prompt = build_incremental_prompt(
            pr_title=pr.title,
            files_summary=files_summary,
            diff_content=diff_content,
            categories=categories,
            depth_instructions=depth_instructions,
        )
    else:
        prompt = build_review_prompt(
            pr_title=pr.title,
            pr_description=pr.body,
            files_summary=files_summary,
            diff_content=diff_content,
            categories=categories,
            depth_instructions=depth_instructions,
        )

    raw = await orchestrator.llm_client.chat(
        prompt,
        ChatOptions(
            system_prompt=build_system_prompt(is_incremental, repo_config.custom_instructions),
            temperature=orchestrator.temperature,
            max_tokens=orchestrator.max_tokens,
        ),
    )

    parsed = parse_review_response(raw, head_sha=head_sha, is_incremental=is_incremental)
    logger.info(
        f"Review for {owner}/{repo}#{pr_number} at {head_sha[:7]}: status={parsed.status}, "
        f"files={len(reviewed)}, comments={len(parsed.result.line_comments)}"
    )
    return ReviewOutcome(
        result=parsed.result,
        parse_status=parsed.status,
        files=reviewed,
        defaulted_fields=parsed.defaulted_fields,
    )


async def review_and_post(
    orchestrator: ReviewOrchestrator,
    owner: str,
    repo: str,
    pr_number: int,
    categories: Sequence[str] | None = None,
    depth: str | None = None,
    focus_areas: Sequence[str] = (),
    post: bool = True,
    analysis: dict[str, Any] | None = None,
) -> ReviewOutcome:
    """
    完整流程：读仓库配置 + 上次 review 的 sha -> `run_review` -> （可选）回写 GitHub 并写历史。

    历史只在真正回写后写入，下一次增量 review 以它为基准。
    """
    store = orchestrator.store
    repo_full_name = f"{owner}/{repo}"
    repo_config = await anyio.to_thread.run_sync(store.get_repo_config, repo_full_name)
    last_reviewed_sha = await anyio.to_thread.run_sync(
        functools.partial(store.get_last_reviewed_sha, repo_full_name, pr_number)
    )

    outcome = await run_review(
        orchestrator=orchestrator,
        owner=owner,
        repo=repo,
        pr_number=pr_number,
        categories=categories if categories else repo_config.categories,
        depth=depth,
        focus_areas=focus_areas,
        repo_config=repo_config,
        last_reviewed_sha=last_reviewed_sha,
    )
    if not post:
        return outcome

    result = outcome.result
    inline_comments = build_inline_comments(result.line_comments, outcome.files)
    await orchestrator.github_client.create_review(
        owner=owner,
        repo=repo,
        pull_number=pr_number,
        body=format_review_body(result),
        event=review_event_for(result.approval_recommendation),
        comments=inline_comments,
        commit_id=result.head_sha,
    )

    record = ReviewHistoryRecord(
        id=str(uuid.uuid4()),
        repo_full_name=repo_full_name,
        pr_number=pr_number,
        head_sha=result.head_sha,
        is_incremental=result.is_incremental,
        result=result.model_dump(mode="json"),
        analysis=analysis,
        created_at=orchestrator.clock(),
    )
    await anyio.to_thread.run_sync(store.insert_review_history, record)
    return replace(outcome, posted=True, inline_comments=inline_comments)
