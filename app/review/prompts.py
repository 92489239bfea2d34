"""
Review prompt 模板。

结构：
- system prompt：全量 / 增量两种，强制 JSON-only 输出（后面还可以追加仓库级自定义指令）
- user prompt：PR 信息 + 文件摘要 + diff + 按类别选择的关注点
"""

from __future__ import annotations

from collections.abc import Sequence

_OUTPUT_SCHEMA = """{
  "summary": {
    "overview": "1-2 sentence summary",
    "changes_description": "What this PR does",
    "risk_assessment": "Low|Medium|High - explanation",
    "recommendations": ["Action items"],
    "praise": ["What's good"]
  },
  "walkthrough": [
    {"path": "file.py", "summary": "Changes description", "changes": ["Change 1"]}
  ],
  "line_comments": [
    {
      "path": "file.py",
      "line": 42,
      "body": "Issue with fix suggestion",
      "severity": "critical|high|medium|low|info",
      "category": "security|bug|performance|style|suggestion|dependency|maintainability|other",
      "suggestion": "optional replacement code"
    }
  ],
  "approval_recommendation": "approve|request_changes|comment"
}"""

_SEVERITY_GUIDE = """## Severity
- critical: Security vulnerabilities, data loss, crashes
- high: Bugs causing incorrect behavior
- medium: Code smells, edge cases
- low: Minor improvements
- info: Observations, praise"""

SYSTEM_PROMPT = f"""You are an expert senior code reviewer. Provide thorough, actionable feedback.

## Review Philosophy
- Be constructive: suggest improvements, don't just criticize
- Focus on high-impact issues: security, bugs, performance
- Explain the reason behind every suggestion and give concrete fixes

{_SEVERITY_GUIDE}

## Output JSON
{_OUTPUT_SCHEMA}

Return ONLY valid JSON."""

INCREMENTAL_SYSTEM_PROMPT = f"""You are an expert code reviewer performing an INCREMENTAL review of NEW changes only.

## Focus
- Review ONLY code that changed since the last review
- Don't repeat previous feedback
- Acknowledge previous issues that were fixed

{_SEVERITY_GUIDE}

## Output JSON
{_OUTPUT_SCHEMA}

Return ONLY valid JSON."""

FOCUS_BLOCKS: dict[str, str] = {
    "security": """### Security
- Input validation and sanitization
- SQL injection, XSS, command injection risks
- Authentication/authorization issues
- Sensitive data exposure (API keys, credentials, PII)
- Insecure cryptographic practices""",
    "bug": """### Bugs
- Logic errors and edge cases
- Null/None handling
- Race conditions
- Error handling gaps
- Off-by-one errors""",
    "performance": """### Performance
- N+1 query patterns
- Unnecessary loops or iterations
- Memory leaks
- Blocking operations in async code
- Missing caching opportunities""",
    "best_practices": """### Best Practices
- Duplicated logic
- Error handling and logging
- Naming and single responsibility
- Code organization and modularity
- Testing considerations""",
}

GENERAL_FOCUS = "General code quality review"

DEPTH_INSTRUCTIONS: dict[str, str] = {
    "quick": "Do a quick pass: report only critical and high severity issues.",
    "standard": "Do a standard review: report issues of medium severity and above, skip nitpicks.",
    "deep": (
        "Do a deep review: examine every changed line, consider edge cases, concurrency "
        "and failure modes, and report issues of any severity."
    ),
}

MAX_DESCRIPTION_CHARS = 1000


def truncate_description(description: str | None, max_chars: int = MAX_DESCRIPTION_CHARS) -> str:
    if not description:
        return "No description provided"
    if len(description) <= max_chars:
        return description
    return description[:max_chars] + "\n... [description truncated]"


def build_system_prompt(is_incremental: bool, custom_instructions: str | None = None) -> str:
    """选择全量/增量 system prompt，并追加仓库级自定义指令。"""
    prompt = INCREMENTAL_SYSTEM_PROMPT if is_incremental else SYSTEM_PROMPT
    if custom_instructions:
        prompt += f"\n\n## Custom Instructions\n{custom_instructions}"
    return prompt


def build_focus_section(categories: Sequence[str]) -> str:
    """只拼接请求的类别；类别名大小写、`-`/`_` 不敏感。"""
    wanted = {c.strip().lower().replace("-", "_") for c in categories}
    parts = [block for name, block in FOCUS_BLOCKS.items() if name in wanted]
    return "\n\n".join(parts) if parts else GENERAL_FOCUS


def build_depth_instructions(depth: str | None, focus_areas: Sequence[str] = ()) -> str:
    """Risk classifier 的结论转成 prompt 附加说明（depth 为空时返回空串）。"""
    if depth is None:
        return ""
    lines = [f"## Review Depth: {depth}", DEPTH_INSTRUCTIONS.get(depth, DEPTH_INSTRUCTIONS["standard"])]
    if focus_areas:
        lines.append(f"Pay special attention to: {', '.join(focus_areas)}.")
    return "\n".join(lines)


def build_review_prompt(
    pr_title: str,
    pr_description: str | None,
    files_summary: str,
    diff_content: str,
    categories: Sequence[str],
    depth_instructions: str = "",
) -> str:
    prompt = (
        "Review the following pull request diff.\n\n"
        "## PR Information\n"
        f"- Title: {pr_title}\n"
        f"- Description: {truncate_description(pr_description)}\n\n"
        "## Changed Files\n"
        f"{files_summary}\n\n"
        "## Diff\n"
        f"```diff\n{diff_content}\n```\n\n"
        "## Review Focus Areas\n"
        f"{build_focus_section(categories)}\n"
    )
    if depth_instructions:
        prompt += f"\n{depth_instructions}\n"
    return prompt + "\nProvide your review in the JSON format specified in your instructions."


def build_incremental_prompt(
    pr_title: str,
    files_summary: str,
    diff_content: str,
    categories: Sequence[str],
    depth_instructions: str = "",
) -> str:
    prompt = (
        "Review the following NEW CHANGES since the last review.\n\n"
        "## PR Title\n"
        f"{pr_title}\n\n"
        "## Changed Files (since last review)\n"
        f"{files_summary}\n\n"
        "## New Diff\n"
        f"```diff\n{diff_content}\n```\n\n"
        "## Review Focus Areas\n"
        f"{build_focus_section(categories)}\n"
    )
    if depth_instructions:
        prompt += f"\n{depth_instructions}\n"
    return prompt + "\nRemember: only comment on the NEW changes shown above. Do not repeat previous feedback."
