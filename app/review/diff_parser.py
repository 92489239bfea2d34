"""
Diff 分析（非 AI，确定性）。

职责：
- 把 unified diff 文本解析成 `FileDiff` 列表
- 过滤忽略路径 / lock 文件 / 压缩产物
- 按优先级排序（源码在前），再按 token 预算截断，尽量在文件边界截断

说明：
- token 估算按 4 字符 / token，足够用于预算控制
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.review.models import DiffHunk
from app.review.models import FileDiff
from app.review.models import FileStatus

CHARS_PER_TOKEN = 4
NO_FILES_CHANGED = "No files changed"

FILE_HEADER_PATTERN = re.compile(r"^diff --git a/(.*) b/(.*)$")
HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+),?(\d*) \+(\d+),?(\d*) @@")

# lock 文件 / 构建产物：对 review 没价值，只消耗预算
SKIP_FILES = frozenset(
    {
        "Cargo.lock",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "poetry.lock",
        "Gemfile.lock",
        "composer.lock",
        "go.sum",
    }
)
SKIP_PATTERNS = (".min.js", ".min.css", "bundle.js", "vendor.js")

LOW_PRIORITY_PATTERNS = (
    ".lock",
    ".sum",
    ".map",
    ".generated",
    ".snap",
    "test",
    "spec",
    "mock",
    "__pycache__",
    ".pyc",
)
MARKUP_EXTENSIONS = (".md", ".txt", ".json", ".yaml", ".yml", ".toml")


@dataclass
class _FileBuilder:
    path: str
    status: FileStatus = "modified"
    additions: int = 0
    deletions: int = 0
    hunks: list[DiffHunk] = field(default_factory=list)

    def build(self) -> FileDiff:
        return FileDiff(
            path=self.path,
            status=self.status,
            additions=self.additions,
            deletions=self.deletions,
            hunks=tuple(self.hunks),
        )


def parse_diff(diff_text: str) -> list[FileDiff]:
    """
    逐行扫描 diff：

    - `diff --git a/X b/Y` 开始一个新文件（path 取 Y）
    - `@@ -a,b +c,d @@` 开始一个 hunk，一直累积到下一个文件头或 hunk 头
    - hunk 内 `+`/`-` 开头的行计入 additions/deletions（不含 `+++`/`---`）
    """
    files: list[FileDiff] = []
    current: _FileBuilder | None = None
    lines = diff_text.split("\n")
    i = 0

    while i < len(lines):
        line = lines[i]

        file_match = FILE_HEADER_PATTERN.match(line)
        if file_match:
            if current is not None:
                files.append(current.build())
            current = _FileBuilder(path=file_match.group(2))
            i += 1
            continue

        hunk_match = HUNK_HEADER_PATTERN.match(line)
        if hunk_match and current is not None:
            body = [line]
            i += 1
            while i < len(lines) and not lines[i].startswith("diff --git") and not lines[i].startswith("@@"):
                body_line = lines[i]
                body.append(body_line)
                if body_line.startswith("+") and not body_line.startswith("+++"):
                    current.additions += 1
                elif body_line.startswith("-") and not body_line.startswith("---"):
                    current.deletions += 1
                i += 1
            current.hunks.append(
                DiffHunk(
                    path=current.path,
                    old_start=int(hunk_match.group(1)),
                    old_count=int(hunk_match.group(2) or "1"),
                    new_start=int(hunk_match.group(3)),
                    new_count=int(hunk_match.group(4) or "1"),
                    content="\n".join(body),
                )
            )
            continue

        # git 扩展头（只出现在第一个 hunk 之前）
        if current is not None and not current.hunks:
            if line.startswith("new file mode"):
                current.status = "added"
            elif line.startswith("deleted file mode"):
                current.status = "removed"
            elif line.startswith("rename from"):
                current.status = "renamed"
        i += 1

    if current is not None:
        files.append(current.build())
    return files


def summarize_files(files: Sequence[FileDiff]) -> str:
    lines = [f"- {f.path}: +{f.additions}/-{f.deletions} lines" for f in files]
    return "\n".join(lines) if lines else NO_FILES_CHANGED


def filter_ignored_paths(files: Sequence[FileDiff], ignore_paths: Sequence[str]) -> list[FileDiff]:
    """
    按仓库配置过滤路径：

    - 含 `*` 的 pattern：整体匹配（`*` 视为任意字符串）
    - 其它 pattern：路径前缀或子串命中即过滤
    """
    if not ignore_paths:
        return list(files)
    return [f for f in files if not any(_matches_ignore_pattern(f.path, p) for p in ignore_paths)]


def _matches_ignore_pattern(path: str, pattern: str) -> bool:
    if "*" in pattern:
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        return re.match(regex, path) is not None
    return path.startswith(pattern) or pattern in path


def should_skip_file(path: str) -> bool:
    filename = path.rsplit("/", 1)[-1]
    if filename in SKIP_FILES:
        return True
    return any(pattern in path for pattern in SKIP_PATTERNS)


def get_file_priority(path: str) -> int:
    """0 = 源码（最优先），1 = 文档/配置，2 = lock/测试/生成物等低价值文件。"""
    lowered = path.lower()
    if any(pattern in lowered for pattern in LOW_PRIORITY_PATTERNS):
        return 2
    if lowered.endswith(MARKUP_EXTENSIONS):
        return 1
    return 0


def render_diff(files: Sequence[FileDiff]) -> str:
    """把文件列表重新拼成 diff 文本：每个文件一个 `diff --git` 头，后接全部 hunk。"""
    parts: list[str] = []
    for f in files:
        if not f.hunks:
            continue
        parts.append(f"diff --git a/{f.path} b/{f.path}")
        parts.extend(hunk.content for hunk in f.hunks)
    return "\n".join(parts)


def filter_and_prioritize_diff(diff: str) -> str:
    """去掉 skip 文件，并按优先级稳定排序（截断时先丢尾部的低价值文件）。"""
    files = [f for f in parse_diff(diff) if not should_skip_file(f.path)]
    files.sort(key=lambda f: get_file_priority(f.path))
    return render_diff(files)


def truncate_diff(diff: str, max_tokens: int = 1000) -> str:
    """
    把 diff 控制在 `max_tokens` 预算内。

    - 先 filter + prioritize
    - 超出预算时按字符截断；若最后一个文件边界位于预算后半段，则退回到该边界（避免切在文件中间）
    - 末尾追加被丢弃文件数的提示
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")
    filtered = filter_and_prioritize_diff(diff)
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(filtered) <= max_chars:
        return filtered

    truncated = filtered[:max_chars]
    last_boundary = truncated.rfind("\ndiff --git")
    if last_boundary > max_chars * 0.5:
        truncated = truncated[:last_boundary]

    skipped = len(parse_diff(diff)) - len(parse_diff(truncated))
    return truncated + f"\n\n... [truncated - {skipped} more files not shown]"


def commentable_lines(file: FileDiff) -> set[int]:
    """新文件侧出现在 hunk 里的行号（新增行 + 上下文行），GitHub 只接受这些行上的行内评论。"""
    lines: set[int] = set()
    for hunk in file.hunks:
        new_line = hunk.new_start
        for raw in hunk.content.split("\n")[1:]:
            if raw.startswith("+") or raw.startswith(" "):
                lines.add(new_line)
                new_line += 1
    return lines
