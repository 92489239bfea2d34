"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL/数字等，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, Field, HttpUrl

DEFAULT_GITHUB_API_BASE_URL = "https://api.github.com"


class LLMConfig(BaseModel):
    base_url: HttpUrl
    api_key: str
    model: str
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    max_retries: int = Field(default=4, ge=0)


class GitHubConfig(BaseModel):
    api_base_url: HttpUrl
    token: str
    webhook_secret: str | None = None


class WorkerConfig(BaseModel):
    secret: str | None = None
    max_jobs: int = Field(default=5, gt=0)
    time_budget_seconds: float = Field(default=55.0, gt=0)


class RateLimitConfig(BaseModel):
    window_seconds: float = Field(default=60.0, gt=0)
    max_requests: int = Field(default=60, gt=0)
    trust_proxy_headers: bool = False


class AppConfig(BaseModel):
    llm: LLMConfig
    github: GitHubConfig
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    database_url: str | None = None
    review_max_diff_tokens: int = Field(default=2000, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    log_level: str = "INFO"


def _optional(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _int(environ: Mapping[str, str], key: str, default: int | None) -> int | None:
    raw = _optional(environ, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {key}: {raw!r}") from exc


def _bool(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _optional(environ, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {key}: {raw!r}")


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _optional(environ, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {key}: {raw!r}") from exc


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：必填项缺失/为空、数字或布尔值格式错误都抛 `ValueError`
    """

    required_keys: tuple[str, ...] = (
        "LLM_BASE_URL",
        "LLM_API_KEY",
        "LLM_MODEL",
        "GITHUB_TOKEN",
    )

    missing: list[str] = [key for key in required_keys if key not in environ or not environ[key]]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")

    # 交给 Pydantic 做类型校验（例如 URL 合法性、数值范围）
    return AppConfig(
        llm=LLMConfig(
            base_url=environ["LLM_BASE_URL"],
            api_key=environ["LLM_API_KEY"],
            model=environ["LLM_MODEL"],
            temperature=_float(environ, "LLM_TEMPERATURE", 0.1),
            max_tokens=_int(environ, "LLM_MAX_TOKENS", None),
            max_retries=_int(environ, "LLM_MAX_RETRIES", 4),
        ),
        github=GitHubConfig(
            api_base_url=_optional(environ, "GITHUB_API_BASE_URL") or DEFAULT_GITHUB_API_BASE_URL,
            token=environ["GITHUB_TOKEN"],
            webhook_secret=_optional(environ, "GITHUB_WEBHOOK_SECRET"),
        ),
        worker=WorkerConfig(
            secret=_optional(environ, "WORKER_SECRET"),
            max_jobs=_int(environ, "WORKER_MAX_JOBS", 5),
            time_budget_seconds=_float(environ, "WORKER_TIME_BUDGET_SECONDS", 55.0),
        ),
        rate_limit=RateLimitConfig(
            window_seconds=_float(environ, "RATE_LIMIT_WINDOW_SECONDS", 60.0),
            max_requests=_int(environ, "RATE_LIMIT_MAX_REQUESTS", 60),
            trust_proxy_headers=_bool(environ, "RATE_LIMIT_TRUST_PROXY", False),
        ),
        database_url=_optional(environ, "DATABASE_URL"),
        review_max_diff_tokens=_int(environ, "REVIEW_MAX_DIFF_TOKENS", 2000),
        request_timeout_seconds=_float(environ, "REQUEST_TIMEOUT_SECONDS", 30.0),
        log_level=(_optional(environ, "LOG_LEVEL") or "INFO").upper(),
    )
