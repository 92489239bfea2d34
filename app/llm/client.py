"""
LLM Client（基于 OpenAI SDK，对接任意 OpenAI-compatible 服务）。

目标：
- **尽量薄**：只做协议适配、限流重试与错误处理
- **统一接口**：上游只依赖 `LLMProvider.chat(prompt, options) -> str`
- **熔断**：整个调用（含 429 重试）跑在 LLM 熔断器里，连续失败后快速失败

说明：
- SDK 自带的 retry 关闭（max_retries=0），429 统一由这里处理：
  优先用 Retry-After（header 或错误信息里的秒数），否则 `min(2^(attempt+1), 30)` 秒
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Protocol

import anyio
import httpx
from openai import APIStatusError, AsyncOpenAI, OpenAIError
from pydantic import BaseModel

from app.infra.circuit_breaker import CircuitBreaker
from app.infra.rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY = "llm:chat"
MAX_RATE_LIMIT_DELAY_SECONDS = 30.0

_RETRY_AFTER_PATTERN = re.compile(r"retry.?after[:\s]+(\d+)", re.IGNORECASE)


class ChatMessage(BaseModel):
    """OpenAI chat message 的最小结构。"""

    role: str
    content: str


class ChatOptions(BaseModel):
    temperature: float = 0.1
    system_prompt: str | None = None
    max_tokens: int | None = None


class LLMProvider(Protocol):
    async def chat(self, prompt: str, options: ChatOptions | None = None) -> str: ...


def _normalize_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    if normalized.endswith("/v1"):
        return normalized
    return f"{normalized}/v1"


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, APIStatusError) and exc.status_code == 429:
        return True
    return "rate limit" in str(exc).lower()


def rate_limit_delay(exc: BaseException, attempt: int) -> float:
    """
    计算 429 之后的等待秒数（attempt 从 0 开始）。

    - 错误信息里的 `retry after N` / `Retry-After: N`
    - 响应 header `retry-after`
    - 都没有：`min(2^(attempt+1), 30)`
    """
    match = _RETRY_AFTER_PATTERN.search(str(exc))
    if match:
        return float(match.group(1))
    if isinstance(exc, APIStatusError):
        header = exc.response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
    return min(2.0 ** (attempt + 1), MAX_RATE_LIMIT_DELAY_SECONDS)


class OpenAICompatLLMClient:
    """通过 OpenAI-compatible API 调用 chat completion（Groq / OpenAI / LiteLLM Proxy 均可）。"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        model: str,
        circuit_breaker: CircuitBreaker,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        max_retries: int = 4,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        """
        - http_client: 复用 httpx.AsyncClient 连接池（超时在 client 上统一配置）
        - circuit_breaker: LLM 熔断器（进程级实例）
        - rate_limiter: 可选的出站限流（key=`llm:chat`）
        - max_retries: 429 最多重试次数
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self._base_url = _normalize_base_url(base_url=base_url)
        self._model = model
        self._breaker = circuit_breaker
        self._rate_limiter = rate_limiter
        self._max_retries = max_retries
        self._sleep = sleep
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=self._base_url,
            http_client=http_client,
            max_retries=0,
        )

    async def chat(self, prompt: str, options: ChatOptions | None = None) -> str:
        opts = options or ChatOptions()
        messages: list[ChatMessage] = []
        if opts.system_prompt:
            messages.append(ChatMessage(role="system", content=opts.system_prompt))
        messages.append(ChatMessage(role="user", content=prompt))

        if self._rate_limiter is not None:
            self._rate_limiter.enforce(RATE_LIMIT_KEY)
        return await self._breaker.execute(lambda: self._complete_with_rate_limit_retry(messages, opts))

    async def _complete_with_rate_limit_retry(self, messages: list[ChatMessage], opts: ChatOptions) -> str:
        attempt = 0
        while True:
            try:
                return await self._complete_text(messages, opts)
            except OpenAIError as exc:
                if not is_rate_limit_error(exc) or attempt >= self._max_retries:
                    raise
                delay = rate_limit_delay(exc, attempt)
                logger.warning(f"LLM rate limited, retrying in {delay:.0f}s (attempt {attempt + 1}/{self._max_retries})")
                await self._sleep(delay)
                attempt += 1

    async def _complete_text(self, messages: list[ChatMessage], opts: ChatOptions) -> str:
        """
        调用一次 chat completion 并返回纯文本 content。

        出错直接抛异常，便于上游（熔断器 / 队列）统一处理。
        """
        extra: dict[str, int] = {}
        if opts.max_tokens is not None:
            extra["max_tokens"] = opts.max_tokens
        try:
            logger.info(f"LLM request: model={self._model}, messages={len(messages)} msg(s)")
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[m.model_dump() for m in messages],
                temperature=opts.temperature,
                **extra,
            )
        except OpenAIError as exc:
            logger.error(f"LLM API error: {exc}")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"LLM HTTP error: {exc}")
            raise

        content = response.choices[0].message.content
        if content is None:
            logger.error("LLM returned None content")
            raise RuntimeError("LLM returned None content")

        logger.info(f"LLM response: {len(content)} chars")
        return str(content)
