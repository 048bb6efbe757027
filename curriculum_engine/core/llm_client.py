"""Chat LLM client with retry, fallback and streaming.

Two providers are supported: any OpenAI-compatible chat endpoint via
``openai.AsyncOpenAI`` and Anthropic via ``anthropic.AsyncAnthropic``. Every
call holds a slot in the process-wide LLM queue for its whole duration.
"""

import asyncio
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.errors import LLMError, LLMTimeoutError
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.request_queue import RequestQueue, get_llm_queue

logger = get_logger(__name__)

PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"

RETRY_DELAYS = [1.0, 2.0, 4.0]
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
FALLBACK_MODEL = "fallback"

UNSUPPORTED_MODEL_PATTERN = re.compile(r"unsupported model|model not found|invalid model", re.I)
EMBEDDING_MODEL_PATTERN = re.compile(r"embed", re.I)


def empty_usage() -> dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


@dataclass
class ChatResponse:
    """Complete chat result."""

    content: str
    usage: dict[str, int] = field(default_factory=empty_usage)
    finish_reason: str = "stop"
    model: str = ""


def normalize_chat_model(model: str | None, fallback: str = DEFAULT_CHAT_MODEL) -> str:
    """Replace a missing or embedding model name with a chat model."""
    if not model:
        return fallback
    if EMBEDDING_MODEL_PATTERN.search(model):
        logger.warning(f"Embedding model {model} configured for chat, using {fallback}")
        return fallback
    return model


def is_unsupported_model(status_code: int | None, message: str) -> bool:
    return status_code in (400, 404) or bool(UNSUPPORTED_MODEL_PATTERN.search(message or ""))


def build_fallback_response(messages: list[dict[str, str]]) -> ChatResponse:
    """Placeholder content returned when the provider rejects the model."""
    last_user = next(
        (m["content"] for m in reversed(messages) if m.get("role") == "user"), ""
    )
    content = (
        "LLM provider is not configured correctly. "
        "Here is a placeholder based on your last input:\n\n" + (last_user or "请稍后重试。")
    )
    return ChatResponse(content=content, finish_reason=FALLBACK_MODEL, model=FALLBACK_MODEL)


def _split_system(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Anthropic takes system text separately from the turn list."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    turns = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") in ("user", "assistant")
    ]
    return "\n\n".join(system_parts), turns


class ChatStream:
    """Async iterator of text deltas.

    After iteration finishes ``usage``, ``finish_reason`` and ``model``
    describe the completed response.
    """

    def __init__(self, client: "LLMClient", messages: list[dict[str, str]], options: dict[str, Any]):
        self._client = client
        self._messages = messages
        self._options = options
        self.usage = empty_usage()
        self.finish_reason = "stop"
        self.model = options["model"]

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        async with self._client.queue.slot():
            if self._client.provider == PROVIDER_ANTHROPIC:
                source = self._client._stream_anthropic(self, self._messages, self._options)
            else:
                source = self._client._stream_openai(self, self._messages, self._options)
            async for delta in source:
                yield delta


class LLMClient:
    """Chat completions against the configured provider."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        max_retries: int = 3,
        timeout: float = 45.0,
        stream_idle_timeout: float = 120.0,
        queue: RequestQueue | None = None,
    ):
        if provider not in (PROVIDER_OPENAI, PROVIDER_ANTHROPIC):
            raise ValueError(f"Unknown LLM provider: {provider}")

        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.stream_idle_timeout = stream_idle_timeout
        self.queue = queue or get_llm_queue()
        self._sdk: AsyncOpenAI | AsyncAnthropic | None = None

    @property
    def sdk(self) -> Any:
        if self._sdk is None:
            if self.provider == PROVIDER_ANTHROPIC:
                self._sdk = AsyncAnthropic(api_key=self.api_key, max_retries=0)
            else:
                self._sdk = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)
        return self._sdk

    def _options(
        self, temperature: float | None, max_tokens: int | None, model: str | None
    ) -> dict[str, Any]:
        return {
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "model": normalize_chat_model(model or self.model),
        }

    # =========================================================================
    # Batch
    # =========================================================================

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> ChatResponse:
        """
        Send messages and wait for the complete answer.

        Retryable failures (timeouts, connection errors, 5xx, 429) are retried
        with 1s/2s/4s backoff. A rejected model returns placeholder content
        tagged with model "fallback" instead of raising.

        Raises:
            LLMTimeoutError: Every attempt timed out
            LLMError: Non-retryable failure or retries exhausted
        """
        options = self._options(temperature, max_tokens, model)
        return await self.queue.run(lambda: self._chat_with_retry(messages, options))

    async def _chat_with_retry(
        self, messages: list[dict[str, str]], options: dict[str, Any]
    ) -> ChatResponse:
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                return await self._call(messages, options)
            except (LLMError, LLMTimeoutError) as e:
                if not e.retryable:
                    raise
                last_error = e
                if attempt < self.max_retries - 1:
                    delay = RETRY_DELAYS[min(attempt, len(RETRY_DELAYS) - 1)]
                    logger.warning(
                        f"LLM attempt {attempt + 1} failed, retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)

        if isinstance(last_error, LLMTimeoutError):
            raise last_error
        raise LLMError(
            f"LLM call failed after {self.max_retries} attempts: {last_error}",
            code="MAX_RETRIES_EXCEEDED",
        )

    async def _call(self, messages: list[dict[str, str]], options: dict[str, Any]) -> ChatResponse:
        if self.provider == PROVIDER_ANTHROPIC:
            return await self._call_anthropic(messages, options)
        return await self._call_openai(messages, options)

    async def _call_openai(
        self, messages: list[dict[str, str]], options: dict[str, Any]
    ) -> ChatResponse:
        try:
            response = await self.sdk.chat.completions.create(
                model=options["model"],
                messages=messages,
                temperature=options["temperature"],
                max_tokens=options["max_tokens"],
                timeout=self.timeout,
            )
        except openai.APIStatusError as e:
            if is_unsupported_model(e.status_code, str(e.message)):
                logger.warning(f"Unsupported model {options['model']}, returning fallback: {e.message}")
                return build_fallback_response(messages)
            raise _status_error(e.status_code, str(e.message)) from e
        except openai.APITimeoutError as e:
            raise LLMTimeoutError(
                f"LLM request timed out after {self.timeout}s", provider=PROVIDER_OPENAI
            ) from e
        except openai.APIConnectionError as e:
            raise LLMError(f"Network error: {e}", code="NETWORK_ERROR", retryable=True) from e

        if not response.choices:
            raise LLMError("Invalid LLM response: no choices returned", code="INVALID_RESPONSE")

        choice = response.choices[0]
        usage = response.usage
        return ChatResponse(
            content=choice.message.content or "",
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
            finish_reason=choice.finish_reason or "unknown",
            model=options["model"],
        )

    async def _call_anthropic(
        self, messages: list[dict[str, str]], options: dict[str, Any]
    ) -> ChatResponse:
        system, turns = _split_system(messages)
        try:
            response = await self.sdk.messages.create(
                model=options["model"],
                system=system,
                messages=turns,
                temperature=options["temperature"],
                max_tokens=options["max_tokens"],
                timeout=self.timeout,
            )
        except anthropic.APIStatusError as e:
            if is_unsupported_model(e.status_code, str(e.message)):
                logger.warning(f"Unsupported model {options['model']}, returning fallback: {e.message}")
                return build_fallback_response(messages)
            raise _status_error(e.status_code, str(e.message)) from e
        except anthropic.APITimeoutError as e:
            raise LLMTimeoutError(
                f"LLM request timed out after {self.timeout}s", provider=PROVIDER_ANTHROPIC
            ) from e
        except anthropic.APIConnectionError as e:
            raise LLMError(f"Network error: {e}", code="NETWORK_ERROR", retryable=True) from e

        text = "".join(block.text for block in response.content if block.type == "text")
        input_tokens = response.usage.input_tokens or 0
        output_tokens = response.usage.output_tokens or 0
        return ChatResponse(
            content=text,
            usage={
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            },
            finish_reason=response.stop_reason or "unknown",
            model=options["model"],
        )

    # =========================================================================
    # Streaming
    # =========================================================================

    def chat_stream(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> ChatStream:
        """
        Stream the answer as text deltas.

        Streams are not retried. The provider read timeout is the idle
        timeout, so a slow but steady stream is never cut off.

        Usage:
            stream = client.chat_stream(messages)
            async for delta in stream:
                ...
            stream.usage  # {prompt_tokens, completion_tokens, total_tokens}
        """
        return ChatStream(self, messages, self._options(temperature, max_tokens, model))

    async def _stream_openai(
        self, stream: ChatStream, messages: list[dict[str, str]], options: dict[str, Any]
    ) -> AsyncIterator[str]:
        try:
            response = await self.sdk.chat.completions.create(
                model=options["model"],
                messages=messages,
                temperature=options["temperature"],
                max_tokens=options["max_tokens"],
                stream=True,
                stream_options={"include_usage": True},
                timeout=self.stream_idle_timeout,
            )
            async for chunk in response:
                if chunk.choices:
                    choice = chunk.choices[0]
                    if choice.delta and choice.delta.content:
                        yield choice.delta.content
                    if choice.finish_reason:
                        stream.finish_reason = choice.finish_reason
                if chunk.usage:
                    stream.usage = {
                        "prompt_tokens": chunk.usage.prompt_tokens or 0,
                        "completion_tokens": chunk.usage.completion_tokens or 0,
                        "total_tokens": chunk.usage.total_tokens or 0,
                    }
        except openai.APIStatusError as e:
            if is_unsupported_model(e.status_code, str(e.message)):
                logger.warning(f"Unsupported model {options['model']} (stream), returning fallback")
                fallback = build_fallback_response(messages)
                stream.finish_reason = fallback.finish_reason
                stream.model = fallback.model
                yield fallback.content
                return
            raise LLMError(
                f"LLM API error ({e.status_code}): {e.message}", code=f"HTTP_{e.status_code}",
                status_code=e.status_code,
            ) from e
        except openai.APITimeoutError as e:
            raise LLMTimeoutError(
                f"LLM stream idle for {self.stream_idle_timeout}s", provider=PROVIDER_OPENAI
            ) from e
        except openai.APIConnectionError as e:
            raise LLMError(f"Network error: {e}", code="NETWORK_ERROR") from e

    async def _stream_anthropic(
        self, stream: ChatStream, messages: list[dict[str, str]], options: dict[str, Any]
    ) -> AsyncIterator[str]:
        system, turns = _split_system(messages)
        try:
            async with self.sdk.messages.stream(
                model=options["model"],
                system=system,
                messages=turns,
                temperature=options["temperature"],
                max_tokens=options["max_tokens"],
                timeout=self.stream_idle_timeout,
            ) as response:
                async for text in response.text_stream:
                    if text:
                        yield text
                final_message = await response.get_final_message()

            input_tokens = getattr(final_message.usage, "input_tokens", 0) or 0
            output_tokens = getattr(final_message.usage, "output_tokens", 0) or 0
            stream.usage = {
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            }
            stream.finish_reason = final_message.stop_reason or "stop"
        except anthropic.APIStatusError as e:
            if is_unsupported_model(e.status_code, str(e.message)):
                logger.warning(f"Unsupported model {options['model']} (stream), returning fallback")
                fallback = build_fallback_response(messages)
                stream.finish_reason = fallback.finish_reason
                stream.model = fallback.model
                yield fallback.content
                return
            raise LLMError(
                f"LLM API error ({e.status_code}): {e.message}", code=f"HTTP_{e.status_code}",
                status_code=e.status_code,
            ) from e
        except anthropic.APITimeoutError as e:
            raise LLMTimeoutError(
                f"LLM stream idle for {self.stream_idle_timeout}s", provider=PROVIDER_ANTHROPIC
            ) from e
        except anthropic.APIConnectionError as e:
            raise LLMError(f"Network error: {e}", code="NETWORK_ERROR") from e


def _status_error(status_code: int, message: str) -> LLMError:
    retryable = status_code >= 500 or status_code == 429
    return LLMError(
        f"LLM API error ({status_code}): {message}",
        code=f"HTTP_{status_code}",
        retryable=retryable,
        status_code=status_code,
    )


@lru_cache(maxsize=1)
def get_llm_client() -> LLMClient:
    """Client configured from settings."""
    settings = get_settings()
    if settings.LLM_PROVIDER == PROVIDER_ANTHROPIC:
        api_key, model, base_url = settings.ANTHROPIC_API_KEY, settings.ANTHROPIC_MODEL, None
    else:
        api_key, model, base_url = settings.LLM_API_KEY, settings.LLM_MODEL, settings.LLM_BASE_URL

    return LLMClient(
        provider=settings.LLM_PROVIDER,
        api_key=api_key,
        model=model,
        base_url=base_url,
        temperature=settings.LLM_TEMPERATURE,
        max_tokens=settings.LLM_MAX_TOKENS,
        max_retries=settings.LLM_MAX_RETRIES,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
        stream_idle_timeout=settings.STREAM_IDLE_TIMEOUT_SECONDS,
    )
