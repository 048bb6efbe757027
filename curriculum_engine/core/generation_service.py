"""Stage content generation: retrieval + prompt template + LLM.

``generate`` awaits the complete answer and caches it briefly.
``generate_stream`` yields events while tokens arrive and converges on the
same GenerationResult in its final ``done`` event.
"""

import asyncio
import json
import time
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from uuid import UUID

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.errors import CurriculumEngineError, LLMTimeoutError
from curriculum_engine.core.interpolation import (
    extract_variables,
    has_unresolved_variables,
    interpolate_prompt_variables,
)
from curriculum_engine.core.llm_client import LLMClient, empty_usage, get_llm_client
from curriculum_engine.core.logging import get_logger
from curriculum_engine.core.prompt_templates import ResolvedPrompt, resolve_prompt
from curriculum_engine.core.retrieval import retrieve_chunks

logger = get_logger(__name__)

HISTORY_LIMIT = 10
CACHE_MAX_ENTRIES = 256
RAG_VARIABLES = ("rag_results", "reference_materials", "rag_citation_note", "rag_references")
DEFAULT_TRIGGER_MESSAGE = "请根据以上信息生成内容。"
CITATION_GUIDE = (
    "引用格式：在正文中引用参考资料时，请在相关句尾添加对应编号，如 [1] 或 [1][3]；"
    "并在文末保留“参考资料”列表，列出 [编号] 文件名/来源。"
)


@dataclass
class GenerationRequest:
    """Everything one generation call depends on."""

    project_id: UUID | str
    stage: str
    user_input: dict[str, Any]
    previous_stages_context: dict[str, Any] | None = None
    school_info: dict[str, Any] | None = None
    conversation_history: list[dict[str, str]] | None = None
    web_results: list[dict[str, Any]] | None = None
    use_rag: bool = True
    include_citations: bool = True
    user_id: str | None = None


@dataclass
class GenerationResult:
    content: str
    rag_results: list[dict[str, Any]] = field(default_factory=list)
    web_results: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=empty_usage)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreparedPrompt:
    prompt: str
    resolved: ResolvedPrompt
    messages: list[dict[str, str]]
    rag_results: list[dict[str, Any]]
    web_results: list[dict[str, Any]]


# =============================================================================
# Prompt variables
# =============================================================================


def stable_serialize(value: Any) -> str:
    """JSON with sorted keys at every level, for cache keys."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str, separators=(",", ":"))


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)


def _rag_title(result: dict[str, Any], index: int) -> str:
    metadata = result.get("metadata") or {}
    return (
        metadata.get("original_name")
        or metadata.get("title")
        or metadata.get("heading")
        or metadata.get("source")
        or result.get("document_id")
        or f"R{index + 1}"
    )


def format_rag_results(
    rag_results: list[dict[str, Any]], include_citations: bool = True
) -> dict[str, str]:
    """
    Numbered reference block plus its footnote list.

    Returns:
        Values for rag_results, reference_materials, rag_citation_note and
        rag_references; all empty when there are no results
    """
    if not rag_results:
        return dict.fromkeys(RAG_VARIABLES, "")

    entries = []
    headings = []
    for index, result in enumerate(rag_results):
        metadata = result.get("metadata") or {}
        heading = _rag_title(result, index)
        if "chunk_index" in metadata or metadata.get("total_chunks"):
            position = int(metadata.get("chunk_index") or 0) + 1
            heading = f"{heading} (Chunk {position}/{metadata.get('total_chunks') or '?'})"
        headings.append(f"[{index + 1}] {heading}")
        entries.append(f"[{index + 1}] {heading}\n{(result.get('content') or '').strip()}")

    references = "\n".join(headings)
    body = "\n\n---\n\n".join(entries)
    note = CITATION_GUIDE if include_citations else ""
    footer = f"{note}\n参考资料列表：\n{references}" if note else f"参考资料列表：\n{references}"
    content = f"{body}\n\n{footer}"

    return {
        "rag_results": content,
        "reference_materials": content,
        "rag_citation_note": note,
        "rag_references": references,
    }


def format_web_results(web_results: list[dict[str, Any]]) -> str:
    blocks = []
    for index, item in enumerate(web_results):
        heading = f"[W{index + 1}] {item.get('title', '')} ({item.get('url', '')})"
        blocks.append(f"{heading}\n{(item.get('content') or '').strip()}")
    return "\n\n".join(blocks)


def build_prompt_variables(
    user_input: dict[str, Any],
    previous_stages_context: dict[str, Any] | None = None,
    rag_results: list[dict[str, Any]] | None = None,
    school_info: dict[str, Any] | None = None,
    web_results: list[dict[str, Any]] | None = None,
    include_citations: bool = True,
) -> dict[str, str]:
    """Interpolation variables for a stage template."""
    variables: dict[str, str] = {}

    if user_input:
        variables["user_input"] = json.dumps(user_input, ensure_ascii=False, default=str)
    for key, value in user_input.items():
        if value is not None:
            variables[key] = _as_text(value)

    if previous_stages_context:
        variables["previous_stages"] = json.dumps(
            previous_stages_context, ensure_ascii=False, default=str
        )
        for stage, output in previous_stages_context.items():
            if output is not None and not stage.endswith("_output"):
                variables[f"{stage}_output"] = _as_text(output)
    else:
        variables["previous_stages"] = "{}"

    variables.update(format_rag_results(rag_results or [], include_citations))
    variables["web_results"] = format_web_results(web_results or [])

    if school_info:
        variables["school_info"] = json.dumps(school_info, ensure_ascii=False, default=str)
        for key, value in school_info.items():
            if isinstance(value, str):
                variables[f"school_{key}"] = value

    return variables


def build_chat_messages(
    system_prompt: str, conversation_history: list[dict[str, str]] | None = None
) -> list[dict[str, str]]:
    """System prompt plus the last 10 history messages, or a trigger message."""
    messages = [{"role": "system", "content": system_prompt}]

    if not conversation_history:
        messages.append({"role": "user", "content": DEFAULT_TRIGGER_MESSAGE})
        return messages

    for message in conversation_history[-HISTORY_LIMIT:]:
        role = "user" if message.get("role") == "user" else "assistant"
        messages.append({"role": role, "content": message.get("content", "")})
    return messages


# =============================================================================
# Service
# =============================================================================


class GenerationService:
    """Generates stage content with a short-lived result cache."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        retriever: Callable[..., Any] = retrieve_chunks,
        cache_ttl: float | None = None,
        stream_idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self._llm_client = llm_client
        self.retriever = retriever
        self.cache_ttl = settings.GENERATION_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self.stream_idle_timeout = stream_idle_timeout or settings.STREAM_IDLE_TIMEOUT_SECONDS
        self.clock = clock
        self._cache: dict[str, tuple[float, GenerationResult]] = {}

    @property
    def llm_client(self) -> LLMClient:
        if self._llm_client is None:
            self._llm_client = get_llm_client()
        return self._llm_client

    def clear_cache(self) -> None:
        self._cache.clear()

    def _store(self, key: str, result: GenerationResult) -> None:
        now = self.clock()
        for stale in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[stale]
        # Evict the oldest insertions past the cap
        while len(self._cache) >= CACHE_MAX_ENTRIES:
            del self._cache[next(iter(self._cache))]
        self._cache[key] = (now + self.cache_ttl, result)

    def _cache_key(self, request: GenerationRequest) -> str:
        return stable_serialize(
            {
                "stage": request.stage,
                "user_id": request.user_id,
                "user_input": request.user_input,
                "previous_stages_context": request.previous_stages_context,
                "school_info": request.school_info,
                "web_results": [item.get("url") for item in request.web_results or []],
                "use_rag": request.use_rag,
                "include_citations": request.include_citations,
                "conversation_history": [
                    {"role": m.get("role"), "content": m.get("content")}
                    for m in request.conversation_history or []
                ],
            }
        )

    async def prepare(self, request: GenerationRequest) -> PreparedPrompt:
        """Retrieve context, resolve the template and build chat messages."""
        rag_results = (
            await self.retriever(request.stage, request.user_input) if request.use_rag else []
        )
        web_results = list(request.web_results or [])
        resolved = await asyncio.to_thread(resolve_prompt, request.stage, request.user_id)

        variables = build_prompt_variables(
            request.user_input,
            request.previous_stages_context,
            rag_results,
            request.school_info,
            web_results,
            request.include_citations,
        )
        prompt = interpolate_prompt_variables(resolved.template, variables)

        if has_unresolved_variables(prompt):
            logger.warning(
                f"Unresolved variables in {resolved.key}: {', '.join(extract_variables(prompt))}",
                extra={"stage": request.stage},
            )

        return PreparedPrompt(
            prompt=prompt,
            resolved=resolved,
            messages=build_chat_messages(prompt, request.conversation_history),
            rag_results=rag_results,
            web_results=web_results,
        )

    def _result(
        self,
        request: GenerationRequest,
        prepared: PreparedPrompt,
        content: str,
        usage: dict[str, int],
        model: str,
    ) -> GenerationResult:
        metadata = {
            "prompt_used": prepared.prompt,
            "prompt_key": prepared.resolved.key,
            "prompt_version": prepared.resolved.version,
            "is_ab_test": prepared.resolved.is_ab_test,
            "rag_results": prepared.rag_results,
            "web_results": prepared.web_results,
            "token_usage": usage,
            "model": model,
            "stage": request.stage,
            "timestamp": datetime.now(UTC).isoformat(),
            "from_cache": False,
        }
        return GenerationResult(
            content=content,
            rag_results=prepared.rag_results,
            web_results=prepared.web_results,
            usage=usage,
            metadata=metadata,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Generate stage content and wait for the full answer.

        Identical requests within the cache TTL return the cached result
        with ``metadata["from_cache"]`` set.

        Raises:
            LLMTimeoutError: The model call timed out
            LLMError: The model call failed
        """
        key = self._cache_key(request)
        cached = self._cache.get(key)
        if cached and cached[0] > self.clock():
            result = cached[1]
            logger.info(f"Generation cache hit for {request.stage}", extra={"stage": request.stage})
            return replace(
                result,
                rag_results=list(result.rag_results),
                web_results=list(result.web_results),
                metadata={**result.metadata, "from_cache": True},
            )

        prepared = await self.prepare(request)
        response = await self.llm_client.chat(prepared.messages)
        result = self._result(request, prepared, response.content, response.usage, response.model)

        if self.cache_ttl > 0:
            self._store(key, result)
        return result

    async def generate_stream(
        self, request: GenerationRequest
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Generate stage content as events.

        Yields start -> token* -> done, or error. ``done`` carries the
        GenerationResult. The stream fails with an LLMTimeoutError event when
        no token arrives within the idle timeout; every token resets it.
        """
        yield {"type": "start", "stage": request.stage}

        try:
            prepared = await self.prepare(request)
            stream = self.llm_client.chat_stream(prepared.messages)
            iterator = stream.__aiter__()
            content = ""

            while True:
                try:
                    delta = await asyncio.wait_for(iterator.__anext__(), self.stream_idle_timeout)
                except StopAsyncIteration:
                    break
                except TimeoutError as e:
                    await iterator.aclose()
                    raise LLMTimeoutError(
                        f"No tokens received for {self.stream_idle_timeout}s", provider="llm"
                    ) from e
                content += delta
                yield {"type": "token", "content": delta}

            result = self._result(request, prepared, content, stream.usage, stream.model)
        except CurriculumEngineError as e:
            logger.warning(f"Streaming generation failed for {request.stage}: {e}")
            yield {"type": "error", "message": str(e), "error": e}
            return
        except Exception as e:
            logger.exception(f"Streaming generation failed for {request.stage}")
            yield {"type": "error", "message": str(e), "error": e}
            return

        yield {"type": "done", "result": result}

    async def generate_with_callback(
        self,
        request: GenerationRequest,
        on_token: Callable[[str], Any],
    ) -> GenerationResult:
        """
        Stream tokens into ``on_token`` and return the complete result.

        Raises:
            LLMTimeoutError: The stream stalled past the idle timeout
            LLMError: The model call failed
        """
        async for event in self.generate_stream(request):
            if event["type"] == "token":
                outcome = on_token(event["content"])
                if asyncio.iscoroutine(outcome):
                    await outcome
            elif event["type"] == "error":
                raise event["error"]
            elif event["type"] == "done":
                return event["result"]
        raise LLMTimeoutError("Generation stream ended without a result", provider="llm")


@lru_cache(maxsize=1)
def get_generation_service() -> GenerationService:
    """Get the process-wide generation service."""
    return GenerationService()
