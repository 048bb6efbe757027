"""Embedding client with provider dialects and strict/lenient failure modes."""

from functools import lru_cache
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from curriculum_engine.core.config import get_settings
from curriculum_engine.core.errors import (
    DataIntegrityError,
    EmbeddingTimeoutError,
    ProviderRequestError,
    ProviderUnavailableError,
    TransientProviderError,
)
from curriculum_engine.core.logging import get_logger

logger = get_logger(__name__)

DASHSCOPE_EMBEDDING_PATH = "/services/embeddings/text-embedding/text-embedding"
PROVIDER_DASHSCOPE = "dashscope"
PROVIDER_OPENAI = "openai"
MODE_STRICT = "strict"
MODE_LENIENT = "lenient"


def _classify_status(provider: str, status_code: int, detail: str) -> Exception:
    """Map an HTTP status from a provider onto the error taxonomy."""
    message = f"{provider} embedding request failed with status {status_code}: {detail[:200]}"
    if status_code >= 500 or status_code == 429:
        return ProviderUnavailableError(message, provider=provider, status_code=status_code)
    return ProviderRequestError(message, provider=provider, status_code=status_code)


class EmbeddingClient:
    """Turns texts into fixed-dimension vectors.

    Two request dialects are supported: the DashScope native batch API and
    any OpenAI-compatible ``/embeddings`` endpoint. Output order always
    matches input order.

    In ``strict`` mode every provider failure raises. In ``lenient`` mode
    provider failures (timeouts, connection errors, HTTP errors) degrade to
    zero vectors with a warning. A result count or dimension that does not
    match the request is a DataIntegrityError in both modes.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        api_key: str,
        model: str,
        dimension: int = 1536,
        mode: str = MODE_STRICT,
        timeout: float = 30.0,
        max_chars: int = 2000,
    ):
        if provider not in (PROVIDER_DASHSCOPE, PROVIDER_OPENAI):
            raise ValueError(f"Unknown embedding provider: {provider}")
        if mode not in (MODE_STRICT, MODE_LENIENT):
            raise ValueError(f"Unknown embedding mode: {mode}")

        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.mode = mode
        self.timeout = timeout
        self.max_chars = max_chars
        self._openai: AsyncOpenAI | None = None

    @property
    def openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._openai

    def zero_vector(self) -> list[float]:
        return [0.0] * self.dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts in a single provider call.

        Args:
            texts: Texts to embed; each is truncated to the character budget

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingTimeoutError: Provider call timed out (strict mode)
            TransientProviderError: Connection failure, 5xx or 429 (strict mode)
            ProviderRequestError: Provider rejected the request (strict mode)
            DataIntegrityError: Count/dimension mismatch or malformed response
        """
        if not texts:
            return []

        prepared = [(text or "")[: self.max_chars] for text in texts]

        try:
            if self.provider == PROVIDER_DASHSCOPE:
                vectors = await self._embed_dashscope(prepared)
            else:
                vectors = await self._embed_openai(prepared)
        except (TransientProviderError, ProviderRequestError) as e:
            if self.mode == MODE_STRICT:
                raise
            logger.warning(
                f"Embedding provider failed, returning {len(texts)} zero vectors: {e}",
                extra={"provider": self.provider, "count": len(texts)},
            )
            return [self.zero_vector() for _ in texts]

        self._validate(vectors, len(prepared))

        logger.debug(
            f"Generated {len(vectors)} embeddings using {self.model}",
            extra={"model": self.model, "count": len(vectors)},
        )
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self.embed([text])
        return vectors[0]

    def _validate(self, vectors: list[list[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise DataIntegrityError(
                f"Embedding count mismatch: expected {expected}, got {len(vectors)}"
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self.dimension:
                raise DataIntegrityError(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {self.dimension}, got {len(vector)}"
                )

    async def _embed_dashscope(self, texts: list[str]) -> list[list[float]]:
        url = f"{self.base_url}{DASHSCOPE_EMBEDDING_PATH}"
        payload = {
            "model": self.model,
            "input": {"texts": texts},
            "parameters": {"dimension": self.dimension, "text_type": "document"},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise EmbeddingTimeoutError(
                f"dashscope embedding request timed out after {self.timeout}s",
                provider=PROVIDER_DASHSCOPE,
            ) from e
        except httpx.HTTPStatusError as e:
            raise _classify_status(
                PROVIDER_DASHSCOPE, e.response.status_code, e.response.text
            ) from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(
                f"dashscope embedding connection failed: {e}", provider=PROVIDER_DASHSCOPE
            ) from e

        try:
            data = response.json()
            items: list[dict[str, Any]] = data["output"]["embeddings"]
            ordered = sorted(items, key=lambda item: item.get("text_index", 0))
            return [list(item["embedding"]) for item in ordered]
        except (KeyError, TypeError, ValueError) as e:
            raise DataIntegrityError(f"Malformed dashscope embedding response: {e}") from e

    async def _embed_openai(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self.openai_client.embeddings.create(
                model=self.model,
                input=texts,
                dimensions=self.dimension,
            )
        except openai.APITimeoutError as e:
            raise EmbeddingTimeoutError(
                f"openai embedding request timed out after {self.timeout}s",
                provider=PROVIDER_OPENAI,
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderUnavailableError(
                f"openai embedding connection failed: {e}", provider=PROVIDER_OPENAI
            ) from e
        except openai.APIStatusError as e:
            raise _classify_status(PROVIDER_OPENAI, e.status_code, str(e.message)) from e

        try:
            ordered = sorted(response.data, key=lambda item: item.index)
            return [list(item.embedding) for item in ordered]
        except (AttributeError, TypeError) as e:
            raise DataIntegrityError(f"Malformed openai embedding response: {e}") from e


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    """Get the process-wide embedding client built from settings."""
    settings = get_settings()
    return EmbeddingClient(
        provider=settings.EMBEDDING_PROVIDER,
        base_url=settings.EMBEDDING_BASE_URL,
        api_key=settings.EMBEDDING_API_KEY,
        model=settings.EMBEDDING_MODEL,
        dimension=settings.EMBEDDING_DIM,
        mode=settings.EMBEDDING_MODE,
        timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        max_chars=settings.EMBEDDING_MAX_CHARS,
    )
