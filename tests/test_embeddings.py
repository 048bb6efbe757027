"""Tests for the embedding client with mocked providers."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from curriculum_engine.core.embeddings import EmbeddingClient
from curriculum_engine.core.errors import (
    DataIntegrityError,
    EmbeddingTimeoutError,
    ProviderRequestError,
    ProviderUnavailableError,
)

DIM = 4


def _client(provider: str = "dashscope", mode: str = "strict", **kwargs) -> EmbeddingClient:
    return EmbeddingClient(
        provider=provider,
        base_url="https://embed.test/api/v1/",
        api_key="key",
        model="text-embedding-v3",
        dimension=DIM,
        mode=mode,
        timeout=5.0,
        **kwargs,
    )


@pytest.fixture
def mock_http():
    """Patch httpx.AsyncClient and expose the inner client."""
    with patch("httpx.AsyncClient") as mock_cls:
        inner = MagicMock()
        inner.post = AsyncMock()
        mock_cls.return_value.__aenter__ = AsyncMock(return_value=inner)
        mock_cls.return_value.__aexit__ = AsyncMock(return_value=None)
        yield inner


def _dashscope_response(items: list[dict]) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = {"output": {"embeddings": items}}
    return response


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://embed.test")
    return httpx.HTTPStatusError(
        "failed", request=request, response=httpx.Response(status, text="err", request=request)
    )


class TestDashscopeDialect:
    @pytest.mark.asyncio
    async def test_orders_by_text_index(self, mock_http):
        mock_http.post.return_value = _dashscope_response(
            [
                {"text_index": 1, "embedding": [1.0] * DIM},
                {"text_index": 0, "embedding": [0.0] * DIM},
            ]
        )

        vectors = await _client().embed(["first", "second"])

        assert vectors == [[0.0] * DIM, [1.0] * DIM]
        payload = mock_http.post.call_args.kwargs["json"]
        assert payload["input"]["texts"] == ["first", "second"]
        assert payload["parameters"]["dimension"] == DIM

    @pytest.mark.asyncio
    async def test_truncates_to_character_budget(self, mock_http):
        mock_http.post.return_value = _dashscope_response([{"text_index": 0, "embedding": [0.1] * DIM}])

        await _client(max_chars=5).embed(["abcdefghij"])

        assert mock_http.post.call_args.kwargs["json"]["input"]["texts"] == ["abcde"]

    @pytest.mark.asyncio
    async def test_count_mismatch_raises_in_lenient_mode(self, mock_http):
        mock_http.post.return_value = _dashscope_response([{"text_index": 0, "embedding": [0.1] * DIM}])

        with pytest.raises(DataIntegrityError, match="count mismatch"):
            await _client(mode="lenient").embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_dimension_mismatch_raises(self, mock_http):
        mock_http.post.return_value = _dashscope_response([{"text_index": 0, "embedding": [0.1] * 3}])

        with pytest.raises(DataIntegrityError, match="dimension mismatch"):
            await _client().embed(["a"])

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self, mock_http):
        response = _dashscope_response([])
        response.json.return_value = {"unexpected": True}
        mock_http.post.return_value = response

        with pytest.raises(DataIntegrityError, match="Malformed"):
            await _client().embed(["a"])

    @pytest.mark.asyncio
    async def test_timeout_strict(self, mock_http):
        mock_http.post.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(EmbeddingTimeoutError) as exc_info:
            await _client().embed(["a"])
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self, mock_http):
        response = MagicMock()
        response.raise_for_status.side_effect = _status_error(503)
        mock_http.post.return_value = response

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await _client().embed(["a"])
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_request_error(self, mock_http):
        response = MagicMock()
        response.raise_for_status.side_effect = _status_error(400)
        mock_http.post.return_value = response

        with pytest.raises(ProviderRequestError):
            await _client().embed(["a"])

    @pytest.mark.asyncio
    async def test_lenient_degrades_to_zero_vectors(self, mock_http):
        mock_http.post.side_effect = httpx.ConnectError("refused")

        vectors = await _client(mode="lenient").embed(["a", "b"])

        assert vectors == [[0.0] * DIM, [0.0] * DIM]


class TestOpenAIDialect:
    def _with_openai(self, create: AsyncMock) -> EmbeddingClient:
        client = _client(provider="openai")
        mock_openai = MagicMock()
        mock_openai.embeddings.create = create
        client._openai = mock_openai
        return client

    @pytest.mark.asyncio
    async def test_orders_by_index(self):
        response = MagicMock()
        response.data = [
            MagicMock(index=1, embedding=[1.0] * DIM),
            MagicMock(index=0, embedding=[0.0] * DIM),
        ]
        client = self._with_openai(AsyncMock(return_value=response))

        vectors = await client.embed(["x", "y"])

        assert vectors[0] == [0.0] * DIM
        assert vectors[1] == [1.0] * DIM

    @pytest.mark.asyncio
    async def test_timeout_maps_to_embedding_timeout(self):
        error = openai.APITimeoutError(request=httpx.Request("POST", "https://embed.test"))
        client = self._with_openai(AsyncMock(side_effect=error))

        with pytest.raises(EmbeddingTimeoutError):
            await client.embed(["x"])


class TestEmbeddingClient:
    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(self, mock_http):
        assert await _client().embed([]) == []
        mock_http.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_embed_one(self, mock_http):
        mock_http.post.return_value = _dashscope_response([{"text_index": 0, "embedding": [0.5] * DIM}])

        assert await _client().embed_one("text") == [0.5] * DIM

    def test_rejects_unknown_provider(self):
        with pytest.raises(ValueError, match="provider"):
            _client(provider="cohere")

    def test_rejects_unknown_mode(self):
        with pytest.raises(ValueError, match="mode"):
            _client(mode="sometimes")
