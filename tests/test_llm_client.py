"""Tests for the chat LLM client with a mocked SDK."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from curriculum_engine.core.errors import LLMError, LLMTimeoutError
from curriculum_engine.core.llm_client import (
    FALLBACK_MODEL,
    LLMClient,
    is_unsupported_model,
    normalize_chat_model,
)
from curriculum_engine.core.request_queue import RequestQueue

MESSAGES = [
    {"role": "system", "content": "You are a curriculum designer."},
    {"role": "user", "content": "请生成办学理念"},
]

_REQUEST = httpx.Request("POST", "https://llm.test/v1/chat/completions")


def _status_error(status: int, message: str = "error") -> openai.APIStatusError:
    return openai.APIStatusError(
        message, response=httpx.Response(status, request=_REQUEST), body=None
    )


def _completion(content: str = "生成的内容") -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


def _client(create: AsyncMock, **kwargs) -> LLMClient:
    client = LLMClient(
        provider="openai",
        api_key="key",
        model="gpt-4o-mini",
        base_url="https://llm.test/v1",
        queue=RequestQueue(2),
        **kwargs,
    )
    sdk = MagicMock()
    sdk.chat.completions.create = create
    client._sdk = sdk
    return client


@pytest.fixture
def no_sleep():
    with patch("curriculum_engine.core.llm_client.asyncio.sleep", new_callable=AsyncMock) as mock:
        yield mock


class TestNormalizeChatModel:
    def test_missing_model_uses_default(self):
        assert normalize_chat_model(None) == "gpt-4o-mini"

    def test_embedding_model_replaced(self):
        assert normalize_chat_model("text-embedding-v3", fallback="qwen-plus") == "qwen-plus"

    def test_chat_model_kept(self):
        assert normalize_chat_model("qwen-max") == "qwen-max"

    def test_unsupported_model_detection(self):
        assert is_unsupported_model(404, "")
        assert is_unsupported_model(None, "Model not found: foo")
        assert not is_unsupported_model(500, "internal error")


class TestChat:
    @pytest.mark.asyncio
    async def test_returns_content_and_usage(self):
        create = AsyncMock(return_value=_completion())
        response = await _client(create).chat(MESSAGES)

        assert response.content == "生成的内容"
        assert response.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        assert response.model == "gpt-4o-mini"
        assert create.call_args.kwargs["messages"] == MESSAGES

    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self, no_sleep):
        create = AsyncMock(side_effect=[_status_error(503), _status_error(429), _completion("ok")])

        response = await _client(create).chat(MESSAGES)

        assert response.content == "ok"
        assert create.call_count == 3
        assert [c.args[0] for c in no_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, no_sleep):
        create = AsyncMock(side_effect=_status_error(500))

        with pytest.raises(LLMError) as exc_info:
            await _client(create, max_retries=2).chat(MESSAGES)

        assert exc_info.value.code == "MAX_RETRIES_EXCEEDED"
        assert create.call_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, no_sleep):
        create = AsyncMock(side_effect=_status_error(401, "bad key"))

        with pytest.raises(LLMError) as exc_info:
            await _client(create).chat(MESSAGES)

        assert exc_info.value.code == "HTTP_401"
        assert exc_info.value.retryable is False
        assert create.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout_raises_after_retries(self, no_sleep):
        create = AsyncMock(side_effect=openai.APITimeoutError(request=_REQUEST))

        with pytest.raises(LLMTimeoutError):
            await _client(create).chat(MESSAGES)
        assert create.call_count == 3

    @pytest.mark.asyncio
    async def test_unsupported_model_returns_fallback(self):
        create = AsyncMock(side_effect=_status_error(404, "model not found"))

        response = await _client(create).chat(MESSAGES)

        assert response.model == FALLBACK_MODEL
        assert "请生成办学理念" in response.content

    @pytest.mark.asyncio
    async def test_empty_choices_is_invalid_response(self):
        create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))

        with pytest.raises(LLMError) as exc_info:
            await _client(create).chat(MESSAGES)
        assert exc_info.value.code == "INVALID_RESPONSE"


class TestChatStream:
    @staticmethod
    def _chunks(*deltas: str):
        async def _gen():
            for text in deltas:
                yield SimpleNamespace(
                    choices=[SimpleNamespace(delta=SimpleNamespace(content=text), finish_reason=None)],
                    usage=None,
                )
            yield SimpleNamespace(
                choices=[],
                usage=SimpleNamespace(prompt_tokens=7, completion_tokens=3, total_tokens=10),
            )

        return _gen()

    @pytest.mark.asyncio
    async def test_yields_deltas_and_records_usage(self):
        create = AsyncMock(return_value=self._chunks("办学", "理念"))
        stream = _client(create).chat_stream(MESSAGES)

        deltas = [delta async for delta in stream]

        assert deltas == ["办学", "理念"]
        assert stream.usage["total_tokens"] == 10
        assert create.call_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_holds_queue_slot(self):
        create = AsyncMock(return_value=self._chunks("a"))
        client = _client(create)
        stream = client.chat_stream(MESSAGES)

        seen_active = []
        async for _ in stream:
            seen_active.append(client.queue.active_count)

        assert seen_active == [1]
        assert client.queue.active_count == 0

    @pytest.mark.asyncio
    async def test_stream_server_error_raises(self):
        create = AsyncMock(side_effect=_status_error(502))

        with pytest.raises(LLMError) as exc_info:
            async for _ in _client(create).chat_stream(MESSAGES):
                pass
        assert exc_info.value.status_code == 502
