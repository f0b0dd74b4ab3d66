"""
Tests for the model registry and the OpenAI-compatible provider.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from token_ledger.config import ModelRegistryEntry, Settings
from token_ledger.exceptions import ProviderUnavailableError
from token_ledger.models.api import Tier
from token_ledger.models.domain import ChatTurn, GenerationOptions
from token_ledger.services.model_provider import OpenAICompatibleProvider, StaticModelRegistry

MESSAGES = [ChatTurn(role="user", content="hello")]


def response(status_code: int, json: dict) -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json,
        request=httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions"),
    )


@pytest.fixture
def http_client() -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    client.post = AsyncMock()
    return client


@pytest.fixture
def provider(test_settings: Settings, http_client: MagicMock) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(test_settings, http_client=http_client)


async def test_registry_lookup():
    registry = StaticModelRegistry([ModelRegistryEntry(model_id="m/max", tier="premium")])

    info = await registry.lookup("m/max")

    assert info is not None
    assert info.tier == Tier.PREMIUM
    assert await registry.lookup("m/other") is None


class TestGenerate:
    async def test_completion_with_usage(self, provider, http_client: MagicMock):
        http_client.post.return_value = response(
            200,
            {
                "choices": [{"message": {"role": "assistant", "content": "hi"}}],
                "usage": {"prompt_tokens": 4, "completion_tokens": 1},
            },
        )

        result = await provider.generate("m/chat", MESSAGES, GenerationOptions(max_tokens=32))

        assert result.content == "hi"
        assert result.usage is not None
        assert result.usage.total_tokens == 5
        body = http_client.post.call_args.kwargs["json"]
        assert body["max_tokens"] == 32
        assert "temperature" not in body

    async def test_usage_absent(self, provider, http_client: MagicMock):
        http_client.post.return_value = response(
            200, {"choices": [{"message": {"content": "hi"}}]}
        )

        result = await provider.generate("m/chat", MESSAGES, GenerationOptions())

        assert result.usage is None

    async def test_empty_completion(self, provider, http_client: MagicMock):
        http_client.post.return_value = response(200, {"choices": []})

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.generate("m/chat", MESSAGES, GenerationOptions())
        assert exc_info.value.message == "empty completion"

    @pytest.mark.parametrize(
        "body",
        [
            ["not", "an", "object"],
            {"choices": ["plain string"]},
            {"choices": {"message": "hi"}},
            {"choices": [{"message": {"content": "hi"}}], "usage": {"prompt_tokens": "many"}},
        ],
    )
    async def test_malformed_reply(self, provider, http_client: MagicMock, body):
        http_client.post.return_value = response(200, body)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.generate("m/chat", MESSAGES, GenerationOptions())
        assert exc_info.value.message == "malformed response"

    async def test_error_status(self, provider, http_client: MagicMock):
        http_client.post.return_value = response(502, {"error": "upstream"})

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.generate("m/chat", MESSAGES, GenerationOptions())
        assert exc_info.value.message == "status 502"

    async def test_timeout(self, provider, http_client: MagicMock):
        http_client.post.side_effect = httpx.TimeoutException("Timeout")

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await provider.generate("m/chat", MESSAGES, GenerationOptions())
        assert exc_info.value.message == "request timed out"
