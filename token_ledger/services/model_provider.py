"""
Model Provider - Registry lookup and the chat completion collaborator.

NO DICTIONARIES - Registry entries and provider results are typed models.
"""

from typing import Any, Protocol

import httpx
from structlog import get_logger

from token_ledger.config import ModelRegistryEntry, Settings
from token_ledger.exceptions import ProviderUnavailableError
from token_ledger.models.api import Tier
from token_ledger.models.domain import (
    ChatTurn,
    GenerationOptions,
    GenerationResult,
    ModelInfo,
    ProviderUsage,
)

logger = get_logger(__name__)


class ModelRegistry(Protocol):
    """Known models and their pricing tier."""

    async def lookup(self, model_id: str) -> ModelInfo | None:
        """Registry entry, or None for unknown models."""
        ...


class ModelProvider(Protocol):
    """
    Chat completion collaborator.

    `usage` may be absent from the result; the meter estimates it then.
    """

    name: str

    async def generate(
        self, model_id: str, messages: list[ChatTurn], options: GenerationOptions
    ) -> GenerationResult:
        ...


class StaticModelRegistry:
    """Registry loaded from configuration."""

    def __init__(self, entries: list[ModelRegistryEntry]) -> None:
        self._models = {
            entry.model_id: ModelInfo(
                model_id=entry.model_id, tier=Tier(entry.tier), max_tokens=entry.max_tokens
            )
            for entry in entries
        }

    async def lookup(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)


def _parse_usage(data: Any) -> ProviderUsage | None:
    if not isinstance(data, dict):
        return None
    prompt = int(data.get("prompt_tokens") or 0)
    completion = int(data.get("completion_tokens") or 0)
    total = int(data.get("total_tokens") or prompt + completion)
    return ProviderUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _completion_content(data: Any) -> str | None:
    """First choice's message content; TypeError on an unexpected shape."""
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise TypeError("choices is not a list")
    if not choices:
        return None
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise TypeError("choice has no message object")
    content = message.get("content")
    if content is not None and not isinstance(content, str):
        raise TypeError("message content is not text")
    return content


class OpenAICompatibleProvider:
    """Chat completions over an OpenAI-compatible HTTP API (OpenRouter and friends)."""

    name = "openai-compatible"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self.api_base = settings.provider_api_base.rstrip("/")
        self.api_key = settings.provider_api_key
        self.timeout = settings.provider_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def generate(
        self, model_id: str, messages: list[ChatTurn], options: GenerationOptions
    ) -> GenerationResult:
        """
        Request one completion.

        Raises:
            ProviderUnavailableError: Network failure, timeout, error status or empty reply
        """
        body: dict[str, Any] = {
            "model": model_id,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            body["temperature"] = options.temperature

        try:
            response = await self.http_client.post(
                f"{self.api_base}/chat/completions",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            logger.error("provider_timeout", model_id=model_id)
            raise ProviderUnavailableError(self.name, "request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "provider_api_error",
                model_id=model_id,
                status=e.response.status_code,
                error=e.response.text[:500],
            )
            raise ProviderUnavailableError(self.name, f"status {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("provider_request_failed", model_id=model_id, error=str(e))
            raise ProviderUnavailableError(self.name, str(e)) from e

        try:
            content = _completion_content(data)
            usage = _parse_usage(data.get("usage"))
        except (TypeError, ValueError) as e:
            logger.error("provider_malformed_response", model_id=model_id, error=str(e))
            raise ProviderUnavailableError(self.name, "malformed response") from e
        if not content:
            raise ProviderUnavailableError(self.name, "empty completion")

        return GenerationResult(content=content, usage=usage)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
