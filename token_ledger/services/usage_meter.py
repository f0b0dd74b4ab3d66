"""
Usage Meter - Flat-rate metering of chat requests against the ledger.

Pre-flight: simulated debit of a conservative estimate, rejected on any
shortfall. Post-flight: a flat per-tier debit, applied whether or not the
provider call succeeded, independent of the provider's reported usage.
"""

import asyncio
import math

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.config import Settings, get_settings
from token_ledger.exceptions import InsufficientBalanceError, ProviderUnavailableError
from token_ledger.models.api import Tier
from token_ledger.models.domain import (
    ChatTurn,
    GenerationOptions,
    GenerationResult,
    MeteredChatResult,
    ModelInfo,
    ProviderUsage,
)
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import trace_operation
from token_ledger.services.ledger import LedgerService
from token_ledger.services.ledger_rules import flat_cost
from token_ledger.services.model_provider import ModelProvider, ModelRegistry

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4


def classify_by_name(model_id: str) -> Tier:
    """Fallback for models missing from the registry."""
    return Tier.FREE if "free" in model_id.lower() else Tier.PAID


def estimate_tokens(text: str) -> int:
    """Rough token count for text without provider usage data."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(messages: list[ChatTurn], content: str) -> ProviderUsage:
    """Usage estimated from character counts."""
    prompt = estimate_tokens("".join(m.content for m in messages))
    completion = estimate_tokens(content)
    return ProviderUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
        estimated=True,
    )


class UsageMeter:
    """Meters one chat request around a model provider call."""

    def __init__(
        self,
        session: AsyncSession,
        registry: ModelRegistry,
        provider: ModelProvider,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.registry = registry
        self.provider = provider
        self.ledger = LedgerService(session, self.settings)

    async def classify(self, model_id: str) -> ModelInfo:
        """Registry lookup with the naming heuristic as fallback."""
        info = await self.registry.lookup(model_id)
        if info is not None:
            return info
        return ModelInfo(model_id=model_id, tier=classify_by_name(model_id))

    def estimate(self, info: ModelInfo, requested_max_tokens: int | None) -> int:
        """Caller bound, else registry bound, else default; clamped to the ceiling."""
        bound = requested_max_tokens or info.max_tokens or self.settings.default_token_estimate
        return max(1, min(bound, self.settings.max_token_estimate))

    async def run_chat(
        self,
        user_id: str,
        model_id: str,
        messages: list[ChatTurn],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> MeteredChatResult:
        """
        Run a metered chat completion.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ModelAccessDeniedError: Plan does not cover the model's tier
            InsufficientBalanceError: Balance cannot cover the pre-flight estimate
            ProviderUnavailableError: Provider call failed (flat debit still applied)
        """
        info = await self.classify(model_id)
        estimate = self.estimate(info, max_tokens)

        await self.ledger.check_model_access(user_id, model_id, info.tier)

        preflight = await self.ledger.debit(user_id, estimate, info.tier, simulate=True)
        if preflight.shortfall > 0:
            balance = preflight.new_balance + preflight.debited
            logger.info(
                "usage_preflight_rejected",
                user_id=user_id,
                model_id=model_id,
                tier=info.tier.value,
                estimate=estimate,
                balance=balance,
                shortfall=preflight.shortfall,
            )
            raise InsufficientBalanceError(
                balance=balance, required=estimate, shortfall=preflight.shortfall
            )

        options = GenerationOptions(max_tokens=estimate, temperature=temperature)
        generation: GenerationResult | None = None
        failure: ProviderUnavailableError | None = None
        with trace_operation("model_provider_call", model_id=model_id, tier=info.tier.value) as span:
            try:
                generation = await asyncio.wait_for(
                    self.provider.generate(model_id, messages, options),
                    timeout=self.settings.provider_timeout_seconds,
                )
            except asyncio.TimeoutError:
                failure = ProviderUnavailableError(self.provider.name, "request timed out")
            except ProviderUnavailableError as e:
                failure = e
            except Exception as e:
                logger.error(
                    "usage_provider_unexpected_error",
                    user_id=user_id,
                    model_id=model_id,
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                failure = ProviderUnavailableError(
                    self.provider.name, f"unexpected {type(e).__name__}"
                )
            span.set_attribute("success", failure is None)
        metrics.provider_calls_total.labels(tier=info.tier.value, success=str(failure is None)).inc()

        cost = flat_cost(self.settings.flat_token_costs, info.tier)
        debit = await self.ledger.debit(
            user_id, cost, info.tier, reason=f"chat:{model_id}", count_request=True
        )
        await self.session.commit()

        if generation is None:
            failure = failure or ProviderUnavailableError(self.provider.name, "no result")
            logger.warning(
                "usage_provider_failed",
                user_id=user_id,
                model_id=model_id,
                charged=debit.debited,
                error=failure.message,
            )
            raise failure

        usage = generation.usage or estimate_usage(messages, generation.content)
        logger.info(
            "usage_metered",
            user_id=user_id,
            model_id=model_id,
            tier=info.tier.value,
            charged=debit.debited,
            shortfall=debit.shortfall,
            provider_tokens=usage.total_tokens,
            usage_estimated=usage.estimated,
        )
        return MeteredChatResult(
            content=generation.content,
            model_id=model_id,
            tier=info.tier,
            usage=usage,
            debit=debit,
        )
