"""
Ledger Rules - Pure pool arithmetic for debits and credits.

No I/O. The persistent LedgerService applies these plans under a row lock.
"""

from token_ledger.models.api import CreditSource, Pool, Tier
from token_ledger.models.domain import DebitPlan, PoolBalances, PoolDraw

# Free-tier usage burns free tokens first; paid and premium usage burn paid tokens first.
DRAW_ORDER: dict[Tier, tuple[Pool, Pool]] = {
    Tier.FREE: (Pool.FREE, Pool.PAID),
    Tier.PAID: (Pool.PAID, Pool.FREE),
    Tier.PREMIUM: (Pool.PAID, Pool.FREE),
}


def draw_order(tier: Tier) -> tuple[Pool, Pool]:
    """Pool order for a usage tier."""
    return DRAW_ORDER[tier]


def plan_debit(balances: PoolBalances, amount: int, tier: Tier) -> DebitPlan:
    """
    Plan a debit of `amount` tokens for a request of the given tier.

    Draws from the tier's primary pool, spills into the other pool on
    exhaustion, and never takes a pool below zero. Whatever cannot be
    covered is reported as shortfall.

    Raises:
        ValueError: amount is negative
    """
    if amount < 0:
        raise ValueError(f"Debit amount cannot be negative: {amount}")

    remaining = amount
    pools = {Pool.FREE: balances.free_tokens, Pool.PAID: balances.paid_tokens}
    draws: list[PoolDraw] = []

    for pool in draw_order(tier):
        take = min(pools[pool], remaining)
        if take > 0:
            pools[pool] -= take
            remaining -= take
            draws.append(PoolDraw(pool=pool, amount=take))

    return DebitPlan(
        draws=tuple(draws),
        debited=amount - remaining,
        shortfall=remaining,
        after=PoolBalances(free_tokens=pools[Pool.FREE], paid_tokens=pools[Pool.PAID]),
    )


def credit_pool(source: CreditSource) -> Pool:
    """Pool that receives a credit: payments fund the paid pool, grants the free pool."""
    return Pool.PAID if source == CreditSource.PAYMENT else Pool.FREE


def apply_credit(balances: PoolBalances, amount: int, source: CreditSource) -> PoolBalances:
    """Balances after crediting `amount` tokens from `source`."""
    if amount < 0:
        raise ValueError(f"Credit amount cannot be negative: {amount}")
    if credit_pool(source) == Pool.PAID:
        return PoolBalances(balances.free_tokens, balances.paid_tokens + amount)
    return PoolBalances(balances.free_tokens + amount, balances.paid_tokens)


def should_upgrade_plan(current_tier: Tier | None, new_tier: Tier) -> bool:
    """Active plan moves only to a strictly higher tier, or when none is set."""
    if current_tier is None:
        return True
    return new_tier.rank > current_tier.rank


def flat_cost(costs: dict[str, int], tier: Tier) -> int:
    """Flat internal token charge for one request of `tier`."""
    return costs[tier.value]


def can_use_model(model_tier: Tier, paid_tokens: int, active_plan_tier: Tier | None) -> bool:
    """
    Model access by tier.

    Free models are open to everyone. Paid models need paid tokens on the
    account. Premium models also need an active premium plan.
    """
    if model_tier == Tier.FREE:
        return True
    if paid_tokens <= 0:
        return False
    if model_tier == Tier.PREMIUM:
        return active_plan_tier == Tier.PREMIUM
    return True
