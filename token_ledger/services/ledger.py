"""
Ledger Service - Two-pool token accounting with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation locks the account row (SELECT ... FOR UPDATE) so debits and
credits against one account serialize. Mutations flush but never commit:
the caller owns the transaction boundary.
"""

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.config import Settings, get_settings
from token_ledger.db.models import Account, LedgerTransaction, Plan, PlanPurchase
from token_ledger.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    ModelAccessDeniedError,
    WriteVerificationError,
)
from token_ledger.models.api import CreditSource, Pool, PurchaseStatus, Tier, TransactionKind
from token_ledger.models.domain import (
    AccountSnapshot,
    AccountSummary,
    CreditOutcome,
    DebitOutcome,
    PlanData,
    PlanPurchaseRecord,
    PoolBalances,
    TransactionRecord,
)
from token_ledger.observability.metrics import metrics
from token_ledger.services.ledger_rules import (
    apply_credit,
    can_use_model,
    credit_pool,
    plan_debit,
    should_upgrade_plan,
)
from token_ledger.services.plan_catalog import plan_to_domain

logger = get_logger(__name__)


def _balances_of(account: Account) -> PoolBalances:
    return PoolBalances(free_tokens=account.free_tokens, paid_tokens=account.paid_tokens)


class LedgerService:
    """
    Account ledger with write verification.

    All write operations follow the pattern:
    1. Lock account row
    2. Execute write
    3. Flush to database
    4. Read back and verify balance == free + paid
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        """Initialize ledger service with database session."""
        self.session = session
        self.settings = settings or get_settings()

    # ========================================================================
    # Accounts
    # ========================================================================

    async def get_or_create_account(self, user_id: str, email: str | None = None) -> AccountSnapshot:
        """
        Get existing account or create one holding the signup free grant.

        Account creation commits on its own; a concurrent creation of the same
        user is resolved through the unique user_id constraint.
        """
        account = await self._find_account(user_id)
        if account is not None:
            return self._account_to_domain(account)

        grant = self.settings.signup_free_tokens
        new_account = Account(
            user_id=user_id,
            email=email,
            free_tokens=grant,
            paid_tokens=0,
            balance=grant,
            total_used=0,
            total_requests=0,
        )
        self.session.add(new_account)

        try:
            await self.session.flush()
            if grant > 0:
                self.session.add(
                    LedgerTransaction(
                        account_id=new_account.id,
                        kind=TransactionKind.CREDIT.value,
                        amount=grant,
                        pool=Pool.FREE.value,
                        reason="signup_free_grant",
                    )
                )
                await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Race condition - account created by another request
            logger.warning("account_creation_race", user_id=user_id, error=str(e))
            await self.session.rollback()
            account = await self._find_account(user_id)
            if account is None:
                raise WriteVerificationError(f"Account creation failed: {e}") from e
            return self._account_to_domain(account)

        metrics.accounts_created_total.inc()
        metrics.record_credit(CreditSource.FREE_GRANT.value, grant)
        logger.info("account_created", user_id=user_id, free_tokens=grant)
        return self._account_to_domain(new_account)

    async def get_account(self, user_id: str) -> AccountSnapshot:
        """
        Get account snapshot.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return self._account_to_domain(account)

    async def lock_account(self, user_id: str) -> Account:
        """
        Lock the account row for the rest of the caller's transaction.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._lock_account_for_update(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account

    async def check_model_access(self, user_id: str, model_id: str, tier: Tier) -> None:
        """
        Gate a model by tier against the account's pools and active plan.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ModelAccessDeniedError: Plan does not cover the model's tier
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        plan_tier: Tier | None = None
        if tier == Tier.PREMIUM and account.active_plan_id is not None:
            plan_row = await self.session.get(Plan, account.active_plan_id)
            if plan_row is not None:
                plan_tier = Tier(plan_row.tier)

        if not can_use_model(tier, account.paid_tokens, plan_tier):
            logger.info(
                "model_access_denied",
                user_id=user_id,
                model_id=model_id,
                tier=tier.value,
                paid_tokens=account.paid_tokens,
            )
            raise ModelAccessDeniedError(model_id, tier.value)

    # ========================================================================
    # Debit / Credit
    # ========================================================================

    async def debit(
        self,
        user_id: str,
        amount: int,
        tier: Tier,
        reason: str | None = None,
        simulate: bool = False,
        count_request: bool = False,
    ) -> DebitOutcome:
        """
        Debit tokens for usage of the given tier.

        Draws from the tier's primary pool, then the other pool. Never drives
        a pool negative: whatever cannot be covered is reported as shortfall.
        With simulate=True the outcome is computed without locking or writing.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ValueError: amount is negative
        """
        if amount < 0:
            raise ValueError(f"Debit amount cannot be negative: {amount}")

        if simulate:
            account = await self._find_account(user_id)
        else:
            account = await self._lock_account_for_update(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        plan = plan_debit(_balances_of(account), amount, tier)
        outcome = DebitOutcome(
            account_id=account.id,
            tier=tier,
            requested=amount,
            debited=plan.debited,
            shortfall=plan.shortfall,
            new_balance=plan.after.balance,
            free_tokens=plan.after.free_tokens,
            paid_tokens=plan.after.paid_tokens,
            draws=plan.draws,
            simulated=simulate,
        )

        if simulate or (amount == 0 and not count_request):
            return outcome

        for draw in plan.draws:
            self.session.add(
                LedgerTransaction(
                    account_id=account.id,
                    kind=TransactionKind.DEBIT.value,
                    amount=draw.amount,
                    pool=draw.pool.value,
                    reason=reason or f"usage:{tier.value}",
                )
            )

        account.free_tokens = plan.after.free_tokens
        account.paid_tokens = plan.after.paid_tokens
        account.balance = plan.after.balance
        account.total_used = account.total_used + plan.debited
        if count_request:
            account.total_requests = account.total_requests + 1
        await self.session.flush()

        await self._verify_balances(account.id, plan.after)
        await self._prune_transactions(account.id)

        metrics.record_debit(
            tier.value, {d.pool.value: d.amount for d in plan.draws}, plan.shortfall
        )
        logger.info(
            "ledger_debit_applied",
            account_id=str(account.id),
            tier=tier.value,
            requested=amount,
            debited=plan.debited,
            shortfall=plan.shortfall,
            new_balance=plan.after.balance,
        )
        return outcome

    async def credit(
        self,
        user_id: str,
        amount: int,
        source: CreditSource,
        reason: str,
        plan: PlanData | None = None,
        payment_id: str | None = None,
        amount_paid_minor: int = 0,
    ) -> CreditOutcome:
        """
        Credit tokens to the pool matching the source.

        Payment credits land in the paid pool, free grants in the free pool.
        Any credit carrying a plan and a payment_id (a gateway payment id, or
        the synthetic id of a free plan claim) appends a plan history entry.

        Raises:
            AccountNotFoundError: Account doesn't exist
            ValueError: amount not positive, or payment credit without plan/payment id
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")
        if source == CreditSource.PAYMENT and (plan is None or not payment_id):
            raise ValueError("Payment credits require a plan and a payment id")

        account = await self._lock_account_for_update(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        pool = credit_pool(source)
        after = apply_credit(_balances_of(account), amount, source)

        self.session.add(
            LedgerTransaction(
                account_id=account.id,
                kind=TransactionKind.CREDIT.value,
                amount=amount,
                pool=pool.value,
                reason=reason,
                related_payment_id=payment_id,
            )
        )

        if plan is not None and payment_id:
            self.session.add(
                PlanPurchase(
                    account_id=account.id,
                    plan_id=plan.plan_id,
                    granted_tokens=amount,
                    amount_paid_minor=amount_paid_minor,
                    payment_id=payment_id,
                    status=PurchaseStatus.COMPLETED.value,
                )
            )

        account.free_tokens = after.free_tokens
        account.paid_tokens = after.paid_tokens
        account.balance = after.balance
        await self.session.flush()

        await self._verify_balances(account.id, after)
        await self._prune_transactions(account.id)

        metrics.record_credit(source.value, amount)
        logger.info(
            "ledger_credit_applied",
            account_id=str(account.id),
            source=source.value,
            pool=pool.value,
            amount=amount,
            payment_id=payment_id,
            new_balance=after.balance,
        )
        return CreditOutcome(
            account_id=account.id,
            pool=pool,
            amount=amount,
            new_balance=after.balance,
            free_tokens=after.free_tokens,
            paid_tokens=after.paid_tokens,
            payment_id=payment_id,
        )

    # ========================================================================
    # Plan history
    # ========================================================================

    async def has_purchase(self, account_id: UUID, payment_id: str) -> bool:
        """Whether plan history already holds this payment."""
        stmt = select(PlanPurchase.id).where(
            PlanPurchase.account_id == account_id,
            PlanPurchase.payment_id == payment_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def upgrade_active_plan(self, user_id: str, plan: PlanData) -> bool:
        """
        Make `plan` the active plan if none is set or it ranks strictly higher.

        Returns True when the active plan changed. Caller holds the row lock.
        """
        account = await self.lock_account(user_id)

        current_tier: Tier | None = None
        if account.active_plan_id is not None:
            current = await self.session.get(Plan, account.active_plan_id)
            if current is not None:
                current_tier = Tier(current.tier)

        if not should_upgrade_plan(current_tier, plan.tier):
            return False

        account.active_plan_id = plan.plan_id
        await self.session.flush()
        logger.info(
            "active_plan_upgraded",
            account_id=str(account.id),
            plan_id=str(plan.plan_id),
            tier=plan.tier.value,
        )
        return True

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_summary(self, user_id: str, history_limit: int | None = None) -> AccountSummary:
        """
        Balance, active plan and most recent plan history entries.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        active_plan = None
        if account.active_plan_id is not None:
            plan_row = await self.session.get(Plan, account.active_plan_id)
            if plan_row is not None:
                active_plan = plan_to_domain(plan_row)

        limit = history_limit or self.settings.plan_history_view_limit
        stmt = (
            select(PlanPurchase)
            .where(PlanPurchase.account_id == account.id)
            .order_by(PlanPurchase.purchased_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        history = tuple(
            PlanPurchaseRecord(
                plan_id=row.plan_id,
                granted_tokens=row.granted_tokens,
                amount_paid_minor=row.amount_paid_minor,
                payment_id=row.payment_id,
                status=PurchaseStatus(row.status),
                purchased_at=row.purchased_at,
            )
            for row in result.scalars().all()
        )

        return AccountSummary(
            account=self._account_to_domain(account),
            active_plan=active_plan,
            plan_history=history,
        )

    async def recent_transactions(self, user_id: str, limit: int = 50) -> list[TransactionRecord]:
        """Most recent ledger movements, newest first."""
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.account_id == account.id)
            .order_by(LedgerTransaction.seq.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            TransactionRecord(
                transaction_id=row.transaction_id,
                kind=TransactionKind(row.kind),
                amount=row.amount,
                pool=Pool(row.pool),
                reason=row.reason,
                related_payment_id=row.related_payment_id,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _find_account(self, user_id: str) -> Account | None:
        """Find account by user id."""
        stmt = select(Account).where(Account.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, user_id: str) -> Account | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        stmt = select(Account).where(Account.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _verify_balances(self, account_id: UUID, expected: PoolBalances) -> None:
        """Read the account back and check pools and the balance invariant."""
        verified = await self.session.get(Account, account_id)
        if verified is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise WriteVerificationError(f"Account {account_id} disappeared after update")

        if (
            verified.free_tokens != expected.free_tokens
            or verified.paid_tokens != expected.paid_tokens
        ):
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Pool mismatch: expected free={expected.free_tokens} "
                f"paid={expected.paid_tokens}, got free={verified.free_tokens} "
                f"paid={verified.paid_tokens}"
            )

        if verified.balance != verified.free_tokens + verified.paid_tokens:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Balance invariant violated: balance={verified.balance}, "
                f"free+paid={verified.free_tokens + verified.paid_tokens}"
            )

        metrics.db_write_verifications_total.labels(success="True").inc()

    async def _prune_transactions(self, account_id: UUID) -> None:
        """Keep only the most recent transaction_log_cap entries."""
        keep = (
            select(LedgerTransaction.seq)
            .where(LedgerTransaction.account_id == account_id)
            .order_by(LedgerTransaction.seq.desc())
            .limit(self.settings.transaction_log_cap)
        )
        await self.session.execute(
            delete(LedgerTransaction).where(
                LedgerTransaction.account_id == account_id,
                LedgerTransaction.seq.not_in(keep.scalar_subquery()),
            )
        )

    @staticmethod
    def _account_to_domain(account: Account) -> AccountSnapshot:
        """Convert ORM account to domain model."""
        return AccountSnapshot(
            account_id=account.id,
            user_id=account.user_id,
            email=account.email,
            free_tokens=account.free_tokens,
            paid_tokens=account.paid_tokens,
            balance=account.balance,
            total_used=account.total_used,
            total_requests=account.total_requests,
            active_plan_id=account.active_plan_id,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
