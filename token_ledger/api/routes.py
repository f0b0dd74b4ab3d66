"""
API Routes - Plans, checkout, account and metered chat endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.api.dependencies import (
    UserIdentity,
    get_current_user,
    get_reconciliation_engine,
    get_usage_meter,
)
from token_ledger.config import settings
from token_ledger.db.session import get_read_db, get_write_db
from token_ledger.exceptions import (
    AccountNotFoundError,
    GatewayUnavailableError,
    InsufficientBalanceError,
    LedgerError,
    MetadataMissingError,
    ModelAccessDeniedError,
    PersistenceError,
    PlanNotFoundError,
    PlanNotFreeError,
    ProviderUnavailableError,
    SignatureInvalidError,
)
from token_ledger.models.api import (
    AccountSummaryResponse,
    ChatRequest,
    ChatResponse,
    CreateOrderResponse,
    HealthResponse,
    PlanClaimResponse,
    PlanHistoryEntry,
    PlanListResponse,
    PlanResponse,
    ReconciliationResponse,
    Tier,
    TokenBalance,
    TransactionListResponse,
    TransactionResponse,
    VerifyPaymentRequest,
    WebhookResponse,
)
from token_ledger.models.domain import ChatTurn, PlanData, ReconciliationResult
from token_ledger.services.ledger import LedgerService
from token_ledger.services.plan_catalog import PlanCatalog
from token_ledger.services.reconciliation import ReconciliationEngine
from token_ledger.services.usage_meter import UsageMeter

logger = get_logger(__name__)

router = APIRouter()


def plan_response(plan: PlanData) -> PlanResponse:
    """Domain plan to API model."""
    return PlanResponse(
        id=str(plan.plan_id),
        name=plan.name,
        display_name=plan.display_name,
        description=plan.description,
        price_minor=plan.price_minor,
        currency=plan.currency,
        token_grant=plan.token_grant,
        tier=plan.tier,
        active=plan.active,
        sort_order=plan.sort_order,
    )


def reconciliation_response(result: ReconciliationResult) -> ReconciliationResponse:
    """Domain reconciliation result to API model."""
    return ReconciliationResponse(
        status=result.status,
        state=result.state,
        event_id=result.event_key.event_id,
        payment_id=result.payment_id,
        tokens_added=result.tokens_added,
        new_balance=result.new_balance,
    )


def reconciliation_http_error(exc: Exception) -> HTTPException:
    """
    Map a failed reconciliation onto a status code.

    400 for bad signatures and unresolvable metadata, 500 for downstream
    failures. Every non-200 answer is safe to retry.
    """
    if isinstance(exc, SignatureInvalidError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    if isinstance(exc, MetadataMissingError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, GatewayUnavailableError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway unavailable",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Payment processing failed",
    )


# ============================================================================
# Webhooks
# ============================================================================


@router.post("/v1/webhooks/razorpay", response_model=WebhookResponse)
async def razorpay_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> WebhookResponse | JSONResponse:
    """
    Razorpay webhook receiver.

    The body is read as raw bytes: the signature covers the exact byte stream.
    """
    if not settings.webhook_secret:
        logger.error("webhook_secret_not_configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Webhook secret not configured"},
        )

    raw_body = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    delivery_event_id = request.headers.get("x-razorpay-event-id")

    try:
        outcome = await engine.handle_webhook(raw_body, signature, delivery_event_id)
    except SignatureInvalidError as exc:
        logger.warning("webhook_signature_invalid", received=(signature or "")[:10])
        raise reconciliation_http_error(exc) from exc
    except (LedgerError, SQLAlchemyError) as exc:
        raise reconciliation_http_error(exc) from exc

    return WebhookResponse(
        status=outcome.status,
        event_type=outcome.event_type,
        event_id=outcome.event_key.event_id if outcome.event_key else None,
        result=reconciliation_response(outcome.result) if outcome.result else None,
    )


# ============================================================================
# Plans and checkout
# ============================================================================


@router.get("/v1/plans", response_model=PlanListResponse)
async def list_plans(
    tier: Tier | None = Query(None),
    db: AsyncSession = Depends(get_read_db),
) -> PlanListResponse:
    """Active plans. Read operation - may use replica."""
    plans = await PlanCatalog(db).list_plans(tier=tier)
    return PlanListResponse(plans=[plan_response(p) for p in plans])


@router.get("/v1/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, db: AsyncSession = Depends(get_read_db)) -> PlanResponse:
    """Plan detail."""
    try:
        plan = await PlanCatalog(db).get_plan(plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found or inactive"
        ) from exc
    return plan_response(plan)


@router.post("/v1/plans/{plan_id}/orders", response_model=CreateOrderResponse)
async def create_order(
    plan_id: str,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> CreateOrderResponse:
    """
    Create a gateway order for checkout.

    The order notes carry planId and userId; reconciliation resolves the
    payment from them later.
    """
    if not settings.gateway_configured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway keys are not configured on the server",
        )

    await LedgerService(db, settings).get_or_create_account(user.user_id, user.email)

    try:
        order, amount_minor, currency = await engine.create_order(user.user_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found or inactive"
        ) from exc
    except (GatewayUnavailableError, MetadataMissingError) as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Could not create order"
        ) from exc

    if order is None:
        return CreateOrderResponse(
            payment_required=False,
            amount_minor=0,
            currency=currency,
            key_id=settings.razorpay_key_id,
        )
    return CreateOrderResponse(
        order_id=order.order_id,
        amount_minor=amount_minor,
        currency=currency,
        key_id=settings.razorpay_key_id,
    )


@router.post("/v1/plans/{plan_id}/claim", response_model=PlanClaimResponse)
async def claim_free_plan(
    plan_id: str,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> PlanClaimResponse:
    """
    Activate a zero-priced plan without checkout.

    Granted once per account; a repeat claim reports already_granted.
    """
    await LedgerService(db, settings).get_or_create_account(user.user_id, user.email)

    try:
        result = await engine.grant_free_plan(user.user_id, plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found or inactive"
        ) from exc
    except PlanNotFreeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Plan requires payment; create an order instead",
        ) from exc
    except (PersistenceError, SQLAlchemyError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not grant plan",
        ) from exc

    return PlanClaimResponse(
        status="already_granted" if result.already_granted else "granted",
        plan_id=result.plan_id,
        tokens_added=result.tokens_added,
        new_balance=result.new_balance,
    )


@router.post("/v1/plans/{plan_id}/verify-payment", response_model=ReconciliationResponse)
async def verify_payment(
    plan_id: str,
    request: VerifyPaymentRequest,
    user: UserIdentity = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconciliationResponse:
    """
    Client-confirmed checkout.

    Races the webhook for the same payment; exactly one of them credits.
    """
    if not settings.razorpay_key_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway not configured",
        )

    try:
        result = await engine.verify_client_payment(
            user_id=user.user_id,
            plan_id=plan_id,
            payment_id=request.payment_id,
            order_id=request.order_id,
            signature=request.signature,
        )
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found") from exc
    except (LedgerError, SQLAlchemyError) as exc:
        raise reconciliation_http_error(exc) from exc

    return reconciliation_response(result)


# ============================================================================
# Account
# ============================================================================


@router.get("/v1/account", response_model=AccountSummaryResponse)
async def get_account(
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> AccountSummaryResponse:
    """
    Balance, pools, active plan and the last plan purchases.

    Auto-creates the account with the signup grant on first access.
    """
    service = LedgerService(db, settings)
    await service.get_or_create_account(user.user_id, user.email)
    summary = await service.get_summary(user.user_id)

    account = summary.account
    return AccountSummaryResponse(
        user_id=account.user_id,
        tokens=TokenBalance(
            balance=account.balance,
            free_tokens=account.free_tokens,
            paid_tokens=account.paid_tokens,
            total_used=account.total_used,
        ),
        active_plan=plan_response(summary.active_plan) if summary.active_plan else None,
        plan_history=[
            PlanHistoryEntry(
                plan_id=str(entry.plan_id),
                granted_tokens=entry.granted_tokens,
                amount_paid_minor=entry.amount_paid_minor,
                payment_id=entry.payment_id,
                purchased_at=entry.purchased_at.isoformat(),
                status=entry.status,
            )
            for entry in summary.plan_history
        ],
        total_requests=account.total_requests,
    )


@router.get("/v1/account/transactions", response_model=TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> TransactionListResponse:
    """Recent ledger movements, newest first."""
    try:
        records = await LedgerService(db, settings).recent_transactions(user.user_id, limit)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found") from exc

    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                transaction_id=str(r.transaction_id),
                kind=r.kind,
                amount=r.amount,
                pool=r.pool,
                reason=r.reason,
                related_payment_id=r.related_payment_id,
                created_at=r.created_at.isoformat(),
            )
            for r in records
        ]
    )


# ============================================================================
# Metered chat
# ============================================================================


@router.post("/v1/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user: UserIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    meter: UsageMeter = Depends(get_usage_meter),
) -> ChatResponse | JSONResponse:
    """
    Metered chat completion.

    402 with the exact shortfall when the balance cannot cover the estimate;
    403 PAYWALL when the account's plan does not cover the model.
    """
    await LedgerService(db, settings).get_or_create_account(user.user_id, user.email)

    try:
        result = await meter.run_chat(
            user_id=user.user_id,
            model_id=request.model_id,
            messages=[ChatTurn(role=m.role, content=m.content) for m in request.messages],
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
    except InsufficientBalanceError as exc:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content={
                "detail": "Insufficient tokens",
                "balance": exc.balance,
                "required": exc.required,
                "shortfall": exc.shortfall,
            },
        )
    except ModelAccessDeniedError as exc:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={
                "detail": str(exc),
                "code": "PAYWALL",
                "required_tier": exc.required_tier,
            },
        )
    except ProviderUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model provider unavailable",
        ) from exc
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return ChatResponse(
        content=result.content,
        model_id=result.model_id,
        tier=result.tier,
        tokens_charged=result.debit.debited,
        shortfall=result.debit.shortfall,
        low_balance=result.low_balance,
        balance=result.debit.new_balance,
        provider_total_tokens=result.usage.total_tokens,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
        version=settings.api_version,
    )
