"""
Admin API routes for the plan catalog, payment event audit and manual grants.

Protected by bearer tokens carrying the admin role.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.api.dependencies import (
    UserIdentity,
    get_reconciliation_engine,
    require_admin,
)
from token_ledger.api.routes import plan_response, reconciliation_http_error, reconciliation_response
from token_ledger.config import settings
from token_ledger.db.session import get_read_db, get_write_db
from token_ledger.exceptions import (
    AccountNotFoundError,
    EventNotRetryableError,
    LedgerError,
    PaymentEventNotFoundError,
    PersistenceError,
    PlanImmutableError,
    PlanNotFoundError,
)
from token_ledger.models.api import (
    CreatePlanRequest,
    CreditResponse,
    CreditSource,
    GrantTokensRequest,
    PaymentEventListResponse,
    PaymentEventResponse,
    PlanResponse,
    ReconciliationResponse,
    UpdatePlanRequest,
)
from token_ledger.models.domain import PaymentEventRecord
from token_ledger.services.ledger import LedgerService
from token_ledger.services.payment_events import PaymentEventStore
from token_ledger.services.plan_catalog import PlanCatalog
from token_ledger.services.reconciliation import ReconciliationEngine

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _event_response(record: PaymentEventRecord) -> PaymentEventResponse:
    return PaymentEventResponse(
        provider=record.provider,
        event_id=record.event_id,
        delivery_event_id=record.delivery_event_id,
        event_type=record.event_type,
        payment_id=record.payment_id,
        order_id=record.order_id,
        signature_verified=record.signature_verified,
        processed=record.processed,
        processed_at=record.processed_at.isoformat() if record.processed_at else None,
        attempts=record.attempts,
        last_error=record.last_error,
        result=record.result,
        created_at=record.created_at.isoformat(),
    )


# ============================================================================
# Payment Events
# ============================================================================


@router.get("/payment-events", response_model=PaymentEventListResponse)
async def list_payment_events(
    processed: bool | None = Query(None),
    payment_id: str | None = Query(None, max_length=255),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: UserIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_read_db),
) -> PaymentEventListResponse:
    """Stored payment notifications, newest first."""
    events, total = await PaymentEventStore(db).list_events(
        processed=processed, payment_id=payment_id, limit=limit, offset=offset
    )
    return PaymentEventListResponse(events=[_event_response(e) for e in events], total=total)


@router.post("/payment-events/{event_id}/retry", response_model=ReconciliationResponse)
async def retry_payment_event(
    event_id: str,
    admin: UserIdentity = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> ReconciliationResponse:
    """Re-run an unprocessed event through reconciliation."""
    logger.info("admin_event_retry", event_id=event_id, admin_id=admin.user_id)
    try:
        result = await engine.retry_event(event_id)
    except PaymentEventNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment event not found"
        ) from exc
    except EventNotRetryableError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.reason) from exc
    except LedgerError as exc:
        raise reconciliation_http_error(exc) from exc
    return reconciliation_response(result)


# ============================================================================
# Plan Catalog
# ============================================================================


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    request: CreatePlanRequest,
    admin: UserIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> PlanResponse:
    """Add a plan to the catalog."""
    try:
        plan = await PlanCatalog(db).create_plan(
            name=request.name,
            display_name=request.display_name,
            price_minor=request.price_minor,
            token_grant=request.token_grant,
            tier=request.tier,
            description=request.description,
            currency=request.currency,
            active=request.active,
            sort_order=request.sort_order,
        )
    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Plan name already exists"
        ) from exc

    logger.info("admin_plan_created", plan_id=str(plan.plan_id), admin_id=admin.user_id)
    return plan_response(plan)


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: str,
    request: UpdatePlanRequest,
    admin: UserIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> PlanResponse:
    """
    Edit a plan.

    Price and token grant are frozen once the plan has been purchased.
    """
    try:
        plan = await PlanCatalog(db).update_plan(
            plan_id,
            display_name=request.display_name,
            description=request.description,
            price_minor=request.price_minor,
            token_grant=request.token_grant,
            tier=request.tier,
            active=request.active,
            sort_order=request.sort_order,
        )
    except PlanNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found") from exc
    except PlanImmutableError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    logger.info("admin_plan_updated", plan_id=plan_id, admin_id=admin.user_id)
    return plan_response(plan)


# ============================================================================
# Accounts
# ============================================================================


@router.post("/accounts/{user_id}/grants", response_model=CreditResponse)
async def grant_tokens(
    user_id: str,
    request: GrantTokensRequest,
    admin: UserIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_write_db),
) -> CreditResponse:
    """Credit the free pool of an existing account."""
    service = LedgerService(db, settings)
    try:
        outcome = await service.credit(
            user_id, request.amount, CreditSource.FREE_GRANT, reason=request.reason
        )
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found") from exc
    await db.commit()

    logger.info(
        "admin_tokens_granted",
        user_id=user_id,
        amount=request.amount,
        admin_id=admin.user_id,
    )
    return CreditResponse(
        user_id=user_id,
        amount=outcome.amount,
        pool=outcome.pool,
        new_balance=outcome.new_balance,
        free_tokens=outcome.free_tokens,
        paid_tokens=outcome.paid_tokens,
    )
