"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.config import settings
from token_ledger.db.session import get_write_db
from token_ledger.exceptions import AuthenticationError
from token_ledger.services.model_provider import (
    ModelProvider,
    ModelRegistry,
    OpenAICompatibleProvider,
    StaticModelRegistry,
)
from token_ledger.services.payment_gateway import PaymentGateway, RazorpayGateway
from token_ledger.services.reconciliation import ReconciliationEngine
from token_ledger.services.usage_meter import UsageMeter

logger = get_logger(__name__)

ADMIN_ROLE = "admin"

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated user identity from JWT token."""

    user_id: str  # sub claim
    email: str | None = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str, secret: str) -> UserIdentity:
    """
    Verify an HS256 bearer token.

    Raises:
        AuthenticationError: Token invalid, expired or without subject
    """
    if not secret:
        raise AuthenticationError("JWT secret not configured")
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(str(e)) from e

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("token has no subject")

    return UserIdentity(
        user_id=str(subject),
        email=payload.get("email"),
        role=str(payload.get("role") or "user"),
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency to validate the user's bearer token.

    Accepts: Authorization: Bearer {jwt}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_user_token(credentials.credentials, settings.jwt_secret)
    except AuthenticationError as exc:
        logger.warning("user_auth_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(user: UserIdentity = Depends(get_current_user)) -> UserIdentity:
    """
    Require the admin role.

    Raises:
        HTTPException 403 if the user is not an admin
    """
    if not user.is_admin:
        logger.warning("admin_access_denied", user_id=user.user_id, role=user.role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Admin only.",
        )
    return user


# ============================================================================
# Collaborators
# ============================================================================

_gateway: RazorpayGateway | None = None
_model_provider: OpenAICompatibleProvider | None = None


def get_payment_gateway() -> PaymentGateway:
    """Shared gateway client (one connection pool per process)."""
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway(settings)
    return _gateway


def get_model_registry() -> ModelRegistry:
    """Registry built from configuration."""
    return StaticModelRegistry(settings.model_registry)


def get_model_provider() -> ModelProvider:
    """Shared model provider client."""
    global _model_provider
    if _model_provider is None:
        _model_provider = OpenAICompatibleProvider(settings)
    return _model_provider


async def close_clients() -> None:
    """Close shared HTTP clients (application shutdown)."""
    global _gateway, _model_provider
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
    if _model_provider is not None:
        await _model_provider.close()
        _model_provider = None


def get_reconciliation_engine(
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ReconciliationEngine:
    """Reconciliation engine bound to the request's write session."""
    return ReconciliationEngine(db, gateway, settings)


def get_usage_meter(
    db: AsyncSession = Depends(get_write_db),
    registry: ModelRegistry = Depends(get_model_registry),
    provider: ModelProvider = Depends(get_model_provider),
) -> UsageMeter:
    """Usage meter bound to the request's write session."""
    return UsageMeter(db, registry, provider, settings)
