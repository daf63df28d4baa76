"""
FastAPI Dependencies - Session authentication and guard services.

NO DICTIONARIES - All dependencies return typed objects.

Services are built once at startup (see `install_services`) and read from
`app.state`, so every request shares the same catalog and ledger store.
"""

from typing import Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore
from tokenguard.services.ledger import LedgerService
from tokenguard.services.model_catalog import ModelCatalog
from tokenguard.services.model_provider import ModelProvider
from tokenguard.services.refund_recovery import RefundRecovery
from tokenguard.services.rewards import RewardGranter
from tokenguard.services.status import StatusReporter
from tokenguard.services.usage_guard import UsageGuard

logger = get_logger(__name__)

# Bearer token scheme for session JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def install_services(
    state: Any,
    catalog: ModelCatalog,
    store: LedgerStore,
    provider: ModelProvider,
) -> None:
    """Wire the guard services onto application state."""
    ledger = LedgerService(store)
    recovery = RefundRecovery(store)
    state.catalog = catalog
    state.ledger_store = store
    state.provider = provider
    state.refund_recovery = recovery
    state.usage_guard = UsageGuard(ledger, catalog, provider, recovery=recovery)
    state.reward_granter = RewardGranter(ledger, catalog)
    state.status_reporter = StatusReporter(store, catalog)


# ============================================================================
# Session Authentication
# ============================================================================


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Resolve the authenticated user from a session JWT.

    Accepts: Authorization: Bearer {session_jwt}
    Verifies: HS256 signature and expiry (issuance is owned by the auth service)
    Extracts: `sub` claim as the user id

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
        payload: dict[str, Any] = jwt.decode(
            credentials.credentials,
            settings.session_jwt_secret,
            algorithms=[settings.session_jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("session_token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("session_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    user_id = str(payload["sub"])
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


# ============================================================================
# Guard Services
# ============================================================================


def get_model_catalog(request: Request) -> ModelCatalog:
    catalog: ModelCatalog = request.app.state.catalog
    return catalog


def get_ledger_store(request: Request) -> LedgerStore:
    store: LedgerStore = request.app.state.ledger_store
    return store


def get_usage_guard(request: Request) -> UsageGuard:
    guard: UsageGuard = request.app.state.usage_guard
    return guard


def get_reward_granter(request: Request) -> RewardGranter:
    granter: RewardGranter = request.app.state.reward_granter
    return granter


def get_status_reporter(request: Request) -> StatusReporter:
    reporter: StatusReporter = request.app.state.status_reporter
    return reporter
