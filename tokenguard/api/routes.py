"""
API Routes - FastAPI endpoints for the token guard.

NO DICTIONARIES - All requests/responses use Pydantic models.

Every route passes through the request defense filter. Guard errors are
rendered by the exception handlers registered in tokenguard.main.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, Query

from tokenguard.api.dependencies import (
    get_current_user_id,
    get_ledger_store,
    get_model_catalog,
    get_reward_granter,
    get_status_reporter,
    get_usage_guard,
)
from tokenguard.api.length_limiter import enforce_field_limits
from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore
from tokenguard.models.api import (
    AdViewItem,
    AdViewRequest,
    AdViewResponse,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ModelInfo,
    ModelListResponse,
    UsageItem,
    UsageResponse,
    UserStatusResponse,
)
from tokenguard.models.domain import ChatPayload
from tokenguard.services.model_catalog import ModelCatalog
from tokenguard.services.rewards import RewardGranter
from tokenguard.services.status import StatusReporter
from tokenguard.services.usage_guard import UsageGuard

USAGE_HISTORY_LIMIT = 20

router = APIRouter(prefix="/api/v1", dependencies=[Depends(enforce_field_limits)])


def _iso(value: datetime) -> str:
    return value.isoformat()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    model: str | None = Query(None, max_length=100),
    user_id: str = Depends(get_current_user_id),
    guard: UsageGuard = Depends(get_usage_guard),
) -> ChatResponse:
    """
    Send one chat message through the guard.

    Model resolution: body `model`, then `?model=`, then the configured default.
    Free-tier users are charged the model's token cost; failed completions
    are refunded.
    """
    model_id = request.model or model or settings.default_model
    result = await guard.handle_chat_request(
        user_id,
        model_id,
        ChatPayload(message=request.message, conversation_id=request.conversation_id),
    )
    return ChatResponse(
        conversation_id=result.conversation_id,
        message=ChatMessage(
            user=result.user_message,
            bot=result.bot_message,
            timestamp=_iso(result.timestamp),
        ),
        model=result.model_id,
        tokens_charged=result.tokens_charged,
        balance_after=result.balance_after,
    )


@router.post("/ad-view", response_model=AdViewResponse)
async def ad_view(
    request: AdViewRequest,
    idempotency_key: str | None = Header(
        None, alias="Idempotency-Key", min_length=8, max_length=255
    ),
    user_id: str = Depends(get_current_user_id),
    granter: RewardGranter = Depends(get_reward_granter),
) -> AdViewResponse:
    """
    Credit tokens for a completed rewarded ad.

    The Idempotency-Key header wins over the body field. Replays inside the
    idempotency window return the current balance with `duplicate: true`.
    """
    result = await granter.grant_ad_reward(
        user_id,
        request.preferred_model or settings.default_model,
        idempotency_key or request.idempotency_key,
    )
    return AdViewResponse(
        new_balance=result.new_balance,
        tokens_granted=result.tokens_granted,
        model_used=result.model_id,
        duplicate=result.duplicate,
    )


@router.get("/user-status", response_model=UserStatusResponse)
async def user_status(
    user_id: str = Depends(get_current_user_id),
    reporter: StatusReporter = Depends(get_status_reporter),
) -> UserStatusResponse:
    """Balances, messages remaining and warnings for the current user."""
    status = await reporter.get_status(user_id)
    return UserStatusResponse(
        balances=status.balances,
        messages_remaining=status.messages_remaining,
        is_paid_user=status.is_paid_user,
        paid_until=_iso(status.paid_until) if status.paid_until else None,
        low_token_warning=status.low_token_warning,
        low_token_models=status.low_token_models,
        paid_expiry_warning=status.paid_expiry_warning,
        paid_expiry_days_left=status.paid_expiry_days_left,
    )


@router.get("/models", response_model=ModelListResponse)
async def list_models(catalog: ModelCatalog = Depends(get_model_catalog)) -> ModelListResponse:
    """Cost table for display. Clients must not rely on these values for charging."""
    return ModelListResponse(
        models=[
            ModelInfo(
                id=entry.model_id,
                name=entry.name,
                description=entry.description,
                token_cost=entry.token_cost,
                ad_reward=entry.ad_reward,
                available=entry.available,
            )
            for entry in catalog
        ]
    )


@router.get("/usage", response_model=UsageResponse)
async def usage_history(
    user_id: str = Depends(get_current_user_id),
    store: LedgerStore = Depends(get_ledger_store),
) -> UsageResponse:
    """Latest token usage rows and ad views for the current user."""
    usage = await store.list_usage(user_id, USAGE_HISTORY_LIMIT)
    ad_views = await store.list_ad_views(user_id, USAGE_HISTORY_LIMIT)
    return UsageResponse(
        token_usage=[
            UsageItem(
                model=row.model_id,
                tokens_used=row.tokens_used,
                status=row.status,
                conversation_id=row.conversation_id,
                created_at=_iso(row.created_at),
            )
            for row in usage
        ],
        ad_views=[
            AdViewItem(
                model=view.model_id,
                tokens_granted=view.tokens_granted,
                created_at=_iso(view.created_at),
            )
            for view in ad_views
        ],
    )


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness check."""
    return HealthResponse(status="healthy", timestamp=datetime.now(UTC).isoformat())
