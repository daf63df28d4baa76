"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase; Python attributes stay snake_case.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UsageStatus(str, Enum):
    """Outcome of a metered chat request."""

    COMPLETED = "completed"
    REFUNDED = "refunded"


class CamelModel(BaseModel):
    """Base model serialising to camelCase and accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Chat Models
# ============================================================================


class ChatRequest(CamelModel):
    """POST /api/v1/chat request body."""

    message: str = Field(..., min_length=1)
    conversation_id: str | None = Field(None, max_length=64)
    model: str | None = Field(None, max_length=100)


class ChatMessage(CamelModel):
    """Single exchange returned to the client."""

    user: str
    bot: str
    timestamp: str  # ISO 8601 timestamp


class ChatResponse(CamelModel):
    """POST /api/v1/chat response."""

    conversation_id: str
    message: ChatMessage
    model: str
    tokens_charged: int = 0
    balance_after: int | None = None


# ============================================================================
# Ad Reward Models
# ============================================================================


class AdViewRequest(CamelModel):
    """POST /api/v1/ad-view request body."""

    preferred_model: str | None = Field(None, max_length=100)
    idempotency_key: str | None = Field(None, min_length=8, max_length=255)


class AdViewResponse(CamelModel):
    """POST /api/v1/ad-view response."""

    new_balance: int
    tokens_granted: int
    model_used: str
    duplicate: bool = False


# ============================================================================
# Status Models
# ============================================================================


class UserStatusResponse(CamelModel):
    """GET /api/v1/user-status response."""

    balances: dict[str, int]
    messages_remaining: dict[str, int]
    is_paid_user: bool
    paid_until: str | None = None
    low_token_warning: bool
    low_token_models: list[str]
    paid_expiry_warning: bool
    paid_expiry_days_left: int | None = None


class ModelInfo(CamelModel):
    """Display-only view of a cost table entry."""

    id: str
    name: str
    description: str
    token_cost: int
    ad_reward: int
    available: bool


class ModelListResponse(CamelModel):
    """GET /api/v1/models response."""

    models: list[ModelInfo]


class UsageItem(CamelModel):
    """Single token usage row."""

    model: str
    tokens_used: int
    status: UsageStatus
    conversation_id: str | None = None
    created_at: str


class AdViewItem(CamelModel):
    """Single ad view row."""

    model: str
    tokens_granted: int
    created_at: str


class UsageResponse(CamelModel):
    """GET /api/v1/usage response."""

    token_usage: list[UsageItem]
    ad_views: list[AdViewItem]


# ============================================================================
# Error / Health Models
# ============================================================================


class ErrorResponse(CamelModel):
    """Error body shared by every Guard failure."""

    error: str
    details: str | None = None
    balance: int | None = None
    required: int | None = None
    retryable: bool | None = None


class HealthResponse(CamelModel):
    """GET /api/v1/health response."""

    status: str
    timestamp: str
