"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class LedgerStatus(str, Enum):
    """Status of a purchase or operation log row."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """COMPLETED, REFUNDED and FAILED rows never transition again."""
        return self is not LedgerStatus.PENDING


class BalanceEvent(str, Enum):
    """Balance-sync event carried in silent pushes."""

    DEPOSIT = "DEPOSIT"
    GENERATE_COMPLETED = "GENERATE_COMPLETED"
    GENERATE_REFUNDED = "GENERATE_REFUNDED"
    GOOGLE_REFUND = "GOOGLE_REFUND"


class AuditEventType(str, Enum):
    """Append-only audit event types."""

    GOOGLE_REFUND = "GOOGLE_REFUND"
    GENERATE_REFUNDED = "GENERATE_REFUNDED"
    AUTO_TIMEOUT_REFUND = "AUTO_TIMEOUT_REFUND"


class DevicePlatform(str, Enum):
    """Push platform of a registered device."""

    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


# ============================================================================
# Purchase Models
# ============================================================================


class VerifyPurchaseRequest(BaseModel):
    """POST /v1/purchases/verify request body."""

    uid: str = Field(..., min_length=1, max_length=255)
    purchase_token: str = Field(..., min_length=10, max_length=4096)
    sku_id: str = Field(..., min_length=1, max_length=255)
    order_id: str = Field(..., min_length=1, max_length=255)


class VerifyPurchaseResponse(BaseModel):
    """POST /v1/purchases/verify response."""

    status: Literal["granted", "duplicate"]
    order_id: str
    sku_id: str
    credits_added: int
    bonus: int = 0
    new_balance: int
    already_processed: bool = False


# ============================================================================
# Operation Models
# ============================================================================


class GenerationParams(BaseModel):
    """Parameters forwarded verbatim to the generative-processing provider."""

    action: str = Field(..., min_length=1, max_length=64)
    preset_id: str | None = Field(None, max_length=255)
    selfie_ids: list[str] = Field(default_factory=list, max_length=8)
    aspect_ratio: str | None = Field(None, max_length=16)
    model: str | None = Field(None, max_length=64)


class ExecuteOperationRequest(BaseModel):
    """POST /v1/operations request body."""

    uid: str = Field(..., min_length=1, max_length=255)
    req_id: str = Field(..., min_length=8, max_length=128)
    cost: int = Field(..., gt=0, le=10_000)
    params: GenerationParams

    @field_validator("req_id")
    @classmethod
    def validate_req_id(cls, v: str) -> str:
        """Idempotency keys are opaque but must not carry whitespace."""
        if v.strip() != v or " " in v:
            raise ValueError("req_id must not contain whitespace")
        return v


class OperationResponse(BaseModel):
    """Operation status as returned by execute and poll endpoints."""

    req_id: str
    status: Literal["PENDING", "COMPLETED", "REFUNDED", "FAILED", "processing"]
    cost: int
    result_ref: str | None = None
    credits_refunded: int = 0
    new_balance: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    replayed: bool = False


class InsufficientCreditsResponse(BaseModel):
    """402 response body."""

    detail: str = "Insufficient credits"
    required: int
    available: int


# ============================================================================
# Device Models
# ============================================================================


class RegisterDeviceRequest(BaseModel):
    """POST /v1/devices request body."""

    uid: str = Field(..., min_length=1, max_length=255)
    device_token: str = Field(..., min_length=10, max_length=4096)
    platform: DevicePlatform
    app_version: str | None = Field(None, max_length=50)


class RegisterDeviceResponse(BaseModel):
    """POST /v1/devices response."""

    device_token: str
    uid: str
    platform: DevicePlatform
    active: bool


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Body returned to Pub/Sub once a notification is durably handled."""

    status: Literal["refunded", "noop", "ignored"]
    notification_type: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
