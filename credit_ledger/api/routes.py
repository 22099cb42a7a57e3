"""
API Routes - FastAPI endpoints for purchases, operations, devices and webhooks.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from credit_ledger.api.dependencies import (
    get_device_id,
    get_generation_client,
    get_operation_ledger,
    get_purchase_verifier,
    get_webhook_reconciler,
    verify_api_key,
)
from credit_ledger.db.session import get_db
from credit_ledger.exceptions import (
    InsufficientCreditsError,
    OperationFailedError,
    ProviderError,
    RateLimitedError,
    ValidationError,
    WriteVerificationError,
)
from credit_ledger.models.api import (
    ExecuteOperationRequest,
    HealthResponse,
    InsufficientCreditsResponse,
    LedgerStatus,
    OperationResponse,
    RegisterDeviceRequest,
    RegisterDeviceResponse,
    VerifyPurchaseRequest,
    VerifyPurchaseResponse,
    WebhookAckResponse,
)
from credit_ledger.models.domain import OperationResult
from credit_ledger.services.generation_client import GenerationClient
from credit_ledger.services.ledger_store import LedgerStore
from credit_ledger.services.operation_ledger import PROVIDER_TIMEOUT, OperationLedger
from credit_ledger.services.purchase_verifier import PurchaseVerifier
from credit_ledger.services.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)

router = APIRouter()


def _refund_status_code(error_code: str | None) -> int:
    if error_code == PROVIDER_TIMEOUT:
        return status.HTTP_504_GATEWAY_TIMEOUT
    return status.HTTP_502_BAD_GATEWAY


def _operation_response(result: OperationResult) -> JSONResponse:
    """
    Render a stored or fresh operation result.

    Replays answer with the same status code the original request got.
    """
    operation = result.operation
    body = OperationResponse(
        req_id=operation.req_id,
        status="processing" if result.processing else operation.status.value,
        cost=operation.cost,
        result_ref=operation.result_ref,
        credits_refunded=result.credits_refunded,
        new_balance=result.new_balance,
        error_code=operation.error_code,
        error_message=operation.error_message,
        replayed=result.replayed,
    )

    if result.processing:
        status_code = status.HTTP_202_ACCEPTED
    elif operation.status == LedgerStatus.REFUNDED:
        status_code = _refund_status_code(operation.error_code)
    elif operation.status == LedgerStatus.FAILED:
        status_code = status.HTTP_402_PAYMENT_REQUIRED
    else:
        status_code = status.HTTP_200_OK
    return JSONResponse(status_code=status_code, content=body.model_dump())


# =============================================================================
# Purchases
# =============================================================================


@router.post(
    "/v1/purchases/verify",
    response_model=VerifyPurchaseResponse,
    responses={409: {"model": VerifyPurchaseResponse}},
    dependencies=[Depends(verify_api_key)],
)
async def verify_purchase(
    request: VerifyPurchaseRequest,
    device_id: str | None = Depends(get_device_id),
    verifier: PurchaseVerifier = Depends(get_purchase_verifier),
) -> Any:
    """
    Verify a Google Play purchase and grant its credits exactly once.

    Returns 200 for a fresh grant and 409 (with the stored result) when the
    order or token was already redeemed.
    """
    try:
        result = await verifier.verify_and_credit(
            uid=request.uid,
            purchase_token=request.purchase_token,
            sku_id=request.sku_id,
            order_id=request.order_id,
            exclude_device_id=device_id,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except RateLimitedError as exc:
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Billing provider rate limit exceeded",
            headers=headers,
        ) from exc
    except ProviderError as exc:
        logger.warning("purchase_provider_unavailable", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing provider unavailable",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    purchase = result.purchase
    body = VerifyPurchaseResponse(
        status="duplicate" if result.already_processed else "granted",
        order_id=purchase.order_id,
        sku_id=purchase.sku_id,
        credits_added=purchase.amount,
        bonus=purchase.bonus,
        new_balance=result.new_balance,
        already_processed=result.already_processed,
    )
    if result.already_processed:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump())
    return body


# =============================================================================
# Operations
# =============================================================================


@router.post(
    "/v1/operations",
    response_model=OperationResponse,
    responses={
        202: {"model": OperationResponse},
        402: {"model": InsufficientCreditsResponse},
        502: {"model": OperationResponse},
        504: {"model": OperationResponse},
    },
    dependencies=[Depends(verify_api_key)],
)
async def execute_operation(
    request: ExecuteOperationRequest,
    device_id: str | None = Depends(get_device_id),
    ledger: OperationLedger = Depends(get_operation_ledger),
    client: GenerationClient = Depends(get_generation_client),
) -> JSONResponse:
    """
    Debit, run one generation, then commit or refund.

    Safe to retry with the same req_id: the operation runs at most once.
    """

    async def run_generation() -> str:
        return await client.invoke(request.params, ledger.timeout_seconds)

    try:
        result = await ledger.execute(
            uid=request.uid,
            req_id=request.req_id,
            cost=request.cost,
            exclude_device_id=device_id,
            run_external_operation=run_generation,
        )
    except InsufficientCreditsError as exc:
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=InsufficientCreditsResponse(
                required=exc.required, available=exc.available
            ).model_dump(),
        )
    except OperationFailedError as exc:
        body = OperationResponse(
            req_id=exc.req_id,
            status=LedgerStatus.REFUNDED.value,
            cost=request.cost,
            credits_refunded=exc.credits_refunded,
            new_balance=exc.new_balance,
            error_code=exc.error_code,
            error_message=exc.message,
        )
        return JSONResponse(
            status_code=_refund_status_code(exc.error_code), content=body.model_dump()
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return _operation_response(result)


@router.get(
    "/v1/operations/{req_id}",
    response_model=OperationResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_operation(
    req_id: str,
    ledger: OperationLedger = Depends(get_operation_ledger),
) -> OperationResponse:
    """Poll the stored state of an operation."""
    result = await ledger.get_status(req_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operation not found")

    operation = result.operation
    return OperationResponse(
        req_id=operation.req_id,
        status="processing" if result.processing else operation.status.value,
        cost=operation.cost,
        result_ref=operation.result_ref,
        credits_refunded=result.credits_refunded,
        new_balance=result.new_balance,
        error_code=operation.error_code,
        error_message=operation.error_message,
    )


# =============================================================================
# Devices
# =============================================================================


@router.post(
    "/v1/devices",
    response_model=RegisterDeviceResponse,
    dependencies=[Depends(verify_api_key)],
)
async def register_device(
    request: RegisterDeviceRequest,
    db: AsyncSession = Depends(get_db),
) -> RegisterDeviceResponse:
    """Register a push token for balance sync (reactivates a known token)."""
    device = await LedgerStore(db).upsert_device(
        device_token=request.device_token,
        uid=request.uid,
        platform=request.platform,
        app_version=request.app_version,
    )
    await db.commit()
    logger.info("device_registered", uid=request.uid, platform=request.platform.value)
    return RegisterDeviceResponse(
        device_token=device.device_token,
        uid=device.uid,
        platform=request.platform,
        active=device.active,
    )


# =============================================================================
# Webhooks (Pub/Sub push - authenticated by OIDC token, not API key)
# =============================================================================


@router.post("/v1/webhooks/google-play", response_model=WebhookAckResponse)
async def google_play_webhook(
    request: Request,
    authorization: str | None = Header(None),
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookAckResponse:
    """
    Real-Time Developer Notification push endpoint.

    Any non-2xx makes Pub/Sub redeliver, so only authentication failures and
    transient database errors answer with one.
    """
    try:
        envelope = await request.json()
    except ValueError:
        envelope = {}
    if not isinstance(envelope, dict):
        envelope = {}

    decision = await reconciler.handle_provider_notification(envelope, authorization)
    if decision.status_code == status.HTTP_401_UNAUTHORIZED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid push authentication",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if decision.status_code >= 500:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Notification not processed, retry",
        )
    return WebhookAckResponse(
        status=decision.status,  # type: ignore[arg-type]
        notification_type=decision.notification_type,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
