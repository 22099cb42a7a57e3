"""
FastAPI Dependencies - Service-to-service authentication and service lookup.

NO DICTIONARIES - All dependencies return typed objects.

Services are built once in the application lifespan and stored on
`app.state`; tests replace them through `app.dependency_overrides`.
"""

import hmac

from fastapi import Header, HTTPException, Request, status
from structlog import get_logger

from credit_ledger.config import settings
from credit_ledger.services.generation_client import GenerationClient
from credit_ledger.services.operation_ledger import OperationLedger
from credit_ledger.services.purchase_verifier import PurchaseVerifier
from credit_ledger.services.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)


# ============================================================================
# Authentication
# ============================================================================


async def verify_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    The check is skipped when no API key is configured (local development).

    Raises:
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.api_key:
        return
    if x_api_key is None or not hmac.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", has_api_key=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_device_id(
    x_device_id: str | None = Header(None, description="Registration token of the calling device"),
) -> str | None:
    """The calling device, excluded from its own balance push."""
    return x_device_id or None


# ============================================================================
# Services
# ============================================================================


def _service(request: Request, name: str):  # type: ignore[no-untyped-def]
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not configured",
        )
    return service


def get_purchase_verifier(request: Request) -> PurchaseVerifier:
    verifier: PurchaseVerifier = _service(request, "purchase_verifier")
    return verifier


def get_operation_ledger(request: Request) -> OperationLedger:
    ledger: OperationLedger = _service(request, "operation_ledger")
    return ledger


def get_generation_client(request: Request) -> GenerationClient:
    client: GenerationClient = _service(request, "generation_client")
    return client


def get_webhook_reconciler(request: Request) -> WebhookReconciler:
    reconciler: WebhookReconciler = _service(request, "webhook_reconciler")
    return reconciler
