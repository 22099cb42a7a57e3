"""
Google Play Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Calls the Play Developer API v3 over REST with bearer tokens from the
shared token cache, and decodes Real-Time Developer Notifications.
"""

import base64
import binascii
import json
from typing import Any

import httpx
from structlog import get_logger

from credit_ledger.exceptions import (
    InvalidPurchaseError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
    ValidationError,
)
from credit_ledger.models.google_play import (
    ONE_TIME_PRODUCT_TYPES,
    SUBSCRIPTION_TYPES,
    GooglePlayPurchaseVerification,
    NotificationKind,
    ProviderNotification,
)
from credit_ledger.services.token_cache import ANDROID_PUBLISHER_SCOPE, TokenCache

logger = get_logger(__name__)


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None


class GooglePlayProvider:
    """
    Google Play In-App Billing provider.

    Handles purchase verification and consumption.
    """

    API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"

    def __init__(
        self,
        token_cache: TokenCache,
        http_client: httpx.AsyncClient,
        package_name: str,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.token_cache = token_cache
        self.http_client = http_client
        self.package_name = package_name
        self.timeout_seconds = timeout_seconds

    def _product_url(self, product_id: str, purchase_token: str) -> str:
        return (
            f"{self.API_BASE}/{self.package_name}/purchases/products/"
            f"{product_id}/tokens/{purchase_token}"
        )

    async def _request(self, method: str, url: str) -> httpx.Response:
        """
        Send an authenticated request, refreshing the token once on 401.

        Raises:
            ProviderTimeoutError: On timeout
            RateLimitedError: On 429
            ProviderUnavailableError: On 5xx or transport failure
        """
        for attempt in (1, 2):
            token = await self.token_cache.get_token(ANDROID_PUBLISHER_SCOPE)
            try:
                response = await self.http_client.request(
                    method,
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.timeout_seconds,
                )
            except httpx.TimeoutException as exc:
                raise ProviderTimeoutError("Google Play API timed out") from exc
            except httpx.HTTPError as exc:
                raise ProviderUnavailableError(f"Google Play API unreachable: {exc}") from exc

            if response.status_code == 401 and attempt == 1:
                await self.token_cache.invalidate(ANDROID_PUBLISHER_SCOPE)
                continue
            break

        if response.status_code == 429:
            raise RateLimitedError("Google Play API rate limit", retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Google Play API error: {response.status_code}", status_code=response.status_code
            )
        return response

    async def verify_purchase(
        self,
        purchase_token: str,
        product_id: str,
    ) -> GooglePlayPurchaseVerification:
        """
        Verify a one-time product purchase with Google Play.

        Raises:
            InvalidPurchaseError: If the token is unknown, expired or malformed
            ProviderError: For any other non-2xx answer
        """
        logger.info("verifying_google_play_purchase", product_id=product_id)
        response = await self._request("GET", self._product_url(product_id, purchase_token))

        if response.status_code in (400, 404, 410):
            logger.warning(
                "google_play_purchase_rejected",
                product_id=product_id,
                status=response.status_code,
            )
            raise InvalidPurchaseError("Purchase not found or token expired")
        if response.status_code != 200:
            logger.error(
                "google_play_verification_failed",
                status=response.status_code,
                error=response.text[:500],
            )
            raise ProviderError(
                f"Google Play API error: {response.status_code}", status_code=response.status_code
            )

        result = response.json()
        purchase_type = result.get("purchaseType")
        verification = GooglePlayPurchaseVerification(
            order_id=result.get("orderId", ""),
            purchase_token=purchase_token,
            product_id=product_id,
            purchase_time_millis=int(result.get("purchaseTimeMillis", 0)),
            purchase_state=int(result.get("purchaseState", 0)),
            acknowledgement_state=int(result.get("acknowledgementState", 0)),
            consumption_state=int(result.get("consumptionState", 0)),
            purchase_type=int(purchase_type) if purchase_type is not None else None,
        )

        logger.info(
            "google_play_purchase_verified",
            order_id=verification.order_id,
            product_id=product_id,
            purchase_state=verification.purchase_state,
            consumption_state=verification.consumption_state,
            is_test=verification.is_test_purchase(),
        )
        return verification

    async def consume_purchase(self, purchase_token: str, product_id: str) -> None:
        """
        Consume a credit pack purchase. Consumption also acknowledges it,
        which stops Google Play from auto-refunding after three days.

        Raises:
            ProviderError: If consumption fails
        """
        response = await self._request(
            "POST", f"{self._product_url(product_id, purchase_token)}:consume"
        )
        if response.status_code not in (200, 204):
            logger.error(
                "google_play_consumption_failed",
                product_id=product_id,
                status=response.status_code,
                error=response.text[:500],
            )
            raise ProviderError(
                f"Consumption failed: {response.status_code}", status_code=response.status_code
            )
        logger.info("google_play_purchase_consumed", product_id=product_id)


def decode_notification(envelope: dict[str, Any]) -> ProviderNotification:
    """
    Decode a Pub/Sub push envelope into a typed notification.

    Raises:
        ValidationError: If the envelope or its payload is malformed
    """
    message = envelope.get("message")
    if not isinstance(message, dict) or not message.get("data"):
        raise ValidationError("No message data in envelope")

    try:
        payload = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Notification data is not base64 JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Notification data is not a JSON object")

    message_id = str(message.get("messageId") or message.get("message_id") or "")
    try:
        return _notification_from_payload(message_id, payload)
    except (AttributeError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed notification payload: {exc}") from exc


def _notification_from_payload(message_id: str, payload: dict[str, Any]) -> ProviderNotification:
    package_name = payload.get("packageName", "")
    event_time_millis = int(payload.get("eventTimeMillis", 0) or 0)

    if "oneTimeProductNotification" in payload:
        body = payload["oneTimeProductNotification"]
        raw_type = int(body.get("notificationType", 0))
        return ProviderNotification(
            message_id=message_id,
            kind=ONE_TIME_PRODUCT_TYPES.get(raw_type, NotificationKind.UNKNOWN),
            package_name=package_name,
            event_time_millis=event_time_millis,
            purchase_token=body.get("purchaseToken"),
            product_id=body.get("sku"),
            raw_type=raw_type,
        )

    if "voidedPurchaseNotification" in payload:
        body = payload["voidedPurchaseNotification"]
        return ProviderNotification(
            message_id=message_id,
            kind=NotificationKind.PURCHASE_VOIDED,
            package_name=package_name,
            event_time_millis=event_time_millis,
            purchase_token=body.get("purchaseToken"),
            order_id=body.get("orderId"),
            raw_type=body.get("refundType"),
        )

    if "subscriptionNotification" in payload:
        body = payload["subscriptionNotification"]
        raw_type = int(body.get("notificationType", 0))
        return ProviderNotification(
            message_id=message_id,
            kind=SUBSCRIPTION_TYPES.get(raw_type, NotificationKind.SUBSCRIPTION_OTHER),
            package_name=package_name,
            event_time_millis=event_time_millis,
            purchase_token=body.get("purchaseToken"),
            product_id=body.get("subscriptionId"),
            raw_type=raw_type,
        )

    if "testNotification" in payload:
        return ProviderNotification(
            message_id=message_id,
            kind=NotificationKind.TEST,
            package_name=package_name,
            event_time_millis=event_time_millis,
        )

    return ProviderNotification(
        message_id=message_id,
        kind=NotificationKind.UNKNOWN,
        package_name=package_name,
        event_time_millis=event_time_millis,
    )
