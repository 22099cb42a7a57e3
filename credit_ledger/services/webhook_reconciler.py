"""
Webhook Reconciler - applies Google Play refunds delivered over Pub/Sub push.

NO DICTIONARIES - notifications are decoded into typed models before use.

Pub/Sub delivers at least once and keeps redelivering until it gets a 2xx,
so every path returns 200 once the outcome is durable or known to be a
no-op. Only transient internal failures answer 500.
"""

import asyncio
from typing import Any

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.exceptions import AuthInvalidError, ValidationError
from credit_ledger.models.api import AuditEventType, BalanceEvent
from credit_ledger.models.domain import AckDecision, BalanceChange
from credit_ledger.models.google_play import ProviderNotification
from credit_ledger.observability.logging import log_context
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.google_play_provider import decode_notification
from credit_ledger.services.ledger_store import LedgerStore
from credit_ledger.services.push_dispatcher import PushDispatcher

logger = get_logger(__name__)

GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


class PushTokenVerifier:
    """
    Verifies the OIDC token Pub/Sub attaches to authenticated push requests.

    Checks the Google signature, issuer, audience and expiry, and optionally
    that the token was minted for the expected push service account.
    """

    def __init__(self, audience: str, service_account_email: str = "") -> None:
        self.audience = audience
        self.service_account_email = service_account_email
        self._request = google_requests.Request()  # type: ignore[no-untyped-call]

    async def verify(self, authorization: str | None) -> dict[str, Any]:
        """
        Raises:
            AuthInvalidError: Missing header, bad signature or failed claim check
        """
        if not self.audience:
            raise AuthInvalidError("Push audience not configured")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthInvalidError("Missing bearer token")
        token = authorization.removeprefix("Bearer ").strip()

        try:
            claims: dict[str, Any] = await asyncio.to_thread(
                id_token.verify_oauth2_token,  # type: ignore[no-untyped-call]
                token,
                self._request,
                self.audience,
            )
        except ValueError as exc:
            raise AuthInvalidError(str(exc)) from exc

        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise AuthInvalidError("Unexpected issuer")
        if self.service_account_email:
            if claims.get("email") != self.service_account_email:
                raise AuthInvalidError("Unexpected push service account")
            if not claims.get("email_verified", False):
                raise AuthInvalidError("Push service account email not verified")
        return claims


class WebhookReconciler:
    """Idempotent refund reconciliation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: PushTokenVerifier,
        dispatcher: PushDispatcher,
        package_name: str = "",
    ) -> None:
        self.session_factory = session_factory
        self.verifier = verifier
        self.dispatcher = dispatcher
        self.package_name = package_name

    async def handle_provider_notification(
        self, envelope: dict[str, Any], authorization: str | None
    ) -> AckDecision:
        try:
            await self.verifier.verify(authorization)
        except AuthInvalidError as exc:
            metrics.record_webhook("unauthorized")
            logger.warning("webhook_auth_failed", error=exc.message)
            return AckDecision(status_code=401, status="unauthorized")

        try:
            notification = decode_notification(envelope)
        except ValidationError as exc:
            metrics.record_webhook("ignored")
            logger.warning("webhook_payload_malformed", error=exc.message)
            return AckDecision(status_code=200, status="ignored")

        kind = notification.kind.value
        if self.package_name and notification.package_name != self.package_name:
            metrics.record_webhook("ignored")
            logger.warning("webhook_package_mismatch", package_name=notification.package_name)
            return AckDecision(status_code=200, status="ignored", notification_type=kind)

        if not notification.is_refund or notification.purchase_token is None:
            metrics.record_webhook("noop")
            logger.info("webhook_notification_noop", notification_type=kind)
            return AckDecision(status_code=200, status="noop", notification_type=kind)

        try:
            refunded = await self._apply_refund(notification, notification.purchase_token)
        except SQLAlchemyError:
            metrics.record_webhook("error")
            logger.exception("webhook_refund_failed", notification_type=kind)
            return AckDecision(status_code=500, status="error", notification_type=kind)

        return AckDecision(
            status_code=200,
            status="refunded" if refunded else "noop",
            notification_type=kind,
        )

    async def _apply_refund(
        self, notification: ProviderNotification, purchase_token: str
    ) -> bool:
        """
        COMPLETED -> REFUNDED, claw back amount + bonus, append the audit entry.

        Returns False when there is nothing left to refund (unknown token, or
        an earlier delivery already applied it).
        """
        async with self.session_factory() as session:
            store = LedgerStore(session)
            purchase = await store.find_completed_purchase_by_token(purchase_token)
            if purchase is None:
                metrics.record_webhook("noop")
                logger.info(
                    "webhook_refund_noop",
                    notification_type=notification.kind.value,
                    message_id=notification.message_id,
                )
                return False

            with log_context(uid=purchase.uid, order_id=purchase.order_id):
                if not await store.mark_purchase_refunded(purchase.id):
                    metrics.record_webhook("noop")
                    logger.info("webhook_refund_already_applied")
                    return False

                clawback = purchase.amount + purchase.bonus
                uid = purchase.uid
                new_balance = await store.adjust_credits(uid, -clawback)
                await store.append_audit(
                    AuditEventType.GOOGLE_REFUND,
                    uid,
                    {
                        "order_id": purchase.order_id,
                        "sku_id": purchase.sku_id,
                        "credits_clawed_back": clawback,
                        "notification_type": notification.kind.value,
                        "message_id": notification.message_id,
                        "balance_after": new_balance,
                    },
                )
                await session.commit()

                metrics.record_webhook("refunded")
                logger.info("webhook_refund_applied", clawback=clawback, balance=new_balance)

        self.dispatcher.dispatch(
            BalanceChange(
                uid=uid,
                event=BalanceEvent.GOOGLE_REFUND,
                delta=-clawback,
                new_balance=new_balance,
                exclude_device_id=None,
                correlation_id=notification.message_id or None,
            )
        )
        return True
