"""
Purchase Verifier - turns a verified store purchase into credits exactly once.

NO DICTIONARIES - results are typed domain models.

The unique order_id / purchase_token insert is the deduplication gate: the
grant and the purchase row commit together, so a replayed or concurrent
verification either wins the insert or reads back the recorded purchase.
"""

import asyncio

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.exceptions import InvalidPurchaseError, ProviderError, WriteVerificationError
from credit_ledger.models.api import BalanceEvent
from credit_ledger.models.domain import BalanceChange, PurchaseResult
from credit_ledger.observability.logging import log_context
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.google_play_provider import GooglePlayProvider
from credit_ledger.services.ledger_store import LedgerStore, ensure_account, purchase_to_domain
from credit_ledger.services.product_catalog import get_pack
from credit_ledger.services.push_dispatcher import PushDispatcher

logger = get_logger(__name__)


class PurchaseVerifier:
    """Verify-and-credit for consumable credit packs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: GooglePlayProvider,
        dispatcher: PushDispatcher,
    ) -> None:
        self.session_factory = session_factory
        self.provider = provider
        self.dispatcher = dispatcher
        self._ack_tasks: set[asyncio.Task[bool]] = set()

    async def verify_and_credit(
        self,
        uid: str,
        purchase_token: str,
        sku_id: str,
        order_id: str,
        exclude_device_id: str | None = None,
    ) -> PurchaseResult:
        """
        Verify the purchase with Google Play and grant `credits + bonus`.

        Returns a result with `already_processed=True` (and no second grant)
        when this token (or the provider-confirmed order) was recorded before.

        Raises:
            ValidationError: Unknown SKU
            InvalidPurchaseError: Not purchased, already consumed, or unknown token
            RateLimitedError / ProviderUnavailableError / ProviderTimeoutError
        """
        pack = get_pack(sku_id)

        with log_context(uid=uid, sku_id=sku_id), trace_operation(
            "purchase_verify", uid=uid, sku_id=sku_id
        ):
            # A token we already credited has been consumed since, so the
            # provider would now reject it; answer from the ledger instead.
            # The client order id is untrusted until the provider confirms it.
            existing = await self._find_existing(uid, purchase_token)
            if existing is not None:
                return existing

            verification = await self.provider.verify_purchase(purchase_token, sku_id)
            if not verification.is_valid():
                metrics.record_purchase("rejected")
                logger.warning(
                    "purchase_not_creditable",
                    purchase_state=verification.purchase_state,
                    consumption_state=verification.consumption_state,
                )
                raise InvalidPurchaseError(
                    "Purchase is not in a purchased, unconsumed state",
                    purchase_state=verification.purchase_state,
                )

            final_order_id = verification.order_id or order_id
            if final_order_id != order_id:
                logger.warning(
                    "purchase_order_id_mismatch",
                    client_order_id=order_id,
                    provider_order_id=final_order_id,
                )

            await ensure_account(self.session_factory, uid)

            try:
                async with self.session_factory() as session:
                    store = LedgerStore(session)
                    purchase = await store.insert_purchase(
                        order_id=final_order_id,
                        purchase_token=purchase_token,
                        uid=uid,
                        sku_id=sku_id,
                        amount=pack.credits,
                        bonus=pack.bonus,
                        is_test=verification.is_test_purchase(),
                    )
                    new_balance = await store.adjust_credits(uid, pack.total_credits)
                    purchase_id = purchase.id
                    purchase_data = purchase_to_domain(purchase)
                    await session.commit()
            except IntegrityError:
                logger.info("purchase_insert_conflict", order_id=final_order_id)
                replay = await self._find_existing(uid, purchase_token, order_id=final_order_id)
                if replay is None:
                    raise WriteVerificationError(
                        f"Purchase {final_order_id} conflicted but cannot be read"
                    )
                return replay

            metrics.record_purchase("granted", pack.total_credits)
            logger.info(
                "purchase_granted",
                order_id=final_order_id,
                credits=pack.credits,
                bonus=pack.bonus,
                balance=new_balance,
            )

            self._schedule_consume(purchase_id, purchase_token, sku_id)
            self.dispatcher.dispatch(
                BalanceChange(
                    uid=uid,
                    event=BalanceEvent.DEPOSIT,
                    delta=pack.total_credits,
                    new_balance=new_balance,
                    exclude_device_id=exclude_device_id,
                    correlation_id=final_order_id,
                )
            )
            return PurchaseResult(
                purchase=purchase_data, new_balance=new_balance, already_processed=False
            )

    async def consume(self, purchase_id: int, purchase_token: str, sku_id: str) -> bool:
        """
        Consume (and thereby acknowledge) a credited purchase.

        Failures are recorded on the purchase row for the reaper's retry
        queue and never undo the grant.
        """
        try:
            await self.provider.consume_purchase(purchase_token, sku_id)
        except ProviderError as exc:
            metrics.record_ack(success=False)
            logger.warning("purchase_consume_failed", purchase_id=purchase_id, error=str(exc))
            async with self.session_factory() as session:
                await LedgerStore(session).record_ack_failure(purchase_id, str(exc))
                await session.commit()
            return False

        metrics.record_ack(success=True)
        async with self.session_factory() as session:
            await LedgerStore(session).mark_acknowledged(purchase_id)
            await session.commit()
        return True

    async def drain(self) -> None:
        """Wait for in-flight consume calls (shutdown, tests)."""
        while self._ack_tasks:
            await asyncio.gather(*list(self._ack_tasks), return_exceptions=True)

    def _schedule_consume(self, purchase_id: int, purchase_token: str, sku_id: str) -> None:
        task = asyncio.create_task(self._consume_logged(purchase_id, purchase_token, sku_id))
        self._ack_tasks.add(task)
        task.add_done_callback(self._ack_tasks.discard)

    async def _consume_logged(self, purchase_id: int, purchase_token: str, sku_id: str) -> bool:
        try:
            return await self.consume(purchase_id, purchase_token, sku_id)
        except Exception:
            logger.exception("purchase_consume_unexpected_error", purchase_id=purchase_id)
            return False

    async def _find_existing(
        self, uid: str, purchase_token: str, order_id: str | None = None
    ) -> PurchaseResult | None:
        async with self.session_factory() as session:
            store = LedgerStore(session)
            purchase = await store.find_purchase(order_id=order_id, purchase_token=purchase_token)
            if purchase is None:
                return None
            balance = await store.get_balance(purchase.uid)

        if purchase.uid != uid:
            metrics.record_purchase("rejected")
            logger.warning("purchase_owned_by_other_account", order_id=purchase.order_id)
            raise InvalidPurchaseError("Purchase already redeemed by another account")

        metrics.record_purchase("duplicate")
        logger.info("purchase_duplicate", order_id=purchase.order_id, status=purchase.status)
        return PurchaseResult(
            purchase=purchase_to_domain(purchase),
            new_balance=balance or 0,
            already_processed=True,
        )
