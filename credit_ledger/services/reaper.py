"""
Stuck-Transaction Reaper - periodic cleanup of the ledger.

Three sweeps per run:
  1. Refund operations stuck in PENDING past the stuck timeout.
  2. Archive terminal operation logs past the retention window, then delete them.
  3. Retry consume/acknowledge for purchases whose first attempt failed.

Every write goes through the same PENDING / COMPLETED status guards as the
request path, so a second run over the same rows changes nothing.
"""

import asyncio
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.db.models import utc_now
from credit_ledger.exceptions import ArchiveExportError, LedgerError
from credit_ledger.models.api import AuditEventType, BalanceEvent
from credit_ledger.models.domain import BalanceChange, OperationData, ReaperReport
from credit_ledger.observability.logging import log_context
from credit_ledger.observability.metrics import metrics
from credit_ledger.services.archive_exporter import ArchiveExporter
from credit_ledger.services.ledger_store import LedgerStore
from credit_ledger.services.purchase_verifier import PurchaseVerifier
from credit_ledger.services.push_dispatcher import PushDispatcher

logger = get_logger(__name__)

AUTO_TIMEOUT_REFUND = "AUTO_TIMEOUT_REFUND"


class Reaper:
    """Background sweeper for stuck, expired and unacknowledged rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: PushDispatcher,
        verifier: PurchaseVerifier | None,
        exporter: ArchiveExporter | None,
        stuck_timeout_seconds: int = 600,
        retention_days: int = 90,
        batch_size: int = 1000,
        ack_max_attempts: int = 8,
        interval_seconds: int = 300,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.verifier = verifier
        self.exporter = exporter
        self.stuck_timeout = timedelta(seconds=stuck_timeout_seconds)
        self.retention = timedelta(days=retention_days)
        self.batch_size = batch_size
        self.ack_max_attempts = ack_max_attempts
        self.interval_seconds = interval_seconds

    async def run_once(self) -> ReaperReport:
        report = ReaperReport()
        for name, sweep in (
            ("refund", self.refund_stuck_operations),
            ("archive", self.archive_expired_operations),
            ("acknowledge", self.retry_acknowledgements),
        ):
            try:
                await sweep(report)
            except (SQLAlchemyError, LedgerError) as exc:
                report.errors.append(f"{name}: {exc}")
                metrics.record_error("database", f"reaper_{name}")
                logger.exception("reaper_sweep_failed", sweep=name)

        metrics.reaper_last_run_timestamp.set_to_current_time()
        logger.info(
            "reaper_run_completed",
            refunded=report.refunded,
            refund_skipped=report.refund_skipped,
            refund_errors=report.refund_errors,
            archived=report.archived,
            acknowledged=report.acknowledged,
            ack_failures=report.ack_failures,
            users_notified=report.users_notified,
            errors=len(report.errors),
        )
        return report

    async def run_forever(self) -> None:
        """Run the sweeps every `interval_seconds` until cancelled."""
        logger.info("reaper_started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("reaper_run_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    # ========================================================================
    # Sweeps
    # ========================================================================

    async def refund_stuck_operations(self, report: ReaperReport) -> None:
        cutoff = utc_now() - self.stuck_timeout
        async with self.session_factory() as session:
            stuck = await LedgerStore(session).list_stuck_operations(cutoff, self.batch_size)

        if not stuck:
            return
        logger.warning("reaper_stuck_operations_found", count=len(stuck))

        # uid -> (summed delta, latest balance)
        per_user: dict[str, tuple[int, int]] = {}
        for operation in stuck:
            with log_context(uid=operation.uid, req_id=operation.req_id):
                try:
                    new_balance = await self._refund_one(operation)
                except (SQLAlchemyError, LedgerError) as exc:
                    report.refund_errors += 1
                    report.errors.append(f"refund {operation.req_id}: {exc}")
                    logger.exception("reaper_refund_failed")
                    continue

                if new_balance is None:
                    report.refund_skipped += 1
                    logger.info("reaper_refund_skipped")
                    continue

                report.refunded += 1
                delta, _ = per_user.get(operation.uid, (0, 0))
                per_user[operation.uid] = (delta + operation.cost, new_balance)
                metrics.record_compensation(AUTO_TIMEOUT_REFUND)
                logger.warning("reaper_operation_refunded", cost=operation.cost, balance=new_balance)

        metrics.record_reaper("refund", report.refunded)
        for uid, (delta, balance) in per_user.items():
            self.dispatcher.dispatch(
                BalanceChange(
                    uid=uid,
                    event=BalanceEvent.GENERATE_REFUNDED,
                    delta=delta,
                    new_balance=balance,
                )
            )
        report.users_notified += len(per_user)

    async def _refund_one(self, operation: OperationData) -> int | None:
        async with self.session_factory() as session:
            new_balance = await LedgerStore(session).refund_operation(
                operation.req_id,
                operation.uid,
                operation.cost,
                error_code=AUTO_TIMEOUT_REFUND,
                error_message="Operation exceeded the stuck timeout",
                audit_event=AuditEventType.AUTO_TIMEOUT_REFUND,
            )
            await session.commit()
        return new_balance

    async def archive_expired_operations(self, report: ReaperReport) -> None:
        if self.exporter is None:
            logger.debug("reaper_archive_disabled")
            return

        cutoff = utc_now() - self.retention
        async with self.session_factory() as session:
            rows = await LedgerStore(session).list_archivable_operations(cutoff, self.batch_size)
        if not rows:
            return

        try:
            location = await self.exporter.export(rows)
        except ArchiveExportError as exc:
            report.errors.append(str(exc))
            metrics.record_error("archive_export", "reaper_archive")
            logger.error("reaper_archive_export_failed", rows=len(rows), error=exc.message)
            return

        async with self.session_factory() as session:
            deleted = await LedgerStore(session).delete_operations([r.req_id for r in rows])
            await session.commit()

        report.archived += deleted
        metrics.record_reaper("archive", deleted)
        logger.info("reaper_operations_archived", rows=deleted, location=location)

    async def retry_acknowledgements(self, report: ReaperReport) -> None:
        if self.verifier is None:
            return

        # Leave fresh purchases to the consume call scheduled at grant time.
        cutoff = utc_now() - timedelta(seconds=self.interval_seconds)
        async with self.session_factory() as session:
            pending = await LedgerStore(session).list_unacknowledged(
                self.ack_max_attempts, cutoff, self.batch_size
            )

        for purchase in pending:
            with log_context(uid=purchase.uid, order_id=purchase.order_id):
                if await self.verifier.consume(
                    purchase.id, purchase.purchase_token, purchase.sku_id
                ):
                    report.acknowledged += 1
                    logger.info("reaper_purchase_acknowledged")
                    continue

                report.ack_failures += 1
                if purchase.ack_attempts + 1 >= self.ack_max_attempts:
                    metrics.ack_exhausted_total.inc()
                    logger.error(
                        "reaper_acknowledge_exhausted",
                        attempts=purchase.ack_attempts + 1,
                        sku_id=purchase.sku_id,
                    )

        metrics.record_reaper("acknowledge", report.acknowledged)
