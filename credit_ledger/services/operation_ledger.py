"""
Operation Ledger - debit, run the paid operation, then commit or compensate.

NO DICTIONARIES - results are typed domain models.

State machine per request id:

    PENDING -> COMPLETED   operation succeeded
    PENDING -> REFUNDED    operation failed or timed out, debit returned
    PENDING -> FAILED      insufficient credits, nothing was debited

The primary-key insert of the operation log is the idempotency gate: exactly
one caller per request id gets past it, every other caller reads the stored
row instead of running the operation again. Each transition is conditional on
the row still being PENDING, so a reaper refund racing a late completion
resolves to whichever committed first.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from credit_ledger.exceptions import (
    DuplicateRequestError,
    InsufficientCreditsError,
    OperationFailedError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    ValidationError,
    WriteVerificationError,
)
from credit_ledger.models.api import AuditEventType, BalanceEvent, LedgerStatus
from credit_ledger.models.domain import BalanceChange, OperationResult
from credit_ledger.observability.logging import log_context
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import trace_operation
from credit_ledger.services.ledger_store import LedgerStore, ensure_account, operation_to_domain
from credit_ledger.services.push_dispatcher import PushDispatcher

logger = get_logger(__name__)

INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
PROVIDER_ERROR = "PROVIDER_ERROR"
RATE_LIMITED = "RATE_LIMITED"
OPERATION_FAILED = "OPERATION_FAILED"
CANCELLED = "CANCELLED"

ExternalOperation = Callable[[], Awaitable[str]]


class OperationLedger:
    """Saga executor for metered operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: PushDispatcher,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.timeout_seconds = timeout_seconds

    async def execute(
        self,
        uid: str,
        req_id: str,
        cost: int,
        exclude_device_id: str | None,
        run_external_operation: ExternalOperation,
    ) -> OperationResult:
        """
        Debit `cost`, run the operation once, then complete or compensate.

        Returns the completed result, or the stored result for a replayed
        request id (PENDING replays come back with `processing=True`).

        Raises:
            InsufficientCreditsError: Balance below cost; logged as FAILED
            OperationFailedError: Operation failed and the debit was refunded
            ValidationError: Bad cost, or the request id belongs to another user
        """
        if cost <= 0:
            raise ValidationError("cost must be positive")

        with log_context(uid=uid, req_id=req_id), trace_operation(
            "operation_saga", uid=uid, req_id=req_id, cost=cost
        ):
            await ensure_account(self.session_factory, uid)

            try:
                balance_after_debit = await self._reserve(uid, req_id, cost)
            except DuplicateRequestError:
                return await self._replay(uid, req_id)

            logger.info("operation_debited", cost=cost, balance=balance_after_debit)

            start = time.monotonic()
            error_code: str | None = None
            error_message = ""
            try:
                result_ref = await asyncio.wait_for(
                    run_external_operation(), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                error_code = PROVIDER_TIMEOUT
                error_message = f"Operation exceeded {self.timeout_seconds}s"
            except ProviderTimeoutError as exc:
                error_code, error_message = PROVIDER_TIMEOUT, exc.message
            except RateLimitedError as exc:
                error_code, error_message = RATE_LIMITED, exc.message
            except ProviderError as exc:
                error_code, error_message = PROVIDER_ERROR, exc.message
            except asyncio.CancelledError:
                await asyncio.shield(
                    self._compensate(
                        uid, req_id, cost, exclude_device_id, start, CANCELLED, "Request cancelled"
                    )
                )
                raise
            except Exception as exc:
                logger.exception("operation_unexpected_error")
                error_code, error_message = OPERATION_FAILED, str(exc) or type(exc).__name__

            if error_code is not None:
                new_balance = await self._compensate(
                    uid, req_id, cost, exclude_device_id, start, error_code, error_message
                )
                raise OperationFailedError(
                    req_id=req_id,
                    credits_refunded=cost,
                    error_code=error_code,
                    message=error_message,
                    new_balance=new_balance,
                )

            return await self._complete(uid, req_id, cost, exclude_device_id, start, result_ref)

    async def get_status(self, req_id: str) -> OperationResult | None:
        """Read the stored state of a request id (for polling)."""
        async with self.session_factory() as session:
            store = LedgerStore(session)
            row = await store.get_operation(req_id)
            if row is None:
                return None
            balance = await store.get_balance(row.uid)
        data = operation_to_domain(row)
        return OperationResult(
            operation=data,
            new_balance=balance,
            processing=data.status == LedgerStatus.PENDING,
        )

    # ========================================================================
    # Saga Steps
    # ========================================================================

    async def _reserve(self, uid: str, req_id: str, cost: int) -> int:
        """
        Insert the PENDING log and debit in one transaction.

        Raises:
            DuplicateRequestError: The request id already exists
            InsufficientCreditsError: The debit matched no row
        """
        async with self.session_factory() as session:
            store = LedgerStore(session)
            try:
                await store.insert_operation(req_id, uid, cost)
            except IntegrityError as exc:
                raise DuplicateRequestError(req_id) from exc

            if not await store.debit_if_sufficient(uid, cost):
                await store.transition_operation(
                    req_id,
                    LedgerStatus.FAILED,
                    error_code=INSUFFICIENT_CREDITS,
                    error_message="Insufficient credits",
                )
                available = await store.get_balance(uid) or 0
                await session.commit()
                metrics.record_operation("insufficient")
                logger.info("operation_rejected_insufficient", required=cost, available=available)
                raise InsufficientCreditsError(required=cost, available=available)

            balance = await store.get_balance(uid)
            await session.commit()

        if balance is None:
            raise WriteVerificationError(f"Account {uid} missing after debit")
        return balance

    async def _replay(self, uid: str, req_id: str) -> OperationResult:
        async with self.session_factory() as session:
            store = LedgerStore(session)
            row = await store.get_operation(req_id)
            balance = await store.get_balance(uid)

        if row is None:
            raise WriteVerificationError(f"Operation {req_id} conflicted but cannot be read")
        if row.uid != uid:
            raise ValidationError("req_id already used by another account")

        data = operation_to_domain(row)
        processing = data.status == LedgerStatus.PENDING
        metrics.record_operation("processing" if processing else "replayed")
        logger.info("operation_replayed", status=data.status.value)
        return OperationResult(
            operation=data, new_balance=balance, replayed=True, processing=processing
        )

    async def _complete(
        self,
        uid: str,
        req_id: str,
        cost: int,
        exclude_device_id: str | None,
        start: float,
        result_ref: str,
    ) -> OperationResult:
        duration = time.monotonic() - start
        async with self.session_factory() as session:
            store = LedgerStore(session)
            won = await store.transition_operation(
                req_id,
                LedgerStatus.COMPLETED,
                result_ref=result_ref,
                duration_ms=int(duration * 1000),
            )
            row = await store.get_operation(req_id)
            balance = await store.get_balance(uid)
            await session.commit()

        if row is None:
            raise WriteVerificationError(f"Operation {req_id} missing after completion")
        data = operation_to_domain(row)

        if not won:
            # The reaper refunded this row while the operation was running.
            logger.warning("operation_finalized_elsewhere", status=data.status.value)
            metrics.record_operation("lost_race", duration)
            if data.status == LedgerStatus.REFUNDED:
                raise OperationFailedError(
                    req_id=req_id,
                    credits_refunded=cost,
                    error_code=data.error_code or OPERATION_FAILED,
                    message=data.error_message or "Operation was refunded",
                    new_balance=balance,
                )
            return OperationResult(operation=data, new_balance=balance)

        metrics.record_operation("completed", duration)
        logger.info("operation_completed", duration_ms=data.duration_ms)
        if balance is not None:
            self.dispatcher.dispatch(
                BalanceChange(
                    uid=uid,
                    event=BalanceEvent.GENERATE_COMPLETED,
                    delta=-cost,
                    new_balance=balance,
                    exclude_device_id=exclude_device_id,
                    correlation_id=req_id,
                )
            )
        return OperationResult(operation=data, new_balance=balance)

    async def _compensate(
        self,
        uid: str,
        req_id: str,
        cost: int,
        exclude_device_id: str | None,
        start: float,
        error_code: str,
        message: str,
    ) -> int | None:
        duration = time.monotonic() - start
        async with self.session_factory() as session:
            store = LedgerStore(session)
            new_balance = await store.refund_operation(
                req_id,
                uid,
                cost,
                error_code=error_code,
                error_message=message,
                audit_event=AuditEventType.GENERATE_REFUNDED,
                duration_ms=int(duration * 1000),
            )
            if new_balance is None:
                new_balance = await store.get_balance(uid)
                await session.commit()
                logger.warning("operation_compensation_skipped", error_code=error_code)
                return new_balance
            await session.commit()

        metrics.record_operation("refunded", duration)
        metrics.record_compensation(error_code)
        logger.warning(
            "operation_refunded", error_code=error_code, error=message, balance=new_balance
        )
        self.dispatcher.dispatch(
            BalanceChange(
                uid=uid,
                event=BalanceEvent.GENERATE_REFUNDED,
                delta=cost,
                new_balance=new_balance,
                exclude_device_id=exclude_device_id,
                correlation_id=req_id,
            )
        )
        return new_balance
