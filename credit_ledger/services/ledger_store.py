"""
Ledger Store - typed, conditional access to the ledger tables.

NO DICTIONARIES - reads return ORM rows or domain dataclasses.

Every balance change is a single `UPDATE accounts SET credits = credits + ?`
issued in the same transaction that moves a purchase or operation log out of
its expected prior status. Status transitions are conditional
(`WHERE status = <expected>`) and report whether they won, so two actors
racing on the same row cannot both apply their effect.

The store never commits; callers own the transaction boundary.
"""

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.models import (
    Account,
    AuditEntry,
    DeviceRegistration,
    OperationLog,
    Purchase,
    utc_now,
)
from credit_ledger.exceptions import WriteVerificationError
from credit_ledger.models.api import AuditEventType, DevicePlatform, LedgerStatus
from credit_ledger.models.domain import DeviceTarget, OperationData, PurchaseData
from credit_ledger.observability.metrics import metrics

TERMINAL_OPERATION_STATUSES = (LedgerStatus.COMPLETED.value, LedgerStatus.REFUNDED.value)


def operation_to_domain(row: OperationLog) -> OperationData:
    return OperationData(
        req_id=row.req_id,
        uid=row.uid,
        cost=row.cost,
        status=LedgerStatus(row.status),
        result_ref=row.result_ref,
        error_code=row.error_code,
        error_message=row.error_message,
        duration_ms=row.duration_ms,
    )


def purchase_to_domain(row: Purchase) -> PurchaseData:
    return PurchaseData(
        order_id=row.order_id,
        purchase_token=row.purchase_token,
        uid=row.uid,
        sku_id=row.sku_id,
        amount=row.amount,
        bonus=row.bonus,
        status=LedgerStatus(row.status),
        acknowledged=row.acknowledged,
    )


class LedgerStore:
    """Session-scoped ledger access."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ========================================================================
    # Accounts
    # ========================================================================

    async def get_balance(self, uid: str) -> int | None:
        stmt = select(Account.credits).where(Account.uid == uid)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def adjust_credits(self, uid: str, delta: int) -> int:
        """
        Add `delta` (may be negative) to the balance without a floor.

        Used for grants, compensations and clawbacks, all of which are only
        issued after a status transition in the same transaction succeeded.
        """
        stmt = (
            update(Account)
            .where(Account.uid == uid)
            .values(credits=Account.credits + delta, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        self._verify_single_row(result.rowcount, f"account {uid} balance adjust")
        balance = await self.get_balance(uid)
        if balance is None:
            raise WriteVerificationError(f"Account {uid} disappeared after update")
        return balance

    async def debit_if_sufficient(self, uid: str, cost: int) -> bool:
        """`credits -= cost` only when `credits >= cost`. Returns whether it applied."""
        stmt = (
            update(Account)
            .where(Account.uid == uid, Account.credits >= cost)
            .values(credits=Account.credits - cost, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # ========================================================================
    # Purchases
    # ========================================================================

    async def insert_purchase(
        self,
        order_id: str,
        purchase_token: str,
        uid: str,
        sku_id: str,
        amount: int,
        bonus: int,
        is_test: bool = False,
    ) -> Purchase:
        """
        Insert a COMPLETED purchase.

        Raises:
            IntegrityError: If the order id or purchase token was already recorded
        """
        purchase = Purchase(
            order_id=order_id,
            purchase_token=purchase_token,
            uid=uid,
            sku_id=sku_id,
            amount=amount,
            bonus=bonus,
            status=LedgerStatus.COMPLETED.value,
            is_test=is_test,
            acknowledged=False,
            ack_attempts=0,
        )
        self.session.add(purchase)
        await self.session.flush()
        return purchase

    async def find_purchase(
        self, order_id: str | None = None, purchase_token: str | None = None
    ) -> Purchase | None:
        """Find a purchase by order id or by token (whichever matches first)."""
        if order_id:
            result = await self.session.execute(
                select(Purchase).where(Purchase.order_id == order_id)
            )
            purchase = result.scalar_one_or_none()
            if purchase is not None:
                return purchase
        if purchase_token:
            result = await self.session.execute(
                select(Purchase).where(Purchase.purchase_token == purchase_token)
            )
            return result.scalar_one_or_none()
        return None

    async def find_completed_purchase_by_token(self, purchase_token: str) -> Purchase | None:
        stmt = select(Purchase).where(
            Purchase.purchase_token == purchase_token,
            Purchase.status == LedgerStatus.COMPLETED.value,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_purchase_refunded(self, purchase_id: int) -> bool:
        """COMPLETED -> REFUNDED. Returns False if another delivery already won."""
        now = utc_now()
        stmt = (
            update(Purchase)
            .where(Purchase.id == purchase_id, Purchase.status == LedgerStatus.COMPLETED.value)
            .values(status=LedgerStatus.REFUNDED.value, refunded_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_acknowledged(self, purchase_id: int) -> None:
        stmt = (
            update(Purchase)
            .where(Purchase.id == purchase_id)
            .values(acknowledged=True, last_ack_error=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def record_ack_failure(self, purchase_id: int, error: str) -> None:
        stmt = (
            update(Purchase)
            .where(Purchase.id == purchase_id)
            .values(
                ack_attempts=Purchase.ack_attempts + 1,
                last_ack_error=error[:1000],
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def list_unacknowledged(
        self, max_attempts: int, created_before: datetime, limit: int
    ) -> Sequence[Purchase]:
        """COMPLETED purchases still waiting for a successful consume call."""
        stmt = (
            select(Purchase)
            .where(
                Purchase.acknowledged.is_(False),
                Purchase.status == LedgerStatus.COMPLETED.value,
                Purchase.ack_attempts < max_attempts,
                Purchase.created_at < created_before,
            )
            .order_by(Purchase.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    # ========================================================================
    # Operation Logs
    # ========================================================================

    async def insert_operation(self, req_id: str, uid: str, cost: int) -> None:
        """
        Insert a PENDING operation log.

        Raises:
            IntegrityError: If the request id was already inserted
        """
        self.session.add(
            OperationLog(req_id=req_id, uid=uid, cost=cost, status=LedgerStatus.PENDING.value)
        )
        await self.session.flush()

    async def get_operation(self, req_id: str) -> OperationLog | None:
        result = await self.session.execute(
            select(OperationLog).where(OperationLog.req_id == req_id)
        )
        return result.scalar_one_or_none()

    async def transition_operation(
        self,
        req_id: str,
        to_status: LedgerStatus,
        result_ref: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
    ) -> bool:
        """PENDING -> `to_status`. Returns False if the row already left PENDING."""
        now = utc_now()
        values: dict[str, Any] = {"status": to_status.value, "updated_at": now}
        if to_status.is_terminal:
            values["completed_at"] = now
        if result_ref is not None:
            values["result_ref"] = result_ref
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        if duration_ms is not None:
            values["duration_ms"] = duration_ms

        stmt = (
            update(OperationLog)
            .where(
                OperationLog.req_id == req_id,
                OperationLog.status == LedgerStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        won = result.rowcount == 1
        metrics.record_write_verification(won)
        return won

    async def refund_operation(
        self,
        req_id: str,
        uid: str,
        cost: int,
        error_code: str,
        error_message: str,
        audit_event: AuditEventType,
        duration_ms: int | None = None,
    ) -> int | None:
        """
        Compensate a debited operation: PENDING -> REFUNDED, then credits += cost.

        Returns the new balance, or None when the row was no longer PENDING
        (someone else already finalized it and nothing was changed).
        """
        won = await self.transition_operation(
            req_id,
            LedgerStatus.REFUNDED,
            error_code=error_code,
            error_message=error_message,
            duration_ms=duration_ms,
        )
        if not won:
            return None
        new_balance = await self.adjust_credits(uid, cost)
        await self.append_audit(
            audit_event,
            uid,
            {"req_id": req_id, "credits_refunded": cost, "error_code": error_code},
        )
        return new_balance

    async def list_stuck_operations(self, created_before: datetime, limit: int) -> list[OperationData]:
        stmt = (
            select(OperationLog)
            .where(
                OperationLog.status == LedgerStatus.PENDING.value,
                OperationLog.created_at < created_before,
            )
            .order_by(OperationLog.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [operation_to_domain(row) for row in result.scalars().all()]

    async def list_archivable_operations(
        self, created_before: datetime, limit: int
    ) -> Sequence[OperationLog]:
        stmt = (
            select(OperationLog)
            .where(
                OperationLog.status.in_(TERMINAL_OPERATION_STATUSES),
                OperationLog.created_at < created_before,
            )
            .order_by(OperationLog.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete_operations(self, req_ids: Sequence[str]) -> int:
        """Delete exactly these terminal rows. PENDING rows are never deleted."""
        if not req_ids:
            return 0
        stmt = (
            delete(OperationLog)
            .where(
                OperationLog.req_id.in_(list(req_ids)),
                OperationLog.status.in_(TERMINAL_OPERATION_STATUSES),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    # ========================================================================
    # Device Registrations
    # ========================================================================

    async def upsert_device(
        self,
        device_token: str,
        uid: str,
        platform: DevicePlatform,
        app_version: str | None,
    ) -> DeviceRegistration:
        """Register or re-register a device (reactivates a deactivated token)."""
        device = await self.session.get(DeviceRegistration, device_token)
        now = utc_now()
        if device is None:
            device = DeviceRegistration(
                device_token=device_token,
                uid=uid,
                platform=platform.value,
                app_version=app_version,
                active=True,
                last_seen_at=now,
            )
            self.session.add(device)
        else:
            device.uid = uid
            device.platform = platform.value
            device.app_version = app_version
            device.active = True
            device.deactivated_at = None
            device.last_seen_at = now
        await self.session.flush()
        return device

    async def list_active_devices(
        self, uid: str, exclude_device_id: str | None = None
    ) -> list[DeviceTarget]:
        stmt = select(DeviceRegistration.device_token, DeviceRegistration.platform).where(
            DeviceRegistration.uid == uid,
            DeviceRegistration.active.is_(True),
        )
        if exclude_device_id:
            stmt = stmt.where(DeviceRegistration.device_token != exclude_device_id)
        result = await self.session.execute(stmt)
        return [DeviceTarget(device_token=token, platform=platform) for token, platform in result]

    async def deactivate_device(self, device_token: str) -> bool:
        stmt = (
            update(DeviceRegistration)
            .where(
                DeviceRegistration.device_token == device_token,
                DeviceRegistration.active.is_(True),
            )
            .values(active=False, deactivated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # ========================================================================
    # Audit
    # ========================================================================

    async def append_audit(
        self, event_type: AuditEventType, uid: str, details: dict[str, Any]
    ) -> None:
        self.session.add(
            AuditEntry(
                event_type=event_type.value,
                uid=uid,
                details=json.dumps(details, sort_keys=True, default=str),
            )
        )
        await self.session.flush()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _verify_single_row(rowcount: int, what: str) -> None:
        ok = rowcount == 1
        metrics.record_write_verification(ok)
        if not ok:
            raise WriteVerificationError(f"Expected 1 row for {what}, got {rowcount}")


async def ensure_account(session_factory: async_sessionmaker[AsyncSession], uid: str) -> None:
    """
    Get or create the account row in its own transaction.

    A concurrent creator winning the insert is not an error: the row exists
    either way, which is all callers need before issuing conditional updates.
    """
    async with session_factory() as session:
        existing = await session.get(Account, uid)
        if existing is not None:
            return
        session.add(Account(uid=uid, credits=0))
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            if await session.get(Account, uid) is None:
                raise WriteVerificationError(f"Account {uid} creation failed due to race condition")
