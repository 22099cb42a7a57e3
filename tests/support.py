"""
Shared test helpers: row seeding, ledger reads and service stand-ins.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.models import (
    Account,
    AuditEntry,
    DeviceRegistration,
    OperationLog,
    Purchase,
)
from credit_ledger.exceptions import ProviderError
from credit_ledger.models.api import LedgerStatus
from credit_ledger.models.domain import BalanceChange
from credit_ledger.models.google_play import GooglePlayPurchaseVerification

SessionFactory = async_sessionmaker[AsyncSession]

# ============================================================================
# Seeding
# ============================================================================


async def seed_account(factory: SessionFactory, uid: str, credits: int = 0) -> None:
    async with factory() as session:
        session.add(Account(uid=uid, credits=credits))
        await session.commit()


async def seed_operation(
    factory: SessionFactory,
    req_id: str,
    uid: str,
    cost: int,
    status: LedgerStatus = LedgerStatus.PENDING,
    created_at: datetime | None = None,
) -> None:
    async with factory() as session:
        row = OperationLog(req_id=req_id, uid=uid, cost=cost, status=status.value)
        if created_at is not None:
            row.created_at = created_at
        session.add(row)
        await session.commit()


async def seed_purchase(
    factory: SessionFactory,
    uid: str,
    order_id: str,
    purchase_token: str,
    amount: int = 100,
    bonus: int = 20,
    sku_id: str = "credits_100",
    acknowledged: bool = True,
    ack_attempts: int = 0,
    created_at: datetime | None = None,
) -> int:
    async with factory() as session:
        row = Purchase(
            order_id=order_id,
            purchase_token=purchase_token,
            uid=uid,
            sku_id=sku_id,
            amount=amount,
            bonus=bonus,
            status=LedgerStatus.COMPLETED.value,
            acknowledged=acknowledged,
            ack_attempts=ack_attempts,
        )
        if created_at is not None:
            row.created_at = created_at
        session.add(row)
        await session.commit()
        return row.id


async def seed_device(
    factory: SessionFactory,
    uid: str,
    device_token: str,
    platform: str = "android",
    active: bool = True,
) -> None:
    async with factory() as session:
        session.add(
            DeviceRegistration(device_token=device_token, uid=uid, platform=platform, active=active)
        )
        await session.commit()


# ============================================================================
# Reads
# ============================================================================


async def balance_of(factory: SessionFactory, uid: str) -> int | None:
    async with factory() as session:
        result = await session.execute(select(Account.credits).where(Account.uid == uid))
        return result.scalar_one_or_none()


async def operation_of(factory: SessionFactory, req_id: str) -> OperationLog | None:
    async with factory() as session:
        return await session.get(OperationLog, req_id)


async def purchase_of(factory: SessionFactory, purchase_token: str) -> Purchase | None:
    async with factory() as session:
        result = await session.execute(
            select(Purchase).where(Purchase.purchase_token == purchase_token)
        )
        return result.scalar_one_or_none()


async def device_of(factory: SessionFactory, device_token: str) -> DeviceRegistration | None:
    async with factory() as session:
        return await session.get(DeviceRegistration, device_token)


async def count_rows(factory: SessionFactory, model: Any, **filters: Any) -> int:
    async with factory() as session:
        stmt = select(func.count()).select_from(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        result = await session.execute(stmt)
        return int(result.scalar_one())


async def audit_entries(factory: SessionFactory, uid: str) -> list[AuditEntry]:
    async with factory() as session:
        result = await session.execute(select(AuditEntry).where(AuditEntry.uid == uid))
        return list(result.scalars().all())


# ============================================================================
# Redis Test Double
# ============================================================================


class FakeRedis:
    """The subset of redis.asyncio.Redis the token cache uses."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key: str) -> int:
        existed = key in self.store
        self.store.pop(key, None)
        self.ttls.pop(key, None)
        return int(existed)


# ============================================================================
# Service Stand-ins
# ============================================================================


class RecordingDispatcher:
    """Collects balance changes instead of pushing them."""

    def __init__(self) -> None:
        self.changes: list[BalanceChange] = []

    def dispatch(self, change: BalanceChange) -> None:
        self.changes.append(change)

    async def drain(self) -> None:
        return None


class StubTokenCache:
    """Hands out numbered tokens and records invalidations."""

    def __init__(self) -> None:
        self.issued = 0
        self.invalidated: list[str] = []

    async def get_token(self, scope: str) -> str:
        self.issued += 1
        return f"token-{self.issued}"

    async def invalidate(self, scope: str) -> None:
        self.invalidated.append(scope)


def make_verification(
    purchase_token: str,
    product_id: str = "credits_100",
    order_id: str = "GPA.1111-2222-3333-44444",
    purchase_state: int = 0,
    consumption_state: int = 0,
    purchase_type: int | None = None,
) -> GooglePlayPurchaseVerification:
    return GooglePlayPurchaseVerification(
        order_id=order_id,
        purchase_token=purchase_token,
        product_id=product_id,
        purchase_time_millis=1_700_000_000_000,
        purchase_state=purchase_state,
        acknowledgement_state=0,
        consumption_state=consumption_state,
        purchase_type=purchase_type,
    )


class StubPlayProvider:
    """Answers verify/consume calls from canned data."""

    def __init__(self) -> None:
        self.verifications: dict[str, GooglePlayPurchaseVerification] = {}
        self.verify_calls: list[str] = []
        self.consume_calls: list[str] = []
        self.consume_error: ProviderError | None = None

    async def verify_purchase(
        self, purchase_token: str, product_id: str
    ) -> GooglePlayPurchaseVerification:
        self.verify_calls.append(purchase_token)
        return self.verifications[purchase_token]

    async def consume_purchase(self, purchase_token: str, product_id: str) -> None:
        self.consume_calls.append(purchase_token)
        if self.consume_error is not None:
            raise self.consume_error
