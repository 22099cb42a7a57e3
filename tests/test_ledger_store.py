"""
Tests for LedgerStore conditional writes.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_ledger.db.models import Account, utc_now
from credit_ledger.exceptions import WriteVerificationError
from credit_ledger.models.api import AuditEventType, DevicePlatform, LedgerStatus
from credit_ledger.services.ledger_store import LedgerStore, ensure_account
from tests.support import (
    balance_of,
    count_rows,
    device_of,
    operation_of,
    seed_account,
    seed_device,
    seed_operation,
    seed_purchase,
)

UID = "user-store"


class TestBalances:
    """Tests for guarded balance updates."""

    async def test_debit_applies_when_sufficient(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_account(session_factory, UID, credits=10)
        async with session_factory() as session:
            assert await LedgerStore(session).debit_if_sufficient(UID, 10) is True
            await session.commit()
        assert await balance_of(session_factory, UID) == 0

    async def test_debit_refused_when_short(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_account(session_factory, UID, credits=4)
        async with session_factory() as session:
            assert await LedgerStore(session).debit_if_sufficient(UID, 5) is False
            await session.commit()
        assert await balance_of(session_factory, UID) == 4

    async def test_adjust_has_no_floor(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_account(session_factory, UID, credits=3)
        async with session_factory() as session:
            assert await LedgerStore(session).adjust_credits(UID, -10) == -7

    async def test_adjust_missing_account_fails_verification(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        async with session_factory() as session:
            with pytest.raises(WriteVerificationError):
                await LedgerStore(session).adjust_credits("nobody", 5)

    async def test_ensure_account_is_idempotent(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_account(session_factory, UID, credits=9)
        await ensure_account(session_factory, UID)
        await ensure_account(session_factory, "user-new")
        await ensure_account(session_factory, "user-new")

        assert await balance_of(session_factory, UID) == 9
        assert await balance_of(session_factory, "user-new") == 0
        assert await count_rows(session_factory, Account) == 2


class TestPurchases:
    """Tests for the purchase uniqueness gate."""

    async def test_second_insert_of_same_token_violates_uniqueness(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_purchase(session_factory, UID, "GPA.1", "token-dup")
        async with session_factory() as session:
            with pytest.raises(IntegrityError):
                await LedgerStore(session).insert_purchase(
                    "GPA.2", "token-dup", UID, "credits_100", 100, 20
                )

    async def test_second_insert_of_same_order_violates_uniqueness(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_purchase(session_factory, UID, "GPA.1", "token-1")
        async with session_factory() as session:
            with pytest.raises(IntegrityError):
                await LedgerStore(session).insert_purchase(
                    "GPA.1", "token-2", UID, "credits_100", 100, 20
                )

    async def test_refund_transition_happens_once(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        purchase_id = await seed_purchase(session_factory, UID, "GPA.1", "token-1")
        async with session_factory() as session:
            store = LedgerStore(session)
            assert await store.mark_purchase_refunded(purchase_id) is True
            assert await store.mark_purchase_refunded(purchase_id) is False
            await session.commit()
            assert await store.find_completed_purchase_by_token("token-1") is None


class TestOperations:
    """Tests for operation status guards."""

    async def test_transition_only_leaves_pending_once(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_operation(session_factory, "req-1", UID, cost=5)
        async with session_factory() as session:
            store = LedgerStore(session)
            assert await store.transition_operation(
                "req-1", LedgerStatus.COMPLETED, result_ref="ref"
            )
            assert not await store.transition_operation(
                "req-1", LedgerStatus.REFUNDED, error_code="X"
            )
            await session.commit()

        row = await operation_of(session_factory, "req-1")
        assert row is not None
        assert row.status == LedgerStatus.COMPLETED.value
        assert row.completed_at is not None
        assert row.error_code is None

    async def test_refund_operation_skips_finalized_row(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_account(session_factory, UID, credits=0)
        await seed_operation(session_factory, "req-1", UID, 5, LedgerStatus.COMPLETED)
        async with session_factory() as session:
            result = await LedgerStore(session).refund_operation(
                "req-1", UID, 5, "X", "late", AuditEventType.GENERATE_REFUNDED
            )
            await session.commit()

        assert result is None
        assert await balance_of(session_factory, UID) == 0

    async def test_delete_never_removes_pending(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_operation(session_factory, "req-done", UID, 5, LedgerStatus.COMPLETED)
        await seed_operation(session_factory, "req-pending", UID, 5)
        async with session_factory() as session:
            deleted = await LedgerStore(session).delete_operations(["req-done", "req-pending"])
            await session.commit()

        assert deleted == 1
        assert await operation_of(session_factory, "req-pending") is not None

    async def test_stuck_listing_uses_cutoff(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_operation(
            session_factory, "req-old", UID, 5, created_at=utc_now() - timedelta(hours=2)
        )
        await seed_operation(session_factory, "req-new", UID, 5)
        async with session_factory() as session:
            stuck = await LedgerStore(session).list_stuck_operations(
                utc_now() - timedelta(hours=1), limit=10
            )
        assert [op.req_id for op in stuck] == ["req-old"]


class TestDevices:
    """Tests for device registration."""

    async def test_reregistration_reactivates(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_device(session_factory, "old-owner", "fcm-token-1", active=False)
        async with session_factory() as session:
            await LedgerStore(session).upsert_device(
                "fcm-token-1", UID, DevicePlatform.IOS, "2.4.0"
            )
            await session.commit()

        device = await device_of(session_factory, "fcm-token-1")
        assert device is not None
        assert device.active is True
        assert device.uid == UID
        assert device.platform == "ios"

    async def test_list_active_excludes_origin(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        await seed_device(session_factory, UID, "dev-A")
        await seed_device(session_factory, UID, "dev-B")
        async with session_factory() as session:
            targets = await LedgerStore(session).list_active_devices(UID, exclude_device_id="dev-A")
        assert [t.device_token for t in targets] == ["dev-B"]
