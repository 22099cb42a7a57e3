"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Balances and statuses are only ever changed by conditional UPDATE statements
(see services/ledger_store.py); the ORM classes describe the schema and are
used for inserts and reads.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from credit_ledger.models.api import LedgerStatus

# Autoincrement keys are BIGSERIAL on PostgreSQL and INTEGER (rowid) on SQLite.
AutoIncrementKey = BigInteger().with_variant(Integer, "sqlite")

_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in LedgerStatus)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Account(Base):
    """
    ORM model for accounts table.

    One row per user. Credits are signed: a refund clawback after the credits
    were spent leaves a negative balance.
    """

    __tablename__ = "accounts"

    # Primary Key (identity provider uid)
    uid: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balance
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Plan
    tier: Mapped[str] = mapped_column(String(50), nullable=False, default="free")

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_accounts_updated_at", "updated_at"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Account(uid={self.uid}, credits={self.credits}, tier={self.tier})>"


class Purchase(Base):
    """
    ORM model for purchases table.

    One row per verified store purchase. The unique order_id and purchase_token
    columns are the exactly-once gate for crediting.
    """

    __tablename__ = "purchases"

    # Primary Key
    id: Mapped[int] = mapped_column(AutoIncrementKey, primary_key=True, autoincrement=True)

    # Store identity
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_token: Mapped[str] = mapped_column(String(4096), nullable=False)
    uid: Mapped[str] = mapped_column(String(255), nullable=False)
    sku_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Credits moved by this purchase
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # State
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LedgerStatus.COMPLETED.value
    )
    is_test: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Acknowledge retry queue
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ack_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_ack_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_purchases_amount_positive"),
        CheckConstraint("bonus >= 0", name="ck_purchases_bonus_non_negative"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_purchases_status"),
        UniqueConstraint("order_id", name="uq_purchases_order_id"),
        UniqueConstraint("purchase_token", name="uq_purchases_purchase_token"),
        Index("idx_purchases_uid", "uid"),
        Index("idx_purchases_ack_pending", "acknowledged", "ack_attempts"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Purchase(id={self.id}, order_id={self.order_id}, sku_id={self.sku_id}, "
            f"amount={self.amount}, bonus={self.bonus}, status={self.status})>"
        )


class OperationLog(Base):
    """
    ORM model for operation_logs table.

    One row per metered operation, keyed by the client-generated request id.
    The primary key insert is both the idempotency gate and the durable record
    of an in-flight debit.
    """

    __tablename__ = "operation_logs"

    # Primary Key (client idempotency key)
    req_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    uid: Mapped[str] = mapped_column(String(255), nullable=False)
    cost: Mapped[int] = mapped_column(Integer, nullable=False)

    # State
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LedgerStatus.PENDING.value
    )
    result_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("cost > 0", name="ck_operation_logs_cost_positive"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="ck_operation_logs_status"),
        Index("idx_operation_logs_status_created", "status", "created_at"),
        Index("idx_operation_logs_uid", "uid"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<OperationLog(req_id={self.req_id}, uid={self.uid}, "
            f"cost={self.cost}, status={self.status})>"
        )


class DeviceRegistration(Base):
    """
    ORM model for device_registrations table.

    Push targets for balance-sync notifications. Invalid tokens are
    deactivated, never deleted.
    """

    __tablename__ = "device_registrations"

    # Primary Key (push registration token)
    device_token: Mapped[str] = mapped_column(String(4096), primary_key=True)

    uid: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    app_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    deactivated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "platform IN ('android', 'ios', 'web')", name="ck_device_registrations_platform"
        ),
        Index("idx_device_registrations_uid_active", "uid", "active"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DeviceRegistration(uid={self.uid}, platform={self.platform}, "
            f"active={self.active})>"
        )


class AuditEntry(Base):
    """
    ORM model for audit_entries table.

    Append-only record of refunds and compensations.
    """

    __tablename__ = "audit_entries"

    # Primary Key
    id: Mapped[int] = mapped_column(AutoIncrementKey, primary_key=True, autoincrement=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    uid: Mapped[str] = mapped_column(String(255), nullable=False)

    # JSON-encoded details (order id, amounts, notification type)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_audit_entries_uid", "uid"),
        Index("idx_audit_entries_event_type", "event_type"),
        Index("idx_audit_entries_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<AuditEntry(id={self.id}, event_type={self.event_type}, uid={self.uid})>"
