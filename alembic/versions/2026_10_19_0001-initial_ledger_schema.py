"""initial ledger schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the credit ledger tables:
- accounts: signed credit balance per user
- purchases: verified store purchases (unique order id and purchase token)
- operation_logs: metered operations keyed by client request id
- device_registrations: push targets for balance sync
- audit_entries: append-only refund and compensation records
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

STATUS_CHECK = "status IN ('PENDING', 'COMPLETED', 'REFUNDED', 'FAILED')"


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )


def upgrade() -> None:
    # accounts
    op.create_table(
        "accounts",
        sa.Column("uid", sa.String(length=255), nullable=False),
        sa.Column("credits", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("tier", sa.String(length=50), nullable=False, server_default="free"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("uid"),
    )
    op.create_index("idx_accounts_updated_at", "accounts", ["updated_at"])

    # purchases
    op.create_table(
        "purchases",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=False),
        sa.Column("purchase_token", sa.String(length=4096), nullable=False),
        sa.Column("uid", sa.String(length=255), nullable=False),
        sa.Column("sku_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("bonus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="COMPLETED"),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("ack_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_ack_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("refunded_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", name="uq_purchases_order_id"),
        sa.UniqueConstraint("purchase_token", name="uq_purchases_purchase_token"),
        sa.CheckConstraint("amount > 0", name="ck_purchases_amount_positive"),
        sa.CheckConstraint("bonus >= 0", name="ck_purchases_bonus_non_negative"),
        sa.CheckConstraint(STATUS_CHECK, name="ck_purchases_status"),
    )
    op.create_index("idx_purchases_uid", "purchases", ["uid"])
    op.create_index("idx_purchases_ack_pending", "purchases", ["acknowledged", "ack_attempts"])

    # operation_logs
    op.create_table(
        "operation_logs",
        sa.Column("req_id", sa.String(length=128), nullable=False),
        sa.Column("uid", sa.String(length=255), nullable=False),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("result_ref", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("req_id"),
        sa.CheckConstraint("cost > 0", name="ck_operation_logs_cost_positive"),
        sa.CheckConstraint(STATUS_CHECK, name="ck_operation_logs_status"),
    )
    op.create_index(
        "idx_operation_logs_status_created", "operation_logs", ["status", "created_at"]
    )
    op.create_index("idx_operation_logs_uid", "operation_logs", ["uid"])

    # device_registrations
    op.create_table(
        "device_registrations",
        sa.Column("device_token", sa.String(length=4096), nullable=False),
        sa.Column("uid", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=20), nullable=False),
        sa.Column("app_version", sa.String(length=50), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default="true"),
        _timestamp("last_seen_at"),
        _timestamp("deactivated_at", nullable=True),
        sa.PrimaryKeyConstraint("device_token"),
        sa.CheckConstraint(
            "platform IN ('android', 'ios', 'web')", name="ck_device_registrations_platform"
        ),
    )
    op.create_index(
        "idx_device_registrations_uid_active", "device_registrations", ["uid", "active"]
    )

    # audit_entries
    op.create_table(
        "audit_entries",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(length=50), nullable=False),
        sa.Column("uid", sa.String(length=255), nullable=False),
        sa.Column("details", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_entries_uid", "audit_entries", ["uid"])
    op.create_index("idx_audit_entries_event_type", "audit_entries", ["event_type"])
    op.create_index(
        "idx_audit_entries_created_at", "audit_entries", ["created_at"], postgresql_using="brin"
    )


def downgrade() -> None:
    op.drop_index("idx_audit_entries_created_at", table_name="audit_entries")
    op.drop_index("idx_audit_entries_event_type", table_name="audit_entries")
    op.drop_index("idx_audit_entries_uid", table_name="audit_entries")
    op.drop_table("audit_entries")

    op.drop_index("idx_device_registrations_uid_active", table_name="device_registrations")
    op.drop_table("device_registrations")

    op.drop_index("idx_operation_logs_uid", table_name="operation_logs")
    op.drop_index("idx_operation_logs_status_created", table_name="operation_logs")
    op.drop_table("operation_logs")

    op.drop_index("idx_purchases_ack_pending", table_name="purchases")
    op.drop_index("idx_purchases_uid", table_name="purchases")
    op.drop_table("purchases")

    op.drop_index("idx_accounts_updated_at", table_name="accounts")
    op.drop_table("accounts")
