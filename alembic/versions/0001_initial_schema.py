"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    bind = op.get_bind()

    ledger_entry_type = postgresql.ENUM(
        "EARN", "SPEND", "ADJUST", "EXPIRE", name="ledger_entry_type", create_type=False
    )
    ledger_reason_code = postgresql.ENUM(
        "ORDER_PAID",
        "ORDER_SPEND",
        "MANUAL_INCREASE",
        "MANUAL_DECREASE",
        "REFUND_SPEND_REVERSAL",
        "REFUND_EARN_REVERSAL",
        "LOT_EXPIRED",
        name="ledger_reason_code",
        create_type=False,
    )

    ledger_entry_type.create(bind, checkfirst=True)
    ledger_reason_code.create(bind, checkfirst=True)

    op.create_table(
        "customers",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("external_ref", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("current_balance", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_balance", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("TIMEZONE('utc', NOW())")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("TIMEZONE('utc', NOW())")),
        sa.UniqueConstraint("email", name="uq_customers_email"),
        sa.UniqueConstraint("external_ref", name="uq_customers_external_ref"),
        sa.CheckConstraint("current_balance >= 0", name="ck_customers_current_balance_non_negative"),
        sa.CheckConstraint("lifetime_balance >= 0", name="ck_customers_lifetime_balance_non_negative"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("customer_id", sa.BigInteger(), sa.ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", ledger_entry_type, nullable=False),
        sa.Column("reason_code", ledger_reason_code, nullable=False),
        sa.Column("amount_delta", sa.BigInteger(), nullable=False),
        sa.Column("remaining_amount", sa.BigInteger(), nullable=True),
        sa.Column(
            "source_lot_id",
            sa.BigInteger(),
            sa.ForeignKey("ledger_entries.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("related_external_id", sa.String(length=255), nullable=True),
        sa.Column("adjustment_group_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("earn_rate", sa.Integer(), nullable=True),
        sa.Column("order_total_cents", sa.BigInteger(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("TIMEZONE('utc', NOW())")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("TIMEZONE('utc', NOW())")),
        sa.CheckConstraint("amount_delta <> 0", name="ck_ledger_entries_amount_delta_nonzero"),
        sa.CheckConstraint(
            "remaining_amount IS NULL OR "
            "(amount_delta > 0 AND remaining_amount >= 0 AND remaining_amount <= amount_delta)",
            name="ck_ledger_entries_remaining_amount_bounds",
        ),
    )

    op.create_index(
        "ix_ledger_entries_customer_created_at",
        "ledger_entries",
        ["customer_id", "created_at", "id"],
        unique=False,
    )
    op.create_index("ix_ledger_entries_order_type", "ledger_entries", ["order_id", "type"], unique=False)
    op.create_index("ix_ledger_entries_source_lot_id", "ledger_entries", ["source_lot_id"], unique=False)
    op.create_index(
        "uq_ledger_entries_earn_order",
        "ledger_entries",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("type = 'EARN' AND order_id IS NOT NULL"),
    )

    op.create_table(
        "runtime_setting_overrides",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_by", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("TIMEZONE('utc', NOW())")),
        sa.UniqueConstraint("key", name="uq_runtime_setting_overrides_key"),
        sa.CheckConstraint("char_length(key) > 0", name="ck_runtime_setting_overrides_key_not_blank"),
    )


def downgrade() -> None:
    bind = op.get_bind()

    op.drop_table("runtime_setting_overrides")
    op.drop_index("uq_ledger_entries_earn_order", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_source_lot_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_order_type", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_customer_created_at", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("customers")

    ledger_reason_code = postgresql.ENUM(name="ledger_reason_code")
    ledger_entry_type = postgresql.ENUM(name="ledger_entry_type")

    ledger_reason_code.drop(bind, checkfirst=True)
    ledger_entry_type.drop(bind, checkfirst=True)
