from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rewards.db.base import Base, TimestampMixin
from rewards.db.enums import LedgerEntryType, LedgerReasonCode


class Customer(Base, TimestampMixin):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("email", name="uq_customers_email"),
        UniqueConstraint("external_ref", name="uq_customers_external_ref"),
        CheckConstraint("current_balance >= 0", name="current_balance_non_negative"),
        CheckConstraint("lifetime_balance >= 0", name="lifetime_balance_non_negative"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_balance: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default=text("0")
    )
    lifetime_balance: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default=text("0")
    )


class LedgerEntry(Base, TimestampMixin):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount_delta <> 0", name="amount_delta_nonzero"),
        CheckConstraint(
            "remaining_amount IS NULL OR "
            "(amount_delta > 0 AND remaining_amount >= 0 AND remaining_amount <= amount_delta)",
            name="remaining_amount_bounds",
        ),
        Index("ix_ledger_entries_customer_created_at", "customer_id", "created_at", "id"),
        Index("ix_ledger_entries_order_type", "order_id", "type"),
        Index("ix_ledger_entries_source_lot_id", "source_lot_id"),
        Index(
            "uq_ledger_entries_earn_order",
            "order_id",
            unique=True,
            postgresql_where=text("type = 'EARN' AND order_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[LedgerEntryType] = mapped_column(
        Enum(LedgerEntryType, name="ledger_entry_type"),
        nullable=False,
    )
    reason_code: Mapped[LedgerReasonCode] = mapped_column(
        Enum(LedgerReasonCode, name="ledger_reason_code"),
        nullable=False,
    )
    amount_delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    source_lot_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="RESTRICT"),
        nullable=True,
    )
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    related_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    adjustment_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    earn_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_total_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default=text("''"))

    @property
    def is_lot(self) -> bool:
        return self.remaining_amount is not None


class RuntimeSettingOverride(Base):
    __tablename__ = "runtime_setting_overrides"
    __table_args__ = (
        UniqueConstraint("key", name="uq_runtime_setting_overrides_key"),
        CheckConstraint("char_length(key) > 0", name="key_not_blank"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("TIMEZONE('utc', NOW())"),
    )
