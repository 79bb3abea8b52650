from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import ledger_store


@dataclass(slots=True)
class HistoryEvent:
    key: str
    type: LedgerEntryType
    reason_code: LedgerReasonCode
    amount_delta: int
    order_id: str | None
    notes: str
    created_at: datetime
    adjustment_group_id: uuid.UUID | None = None
    entry_ids: list[int] = field(default_factory=list)
    source_lot_ids: list[int | None] = field(default_factory=list)


@dataclass(slots=True)
class CustomerHistory:
    customer: Customer
    events: list[HistoryEvent]
    total_entries: int
    limit: int
    offset: int

    @property
    def has_next(self) -> bool:
        return self.offset + self.limit < self.total_entries


def history_group_key(entry: LedgerEntry) -> str:
    entry_type = LedgerEntryType(entry.type)
    if entry_type == LedgerEntryType.SPEND and entry.order_id:
        return f"spend:{entry.order_id}"
    if entry_type == LedgerEntryType.ADJUST and entry.adjustment_group_id is not None:
        return f"adjust:{entry.adjustment_group_id}"
    return f"entry:{entry.id}"


def group_history_entries(entries: Sequence[LedgerEntry]) -> list[HistoryEvent]:
    """Collapse depletion entries of one spend or one manual decrease into a single event.

    Input order is kept; an event takes the position and timestamp of its first entry.
    """
    events: dict[str, HistoryEvent] = {}
    for entry in entries:
        key = history_group_key(entry)
        event = events.get(key)
        if event is None:
            event = HistoryEvent(
                key=key,
                type=LedgerEntryType(entry.type),
                reason_code=LedgerReasonCode(entry.reason_code),
                amount_delta=0,
                order_id=entry.order_id,
                notes=entry.notes or "",
                created_at=entry.created_at,
                adjustment_group_id=entry.adjustment_group_id,
            )
            events[key] = event
        event.amount_delta += int(entry.amount_delta)
        event.entry_ids.append(entry.id)
        event.source_lot_ids.append(entry.source_lot_id)
    return list(events.values())


async def get_customer_history(
    session: AsyncSession,
    *,
    customer_id: int,
    limit: int = 50,
    offset: int = 0,
    max_limit: int = 50,
) -> CustomerHistory | None:
    customer = await ledger_store.get_customer(session, customer_id=customer_id)
    if customer is None:
        return None

    safe_limit = max(1, min(int(limit), max_limit))
    safe_offset = max(int(offset), 0)
    total = await ledger_store.count_customer_entries(session, customer_id=customer_id)
    entries = await ledger_store.list_customer_entries(
        session,
        customer_id=customer_id,
        limit=safe_limit,
        offset=safe_offset,
    )
    return CustomerHistory(
        customer=customer,
        events=group_history_entries(entries),
        total_entries=total,
        limit=safe_limit,
        offset=safe_offset,
    )
