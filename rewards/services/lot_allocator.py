"""FIFO lot depletion shared by spend, manual decrease, refund and expiration flows.

Lots are consumed in the order the store returns them, ``(created_at, id)`` ascending.
Each non-zero take decrements the lot and writes one depletion entry pointing back at it.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import balance_projection, ledger_store


class LotAllocationError(RuntimeError):
    def __init__(self, *, requested: int, depleted: int) -> None:
        super().__init__(f"Insufficient available balance: requested {requested}, depleted {depleted}")
        self.requested = requested
        self.depleted = depleted


@dataclass(slots=True)
class AllocationResult:
    requested: int
    depleted: int = 0
    entries: list[LedgerEntry] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.depleted == self.requested


def total_available(lots: Sequence[LedgerEntry]) -> int:
    return sum(max(int(lot.remaining_amount or 0), 0) for lot in lots)


def plan_depletion(lots: Sequence[LedgerEntry], amount: int) -> list[tuple[LedgerEntry, int]]:
    plan: list[tuple[LedgerEntry, int]] = []
    left = max(int(amount), 0)
    for lot in lots:
        if left <= 0:
            break
        take = min(max(int(lot.remaining_amount or 0), 0), left)
        if take <= 0:
            continue
        plan.append((lot, take))
        left -= take
    return plan


async def deplete_lots(
    session: AsyncSession,
    *,
    customer: Customer,
    lots: Sequence[LedgerEntry],
    amount: int,
    entry_type: LedgerEntryType,
    reason_code: LedgerReasonCode,
    now: datetime,
    notes: str = "",
    order_id: str | None = None,
    related_external_id: str | None = None,
    adjustment_group_id: uuid.UUID | None = None,
    order_total_cents: int | None = None,
) -> AllocationResult:
    if entry_type == LedgerEntryType.EARN:
        raise ValueError("EARN entries cannot deplete lots")

    result = AllocationResult(requested=max(int(amount), 0))
    for lot, take in plan_depletion(lots, result.requested):
        await ledger_store.decrement_lot_remaining(session, lot=lot, amount=take)
        entry = LedgerEntry(
            customer_id=customer.id,
            type=entry_type,
            reason_code=reason_code,
            amount_delta=-take,
            remaining_amount=None,
            source_lot_id=lot.id,
            order_id=order_id,
            related_external_id=related_external_id,
            adjustment_group_id=adjustment_group_id,
            order_total_cents=order_total_cents,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        await ledger_store.append_entry(session, entry)
        balance_projection.apply_entry(customer, entry)
        result.depleted += take
        result.entries.append(entry)
    return result


def require_complete(result: AllocationResult) -> AllocationResult:
    if not result.is_complete:
        raise LotAllocationError(requested=result.requested, depleted=result.depleted)
    return result
