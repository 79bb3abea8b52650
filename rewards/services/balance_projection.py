from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LOT_ENTRY_TYPES, LedgerEntryType
from rewards.db.models import Customer, LedgerEntry
from rewards.services import ledger_store

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BalanceSnapshot:
    customer_id: int
    external_ref: str | None
    current_balance: int
    lifetime_balance: int


def snapshot(customer: Customer) -> BalanceSnapshot:
    return BalanceSnapshot(
        customer_id=customer.id,
        external_ref=customer.external_ref,
        current_balance=int(customer.current_balance or 0),
        lifetime_balance=int(customer.lifetime_balance or 0),
    )


def counts_toward_lifetime(entry_type: LedgerEntryType, amount_delta: int) -> bool:
    return amount_delta > 0 and entry_type in LOT_ENTRY_TYPES


def apply_entry(customer: Customer, entry: LedgerEntry) -> int:
    """Move the cached balances by one written entry and return the applied delta.

    A decrement larger than the cached balance means the cache drifted from the ledger;
    it is clamped at zero and logged.
    """
    current = int(customer.current_balance or 0)
    delta = int(entry.amount_delta)
    next_balance = current + delta
    if next_balance < 0:
        logger.warning(
            "Balance drift for customer #%s: entry #%s delta=%s exceeds cached balance=%s, clamping to 0",
            customer.id,
            entry.id,
            delta,
            current,
        )
        next_balance = 0
    customer.current_balance = next_balance

    if counts_toward_lifetime(LedgerEntryType(entry.type), delta):
        customer.lifetime_balance = int(customer.lifetime_balance or 0) + delta
    return next_balance - current


async def check_drift(session: AsyncSession, customer: Customer) -> int:
    """Return ``cached - ledger``; non-zero results are logged."""
    ledger_total = await ledger_store.sum_customer_deltas(session, customer_id=customer.id)
    drift = int(customer.current_balance or 0) - ledger_total
    if drift:
        logger.warning(
            "Customer #%s cached balance %s differs from ledger total %s (drift %s)",
            customer.id,
            customer.current_balance,
            ledger_total,
            drift,
        )
    return drift
