from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer
from rewards.services import ledger_store, lot_allocator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExpirationResult:
    lots_expired: int = 0
    amount_expired: int = 0
    customers: list[Customer] = field(default_factory=list)


async def expire_lots(
    session: AsyncSession,
    *,
    as_of: datetime | None = None,
    customer_limit: int = 500,
) -> ExpirationResult:
    """Write one EXPIRE depletion for every past-due lot that still holds value."""
    current_time = as_of or datetime.now(UTC)
    result = ExpirationResult()
    customer_ids = await ledger_store.list_expired_lot_customer_ids(
        session,
        as_of=current_time,
        limit=customer_limit,
    )
    for customer_id in customer_ids:
        customer = await ledger_store.get_customer(session, customer_id=customer_id, for_update=True)
        if customer is None:
            continue
        lots = await ledger_store.list_expired_lots(session, as_of=current_time, customer_id=customer_id)
        touched = False
        for lot in lots:
            amount = int(lot.remaining_amount or 0)
            if amount <= 0:
                continue
            allocation = await lot_allocator.deplete_lots(
                session,
                customer=customer,
                lots=[lot],
                amount=amount,
                entry_type=LedgerEntryType.EXPIRE,
                reason_code=LedgerReasonCode.LOT_EXPIRED,
                now=current_time,
                notes=f"Lot #{lot.id} expired",
                order_id=lot.order_id,
            )
            lot_allocator.require_complete(allocation)
            result.lots_expired += 1
            result.amount_expired += allocation.depleted
            touched = True
        if touched:
            result.customers.append(customer)

    if result.lots_expired:
        logger.info(
            "Expired %s lot(s) worth %s across %s customer(s)",
            result.lots_expired,
            result.amount_expired,
            len(result.customers),
        )
    return result
