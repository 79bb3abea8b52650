"""Ledger store accessors.

Every function runs inside the caller's transaction; none of them commits or opens one.
Services call these through the module (``ledger_store.append_entry(...)``) so that the
whole persistence seam can be swapped in tests.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from rewards.db.enums import LOT_ENTRY_TYPES, LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry


class LotOverdrawError(RuntimeError):
    def __init__(self, lot_id: int, requested: int) -> None:
        super().__init__(f"Lot #{lot_id} has less than {requested} remaining")
        self.lot_id = lot_id
        self.requested = requested


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    normalized = email.strip().lower()
    return normalized or None


async def get_customer(
    session: AsyncSession,
    *,
    customer_id: int,
    for_update: bool = False,
) -> Customer | None:
    stmt = select(Customer).where(Customer.id == customer_id)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def find_customer_by_email(
    session: AsyncSession,
    *,
    email: str,
    for_update: bool = False,
) -> Customer | None:
    normalized = normalize_email(email)
    if normalized is None:
        return None
    stmt = select(Customer).where(Customer.email == normalized)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def find_customer_by_external_ref(
    session: AsyncSession,
    *,
    external_ref: str,
    for_update: bool = False,
) -> Customer | None:
    stmt = select(Customer).where(Customer.external_ref == external_ref)
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


async def create_customer(
    session: AsyncSession,
    *,
    email: str,
    external_ref: str | None = None,
    name: str | None = None,
) -> Customer:
    normalized = normalize_email(email)
    if normalized is None:
        raise ValueError("Customer email is required")

    try:
        async with session.begin_nested():
            customer = Customer(
                email=normalized,
                external_ref=external_ref,
                name=name,
                current_balance=0,
                lifetime_balance=0,
            )
            session.add(customer)
            await session.flush()
    except IntegrityError:
        existing = await find_customer_by_email(session, email=normalized, for_update=True)
        if existing is None:
            raise
        return existing
    return customer


async def append_entry(session: AsyncSession, entry: LedgerEntry) -> LedgerEntry:
    session.add(entry)
    await session.flush()
    return entry


async def decrement_lot_remaining(session: AsyncSession, *, lot: LedgerEntry, amount: int) -> int:
    if amount <= 0:
        raise ValueError("Decrement amount must be positive")

    new_remaining = await session.scalar(
        update(LedgerEntry)
        .where(
            LedgerEntry.id == lot.id,
            LedgerEntry.remaining_amount.is_not(None),
            LedgerEntry.remaining_amount >= amount,
        )
        .values(
            remaining_amount=LedgerEntry.remaining_amount - amount,
            updated_at=func.now(),
        )
        .returning(LedgerEntry.remaining_amount)
        .execution_options(synchronize_session=False)
    )
    if new_remaining is None:
        raise LotOverdrawError(lot.id, amount)

    set_committed_value(lot, "remaining_amount", int(new_remaining))
    return int(new_remaining)


async def find_entry(
    session: AsyncSession,
    *,
    entry_type: LedgerEntryType,
    customer_id: int | None = None,
    order_id: str | None = None,
    reason_codes: Sequence[LedgerReasonCode] | None = None,
    related_external_id: str | None = None,
) -> LedgerEntry | None:
    stmt = select(LedgerEntry).where(LedgerEntry.type == entry_type)
    if customer_id is not None:
        stmt = stmt.where(LedgerEntry.customer_id == customer_id)
    if order_id is not None:
        stmt = stmt.where(LedgerEntry.order_id == order_id)
    if reason_codes:
        stmt = stmt.where(LedgerEntry.reason_code.in_(tuple(reason_codes)))
    if related_external_id is not None:
        stmt = stmt.where(LedgerEntry.related_external_id == related_external_id)
    return await session.scalar(stmt.order_by(LedgerEntry.id.asc()).limit(1))


async def sum_entry_amounts(
    session: AsyncSession,
    *,
    entry_type: LedgerEntryType,
    order_id: str,
    customer_id: int | None = None,
    reason_code: LedgerReasonCode | None = None,
) -> int:
    stmt = select(func.coalesce(func.sum(LedgerEntry.amount_delta), 0)).where(
        LedgerEntry.type == entry_type,
        LedgerEntry.order_id == order_id,
    )
    if customer_id is not None:
        stmt = stmt.where(LedgerEntry.customer_id == customer_id)
    if reason_code is not None:
        stmt = stmt.where(LedgerEntry.reason_code == reason_code)
    total = await session.scalar(stmt)
    return int(total or 0)


async def list_eligible_lots(
    session: AsyncSession,
    *,
    customer_id: int,
    as_of: datetime,
    lot_ids: Sequence[int] | None = None,
    for_update: bool = True,
) -> list[LedgerEntry]:
    stmt = select(LedgerEntry).where(
        LedgerEntry.customer_id == customer_id,
        LedgerEntry.type.in_(LOT_ENTRY_TYPES),
        LedgerEntry.remaining_amount > 0,
        or_(LedgerEntry.expires_at.is_(None), LedgerEntry.expires_at > as_of),
    )
    if lot_ids is not None:
        stmt = stmt.where(LedgerEntry.id.in_(tuple(lot_ids)))
    stmt = stmt.order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
    if for_update:
        stmt = stmt.with_for_update()
    rows = await session.execute(stmt)
    return list(rows.scalars().all())


async def get_lot(session: AsyncSession, *, lot_id: int, for_update: bool = True) -> LedgerEntry | None:
    stmt = select(LedgerEntry).where(
        LedgerEntry.id == lot_id,
        LedgerEntry.remaining_amount.is_not(None),
    )
    if for_update:
        stmt = stmt.with_for_update()
    return await session.scalar(stmt)


def _expired_lots_filter(as_of: datetime):
    return (
        LedgerEntry.type.in_(LOT_ENTRY_TYPES),
        LedgerEntry.remaining_amount > 0,
        LedgerEntry.expires_at.is_not(None),
        LedgerEntry.expires_at <= as_of,
    )


async def list_expired_lot_customer_ids(
    session: AsyncSession,
    *,
    as_of: datetime,
    limit: int = 500,
) -> list[int]:
    rows = await session.execute(
        select(LedgerEntry.customer_id)
        .where(*_expired_lots_filter(as_of))
        .group_by(LedgerEntry.customer_id)
        .order_by(LedgerEntry.customer_id.asc())
        .limit(max(1, limit))
    )
    return [int(value) for value in rows.scalars().all()]


async def list_expired_lots(
    session: AsyncSession,
    *,
    as_of: datetime,
    customer_id: int,
    for_update: bool = True,
) -> list[LedgerEntry]:
    stmt = (
        select(LedgerEntry)
        .where(LedgerEntry.customer_id == customer_id, *_expired_lots_filter(as_of))
        .order_by(LedgerEntry.expires_at.asc(), LedgerEntry.id.asc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    rows = await session.execute(stmt)
    return list(rows.scalars().all())


async def list_customer_entries(
    session: AsyncSession,
    *,
    customer_id: int,
    limit: int = 50,
    offset: int = 0,
) -> list[LedgerEntry]:
    rows = await session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.customer_id == customer_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 1))
    )
    return list(rows.scalars().all())


async def count_customer_entries(session: AsyncSession, *, customer_id: int) -> int:
    count = await session.scalar(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.customer_id == customer_id)
    )
    return int(count or 0)


async def sum_customer_deltas(session: AsyncSession, *, customer_id: int) -> int:
    total = await session.scalar(
        select(func.coalesce(func.sum(LedgerEntry.amount_delta), 0)).where(
            LedgerEntry.customer_id == customer_id
        )
    )
    return int(total or 0)


async def sum_lot_depletions(session: AsyncSession, *, customer_id: int) -> dict[int, int]:
    rows = await session.execute(
        select(LedgerEntry.source_lot_id, func.coalesce(func.sum(-LedgerEntry.amount_delta), 0))
        .where(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.source_lot_id.is_not(None),
            LedgerEntry.amount_delta < 0,
        )
        .group_by(LedgerEntry.source_lot_id)
    )
    return {int(lot_id): int(total or 0) for lot_id, total in rows.all()}


async def list_customer_lots(session: AsyncSession, *, customer_id: int) -> list[LedgerEntry]:
    rows = await session.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.remaining_amount.is_not(None),
        )
        .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
    )
    return list(rows.scalars().all())


def _customer_search_filter(query: str):
    normalized = query.strip()
    if not normalized:
        return None
    pattern = f"%{normalized}%"
    conditions = [Customer.email.ilike(pattern), Customer.name.ilike(pattern)]
    if normalized.lstrip("-").isdigit():
        numeric = int(normalized)
        conditions.append(Customer.current_balance == numeric)
        conditions.append(Customer.lifetime_balance == numeric)
    return or_(*conditions)


async def search_customers(
    session: AsyncSession,
    *,
    query: str = "",
    limit: int = 50,
    offset: int = 0,
) -> list[Customer]:
    stmt = select(Customer)
    condition = _customer_search_filter(query)
    if condition is not None:
        stmt = stmt.where(condition)
    rows = await session.execute(
        stmt.order_by(Customer.created_at.desc(), Customer.id.desc())
        .offset(max(offset, 0))
        .limit(max(limit, 1))
    )
    return list(rows.scalars().all())


async def count_customers(session: AsyncSession, *, query: str = "") -> int:
    stmt = select(func.count(Customer.id))
    condition = _customer_search_filter(query)
    if condition is not None:
        stmt = stmt.where(condition)
    count = await session.scalar(stmt)
    return int(count or 0)


async def list_customer_ids(session: AsyncSession) -> list[int]:
    rows = await session.execute(select(Customer.id).order_by(Customer.id.asc()))
    return [int(value) for value in rows.scalars().all()]
