from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.models import Customer
from rewards.services import ledger_store
from rewards.services.order_events import customer_gid

logger = logging.getLogger(__name__)

LOCAL_REF_PREFIX = "local:"


@dataclass(slots=True)
class CustomerPage:
    items: list[Customer]
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


async def resolve_order_customer(
    session: AsyncSession,
    *,
    email: str,
    external_ref: str | None,
    name: str | None,
) -> Customer:
    """Find the customer for an order by email (locked), creating or backfilling it."""
    customer = await ledger_store.find_customer_by_email(session, email=email, for_update=True)
    if customer is None:
        logger.info(
            "Creating customer (has_external_ref=%s, has_name=%s)",
            bool(external_ref),
            bool(name),
        )
        return await ledger_store.create_customer(
            session,
            email=email,
            external_ref=external_ref,
            name=name,
        )

    if not customer.external_ref and external_ref:
        logger.info("Backfilling external ref for customer #%s", customer.id)
        customer.external_ref = external_ref
    if name and name != customer.name:
        logger.info("Updating name for customer #%s", customer.id)
        customer.name = name
    return customer


async def resolve_customer_ref(
    session: AsyncSession,
    customer_ref: str,
    *,
    for_update: bool = False,
) -> Customer | None:
    """Resolve ``local:<id>``, an email or a platform customer reference.

    Bare digits are the platform's numeric customer id, never a local primary key.
    """
    raw = customer_ref.strip()
    if not raw:
        return None
    if raw.lower().startswith(LOCAL_REF_PREFIX):
        local_id = raw[len(LOCAL_REF_PREFIX) :].strip()
        if not local_id.isdigit():
            return None
        return await ledger_store.get_customer(session, customer_id=int(local_id), for_update=for_update)
    if "@" in raw:
        return await ledger_store.find_customer_by_email(session, email=raw, for_update=for_update)

    external_ref = customer_gid(raw) or raw
    return await ledger_store.find_customer_by_external_ref(
        session,
        external_ref=external_ref,
        for_update=for_update,
    )


async def list_customers_page(
    session: AsyncSession,
    *,
    query: str = "",
    page: int = 1,
    page_size: int = 50,
) -> CustomerPage:
    safe_page = max(int(page), 1)
    safe_size = max(1, min(int(page_size), 200))
    total = await ledger_store.count_customers(session, query=query)
    items = await ledger_store.search_customers(
        session,
        query=query,
        limit=safe_size,
        offset=(safe_page - 1) * safe_size,
    )
    return CustomerPage(items=items, total=total, page=safe_page, page_size=safe_size)
