from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import customer_service, ledger_store, lot_allocator
from rewards.services.order_events import trailing_digits

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SpendResult:
    ok: bool
    message: str
    changed: bool
    requested: int
    spent: int
    balance_before: int
    balance_after: int
    entries: list[LedgerEntry] = field(default_factory=list)


@dataclass(slots=True)
class SpendAuthorization:
    ok: bool
    status: str
    message: str
    approved_amount: int = 0
    current_balance: int = 0
    code: str | None = None
    errors: dict[str, str] = field(default_factory=dict)


def _positive_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def generate_spend_code(prefix: str) -> str:
    return f"{prefix}{secrets.token_hex(4).upper()}"


async def authorize_spend(
    session: AsyncSession,
    *,
    customer_ref: str,
    requested_amount: object,
    cart_total_cents: object,
    code_prefix: str,
    now: datetime | None = None,
) -> SpendAuthorization:
    """Read-only check of a spend a storefront wants to apply to a cart."""
    errors: dict[str, str] = {}
    requested = _positive_int(requested_amount)
    cart_total = _positive_int(cart_total_cents)
    if requested is None:
        errors["requested_amount"] = "Must be a positive integer"
    if cart_total is None:
        errors["cart_total_cents"] = "Must be a positive integer"
    if not str(customer_ref or "").strip():
        errors["customer_ref"] = "Customer is required"
    if errors:
        return SpendAuthorization(ok=False, status="invalid", message="Invalid request", errors=errors)

    customer = await customer_service.resolve_customer_ref(session, str(customer_ref))
    if customer is None:
        return SpendAuthorization(ok=False, status="not_found", message="Customer not found")

    balance = int(customer.current_balance or 0)
    if requested > balance:
        return SpendAuthorization(
            ok=False,
            status="insufficient",
            message=f"Not enough rewards ({balance} < {requested})",
            current_balance=balance,
        )

    lots = await ledger_store.list_eligible_lots(
        session,
        customer_id=customer.id,
        as_of=now or datetime.now(UTC),
        for_update=False,
    )
    approved = min(requested, cart_total, lot_allocator.total_available(lots))
    if approved <= 0:
        return SpendAuthorization(
            ok=False,
            status="insufficient",
            message="No spendable rewards available",
            current_balance=balance,
        )

    code = generate_spend_code(code_prefix)
    logger.info(
        "Authorized spend %s of requested %s for customer #%s (code=%s)",
        approved,
        requested,
        customer.id,
        code,
    )
    return SpendAuthorization(
        ok=True,
        status="approved",
        message="Approved",
        approved_amount=approved,
        current_balance=balance,
        code=code,
    )


async def commit_order_spend(
    session: AsyncSession,
    *,
    customer: Customer,
    order_id: str,
    requested_amount: int,
    spend_code: str | None = None,
    order_total_cents: int | None = None,
    now: datetime | None = None,
) -> SpendResult:
    """Deplete lots for a spend confirmed by a paid order. ``customer`` must be locked.

    ``order_total_cents`` is kept on the SPEND entries so a later refund can size the
    returned share without the platform.
    """
    requested = int(requested_amount)
    balance_before = int(customer.current_balance or 0)
    if requested <= 0:
        return SpendResult(
            ok=False,
            message="Spend amount must be positive",
            changed=False,
            requested=requested,
            spent=0,
            balance_before=balance_before,
            balance_after=balance_before,
        )

    existing = await ledger_store.find_entry(
        session,
        entry_type=LedgerEntryType.SPEND,
        customer_id=customer.id,
        order_id=order_id,
    )
    if existing is not None:
        logger.info("Spend already recorded for order %s (entry #%s)", order_id, existing.id)
        return SpendResult(
            ok=True,
            message="Spend already recorded",
            changed=False,
            requested=requested,
            spent=0,
            balance_before=balance_before,
            balance_after=balance_before,
        )

    current_time = now or datetime.now(UTC)
    lots = await ledger_store.list_eligible_lots(session, customer_id=customer.id, as_of=current_time)
    amount = min(requested, balance_before, lot_allocator.total_available(lots))
    if amount < requested:
        logger.warning(
            "Clamping spend for order %s from %s to %s (balance=%s)",
            order_id,
            requested,
            amount,
            balance_before,
        )
    if amount <= 0:
        return SpendResult(
            ok=True,
            message="Nothing to spend",
            changed=False,
            requested=requested,
            spent=0,
            balance_before=balance_before,
            balance_after=balance_before,
        )

    allocation = await lot_allocator.deplete_lots(
        session,
        customer=customer,
        lots=lots,
        amount=amount,
        entry_type=LedgerEntryType.SPEND,
        reason_code=LedgerReasonCode.ORDER_SPEND,
        now=current_time,
        notes=f"Spent on order {trailing_digits(order_id) or order_id}",
        order_id=order_id,
        related_external_id=spend_code,
        order_total_cents=order_total_cents,
    )
    lot_allocator.require_complete(allocation)
    logger.info(
        "Spent %s on order %s across %s lot(s) (customer #%s)",
        allocation.depleted,
        order_id,
        len(allocation.entries),
        customer.id,
    )
    return SpendResult(
        ok=True,
        message="Spend recorded",
        changed=True,
        requested=requested,
        spent=allocation.depleted,
        balance_before=balance_before,
        balance_after=int(customer.current_balance or 0),
        entries=allocation.entries,
    )
