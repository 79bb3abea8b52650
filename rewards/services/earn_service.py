from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import balance_projection, customer_service, ledger_store
from rewards.services.money import compute_earned_points, format_cents
from rewards.services.order_events import OrderPaidEvent, trailing_digits
from rewards.services.runtime_settings_service import RewardsProgramConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EarnResult:
    changed: bool
    status: str
    earned: int
    customer: Customer | None
    entry: LedgerEntry | None


def earn_lot_expiration(paid_at: datetime, config: RewardsProgramConfig) -> datetime | None:
    days = config.expiration_days_or_none()
    if days is None:
        return None
    return paid_at + timedelta(days=days)


async def record_order_earn(
    session: AsyncSession,
    *,
    event: OrderPaidEvent,
    config: RewardsProgramConfig,
    customer: Customer | None = None,
    now: datetime | None = None,
) -> EarnResult:
    """Append the EARN lot for a paid order.

    Duplicate deliveries, disabled programs and zero-value orders are no-ops. When
    ``customer`` is given it must already be locked by the caller.
    """
    if not config.rewards_enabled:
        logger.info("Rewards disabled, skipping earn for order %s", event.order_id)
        return EarnResult(changed=False, status="disabled", earned=0, customer=customer, entry=None)

    existing = await ledger_store.find_entry(
        session,
        entry_type=LedgerEntryType.EARN,
        order_id=event.order_id,
    )
    if existing is not None:
        logger.info("Earn already recorded for order %s (entry #%s)", event.order_id, existing.id)
        owner = customer
        if owner is None or owner.id != existing.customer_id:
            owner = await ledger_store.get_customer(session, customer_id=existing.customer_id)
        return EarnResult(changed=False, status="duplicate", earned=0, customer=owner, entry=existing)

    earned = compute_earned_points(event.total_cents, config.points_per_dollar)
    if earned <= 0:
        logger.info(
            "Order %s earns nothing (total=%s rate=%s)",
            event.order_id,
            format_cents(event.total_cents),
            config.points_per_dollar,
        )
        return EarnResult(changed=False, status="zero", earned=0, customer=customer, entry=None)

    if customer is None:
        customer = await customer_service.resolve_order_customer(
            session,
            email=event.email,
            external_ref=event.customer_ref,
            name=event.customer_name,
        )

    # re-check under the customer lock
    existing = await ledger_store.find_entry(
        session,
        entry_type=LedgerEntryType.EARN,
        customer_id=customer.id,
        order_id=event.order_id,
    )
    if existing is not None:
        return EarnResult(changed=False, status="duplicate", earned=0, customer=customer, entry=existing)

    current_time = now or datetime.now(UTC)
    order_number = trailing_digits(event.order_id) or event.order_id
    entry = LedgerEntry(
        customer_id=customer.id,
        type=LedgerEntryType.EARN,
        reason_code=LedgerReasonCode.ORDER_PAID,
        amount_delta=earned,
        remaining_amount=earned,
        order_id=event.order_id,
        earn_rate=config.points_per_dollar,
        order_total_cents=event.total_cents,
        expires_at=earn_lot_expiration(event.paid_at, config),
        notes=f"Order {order_number} paid ({format_cents(event.total_cents)})",
        created_at=current_time,
        updated_at=current_time,
    )
    await ledger_store.append_entry(session, entry)
    balance_projection.apply_entry(customer, entry)
    logger.info(
        "Earned %s for order %s (customer #%s, balance=%s)",
        earned,
        event.order_id,
        customer.id,
        customer.current_balance,
    )
    return EarnResult(changed=True, status="earned", earned=earned, customer=customer, entry=entry)


async def get_order_earned_amount(session: AsyncSession, *, order_id: str) -> int:
    entry = await ledger_store.find_entry(session, entry_type=LedgerEntryType.EARN, order_id=order_id)
    if entry is None:
        return 0
    return int(entry.amount_delta)
