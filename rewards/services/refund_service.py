"""Refund reconciliation.

A refund returns part of the balance the customer spent on the order as a new lot and
removes the matching share of what the order earned from the order's own EARN lot.
Replays of the same refund are detected through ``related_external_id`` on the entries
it wrote.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import REFUND_REASON_CODES, LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import balance_projection, ledger_store, lot_allocator
from rewards.services.money import compute_earned_points, format_cents, scale_by_ratio
from rewards.services.order_events import RefundCreatedEvent
from rewards.services.platform_client import OrderSummary
from rewards.services.runtime_settings_service import RewardsProgramConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RefundReversalPlan:
    refund_cents: int
    order_total_cents: int
    spent_on_order: int
    already_reversed: int
    spend_reversal: int
    earned_removal_target: int
    earned_removal: int

    @property
    def is_full_refund(self) -> bool:
        return self.order_total_cents > 0 and self.refund_cents >= self.order_total_cents


@dataclass(slots=True)
class RefundResult:
    changed: bool
    status: str
    customer: Customer | None = None
    plan: RefundReversalPlan | None = None
    entries: list[LedgerEntry] = field(default_factory=list)


def plan_refund_reversal(
    *,
    refund_cents: int,
    order_total_cents: int,
    spent_on_order: int,
    already_reversed: int,
    earn_rate: int,
    earn_lot_remaining: int,
) -> RefundReversalPlan:
    """Integer refund math; the refunded share of the order is capped at the whole order."""
    refund = max(int(refund_cents), 0)
    order_total = max(int(order_total_cents), 0)
    if order_total > 0:
        refund = min(refund, order_total)

    spent = max(int(spent_on_order), 0)
    reversed_before = max(int(already_reversed), 0)
    spend_target = min(scale_by_ratio(spent, refund, order_total), spent)
    spend_reversal = max(spend_target - reversed_before, 0)

    earned_target = compute_earned_points(refund, earn_rate)
    earned_removal = min(earned_target, max(int(earn_lot_remaining), 0))
    return RefundReversalPlan(
        refund_cents=refund,
        order_total_cents=order_total,
        spent_on_order=spent,
        already_reversed=reversed_before,
        spend_reversal=spend_reversal,
        earned_removal_target=earned_target,
        earned_removal=earned_removal,
    )


async def _resolve_refund_customer(
    session: AsyncSession,
    *,
    order: OrderSummary | None,
    earn_lot: LedgerEntry | None,
    order_id: str,
) -> Customer | None:
    if order is not None and order.customer_ref:
        customer = await ledger_store.find_customer_by_external_ref(
            session,
            external_ref=order.customer_ref,
            for_update=True,
        )
        if customer is not None:
            return customer
    if order is not None and order.email:
        customer = await ledger_store.find_customer_by_email(session, email=order.email, for_update=True)
        if customer is not None:
            return customer
    owner_entry = earn_lot
    if owner_entry is None:
        owner_entry = await ledger_store.find_entry(session, entry_type=LedgerEntryType.SPEND, order_id=order_id)
    if owner_entry is not None:
        return await ledger_store.get_customer(session, customer_id=owner_entry.customer_id, for_update=True)
    return None


async def reconcile_refund(
    session: AsyncSession,
    *,
    event: RefundCreatedEvent,
    order: OrderSummary | None,
    config: RewardsProgramConfig,
    now: datetime | None = None,
) -> RefundResult:
    order_id = order.order_id if order is not None else event.order_id
    earn_lot = await ledger_store.find_entry(session, entry_type=LedgerEntryType.EARN, order_id=order_id)
    customer = await _resolve_refund_customer(session, order=order, earn_lot=earn_lot, order_id=order_id)
    if customer is None:
        logger.info("No customer for refunded order %s, skipping", order_id)
        return RefundResult(changed=False, status="no_customer")

    marker = event.refund_marker or event.refund_id
    if marker:
        existing = await ledger_store.find_entry(
            session,
            entry_type=LedgerEntryType.ADJUST,
            customer_id=customer.id,
            order_id=order_id,
            reason_codes=REFUND_REASON_CODES,
            related_external_id=marker,
        )
        if existing is not None:
            logger.info("Refund %s already reconciled for order %s", marker, order_id)
            return RefundResult(changed=False, status="duplicate", customer=customer)
    else:
        logger.warning("Refund for order %s carries no id, replays cannot be detected", order_id)

    if earn_lot is not None and earn_lot.customer_id != customer.id:
        logger.warning(
            "EARN lot #%s for order %s belongs to customer #%s, not #%s; leaving it untouched",
            earn_lot.id,
            order_id,
            earn_lot.customer_id,
            customer.id,
        )
        earn_lot = None

    order_total = order.total_cents if order is not None and order.total_cents > 0 else 0
    if order_total <= 0 and earn_lot is not None:
        order_total = int(earn_lot.order_total_cents or 0)
    if order_total <= 0:
        spend_entry = await ledger_store.find_entry(
            session,
            entry_type=LedgerEntryType.SPEND,
            customer_id=customer.id,
            order_id=order_id,
        )
        if spend_entry is not None:
            order_total = int(spend_entry.order_total_cents or 0)

    spent_sum = await ledger_store.sum_entry_amounts(
        session,
        entry_type=LedgerEntryType.SPEND,
        order_id=order_id,
        customer_id=customer.id,
    )
    already_reversed = await ledger_store.sum_entry_amounts(
        session,
        entry_type=LedgerEntryType.ADJUST,
        order_id=order_id,
        customer_id=customer.id,
        reason_code=LedgerReasonCode.REFUND_SPEND_REVERSAL,
    )

    lot: LedgerEntry | None = None
    if not config.rewards_enabled:
        logger.info("Rewards disabled, refund %s only returns spent balance on order %s", marker, order_id)
    elif earn_lot is not None:
        lot = await ledger_store.get_lot(session, lot_id=earn_lot.id, for_update=True)

    earn_rate = config.points_per_dollar
    if earn_lot is not None and earn_lot.earn_rate is not None:
        earn_rate = int(earn_lot.earn_rate)

    plan = plan_refund_reversal(
        refund_cents=event.refund_total_cents,
        order_total_cents=order_total,
        spent_on_order=-spent_sum,
        already_reversed=already_reversed,
        earn_rate=earn_rate,
        earn_lot_remaining=int(lot.remaining_amount or 0) if lot is not None else 0,
    )
    if event.refund_total_cents > plan.refund_cents:
        logger.warning(
            "Refund %s total %s exceeds order %s total %s, capping",
            marker,
            format_cents(event.refund_total_cents),
            order_id,
            format_cents(order_total),
        )

    current_time = now or datetime.now(UTC)
    order_number = event.order_numeric_id
    reason = (
        f"Order {order_number} was refunded"
        if plan.is_full_refund
        else f"Order {order_number} was partially refunded ({format_cents(plan.refund_cents)})"
    )
    result = RefundResult(changed=False, status="reconciled", customer=customer, plan=plan)

    if plan.spend_reversal > 0:
        days = config.refund_expiration_days_or_none()
        entry = LedgerEntry(
            customer_id=customer.id,
            type=LedgerEntryType.ADJUST,
            reason_code=LedgerReasonCode.REFUND_SPEND_REVERSAL,
            amount_delta=plan.spend_reversal,
            remaining_amount=plan.spend_reversal,
            order_id=order_id,
            related_external_id=marker,
            expires_at=current_time + timedelta(days=days) if days is not None else None,
            notes=reason,
            created_at=current_time,
            updated_at=current_time,
        )
        await ledger_store.append_entry(session, entry)
        balance_projection.apply_entry(customer, entry)
        result.entries.append(entry)

    removal = plan.earned_removal
    balance = int(customer.current_balance or 0)
    if removal > balance:
        logger.warning(
            "Refund %s removal %s exceeds customer #%s balance %s, clamping",
            marker,
            removal,
            customer.id,
            balance,
        )
        removal = balance

    if removal > 0 and lot is not None:
        allocation = await lot_allocator.deplete_lots(
            session,
            customer=customer,
            lots=[lot],
            amount=removal,
            entry_type=LedgerEntryType.ADJUST,
            reason_code=LedgerReasonCode.REFUND_EARN_REVERSAL,
            now=current_time,
            notes=reason,
            order_id=order_id,
            related_external_id=marker,
        )
        lot_allocator.require_complete(allocation)
        result.entries.extend(allocation.entries)

    result.changed = bool(result.entries)
    logger.info(
        "Refund %s on order %s: refund=%s order_total=%s spend_reversal=%s earned_removal=%s balance=%s",
        marker,
        order_id,
        format_cents(plan.refund_cents),
        format_cents(plan.order_total_cents),
        plan.spend_reversal,
        removal,
        customer.current_balance,
    )
    return result
