from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.services import earn_service, refund_service, spend_service
from rewards.services.integrity_service import check_customer_integrity
from rewards.services.order_events import OrderPaidEvent, RefundCreatedEvent
from rewards.services.platform_client import OrderSummary
from rewards.services.refund_service import plan_refund_reversal
from rewards.services.runtime_settings_service import RewardsProgramConfig

PAID_AT = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
REFUNDED_AT = PAID_AT + timedelta(days=3)
ORDER_ID = "gid://shopify/Order/1001"
CONFIG = RewardsProgramConfig(
    rewards_enabled=True,
    points_per_dollar=10,
    points_expiration_days=0,
    refund_expiration_days=60,
)


def _refund(total_cents: int, *, refund_id: str = "gid://shopify/Refund/555") -> RefundCreatedEvent:
    return RefundCreatedEvent(
        refund_id=refund_id,
        refund_marker=refund_id.rsplit("/", 1)[-1],
        order_numeric_id="1001",
        refund_total_cents=total_cents,
    )


async def _paid_order(session, store, *, spend: int = 0):
    event = OrderPaidEvent(
        order_id=ORDER_ID,
        email="buyer@example.com",
        customer_ref="gid://shopify/Customer/77",
        customer_name=None,
        total_cents=5000,
        currency="USD",
        paid_at=PAID_AT,
    )
    earn = await earn_service.record_order_earn(session, event=event, config=CONFIG, now=PAID_AT)
    if spend:
        await spend_service.commit_order_spend(
            session,
            customer=earn.customer,
            order_id=ORDER_ID,
            requested_amount=spend,
            now=PAID_AT + timedelta(hours=1),
        )
    return earn.customer, earn.entry


def test_plan_caps_refund_at_order_total() -> None:
    plan = plan_refund_reversal(
        refund_cents=7500,
        order_total_cents=5000,
        spent_on_order=0,
        already_reversed=0,
        earn_rate=10,
        earn_lot_remaining=500,
    )

    assert plan.refund_cents == 5000
    assert plan.is_full_refund is True
    assert plan.earned_removal_target == 500
    assert plan.earned_removal == 500


def test_plan_partial_refunds_reverse_spend_incrementally() -> None:
    first = plan_refund_reversal(
        refund_cents=2500,
        order_total_cents=5000,
        spent_on_order=300,
        already_reversed=0,
        earn_rate=10,
        earn_lot_remaining=500,
    )
    second = plan_refund_reversal(
        refund_cents=5000,
        order_total_cents=5000,
        spent_on_order=300,
        already_reversed=first.spend_reversal,
        earn_rate=10,
        earn_lot_remaining=250,
    )

    assert first.spend_reversal == 150
    assert first.earned_removal == 250
    assert second.spend_reversal == 150
    assert second.earned_removal == 250


def test_plan_without_order_total_reverses_no_spend() -> None:
    plan = plan_refund_reversal(
        refund_cents=1000,
        order_total_cents=0,
        spent_on_order=300,
        already_reversed=0,
        earn_rate=10,
        earn_lot_remaining=40,
    )

    assert plan.spend_reversal == 0
    assert plan.earned_removal == 40


@pytest.mark.asyncio
async def test_full_refund_scenario_leaves_audit_trail(memory_store, fake_session) -> None:
    customer, earn_lot = await _paid_order(fake_session, memory_store, spend=300)
    assert customer.current_balance == 200
    assert earn_lot.remaining_amount == 200

    result = await refund_service.reconcile_refund(
        fake_session,
        event=_refund(5000),
        order=None,
        config=CONFIG,
        now=REFUNDED_AT,
    )

    assert result.changed is True
    assert result.plan.spend_reversal == 300
    assert result.plan.earned_removal == 200
    assert earn_lot.remaining_amount == 0

    reversal, removal = result.entries
    assert reversal.type == LedgerEntryType.ADJUST
    assert reversal.reason_code == LedgerReasonCode.REFUND_SPEND_REVERSAL
    assert reversal.amount_delta == 300
    assert reversal.remaining_amount == 300
    assert reversal.related_external_id == "555"
    assert reversal.expires_at == REFUNDED_AT + timedelta(days=60)
    assert reversal.notes == "Order 1001 was refunded"
    assert removal.reason_code == LedgerReasonCode.REFUND_EARN_REVERSAL
    assert removal.amount_delta == -200
    assert removal.source_lot_id == earn_lot.id

    assert customer.current_balance == 300
    assert customer.lifetime_balance == 800
    report = await check_customer_integrity(fake_session, customer)
    assert report.ok is True


@pytest.mark.asyncio
async def test_refund_replay_is_noop(memory_store, fake_session) -> None:
    customer, _ = await _paid_order(fake_session, memory_store)
    await refund_service.reconcile_refund(
        fake_session, event=_refund(2000), order=None, config=CONFIG, now=REFUNDED_AT
    )
    entries_after_first = len(memory_store.entries)

    again = await refund_service.reconcile_refund(
        fake_session, event=_refund(2000), order=None, config=CONFIG, now=REFUNDED_AT
    )

    assert again.status == "duplicate"
    assert again.changed is False
    assert len(memory_store.entries) == entries_after_first
    assert customer.current_balance == 300


@pytest.mark.asyncio
async def test_oversized_refund_never_goes_negative(memory_store, fake_session) -> None:
    customer, earn_lot = await _paid_order(fake_session, memory_store)
    other = memory_store.add_lot(customer, 50, created_at=PAID_AT + timedelta(days=1))
    await spend_service.commit_order_spend(
        fake_session,
        customer=customer,
        order_id="gid://shopify/Order/2002",
        requested_amount=450,
        now=PAID_AT + timedelta(days=2),
    )
    assert earn_lot.remaining_amount == 50
    assert other.remaining_amount == 50

    result = await refund_service.reconcile_refund(
        fake_session,
        event=_refund(7500),
        order=OrderSummary(order_id=ORDER_ID, email=None, customer_ref="gid://shopify/Customer/77", total_cents=5000),
        config=CONFIG,
        now=REFUNDED_AT,
    )

    assert result.plan.refund_cents == 5000
    assert result.plan.earned_removal == 50
    assert earn_lot.remaining_amount == 0
    assert other.remaining_amount == 50
    assert customer.current_balance == 50


@pytest.mark.asyncio
async def test_refund_removal_is_clamped_to_drifted_balance(memory_store, fake_session) -> None:
    customer, earn_lot = await _paid_order(fake_session, memory_store)
    customer.current_balance = 100

    result = await refund_service.reconcile_refund(
        fake_session, event=_refund(5000), order=None, config=CONFIG, now=REFUNDED_AT
    )

    assert result.changed is True
    assert customer.current_balance == 0
    assert earn_lot.remaining_amount == 400


@pytest.mark.asyncio
async def test_refund_prefers_order_summary_total_and_lot_rate(memory_store, fake_session) -> None:
    customer, earn_lot = await _paid_order(fake_session, memory_store)
    newer_rate = RewardsProgramConfig(
        rewards_enabled=True,
        points_per_dollar=50,
        points_expiration_days=0,
        refund_expiration_days=0,
    )

    result = await refund_service.reconcile_refund(
        fake_session,
        event=_refund(1000),
        order=OrderSummary(order_id=ORDER_ID, email="buyer@example.com", customer_ref=None, total_cents=10_000),
        config=newer_rate,
        now=REFUNDED_AT,
    )

    assert result.plan.order_total_cents == 10_000
    assert result.plan.earned_removal == 100
    assert result.entries[0].notes == "Order 1001 was partially refunded (10.00)"
    assert customer.current_balance == 400


@pytest.mark.asyncio
async def test_refund_without_customer_is_skipped(memory_store, fake_session) -> None:
    result = await refund_service.reconcile_refund(
        fake_session, event=_refund(1000), order=None, config=CONFIG, now=REFUNDED_AT
    )

    assert result.status == "no_customer"
    assert memory_store.entries == []


SPEND_ORDER_ID = "gid://shopify/Order/9"
DISABLED = RewardsProgramConfig(
    rewards_enabled=False,
    points_per_dollar=10,
    points_expiration_days=0,
    refund_expiration_days=0,
)


def _spend_order_refund(total_cents: int) -> RefundCreatedEvent:
    return RefundCreatedEvent(
        refund_id="gid://shopify/Refund/900",
        refund_marker="900",
        order_numeric_id="9",
        refund_total_cents=total_cents,
    )


@pytest.mark.asyncio
async def test_refund_returns_spent_balance_while_disabled(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com")
    memory_store.add_lot(customer, 500, created_at=PAID_AT - timedelta(days=30))
    earn_lot = memory_store.add_lot(
        customer,
        40,
        created_at=PAID_AT,
        order_id=SPEND_ORDER_ID,
        earn_rate=10,
        order_total_cents=4000,
    )
    await spend_service.commit_order_spend(
        fake_session,
        customer=customer,
        order_id=SPEND_ORDER_ID,
        requested_amount=300,
        order_total_cents=4000,
        now=PAID_AT,
    )
    assert customer.current_balance == 240

    result = await refund_service.reconcile_refund(
        fake_session,
        event=_spend_order_refund(4000),
        order=OrderSummary(order_id=SPEND_ORDER_ID, email="spender@example.com", customer_ref=None, total_cents=4000),
        config=DISABLED,
        now=REFUNDED_AT,
    )

    assert result.status == "reconciled"
    assert result.changed is True
    assert [entry.reason_code for entry in result.entries] == [LedgerReasonCode.REFUND_SPEND_REVERSAL]
    assert result.entries[0].amount_delta == 300
    assert result.entries[0].remaining_amount == 300
    assert result.plan.earned_removal == 0
    assert earn_lot.remaining_amount == 40
    assert customer.current_balance == 540

    replay = await refund_service.reconcile_refund(
        fake_session,
        event=_spend_order_refund(4000),
        order=None,
        config=DISABLED,
        now=REFUNDED_AT,
    )
    assert replay.status == "duplicate"
    assert customer.current_balance == 540


@pytest.mark.asyncio
async def test_refund_of_spend_only_order_finds_spender_without_platform(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com", external_ref="gid://shopify/Customer/9")
    memory_store.add_lot(customer, 500, created_at=PAID_AT - timedelta(days=30))
    await spend_service.commit_order_spend(
        fake_session,
        customer=customer,
        order_id=SPEND_ORDER_ID,
        requested_amount=300,
        order_total_cents=4000,
        now=PAID_AT,
    )

    result = await refund_service.reconcile_refund(
        fake_session, event=_spend_order_refund(2000), order=None, config=CONFIG, now=REFUNDED_AT
    )

    assert result.status == "reconciled"
    assert result.customer is customer
    assert result.plan.order_total_cents == 4000
    assert result.plan.spend_reversal == 150
    assert result.plan.earned_removal == 0
    assert customer.current_balance == 350
    assert result.entries[0].expires_at == REFUNDED_AT + timedelta(days=60)
