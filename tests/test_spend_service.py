from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from rewards.db.enums import LedgerEntryType, LedgerReasonCode
from rewards.services import spend_service

T0 = datetime(2026, 1, 1, tzinfo=UTC)
NOW = T0 + timedelta(days=10)
ORDER_ID = "gid://shopify/Order/2002"


@pytest.mark.asyncio
async def test_commit_order_spend_depletes_lot(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com")
    lot = memory_store.add_lot(customer, 500, created_at=T0)

    result = await spend_service.commit_order_spend(
        fake_session,
        customer=customer,
        order_id=ORDER_ID,
        requested_amount=300,
        spend_code="REWARDS-ABCD1234",
        now=NOW,
    )

    assert result.ok is True
    assert result.changed is True
    assert result.spent == 300
    assert result.balance_before == 500
    assert result.balance_after == 200
    assert lot.remaining_amount == 200
    assert len(result.entries) == 1
    entry = result.entries[0]
    assert entry.type == LedgerEntryType.SPEND
    assert entry.reason_code == LedgerReasonCode.ORDER_SPEND
    assert entry.amount_delta == -300
    assert entry.source_lot_id == lot.id
    assert entry.related_external_id == "REWARDS-ABCD1234"
    assert customer.lifetime_balance == 500


@pytest.mark.asyncio
async def test_commit_order_spend_is_idempotent_per_order(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com")
    memory_store.add_lot(customer, 500, created_at=T0)

    await spend_service.commit_order_spend(
        fake_session, customer=customer, order_id=ORDER_ID, requested_amount=100, now=NOW
    )
    again = await spend_service.commit_order_spend(
        fake_session, customer=customer, order_id=ORDER_ID, requested_amount=100, now=NOW
    )

    assert again.changed is False
    assert customer.current_balance == 400
    assert len([entry for entry in memory_store.entries if entry.type == LedgerEntryType.SPEND]) == 1


@pytest.mark.asyncio
async def test_commit_order_spend_clamps_to_balance(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com")
    memory_store.add_lot(customer, 200, created_at=T0)

    result = await spend_service.commit_order_spend(
        fake_session, customer=customer, order_id=ORDER_ID, requested_amount=500, now=NOW
    )

    assert result.spent == 200
    assert customer.current_balance == 0


@pytest.mark.asyncio
async def test_commit_order_spend_never_uses_expired_lots(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="spender@example.com")
    expired = memory_store.add_lot(customer, 100, created_at=T0, expires_at=NOW - timedelta(days=1))
    live = memory_store.add_lot(customer, 50, created_at=T0 + timedelta(days=1))

    result = await spend_service.commit_order_spend(
        fake_session, customer=customer, order_id=ORDER_ID, requested_amount=120, now=NOW
    )

    assert result.spent == 50
    assert expired.remaining_amount == 100
    assert live.remaining_amount == 0
    assert [entry.source_lot_id for entry in result.entries] == [live.id]


@pytest.mark.asyncio
async def test_commit_order_spend_with_nothing_available_writes_nothing(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="empty@example.com")

    result = await spend_service.commit_order_spend(
        fake_session, customer=customer, order_id=ORDER_ID, requested_amount=100, now=NOW
    )

    assert result.ok is True
    assert result.changed is False
    assert memory_store.entries == []


@pytest.mark.asyncio
async def test_authorize_spend_approves_min_of_request_cart_and_lots(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="cart@example.com")
    memory_store.add_lot(customer, 500, created_at=T0)

    result = await spend_service.authorize_spend(
        fake_session,
        customer_ref=f"local:{customer.id}",
        requested_amount=400,
        cart_total_cents=250,
        code_prefix="REWARDS-",
        now=NOW,
    )

    assert result.ok is True
    assert result.approved_amount == 250
    assert result.current_balance == 500
    assert result.code is not None
    assert result.code.startswith("REWARDS-")
    assert len(result.code) == len("REWARDS-") + 8
    assert result.code == result.code.upper()
    assert memory_store.entries[0].remaining_amount == 500


@pytest.mark.asyncio
async def test_authorize_spend_rejects_more_than_balance(memory_store, fake_session) -> None:
    customer = memory_store.add_customer(email="cart@example.com")
    memory_store.add_lot(customer, 100, created_at=T0)

    result = await spend_service.authorize_spend(
        fake_session,
        customer_ref="cart@example.com",
        requested_amount=150,
        cart_total_cents=10_000,
        code_prefix="REWARDS-",
        now=NOW,
    )

    assert result.ok is False
    assert result.status == "insufficient"
    assert result.message == "Not enough rewards (100 < 150)"
    assert result.code is None


@pytest.mark.asyncio
async def test_authorize_spend_validates_input(memory_store, fake_session) -> None:
    result = await spend_service.authorize_spend(
        fake_session,
        customer_ref="",
        requested_amount=-1,
        cart_total_cents="abc",
        code_prefix="REWARDS-",
    )

    assert result.status == "invalid"
    assert set(result.errors) == {"customer_ref", "requested_amount", "cart_total_cents"}


@pytest.mark.asyncio
async def test_authorize_spend_unknown_customer(memory_store, fake_session) -> None:
    result = await spend_service.authorize_spend(
        fake_session,
        customer_ref="gid://shopify/Customer/404",
        requested_amount=10,
        cart_total_cents=100,
        code_prefix="REWARDS-",
    )

    assert result.status == "not_found"


@pytest.mark.asyncio
async def test_authorize_spend_reads_platform_id_balance_not_local_id(memory_store, fake_session) -> None:
    local_one = memory_store.add_customer(email="local@example.com")
    memory_store.add_lot(local_one, 999, created_at=T0)
    shopper = memory_store.add_customer(email="shopper@example.com", external_ref="gid://shopify/Customer/1")
    memory_store.add_lot(shopper, 5, created_at=T0)

    result = await spend_service.authorize_spend(
        fake_session,
        customer_ref="1",
        requested_amount=50,
        cart_total_cents=10_000,
        code_prefix="REWARDS-",
        now=NOW,
    )

    assert result.ok is False
    assert result.status == "insufficient"
    assert result.current_balance == 5
