from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.models import Customer
from rewards.services import customer_service, earn_service, refund_service, spend_service
from rewards.services.balance_projection import BalanceSnapshot, snapshot
from rewards.services.earn_service import EarnResult
from rewards.services.order_events import OrderPaidEvent, RefundCreatedEvent
from rewards.services.platform_client import OrderSummary
from rewards.services.refund_service import RefundResult
from rewards.services.runtime_settings_service import load_program_config
from rewards.services.spend_service import SpendResult


@dataclass(slots=True)
class OrderPaidOutcome:
    earn: EarnResult
    spend: SpendResult | None
    balance: BalanceSnapshot | None

    @property
    def changed(self) -> bool:
        return self.earn.changed or bool(self.spend is not None and self.spend.changed)


@dataclass(slots=True)
class RefundOutcome:
    refund: RefundResult
    balance: BalanceSnapshot | None

    @property
    def changed(self) -> bool:
        return self.refund.changed


async def process_order_paid(
    session: AsyncSession,
    *,
    event: OrderPaidEvent,
    now: datetime | None = None,
) -> OrderPaidOutcome:
    """Commit the order's approved spend, then record its earn, in the caller's transaction."""
    config = await load_program_config(session)

    customer: Customer | None = None
    spend: SpendResult | None = None
    if event.spend_amount > 0:
        customer = await customer_service.resolve_order_customer(
            session,
            email=event.email,
            external_ref=event.customer_ref,
            name=event.customer_name,
        )
        spend = await spend_service.commit_order_spend(
            session,
            customer=customer,
            order_id=event.order_id,
            requested_amount=event.spend_amount,
            spend_code=event.spend_code,
            order_total_cents=event.total_cents,
            now=now,
        )

    earn = await earn_service.record_order_earn(
        session,
        event=event,
        config=config,
        customer=customer,
        now=now,
    )
    owner = earn.customer or customer
    return OrderPaidOutcome(
        earn=earn,
        spend=spend,
        balance=snapshot(owner) if owner is not None else None,
    )


async def process_refund_created(
    session: AsyncSession,
    *,
    event: RefundCreatedEvent,
    order: OrderSummary | None,
    now: datetime | None = None,
) -> RefundOutcome:
    config = await load_program_config(session)
    result = await refund_service.reconcile_refund(
        session,
        event=event,
        order=order,
        config=config,
        now=now,
    )
    return RefundOutcome(
        refund=result,
        balance=snapshot(result.customer) if result.customer is not None else None,
    )
