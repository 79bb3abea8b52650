from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.models import Customer
from rewards.services import ledger_store

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LotViolation:
    lot_id: int
    amount_delta: int
    remaining_amount: int
    depleted: int


@dataclass(slots=True)
class CustomerIntegrityReport:
    customer_id: int
    cached_balance: int
    ledger_balance: int
    lot_violations: list[LotViolation] = field(default_factory=list)

    @property
    def balance_drift(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def ok(self) -> bool:
        return self.balance_drift == 0 and not self.lot_violations


async def check_customer_integrity(session: AsyncSession, customer: Customer) -> CustomerIntegrityReport:
    ledger_balance = await ledger_store.sum_customer_deltas(session, customer_id=customer.id)
    depletions = await ledger_store.sum_lot_depletions(session, customer_id=customer.id)
    report = CustomerIntegrityReport(
        customer_id=customer.id,
        cached_balance=int(customer.current_balance or 0),
        ledger_balance=ledger_balance,
    )
    for lot in await ledger_store.list_customer_lots(session, customer_id=customer.id):
        depleted = depletions.get(lot.id, 0)
        remaining = int(lot.remaining_amount or 0)
        if int(lot.amount_delta) != remaining + depleted:
            report.lot_violations.append(
                LotViolation(
                    lot_id=lot.id,
                    amount_delta=int(lot.amount_delta),
                    remaining_amount=remaining,
                    depleted=depleted,
                )
            )
    return report


async def check_ledger_integrity(session: AsyncSession) -> list[CustomerIntegrityReport]:
    reports: list[CustomerIntegrityReport] = []
    for customer_id in await ledger_store.list_customer_ids(session):
        customer = await ledger_store.get_customer(session, customer_id=customer_id)
        if customer is None:
            continue
        report = await check_customer_integrity(session, customer)
        if not report.ok:
            logger.warning(
                "Integrity violation for customer #%s: drift=%s lots=%s",
                report.customer_id,
                report.balance_drift,
                [item.lot_id for item in report.lot_violations],
            )
        reports.append(report)
    return reports
