from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from rewards.db.enums import AdjustmentDirection, LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import balance_projection, ledger_store, lot_allocator
from rewards.services.runtime_settings_service import RewardsProgramConfig

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


@dataclass(slots=True)
class AdjustmentRequest:
    direction: AdjustmentDirection
    amount: int
    reason: str


@dataclass(slots=True)
class AdjustmentResult:
    ok: bool
    message: str
    changed: bool = False
    customer: Customer | None = None
    entries: list[LedgerEntry] = field(default_factory=list)
    adjustment_group_id: uuid.UUID | None = None
    errors: dict[str, str] = field(default_factory=dict)


def parse_adjustment_input(
    *,
    direction: object,
    amount: object,
    reason: object,
) -> tuple[AdjustmentRequest | None, dict[str, str]]:
    errors: dict[str, str] = {}

    parsed_direction: AdjustmentDirection | None = None
    try:
        parsed_direction = AdjustmentDirection(str(direction or "").strip().lower())
    except ValueError:
        errors["direction"] = "Direction must be increase or decrease"

    parsed_amount: int | None = None
    if isinstance(amount, bool):
        errors["amount"] = "Amount must be a positive integer"
    elif isinstance(amount, int):
        parsed_amount = amount
    elif isinstance(amount, str) and amount.strip().lstrip("-").isdigit():
        parsed_amount = int(amount.strip())
    else:
        errors["amount"] = "Amount must be a positive integer"
    if parsed_amount is not None and parsed_amount <= 0:
        errors["amount"] = "Amount must be greater than 0"

    parsed_reason = str(reason or "").strip()
    if not parsed_reason:
        errors["reason"] = "Reason is required"
    elif len(parsed_reason) > MAX_REASON_LENGTH:
        errors["reason"] = f"Reason must be at most {MAX_REASON_LENGTH} characters"

    if errors:
        return None, errors
    return AdjustmentRequest(direction=parsed_direction, amount=parsed_amount, reason=parsed_reason), {}


async def apply_manual_adjustment(
    session: AsyncSession,
    *,
    customer_id: int,
    request: AdjustmentRequest,
    config: RewardsProgramConfig,
    now: datetime | None = None,
) -> AdjustmentResult:
    customer = await ledger_store.get_customer(session, customer_id=customer_id, for_update=True)
    if customer is None:
        return AdjustmentResult(ok=False, message="Customer not found")

    current_time = now or datetime.now(UTC)
    if request.direction == AdjustmentDirection.INCREASE:
        return await _increase(session, customer=customer, request=request, config=config, now=current_time)
    return await _decrease(session, customer=customer, request=request, now=current_time)


async def _increase(
    session: AsyncSession,
    *,
    customer: Customer,
    request: AdjustmentRequest,
    config: RewardsProgramConfig,
    now: datetime,
) -> AdjustmentResult:
    days = config.expiration_days_or_none()
    entry = LedgerEntry(
        customer_id=customer.id,
        type=LedgerEntryType.ADJUST,
        reason_code=LedgerReasonCode.MANUAL_INCREASE,
        amount_delta=request.amount,
        remaining_amount=request.amount,
        expires_at=now + timedelta(days=days) if days is not None else None,
        notes=request.reason,
        created_at=now,
        updated_at=now,
    )
    await ledger_store.append_entry(session, entry)
    balance_projection.apply_entry(customer, entry)
    logger.info("Manual increase of %s for customer #%s", request.amount, customer.id)
    return AdjustmentResult(
        ok=True,
        message="Balance increased",
        changed=True,
        customer=customer,
        entries=[entry],
    )


async def _decrease(
    session: AsyncSession,
    *,
    customer: Customer,
    request: AdjustmentRequest,
    now: datetime,
) -> AdjustmentResult:
    balance = int(customer.current_balance or 0)
    if request.amount > balance:
        return AdjustmentResult(
            ok=False,
            message="Amount exceeds current balance",
            customer=customer,
            errors={"amount": f"Amount must be at most {balance}"},
        )

    lots = await ledger_store.list_eligible_lots(session, customer_id=customer.id, as_of=now)
    available = lot_allocator.total_available(lots)
    if available < request.amount:
        logger.warning(
            "Manual decrease of %s for customer #%s exceeds eligible lots %s (balance=%s)",
            request.amount,
            customer.id,
            available,
            balance,
        )
        return AdjustmentResult(
            ok=False,
            message="Insufficient available balance",
            customer=customer,
            errors={"amount": "Insufficient available balance"},
        )

    group_id = uuid.uuid4()
    allocation = await lot_allocator.deplete_lots(
        session,
        customer=customer,
        lots=lots,
        amount=request.amount,
        entry_type=LedgerEntryType.ADJUST,
        reason_code=LedgerReasonCode.MANUAL_DECREASE,
        now=now,
        notes=request.reason,
        adjustment_group_id=group_id,
    )
    lot_allocator.require_complete(allocation)
    logger.info(
        "Manual decrease of %s for customer #%s across %s lot(s) (group %s)",
        request.amount,
        customer.id,
        len(allocation.entries),
        group_id,
    )
    return AdjustmentResult(
        ok=True,
        message="Balance decreased",
        changed=True,
        customer=customer,
        entries=allocation.entries,
        adjustment_group_id=group_id,
    )
