from __future__ import annotations

from enum import StrEnum


class LedgerEntryType(StrEnum):
    EARN = "EARN"
    SPEND = "SPEND"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"


class LedgerReasonCode(StrEnum):
    ORDER_PAID = "ORDER_PAID"
    ORDER_SPEND = "ORDER_SPEND"
    MANUAL_INCREASE = "MANUAL_INCREASE"
    MANUAL_DECREASE = "MANUAL_DECREASE"
    REFUND_SPEND_REVERSAL = "REFUND_SPEND_REVERSAL"
    REFUND_EARN_REVERSAL = "REFUND_EARN_REVERSAL"
    LOT_EXPIRED = "LOT_EXPIRED"


class AdjustmentDirection(StrEnum):
    INCREASE = "increase"
    DECREASE = "decrease"


LOT_ENTRY_TYPES: tuple[LedgerEntryType, ...] = (LedgerEntryType.EARN, LedgerEntryType.ADJUST)
REFUND_REASON_CODES: tuple[LedgerReasonCode, ...] = (
    LedgerReasonCode.REFUND_SPEND_REVERSAL,
    LedgerReasonCode.REFUND_EARN_REVERSAL,
)
