"""Normalisation of order-paid and refund-created webhook payloads."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from rewards.services.money import safe_parse_money_to_cents

_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")
_WHITESPACE_RE = re.compile(r"\s+")

ORDER_GID_PREFIX = "gid://shopify/Order/"
CUSTOMER_GID_PREFIX = "gid://shopify/Customer/"


@dataclass(slots=True, frozen=True)
class OrderPaidEvent:
    order_id: str
    email: str
    customer_ref: str | None
    customer_name: str | None
    total_cents: int
    currency: str | None
    paid_at: datetime
    spend_amount: int = 0
    spend_code: str | None = None


@dataclass(slots=True, frozen=True)
class RefundCreatedEvent:
    refund_id: str | None
    refund_marker: str | None
    order_numeric_id: str
    refund_total_cents: int

    @property
    def order_id(self) -> str:
        return f"{ORDER_GID_PREFIX}{self.order_numeric_id}"


def trailing_digits(value: object) -> str | None:
    if value is None:
        return None
    match = _TRAILING_DIGITS_RE.search(str(value).strip())
    return match.group(1) if match else None


def customer_gid(customer_ref: str | None) -> str | None:
    if not customer_ref:
        return None
    raw = str(customer_ref).strip()
    if raw.startswith(CUSTOMER_GID_PREFIX):
        return raw
    digits = trailing_digits(raw)
    return f"{CUSTOMER_GID_PREFIX}{digits}" if digits else None


def canonical_order_id(value: object) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if raw.startswith(ORDER_GID_PREFIX):
        return raw
    if raw.isdigit():
        return f"{ORDER_GID_PREFIX}{raw}"
    return raw


def _dig(payload: Any, *path: str) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_present(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_list(*candidates: Any) -> list[dict[str, Any]]:
    for candidate in candidates:
        if isinstance(candidate, list):
            return [item for item in candidate if isinstance(item, dict)]
    return []


def _graphql_or_numeric_id(node: Any) -> str | None:
    if not isinstance(node, dict):
        return None
    gid = node.get("admin_graphql_api_id")
    if gid:
        return str(gid)
    raw_id = node.get("id")
    if raw_id is not None:
        return str(raw_id)
    return None


def format_name(first_name: str | None, last_name: str | None) -> str | None:
    combined = " ".join(part for part in (first_name, last_name) if part).strip()
    if not combined:
        return None
    return _WHITESPACE_RE.sub(" ", combined)


def parse_timestamp(value: Any, *, default: datetime) -> datetime:
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def order_display_name(order: dict[str, Any]) -> str | None:
    for source in ("customer", "billing_address", "shipping_address"):
        node = order.get(source)
        if not isinstance(node, dict):
            continue
        name = format_name(node.get("first_name"), node.get("last_name"))
        if name:
            return name
    return None


def _sum_cents(items: Iterable[dict[str, Any]], *paths: tuple[str, ...]) -> int:
    total = 0
    for item in items:
        amount = _first_present(*(_dig(item, *path) for path in paths))
        total += safe_parse_money_to_cents(amount)
    return total


def extract_spend_marker(
    order: dict[str, Any],
    *,
    code_prefix: str,
    note_attribute: str,
) -> tuple[int, str | None]:
    prefix = code_prefix.strip().upper()
    if prefix:
        codes = [
            item
            for item in _as_list(order.get("discount_codes"))
            if str(item.get("code") or "").strip().upper().startswith(prefix)
        ]
        if codes:
            amount = _sum_cents(codes, ("amount",))
            if amount > 0:
                return amount, str(codes[0].get("code")).strip()

    name = note_attribute.strip()
    if name:
        for attribute in _as_list(order.get("note_attributes")):
            if str(attribute.get("name") or "").strip() != name:
                continue
            raw_value = str(attribute.get("value") or "").strip()
            if raw_value.isdigit() and int(raw_value) > 0:
                return int(raw_value), None
    return 0, None


def parse_order_paid_payload(
    order: dict[str, Any],
    *,
    spend_code_prefix: str = "",
    spend_note_attribute: str = "",
    now: datetime | None = None,
) -> OrderPaidEvent | None:
    current_time = now or datetime.now(UTC)
    order_id = canonical_order_id(_graphql_or_numeric_id(order))
    email = _first_present(order.get("email") or None, _dig(order, "customer", "email") or None)
    if not order_id or not email:
        return None

    amount = _first_present(_dig(order, "total_price_set", "shop_money", "amount"), order.get("total_price"))
    currency = _first_present(
        _dig(order, "total_price_set", "shop_money", "currency_code"),
        order.get("currency"),
    )
    spend_amount, spend_code = extract_spend_marker(
        order,
        code_prefix=spend_code_prefix,
        note_attribute=spend_note_attribute,
    )
    return OrderPaidEvent(
        order_id=order_id,
        email=str(email).strip().lower(),
        customer_ref=customer_gid(_graphql_or_numeric_id(order.get("customer"))),
        customer_name=order_display_name(order),
        total_cents=safe_parse_money_to_cents(amount if amount is not None else "0"),
        currency=str(currency) if currency else None,
        paid_at=parse_timestamp(
            order.get("processed_at") or order.get("created_at"),
            default=current_time,
        ),
        spend_amount=spend_amount,
        spend_code=spend_code,
    )


def refund_total_cents(refund: dict[str, Any]) -> int | None:
    """Single refunded total: transactions, then line items, then shipping plus adjustments."""
    transactions = [
        item
        for item in _as_list(refund.get("transactions"))
        if str(item.get("kind") or "").lower() == "refund"
        and str(item.get("status") or "").lower() in {"", "success"}
    ]
    if transactions:
        cents = _sum_cents(
            transactions,
            ("amount_set", "shop_money", "amount"),
            ("amount",),
            ("amount_set", "presentment_money", "amount"),
        )
        if cents > 0:
            return cents

    line_items = _as_list(refund.get("refund_line_items"), refund.get("refundLineItems"))
    if line_items:
        cents = _sum_cents(
            line_items,
            ("subtotal_set", "shop_money", "amount"),
            ("subtotal",),
            ("subtotal_set", "presentment_money", "amount"),
        )
        if cents > 0:
            return cents

    shipping_cents = _sum_cents(
        _as_list(refund.get("refund_shipping_lines"), refund.get("refundShippingLines")),
        ("subtotal_set", "shop_money", "amount"),
        ("discounted_price_set", "shop_money", "amount"),
        ("price_set", "shop_money", "amount"),
        ("subtotal",),
        ("discounted_price",),
        ("price",),
    )
    adjustment_cents = _sum_cents(
        _as_list(refund.get("order_adjustments"), refund.get("orderAdjustments")),
        ("amount_set", "shop_money", "amount"),
        ("amount",),
        ("amount_set", "presentment_money", "amount"),
    )
    fallback = shipping_cents + adjustment_cents
    if fallback > 0:
        return fallback
    return None


def parse_refund_payload(refund: dict[str, Any]) -> RefundCreatedEvent | None:
    refund_id = _graphql_or_numeric_id(refund)
    order_numeric_id = trailing_digits(
        _first_present(
            refund.get("order_id"),
            refund.get("orderId"),
            _dig(refund, "order", "id"),
            _dig(refund, "order", "admin_graphql_api_id"),
        )
    )
    total = refund_total_cents(refund)
    if not order_numeric_id or total is None:
        return None
    return RefundCreatedEvent(
        refund_id=refund_id,
        refund_marker=trailing_digits(refund_id),
        order_numeric_id=order_numeric_id,
        refund_total_cents=total,
    )
