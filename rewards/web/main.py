from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from rewards.config import settings
from rewards.db.models import Customer
from rewards.db.session import SessionFactory
from rewards.logging_setup import configure_logging
from rewards.services.adjustment_service import apply_manual_adjustment, parse_adjustment_input
from rewards.services.balance_projection import BalanceSnapshot, snapshot
from rewards.services.customer_service import list_customers_page, resolve_customer_ref
from rewards.services.earn_service import get_order_earned_amount
from rewards.services.expiration_service import expire_lots
from rewards.services.history_service import HistoryEvent, get_customer_history
from rewards.services.ledger_store import LotOverdrawError
from rewards.services.lot_allocator import LotAllocationError
from rewards.services.order_events import canonical_order_id, parse_order_paid_payload, parse_refund_payload
from rewards.services.platform_client import (
    fetch_order_summary_or_none,
    get_platform_client,
    mirror_customer_balance,
)
from rewards.services.runtime_settings_service import (
    build_runtime_settings_snapshot,
    load_program_config,
    update_program_config,
)
from rewards.services.spend_service import authorize_spend
from rewards.services.webhook_service import process_order_paid, process_refund_created
from rewards.web.auth import admin_actor, get_admin_auth_context

app = FastAPI(title="Rewards Ledger", version="0.1.0")
logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_MESSAGE = "Insufficient available balance"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _json_error(status_code: int, message: str, errors: dict[str, str] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"ok": False, "message": message}
    if errors:
        payload["errors"] = errors
    return JSONResponse(payload, status_code=status_code)


def _require_admin(request: Request) -> Response | None:
    auth = get_admin_auth_context(request)
    if not auth.configured:
        return _json_error(503, "Admin API token is not configured")
    if not auth.authorized:
        return _json_error(401, "Unauthorized")
    return None


async def _read_json_object(request: Request) -> dict[str, Any] | None:
    raw = await request.body()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _parse_positive_int(raw: object) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        value = int(raw.strip())
        return value if value > 0 else None
    return None


def _balance_payload(balance: BalanceSnapshot) -> dict[str, Any]:
    return {
        "customer_id": balance.customer_id,
        "current_balance": balance.current_balance,
        "lifetime_balance": balance.lifetime_balance,
    }


def _customer_payload(customer: Customer) -> dict[str, Any]:
    return {
        "id": customer.id,
        "email": customer.email,
        "name": customer.name,
        "external_ref": customer.external_ref,
        "current_balance": int(customer.current_balance or 0),
        "lifetime_balance": int(customer.lifetime_balance or 0),
        "created_at": _iso(customer.created_at),
    }


def _history_event_payload(event: HistoryEvent) -> dict[str, Any]:
    return {
        "key": event.key,
        "type": str(event.type),
        "reason_code": str(event.reason_code),
        "amount_delta": event.amount_delta,
        "order_id": event.order_id,
        "notes": event.notes,
        "created_at": _iso(event.created_at),
        "adjustment_group_id": str(event.adjustment_group_id) if event.adjustment_group_id else None,
        "entries": [
            {"id": entry_id, "source_lot_id": lot_id}
            for entry_id, lot_id in zip(event.entry_ids, event.source_lot_ids)
        ],
    }


async def _mirror_balances(balances: Iterable[BalanceSnapshot]) -> None:
    client = get_platform_client()
    if client is None:
        return
    for balance in balances:
        await mirror_customer_balance(client, balance)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/webhooks/orders/paid")
async def webhook_orders_paid(request: Request) -> Response:
    request_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    payload = await _read_json_object(request)
    if payload is None:
        logger.warning("[orders/paid %s] rejected: body is not a JSON object", request_id)
        return _json_error(400, "Invalid JSON body")

    event = parse_order_paid_payload(
        payload,
        spend_code_prefix=settings.spend_discount_code_prefix,
        spend_note_attribute=settings.spend_note_attribute,
    )
    if event is None:
        logger.info("[orders/paid %s] skip: missing email or order id", request_id)
        return JSONResponse({"status": "skipped", "reason": "missing_email_or_order"})

    logger.info(
        "[orders/paid %s] received order=%s total=%s spend=%s",
        request_id,
        event.order_id,
        event.total_cents,
        event.spend_amount,
    )
    try:
        async with SessionFactory() as session:
            async with session.begin():
                outcome = await process_order_paid(session, event=event)
    except Exception:
        logger.exception("[orders/paid %s] failed for order %s", request_id, event.order_id)
        raise

    if outcome.changed and outcome.balance is not None:
        await _mirror_balances([outcome.balance])

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "[orders/paid %s] done earn=%s earned=%s spent=%s in %sms",
        request_id,
        outcome.earn.status,
        outcome.earn.earned,
        outcome.spend.spent if outcome.spend is not None else 0,
        elapsed_ms,
    )
    body: dict[str, Any] = {
        "status": "processed",
        "earn": outcome.earn.status,
        "earned": outcome.earn.earned,
        "spent": outcome.spend.spent if outcome.spend is not None else 0,
    }
    if outcome.balance is not None:
        body["balance"] = _balance_payload(outcome.balance)
    return JSONResponse(body)


@app.post("/webhooks/refunds/create")
async def webhook_refunds_create(request: Request) -> Response:
    request_id = uuid.uuid4().hex[:8]
    started = time.perf_counter()
    payload = await _read_json_object(request)
    if payload is None:
        logger.warning("[refunds/create %s] rejected: body is not a JSON object", request_id)
        return _json_error(400, "Invalid JSON body")

    event = parse_refund_payload(payload)
    if event is None:
        logger.info("[refunds/create %s] skip: missing order id or refund total", request_id)
        return JSONResponse({"status": "skipped", "reason": "missing_order_or_amount"})

    logger.info(
        "[refunds/create %s] received refund=%s order=%s total=%s",
        request_id,
        event.refund_id,
        event.order_numeric_id,
        event.refund_total_cents,
    )
    client = get_platform_client()
    order = await fetch_order_summary_or_none(client, order_numeric_id=event.order_numeric_id)
    try:
        async with SessionFactory() as session:
            async with session.begin():
                outcome = await process_refund_created(session, event=event, order=order)
    except Exception:
        logger.exception("[refunds/create %s] failed for order %s", request_id, event.order_numeric_id)
        raise

    if outcome.changed and outcome.balance is not None:
        await _mirror_balances([outcome.balance])

    plan = outcome.refund.plan
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info("[refunds/create %s] done status=%s in %sms", request_id, outcome.refund.status, elapsed_ms)
    body: dict[str, Any] = {
        "status": outcome.refund.status,
        "spend_reversal": plan.spend_reversal if plan is not None else 0,
        "earned_removal": plan.earned_removal if plan is not None else 0,
    }
    if outcome.balance is not None:
        body["balance"] = _balance_payload(outcome.balance)
    return JSONResponse(body)


@app.get("/api/customers")
async def api_list_customers(request: Request, q: str = "", page: int = 1) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    async with SessionFactory() as session:
        result = await list_customers_page(
            session,
            query=q,
            page=page,
            page_size=settings.customers_page_size,
        )
    return JSONResponse(
        {
            "items": [_customer_payload(item) for item in result.items],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
            "has_next": result.has_next,
        }
    )


@app.get("/api/customers/{customer_ref}/balance")
async def api_customer_balance(request: Request, customer_ref: str) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    async with SessionFactory() as session:
        customer = await resolve_customer_ref(session, customer_ref)
    if customer is None:
        return _json_error(404, "Customer not found")
    return JSONResponse(_balance_payload(snapshot(customer)))


@app.get("/api/customers/{customer_id}/history")
async def api_customer_history(request: Request, customer_id: int, limit: int = 50, offset: int = 0) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    async with SessionFactory() as session:
        history = await get_customer_history(
            session,
            customer_id=customer_id,
            limit=limit,
            offset=offset,
            max_limit=settings.history_page_size_max,
        )
    if history is None:
        return _json_error(404, "Customer not found")
    return JSONResponse(
        {
            "customer": _customer_payload(history.customer),
            "events": [_history_event_payload(event) for event in history.events],
            "total_entries": history.total_entries,
            "limit": history.limit,
            "offset": history.offset,
            "has_next": history.has_next,
        }
    )


@app.post("/api/adjustments")
async def api_create_adjustment(request: Request) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    payload = await _read_json_object(request)
    if payload is None:
        return _json_error(400, "Invalid JSON body")

    customer_id = _parse_positive_int(payload.get("customer_id"))
    adjustment, errors = parse_adjustment_input(
        direction=payload.get("direction"),
        amount=payload.get("amount"),
        reason=payload.get("reason"),
    )
    if customer_id is None:
        errors["customer_id"] = "Customer is required"
    if errors or adjustment is None:
        return _json_error(400, "Invalid adjustment", errors)

    try:
        async with SessionFactory() as session:
            async with session.begin():
                config = await load_program_config(session)
                result = await apply_manual_adjustment(
                    session,
                    customer_id=customer_id,
                    request=adjustment,
                    config=config,
                )
                balance = snapshot(result.customer) if result.customer is not None else None
    except (LotAllocationError, LotOverdrawError) as exc:
        logger.warning("[adjustments] customer #%s aborted: %s", customer_id, exc)
        return _json_error(409, INSUFFICIENT_BALANCE_MESSAGE)

    if not result.ok:
        status_code = 404 if result.customer is None else 400
        return _json_error(status_code, result.message, result.errors)

    logger.info(
        "[adjustments] %s %s for customer #%s by %s, reason=%s",
        adjustment.direction,
        adjustment.amount,
        customer_id,
        admin_actor(request),
        adjustment.reason,
    )
    if balance is not None:
        await _mirror_balances([balance])
    return JSONResponse(
        {
            "ok": True,
            "message": result.message,
            "entry_ids": [entry.id for entry in result.entries],
            "adjustment_group_id": str(result.adjustment_group_id) if result.adjustment_group_id else None,
            "balance": _balance_payload(balance) if balance is not None else None,
        }
    )


@app.post("/api/spend/authorize")
async def api_authorize_spend(request: Request) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    payload = await _read_json_object(request)
    if payload is None:
        return _json_error(400, "Invalid JSON body")

    async with SessionFactory() as session:
        result = await authorize_spend(
            session,
            customer_ref=str(payload.get("customer_ref") or ""),
            requested_amount=payload.get("requested_amount"),
            cart_total_cents=payload.get("cart_total_cents"),
            code_prefix=settings.spend_discount_code_prefix,
        )

    if not result.ok:
        status_code = {"invalid": 400, "not_found": 404}.get(result.status, 403)
        return _json_error(status_code, result.message, result.errors)
    return JSONResponse(
        {
            "ok": True,
            "approved_amount": result.approved_amount,
            "current_balance": result.current_balance,
            "code": result.code,
        }
    )


@app.get("/api/settings")
async def api_get_settings(request: Request) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    async with SessionFactory() as session:
        items = await build_runtime_settings_snapshot(session)
    return JSONResponse(
        {
            "items": [
                {
                    "key": item.key,
                    "value_type": item.value_type,
                    "description": item.description,
                    "default_value": item.default_value,
                    "effective_value": item.effective_value,
                    "override": item.override_raw_value,
                    "updated_by": item.updated_by,
                    "updated_at": _iso(item.updated_at),
                }
                for item in items
            ]
        }
    )


@app.post("/api/settings")
async def api_update_settings(request: Request) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    payload = await _read_json_object(request)
    if payload is None:
        return _json_error(400, "Invalid JSON body")

    actor = admin_actor(request)
    async with SessionFactory() as session:
        async with session.begin():
            result = await update_program_config(session, raw=payload, updated_by=actor)
    if not result.ok or result.config is None:
        return _json_error(400, "Invalid settings", result.errors)

    logger.info("[settings] updated by %s: %s", actor, sorted(payload))
    return JSONResponse(
        {
            "ok": True,
            "rewards_enabled": result.config.rewards_enabled,
            "points_per_dollar": result.config.points_per_dollar,
            "points_expiration_days": result.config.points_expiration_days,
        }
    )


@app.post("/api/expirations/run")
async def api_run_expirations(request: Request) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    async with SessionFactory() as session:
        async with session.begin():
            result = await expire_lots(session)
            balances = [snapshot(customer) for customer in result.customers]

    await _mirror_balances(balances)
    return JSONResponse(
        {
            "ok": True,
            "lots_expired": result.lots_expired,
            "amount_expired": result.amount_expired,
            "customers": len(balances),
        }
    )


@app.get("/api/orders/{order_id}/earned")
async def api_order_earned(request: Request, order_id: str) -> Response:
    denied = _require_admin(request)
    if denied is not None:
        return denied

    canonical = canonical_order_id(order_id)
    if canonical is None:
        return _json_error(400, "Order id is required")
    async with SessionFactory() as session:
        earned = await get_order_earned_amount(session, order_id=canonical)
    return JSONResponse({"order_id": canonical, "earned": earned})


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run("rewards.web.main:app", host="0.0.0.0", port=8080, log_level="info")


if __name__ == "__main__":
    main()
