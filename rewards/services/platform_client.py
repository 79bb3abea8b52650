"""Commerce platform Admin GraphQL client: order lookups and balance write-back."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from rewards.config import settings
from rewards.services.balance_projection import BalanceSnapshot
from rewards.services.money import safe_parse_money_to_cents
from rewards.services.order_events import ORDER_GID_PREFIX, canonical_order_id, customer_gid

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "rewards"
CURRENT_BALANCE_KEY = "current_balance"
LIFETIME_BALANCE_KEY = "lifetime_balance"

ORDER_SUMMARY_QUERY = """
query OrderSummary($id: ID!) {
  order(id: $id) {
    id
    email
    originalTotalPriceSet { shopMoney { amount } }
    totalPriceSet { shopMoney { amount } }
    currentTotalPriceSet { shopMoney { amount } }
    customer { id email }
  }
}
"""

SET_BALANCE_MUTATION = """
mutation SetCustomerRewards($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    userErrors { field message }
  }
}
"""


class PlatformApiError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class OrderSummary:
    order_id: str
    email: str | None
    customer_ref: str | None
    total_cents: int


@dataclass(slots=True)
class MirrorResult:
    ok: bool
    skipped: bool = False
    errors: list[str] = field(default_factory=list)


def order_summary_from_graphql(order: dict[str, Any] | None) -> OrderSummary | None:
    if not isinstance(order, dict) or not order.get("id"):
        return None

    candidates = []
    for key in ("originalTotalPriceSet", "totalPriceSet", "currentTotalPriceSet"):
        node = order.get(key)
        amount = None
        if isinstance(node, dict) and isinstance(node.get("shopMoney"), dict):
            amount = node["shopMoney"].get("amount")
        cents = safe_parse_money_to_cents(amount)
        if cents > 0:
            candidates.append(cents)

    customer = order.get("customer") if isinstance(order.get("customer"), dict) else {}
    email = order.get("email") or customer.get("email")
    return OrderSummary(
        order_id=canonical_order_id(order["id"]) or str(order["id"]),
        email=str(email).strip().lower() if email else None,
        customer_ref=customer_gid(customer.get("id")),
        total_cents=max(candidates) if candidates else 0,
    )


def build_balance_metafields(*, customer_ref: str, current_balance: int, lifetime_balance: int) -> list[dict]:
    return [
        {
            "ownerId": customer_ref,
            "namespace": METAFIELD_NAMESPACE,
            "key": CURRENT_BALANCE_KEY,
            "type": "number_integer",
            "value": str(int(current_balance)),
        },
        {
            "ownerId": customer_ref,
            "namespace": METAFIELD_NAMESPACE,
            "key": LIFETIME_BALANCE_KEY,
            "type": "number_integer",
            "value": str(int(lifetime_balance)),
        },
    ]


class PlatformClient(ABC):
    @abstractmethod
    async def fetch_order_summary(self, *, order_numeric_id: str) -> OrderSummary | None:
        raise NotImplementedError

    @abstractmethod
    async def set_customer_balance_fields(
        self,
        *,
        customer_ref: str,
        current_balance: int,
        lifetime_balance: int,
    ) -> MirrorResult:
        raise NotImplementedError


class GraphqlPlatformClient(PlatformClient):
    def __init__(self, *, api_url: str, token: str, api_version: str, timeout_seconds: int = 15) -> None:
        self._api_url = api_url.strip().rstrip("/")
        self._token = token.strip()
        self._api_version = api_version.strip()
        self._timeout = max(int(timeout_seconds), 1)

    @classmethod
    def from_settings(cls) -> GraphqlPlatformClient:
        return cls(
            api_url=settings.parsed_platform_api_url() or "",
            token=settings.platform_api_token,
            api_version=settings.platform_api_version,
            timeout_seconds=settings.platform_timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        return f"{self._api_url}/admin/api/{self._api_version}/graphql.json"

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        if not self._api_url:
            raise PlatformApiError("Platform API URL is not configured")
        if not self._token:
            raise PlatformApiError("Platform API token is empty")

        payload = json.dumps({"query": query, "variables": variables}).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Shopify-Access-Token": self._token,
            "User-Agent": "RewardsLedger/1.0",
        }
        request = Request(url=self.endpoint, data=payload, headers=headers, method="POST")
        timeout = self._timeout

        def _send() -> tuple[int, str]:
            with urlopen(request, timeout=timeout) as response:  # noqa: S310
                return int(response.status), response.read().decode("utf-8")

        try:
            status, raw_body = await asyncio.to_thread(_send)
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            raise PlatformApiError(f"Platform API error: HTTP {exc.code}: {error_body[:400]}") from exc
        except URLError as exc:
            raise PlatformApiError(f"Platform API unavailable: {exc}") from exc

        if status != 200:
            raise PlatformApiError(f"Platform API unexpected status: {status}")

        data = json.loads(raw_body)
        if not isinstance(data, dict):
            raise PlatformApiError("Platform API returned malformed payload")
        errors = data.get("errors")
        if errors:
            raise PlatformApiError(f"Platform API GraphQL errors: {json.dumps(errors)[:400]}")
        return data.get("data") or {}

    async def fetch_order_summary(self, *, order_numeric_id: str) -> OrderSummary | None:
        data = await self._graphql(ORDER_SUMMARY_QUERY, {"id": f"{ORDER_GID_PREFIX}{order_numeric_id}"})
        return order_summary_from_graphql(data.get("order"))

    async def set_customer_balance_fields(
        self,
        *,
        customer_ref: str,
        current_balance: int,
        lifetime_balance: int,
    ) -> MirrorResult:
        owner_id = customer_gid(customer_ref)
        if owner_id is None:
            return MirrorResult(ok=False, skipped=True, errors=["Customer reference is not a platform id"])

        data = await self._graphql(
            SET_BALANCE_MUTATION,
            {
                "metafields": build_balance_metafields(
                    customer_ref=owner_id,
                    current_balance=current_balance,
                    lifetime_balance=lifetime_balance,
                )
            },
        )
        result = data.get("metafieldsSet") or {}
        user_errors = [
            str(item.get("message") or item)
            for item in result.get("userErrors") or []
            if isinstance(item, dict)
        ]
        return MirrorResult(ok=not user_errors, errors=user_errors)


def get_platform_client() -> PlatformClient | None:
    if not settings.parsed_platform_api_url() or not settings.platform_api_token.strip():
        return None
    return GraphqlPlatformClient.from_settings()


async def fetch_order_summary_or_none(
    client: PlatformClient | None,
    *,
    order_numeric_id: str,
) -> OrderSummary | None:
    """Order lookup for refund math; an unavailable platform falls back to ledger snapshots."""
    if client is None:
        return None
    try:
        return await client.fetch_order_summary(order_numeric_id=order_numeric_id)
    except Exception:
        logger.warning("Order summary lookup failed for order %s", order_numeric_id, exc_info=True)
        return None


async def mirror_customer_balance(client: PlatformClient | None, balance: BalanceSnapshot) -> MirrorResult:
    """Best-effort write-back of committed balances; never raises."""
    if client is None or not settings.platform_mirror_enabled:
        return MirrorResult(ok=False, skipped=True)
    if not balance.external_ref:
        logger.info("Skipping balance mirror for customer #%s without external ref", balance.customer_id)
        return MirrorResult(ok=False, skipped=True)

    try:
        result = await client.set_customer_balance_fields(
            customer_ref=balance.external_ref,
            current_balance=balance.current_balance,
            lifetime_balance=balance.lifetime_balance,
        )
    except Exception as exc:
        logger.error("Balance mirror failed for customer #%s: %s", balance.customer_id, exc)
        return MirrorResult(ok=False, errors=[str(exc)])

    if not result.ok and not result.skipped:
        logger.warning(
            "Balance mirror rejected for customer #%s: %s",
            balance.customer_id,
            "; ".join(result.errors),
        )
    return result
