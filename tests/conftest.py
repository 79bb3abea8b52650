from __future__ import annotations

import itertools
from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from rewards.db.enums import LOT_ENTRY_TYPES, LedgerEntryType, LedgerReasonCode
from rewards.db.models import Customer, LedgerEntry
from rewards.services import balance_projection, ledger_store


class MemoryLedgerStore:
    """Dict-backed stand-in for ``rewards.services.ledger_store``; locking arguments are ignored."""

    def __init__(self) -> None:
        self.customers: dict[int, Customer] = {}
        self.entries: list[LedgerEntry] = []
        self._customer_ids = itertools.count(1)
        self._entry_ids = itertools.count(1)

    def add_customer(
        self,
        *,
        email: str,
        external_ref: str | None = None,
        name: str | None = None,
        created_at: datetime | None = None,
    ) -> Customer:
        customer = Customer(
            id=next(self._customer_ids),
            email=ledger_store.normalize_email(email),
            external_ref=external_ref,
            name=name,
            current_balance=0,
            lifetime_balance=0,
        )
        customer.created_at = created_at or datetime.now(UTC)
        self.customers[customer.id] = customer
        return customer

    def add_lot(
        self,
        customer: Customer,
        amount: int,
        *,
        created_at: datetime,
        entry_type: LedgerEntryType = LedgerEntryType.EARN,
        reason_code: LedgerReasonCode = LedgerReasonCode.ORDER_PAID,
        expires_at: datetime | None = None,
        order_id: str | None = None,
        earn_rate: int | None = None,
        order_total_cents: int | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            id=next(self._entry_ids),
            customer_id=customer.id,
            type=entry_type,
            reason_code=reason_code,
            amount_delta=amount,
            remaining_amount=amount,
            expires_at=expires_at,
            order_id=order_id,
            earn_rate=earn_rate,
            order_total_cents=order_total_cents,
            notes="",
            created_at=created_at,
            updated_at=created_at,
        )
        self.entries.append(entry)
        balance_projection.apply_entry(customer, entry)
        return entry

    def entries_for(self, customer_id: int) -> list[LedgerEntry]:
        return [entry for entry in self.entries if entry.customer_id == customer_id]

    def lot(self, lot_id: int) -> LedgerEntry:
        return next(entry for entry in self.entries if entry.id == lot_id)

    async def get_customer(self, session, *, customer_id, for_update=False):
        return self.customers.get(customer_id)

    async def find_customer_by_email(self, session, *, email, for_update=False):
        normalized = ledger_store.normalize_email(email)
        return next((item for item in self.customers.values() if item.email == normalized), None)

    async def find_customer_by_external_ref(self, session, *, external_ref, for_update=False):
        return next((item for item in self.customers.values() if item.external_ref == external_ref), None)

    async def create_customer(self, session, *, email, external_ref=None, name=None):
        return self.add_customer(email=email, external_ref=external_ref, name=name)

    async def append_entry(self, session, entry):
        entry.id = next(self._entry_ids)
        if entry.notes is None:
            entry.notes = ""
        if entry.created_at is None:
            entry.created_at = datetime.now(UTC)
        self.entries.append(entry)
        return entry

    async def decrement_lot_remaining(self, session, *, lot, amount):
        if amount <= 0:
            raise ValueError("Decrement amount must be positive")
        stored = self.lot(lot.id)
        if stored.remaining_amount is None or stored.remaining_amount < amount:
            raise ledger_store.LotOverdrawError(lot.id, amount)
        stored.remaining_amount -= amount
        lot.remaining_amount = stored.remaining_amount
        return stored.remaining_amount

    async def find_entry(
        self,
        session,
        *,
        entry_type,
        customer_id=None,
        order_id=None,
        reason_codes=None,
        related_external_id=None,
    ):
        for entry in self.entries:
            if entry.type != entry_type:
                continue
            if customer_id is not None and entry.customer_id != customer_id:
                continue
            if order_id is not None and entry.order_id != order_id:
                continue
            if reason_codes and entry.reason_code not in tuple(reason_codes):
                continue
            if related_external_id is not None and entry.related_external_id != related_external_id:
                continue
            return entry
        return None

    async def sum_entry_amounts(self, session, *, entry_type, order_id, customer_id=None, reason_code=None):
        return sum(
            entry.amount_delta
            for entry in self.entries
            if entry.type == entry_type
            and entry.order_id == order_id
            and (customer_id is None or entry.customer_id == customer_id)
            and (reason_code is None or entry.reason_code == reason_code)
        )

    def _lots(self, customer_id):
        lots = [
            entry
            for entry in self.entries
            if entry.customer_id == customer_id
            and entry.type in LOT_ENTRY_TYPES
            and entry.remaining_amount is not None
        ]
        return sorted(lots, key=lambda item: (item.created_at, item.id))

    async def list_eligible_lots(self, session, *, customer_id, as_of, lot_ids=None, for_update=True):
        return [
            lot
            for lot in self._lots(customer_id)
            if lot.remaining_amount > 0
            and (lot.expires_at is None or lot.expires_at > as_of)
            and (lot_ids is None or lot.id in lot_ids)
        ]

    async def get_lot(self, session, *, lot_id, for_update=True):
        return next(
            (entry for entry in self.entries if entry.id == lot_id and entry.remaining_amount is not None),
            None,
        )

    def _expired(self, lot, as_of):
        return lot.remaining_amount > 0 and lot.expires_at is not None and lot.expires_at <= as_of

    async def list_expired_lot_customer_ids(self, session, *, as_of, limit=500):
        ids = sorted(
            {
                entry.customer_id
                for entry in self.entries
                if entry.type in LOT_ENTRY_TYPES
                and entry.remaining_amount is not None
                and self._expired(entry, as_of)
            }
        )
        return ids[:limit]

    async def list_expired_lots(self, session, *, as_of, customer_id, for_update=True):
        lots = [lot for lot in self._lots(customer_id) if self._expired(lot, as_of)]
        return sorted(lots, key=lambda item: (item.expires_at, item.id))

    async def list_customer_entries(self, session, *, customer_id, limit=50, offset=0):
        entries = sorted(
            self.entries_for(customer_id),
            key=lambda item: (item.created_at, item.id),
            reverse=True,
        )
        return entries[offset : offset + limit]

    async def count_customer_entries(self, session, *, customer_id):
        return len(self.entries_for(customer_id))

    async def sum_customer_deltas(self, session, *, customer_id):
        return sum(entry.amount_delta for entry in self.entries_for(customer_id))

    async def sum_lot_depletions(self, session, *, customer_id):
        totals: dict[int, int] = {}
        for entry in self.entries_for(customer_id):
            if entry.source_lot_id is not None and entry.amount_delta < 0:
                totals[entry.source_lot_id] = totals.get(entry.source_lot_id, 0) - entry.amount_delta
        return totals

    async def list_customer_lots(self, session, *, customer_id):
        return self._lots(customer_id)

    def _matches(self, customer, query):
        normalized = query.strip().lower()
        if not normalized:
            return True
        if normalized in (customer.email or "").lower() or normalized in (customer.name or "").lower():
            return True
        if normalized.lstrip("-").isdigit():
            return int(normalized) in {customer.current_balance, customer.lifetime_balance}
        return False

    async def search_customers(self, session, *, query="", limit=50, offset=0):
        items = sorted(
            (item for item in self.customers.values() if self._matches(item, query)),
            key=lambda item: (item.created_at, item.id),
            reverse=True,
        )
        return items[offset : offset + limit]

    async def count_customers(self, session, *, query=""):
        return sum(1 for item in self.customers.values() if self._matches(item, query))

    async def list_customer_ids(self, session):
        return sorted(self.customers)


STORE_FUNCTIONS = (
    "get_customer",
    "find_customer_by_email",
    "find_customer_by_external_ref",
    "create_customer",
    "append_entry",
    "decrement_lot_remaining",
    "find_entry",
    "sum_entry_amounts",
    "list_eligible_lots",
    "get_lot",
    "list_expired_lot_customer_ids",
    "list_expired_lots",
    "list_customer_entries",
    "count_customer_entries",
    "sum_customer_deltas",
    "sum_lot_depletions",
    "list_customer_lots",
    "search_customers",
    "count_customers",
    "list_customer_ids",
)


@pytest.fixture
def memory_store(monkeypatch) -> MemoryLedgerStore:
    store = MemoryLedgerStore()
    for name in STORE_FUNCTIONS:
        monkeypatch.setattr(ledger_store, name, getattr(store, name))
    return store


@pytest.fixture
def fake_session() -> SimpleNamespace:
    return SimpleNamespace()
