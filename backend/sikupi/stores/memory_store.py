"""In-process stores for unit tests and local experiments.

Every operation runs under one re-entrant lock. ``atomic()`` holds that lock
for the whole block and puts the previous state back if the block raises.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from sikupi.stores.base import (
    CartEntryRecord,
    CartStore,
    DuplicateEventError,
    InventoryStore,
    NotificationRecord,
    NotificationSink,
    OrderStores,
    ProductRecord,
    TransactionRecord,
    TransactionStore,
    TransitionRecord,
    WebhookEventRecord,
    WebhookEventStore,
)


class MemoryState:
    def __init__(self):
        self.lock = threading.RLock()
        self.products: dict[int, ProductRecord] = {}
        self.transactions: dict[int, TransactionRecord] = {}
        self.history: list[TransitionRecord] = []
        self.carts: dict[tuple[int, int], CartEntryRecord] = {}
        self.notifications: list[NotificationRecord] = []
        self.webhook_events: dict[int, WebhookEventRecord] = {}
        self.payloads: dict[int, dict] = {}
        self.counters = {"transaction": 0, "history": 0, "webhook": 0}

    _SNAPSHOT_FIELDS = ("products", "transactions", "history", "carts", "webhook_events", "payloads", "counters")

    def snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._SNAPSHOT_FIELDS}

    def restore(self, snap: dict) -> None:
        for name, value in snap.items():
            setattr(self, name, value)

    def next_id(self, kind: str) -> int:
        self.counters[kind] += 1
        return self.counters[kind]


class MemoryInventoryStore(InventoryStore):
    def __init__(self, state: MemoryState):
        self.state = state

    def add_product(self, record: ProductRecord) -> ProductRecord:
        with self.state.lock:
            self.state.products[int(record.id)] = replace(record)
            return replace(record)

    def get_product(self, product_id):
        with self.state.lock:
            row = self.state.products.get(int(product_id))
            return replace(row) if row else None

    def check_available(self, product_id, qty):
        with self.state.lock:
            row = self.state.products.get(int(product_id))
            return row is not None and row.available_quantity >= int(qty)

    def try_decrement(self, product_id, qty):
        with self.state.lock:
            row = self.state.products.get(int(product_id))
            if row is None or row.available_quantity < int(qty):
                return False
            row.available_quantity -= int(qty)
            if row.available_quantity == 0 and row.listing_status == "active":
                row.listing_status = "sold_out"
            return True

    def restore(self, product_id, qty):
        with self.state.lock:
            row = self.state.products.get(int(product_id))
            if row is None:
                return False
            row.available_quantity += int(qty)
            if row.listing_status == "sold_out":
                row.listing_status = "active"
            return True

    def update_listing(self, product_id, changes):
        with self.state.lock:
            row = self.state.products.get(int(product_id))
            if row is None:
                return False
            for name, value in changes.items():
                if name == "listing_status" and value == "active" and row.available_quantity == 0:
                    value = "sold_out"
                setattr(row, name, value)
            return True


class MemoryTransactionStore(TransactionStore):
    def __init__(self, state: MemoryState):
        self.state = state

    def create(self, record):
        with self.state.lock:
            now = datetime.utcnow()
            row = replace(
                record,
                id=self.state.next_id("transaction"),
                created_at=record.created_at or now,
                updated_at=record.updated_at or now,
            )
            self.state.transactions[row.id] = row
            return replace(row)

    def get(self, transaction_id):
        with self.state.lock:
            row = self.state.transactions.get(int(transaction_id))
            return replace(row) if row else None

    def _matches(self, row: TransactionRecord, user_id: int, role: str) -> bool:
        if role == "buyer":
            return row.buyer_id == int(user_id)
        if role == "seller":
            return row.seller_id == int(user_id)
        return int(user_id) in (row.buyer_id, row.seller_id)

    def list_for_participant(self, user_id, *, role="any", status=None, offset=0, limit=10):
        with self.state.lock:
            rows = [
                r for r in self.state.transactions.values()
                if self._matches(r, user_id, role) and (not status or r.status == status)
            ]
            rows.sort(key=lambda r: (r.created_at or datetime.min, r.id), reverse=True)
            page = rows[int(offset):int(offset) + int(limit)]
            return [replace(r) for r in page], len(rows)

    def count_by_status(self, user_id):
        with self.state.lock:
            counts: dict[str, int] = {}
            for row in self.state.transactions.values():
                if self._matches(row, user_id, "any"):
                    counts[row.status] = counts.get(row.status, 0) + 1
            return counts

    def compare_and_set(self, transaction_id, expected_status, changes):
        with self.state.lock:
            row = self.state.transactions.get(int(transaction_id))
            if row is None or row.status != expected_status:
                return False
            for name, value in changes.items():
                setattr(row, name, value)
            if "updated_at" not in changes:
                row.updated_at = datetime.utcnow()
            return True

    def set_payment_fields(self, transaction_id, *, reference=None, state=None):
        with self.state.lock:
            row = self.state.transactions.get(int(transaction_id))
            if row is None:
                return
            if reference is not None:
                row.payment_reference = reference
            if state is not None:
                row.payment_state = state

    def append_history(self, record):
        with self.state.lock:
            row = replace(
                record,
                id=self.state.next_id("history"),
                metadata=dict(record.metadata or {}),
                created_at=record.created_at or datetime.utcnow(),
            )
            self.state.history.append(row)
            return replace(row)

    def list_history(self, transaction_id):
        with self.state.lock:
            return [replace(r) for r in self.state.history if r.transaction_id == int(transaction_id)]

    def find_by_payment_reference(self, reference):
        with self.state.lock:
            for row in self.state.transactions.values():
                if reference and row.payment_reference == reference:
                    return replace(row)
            return None

    def list_stale_pending(self, older_than, limit=100):
        with self.state.lock:
            rows = [
                r for r in self.state.transactions.values()
                if r.status == "pending" and r.created_at is not None and r.created_at < older_than
            ]
            rows.sort(key=lambda r: (r.created_at, r.id))
            return [replace(r) for r in rows[: int(limit)]]


class MemoryCartStore(CartStore):
    def __init__(self, state: MemoryState):
        self.state = state

    def add(self, buyer_id, product_id, quantity):
        with self.state.lock:
            key = (int(buyer_id), int(product_id))
            row = self.state.carts.get(key)
            if row is None:
                row = CartEntryRecord(buyer_id=key[0], product_id=key[1], quantity=0, created_at=datetime.utcnow())
                self.state.carts[key] = row
            row.quantity += int(quantity)
            return replace(row)

    def list_for_buyer(self, buyer_id):
        with self.state.lock:
            return [replace(r) for (b, _), r in self.state.carts.items() if b == int(buyer_id)]

    def delete(self, buyer_id, product_id):
        with self.state.lock:
            return 1 if self.state.carts.pop((int(buyer_id), int(product_id)), None) else 0


class MemoryNotificationSink(NotificationSink):
    def __init__(self, state: MemoryState):
        self.state = state

    def enqueue(self, recipient_id, title, body, category, related_id=None):
        with self.state.lock:
            self.state.notifications.append(
                NotificationRecord(
                    recipient_id=int(recipient_id),
                    title=title,
                    body=body,
                    category=category,
                    related_id=related_id,
                    created_at=datetime.utcnow(),
                )
            )

    def for_recipient(self, recipient_id: int) -> list[NotificationRecord]:
        with self.state.lock:
            return [n for n in self.state.notifications if n.recipient_id == int(recipient_id)]


class MemoryWebhookEventStore(WebhookEventStore):
    def __init__(self, state: MemoryState):
        self.state = state

    def get(self, provider, event_id):
        with self.state.lock:
            for row in self.state.webhook_events.values():
                if row.provider == provider and row.event_id == event_id:
                    return replace(row)
            return None

    def record_received(self, record, *, payload=None):
        with self.state.lock:
            if self.get(record.provider, record.event_id) is not None:
                raise DuplicateEventError(f"{record.provider}:{record.event_id}")
            row = replace(record, id=self.state.next_id("webhook"), status="received")
            self.state.webhook_events[row.id] = row
            self.state.payloads[row.id] = dict(payload or {})
            return replace(row)

    def mark(self, event_row_id, *, status, target_status="", error=""):
        with self.state.lock:
            row = self.state.webhook_events.get(int(event_row_id))
            if row is None:
                return
            row.status = status
            row.target_status = target_status or ""
            row.error = error or ""
            row.processed_at = datetime.utcnow()

    def all(self) -> list[WebhookEventRecord]:
        with self.state.lock:
            return [replace(r) for r in self.state.webhook_events.values()]


class MemoryOrderStores(OrderStores):
    def __init__(self, state: MemoryState | None = None):
        self.state = state or MemoryState()
        self.inventory = MemoryInventoryStore(self.state)
        self.transactions = MemoryTransactionStore(self.state)
        self.carts = MemoryCartStore(self.state)
        self.notifications = MemoryNotificationSink(self.state)
        self.webhook_events = MemoryWebhookEventStore(self.state)

    @contextmanager
    def atomic(self):
        with self.state.lock:
            snap = self.state.snapshot()
            try:
                yield self
            except Exception:
                self.state.restore(snap)
                raise
