"""Storage interfaces used by the order services.

The services never touch SQLAlchemy directly. The Flask app wires in the
SQL-backed stores from ``sql_store``; unit tests use ``memory_store``.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class ProductRecord:
    id: int
    owner_id: int
    title: str = ""
    price_per_unit: float = 0.0
    available_quantity: int = 0
    listing_status: str = "active"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TransactionRecord:
    id: int | None
    buyer_id: int
    seller_id: int
    product_id: int
    quantity: int
    unit_price: float
    total_amount: float
    shipping_cost: float = 0.0
    shipping_address: str | None = None
    status: str = "pending"
    tracking_reference: str | None = None
    payment_reference: str | None = None
    payment_state: str | None = None
    note: str | None = None
    confirmed_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "product_id": int(self.product_id),
            "quantity": int(self.quantity),
            "unit_price": float(self.unit_price),
            "total_amount": float(self.total_amount),
            "shipping_cost": float(self.shipping_cost or 0.0),
            "shipping_address": self.shipping_address or "",
            "status": self.status,
            "tracking_reference": self.tracking_reference or "",
            "payment_reference": self.payment_reference or "",
            "payment_state": self.payment_state or "",
            "note": self.note or "",
            "confirmed_at": _iso(self.confirmed_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "cancelled_at": _iso(self.cancelled_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class TransitionRecord:
    transaction_id: int
    from_status: str
    to_status: str
    actor_type: str
    actor_id: int | None = None
    reason: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": int(self.transaction_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "reason": self.reason or "",
            "metadata": dict(self.metadata or {}),
            "created_at": _iso(self.created_at),
        }


@dataclass
class CartEntryRecord:
    buyer_id: int
    product_id: int
    quantity: int
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "buyer_id": int(self.buyer_id),
            "product_id": int(self.product_id),
            "quantity": int(self.quantity),
            "created_at": _iso(self.created_at),
        }


@dataclass
class NotificationRecord:
    recipient_id: int
    title: str
    body: str
    category: str
    related_id: int | None = None
    created_at: datetime | None = None


@dataclass
class WebhookEventRecord:
    id: int | None
    provider: str
    event_id: str
    reference: str = ""
    gateway_state: str = ""
    fraud_state: str = ""
    target_status: str = ""
    status: str = "received"
    error: str = ""
    request_id: str = ""
    processed_at: datetime | None = None


class DuplicateEventError(Exception):
    """Raised by ``record_received`` when the provider/event pair is already stored."""


class InventoryStore:
    def get_product(self, product_id: int) -> ProductRecord | None:
        raise NotImplementedError

    def check_available(self, product_id: int, qty: int) -> bool:
        raise NotImplementedError

    def try_decrement(self, product_id: int, qty: int) -> bool:
        """Decrement only when enough stock remains. Returns False untouched otherwise."""
        raise NotImplementedError

    def restore(self, product_id: int, qty: int) -> bool:
        """Increment stock. Returns False when the product does not exist."""
        raise NotImplementedError

    def update_listing(self, product_id: int, changes: dict) -> bool:
        """Apply title, price or visibility edits.

        A requested ``active`` status resolves against the stock at write time:
        an empty listing becomes ``sold_out`` instead.
        """
        raise NotImplementedError


class TransactionStore:
    def create(self, record: TransactionRecord) -> TransactionRecord:
        raise NotImplementedError

    def get(self, transaction_id: int) -> TransactionRecord | None:
        raise NotImplementedError

    def list_for_participant(
        self,
        user_id: int,
        *,
        role: str = "any",
        status: str | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[TransactionRecord], int]:
        raise NotImplementedError

    def count_by_status(self, user_id: int) -> dict[str, int]:
        raise NotImplementedError

    def compare_and_set(self, transaction_id: int, expected_status: str, changes: dict) -> bool:
        """Apply ``changes`` only while the row still holds ``expected_status``."""
        raise NotImplementedError

    def set_payment_fields(self, transaction_id: int, *, reference: str | None = None, state: str | None = None) -> None:
        raise NotImplementedError

    def append_history(self, record: TransitionRecord) -> TransitionRecord:
        raise NotImplementedError

    def list_history(self, transaction_id: int) -> list[TransitionRecord]:
        raise NotImplementedError

    def find_by_payment_reference(self, reference: str) -> TransactionRecord | None:
        raise NotImplementedError

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[TransactionRecord]:
        raise NotImplementedError


class CartStore:
    def add(self, buyer_id: int, product_id: int, quantity: int) -> CartEntryRecord:
        raise NotImplementedError

    def list_for_buyer(self, buyer_id: int) -> list[CartEntryRecord]:
        raise NotImplementedError

    def delete(self, buyer_id: int, product_id: int) -> int:
        raise NotImplementedError


class NotificationSink:
    def enqueue(self, recipient_id: int, title: str, body: str, category: str, related_id: int | None = None) -> None:
        raise NotImplementedError


class WebhookEventStore:
    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None:
        raise NotImplementedError

    def record_received(self, record: WebhookEventRecord, *, payload: dict | None = None) -> WebhookEventRecord:
        """Insert a ``received`` row. Raises DuplicateEventError on a repeat."""
        raise NotImplementedError

    def mark(self, event_row_id: int, *, status: str, target_status: str = "", error: str = "") -> None:
        raise NotImplementedError


class OrderStores:
    """Bundle of the stores one unit of work spans."""

    inventory: InventoryStore
    transactions: TransactionStore
    carts: CartStore
    notifications: NotificationSink
    webhook_events: WebhookEventStore

    @contextmanager
    def atomic(self):
        """Commit everything written inside the block, or nothing."""
        raise NotImplementedError
        yield
