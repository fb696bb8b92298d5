from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from sikupi.extensions import db
from sikupi.models import CartItem, Notification, Product, Transaction, TransactionTransition, WebhookEvent
from sikupi.stores.base import (
    CartEntryRecord,
    CartStore,
    DuplicateEventError,
    InventoryStore,
    NotificationSink,
    OrderStores,
    ProductRecord,
    TransactionRecord,
    TransactionStore,
    TransitionRecord,
    WebhookEventRecord,
    WebhookEventStore,
)


_TRANSACTION_FIELDS = (
    "buyer_id",
    "seller_id",
    "product_id",
    "quantity",
    "unit_price",
    "total_amount",
    "shipping_cost",
    "shipping_address",
    "status",
    "tracking_reference",
    "payment_reference",
    "payment_state",
    "note",
    "confirmed_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
    "created_at",
    "updated_at",
)


def _product_record(row: Product) -> ProductRecord:
    return ProductRecord(
        id=int(row.id),
        owner_id=int(row.owner_id),
        title=row.title or "",
        price_per_unit=float(row.price_per_unit or 0.0),
        available_quantity=int(row.available_quantity or 0),
        listing_status=row.listing_status or "active",
    )


def _transaction_record(row: Transaction) -> TransactionRecord:
    values = {name: getattr(row, name) for name in _TRANSACTION_FIELDS}
    return TransactionRecord(id=int(row.id), **values)


def _transition_record(row: TransactionTransition) -> TransitionRecord:
    try:
        metadata = json.loads(row.metadata_json) if row.metadata_json else {}
    except Exception:
        metadata = {}
    return TransitionRecord(
        id=int(row.id),
        transaction_id=int(row.transaction_id),
        from_status=row.from_status or "",
        to_status=row.to_status,
        actor_type=row.actor_type,
        actor_id=row.actor_id,
        reason=row.reason,
        metadata=metadata,
        created_at=row.created_at,
    )


def _webhook_record(row: WebhookEvent) -> WebhookEventRecord:
    return WebhookEventRecord(
        id=int(row.id),
        provider=row.provider,
        event_id=row.event_id,
        reference=row.reference or "",
        gateway_state=row.gateway_state or "",
        fraud_state=row.fraud_state or "",
        target_status=row.target_status or "",
        status=row.status or "received",
        error=row.error or "",
        request_id=row.request_id or "",
        processed_at=row.processed_at,
    )


class SqlInventoryStore(InventoryStore):
    def get_product(self, product_id: int) -> ProductRecord | None:
        row = db.session.get(Product, int(product_id), populate_existing=True)
        return _product_record(row) if row else None

    def check_available(self, product_id: int, qty: int) -> bool:
        available = db.session.execute(
            sa.select(Product.available_quantity).where(Product.id == int(product_id))
        ).scalar()
        return available is not None and int(available) >= int(qty)

    def try_decrement(self, product_id: int, qty: int) -> bool:
        qty = int(qty)
        remaining = Product.available_quantity - qty
        stmt = (
            sa.update(Product)
            .where(Product.id == int(product_id), Product.available_quantity >= qty)
            .values(
                available_quantity=remaining,
                listing_status=sa.case(
                    (sa.and_(remaining == 0, Product.listing_status == "active"), "sold_out"),
                    else_=Product.listing_status,
                ),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        return int(result.rowcount or 0) == 1

    def restore(self, product_id: int, qty: int) -> bool:
        stmt = (
            sa.update(Product)
            .where(Product.id == int(product_id))
            .values(
                available_quantity=Product.available_quantity + int(qty),
                listing_status=sa.case(
                    (Product.listing_status == "sold_out", "active"),
                    else_=Product.listing_status,
                ),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        return int(result.rowcount or 0) == 1

    def update_listing(self, product_id: int, changes: dict) -> bool:
        values = dict(changes)
        if values.get("listing_status") == "active":
            # Resolved in the UPDATE so a concurrent confirmation cannot leave an empty active listing.
            values["listing_status"] = sa.case((Product.available_quantity == 0, "sold_out"), else_="active")
        values["updated_at"] = datetime.utcnow()
        stmt = (
            sa.update(Product)
            .where(Product.id == int(product_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        return int(result.rowcount or 0) == 1


class SqlTransactionStore(TransactionStore):
    def create(self, record: TransactionRecord) -> TransactionRecord:
        values = {name: getattr(record, name) for name in _TRANSACTION_FIELDS}
        now = datetime.utcnow()
        values["created_at"] = values.get("created_at") or now
        values["updated_at"] = values.get("updated_at") or now
        row = Transaction(**values)
        db.session.add(row)
        db.session.flush()
        return _transaction_record(row)

    def get(self, transaction_id: int) -> TransactionRecord | None:
        row = db.session.get(Transaction, int(transaction_id), populate_existing=True)
        return _transaction_record(row) if row else None

    def _participant_filter(self, user_id: int, role: str):
        if role == "buyer":
            return Transaction.buyer_id == int(user_id)
        if role == "seller":
            return Transaction.seller_id == int(user_id)
        return sa.or_(Transaction.buyer_id == int(user_id), Transaction.seller_id == int(user_id))

    def list_for_participant(self, user_id, *, role="any", status=None, offset=0, limit=10):
        query = sa.select(Transaction).where(self._participant_filter(user_id, role))
        if status:
            query = query.where(Transaction.status == status)
        total = db.session.execute(
            sa.select(sa.func.count()).select_from(query.subquery())
        ).scalar() or 0
        rows = db.session.execute(
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(int(offset))
            .limit(int(limit))
        ).scalars().all()
        return [_transaction_record(r) for r in rows], int(total)

    def count_by_status(self, user_id: int) -> dict[str, int]:
        rows = db.session.execute(
            sa.select(Transaction.status, sa.func.count(Transaction.id))
            .where(self._participant_filter(user_id, "any"))
            .group_by(Transaction.status)
        ).all()
        return {str(status): int(count) for status, count in rows}

    def compare_and_set(self, transaction_id: int, expected_status: str, changes: dict) -> bool:
        values = dict(changes)
        values.setdefault("updated_at", datetime.utcnow())
        stmt = (
            sa.update(Transaction)
            .where(Transaction.id == int(transaction_id), Transaction.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        return int(result.rowcount or 0) == 1

    def set_payment_fields(self, transaction_id: int, *, reference=None, state=None) -> None:
        values = {}
        if reference is not None:
            values["payment_reference"] = reference
        if state is not None:
            values["payment_state"] = state
        if not values:
            return
        values["updated_at"] = datetime.utcnow()
        db.session.execute(
            sa.update(Transaction)
            .where(Transaction.id == int(transaction_id))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def append_history(self, record: TransitionRecord) -> TransitionRecord:
        row = TransactionTransition(
            transaction_id=int(record.transaction_id),
            from_status=record.from_status or "",
            to_status=record.to_status,
            actor_type=record.actor_type,
            actor_id=record.actor_id,
            reason=(record.reason or "")[:240] or None,
            metadata_json=json.dumps(record.metadata or {}, default=str),
            created_at=record.created_at or datetime.utcnow(),
        )
        db.session.add(row)
        db.session.flush()
        return _transition_record(row)

    def list_history(self, transaction_id: int) -> list[TransitionRecord]:
        rows = db.session.execute(
            sa.select(TransactionTransition)
            .where(TransactionTransition.transaction_id == int(transaction_id))
            .order_by(TransactionTransition.id.asc())
        ).scalars().all()
        return [_transition_record(r) for r in rows]

    def find_by_payment_reference(self, reference: str) -> TransactionRecord | None:
        if not reference:
            return None
        row = db.session.execute(
            sa.select(Transaction).where(Transaction.payment_reference == str(reference))
        ).scalars().first()
        if row is None:
            return None
        db.session.refresh(row)
        return _transaction_record(row)

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[TransactionRecord]:
        rows = db.session.execute(
            sa.select(Transaction)
            .where(Transaction.status == "pending", Transaction.created_at < older_than)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            .limit(int(limit))
        ).scalars().all()
        return [_transaction_record(r) for r in rows]


class SqlCartStore(CartStore):
    def add(self, buyer_id: int, product_id: int, quantity: int) -> CartEntryRecord:
        row = CartItem.query.filter_by(buyer_id=int(buyer_id), product_id=int(product_id)).first()
        if row is None:
            row = CartItem(buyer_id=int(buyer_id), product_id=int(product_id), quantity=int(quantity))
            db.session.add(row)
        else:
            row.quantity = int(row.quantity or 0) + int(quantity)
        db.session.flush()
        return CartEntryRecord(
            buyer_id=int(row.buyer_id),
            product_id=int(row.product_id),
            quantity=int(row.quantity),
            created_at=row.created_at,
        )

    def list_for_buyer(self, buyer_id: int) -> list[CartEntryRecord]:
        rows = CartItem.query.filter_by(buyer_id=int(buyer_id)).order_by(CartItem.created_at.desc()).all()
        return [
            CartEntryRecord(
                buyer_id=int(r.buyer_id),
                product_id=int(r.product_id),
                quantity=int(r.quantity),
                created_at=r.created_at,
            )
            for r in rows
        ]

    def delete(self, buyer_id: int, product_id: int) -> int:
        result = db.session.execute(
            sa.delete(CartItem)
            .where(CartItem.buyer_id == int(buyer_id), CartItem.product_id == int(product_id))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class SqlNotificationSink(NotificationSink):
    """Writes notification rows in their own commit, after the order commit."""

    def enqueue(self, recipient_id, title, body, category, related_id=None) -> None:
        try:
            db.session.add(
                Notification(
                    user_id=int(recipient_id),
                    title=(title or "")[:160],
                    message=body or "",
                    category=(category or "order_update")[:32],
                    related_id=int(related_id) if related_id is not None else None,
                    is_read=False,
                    created_at=datetime.utcnow(),
                )
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


class SqlWebhookEventStore(WebhookEventStore):
    def get(self, provider: str, event_id: str) -> WebhookEventRecord | None:
        row = WebhookEvent.query.filter_by(provider=provider, event_id=event_id).first()
        if row is None:
            return None
        db.session.refresh(row)
        return _webhook_record(row)

    def record_received(self, record: WebhookEventRecord, *, payload: dict | None = None) -> WebhookEventRecord:
        row = WebhookEvent(
            provider=record.provider,
            event_id=record.event_id,
            reference=(record.reference or "")[:128] or None,
            gateway_state=(record.gateway_state or "")[:32] or None,
            fraud_state=(record.fraud_state or "")[:32] or None,
            status="received",
            request_id=(record.request_id or "")[:64] or None,
            payload_json=json.dumps(payload or {}, default=str),
            created_at=datetime.utcnow(),
        )
        db.session.add(row)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise DuplicateEventError(f"{record.provider}:{record.event_id}") from exc
        return _webhook_record(row)

    def mark(self, event_row_id: int, *, status: str, target_status: str = "", error: str = "") -> None:
        db.session.execute(
            sa.update(WebhookEvent)
            .where(WebhookEvent.id == int(event_row_id))
            .values(
                status=status,
                target_status=(target_status or None),
                error=(error or "")[:1000] or None,
                processed_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )


class SqlOrderStores(OrderStores):
    def __init__(self):
        self.inventory = SqlInventoryStore()
        self.transactions = SqlTransactionStore()
        self.carts = SqlCartStore()
        self.notifications = SqlNotificationSink()
        self.webhook_events = SqlWebhookEventStore()

    @contextmanager
    def atomic(self):
        try:
            yield self
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
