"""Order lifecycle engine.

Single gate for every status change on a transaction. Manual updates from
buyers and sellers, payment reconciliation and the stale pending sweep all
end up in :meth:`OrderLifecycleEngine.transition`, which

1. authorizes the actor against the transaction and the target status,
2. checks the edge against ``TransactionStatus.ALLOWED``,
3. applies the inventory side effect, the status compare-and-swap and the
   history row inside one unit of work,
4. sends notifications once that unit of work has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sikupi.errors import (
    AuthorizationError,
    ConcurrencyError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from sikupi.services.inventory_ledger import InventoryLedger
from sikupi.services.order_status import (
    PERMITTED_ROLES,
    Actor,
    ActorRole,
    TransactionStatus,
    allowed_next,
    normalize_status,
)
from sikupi.stores.base import OrderStores, TransactionRecord, TransitionRecord


logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 500
MAX_TRACKING_LENGTH = 100
MAX_PAGE_SIZE = 100


@dataclass
class TransitionResult:
    transaction: TransactionRecord
    from_status: str
    to_status: str
    actor_role: str
    restored_quantity: int = 0


def optional_text(value, field: str, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", field=field)
    return text or None


def optional_amount(value, field: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return amount


class OrderLifecycleEngine:
    def __init__(self, stores: OrderStores, *, clock=None):
        self.stores = stores
        self.ledger = InventoryLedger(stores.inventory)
        self._clock = clock or datetime.utcnow

    # ------------------------------------------------------------------
    # authorization

    def resolve_role(self, txn: TransactionRecord, actor: Actor) -> str | None:
        if actor is None:
            return None
        if actor.is_system:
            return ActorRole.SYSTEM
        if int(actor.user_id) == int(txn.seller_id):
            return ActorRole.SELLER
        if int(actor.user_id) == int(txn.buyer_id):
            return ActorRole.BUYER
        return None

    def authorize(self, txn: TransactionRecord, actor: Actor, target: str) -> str:
        role = self.resolve_role(txn, actor)
        if role is None:
            raise AuthorizationError("You are not a participant of this transaction")
        permitted = PERMITTED_ROLES.get(target)
        if permitted is not None and role not in permitted:
            raise AuthorizationError(
                f"A {role} cannot mark this order as {target}",
                required_roles=sorted(permitted),
                actor_role=role,
            )
        return role

    def _load(self, transaction_id) -> TransactionRecord:
        txn = self.stores.transactions.get(transaction_id)
        if txn is None:
            raise NotFoundError("transaction", transaction_id)
        return txn

    # ------------------------------------------------------------------
    # reads

    def get_for_participant(self, transaction_id, actor: Actor) -> TransactionRecord:
        txn = self._load(transaction_id)
        if self.resolve_role(txn, actor) is None:
            raise AuthorizationError("You are not authorized to view this transaction")
        return txn

    def history(self, transaction_id, actor: Actor) -> list[TransitionRecord]:
        txn = self.get_for_participant(transaction_id, actor)
        return self.stores.transactions.list_history(txn.id)

    def list_for_participant(self, actor: Actor, *, role: str = "any", status=None, page=1, limit=10):
        if actor is None or actor.is_system:
            raise AuthorizationError("Listing requires a user")
        role = (role or "any").strip().lower()
        if role not in ("any", "buyer", "seller"):
            raise ValidationError("role must be one of any, buyer, seller", field="role")
        status = normalize_status(status) or None
        if status is not None and status not in TransactionStatus.ALL:
            raise ValidationError(f"Unknown status: {status}", field="status")
        try:
            page = int(page)
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationError("page and limit must be integers")
        if page < 1:
            raise ValidationError("page must be at least 1", field="page")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        rows, total = self.stores.transactions.list_for_participant(
            actor.user_id,
            role=role,
            status=status,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return rows, total

    def status_summary(self, actor: Actor) -> dict:
        if actor is None or actor.is_system:
            raise AuthorizationError("Summary requires a user")
        counts = self.stores.transactions.count_by_status(actor.user_id)
        summary = {"total": int(sum(counts.values()))}
        for status in TransactionStatus.ALL:
            summary[status] = int(counts.get(status, 0))
        return summary

    # ------------------------------------------------------------------
    # writes

    def cancel(self, transaction_id, actor: Actor, *, reason: str | None = None, metadata: dict | None = None) -> TransitionResult:
        return self.transition(
            transaction_id,
            TransactionStatus.CANCELLED,
            actor,
            note=reason or "Cancelled by user",
            metadata=metadata,
        )

    def transition(
        self,
        transaction_id,
        target_status,
        actor: Actor,
        *,
        note: str | None = None,
        tracking_reference: str | None = None,
        shipping_cost=None,
        metadata: dict | None = None,
    ) -> TransitionResult:
        target = normalize_status(target_status)
        if target not in TransactionStatus.ALL:
            raise ValidationError(f"Unknown status: {target_status}", field="status")

        txn = self._load(transaction_id)
        role = self.authorize(txn, actor, target)

        current = txn.status
        if target not in allowed_next(current):
            raise StateConflictError(current, target, allowed_next(current))

        note = optional_text(note, "note", MAX_NOTE_LENGTH)
        tracking_reference = optional_text(tracking_reference, "tracking_reference", MAX_TRACKING_LENGTH)
        shipping_cost = optional_amount(shipping_cost, "shipping_cost")

        now = self._clock()
        changes = {
            "status": target,
            TransactionStatus.TIMESTAMP_FIELDS[target]: now,
            "updated_at": now,
        }
        if note is not None:
            changes["note"] = note
        if target == TransactionStatus.SHIPPED:
            if tracking_reference is not None:
                changes["tracking_reference"] = tracking_reference
            if shipping_cost is not None:
                changes["shipping_cost"] = shipping_cost

        restored = 0
        with self.stores.atomic():
            if target == TransactionStatus.CONFIRMED:
                if not self.ledger.try_decrement(txn.product_id, txn.quantity):
                    logger.warning(
                        "transaction_confirm_insufficient_stock id=%s product_id=%s qty=%s actor=%s",
                        txn.id,
                        txn.product_id,
                        txn.quantity,
                        actor.describe(),
                    )
                    raise ConcurrencyError(txn.product_id, txn.quantity)
            elif target == TransactionStatus.CANCELLED and current == TransactionStatus.CONFIRMED:
                self.ledger.restore(txn.product_id, txn.quantity)
                restored = int(txn.quantity)

            if not self.stores.transactions.compare_and_set(txn.id, current, changes):
                latest = self._load(txn.id)
                logger.info(
                    "transaction_transition_lost_race id=%s expected=%s found=%s target=%s",
                    txn.id,
                    current,
                    latest.status,
                    target,
                )
                raise StateConflictError(latest.status, target, allowed_next(latest.status))

            self.stores.transactions.append_history(
                TransitionRecord(
                    transaction_id=int(txn.id),
                    from_status=current,
                    to_status=target,
                    actor_type=role,
                    actor_id=actor.user_id,
                    reason=note,
                    metadata=dict(metadata or {}),
                    created_at=now,
                )
            )

        updated = self._load(txn.id)
        logger.info(
            "transaction_transition id=%s from=%s to=%s actor=%s restored=%s",
            updated.id,
            current,
            target,
            actor.describe(),
            restored,
        )
        self._notify_transition(updated, current, target, role, note)
        return TransitionResult(
            transaction=updated,
            from_status=current,
            to_status=target,
            actor_role=role,
            restored_quantity=restored,
        )

    # ------------------------------------------------------------------
    # notifications

    def notify(self, recipient_id, title: str, body: str, category: str, related_id=None) -> bool:
        """Hand one event to the sink. Failures are logged and reported as False."""
        try:
            self.stores.notifications.enqueue(recipient_id, title, body, category, related_id)
            return True
        except Exception as exc:
            logger.warning(
                "notification_enqueue_failed recipient_id=%s title=%s related_id=%s err=%s",
                recipient_id,
                title,
                related_id,
                exc,
            )
            return False

    def _product_title(self, product_id) -> str:
        try:
            product = self.stores.inventory.get_product(product_id)
        except Exception:
            product = None
        return product.title if product and product.title else "your order"

    def _notify_transition(self, txn: TransactionRecord, current: str, target: str, role: str, note) -> None:
        title = self._product_title(txn.product_id)
        tid = txn.id
        if target == TransactionStatus.CONFIRMED:
            if role == ActorRole.SYSTEM:
                self.notify(txn.buyer_id, "Payment Confirmed", f"Your payment for {title} has been confirmed", "payment", tid)
                self.notify(txn.seller_id, "Payment Received", f"Payment received for order #{tid} ({title})", "payment", tid)
            else:
                self.notify(txn.buyer_id, "Order Confirmed", f"Your order for {title} has been confirmed by the seller", "order_update", tid)
        elif target == TransactionStatus.SHIPPED:
            body = f"Your order for {title} has been shipped"
            if txn.tracking_reference:
                body += f" (tracking: {txn.tracking_reference})"
            self.notify(txn.buyer_id, "Order Shipped", body, "order_update", tid)
        elif target == TransactionStatus.DELIVERED:
            self.notify(txn.seller_id, "Order Delivered", f"Order #{tid} for {title} has been delivered", "order_update", tid)
        elif target == TransactionStatus.CANCELLED:
            body = f"Order #{tid} for {title} has been cancelled"
            if note:
                body += f": {note}"
            if role == ActorRole.BUYER:
                recipients = [txn.seller_id]
            elif role == ActorRole.SELLER:
                recipients = [txn.buyer_id]
            else:
                recipients = [txn.buyer_id, txn.seller_id]
            for recipient in recipients:
                self.notify(recipient, "Order Cancelled", body, "order_update", tid)
