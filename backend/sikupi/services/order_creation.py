from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sikupi.errors import ValidationError
from sikupi.services.inventory_ledger import InventoryLedger, positive_quantity
from sikupi.services.order_lifecycle import MAX_NOTE_LENGTH, optional_text
from sikupi.services.order_status import ActorRole, TransactionStatus
from sikupi.stores.base import OrderStores, TransactionRecord, TransitionRecord


logger = logging.getLogger(__name__)

MAX_ADDRESS_LENGTH = 500


@dataclass
class OrderCreationResult:
    transaction: TransactionRecord
    warnings: list[str] = field(default_factory=list)


class CartToOrderConverter:
    """Turns a cart selection into a pending transaction.

    Stock is only checked here, never reserved; it is bound when the
    seller (or payment) confirms the order.
    """

    def __init__(self, stores: OrderStores, *, clock=None):
        self.stores = stores
        self.ledger = InventoryLedger(stores.inventory)
        self._clock = clock or datetime.utcnow

    def create_order(self, *, buyer_id, product_id, quantity, shipping_address=None, note=None) -> OrderCreationResult:
        if buyer_id is None:
            raise ValidationError("buyer is required", field="buyer_id")
        if product_id is None or product_id == "":
            raise ValidationError("product_id is required", field="product_id")
        try:
            product_id = int(product_id)
        except (TypeError, ValueError):
            raise ValidationError("product_id must be an integer", field="product_id")
        qty = positive_quantity(quantity)
        shipping_address = optional_text(shipping_address, "shipping_address", MAX_ADDRESS_LENGTH)
        note = optional_text(note, "notes", MAX_NOTE_LENGTH)

        product = self.ledger.product(product_id)
        if product.listing_status != "active":
            raise ValidationError("This product is currently not available for purchase", listing_status=product.listing_status)
        if int(product.owner_id) == int(buyer_id):
            raise ValidationError("You cannot purchase your own product")
        if not self.ledger.check_available(product_id, qty):
            raise ValidationError(
                f"Insufficient quantity. Only {product.available_quantity} unit(s) available",
                available_quantity=int(product.available_quantity),
            )

        unit_price = float(product.price_per_unit)
        now = self._clock()
        record = TransactionRecord(
            id=None,
            buyer_id=int(buyer_id),
            seller_id=int(product.owner_id),
            product_id=product_id,
            quantity=qty,
            unit_price=unit_price,
            total_amount=round(qty * unit_price, 2),
            shipping_address=shipping_address,
            status=TransactionStatus.PENDING,
            note=note,
            created_at=now,
            updated_at=now,
        )
        with self.stores.atomic():
            created = self.stores.transactions.create(record)
            self.stores.transactions.append_history(
                TransitionRecord(
                    transaction_id=int(created.id),
                    from_status="",
                    to_status=TransactionStatus.PENDING,
                    actor_type=ActorRole.BUYER,
                    actor_id=int(buyer_id),
                    reason="order_created",
                    created_at=now,
                )
            )
        logger.info(
            "transaction_created id=%s buyer_id=%s seller_id=%s product_id=%s qty=%s total=%s",
            created.id,
            created.buyer_id,
            created.seller_id,
            product_id,
            qty,
            created.total_amount,
        )

        result = OrderCreationResult(transaction=created)
        try:
            with self.stores.atomic():
                self.stores.carts.delete(buyer_id, product_id)
        except Exception as exc:
            logger.warning("cart_clear_failed buyer_id=%s product_id=%s err=%s", buyer_id, product_id, exc)
            result.warnings.append("cart_not_cleared")

        try:
            self.stores.notifications.enqueue(
                created.seller_id,
                "New Order Received",
                f"You have received a new order for {product.title}",
                "order",
                created.id,
            )
        except Exception as exc:
            logger.warning("notification_enqueue_failed recipient_id=%s related_id=%s err=%s", created.seller_id, created.id, exc)
        return result
