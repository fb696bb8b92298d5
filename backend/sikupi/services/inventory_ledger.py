from __future__ import annotations

import logging

from sikupi.errors import NotFoundError, ValidationError
from sikupi.stores.base import InventoryStore, ProductRecord


logger = logging.getLogger(__name__)


def positive_quantity(qty) -> int:
    if isinstance(qty, bool):
        raise ValidationError("quantity must be a positive integer", field="quantity")
    try:
        value = int(qty)
    except (TypeError, ValueError):
        raise ValidationError("quantity must be a positive integer", field="quantity")
    if value != qty and not isinstance(qty, str):
        raise ValidationError("quantity must be a whole number", field="quantity")
    if value <= 0:
        raise ValidationError("quantity must be greater than zero", field="quantity")
    return value


class InventoryLedger:
    """Per-product stock counter. Only confirmation and cancellation move it."""

    def __init__(self, store: InventoryStore):
        self.store = store

    def product(self, product_id) -> ProductRecord:
        row = self.store.get_product(product_id)
        if row is None:
            raise NotFoundError("product", product_id)
        return row

    def check_available(self, product_id, qty) -> bool:
        qty = positive_quantity(qty)
        self.product(product_id)
        return bool(self.store.check_available(product_id, qty))

    def try_decrement(self, product_id, qty) -> bool:
        qty = positive_quantity(qty)
        if self.store.try_decrement(product_id, qty):
            logger.info("inventory_decremented product_id=%s qty=%s", product_id, qty)
            return True
        # Tell a missing product apart from a stock shortfall.
        self.product(product_id)
        logger.info("inventory_decrement_refused product_id=%s qty=%s", product_id, qty)
        return False

    def restore(self, product_id, qty) -> None:
        qty = positive_quantity(qty)
        if not self.store.restore(product_id, qty):
            raise NotFoundError("product", product_id)
        logger.info("inventory_restored product_id=%s qty=%s", product_id, qty)
