from __future__ import annotations

import os
import unittest
from datetime import datetime
from unittest.mock import patch

from sikupi import create_app
from sikupi.extensions import db
from sikupi.models import Product
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.order_status import Actor
from sikupi.stores import DuplicateEventError, TransactionRecord, WebhookEventRecord
from sikupi.stores.sql_store import SqlOrderStores


class SqlOrderStoresTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._env = patch.dict(
            os.environ,
            {"SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:", "DATABASE_URL": "sqlite:///:memory:"},
            clear=False,
        )
        cls._env.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)

    @classmethod
    def tearDownClass(cls):
        cls._env.stop()

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.drop_all()
        db.create_all()
        self.stores = SqlOrderStores()
        product = Product(
            owner_id=1,
            title="Cardboard bale",
            price_per_unit=800.0,
            available_quantity=3,
            listing_status="active",
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        db.session.add(product)
        db.session.commit()
        self.product_id = product.id

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def _pending(self, qty=1):
        with self.stores.atomic():
            return self.stores.transactions.create(
                TransactionRecord(
                    id=None,
                    buyer_id=2,
                    seller_id=1,
                    product_id=self.product_id,
                    quantity=qty,
                    unit_price=800.0,
                    total_amount=800.0 * qty,
                )
            )

    def test_decrement_is_conditional(self):
        with self.stores.atomic():
            self.assertTrue(self.stores.inventory.try_decrement(self.product_id, 3))
            self.assertFalse(self.stores.inventory.try_decrement(self.product_id, 1))
        product = self.stores.inventory.get_product(self.product_id)
        self.assertEqual(product.available_quantity, 0)
        self.assertEqual(product.listing_status, "sold_out")

        with self.stores.atomic():
            self.assertTrue(self.stores.inventory.restore(self.product_id, 2))
        product = self.stores.inventory.get_product(self.product_id)
        self.assertEqual(product.available_quantity, 2)
        self.assertEqual(product.listing_status, "active")

    def test_reactivation_resolves_against_current_stock(self):
        with self.stores.atomic():
            self.assertTrue(self.stores.inventory.update_listing(self.product_id, {"listing_status": "inactive"}))
        with self.stores.atomic():
            self.assertTrue(self.stores.inventory.try_decrement(self.product_id, 3))
            self.assertTrue(self.stores.inventory.update_listing(self.product_id, {"listing_status": "active"}))
        product = self.stores.inventory.get_product(self.product_id)
        self.assertEqual(product.available_quantity, 0)
        self.assertEqual(product.listing_status, "sold_out")

        with self.stores.atomic():
            self.stores.inventory.restore(self.product_id, 1)
            self.stores.inventory.update_listing(self.product_id, {"listing_status": "active", "title": "Baled cardboard"})
        product = self.stores.inventory.get_product(self.product_id)
        self.assertEqual(product.listing_status, "active")
        self.assertEqual(product.title, "Baled cardboard")
        self.assertFalse(self.stores.inventory.update_listing(9999, {"title": "missing"}))

    def test_compare_and_set_requires_expected_status(self):
        txn = self._pending()
        with self.stores.atomic():
            self.assertTrue(self.stores.transactions.compare_and_set(txn.id, "pending", {"status": "cancelled"}))
        with self.stores.atomic():
            self.assertFalse(self.stores.transactions.compare_and_set(txn.id, "pending", {"status": "confirmed"}))
        self.assertEqual(self.stores.transactions.get(txn.id).status, "cancelled")

    def test_failed_confirmation_rolls_back_the_decrement(self):
        txn = self._pending(qty=2)
        engine = OrderLifecycleEngine(self.stores)

        def refuse(*args, **kwargs):
            raise RuntimeError("history write failed")

        with patch.object(self.stores.transactions, "append_history", side_effect=refuse):
            with self.assertRaises(RuntimeError):
                engine.transition(txn.id, "confirmed", Actor.user(1))

        self.assertEqual(self.stores.inventory.get_product(self.product_id).available_quantity, 3)
        self.assertEqual(self.stores.transactions.get(txn.id).status, "pending")

        engine.transition(txn.id, "confirmed", Actor.user(1))
        self.assertEqual(self.stores.inventory.get_product(self.product_id).available_quantity, 1)
        self.assertEqual([h.to_status for h in self.stores.transactions.list_history(txn.id)], ["confirmed"])

    def test_payment_reference_lookup(self):
        txn = self._pending()
        with self.stores.atomic():
            self.stores.transactions.set_payment_fields(txn.id, reference="SKP-9-1", state="pending")
        found = self.stores.transactions.find_by_payment_reference("SKP-9-1")
        self.assertEqual(found.id, txn.id)
        self.assertEqual(found.payment_state, "pending")
        self.assertIsNone(self.stores.transactions.find_by_payment_reference("SKP-9-2"))


    def test_duplicate_event_is_refused_by_the_store(self):
        record = WebhookEventRecord(id=None, provider="midtrans", event_id="evt-1", reference="SKP-1-1")
        with self.stores.atomic():
            self.stores.webhook_events.record_received(record)
        with self.assertRaises(DuplicateEventError):
            with self.stores.atomic():
                self.stores.webhook_events.record_received(record)
        self.assertEqual(self.stores.webhook_events.get("midtrans", "evt-1").status, "received")

if __name__ == "__main__":
    unittest.main()
