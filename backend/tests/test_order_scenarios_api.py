from __future__ import annotations

import itertools
import os
import unittest
from unittest.mock import patch

from sikupi import create_app
from sikupi.extensions import db
from sikupi.models import WebhookEvent
from sikupi.utils.jwt_utils import create_token


_user_ids = itertools.count(100)


class OrderScenariosApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._env = patch.dict(
            os.environ,
            {
                "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
                "DATABASE_URL": "sqlite:///:memory:",
                "SIKUPI_ENV": "test",
                "PAYMENTS_PROVIDER": "mock",
                "ENABLE_IDEMPOTENCY_ENFORCEMENT": "0",
            },
            clear=False,
        )
        cls._env.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.session.remove()
        cls._env.stop()

    def setUp(self):
        self.seller = next(_user_ids)
        self.buyer = next(_user_ids)

    def _auth(self, user_id: int, **extra) -> dict:
        headers = {"Authorization": f"Bearer {create_token(user_id)}"}
        headers.update(extra)
        return headers

    def _product(self, qty=10, price=5000):
        res = self.client.post(
            "/api/products",
            json={"title": "Sorted PET flakes", "price_per_unit": price, "available_quantity": qty},
            headers=self._auth(self.seller),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return res.get_json()["product"]

    def _order(self, product_id, qty, buyer=None, **headers):
        return self.client.post(
            "/api/transactions",
            json={"product_id": product_id, "quantity": qty, "shipping_address": "Jl. Merdeka 1"},
            headers=self._auth(buyer or self.buyer, **headers),
        )

    def _set_status(self, txn_id, user_id, status, **extra):
        body = {"status": status}
        body.update(extra)
        return self.client.put(f"/api/transactions/{txn_id}/status", json=body, headers=self._auth(user_id))

    def _stock(self, product_id):
        return self.client.get(f"/api/products/{product_id}").get_json()["product"]

    def test_full_fulfilment_path(self):
        product = self._product(qty=10, price=5000)
        res = self._order(product["id"], 10)
        self.assertEqual(res.status_code, 201)
        txn = res.get_json()["transaction"]
        self.assertEqual(txn["status"], "pending")
        self.assertEqual(txn["total_amount"], 50000.0)

        res = self._set_status(txn["id"], self.seller, "confirmed")
        self.assertEqual(res.status_code, 200)
        stock = self._stock(product["id"])
        self.assertEqual(stock["available_quantity"], 0)
        self.assertEqual(stock["listing_status"], "sold_out")

        res = self._set_status(txn["id"], self.buyer, "delivered")
        self.assertEqual(res.status_code, 409)
        body = res.get_json()
        self.assertEqual(body["error"], "INVALID_TRANSITION")
        self.assertEqual(body["current_status"], "confirmed")
        self.assertTrue(body.get("trace_id"))

        res = self._set_status(txn["id"], self.seller, "shipped", tracking_reference="TRK1")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["transaction"]["tracking_reference"], "TRK1")

        res = self._set_status(txn["id"], self.buyer, "delivered")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["transaction"]["status"], "delivered")

        res = self.client.get(f"/api/transactions/{txn['id']}/history", headers=self._auth(self.buyer))
        statuses = [row["to_status"] for row in res.get_json()["items"]]
        self.assertEqual(statuses, ["pending", "confirmed", "shipped", "delivered"])

    def test_second_confirmation_without_stock_keeps_order_pending(self):
        product = self._product(qty=5)
        other_buyer = next(_user_ids)
        first = self._order(product["id"], 5).get_json()["transaction"]
        second = self._order(product["id"], 5, buyer=other_buyer).get_json()["transaction"]

        self.assertEqual(self._set_status(first["id"], self.seller, "confirmed").status_code, 200)
        res = self._set_status(second["id"], self.seller, "confirmed")
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "INSUFFICIENT_STOCK")

        res = self.client.get(f"/api/transactions/{second['id']}", headers=self._auth(other_buyer))
        self.assertEqual(res.get_json()["transaction"]["status"], "pending")

    def test_cancel_after_confirmation_restores_stock(self):
        product = self._product(qty=4)
        txn = self._order(product["id"], 3).get_json()["transaction"]
        self._set_status(txn["id"], self.seller, "confirmed")
        res = self.client.post(
            f"/api/transactions/{txn['id']}/cancel",
            json={"reason": "changed my mind"},
            headers=self._auth(self.buyer),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["restored_quantity"], 3)
        self.assertEqual(self._stock(product["id"])["available_quantity"], 4)

        res = self.client.post(f"/api/transactions/{txn['id']}/cancel", json={}, headers=self._auth(self.buyer))
        self.assertEqual(res.status_code, 409)
        self.assertEqual(self._stock(product["id"])["available_quantity"], 4)

    def test_authorization_and_validation_errors(self):
        product = self._product(qty=3)
        self.assertEqual(self._order(product["id"], 1, buyer=self.seller).status_code, 400)
        self.assertEqual(self._order(product["id"], 0).status_code, 400)
        self.assertEqual(self._order(product["id"], 4).status_code, 400)
        self.assertEqual(self._order(999999, 1).status_code, 404)

        txn = self._order(product["id"], 1).get_json()["transaction"]
        self.assertEqual(self._set_status(txn["id"], self.buyer, "confirmed").status_code, 403)
        stranger = next(_user_ids)
        self.assertEqual(self.client.get(f"/api/transactions/{txn['id']}", headers=self._auth(stranger)).status_code, 403)
        self.assertEqual(self._set_status(txn["id"], self.seller, "refunded").status_code, 400)

        res = self.client.post("/api/transactions", json={"product_id": product["id"], "quantity": 1})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "UNAUTHORIZED")

    def test_idempotency_key_replays_order_creation(self):
        product = self._product(qty=5)
        first = self._order(product["id"], 2, **{"Idempotency-Key": f"order-{self.buyer}"})
        again = self._order(product["id"], 2, **{"Idempotency-Key": f"order-{self.buyer}"})
        self.assertEqual(first.status_code, 201)
        self.assertEqual(again.status_code, 201)
        self.assertEqual(first.get_json()["transaction"]["id"], again.get_json()["transaction"]["id"])

        reused = self._order(product["id"], 3, **{"Idempotency-Key": f"order-{self.buyer}"})
        self.assertEqual(reused.status_code, 409)
        self.assertEqual(reused.get_json()["error"], "IDEMPOTENCY_KEY_REUSE")

        res = self.client.get("/api/transactions?role=buyer", headers=self._auth(self.buyer))
        self.assertEqual(res.get_json()["pagination"]["total"], 1)

    def test_failed_request_releases_its_idempotency_key(self):
        product = self._product(qty=1)
        key = {"Idempotency-Key": f"retry-{self.buyer}"}
        self.assertEqual(self._order(product["id"], 5, **key).status_code, 400)
        self.client.patch(f"/api/products/{product['id']}", json={"add_quantity": 4}, headers=self._auth(self.seller))
        self.assertEqual(self._order(product["id"], 5, **key).status_code, 201)

    def test_cart_is_cleared_by_ordering(self):
        product = self._product(qty=6)
        res = self.client.post(
            "/api/cart/items", json={"product_id": product["id"], "quantity": 2}, headers=self._auth(self.buyer)
        )
        self.assertEqual(res.status_code, 201)
        cart = self.client.get("/api/cart", headers=self._auth(self.buyer)).get_json()
        self.assertEqual(cart["summary"]["total_quantity"], 2)

        res = self._order(product["id"], 2)
        self.assertEqual(res.get_json()["warnings"], [])
        cart = self.client.get("/api/cart", headers=self._auth(self.buyer)).get_json()
        self.assertEqual(cart["items"], [])

    def test_listing_edits_cannot_set_absolute_stock(self):
        product = self._product(qty=2)
        res = self.client.patch(
            f"/api/products/{product['id']}", json={"available_quantity": 50}, headers=self._auth(self.seller)
        )
        self.assertEqual(res.status_code, 400)
        res = self.client.patch(f"/api/products/{product['id']}", json={"title": "x"}, headers=self._auth(self.buyer))
        self.assertEqual(res.status_code, 403)

    def test_rejected_listing_edit_changes_nothing(self):
        product = self._product(qty=2, price=5000)
        res = self.client.patch(
            f"/api/products/{product['id']}",
            json={"price_per_unit": 9999, "title": "Renamed", "add_quantity": -2},
            headers=self._auth(self.seller),
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["field"], "quantity")
        stored = self._stock(product["id"])
        self.assertEqual(stored["price_per_unit"], 5000.0)
        self.assertEqual(stored["title"], product["title"])
        self.assertEqual(stored["available_quantity"], 2)

        res = self.client.patch(
            f"/api/products/{product['id']}",
            json={"price_per_unit": 6000, "add_quantity": 3},
            headers=self._auth(self.seller),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["product"]["price_per_unit"], 6000.0)
        self.assertEqual(res.get_json()["product"]["available_quantity"], 5)

    def test_reactivating_an_empty_listing_keeps_it_sold_out(self):
        product = self._product(qty=1)
        txn = self._order(product["id"], 1).get_json()["transaction"]
        self._set_status(txn["id"], self.seller, "confirmed")
        res = self.client.patch(
            f"/api/products/{product['id']}", json={"listing_status": "active"}, headers=self._auth(self.seller)
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["product"]["listing_status"], "sold_out")

        res = self.client.patch(
            f"/api/products/{product['id']}",
            json={"listing_status": "active", "add_quantity": 2},
            headers=self._auth(self.seller),
        )
        self.assertEqual(res.get_json()["product"]["listing_status"], "active")

    def test_payment_session_and_webhook_confirm_the_order(self):
        product = self._product(qty=5, price=2000)
        txn = self._order(product["id"], 2).get_json()["transaction"]

        res = self.client.post(
            "/api/payments/midtrans/token", json={"transaction_id": txn["id"]}, headers=self._auth(self.seller)
        )
        self.assertEqual(res.status_code, 403)

        res = self.client.post(
            "/api/payments/midtrans/token", json={"transaction_id": txn["id"]}, headers=self._auth(self.buyer)
        )
        self.assertEqual(res.status_code, 200)
        reference = res.get_json()["reference"]
        self.assertTrue(reference.startswith(f"SKP-{txn['id']}-"))

        notification = {
            "order_id": reference,
            "transaction_status": "settlement",
            "transaction_id": f"gw-{txn['id']}",
            "status_code": "200",
            "gross_amount": "4000.00",
        }
        res = self.client.post("/api/webhooks/midtrans", json=notification)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["decision"], "applied")

        res = self.client.post("/api/webhooks/midtrans", json=notification)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["decision"], "replayed")

        detail = self.client.get(f"/api/transactions/{txn['id']}", headers=self._auth(self.buyer)).get_json()
        self.assertEqual(detail["transaction"]["status"], "confirmed")
        self.assertEqual(detail["transaction"]["payment_state"], "settlement")
        self.assertEqual(self._stock(product["id"])["available_quantity"], 3)

        with self.app.app_context():
            rows = WebhookEvent.query.filter_by(reference=reference).all()
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0].status, "applied")

        res = self.client.post(
            "/api/payments/midtrans/token", json={"transaction_id": txn["id"]}, headers=self._auth(self.buyer)
        )
        self.assertEqual(res.status_code, 400)

    def test_malformed_webhook_is_refused(self):
        res = self.client.post("/api/webhooks/midtrans", json={"order_id": "SKP-1-1"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"], "WEBHOOK_NOT_PROCESSED")

    def test_notifications_follow_transitions(self):
        product = self._product(qty=2)
        txn = self._order(product["id"], 1).get_json()["transaction"]
        self._set_status(txn["id"], self.seller, "confirmed")

        items = self.client.get("/api/notifications?unread=1", headers=self._auth(self.buyer)).get_json()["items"]
        self.assertIn("Order Confirmed", [n["title"] for n in items])
        seller_items = self.client.get("/api/notifications", headers=self._auth(self.seller)).get_json()["items"]
        self.assertIn("New Order Received", [n["title"] for n in seller_items])

        note_id = items[0]["id"]
        res = self.client.post(f"/api/notifications/{note_id}/read", headers=self._auth(self.buyer))
        self.assertEqual(res.status_code, 200)
        res = self.client.post(f"/api/notifications/{note_id}/read", headers=self._auth(self.seller))
        self.assertEqual(res.status_code, 404)

    def test_summary_counts_by_status(self):
        product = self._product(qty=5)
        a = self._order(product["id"], 1).get_json()["transaction"]
        self._order(product["id"], 1)
        self._set_status(a["id"], self.seller, "confirmed")
        stats = self.client.get("/api/transactions/stats/summary", headers=self._auth(self.buyer)).get_json()["stats"]
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["confirmed"], 1)


if __name__ == "__main__":
    unittest.main()
