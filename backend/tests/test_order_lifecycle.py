from __future__ import annotations

import threading
import unittest

from sikupi.errors import (
    AuthorizationError,
    ConcurrencyError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from sikupi.services.order_creation import CartToOrderConverter
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.order_status import Actor
from sikupi.stores import MemoryOrderStores, ProductRecord

SELLER = 10
BUYER = 20
OTHER_BUYER = 21
STRANGER = 99


class _BrokenSink:
    def enqueue(self, recipient_id, title, body, category, related_id=None):
        raise RuntimeError("sink down")


class OrderLifecycleTestCase(unittest.TestCase):
    def setUp(self):
        self.stores = MemoryOrderStores()
        self.stores.inventory.add_product(
            ProductRecord(id=1, owner_id=SELLER, title="Coffee grounds", price_per_unit=5000.0, available_quantity=10)
        )
        self.engine = OrderLifecycleEngine(self.stores)
        self.converter = CartToOrderConverter(self.stores)

    def _order(self, buyer=BUYER, qty=10):
        return self.converter.create_order(buyer_id=buyer, product_id=1, quantity=qty).transaction

    def _product(self):
        return self.stores.inventory.get_product(1)

    def test_full_fulfilment_path(self):
        txn = self._order()
        self.assertEqual(txn.status, "pending")
        self.assertEqual(txn.total_amount, 50000.0)

        confirmed = self.engine.transition(txn.id, "confirmed", Actor.user(SELLER)).transaction
        self.assertEqual(confirmed.status, "confirmed")
        self.assertIsNotNone(confirmed.confirmed_at)
        self.assertEqual(self._product().available_quantity, 0)
        self.assertEqual(self._product().listing_status, "sold_out")

        with self.assertRaises(StateConflictError) as ctx:
            self.engine.transition(txn.id, "delivered", Actor.user(BUYER))
        self.assertEqual(ctx.exception.allowed, ["cancelled", "shipped"])

        shipped = self.engine.transition(
            txn.id, "shipped", Actor.user(SELLER), tracking_reference="TRK1", shipping_cost=15000
        ).transaction
        self.assertEqual(shipped.tracking_reference, "TRK1")
        self.assertEqual(shipped.shipping_cost, 15000.0)

        delivered = self.engine.transition(txn.id, "delivered", Actor.user(BUYER)).transaction
        self.assertEqual(delivered.status, "delivered")
        self.assertIsNotNone(delivered.delivered_at)

        history = self.engine.history(txn.id, Actor.user(BUYER))
        self.assertEqual(
            [(h.from_status, h.to_status) for h in history],
            [("", "pending"), ("pending", "confirmed"), ("confirmed", "shipped"), ("shipped", "delivered")],
        )
        self.assertEqual([h.actor_type for h in history[1:]], ["seller", "seller", "buyer"])

    def test_second_confirmation_without_stock_is_a_concurrency_error(self):
        self.stores.state.products[1].available_quantity = 5
        first = self._order(buyer=BUYER, qty=5)
        second = self._order(buyer=OTHER_BUYER, qty=5)

        self.engine.transition(first.id, "confirmed", Actor.user(SELLER))
        self.assertEqual(self._product().available_quantity, 0)

        with self.assertRaises(ConcurrencyError):
            self.engine.transition(second.id, "confirmed", Actor.user(SELLER))
        unchanged = self.stores.transactions.get(second.id)
        self.assertEqual(unchanged.status, "pending")
        self.assertIsNone(unchanged.confirmed_at)
        self.assertEqual(len(self.stores.transactions.list_history(second.id)), 1)
        self.assertEqual(self._product().available_quantity, 0)

    def test_concurrent_confirmations_never_oversell(self):
        self.stores.state.products[1].available_quantity = 1
        orders = [self._order(buyer=BUYER + i, qty=1) for i in range(8)]
        outcomes = []
        lock = threading.Lock()

        def confirm(txn_id):
            try:
                self.engine.transition(txn_id, "confirmed", Actor.user(SELLER))
                result = "ok"
            except ConcurrencyError:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=confirm, args=(o.id,)) for o in orders]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("conflict"), 7)
        self.assertEqual(self._product().available_quantity, 0)

    def test_cancel_after_confirmation_restores_stock_once(self):
        txn = self._order(qty=4)
        self.engine.transition(txn.id, "confirmed", Actor.user(SELLER))
        self.assertEqual(self._product().available_quantity, 6)

        result = self.engine.cancel(txn.id, Actor.user(BUYER), reason="changed my mind")
        self.assertEqual(result.restored_quantity, 4)
        self.assertEqual(result.transaction.note, "changed my mind")
        self.assertEqual(self._product().available_quantity, 10)

        with self.assertRaises(StateConflictError):
            self.engine.cancel(txn.id, Actor.user(SELLER))
        self.assertEqual(self._product().available_quantity, 10)

    def test_cancel_pending_does_not_touch_stock(self):
        txn = self._order(qty=3)
        result = self.engine.cancel(txn.id, Actor.user(SELLER))
        self.assertEqual(result.restored_quantity, 0)
        self.assertEqual(result.transaction.note, "Cancelled by user")
        self.assertIsNotNone(result.transaction.cancelled_at)
        self.assertEqual(self._product().available_quantity, 10)

    def test_role_gate(self):
        txn = self._order(qty=1)
        with self.assertRaises(AuthorizationError):
            self.engine.transition(txn.id, "confirmed", Actor.user(BUYER))
        with self.assertRaises(AuthorizationError):
            self.engine.transition(txn.id, "confirmed", Actor.user(STRANGER))
        with self.assertRaises(AuthorizationError):
            self.engine.get_for_participant(txn.id, Actor.user(STRANGER))

        self.engine.transition(txn.id, "confirmed", Actor.user(SELLER))
        self.engine.transition(txn.id, "shipped", Actor.user(SELLER))
        with self.assertRaises(AuthorizationError):
            self.engine.transition(txn.id, "delivered", Actor.user(SELLER))
        with self.assertRaises(AuthorizationError):
            self.engine.transition(txn.id, "delivered", Actor.system("payment_gateway"))

    def test_authorization_is_checked_before_the_state_table(self):
        txn = self._order(qty=1)
        # Edge missing from the table and role not permitted: the role wins.
        with self.assertRaises(AuthorizationError):
            self.engine.transition(txn.id, "shipped", Actor.user(BUYER))
        with self.assertRaises(StateConflictError):
            self.engine.transition(txn.id, "shipped", Actor.user(SELLER))

    def test_unknown_target_and_transaction(self):
        txn = self._order(qty=1)
        with self.assertRaises(ValidationError):
            self.engine.transition(txn.id, "refunded", Actor.user(SELLER))
        with self.assertRaises(StateConflictError):
            self.engine.transition(txn.id, "pending", Actor.user(SELLER))
        with self.assertRaises(NotFoundError):
            self.engine.transition(12345, "confirmed", Actor.user(SELLER))

    def test_lost_compare_and_swap_rolls_back_decrement(self):
        txn = self._order(qty=2)
        original = self.stores.transactions.compare_and_set

        def racing_cas(transaction_id, expected_status, changes):
            # Another writer cancels in between the read and the swap.
            self.stores.state.transactions[transaction_id].status = "cancelled"
            return original(transaction_id, expected_status, changes)

        self.stores.transactions.compare_and_set = racing_cas
        with self.assertRaises(StateConflictError) as ctx:
            self.engine.transition(txn.id, "confirmed", Actor.user(SELLER))
        self.assertEqual(ctx.exception.current, "cancelled")
        self.assertEqual(self._product().available_quantity, 10)
        self.assertEqual(len(self.stores.transactions.list_history(txn.id)), 1)

    def test_notifications_follow_transitions(self):
        txn = self._order(qty=1)
        seller_inbox = self.stores.notifications.for_recipient(SELLER)
        self.assertEqual([n.title for n in seller_inbox], ["New Order Received"])
        self.assertEqual(seller_inbox[0].body, "You have received a new order for Coffee grounds")

        self.engine.transition(txn.id, "confirmed", Actor.user(SELLER))
        self.engine.transition(txn.id, "shipped", Actor.user(SELLER), tracking_reference="TRK9")
        self.engine.transition(txn.id, "delivered", Actor.user(BUYER))

        buyer_titles = [n.title for n in self.stores.notifications.for_recipient(BUYER)]
        self.assertEqual(buyer_titles, ["Order Confirmed", "Order Shipped"])
        self.assertIn("TRK9", self.stores.notifications.for_recipient(BUYER)[1].body)
        seller_titles = [n.title for n in self.stores.notifications.for_recipient(SELLER)]
        self.assertEqual(seller_titles, ["New Order Received", "Order Delivered"])

    def test_notification_failure_does_not_fail_the_transition(self):
        txn = self._order(qty=1)
        self.stores.notifications = _BrokenSink()
        result = self.engine.transition(txn.id, "confirmed", Actor.user(SELLER))
        self.assertEqual(result.transaction.status, "confirmed")
        self.assertEqual(self.stores.transactions.get(txn.id).status, "confirmed")

    def test_listing_and_summary(self):
        first = self._order(buyer=BUYER, qty=1)
        self._order(buyer=OTHER_BUYER, qty=1)
        self.engine.transition(first.id, "confirmed", Actor.user(SELLER))

        rows, total = self.engine.list_for_participant(Actor.user(SELLER), role="seller", page=1, limit=1)
        self.assertEqual(total, 2)
        self.assertEqual(len(rows), 1)

        rows, total = self.engine.list_for_participant(Actor.user(BUYER), role="any", status="confirmed")
        self.assertEqual(total, 1)
        self.assertEqual(rows[0].id, first.id)

        rows, total = self.engine.list_for_participant(Actor.user(BUYER), role="seller")
        self.assertEqual(total, 0)

        summary = self.engine.status_summary(Actor.user(SELLER))
        self.assertEqual(summary["total"], 2)
        self.assertEqual(summary["pending"], 1)
        self.assertEqual(summary["confirmed"], 1)
        self.assertEqual(summary["delivered"], 0)

        with self.assertRaises(ValidationError):
            self.engine.list_for_participant(Actor.user(BUYER), limit=500)
        with self.assertRaises(ValidationError):
            self.engine.list_for_participant(Actor.user(BUYER), role="admin")


if __name__ == "__main__":
    unittest.main()
