from __future__ import annotations

from flask import current_app

from sikupi.integrations.payments.base import PaymentsProvider
from sikupi.integrations.payments.factory import build_payments_provider
from sikupi.services.order_creation import CartToOrderConverter
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.payment_reconciliation import PaymentReconciler
from sikupi.stores.base import OrderStores


EXTENSION_KEY = "sikupi.order_services"


class OrderServices:
    """Services bound to one set of stores; kept on ``app.extensions``."""

    def __init__(self, stores: OrderStores, *, payments: PaymentsProvider | None = None, config=None, clock=None):
        self.stores = stores
        self.engine = OrderLifecycleEngine(stores, clock=clock)
        self.converter = CartToOrderConverter(stores, clock=clock)
        self._payments = payments
        self._config = config

    @property
    def payments(self) -> PaymentsProvider:
        # Built lazily so a misconfigured gateway only fails payment routes.
        if self._payments is None:
            self._payments = build_payments_provider(self._config)
        return self._payments

    @payments.setter
    def payments(self, provider: PaymentsProvider | None) -> None:
        self._payments = provider

    def reconciler(self) -> PaymentReconciler:
        return PaymentReconciler(self.stores, self.engine, self.payments)


def build_order_services(stores: OrderStores | None = None, *, payments: PaymentsProvider | None = None, config=None) -> OrderServices:
    if stores is None:
        from sikupi.stores.sql_store import SqlOrderStores

        stores = SqlOrderStores()
    return OrderServices(stores, payments=payments, config=config)


def get_order_services() -> OrderServices:
    return current_app.extensions[EXTENSION_KEY]
