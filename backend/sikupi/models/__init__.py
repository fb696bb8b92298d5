from sikupi.models.product import Product
from sikupi.models.transaction import Transaction, TransactionTransition
from sikupi.models.cart_item import CartItem
from sikupi.models.notification import Notification
from sikupi.models.webhook_event import WebhookEvent
from sikupi.models.idempotency_key import IdempotencyKey
from sikupi.models.job_run import JobRun

__all__ = [
    "Product",
    "Transaction",
    "TransactionTransition",
    "CartItem",
    "Notification",
    "WebhookEvent",
    "IdempotencyKey",
    "JobRun",
]
