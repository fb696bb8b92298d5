from sikupi.stores.base import (
    CartEntryRecord,
    DuplicateEventError,
    NotificationRecord,
    OrderStores,
    ProductRecord,
    TransactionRecord,
    TransitionRecord,
    WebhookEventRecord,
)
from sikupi.stores.memory_store import MemoryOrderStores

__all__ = [
    "CartEntryRecord",
    "DuplicateEventError",
    "NotificationRecord",
    "OrderStores",
    "ProductRecord",
    "TransactionRecord",
    "TransitionRecord",
    "WebhookEventRecord",
    "MemoryOrderStores",
]
