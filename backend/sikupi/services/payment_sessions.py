from __future__ import annotations

import logging
import time

from sikupi.errors import AuthorizationError, ValidationError
from sikupi.integrations.payments.base import PaymentSessionResult, PaymentsProvider
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.order_status import ActorRole, Actor, TransactionStatus
from sikupi.services.payment_reconciliation import payment_reference_for


logger = logging.getLogger(__name__)


def create_payment_session(
    engine: OrderLifecycleEngine,
    provider: PaymentsProvider,
    transaction_id,
    actor: Actor,
    *,
    customer: dict | None = None,
) -> PaymentSessionResult:
    txn = engine.get_for_participant(transaction_id, actor)
    if engine.resolve_role(txn, actor) != ActorRole.BUYER:
        raise AuthorizationError("Only the buyer can pay for this order")
    if txn.status != TransactionStatus.PENDING:
        raise ValidationError(
            "Payment can only be made for pending transactions",
            current_status=txn.status,
        )

    gross_amount = float(txn.total_amount) + float(txn.shipping_cost or 0.0)
    reference = payment_reference_for(txn.id, int(time.time()))
    product = engine.stores.inventory.get_product(txn.product_id)
    session = provider.create_session(
        reference=reference,
        gross_amount=gross_amount,
        item_id=txn.product_id,
        item_name=product.title if product else "",
        quantity=txn.quantity,
        customer=customer,
    )
    with engine.stores.atomic():
        engine.stores.transactions.set_payment_fields(txn.id, reference=session.reference or reference)
    logger.info(
        "payment_session_created transaction_id=%s reference=%s provider=%s gross_amount=%s",
        txn.id,
        session.reference,
        session.provider,
        gross_amount,
    )
    return session
