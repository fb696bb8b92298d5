"""Payment gateway reconciliation.

Gateway notifications arrive at least once, possibly duplicated and out of
order. Each delivery is verified with the gateway, recorded as a
``WebhookEvent`` row and reduced into the order state machine through the
lifecycle engine as the system actor. The row records the decision before
the caller acknowledges the delivery.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

from sikupi.errors import ConcurrencyError, ExternalServiceError, StateConflictError
from sikupi.integrations.payments.base import PaymentsProvider
from sikupi.services.order_lifecycle import OrderLifecycleEngine
from sikupi.services.order_status import (
    Actor,
    TransactionStatus,
    allowed_next,
    is_backward,
    is_terminal,
)
from sikupi.stores.base import DuplicateEventError, OrderStores, TransactionRecord, WebhookEventRecord


logger = logging.getLogger(__name__)

# rejected and failed rows stay open so a redelivery is processed again.
FINAL_EVENT_STATUSES = ("applied", "ignored", "conflict")

_REFERENCE_RE = re.compile(r"^SKP-(\d+)-")


def map_gateway_status(state: str, fraud_state: str = "") -> str | None:
    """Translate a gateway state into a transaction status, or None when unmapped."""
    state = (state or "").strip().lower()
    fraud = (fraud_state or "").strip().lower()
    if state == "capture":
        if fraud == "accept":
            return TransactionStatus.CONFIRMED
        if fraud == "challenge":
            return TransactionStatus.PENDING
        if fraud == "deny":
            return TransactionStatus.CANCELLED
        return None
    if state == "settlement":
        return TransactionStatus.CONFIRMED
    if state == "pending":
        return TransactionStatus.PENDING
    if state in ("cancel", "deny", "expire", "failure"):
        return TransactionStatus.CANCELLED
    return None


def notification_event_id(payload: dict) -> str:
    """Stable id for one gateway delivery, derived from the raw payload."""
    parts = [
        str(payload.get("order_id") or ""),
        str(payload.get("transaction_id") or ""),
        str(payload.get("transaction_status") or "").lower(),
        str(payload.get("fraud_status") or "").lower(),
        str(payload.get("status_code") or ""),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:64]


def payment_reference_for(transaction_id: int, stamp: int) -> str:
    return f"SKP-{int(transaction_id)}-{int(stamp)}"


@dataclass
class ReconciliationOutcome:
    decision: str
    reason: str = ""
    event_id: str = ""
    transaction_id: int | None = None
    previous_status: str | None = None
    target_status: str | None = None
    http_status: int = 200

    @property
    def acknowledged(self) -> bool:
        return self.http_status < 300

    def to_dict(self) -> dict:
        return {
            "ok": self.acknowledged,
            "decision": self.decision,
            "reason": self.reason,
            "event_id": self.event_id,
            "transaction_id": self.transaction_id,
            "previous_status": self.previous_status,
            "target_status": self.target_status,
        }


class PaymentReconciler:
    def __init__(self, stores: OrderStores, engine: OrderLifecycleEngine, provider: PaymentsProvider):
        self.stores = stores
        self.engine = engine
        self.provider = provider

    def find_transaction(self, reference: str) -> TransactionRecord | None:
        ref = (reference or "").strip()
        if not ref:
            return None
        txn = self.stores.transactions.find_by_payment_reference(ref)
        if txn is not None:
            return txn
        # Older sessions for the same order carry a superseded reference.
        match = _REFERENCE_RE.match(ref)
        if match:
            return self.stores.transactions.get(int(match.group(1)))
        if ref.isdigit():
            return self.stores.transactions.get(int(ref))
        return None

    def decide(self, current: str, target: str | None) -> tuple[bool, str]:
        if target is None:
            return False, "UNMAPPED_STATE"
        if is_terminal(current):
            return False, "TERMINAL_STATE"
        if target == current:
            return False, "ALREADY_APPLIED"
        if is_backward(current, target):
            return False, "OUT_OF_ORDER"
        if target not in allowed_next(current):
            return False, "NOT_APPLICABLE"
        return True, ""

    def _mark(self, row: WebhookEventRecord, status: str, *, target: str | None = None, error: str = "") -> None:
        with self.stores.atomic():
            self.stores.webhook_events.mark(row.id, status=status, target_status=target or "", error=error)

    def handle_notification(self, payload, *, request_id: str | None = None) -> ReconciliationOutcome:
        if not isinstance(payload, dict) or not payload:
            logger.warning("payment_webhook_rejected reason=INVALID_PAYLOAD request_id=%s", request_id)
            return ReconciliationOutcome(decision="rejected", reason="INVALID_PAYLOAD", http_status=400)

        provider_name = getattr(self.provider, "name", "unknown")
        event_id = notification_event_id(payload)

        existing = self.stores.webhook_events.get(provider_name, event_id)
        if existing is not None and existing.status in FINAL_EVENT_STATUSES:
            logger.info("payment_webhook_replayed event_id=%s status=%s", event_id, existing.status)
            return ReconciliationOutcome(
                decision="replayed",
                reason=existing.status,
                event_id=event_id,
                target_status=existing.target_status or None,
            )

        if existing is None:
            try:
                with self.stores.atomic():
                    row = self.stores.webhook_events.record_received(
                        WebhookEventRecord(
                            id=None,
                            provider=provider_name,
                            event_id=event_id,
                            reference=str(payload.get("order_id") or ""),
                            gateway_state=str(payload.get("transaction_status") or "").lower(),
                            fraud_state=str(payload.get("fraud_status") or "").lower(),
                            request_id=request_id or "",
                        ),
                        payload=payload,
                    )
            except DuplicateEventError:
                # A concurrent copy of this delivery recorded the row first; its
                # own response decides whether the gateway redelivers.
                logger.info("payment_webhook_concurrent_duplicate event_id=%s", event_id)
                return ReconciliationOutcome(decision="replayed", reason="CONCURRENT_DELIVERY", event_id=event_id)
        else:
            row = existing

        try:
            verified = self.provider.verify_notification(payload)
        except ExternalServiceError as exc:
            logger.warning(
                "payment_webhook_rejected event_id=%s reason=%s retryable=%s",
                event_id,
                exc.message,
                exc.retryable,
            )
            self._mark(row, "rejected", error=exc.message)
            return ReconciliationOutcome(
                decision="rejected",
                reason=exc.message,
                event_id=event_id,
                http_status=502 if exc.retryable else 401,
            )

        target = map_gateway_status(verified.state, verified.fraud_state)
        txn = self.find_transaction(verified.external_ref)
        if txn is None:
            logger.warning("payment_webhook_unmatched event_id=%s reference=%s", event_id, verified.external_ref)
            self._mark(row, "ignored", target=target, error="TRANSACTION_NOT_FOUND")
            return ReconciliationOutcome(decision="ignored", reason="TRANSACTION_NOT_FOUND", event_id=event_id, target_status=target)

        with self.stores.atomic():
            self.stores.transactions.set_payment_fields(txn.id, state=verified.state or None)

        outcome = ReconciliationOutcome(
            decision="ignored",
            event_id=event_id,
            transaction_id=txn.id,
            previous_status=txn.status,
            target_status=target,
        )
        apply, reason = self.decide(txn.status, target)
        if not apply:
            logger.info(
                "payment_webhook_noop event_id=%s transaction_id=%s current=%s target=%s reason=%s",
                event_id,
                txn.id,
                txn.status,
                target,
                reason,
            )
            self._mark(row, "ignored", target=target, error=reason)
            outcome.reason = reason
            return outcome

        metadata = {
            "event_id": event_id,
            "gateway_state": verified.state,
            "fraud_state": verified.fraud_state,
            "gateway_transaction_id": verified.gateway_transaction_id,
        }
        if request_id:
            metadata["request_id"] = request_id
        note = None
        if target == TransactionStatus.CANCELLED:
            note = f"Payment {verified.state}"
        try:
            self.engine.transition(txn.id, target, Actor.system("payment_gateway"), note=note, metadata=metadata)
        except ConcurrencyError as exc:
            logger.warning(
                "payment_webhook_stock_conflict event_id=%s transaction_id=%s product_id=%s qty=%s",
                event_id,
                txn.id,
                txn.product_id,
                txn.quantity,
            )
            self._mark(row, "conflict", target=target, error=exc.message)
            self.engine.notify(
                txn.seller_id,
                "Payment Received, Stock Unavailable",
                f"Payment for order #{txn.id} was captured but there is not enough stock to confirm it",
                "payment",
                txn.id,
            )
            outcome.decision = "conflict"
            outcome.reason = "INSUFFICIENT_STOCK"
            return outcome
        except StateConflictError as exc:
            logger.info(
                "payment_webhook_superseded event_id=%s transaction_id=%s current=%s target=%s",
                event_id,
                txn.id,
                exc.current,
                target,
            )
            self._mark(row, "ignored", target=target, error="CONCURRENT_TRANSITION")
            outcome.reason = "CONCURRENT_TRANSITION"
            return outcome
        except Exception as exc:
            logger.exception("payment_webhook_failed event_id=%s transaction_id=%s", event_id, txn.id)
            self._mark(row, "failed", target=target, error=str(exc))
            outcome.decision = "failed"
            outcome.reason = "PROCESSING_FAILED"
            outcome.http_status = 500
            return outcome

        self._mark(row, "applied", target=target)
        logger.info(
            "payment_webhook_applied event_id=%s transaction_id=%s from=%s to=%s",
            event_id,
            txn.id,
            txn.status,
            target,
        )
        outcome.decision = "applied"
        return outcome
