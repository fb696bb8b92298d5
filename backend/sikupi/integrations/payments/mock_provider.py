from __future__ import annotations

import hashlib

from sikupi.errors import ExternalServiceError
from sikupi.integrations.payments.base import PaymentSessionResult, PaymentsProvider, PaymentVerifyResult


class MockPaymentsProvider(PaymentsProvider):
    """Local provider: issues fake Snap tokens and trusts notification payloads."""

    name = "mock"

    def create_session(self, *, reference, gross_amount, item_id=None, item_name="", quantity=1, customer=None) -> PaymentSessionResult:
        token = hashlib.sha256(f"mock:{reference}".encode("utf-8")).hexdigest()[:32]
        return PaymentSessionResult(
            token=token,
            redirect_url=f"https://example.com/mock/snap?reference={reference}&token={token}",
            reference=reference,
            provider=self.name,
            raw={
                "gross_amount": int(round(float(gross_amount))),
                "item_id": item_id,
                "item_name": item_name,
                "quantity": int(quantity),
                "customer": customer or {},
            },
        )

    def verify_notification(self, payload: dict) -> PaymentVerifyResult:
        order_id = str((payload or {}).get("order_id") or "").strip()
        state = str((payload or {}).get("transaction_status") or "").strip().lower()
        if not order_id or not state:
            raise ExternalServiceError(self.name, "INVALID_PAYLOAD", retryable=False)
        return PaymentVerifyResult(
            external_ref=order_id,
            state=state,
            fraud_state=str(payload.get("fraud_status") or "").strip().lower(),
            status_code=str(payload.get("status_code") or ""),
            gross_amount=str(payload.get("gross_amount") or ""),
            gateway_transaction_id=str(payload.get("transaction_id") or ""),
            raw=dict(payload),
        )
