from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PaymentSessionResult:
    token: str
    redirect_url: str
    reference: str
    provider: str
    raw: dict | None = None

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "redirect_url": self.redirect_url,
            "reference": self.reference,
            "provider": self.provider,
        }


@dataclass
class PaymentVerifyResult:
    external_ref: str
    state: str
    fraud_state: str = ""
    status_code: str = ""
    gross_amount: str = ""
    gateway_transaction_id: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def create_session(
        self,
        *,
        reference: str,
        gross_amount: float,
        item_id: int | None = None,
        item_name: str = "",
        quantity: int = 1,
        customer: dict | None = None,
    ) -> PaymentSessionResult:
        raise NotImplementedError

    def verify_notification(self, payload: dict) -> PaymentVerifyResult:
        """Confirm a webhook payload with the gateway and return the gateway's own view."""
        raise NotImplementedError
