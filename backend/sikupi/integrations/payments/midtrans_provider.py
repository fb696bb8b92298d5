from __future__ import annotations

import base64
import hashlib
import hmac
import os

import requests

from sikupi.errors import ExternalServiceError
from sikupi.integrations.payments.base import PaymentSessionResult, PaymentsProvider, PaymentVerifyResult


SNAP_URLS = {
    True: "https://app.midtrans.com/snap/v1/transactions",
    False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
}
CORE_URLS = {
    True: "https://api.midtrans.com",
    False: "https://api.sandbox.midtrans.com",
}


def notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(raw).hexdigest()


class MidtransPaymentsProvider(PaymentsProvider):
    name = "midtrans"

    def __init__(self, server_key: str, *, is_production: bool = False, require_signature: bool = False, timeout: int = 25):
        self.server_key = server_key
        self.is_production = bool(is_production)
        self.require_signature = bool(require_signature)
        self.timeout = int(timeout)

    def _headers(self) -> dict:
        token = base64.b64encode(f"{self.server_key}:".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def create_session(self, *, reference, gross_amount, item_id=None, item_name="", quantity=1, customer=None) -> PaymentSessionResult:
        amount = int(round(float(gross_amount)))
        payload = {
            "transaction_details": {"order_id": reference, "gross_amount": amount},
            "credit_card": {"secure": True},
            "item_details": [
                {
                    "id": str(item_id if item_id is not None else reference),
                    "price": amount,
                    "quantity": 1,
                    "name": (item_name or f"Order {reference}")[:50],
                }
            ],
            "expiry": {"duration": 24, "unit": "hours"},
        }
        if customer:
            payload["customer_details"] = dict(customer)
        app_url = (os.getenv("APP_URL") or "").strip().rstrip("/")
        if app_url:
            finish = f"{app_url}/payment/result"
            payload["callbacks"] = {"finish": finish, "error": finish, "pending": finish}
        try:
            r = requests.post(SNAP_URLS[self.is_production], headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(self.name, f"MIDTRANS_UNREACHABLE:{exc}")
        j = r.json() if r.content else {}
        if r.status_code < 200 or r.status_code >= 300 or not j.get("token"):
            msgs = j.get("error_messages") if isinstance(j, dict) else None
            msg = ", ".join(msgs) if isinstance(msgs, list) and msgs else f"HTTP {r.status_code}"
            raise ExternalServiceError(self.name, f"MIDTRANS_SESSION_FAILED:{msg}")
        return PaymentSessionResult(
            token=str(j.get("token") or ""),
            redirect_url=str(j.get("redirect_url") or ""),
            reference=reference,
            provider=self.name,
            raw=j if isinstance(j, dict) else {"payload": j},
        )

    def verify_signature(self, payload: dict) -> bool:
        expected = notification_signature(
            str(payload.get("order_id") or ""),
            str(payload.get("status_code") or ""),
            str(payload.get("gross_amount") or ""),
            self.server_key,
        )
        return hmac.compare_digest(expected, str(payload.get("signature_key") or ""))

    def fetch_status(self, order_id: str) -> dict:
        url = f"{CORE_URLS[self.is_production]}/v2/{order_id}/status"
        try:
            r = requests.get(url, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(self.name, f"MIDTRANS_UNREACHABLE:{exc}")
        if r.status_code >= 500:
            raise ExternalServiceError(self.name, f"MIDTRANS_STATUS_FAILED:HTTP {r.status_code}")
        j = r.json() if r.content else {}
        if r.status_code >= 400 or not isinstance(j, dict):
            raise ExternalServiceError(self.name, f"MIDTRANS_STATUS_FAILED:HTTP {r.status_code}", retryable=False)
        # The status API answers HTTP 200 with its own status_code for unknown orders.
        if str(j.get("status_code") or "") == "404":
            raise ExternalServiceError(self.name, "MIDTRANS_UNKNOWN_ORDER", retryable=False)
        return j

    def verify_notification(self, payload: dict) -> PaymentVerifyResult:
        order_id = str((payload or {}).get("order_id") or "").strip()
        if not order_id:
            raise ExternalServiceError(self.name, "INVALID_PAYLOAD", retryable=False)
        if payload.get("signature_key"):
            if not self.verify_signature(payload):
                raise ExternalServiceError(self.name, "INVALID_SIGNATURE", retryable=False)
        elif self.require_signature:
            raise ExternalServiceError(self.name, "MISSING_SIGNATURE", retryable=False)

        status = self.fetch_status(order_id)
        fetched_ref = str(status.get("order_id") or order_id).strip()
        if fetched_ref != order_id:
            raise ExternalServiceError(self.name, "ORDER_ID_MISMATCH", retryable=False)
        return PaymentVerifyResult(
            external_ref=fetched_ref,
            state=str(status.get("transaction_status") or "").strip().lower(),
            fraud_state=str(status.get("fraud_status") or "").strip().lower(),
            status_code=str(status.get("status_code") or ""),
            gross_amount=str(status.get("gross_amount") or ""),
            gateway_transaction_id=str(status.get("transaction_id") or ""),
            raw=status,
        )
