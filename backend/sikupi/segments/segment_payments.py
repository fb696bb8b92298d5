from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from sikupi.errors import ValidationError
from sikupi.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from sikupi.services.factory import get_order_services
from sikupi.services.order_status import Actor
from sikupi.services.payment_sessions import create_payment_session
from sikupi.utils.jwt_utils import user_id_from_header
from sikupi.utils.responses import json_error, unauthorized

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


def _current_user_id() -> int | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is not None:
        g.auth_user_id = uid
    return uid


@payments_bp.post("/midtrans/token")
def create_snap_token():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    raw_id = payload.get("transaction_id") if isinstance(payload, dict) else None
    try:
        transaction_id = int(raw_id)
    except (TypeError, ValueError):
        raise ValidationError("transaction_id is required", field="transaction_id")

    services = get_order_services()
    try:
        provider = services.payments
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        current_app.logger.warning("payments_provider_unavailable err=%s", e)
        return json_error("PAYMENTS_UNAVAILABLE", str(e), 503)

    customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else None
    session = create_payment_session(services.engine, provider, transaction_id, Actor.user(uid), customer=customer)
    return jsonify({"ok": True, **session.to_dict()}), 200
