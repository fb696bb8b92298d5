from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from sikupi.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from sikupi.services.factory import get_order_services
from sikupi.utils.observability import get_request_id
from sikupi.utils.responses import json_error

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/midtrans")
def midtrans_webhook():
    payload = request.get_json(silent=True)
    services = get_order_services()
    try:
        reconciler = services.reconciler()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        current_app.logger.warning("payments_provider_unavailable err=%s", e)
        return json_error("PAYMENTS_UNAVAILABLE", str(e), 503)

    outcome = reconciler.handle_notification(payload, request_id=get_request_id())
    current_app.logger.info(
        "midtrans_webhook_handled decision=%s reason=%s transaction_id=%s status=%s",
        outcome.decision,
        outcome.reason,
        outcome.transaction_id,
        outcome.http_status,
    )
    if not outcome.acknowledged:
        return json_error(
            "WEBHOOK_NOT_PROCESSED",
            outcome.reason or outcome.decision,
            outcome.http_status,
            decision=outcome.decision,
            event_id=outcome.event_id,
        )
    return jsonify(outcome.to_dict()), 200
