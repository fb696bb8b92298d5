from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from sikupi.errors import ValidationError
from sikupi.services.factory import get_order_services
from sikupi.services.order_status import Actor
from sikupi.utils.idempotency import lookup_response, release_key, store_response
from sikupi.utils.jwt_utils import user_id_from_header
from sikupi.utils.observability import get_request_id
from sikupi.utils.responses import unauthorized

transactions_bp = Blueprint("transactions_bp", __name__, url_prefix="/api/transactions")


def _current_user_id() -> int | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is not None:
        g.auth_user_id = uid
    return uid


def _request_metadata() -> dict:
    rid = get_request_id()
    return {"request_id": rid} if rid else {}


def _body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")
    return payload


@transactions_bp.post("")
def create_transaction():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = _body()
    quantity = payload.get("quantity")
    if quantity is None:
        quantity = payload.get("quantity_kg")

    idem = lookup_response(uid, "/api/transactions", payload)
    if idem and idem[0] in ("hit", "conflict", "required"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    services = get_order_services()
    try:
        result = services.converter.create_order(
            buyer_id=uid,
            product_id=payload.get("product_id"),
            quantity=quantity,
            shipping_address=payload.get("shipping_address"),
            note=payload.get("notes"),
        )
    except Exception:
        if idem_row is not None:
            release_key(idem_row)
        raise

    body = {
        "ok": True,
        "message": "Transaction created successfully",
        "transaction": result.transaction.to_dict(),
        "warnings": list(result.warnings),
    }
    if idem_row is not None:
        store_response(idem_row, body, 201)
    return jsonify(body), 201


@transactions_bp.get("")
def list_transactions():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    page = request.args.get("page", 1)
    limit = request.args.get("limit", 10)
    rows, total = get_order_services().engine.list_for_participant(
        Actor.user(uid),
        role=request.args.get("role", "any"),
        status=request.args.get("status"),
        page=page,
        limit=limit,
    )
    page = int(page)
    limit = int(limit)
    return jsonify(
        {
            "ok": True,
            "transactions": [r.to_dict() for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": int(total),
                "total_pages": (int(total) + limit - 1) // limit,
            },
        }
    ), 200


@transactions_bp.get("/stats/summary")
def transactions_summary():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    stats = get_order_services().engine.status_summary(Actor.user(uid))
    return jsonify({"ok": True, "stats": stats}), 200


@transactions_bp.get("/<int:transaction_id>")
def get_transaction(transaction_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    txn = get_order_services().engine.get_for_participant(transaction_id, Actor.user(uid))
    return jsonify({"ok": True, "transaction": txn.to_dict()}), 200


@transactions_bp.get("/<int:transaction_id>/history")
def transaction_history(transaction_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    rows = get_order_services().engine.history(transaction_id, Actor.user(uid))
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@transactions_bp.put("/<int:transaction_id>/status")
def update_transaction_status(transaction_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = _body()
    status = payload.get("status")
    if not status:
        raise ValidationError("status is required", field="status")
    tracking = payload.get("tracking_reference")
    if tracking is None:
        tracking = payload.get("tracking_number")

    result = get_order_services().engine.transition(
        transaction_id,
        status,
        Actor.user(uid),
        note=payload.get("notes"),
        tracking_reference=tracking,
        shipping_cost=payload.get("shipping_cost"),
        metadata=_request_metadata(),
    )
    current_app.logger.info(
        "transaction_status_updated id=%s from=%s to=%s user_id=%s",
        transaction_id,
        result.from_status,
        result.to_status,
        uid,
    )
    return jsonify(
        {
            "ok": True,
            "message": f"Transaction status updated to {result.to_status}",
            "transaction": result.transaction.to_dict(),
        }
    ), 200


@transactions_bp.post("/<int:transaction_id>/cancel")
def cancel_transaction(transaction_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = _body()
    result = get_order_services().engine.cancel(
        transaction_id,
        Actor.user(uid),
        reason=payload.get("reason"),
        metadata=_request_metadata(),
    )
    return jsonify(
        {
            "ok": True,
            "message": "Transaction cancelled successfully",
            "transaction": result.transaction.to_dict(),
            "restored_quantity": int(result.restored_quantity),
        }
    ), 200
