from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from sikupi.errors import NotFoundError
from sikupi.extensions import db
from sikupi.models import Notification
from sikupi.utils.jwt_utils import user_id_from_header
from sikupi.utils.responses import unauthorized

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


def _current_user_id() -> int | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is not None:
        g.auth_user_id = uid
    return uid


@notifications_bp.get("/notifications")
def list_notifications():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    query = Notification.query.filter_by(user_id=uid)
    if (request.args.get("unread") or "").strip() in ("1", "true"):
        query = query.filter_by(is_read=False)
    rows = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    row = Notification.query.filter_by(id=notification_id, user_id=uid).first()
    if row is None:
        raise NotFoundError("notification", notification_id)
    if not row.is_read:
        row.mark_read()
        db.session.commit()
    return jsonify({"ok": True, "notification": row.to_dict()}), 200
