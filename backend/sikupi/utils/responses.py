from __future__ import annotations

from flask import g, jsonify


def json_error(code: str, message: str, status: int, **extra):
    payload = {
        "ok": False,
        "error": code,
        "message": message,
        "status": int(status),
    }
    payload.update(extra)
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), int(status)


def unauthorized():
    return json_error("UNAUTHORIZED", "Unauthorized", 401)
