from __future__ import annotations

import hashlib
import json
import os
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from sikupi.extensions import db
from sikupi.models import IdempotencyKey


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def idempotency_enforced() -> bool:
    return _env_bool("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, method: str, scope: str, user_id: int | None, payload: Any) -> str:
    raw = f"{method.strip().upper()}|{scope.strip()}|{user_id or ''}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _error_body(code: str, message: str, status: int) -> dict:
    return {"ok": False, "error": code, "message": message, "status": status}


def lookup_response(user_id: int | None, scope: str, payload: Any, *, require_header: bool | None = None):
    """Resolve an ``Idempotency-Key`` for ``scope``.

    Returns None when no key was sent, ``("hit", body, status)`` for a
    replay, ``("conflict"|"required", body, status)`` for misuse and
    ``("miss", row, 0)`` when the caller should run the operation and then
    call :func:`store_response`.
    """
    k = get_idempotency_key()
    should_require = idempotency_enforced() if require_header is None else bool(require_header)
    if not k:
        if should_require:
            return (
                "required",
                _error_body("IDEMPOTENCY_KEY_REQUIRED", f"Idempotency-Key header is required for {scope}.", 400),
                400,
            )
        return None

    method = request.method if has_request_context() else "POST"
    req_hash = _hash_request(method=method, scope=scope, user_id=user_id, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row is None:
        row = IdempotencyKey(
            key=k,
            scope=scope,
            user_id=int(user_id) if user_id is not None else None,
            request_hash=req_hash,
            response_json=None,
            status_code=200,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        db.session.add(row)
        try:
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            # Another request with the same key won the insert.
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
            if row is None:
                raise

    if (row.request_hash or "") != req_hash:
        return (
            "conflict",
            _error_body("IDEMPOTENCY_KEY_REUSE", "This Idempotency-Key was already used with a different request payload.", 409),
            409,
        )
    if not row.response_json:
        return (
            "conflict",
            _error_body("IDEMPOTENCY_KEY_IN_PROGRESS", "A request with this Idempotency-Key is still being processed.", 409),
            409,
        )
    return ("hit", json.loads(row.response_json), int(row.status_code or 200))


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Drop a key whose request failed so the client may retry with it."""
    db.session.rollback()
    db.session.delete(row)
    db.session.commit()
