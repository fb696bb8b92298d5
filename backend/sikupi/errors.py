"""Error taxonomy for the order engine.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with, so blueprints never need their own mapping tables.
"""

from __future__ import annotations


class OrderEngineError(Exception):
    """Base exception for all order engine errors."""

    code = "ORDER_ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str = "", **details):
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        payload.update(self.details)
        return payload


class ValidationError(OrderEngineError):
    """Malformed input, self-dealing, non-positive quantity."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(OrderEngineError):
    """Unknown transaction or product."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, kind: str, ident):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class AuthorizationError(OrderEngineError):
    """Actor lacks the role required for the attempted operation."""

    code = "FORBIDDEN"
    http_status = 403


class StateConflictError(OrderEngineError):
    """Requested transition is not an edge of the status graph."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str, allowed):
        self.current = current
        self.target = target
        self.allowed = sorted(allowed or [])
        super().__init__(
            f"Cannot change status from {current} to {target}",
            current_status=current,
            allowed=self.allowed,
        )


class ConcurrencyError(OrderEngineError):
    """Stock was taken by another confirmation first."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_id, requested: int):
        self.product_id = product_id
        self.requested = requested
        super().__init__(
            f"Insufficient stock to confirm {requested} unit(s) of product {product_id}",
            product_id=product_id,
            requested=requested,
        )


class ExternalServiceError(OrderEngineError):
    """Gateway or shipping collaborator unreachable or unverifiable."""

    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502

    def __init__(self, service: str, message: str = "", *, retryable: bool = True):
        self.service = service
        # False when a redelivery of the same input cannot succeed (bad signature).
        self.retryable = bool(retryable)
        super().__init__(message or f"{service} unavailable", service=service)
