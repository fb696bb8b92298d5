from __future__ import annotations

from dataclasses import dataclass


class TransactionStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    ALL = (PENDING, CONFIRMED, SHIPPED, DELIVERED, CANCELLED)
    TERMINAL = {DELIVERED, CANCELLED}
    ALLOWED = {
        PENDING: {CONFIRMED, CANCELLED},
        CONFIRMED: {SHIPPED, CANCELLED},
        SHIPPED: {DELIVERED},
        DELIVERED: set(),
        CANCELLED: set(),
    }
    TIMESTAMP_FIELDS = {
        CONFIRMED: "confirmed_at",
        SHIPPED: "shipped_at",
        DELIVERED: "delivered_at",
        CANCELLED: "cancelled_at",
    }
    # Forward progress along the fulfilment path; cancelled sits outside it.
    PROGRESS = {
        PENDING: 0,
        CONFIRMED: 1,
        SHIPPED: 2,
        DELIVERED: 3,
    }


class ActorRole:
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


PERMITTED_ROLES = {
    TransactionStatus.CONFIRMED: {ActorRole.SELLER, ActorRole.SYSTEM},
    TransactionStatus.SHIPPED: {ActorRole.SELLER},
    TransactionStatus.DELIVERED: {ActorRole.BUYER},
    TransactionStatus.CANCELLED: {ActorRole.BUYER, ActorRole.SELLER, ActorRole.SYSTEM},
}


@dataclass(frozen=True)
class Actor:
    user_id: int | None = None
    system_name: str = ""

    @classmethod
    def user(cls, user_id: int) -> "Actor":
        return cls(user_id=int(user_id))

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(user_id=None, system_name=(name or "system"))

    @property
    def is_system(self) -> bool:
        return self.user_id is None

    def describe(self) -> str:
        if self.is_system:
            return f"system:{self.system_name}"
        return f"user:{self.user_id}"


def normalize_status(value) -> str:
    return str(value or "").strip().lower()


def allowed_next(current: str) -> set:
    return set(TransactionStatus.ALLOWED.get(normalize_status(current), set()))


def is_terminal(status: str) -> bool:
    return normalize_status(status) in TransactionStatus.TERMINAL


def is_backward(current: str, target: str) -> bool:
    """True when ``target`` lies behind ``current`` on the fulfilment path."""
    cur = TransactionStatus.PROGRESS.get(normalize_status(current))
    tgt = TransactionStatus.PROGRESS.get(normalize_status(target))
    if cur is None or tgt is None:
        return False
    return tgt < cur
