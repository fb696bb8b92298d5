from datetime import datetime

from sikupi.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False, default="")
    message = db.Column(db.Text, nullable=False, default="")
    category = db.Column(db.String(32), nullable=False, default="order_update")  # order | order_update | payment
    related_id = db.Column(db.Integer, nullable=True, index=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        self.is_read = True
        self.read_at = stamped
        return stamped

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title or "",
            "message": self.message or "",
            "category": self.category or "order_update",
            "related_id": int(self.related_id) if self.related_id is not None else None,
            "is_read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }
