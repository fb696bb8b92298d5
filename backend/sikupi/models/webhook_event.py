from datetime import datetime

from sikupi.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="midtrans")
    event_id = db.Column(db.String(128), nullable=False)
    reference = db.Column(db.String(128), nullable=True, index=True)

    gateway_state = db.Column(db.String(32), nullable=True)
    fraud_state = db.Column(db.String(32), nullable=True)
    target_status = db.Column(db.String(16), nullable=True)

    # received | applied | ignored | rejected | conflict | failed
    status = db.Column(db.String(16), nullable=False, default="received")
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "reference": self.reference or "",
            "gateway_state": self.gateway_state or "",
            "fraud_state": self.fraud_state or "",
            "target_status": self.target_status or "",
            "status": self.status or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
