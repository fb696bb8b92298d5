from datetime import datetime

from sikupi.extensions import db


class Transaction(db.Model):
    __tablename__ = "transactions"
    __table_args__ = (
        db.CheckConstraint("buyer_id <> seller_id", name="ck_transactions_no_self_dealing"),
        db.CheckConstraint("quantity > 0", name="ck_transactions_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, nullable=False, index=True)
    seller_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    # Snapshot of the product price when the order was placed.
    unit_price = db.Column(db.Float, nullable=False)
    total_amount = db.Column(db.Float, nullable=False)
    shipping_cost = db.Column(db.Float, nullable=False, default=0.0)
    shipping_address = db.Column(db.String(500), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    tracking_reference = db.Column(db.String(100), nullable=True)
    payment_reference = db.Column(db.String(64), nullable=True, unique=True, index=True)
    payment_state = db.Column(db.String(32), nullable=True)
    note = db.Column(db.String(500), nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)


class TransactionTransition(db.Model):
    __tablename__ = "transaction_transitions"

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=False, default="")
    to_status = db.Column(db.String(16), nullable=False)
    actor_type = db.Column(db.String(16), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
