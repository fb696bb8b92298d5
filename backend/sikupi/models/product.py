from datetime import datetime

from sikupi.extensions import db


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("available_quantity >= 0", name="ck_products_available_quantity_nonneg"),
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False, default="")
    price_per_unit = db.Column(db.Float, nullable=False, default=0.0)

    available_quantity = db.Column(db.Integer, nullable=False, default=0)
    listing_status = db.Column(db.String(16), nullable=False, default="active", index=True)  # active | sold_out | inactive

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "owner_id": int(self.owner_id),
            "title": self.title or "",
            "price_per_unit": float(self.price_per_unit or 0.0),
            "available_quantity": int(self.available_quantity or 0),
            "listing_status": self.listing_status or "active",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
