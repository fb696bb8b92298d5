from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request

from sikupi.errors import AuthorizationError, NotFoundError, ValidationError
from sikupi.extensions import db
from sikupi.models import Product
from sikupi.services.factory import get_order_services
from sikupi.services.inventory_ledger import positive_quantity
from sikupi.utils.jwt_utils import user_id_from_header
from sikupi.utils.responses import unauthorized

products_bp = Blueprint("products_bp", __name__, url_prefix="/api/products")


def _current_user_id() -> int | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is not None:
        g.auth_user_id = uid
    return uid


def _price(value) -> float:
    if isinstance(value, bool):
        raise ValidationError("price_per_unit must be a number", field="price_per_unit")
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError("price_per_unit must be a number", field="price_per_unit")
    if price <= 0:
        raise ValidationError("price_per_unit must be greater than zero", field="price_per_unit")
    return price


@products_bp.post("")
def create_product():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    title = str(payload.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", field="title")
    if len(title) > 160:
        raise ValidationError("title must be at most 160 characters", field="title")
    price = _price(payload.get("price_per_unit"))
    raw_qty = payload.get("available_quantity", 0)
    qty = 0 if raw_qty in (0, "0") else positive_quantity(raw_qty)

    row = Product(
        owner_id=int(uid),
        title=title,
        price_per_unit=price,
        available_quantity=qty,
        listing_status="active" if qty > 0 else "sold_out",
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.session.add(row)
    db.session.commit()
    current_app.logger.info("product_created id=%s owner_id=%s qty=%s", row.id, uid, qty)
    return jsonify({"ok": True, "product": row.to_dict()}), 201


@products_bp.get("/<int:product_id>")
def get_product(product_id: int):
    row = db.session.get(Product, int(product_id))
    if row is None:
        raise NotFoundError("product", product_id)
    return jsonify({"ok": True, "product": row.to_dict()}), 200


@products_bp.patch("/<int:product_id>")
def update_product(product_id: int):
    """Edit title, price or visibility; stock only grows through ``add_quantity``.

    Every field is validated before anything is written, and the edits and
    the restock commit together.
    """
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    services = get_order_services()
    product = services.engine.ledger.product(product_id)
    if int(product.owner_id) != int(uid):
        raise AuthorizationError("Only the owner can edit this listing")

    if "available_quantity" in payload:
        raise ValidationError("Use add_quantity to restock; stock is otherwise managed by orders", field="available_quantity")
    changes = {}
    if "title" in payload:
        title = str(payload.get("title") or "").strip()
        if not title or len(title) > 160:
            raise ValidationError("title must be 1-160 characters", field="title")
        changes["title"] = title
    if "price_per_unit" in payload:
        # Existing transactions keep their price snapshot.
        changes["price_per_unit"] = _price(payload.get("price_per_unit"))
    if "listing_status" in payload:
        wanted = str(payload.get("listing_status") or "").strip().lower()
        if wanted not in ("active", "inactive"):
            raise ValidationError("listing_status must be active or inactive", field="listing_status")
        changes["listing_status"] = wanted
    add_quantity = None
    if payload.get("add_quantity") is not None:
        add_quantity = positive_quantity(payload.get("add_quantity"))

    with services.stores.atomic():
        if changes:
            services.stores.inventory.update_listing(product_id, changes)
        if add_quantity is not None:
            services.engine.ledger.restore(product_id, add_quantity)
    product = services.engine.ledger.product(product_id)
    current_app.logger.info(
        "product_updated id=%s owner_id=%s fields=%s add_quantity=%s",
        product_id,
        uid,
        ",".join(sorted(changes)),
        add_quantity,
    )
    return jsonify({"ok": True, "product": product.to_dict()}), 200
