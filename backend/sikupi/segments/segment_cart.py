from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from sikupi.errors import ValidationError
from sikupi.services.factory import get_order_services
from sikupi.services.inventory_ledger import positive_quantity
from sikupi.utils.jwt_utils import user_id_from_header
from sikupi.utils.responses import unauthorized

cart_bp = Blueprint("cart_bp", __name__, url_prefix="/api/cart")


def _current_user_id() -> int | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is not None:
        g.auth_user_id = uid
    return uid


@cart_bp.get("")
def get_cart():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    services = get_order_services()
    items = []
    total_amount = 0.0
    total_quantity = 0
    for entry in services.stores.carts.list_for_buyer(uid):
        product = services.stores.inventory.get_product(entry.product_id)
        if product is None:
            continue
        subtotal = round(float(product.price_per_unit) * int(entry.quantity), 2)
        available = product.listing_status == "active" and product.available_quantity >= entry.quantity
        item = entry.to_dict()
        item.update({"product": product.to_dict(), "subtotal": subtotal, "available": available})
        items.append(item)
        if available:
            total_amount += subtotal
            total_quantity += int(entry.quantity)
    return jsonify(
        {
            "ok": True,
            "items": items,
            "summary": {
                "total_items": len(items),
                "total_quantity": total_quantity,
                "total_amount": round(total_amount, 2),
            },
        }
    ), 200


@cart_bp.post("/items")
def add_cart_item():
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    payload = request.get_json(silent=True) or {}
    services = get_order_services()
    try:
        product_id = int(payload.get("product_id"))
    except (TypeError, ValueError):
        raise ValidationError("product_id is required", field="product_id")
    qty = positive_quantity(payload.get("quantity", 1))
    product = services.engine.ledger.product(product_id)
    if product.listing_status != "active":
        raise ValidationError("This product is currently not available for purchase")
    if int(product.owner_id) == int(uid):
        raise ValidationError("You cannot add your own product to the cart")
    with services.stores.atomic():
        entry = services.stores.carts.add(uid, product_id, qty)
    return jsonify({"ok": True, "item": entry.to_dict()}), 201


@cart_bp.delete("/items/<int:product_id>")
def remove_cart_item(product_id: int):
    uid = _current_user_id()
    if uid is None:
        return unauthorized()
    services = get_order_services()
    with services.stores.atomic():
        removed = services.stores.carts.delete(uid, product_id)
    return jsonify({"ok": True, "removed": int(removed)}), 200
