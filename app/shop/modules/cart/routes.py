from flask import Blueprint, jsonify

from app.shop.db import db_session
from app.shop.modules.cart.service import (
    add_to_cart,
    cart_item_to_dict,
    clear_cart,
    list_cart,
    remove_cart_item,
    update_cart_item,
)
from app.shop.rbac import require_login, require_user
from app.shop.utils import json_body

bp = Blueprint("cart", __name__)


@bp.get("")
@require_login
def cart_get():
    return jsonify({"success": True, "data": list_cart(db_session(), require_user())})


@bp.post("")
@require_login
def cart_add():
    s = db_session()
    item = add_to_cart(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "data": cart_item_to_dict(item), "message": "Added to cart."})


@bp.put("")
@require_login
def cart_update():
    s = db_session()
    item = update_cart_item(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "data": {"id": item.id, "quantity": item.quantity}, "message": "Quantity updated."})


@bp.delete("")
@require_login
def cart_remove():
    s = db_session()
    remove_cart_item(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "message": "Removed from cart."})


@bp.delete("/clear")
@require_login
def cart_clear():
    s = db_session()
    count = clear_cart(s, require_user())
    s.commit()
    return jsonify({"success": True, "data": {"count": count}, "message": "Cart cleared."})
