from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.shop.db import db_session
from app.shop.modules.coupons.service import (
    claim_coupon,
    claimable_coupons,
    coupon_to_dict,
    create_coupon,
    delete_coupon,
    get_coupon,
    list_coupons_admin,
    quote_coupon,
    toggle_coupon,
    update_coupon,
    user_coupon_to_dict,
    user_coupons,
)
from app.shop.modules.orders.service import shipping_fee_for
from app.shop.rbac import current_user, require_login, require_permission, require_user
from app.shop.utils import json_body, parse_decimal

bp = Blueprint("coupons", __name__)


@bp.get("/coupons")
def coupons_available():
    s = db_session()
    user = current_user()
    claimed: set[int] = set()
    if user is not None:
        claimed = {uc.coupon_id for uc in user_coupons(s, user)}
    data = []
    for c in claimable_coupons(s):
        d = coupon_to_dict(c)
        d["claimed"] = c.id in claimed
        data.append(d)
    return jsonify({"success": True, "data": data})


@bp.get("/coupons/mine")
@require_login
def coupons_mine():
    s = db_session()
    return jsonify({"success": True, "data": [user_coupon_to_dict(uc) for uc in user_coupons(s, require_user())]})


@bp.post("/coupons/<code>/claim")
@require_login
def coupons_claim(code: str):
    s = db_session()
    uc = claim_coupon(s, require_user(), code)
    s.commit()
    return jsonify({"success": True, "data": user_coupon_to_dict(uc), "message": "Coupon claimed."}), 201


@bp.post("/coupons/quote")
def coupons_quote():
    payload = json_body()
    subtotal = parse_decimal(payload.get("subtotal"))
    data = quote_coupon(db_session(), payload.get("code"), payload.get("subtotal"), shipping_fee_for(subtotal))
    return jsonify({"success": True, "data": data})


# ---------- Admin ----------
@bp.get("/admin/coupons")
@require_permission("coupons.manage")
def admin_coupons_list():
    return jsonify({"success": True, "data": list_coupons_admin(db_session(), request.args)})


@bp.post("/admin/coupons")
@require_permission("coupons.manage")
def admin_coupons_create():
    s = db_session()
    c = create_coupon(s, json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": coupon_to_dict(c), "message": "Coupon created."}), 201


@bp.get("/admin/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def admin_coupons_detail(coupon_id: int):
    return jsonify({"success": True, "data": coupon_to_dict(get_coupon(db_session(), coupon_id))})


@bp.put("/admin/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def admin_coupons_update(coupon_id: int):
    s = db_session()
    c = update_coupon(s, get_coupon(s, coupon_id), json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": coupon_to_dict(c), "message": "Coupon updated."})


@bp.delete("/admin/coupons/<int:coupon_id>")
@require_permission("coupons.manage")
def admin_coupons_delete(coupon_id: int):
    s = db_session()
    delete_coupon(s, get_coupon(s, coupon_id), require_user())
    s.commit()
    return jsonify({"success": True, "message": "Coupon deleted."})


@bp.post("/admin/coupons/<int:coupon_id>/toggle")
@require_permission("coupons.manage")
def admin_coupons_toggle(coupon_id: int):
    s = db_session()
    c = toggle_coupon(s, get_coupon(s, coupon_id), require_user())
    s.commit()
    return jsonify({"success": True, "data": coupon_to_dict(c)})
