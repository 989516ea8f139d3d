from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, jsonify, request, send_file

from app.shop.audit import record_event
from app.shop.db import db_session
from app.shop.errors import ApiError
from app.shop.exports import XLSX_MIMETYPE, csv_bytes, xlsx_bytes
from app.shop.modules.orders.service import (
    EXPORT_HEADERS,
    add_tracking,
    bulk_change_status,
    cancel_own_order,
    change_status,
    create_order,
    delete_order,
    export_orders,
    get_order,
    get_visible_order,
    list_orders,
    order_to_dict,
    tracking_payload,
    tracking_to_dict,
    update_tracking_info,
)
from app.shop.rbac import require_login, require_permission, require_user, user_has_permission
from app.shop.utils import json_body, parse_id_list

bp = Blueprint("orders", __name__)


def _can_view_all(user) -> bool:
    return user_has_permission(user, "orders.view_all")


@bp.get("")
@require_login
def orders_list():
    user = require_user()
    data = list_orders(db_session(), user, request.args, view_all=_can_view_all(user))
    return jsonify({"success": True, "data": data})


@bp.post("")
@require_login
def orders_create():
    s = db_session()
    order = create_order(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "data": order_to_dict(order, detail=True), "message": "Order created."}), 201


@bp.put("")
@require_permission("orders.manage")
def orders_bulk_status():
    s = db_session()
    payload = json_body()
    result = bulk_change_status(s, parse_id_list(payload.get("orderIds")), payload.get("status"), require_user())
    s.commit()
    return jsonify({"success": True, "data": result, "message": f"Updated {result['count']} orders."})


@bp.get("/export")
@require_permission("orders.manage")
def orders_export():
    s = db_session()
    fmt = (request.args.get("format") or "csv").strip().lower()
    if fmt == "excel":
        fmt = "xlsx"
    if fmt not in ("csv", "xlsx", "json"):
        raise ApiError("Unsupported export format. Use csv, xlsx or json.")
    rows = export_orders(s, request.args)

    record_event(
        s,
        actor=require_user(),
        action="order.export",
        entity_type="Order",
        entity_id="export",
        metadata={"format": fmt, "filters": request.args.to_dict(), "row_count": len(rows)},
    )
    s.commit()

    if fmt == "json":
        return jsonify({"success": True, "data": [dict(zip(EXPORT_HEADERS, r)) for r in rows]})

    stamp = date.today().strftime("%Y%m%d")
    if fmt == "xlsx":
        data = xlsx_bytes([("Orders", EXPORT_HEADERS, rows)])
        return send_file(io.BytesIO(data), mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=f"orders_{stamp}.xlsx", max_age=0)
    data = csv_bytes(EXPORT_HEADERS, rows)
    return send_file(io.BytesIO(data), mimetype="text/csv", as_attachment=True, download_name=f"orders_{stamp}.csv", max_age=0)


@bp.get("/<int:order_id>")
@require_login
def orders_detail(order_id: int):
    user = require_user()
    order = get_visible_order(db_session(), user, order_id, view_all=_can_view_all(user))
    return jsonify({"success": True, "data": order_to_dict(order, detail=True)})


@bp.put("/<int:order_id>")
@require_permission("orders.manage")
def orders_update(order_id: int):
    s = db_session()
    payload = json_body()
    if not payload.get("status"):
        raise ApiError("Order status is required.")
    order = change_status(s, get_order(s, order_id), payload["status"], require_user(), payload=payload)
    s.commit()
    return jsonify({"success": True, "data": order_to_dict(order, detail=True), "message": "Order status updated."})


@bp.post("/<int:order_id>/cancel")
@require_login
def orders_cancel(order_id: int):
    s = db_session()
    user = require_user()
    order = cancel_own_order(s, get_order(s, order_id), user)
    s.commit()
    return jsonify({"success": True, "data": order_to_dict(order), "message": "Order cancelled."})


@bp.delete("/<int:order_id>")
@require_permission("orders.manage")
def orders_delete(order_id: int):
    s = db_session()
    delete_order(s, get_order(s, order_id), require_user())
    s.commit()
    return jsonify({"success": True, "message": "Order deleted."})


# ---------- Tracking ----------
@bp.get("/<int:order_id>/tracking")
@require_login
def orders_tracking(order_id: int):
    s = db_session()
    user = require_user()
    order = get_visible_order(s, user, order_id, view_all=_can_view_all(user))
    return jsonify({"success": True, "data": tracking_payload(s, order)})


@bp.post("/<int:order_id>/tracking")
@require_permission("orders.manage")
def orders_tracking_add(order_id: int):
    s = db_session()
    entry = add_tracking(s, get_order(s, order_id), json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": tracking_to_dict(entry), "message": "Tracking entry added."}), 201


@bp.put("/<int:order_id>/tracking")
@require_permission("orders.manage")
def orders_tracking_update(order_id: int):
    s = db_session()
    order = update_tracking_info(s, get_order(s, order_id), json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": tracking_payload(s, order), "message": "Tracking information updated."})
