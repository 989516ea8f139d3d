from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.shop.db import db_session
from app.shop.modules.users.service import (
    bulk_set_active,
    create_user,
    delete_users,
    ensure_can_view,
    get_user,
    list_users,
    update_user,
    user_detail,
)
from app.shop.rbac import require_login, require_permission, require_user
from app.shop.utils import json_body, parse_id_list

bp = Blueprint("users", __name__)


@bp.get("")
@require_permission("users.manage")
def users_list():
    return jsonify({"success": True, "data": list_users(db_session(), request.args)})


@bp.post("")
@require_permission("users.manage")
def users_create():
    s = db_session()
    user = create_user(s, json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": user.to_dict(), "message": "User created."}), 201


@bp.put("")
@require_permission("users.manage")
def users_bulk_update():
    s = db_session()
    payload = json_body()
    count = bulk_set_active(s, parse_id_list(payload.get("userIds")), payload.get("updates"), require_user())
    s.commit()
    return jsonify({"success": True, "data": {"count": count}, "message": f"Updated {count} users."})


@bp.delete("")
@require_permission("users.manage")
def users_bulk_delete():
    s = db_session()
    count = delete_users(s, parse_id_list(request.args.get("ids")), require_user())
    s.commit()
    return jsonify({"success": True, "data": {"count": count}, "message": f"Deleted {count} users."})


@bp.get("/<int:user_id>")
@require_login
def users_detail(user_id: int):
    s = db_session()
    target = get_user(s, user_id)
    ensure_can_view(require_user(), target)
    return jsonify({"success": True, "data": user_detail(s, target)})


@bp.put("/<int:user_id>")
@require_login
def users_update(user_id: int):
    s = db_session()
    target = update_user(s, get_user(s, user_id), json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": target.to_dict(), "message": "User updated."})


@bp.delete("/<int:user_id>")
@require_permission("users.manage")
def users_delete(user_id: int):
    s = db_session()
    delete_users(s, [get_user(s, user_id).id], require_user())
    s.commit()
    return jsonify({"success": True, "message": "User deleted."})
