from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.shop.db import db_session
from app.shop.modules.home_sections.service import (
    create_section,
    delete_section,
    get_section,
    list_sections,
    section_to_dict,
    update_section,
)
from app.shop.rbac import current_user, require_permission, require_user, user_has_permission
from app.shop.utils import json_body

bp = Blueprint("home_sections", __name__)

MANAGE = "home_sections.manage"


@bp.get("")
def sections_list():
    include_inactive = request.args.get("all") == "true" and user_has_permission(current_user(), MANAGE)
    sections = list_sections(db_session(), include_inactive=include_inactive)
    return jsonify({"success": True, "data": [section_to_dict(h) for h in sections]})


@bp.get("/<int:section_id>")
def sections_detail(section_id: int):
    h = get_section(db_session(), section_id, include_inactive=user_has_permission(current_user(), MANAGE))
    return jsonify({"success": True, "data": section_to_dict(h)})


@bp.post("")
@require_permission(MANAGE)
def sections_create():
    s = db_session()
    h = create_section(s, json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": section_to_dict(h), "message": "Home section created."}), 201


@bp.put("/<int:section_id>")
@require_permission(MANAGE)
def sections_update(section_id: int):
    s = db_session()
    h = update_section(s, get_section(s, section_id, include_inactive=True), json_body(), require_user())
    s.commit()
    return jsonify({"success": True, "data": section_to_dict(h), "message": "Home section updated."})


@bp.delete("/<int:section_id>")
@require_permission(MANAGE)
def sections_delete(section_id: int):
    s = db_session()
    delete_section(s, get_section(s, section_id, include_inactive=True), require_user())
    s.commit()
    return jsonify({"success": True, "message": "Home section deleted."})
