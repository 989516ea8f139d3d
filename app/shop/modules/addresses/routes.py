from flask import Blueprint, jsonify

from app.shop.db import db_session
from app.shop.modules.addresses.service import (
    address_to_dict,
    create_address,
    delete_address,
    get_address,
    list_addresses,
    update_address,
)
from app.shop.rbac import require_login, require_user
from app.shop.utils import json_body

bp = Blueprint("addresses", __name__)


@bp.get("")
@require_login
def addresses_list():
    addresses = list_addresses(db_session(), require_user())
    return jsonify({"success": True, "data": [address_to_dict(a) for a in addresses]})


@bp.post("")
@require_login
def addresses_create():
    s = db_session()
    a = create_address(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "data": address_to_dict(a), "message": "Address created."}), 201


def _update(address_id):
    s = db_session()
    user = require_user()
    payload = json_body()
    a = update_address(s, user, get_address(s, user, address_id if address_id is not None else payload.get("id")), payload)
    s.commit()
    return jsonify({"success": True, "data": address_to_dict(a), "message": "Address updated."})


def _delete(address_id):
    s = db_session()
    user = require_user()
    a = get_address(s, user, address_id if address_id is not None else json_body().get("id"))
    delete_address(s, user, a)
    s.commit()
    return jsonify({"success": True, "message": "Address deleted."})


@bp.put("")
@require_login
def addresses_update_by_body():
    return _update(None)


@bp.put("/<int:address_id>")
@require_login
def addresses_update(address_id: int):
    return _update(address_id)


@bp.delete("")
@require_login
def addresses_delete_by_body():
    return _delete(None)


@bp.delete("/<int:address_id>")
@require_login
def addresses_delete(address_id: int):
    return _delete(address_id)
