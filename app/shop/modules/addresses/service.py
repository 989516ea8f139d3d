from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.shop.errors import ApiError, NotFound
from app.shop.modules.addresses.models import Address
from app.shop.utils import iso, normalize_text, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.shop.models import User

ADDRESS_FIELDS = ("name", "phone", "province", "city", "district", "detail")


def address_to_dict(a: Address) -> dict[str, Any]:
    return {
        "id": a.id,
        **a.snapshot(),
        "isDefault": a.is_default,
        "createdAt": iso(a.created_at),
        "updatedAt": iso(a.updated_at),
    }


def validate_address_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    for key in ADDRESS_FIELDS:
        if partial and key not in payload:
            continue
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"Field {key} is required and must be a string.")
    if "isDefault" in payload and not isinstance(payload.get("isDefault"), bool):
        errors.append("isDefault must be true or false.")
    return errors


def list_addresses(s: "Session", user: "User") -> list[Address]:
    return (
        s.query(Address)
        .filter(Address.user_id == user.id)
        .order_by(Address.is_default.desc(), Address.updated_at.desc(), Address.id.desc())
        .all()
    )


def get_address(s: "Session", user: "User", address_id: Any) -> Address:
    aid = parse_int(address_id)
    if aid is None:
        raise ApiError("Address id is required.")
    a = s.get(Address, aid)
    if a is None or a.user_id != user.id:
        raise NotFound("Address not found.")
    return a


def _clear_default(s: "Session", user: "User", keep_id: int | None = None) -> None:
    q = s.query(Address).filter(Address.user_id == user.id, Address.is_default.is_(True))
    if keep_id is not None:
        q = q.filter(Address.id != keep_id)
    q.update({"is_default": False}, synchronize_session="fetch")


def create_address(s: "Session", user: "User", payload: dict) -> Address:
    errors = validate_address_payload(payload)
    if errors:
        raise ApiError(errors[0], errors=errors)
    has_any = s.query(Address.id).filter(Address.user_id == user.id).first() is not None
    is_default = bool(payload.get("isDefault")) or not has_any
    if is_default:
        _clear_default(s, user)
    now = datetime.utcnow()
    a = Address(
        user_id=user.id,
        is_default=is_default,
        created_at=now,
        updated_at=now,
        **{k: normalize_text(payload.get(k)) for k in ADDRESS_FIELDS},
    )
    s.add(a)
    s.flush()
    return a


def update_address(s: "Session", user: "User", a: Address, payload: dict) -> Address:
    errors = validate_address_payload(payload, partial=True)
    if errors:
        raise ApiError(errors[0], errors=errors)
    for key in ADDRESS_FIELDS:
        if key in payload:
            setattr(a, key, normalize_text(payload.get(key)))
    if payload.get("isDefault") is True:
        _clear_default(s, user, keep_id=a.id)
        a.is_default = True
    elif payload.get("isDefault") is False:
        a.is_default = False
    a.updated_at = datetime.utcnow()
    return a


def delete_address(s: "Session", user: "User", a: Address) -> None:
    was_default = a.is_default
    s.delete(a)
    s.flush()
    if was_default:
        nxt = (
            s.query(Address)
            .filter(Address.user_id == user.id)
            .order_by(Address.updated_at.desc(), Address.id.desc())
            .first()
        )
        if nxt is not None:
            nxt.is_default = True
