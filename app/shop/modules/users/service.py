from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_
from werkzeug.security import generate_password_hash

from app.shop.audit import record_event
from app.shop.errors import ApiError, Forbidden, NotFound
from app.shop.models import Role, User, UserRole
from app.shop.modules.addresses.models import Address
from app.shop.modules.addresses.service import address_to_dict
from app.shop.modules.orders.models import TERMINAL_STATUSES, Order
from app.shop.modules.orders.service import order_to_dict, status_stats
from app.shop.rbac import is_admin, user_has_permission
from app.shop.utils import (
    as_float,
    normalize_text,
    parse_limit,
    parse_page,
    validate_email,
    validate_password,
    validate_phone,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

ROLE_PERMISSION = "users.roles"
CUSTOMER_ROLE = "customer"
SUPER_ADMIN_ROLE = "super_admin"
SORT_FIELDS = {
    "createdAt": User.created_at,
    "updatedAt": User.updated_at,
    "name": User.name,
    "email": User.email,
}


def _counts_by_user(s: "Session", model, user_ids: list[int]) -> dict[int, int]:
    if not user_ids:
        return {}
    rows = s.query(model.user_id, func.count(model.id)).filter(model.user_id.in_(user_ids)).group_by(model.user_id).all()
    return {uid: int(n) for uid, n in rows}


def role_stats(s: "Session") -> dict[str, int]:
    rows = (
        s.query(Role.key, func.count(UserRole.user_id))
        .outerjoin(UserRole, UserRole.role_id == Role.id)
        .group_by(Role.key)
        .all()
    )
    return {key: int(n) for key, n in rows}


def list_users(s: "Session", args: Any) -> dict[str, Any]:
    page = parse_page(args)
    limit = parse_limit(args)
    q = s.query(User)

    search = normalize_text(args.get("search"))
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like), User.phone.ilike(like)))

    role = normalize_text(args.get("role")).lower()
    if role:
        q = q.filter(User.roles.any(Role.key == role))

    status = normalize_text(args.get("status")).lower()
    if status == "active":
        q = q.filter(User.is_active.is_(True))
    elif status == "inactive":
        q = q.filter(User.is_active.is_(False))

    total = q.count()
    col = SORT_FIELDS.get(normalize_text(args.get("sortBy")), User.created_at)
    order = col.asc() if normalize_text(args.get("sortOrder")).lower() == "asc" else col.desc()
    users = q.order_by(order, User.id.desc()).offset((page - 1) * limit).limit(limit).all()

    ids = [u.id for u in users]
    order_counts = _counts_by_user(s, Order, ids)
    address_counts = _counts_by_user(s, Address, ids)
    rows = []
    for u in users:
        d = u.to_dict()
        d["counts"] = {"orders": order_counts.get(u.id, 0), "addresses": address_counts.get(u.id, 0)}
        rows.append(d)

    return {
        "users": rows,
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if total else 0},
        "stats": {"roles": role_stats(s), "total": s.query(func.count(User.id)).scalar() or 0},
    }


def get_user(s: "Session", user_id: int) -> User:
    u = s.get(User, user_id)
    if u is None:
        raise NotFound("User not found.")
    return u


def _role_by_key(s: "Session", key: Any) -> Role:
    key = normalize_text(key).lower()
    role = s.query(Role).filter(Role.key == key).one_or_none() if key else None
    if role is None:
        raise ApiError("Role does not exist.")
    return role


def _grants_admin(role: Role) -> bool:
    return any(p.key == "admin.view" for p in role.permissions)


def _email_taken(s: "Session", email: str, exclude_id: int | None = None) -> bool:
    q = s.query(User.id).filter(User.email == email)
    if exclude_id is not None:
        q = q.filter(User.id != exclude_id)
    return q.first() is not None


def create_user(s: "Session", payload: dict, actor: User) -> User:
    name = normalize_text(payload.get("name"))
    email = normalize_text(payload.get("email")).lower()
    password = payload.get("password") or ""
    phone = normalize_text(payload.get("phone"))

    errors = []
    if not name:
        errors.append("Name is required.")
    for err in (validate_email(email), validate_password(password), validate_phone(phone)):
        if err:
            errors.append(err)
    if errors:
        raise ApiError(errors[0], errors=errors)
    if _email_taken(s, email):
        raise ApiError("A user with this email already exists.")

    role = _role_by_key(s, payload.get("role") or CUSTOMER_ROLE)
    if _grants_admin(role) and not user_has_permission(actor, ROLE_PERMISSION):
        raise Forbidden("You are not allowed to create administrators.")

    now = datetime.utcnow()
    user = User(
        name=name,
        email=email,
        phone=phone or None,
        password_hash=generate_password_hash(password),
        is_active=payload.get("isActive") is not False,
        created_at=now,
        updated_at=now,
    )
    user.roles.append(role)
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": email, "roles": user.role_keys},
    )
    return user


def ensure_can_view(actor: User, target: User) -> None:
    if actor.id != target.id and not is_admin(actor):
        raise Forbidden("You do not have access to this user.")


def ensure_can_manage(actor: User, target: User) -> None:
    """Accounts that can assign roles are only changed by themselves or by other role managers."""
    ensure_can_view(actor, target)
    if (
        actor.id != target.id
        and any(p.key == ROLE_PERMISSION for r in target.roles for p in r.permissions)
        and not user_has_permission(actor, ROLE_PERMISSION)
    ):
        raise Forbidden("You are not allowed to modify this account.")


def _ensure_super_admin_remains(s: "Session", leaving: list[User]) -> None:
    """Refuse when the users in `leaving` are the last active super administrators."""
    if not any(SUPER_ADMIN_ROLE in u.role_keys for u in leaving):
        return
    remaining = (
        s.query(func.count(User.id))
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(
            Role.key == SUPER_ADMIN_ROLE,
            User.is_active.is_(True),
            User.id.notin_([u.id for u in leaving]),
        )
        .scalar()
    )
    if not remaining:
        raise ApiError("At least one active super administrator must remain.")


def user_detail(s: "Session", user: User) -> dict[str, Any]:
    addresses = (
        s.query(Address)
        .filter(Address.user_id == user.id)
        .order_by(Address.is_default.desc(), Address.updated_at.desc())
        .all()
    )
    recent = (
        s.query(Order)
        .filter(Order.user_id == user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(10)
        .all()
    )
    spent = (
        s.query(func.coalesce(func.sum(Order.final_amount), 0))
        .filter(Order.user_id == user.id, Order.status.notin_(TERMINAL_STATUSES))
        .scalar()
    )
    order_count = s.query(func.count(Order.id)).filter(Order.user_id == user.id).scalar() or 0
    data = user.to_dict()
    data.update(
        {
            "addresses": [address_to_dict(a) for a in addresses],
            "recentOrders": [order_to_dict(o) for o in recent],
            "stats": {
                "orderCount": int(order_count),
                "totalSpent": as_float(Decimal(str(spent or 0))),
                "ordersByStatus": status_stats(s, user.id),
            },
        }
    )
    return data


def update_user(s: "Session", target: User, payload: dict, actor: User) -> User:
    ensure_can_manage(actor, target)
    before = {"email": target.email, "roles": target.role_keys, "is_active": target.is_active}
    errors = []

    if "name" in payload:
        name = normalize_text(payload.get("name"))
        if not name:
            errors.append("Name cannot be empty.")
        else:
            target.name = name
    if "email" in payload:
        email = normalize_text(payload.get("email")).lower()
        err = validate_email(email)
        if err:
            errors.append(err)
        elif _email_taken(s, email, exclude_id=target.id):
            errors.append("A user with this email already exists.")
        else:
            target.email = email
    if "phone" in payload:
        phone = normalize_text(payload.get("phone"))
        err = validate_phone(phone)
        if err:
            errors.append(err)
        else:
            target.phone = phone or None
    if "avatar" in payload:
        target.avatar = normalize_text(payload.get("avatar")) or None
    if payload.get("password"):
        err = validate_password(payload["password"])
        if err:
            errors.append(err)
        else:
            target.password_hash = generate_password_hash(payload["password"])
    if errors:
        raise ApiError(errors[0], errors=errors)

    if "role" in payload:
        if not user_has_permission(actor, ROLE_PERMISSION):
            raise Forbidden("You are not allowed to change roles.")
        role = _role_by_key(s, payload.get("role"))
        if target.id == actor.id and not _grants_admin(role):
            raise ApiError("You cannot remove your own administrator role.")
        if role.key != SUPER_ADMIN_ROLE:
            _ensure_super_admin_remains(s, [target])
        target.roles = [role]
    if "isActive" in payload:
        if not is_admin(actor):
            raise Forbidden("Only administrators can change account status.")
        if target.id == actor.id:
            raise ApiError("You cannot change your own account status.")
        if not payload.get("isActive"):
            _ensure_super_admin_remains(s, [target])
        target.is_active = bool(payload.get("isActive"))

    target.updated_at = datetime.utcnow()
    after = {"email": target.email, "roles": target.role_keys, "is_active": target.is_active}
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"before": before, "after": after, "password_changed": bool(payload.get("password"))},
    )
    return target


def _check_deletable(s: "Session", targets: list[User], actor: User) -> None:
    if any(u.id == actor.id for u in targets):
        raise ApiError("You cannot delete your own account.")
    for u in targets:
        ensure_can_manage(actor, u)
    _ensure_super_admin_remains(s, targets)
    ids = [u.id for u in targets]
    with_orders = s.query(Order.user_id).filter(Order.user_id.in_(ids)).distinct().all()
    if with_orders:
        blocked = sorted(str(uid) for (uid,) in with_orders)
        raise ApiError(f"Users with orders cannot be deleted (ids: {', '.join(blocked)}).")


def delete_users(s: "Session", user_ids: list[int], actor: User) -> int:
    if not user_ids:
        raise ApiError("Select at least one user to delete.")
    targets = s.query(User).filter(User.id.in_(user_ids)).all()
    if not targets:
        raise NotFound("User not found.")
    _check_deletable(s, targets, actor)
    for u in targets:
        record_event(
            s,
            actor=actor,
            action="user.delete",
            entity_type="User",
            entity_id=str(u.id),
            metadata={"email": u.email},
        )
        s.delete(u)
    return len(targets)


def bulk_set_active(s: "Session", user_ids: list[int], updates: Any, actor: User) -> int:
    if not user_ids:
        raise ApiError("Select at least one user to update.")
    if not isinstance(updates, dict) or not isinstance(updates.get("isActive"), bool):
        raise ApiError("updates.isActive must be true or false.")
    if actor.id in user_ids:
        raise ApiError("You cannot change your own account status.")
    active = updates["isActive"]
    now = datetime.utcnow()
    users = s.query(User).filter(User.id.in_(user_ids)).all()
    for u in users:
        ensure_can_manage(actor, u)
    if not active:
        _ensure_super_admin_remains(s, users)
    for u in users:
        if u.is_active == active:
            continue
        u.is_active = active
        u.updated_at = now
        record_event(
            s,
            actor=actor,
            action="user.activate" if active else "user.deactivate",
            entity_type="User",
            entity_id=str(u.id),
            metadata={"email": u.email},
        )
    return len(users)
