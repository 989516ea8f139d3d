from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.shop.audit import record_event
from app.shop.errors import ApiError, NotFound
from app.shop.modules.coupons.models import COUPON_TYPES, Coupon, UserCoupon
from app.shop.utils import as_float, iso, money, normalize_text, parse_datetime, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.shop.models import User

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def calculate_discount(coupon: Coupon, subtotal: Decimal, shipping_fee: Decimal = ZERO) -> Decimal:
    """
    Discount granted by `coupon` on an order.

    AMOUNT takes `value` off the subtotal, DISCOUNT takes `value` percent off
    (capped by `max_discount` when set), SHIPPING waives the shipping fee.
    """
    subtotal = money(subtotal)
    shipping_fee = money(shipping_fee)
    value = Decimal(coupon.value or 0)

    if coupon.type == "AMOUNT":
        discount = min(value, subtotal)
    elif coupon.type == "DISCOUNT":
        cap = Decimal(coupon.max_discount) if coupon.max_discount else subtotal
        discount = min(subtotal * value / Decimal(100), cap)
    elif coupon.type == "SHIPPING":
        discount = shipping_fee
    else:
        discount = ZERO

    discount = money(discount)
    return max(ZERO, min(discount, subtotal + shipping_fee))


def check_coupon(coupon: Coupon | None, subtotal: Decimal, now: datetime | None = None) -> str | None:
    """Returns why the coupon can't be applied, or None when it can."""
    now = now or datetime.utcnow()
    if coupon is None or not coupon.is_active or not (coupon.start_date <= now <= coupon.end_date):
        return "Coupon is invalid or expired."
    if coupon.used_count >= coupon.total_count:
        return "Coupon has been fully redeemed."
    if coupon.min_amount and money(subtotal) < money(coupon.min_amount):
        return f"Minimum order amount is {money(coupon.min_amount)}."
    return None


def coupon_status(c: Coupon, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    if c.end_date < now:
        return "expired"
    return "active" if c.is_active else "inactive"


def coupon_to_dict(c: Coupon) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "code": c.code,
        "type": c.type,
        "value": as_float(c.value),
        "minAmount": as_float(c.min_amount),
        "maxDiscount": as_float(c.max_discount),
        "totalCount": c.total_count,
        "usedCount": c.used_count,
        "remaining": max(0, c.total_count - c.used_count),
        "startDate": iso(c.start_date),
        "endDate": iso(c.end_date),
        "isActive": c.is_active,
        "status": coupon_status(c),
        "description": c.description,
        "createdAt": iso(c.created_at),
        "updatedAt": iso(c.updated_at),
    }


def user_coupon_to_dict(uc: UserCoupon) -> dict[str, Any]:
    return {
        "id": uc.id,
        "status": uc.status,
        "claimedAt": iso(uc.claimed_at),
        "usedAt": iso(uc.used_at),
        "orderId": uc.order_id,
        "coupon": coupon_to_dict(uc.coupon),
    }


def find_coupon_by_code(s: "Session", code: Any) -> Coupon | None:
    code = normalize_text(code).upper()
    if not code:
        return None
    return s.query(Coupon).filter(Coupon.code == code).one_or_none()


def claimable_coupons(s: "Session", now: datetime | None = None) -> list[Coupon]:
    now = now or datetime.utcnow()
    return (
        s.query(Coupon)
        .filter(
            Coupon.is_active.is_(True),
            Coupon.start_date <= now,
            Coupon.end_date >= now,
            Coupon.used_count < Coupon.total_count,
        )
        .order_by(Coupon.end_date.asc(), Coupon.id.asc())
        .all()
    )


def user_coupons(s: "Session", user: "User") -> list[UserCoupon]:
    return s.query(UserCoupon).filter(UserCoupon.user_id == user.id).order_by(UserCoupon.claimed_at.desc()).all()


def claim_coupon(s: "Session", user: "User", code: str) -> UserCoupon:
    coupon = find_coupon_by_code(s, code)
    if coupon is None:
        raise NotFound("Coupon not found.")
    now = datetime.utcnow()
    if not coupon.is_active or not (coupon.start_date <= now <= coupon.end_date):
        raise ApiError("Coupon is invalid or expired.")
    if coupon.used_count >= coupon.total_count:
        raise ApiError("Coupon has been fully redeemed.")
    existing = (
        s.query(UserCoupon)
        .filter(UserCoupon.user_id == user.id, UserCoupon.coupon_id == coupon.id)
        .one_or_none()
    )
    if existing is not None:
        raise ApiError("You have already claimed this coupon.")
    uc = UserCoupon(user_id=user.id, coupon_id=coupon.id, status="UNUSED", claimed_at=now)
    s.add(uc)
    s.flush()
    return uc


def quote_coupon(s: "Session", code: Any, subtotal: Any, shipping_fee: Decimal) -> dict[str, Any]:
    amount = parse_decimal(subtotal)
    if amount is None or amount < 0:
        raise ApiError("Subtotal must be a non-negative amount.")
    coupon = find_coupon_by_code(s, code)
    problem = check_coupon(coupon, amount)
    if problem:
        raise ApiError(problem)
    discount = calculate_discount(coupon, amount, shipping_fee)  # type: ignore[arg-type]
    return {
        "coupon": coupon_to_dict(coupon),  # type: ignore[arg-type]
        "subtotal": as_float(amount),
        "shippingFee": as_float(shipping_fee),
        "discount": as_float(discount),
        "total": as_float(max(ZERO, money(amount) + money(shipping_fee) - discount)),
    }


def mark_user_coupon_used(s: "Session", user_id: int, coupon_id: int, order_id: int) -> None:
    uc = (
        s.query(UserCoupon)
        .filter(UserCoupon.user_id == user_id, UserCoupon.coupon_id == coupon_id, UserCoupon.status == "UNUSED")
        .one_or_none()
    )
    if uc is not None:
        uc.status = "USED"
        uc.used_at = datetime.utcnow()
        uc.order_id = order_id


def coupon_redeemed_by(s: "Session", user_id: int, coupon_id: int) -> bool:
    """One redemption per user: a paid claim or any order placed with the coupon that was not cancelled."""
    from app.shop.modules.orders.models import Order

    if (
        s.query(UserCoupon.id)
        .filter(UserCoupon.user_id == user_id, UserCoupon.coupon_id == coupon_id, UserCoupon.status == "USED")
        .first()
        is not None
    ):
        return True
    return (
        s.query(Order.id)
        .filter(Order.user_id == user_id, Order.coupon_id == coupon_id, Order.status != "CANCELLED")
        .first()
        is not None
    )


def release_user_coupon(s: "Session", order_id: int) -> None:
    s.query(UserCoupon).filter(UserCoupon.order_id == order_id, UserCoupon.status == "USED").update(
        {UserCoupon.status: "UNUSED", UserCoupon.used_at: None, UserCoupon.order_id: None},
        synchronize_session=False,
    )


# ---------- Admin ----------
def list_coupons_admin(s: "Session", args: Any) -> dict[str, Any]:
    page = parse_int(args.get("page")) or 1
    page = max(page, 1)
    limit = parse_int(args.get("limit")) or 10
    limit = min(max(limit, 1), 100)
    search = normalize_text(args.get("search"))
    ctype = normalize_text(args.get("type")).upper()
    status = normalize_text(args.get("status")).lower()
    now = datetime.utcnow()

    q = s.query(Coupon)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Coupon.name.ilike(like), Coupon.code.ilike(like)))
    if ctype in COUPON_TYPES:
        q = q.filter(Coupon.type == ctype)
    if status == "active":
        q = q.filter(Coupon.is_active.is_(True), Coupon.end_date >= now)
    elif status == "inactive":
        q = q.filter(Coupon.is_active.is_(False), Coupon.end_date >= now)
    elif status == "expired":
        q = q.filter(Coupon.end_date < now)

    total = q.count()
    coupons = q.order_by(Coupon.created_at.desc(), Coupon.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "coupons": [coupon_to_dict(c) for c in coupons],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if total else 0},
    }


def _coupon_values(s: "Session", payload: dict, *, partial: bool, coupon: Coupon | None = None) -> tuple[dict[str, Any], list[str]]:
    errors: list[str] = []
    values: dict[str, Any] = {}

    def wants(key: str) -> bool:
        return not partial or key in payload

    if wants("name"):
        name = normalize_text(payload.get("name"))
        if not name:
            errors.append("Coupon name is required.")
        values["name"] = name

    if wants("code"):
        code = normalize_text(payload.get("code")).upper()
        if not code:
            errors.append("Coupon code is required.")
        else:
            q = s.query(Coupon.id).filter(Coupon.code == code)
            if coupon is not None:
                q = q.filter(Coupon.id != coupon.id)
            if q.first() is not None:
                errors.append("Coupon code already exists.")
        values["code"] = code

    if wants("type"):
        ctype = normalize_text(payload.get("type")).upper()
        if ctype not in COUPON_TYPES:
            errors.append(f"Invalid coupon type. Must be one of: {', '.join(COUPON_TYPES)}")
        values["type"] = ctype

    ctype = values.get("type") or (coupon.type if coupon else "")
    if wants("value") or "type" in values:
        raw = payload.get("value") if "value" in payload else (coupon.value if coupon else None)
        value = parse_decimal(raw)
        if ctype == "SHIPPING" and value is None:
            value = Decimal("0")
        if value is None or value < 0 or (value == 0 and ctype != "SHIPPING"):
            errors.append("Coupon value must be greater than 0.")
        elif ctype == "DISCOUNT" and value > 100:
            errors.append("Percentage discount cannot exceed 100.")
        else:
            values["value"] = money(value)

    for key, field in (("minAmount", "min_amount"), ("maxDiscount", "max_discount")):
        if key in payload:
            raw = payload.get(key)
            if raw in (None, ""):
                values[field] = None
                continue
            amount = parse_decimal(raw)
            if amount is None or amount < 0:
                errors.append(f"{key} must be a non-negative amount.")
            else:
                values[field] = money(amount)

    if wants("totalCount"):
        total = parse_int(payload.get("totalCount"))
        if total is None or total < 1:
            errors.append("Total count must be at least 1.")
        elif coupon is not None and total < coupon.used_count:
            errors.append("Total count cannot be below the number already used.")
        else:
            values["total_count"] = total

    for key, field in (("startDate", "start_date"), ("endDate", "end_date")):
        if wants(key):
            dt = parse_datetime(payload.get(key))
            if dt is None:
                errors.append(f"{key} must be a valid date.")
            else:
                values[field] = dt
    start = values.get("start_date") or (coupon.start_date if coupon else None)
    end = values.get("end_date") or (coupon.end_date if coupon else None)
    if start and end and end <= start:
        errors.append("End date must be after start date.")

    if "isActive" in payload:
        if not isinstance(payload.get("isActive"), bool):
            errors.append("isActive must be true or false.")
        else:
            values["is_active"] = payload["isActive"]

    if "description" in payload:
        values["description"] = normalize_text(payload.get("description")) or None

    return values, errors


def create_coupon(s: "Session", payload: dict, user: "User") -> Coupon:
    values, errors = _coupon_values(s, payload, partial=False)
    if errors:
        raise ApiError(errors[0], errors=errors)
    now = datetime.utcnow()
    c = Coupon(used_count=0, created_at=now, updated_at=now, **values)
    s.add(c)
    s.flush()
    record_event(s, actor=user, action="coupon.create", entity_type="Coupon", entity_id=str(c.id), metadata={"code": c.code, "type": c.type})
    return c


def update_coupon(s: "Session", c: Coupon, payload: dict, user: "User") -> Coupon:
    values, errors = _coupon_values(s, payload, partial=True, coupon=c)
    if errors:
        raise ApiError(errors[0], errors=errors)
    changes = {k: {"old": getattr(c, k), "new": v} for k, v in values.items() if getattr(c, k) != v}
    for k, v in values.items():
        setattr(c, k, v)
    if changes:
        c.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="coupon.update", entity_type="Coupon", entity_id=str(c.id), metadata={"changes": changes})
    return c


def get_coupon(s: "Session", coupon_id: int) -> Coupon:
    c = s.get(Coupon, coupon_id)
    if c is None:
        raise NotFound("Coupon not found.")
    return c


def delete_coupon(s: "Session", c: Coupon, user: "User") -> None:
    from app.shop.modules.orders.models import Order

    used = c.used_count > 0 or s.query(Order.id).filter(Order.coupon_id == c.id).first() is not None
    if used:
        raise ApiError("Coupon has already been redeemed; deactivate it instead.")
    record_event(s, actor=user, action="coupon.delete", entity_type="Coupon", entity_id=str(c.id), metadata={"code": c.code})
    s.delete(c)


def toggle_coupon(s: "Session", c: Coupon, user: "User") -> Coupon:
    c.is_active = not c.is_active
    c.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="coupon.toggle",
        entity_type="Coupon",
        entity_id=str(c.id),
        metadata={"isActive": c.is_active},
    )
    return c
