from __future__ import annotations

import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import func, or_

from app.shop.audit import record_event
from app.shop.errors import ApiError, Forbidden, NotFound
from app.shop.models import User
from app.shop.modules.addresses.models import Address
from app.shop.modules.addresses.service import ADDRESS_FIELDS, validate_address_payload
from app.shop.modules.catalog.models import Product
from app.shop.modules.catalog.service import first_image
from app.shop.modules.coupons.models import Coupon
from app.shop.modules.coupons.service import (
    calculate_discount,
    check_coupon,
    coupon_redeemed_by,
    find_coupon_by_code,
    release_user_coupon,
)
from app.shop.modules.orders.models import ORDER_STATUSES, TERMINAL_STATUSES, Order, OrderItem, TrackingHistory
from app.shop.utils import (
    as_float,
    iso,
    money,
    normalize_text,
    parse_date_range,
    parse_datetime,
    parse_int,
    parse_limit,
    parse_page,
    reference_number,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("alipay", "wechat", "stripe", "balance")
STATUS_LABELS = {
    "PENDING": "Pending payment",
    "PAID": "Paid",
    "CONFIRMED": "Confirmed",
    "PROCESSING": "Processing",
    "SHIPPED": "Shipped",
    "DELIVERED": "Delivered",
    "CANCELLED": "Cancelled",
    "REFUNDED": "Refunded",
}
SORT_FIELDS = {
    "createdAt": Order.created_at,
    "updatedAt": Order.updated_at,
    "totalAmount": Order.total_amount,
    "finalAmount": Order.final_amount,
    "status": Order.status,
}


def new_order_no() -> str:
    return reference_number("ORD", 4)


def shipping_fee_for(subtotal: Decimal | None) -> Decimal:
    """Flat fee, waived once the subtotal reaches the free-shipping threshold (when one is set)."""
    fee = money(current_app.config.get("SHIPPING_FEE") or 0)
    threshold = money(current_app.config.get("FREE_SHIPPING_THRESHOLD") or 0)
    if fee <= 0:
        return money(0)
    if threshold > 0 and subtotal is not None and money(subtotal) >= threshold:
        return money(0)
    return fee


# ---------- Serialization ----------
def order_item_to_dict(it: OrderItem) -> dict[str, Any]:
    p = it.product
    return {
        "id": it.id,
        "productId": it.product_id,
        "name": p.name if p else None,
        "image": first_image(p) if p else None,
        "price": as_float(it.price),
        "quantity": it.quantity,
        "subtotal": as_float(it.price * it.quantity),
    }


def tracking_to_dict(t: TrackingHistory) -> dict[str, Any]:
    return {
        "id": t.id,
        "status": t.status,
        "description": t.description,
        "location": t.location,
        "timestamp": iso(t.timestamp),
    }


def order_to_dict(o: Order, *, detail: bool = False) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": o.id,
        "orderNo": o.order_no,
        "status": o.status,
        "statusLabel": STATUS_LABELS.get(o.status, o.status),
        "totalAmount": as_float(o.total_amount),
        "discountAmount": as_float(o.discount_amount),
        "shippingFee": as_float(o.shipping_fee),
        "finalAmount": as_float(o.final_amount),
        "paymentMethod": o.payment_method,
        "paymentId": o.payment_id,
        "remark": o.remark,
        "addressId": o.address_id,
        "shippingAddress": o.shipping_address,
        "trackingNumber": o.tracking_number,
        "shippingCompany": o.shipping_company,
        "shippedAt": iso(o.shipped_at),
        "deliveredAt": iso(o.delivered_at),
        "estimatedDelivery": iso(o.estimated_delivery),
        "createdAt": iso(o.created_at),
        "updatedAt": iso(o.updated_at),
        "user": {"id": o.user.id, "name": o.user.name, "email": o.user.email} if o.user else None,
        "items": [order_item_to_dict(it) for it in o.items],
        "itemCount": len(o.items),
    }
    if detail:
        c = o.coupon
        d["coupon"] = {"id": c.id, "code": c.code, "name": c.name, "type": c.type} if c else None
    return d


# ---------- Checkout ----------
def _collect_lines(payload: dict) -> list[tuple[int, int]]:
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ApiError("Order must contain at least one item.")
    merged: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ApiError("Invalid order item.")
        pid = parse_int(raw.get("productId"))
        qty = parse_int(raw.get("quantity"))
        if pid is None:
            raise ApiError("Every item needs a productId.")
        if qty is None or qty < 1:
            raise ApiError("Item quantity must be at least 1.")
        merged[pid] = merged.get(pid, 0) + qty
    return list(merged.items())


def _resolve_address(s: "Session", user: User, payload: dict) -> tuple[int | None, dict]:
    address_id = parse_int(payload.get("addressId"))
    if address_id is not None:
        a = s.get(Address, address_id)
        if a is None or a.user_id != user.id:
            raise ApiError("Shipping address not found.")
        return a.id, a.snapshot()
    inline = payload.get("shippingAddress")
    if isinstance(inline, dict):
        errors = validate_address_payload(inline)
        if errors:
            raise ApiError(errors[0], errors=errors)
        return None, {k: normalize_text(inline.get(k)) for k in ADDRESS_FIELDS}
    raise ApiError("Shipping address is required.")


def create_order(s: "Session", user: User, payload: dict) -> Order:
    """
    Validate lines, price them from the catalog, apply shipping and coupon,
    then reserve stock and coupon redemptions in the caller's transaction.
    """
    lines = _collect_lines(payload)
    address_id, address_snapshot = _resolve_address(s, user, payload)

    payment_method = normalize_text(payload.get("paymentMethod")).lower() or None
    if payment_method and payment_method not in PAYMENT_METHODS:
        raise ApiError(f"Unsupported payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")

    priced: list[tuple[Product, int]] = []
    subtotal = Decimal("0")
    for pid, qty in lines:
        product = s.get(Product, pid)
        if product is None:
            raise ApiError(f"Product {pid} does not exist.")
        if not product.is_active:
            raise ApiError(f"Product {product.name} is no longer available.")
        if product.stock < qty:
            raise ApiError(f"Not enough stock for {product.name}.")
        priced.append((product, qty))
        subtotal += product.price * qty
    subtotal = money(subtotal)
    shipping_fee = shipping_fee_for(subtotal)

    coupon: Coupon | None = None
    discount = money(0)
    code = normalize_text(payload.get("couponCode"))
    if code:
        coupon = find_coupon_by_code(s, code)
        problem = check_coupon(coupon, subtotal)
        if coupon is None or problem:
            raise ApiError(problem or "Coupon not found.")
        if coupon_redeemed_by(s, user.id, coupon.id):
            raise ApiError("You have already used this coupon.")
        discount = calculate_discount(coupon, subtotal, shipping_fee)

    now = datetime.utcnow()
    order = Order(
        order_no=new_order_no(),
        user_id=user.id,
        status="PENDING",
        total_amount=subtotal,
        discount_amount=discount,
        shipping_fee=shipping_fee,
        final_amount=max(money(0), money(subtotal + shipping_fee - discount)),
        address_id=address_id,
        coupon_id=coupon.id if coupon else None,
        shipping_address=address_snapshot,
        payment_method=payment_method,
        remark=normalize_text(payload.get("notes") or payload.get("remark")) or None,
        created_at=now,
        updated_at=now,
    )
    for product, qty in priced:
        order.items.append(OrderItem(product_id=product.id, quantity=qty, price=money(product.price)))
    s.add(order)
    s.flush()

    # Conditional decrements so two concurrent checkouts can't oversell.
    for product, qty in priced:
        updated = (
            s.query(Product)
            .filter(Product.id == product.id, Product.stock >= qty)
            .update({Product.stock: Product.stock - qty}, synchronize_session=False)
        )
        if updated != 1:
            raise ApiError(f"Not enough stock for {product.name}.")
        s.expire(product, ["stock"])

    if coupon is not None:
        updated = (
            s.query(Coupon)
            .filter(Coupon.id == coupon.id, Coupon.used_count < Coupon.total_count)
            .update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
        )
        if updated != 1:
            raise ApiError("Coupon has been fully redeemed.")
        s.expire(coupon, ["used_count"])

    if payload.get("fromCart"):
        from app.shop.modules.cart.service import clear_cart

        clear_cart(s, user, [p.id for p, _ in priced])

    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"order_no": order.order_no, "final_amount": order.final_amount, "coupon": code or None},
    )
    logger.info("Order %s created for user_id=%s total=%s", order.order_no, user.id, order.final_amount)
    return order


# ---------- Queries ----------
def status_stats(s: "Session", user_id: int | None = None) -> dict[str, int]:
    q = s.query(Order.status, func.count(Order.id))
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    counts = dict(q.group_by(Order.status).all())
    return {st: int(counts.get(st, 0)) for st in ORDER_STATUSES}


def list_orders(s: "Session", user: User, args: Any, *, view_all: bool) -> dict[str, Any]:
    page = parse_page(args)
    limit = parse_limit(args)
    q = s.query(Order)
    if not view_all:
        q = q.filter(Order.user_id == user.id)

    search = normalize_text(args.get("search"))
    if search and view_all:
        like = f"%{search}%"
        q = q.join(User, Order.user_id == User.id).filter(
            or_(User.name.ilike(like), User.email.ilike(like), Order.order_no.ilike(like))
        )
    elif search:
        q = q.filter(Order.order_no.ilike(f"%{search}%"))

    status = normalize_text(args.get("status")).upper()
    if status in ORDER_STATUSES:
        q = q.filter(Order.status == status)

    start, end = parse_date_range(args.get("startDate"), args.get("endDate"))
    if start is not None:
        q = q.filter(Order.created_at >= start)
    if end is not None:
        q = q.filter(Order.created_at < end)

    total = q.count()
    sort_by = normalize_text(args.get("sortBy"))
    col = SORT_FIELDS.get(sort_by, Order.created_at)
    order = col.asc() if normalize_text(args.get("sortOrder")).lower() == "asc" else col.desc()
    orders = q.order_by(order, Order.id.desc()).offset((page - 1) * limit).limit(limit).all()

    return {
        "orders": [order_to_dict(o) for o in orders],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit) if total else 0},
        "stats": status_stats(s, None if view_all else user.id),
    }


def get_order(s: "Session", order_id: int) -> Order:
    o = s.get(Order, order_id)
    if o is None:
        raise NotFound("Order not found.")
    return o


def get_visible_order(s: "Session", user: User, order_id: int, *, view_all: bool) -> Order:
    o = get_order(s, order_id)
    if not view_all and o.user_id != user.id:
        raise Forbidden("You do not have access to this order.")
    return o


# ---------- Status changes ----------
def _restore_stock(s: "Session", order: Order) -> None:
    for it in order.items:
        s.query(Product).filter(Product.id == it.product_id).update(
            {Product.stock: Product.stock + it.quantity}, synchronize_session=False
        )
        if it.product is not None:
            s.expire(it.product, ["stock"])
    if order.coupon_id is not None:
        s.query(Coupon).filter(Coupon.id == order.coupon_id, Coupon.used_count > 0).update(
            {Coupon.used_count: Coupon.used_count - 1}, synchronize_session=False
        )
        release_user_coupon(s, order.id)


def add_tracking_entry(
    s: "Session",
    order: Order,
    status: str,
    description: str,
    *,
    location: str | None = None,
    timestamp: datetime | None = None,
) -> TrackingHistory:
    t = TrackingHistory(
        order_id=order.id,
        status=status,
        description=description,
        location=location,
        timestamp=timestamp or datetime.utcnow(),
    )
    s.add(t)
    return t


def change_status(s: "Session", order: Order, new_status: str, user: User, *, payload: dict | None = None) -> Order:
    payload = payload or {}
    new_status = normalize_text(new_status).upper()
    if new_status not in ORDER_STATUSES:
        raise ApiError(f"Invalid order status. Must be one of: {', '.join(ORDER_STATUSES)}")
    old_status = order.status
    if old_status in TERMINAL_STATUSES and new_status != old_status:
        raise ApiError(f"Order {order.order_no} is {old_status.lower()} and can no longer change status.")

    now = datetime.utcnow()
    if "remark" in payload:
        order.remark = normalize_text(payload.get("remark")) or None

    if new_status == "SHIPPED" and old_status != "SHIPPED":
        tracking_number = normalize_text(payload.get("trackingNumber"))
        company = normalize_text(payload.get("shippingCompany")) or None
        if tracking_number:
            order.tracking_number = tracking_number
            order.shipping_company = company
            order.shipped_at = now
            add_tracking_entry(
                s,
                order,
                "SHIPPED",
                f"Order shipped via {company or 'carrier'}, tracking number {tracking_number}.",
            )
        elif order.shipped_at is None:
            order.shipped_at = now
    elif new_status == "DELIVERED" and old_status != "DELIVERED":
        order.delivered_at = now
        add_tracking_entry(s, order, "DELIVERED", "Order delivered.")
    elif new_status == "CANCELLED" and old_status != "CANCELLED":
        _restore_stock(s, order)

    order.status = new_status
    order.updated_at = now
    if old_status != new_status:
        record_event(
            s,
            actor=user,
            action="order.status_change",
            entity_type="Order",
            entity_id=str(order.id),
            metadata={"order_no": order.order_no, "from": old_status, "to": new_status},
        )
    return order


def cancel_own_order(s: "Session", order: Order, user: User) -> Order:
    if order.user_id != user.id:
        raise Forbidden("You do not have access to this order.")
    if order.status != "PENDING":
        raise ApiError("Only unpaid orders can be cancelled.")
    return change_status(s, order, "CANCELLED", user)


def bulk_change_status(s: "Session", order_ids: list[int], new_status: str, user: User) -> dict[str, Any]:
    if not order_ids:
        raise ApiError("Select at least one order to update.")
    new_status = normalize_text(new_status).upper()
    if not new_status:
        raise ApiError("Select the new order status.")
    if new_status not in ORDER_STATUSES:
        raise ApiError(f"Invalid order status. Must be one of: {', '.join(ORDER_STATUSES)}")
    updated: list[int] = []
    skipped: list[dict[str, Any]] = []
    for order in s.query(Order).filter(Order.id.in_(order_ids)).order_by(Order.id).all():
        try:
            change_status(s, order, new_status, user)
        except ApiError as e:
            skipped.append({"id": order.id, "orderNo": order.order_no, "reason": e.message})
            continue
        updated.append(order.id)
    return {"count": len(updated), "updated": updated, "skipped": skipped}


def delete_order(s: "Session", order: Order, user: User) -> None:
    if order.status not in TERMINAL_STATUSES:
        raise ApiError("Only cancelled or refunded orders can be deleted.")
    record_event(
        s,
        actor=user,
        action="order.delete",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"order_no": order.order_no, "status": order.status},
    )
    s.delete(order)


# ---------- Tracking ----------
def tracking_payload(s: "Session", order: Order) -> dict[str, Any]:
    history = (
        s.query(TrackingHistory)
        .filter(TrackingHistory.order_id == order.id)
        .order_by(TrackingHistory.timestamp.desc(), TrackingHistory.id.desc())
        .all()
    )
    return {
        "order": {
            "id": order.id,
            "orderNo": order.order_no,
            "status": order.status,
            "trackingNumber": order.tracking_number,
            "shippingCompany": order.shipping_company,
            "shippedAt": iso(order.shipped_at),
            "deliveredAt": iso(order.delivered_at),
            "estimatedDelivery": iso(order.estimated_delivery),
        },
        "trackingHistory": [tracking_to_dict(t) for t in history],
    }


def add_tracking(s: "Session", order: Order, payload: dict, user: User) -> TrackingHistory:
    status = normalize_text(payload.get("status"))
    description = normalize_text(payload.get("description"))
    if not status or not description:
        raise ApiError("Status and description are required.")
    ts = None
    if payload.get("timestamp"):
        ts = parse_datetime(payload.get("timestamp"))
        if ts is None:
            raise ApiError("timestamp must be a valid date.")
    t = add_tracking_entry(
        s,
        order,
        status,
        description,
        location=normalize_text(payload.get("location")) or None,
        timestamp=ts,
    )
    record_event(s, actor=user, action="order.tracking_add", entity_type="Order", entity_id=str(order.id), metadata={"status": status})
    return t


def update_tracking_info(s: "Session", order: Order, payload: dict, user: User) -> Order:
    old_number = order.tracking_number
    if "trackingNumber" in payload:
        order.tracking_number = normalize_text(payload.get("trackingNumber")) or None
    if "shippingCompany" in payload:
        order.shipping_company = normalize_text(payload.get("shippingCompany")) or None
    if "estimatedDelivery" in payload:
        raw = payload.get("estimatedDelivery")
        eta = parse_datetime(raw) if raw else None
        if raw and eta is None:
            raise ApiError("estimatedDelivery must be a valid date.")
        order.estimated_delivery = eta
    order.updated_at = datetime.utcnow()
    if order.tracking_number and order.tracking_number != old_number:
        add_tracking_entry(s, order, "TRACKING_UPDATED", f"Tracking number updated: {order.tracking_number}")
    record_event(
        s,
        actor=user,
        action="order.tracking_update",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"tracking_number": order.tracking_number, "shipping_company": order.shipping_company},
    )
    return order


# ---------- Export ----------
EXPORT_HEADERS = [
    "Order No",
    "Customer Name",
    "Customer Email",
    "Recipient",
    "Recipient Phone",
    "Shipping Address",
    "Item Count",
    "Items",
    "Order Amount",
    "Discount",
    "Shipping Fee",
    "Amount Paid",
    "Status",
    "Payment Method",
    "Remark",
    "Created At",
    "Updated At",
]


def export_orders(s: "Session", args: Any) -> list[list[Any]]:
    q = s.query(Order)
    status = normalize_text(args.get("status")).upper()
    if status in ORDER_STATUSES:
        q = q.filter(Order.status == status)
    start, end = parse_date_range(args.get("startDate"), args.get("endDate"))
    if start is not None:
        q = q.filter(Order.created_at >= start)
    if end is not None:
        q = q.filter(Order.created_at < end)

    rows: list[list[Any]] = []
    for o in q.order_by(Order.created_at.desc(), Order.id.desc()).all():
        addr = o.shipping_address or {}
        rows.append(
            [
                o.order_no,
                (o.user.name or "") if o.user else "",
                o.user.email if o.user else "",
                addr.get("name", ""),
                addr.get("phone", ""),
                "".join(addr.get(k, "") for k in ("province", "city", "district", "detail")),
                len(o.items),
                "; ".join(f"{it.product.name if it.product else it.product_id} x{it.quantity}" for it in o.items),
                as_float(o.total_amount),
                as_float(o.discount_amount),
                as_float(o.shipping_fee),
                as_float(o.final_amount),
                STATUS_LABELS.get(o.status, o.status),
                o.payment_method or "",
                o.remark or "",
                o.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                o.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            ]
        )
    return rows
