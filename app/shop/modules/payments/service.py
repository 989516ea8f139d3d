from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Mapping

from app.shop.audit import record_event
from app.shop.errors import ApiError, NotFound
from app.shop.models import User
from app.shop.modules.coupons.service import mark_user_coupon_used
from app.shop.modules.orders.models import Order
from app.shop.modules.orders.service import PAYMENT_METHODS, add_tracking_entry, change_status
from app.shop.modules.payments.models import OPEN_PAYMENT_STATUSES, Payment, Refund
from app.shop.modules.payments.providers import (
    PaymentStart,
    WebhookRejected,
    WebhookResult,
    start_alipay,
    start_stripe,
    start_wechat,
)
from app.shop.utils import as_float, iso, money, normalize_text, parse_decimal, parse_int, reference_number

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
REFUNDABLE_STATUSES = ("PAID", "SHIPPED", "DELIVERED")
METHOD_LABELS = {"alipay": "Alipay", "wechat": "WeChat Pay", "stripe": "card", "balance": "account balance"}


def new_payment_number() -> str:
    return reference_number("PAY", 6)


def new_refund_number() -> str:
    return reference_number("RF", 6)


def payment_to_dict(p: Payment) -> dict[str, Any]:
    o = p.order
    return {
        "id": p.id,
        "paymentId": p.payment_number,
        "paymentNumber": p.payment_number,
        "orderId": p.order_id,
        "userId": p.user_id,
        "amount": as_float(p.amount),
        "currency": p.currency,
        "paymentMethod": p.method,
        "status": p.status,
        "thirdPartyOrderId": p.third_party_order_id,
        "transactionId": p.transaction_id,
        "paymentData": p.payment_data,
        "paidAt": iso(p.paid_at),
        "order": {
            "id": o.id,
            "orderNo": o.order_no,
            "finalAmount": as_float(o.final_amount),
            "status": o.status,
        }
        if o is not None
        else None,
        "createdAt": iso(p.created_at),
        "updatedAt": iso(p.updated_at),
    }


def refund_to_dict(r: Refund) -> dict[str, Any]:
    return {
        "id": r.id,
        "refundNumber": r.refund_number,
        "orderId": r.order_id,
        "amount": as_float(r.amount),
        "reason": r.reason,
        "status": r.status,
        "refundedAt": iso(r.created_at),
    }


def _complete_payment(s: "Session", payment: Payment, *, paid_at: datetime, transaction_id: str | None = None) -> None:
    order = payment.order
    now = datetime.utcnow()
    payment.status = "completed"
    payment.paid_at = paid_at
    payment.updated_at = now
    if transaction_id:
        payment.transaction_id = transaction_id
    order.status = "PAID"
    order.updated_at = now
    add_tracking_entry(
        s,
        order,
        "PAID",
        f"Payment received via {METHOD_LABELS.get(payment.method, payment.method)}.",
        timestamp=paid_at,
    )
    if order.coupon_id is not None:
        mark_user_coupon_used(s, order.user_id, order.coupon_id, order.id)
    logger.info("Payment %s completed; order %s marked PAID", payment.payment_number, order.order_no)


# ---------- Create / status ----------
def create_payment(s: "Session", user: User, payload: dict, config: Mapping[str, Any]) -> Payment:
    order_id = parse_int(payload.get("orderId"))
    method = normalize_text(payload.get("paymentMethod")).lower()
    amount = parse_decimal(payload.get("amount"))
    currency = normalize_text(payload.get("currency")).upper() or "CNY"
    if order_id is None or not method or amount is None:
        raise ApiError("orderId, paymentMethod and amount are required.")
    if method not in PAYMENT_METHODS:
        raise ApiError(f"Unsupported payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")

    order = s.query(Order).filter(Order.id == order_id, Order.user_id == user.id).one_or_none()
    if order is None:
        raise NotFound("Order not found.")
    if order.status != "PENDING":
        raise ApiError("Order is not awaiting payment.")
    if abs(money(amount) - money(order.final_amount)) > AMOUNT_TOLERANCE:
        raise ApiError("Payment amount does not match the order total.")
    in_flight = (
        s.query(Payment.id)
        .filter(Payment.order_id == order.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
        .first()
    )
    if in_flight is not None:
        raise ApiError("A payment for this order is already in progress.")

    now = datetime.utcnow()
    payment = Payment(
        payment_number=new_payment_number(),
        order_id=order.id,
        user_id=user.id,
        amount=money(order.final_amount),
        currency=currency,
        method=method,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    payment.order = order
    s.add(payment)

    if method == "alipay":
        start = start_alipay(payment.payment_number, payment.amount, order.order_no, config)
    elif method == "wechat":
        start = start_wechat(payment.payment_number, payment.amount, config)
    elif method == "stripe":
        start = start_stripe(payment.payment_number, payment.amount, currency, config)
    else:
        start = PaymentStart(
            status="completed",
            third_party_order_id=f"BALANCE_{payment.payment_number}",
            payment_data={"message": "Paid from account balance."},
        )

    payment.third_party_order_id = start.third_party_order_id
    payment.payment_data = start.payment_data
    payment.status = start.status
    order.payment_method = method
    order.payment_id = payment.payment_number
    order.updated_at = now
    s.flush()
    if start.status == "completed":
        _complete_payment(s, payment, paid_at=now, transaction_id=start.third_party_order_id)

    record_event(
        s,
        actor=user,
        action="payment.create",
        entity_type="Payment",
        entity_id=payment.payment_number,
        metadata={"order_no": order.order_no, "method": method, "amount": str(payment.amount), "status": payment.status},
    )
    return payment


def get_payment_for_user(s: "Session", user: User, payment_number: Any) -> Payment:
    number = normalize_text(payment_number)
    if not number:
        raise ApiError("paymentNumber is required.")
    p = (
        s.query(Payment)
        .filter(Payment.payment_number == number, Payment.user_id == user.id)
        .one_or_none()
    )
    if p is None:
        raise NotFound("Payment not found.")
    return p


# ---------- Webhooks ----------
def apply_webhook(s: "Session", provider: str, result: WebhookResult) -> str:
    """
    Applies a verified notification. Returns "applied", "duplicate" or "unknown".

    The payment row is read (locked where the database supports it) and the transition only happens
    while the payment is still open and its order still PENDING; anything else is acknowledged as a
    redelivery.
    """
    payment = (
        s.query(Payment)
        .filter(Payment.payment_number == result.payment_number)
        .with_for_update()
        .one_or_none()
    )
    if payment is None:
        logger.warning("%s notification for unknown payment %s", provider, result.payment_number)
        return "unknown"
    if payment.method != provider:
        logger.warning(
            "%s notification for payment %s created with %s", provider, payment.payment_number, payment.method
        )
        raise WebhookRejected("Notification provider does not match the payment.")

    order = payment.order
    if payment.status == "completed" or order.status != "PENDING":
        logger.info(
            "Skipping %s notification for %s: payment=%s order=%s",
            provider,
            payment.payment_number,
            payment.status,
            order.status,
        )
        return "duplicate"

    payment.raw_callback = result.raw
    if result.transaction_id:
        payment.transaction_id = result.transaction_id
    payment.updated_at = datetime.utcnow()

    if result.status == "completed":
        if abs(result.amount - money(payment.amount)) > AMOUNT_TOLERANCE:
            logger.error(
                "Amount mismatch on %s: notified=%s expected=%s", payment.payment_number, result.amount, payment.amount
            )
            raise WebhookRejected("Notified amount does not match the payment.")
        _complete_payment(s, payment, paid_at=result.paid_at, transaction_id=result.transaction_id)
    else:
        payment.status = result.status
        logger.info("Payment %s is now %s", payment.payment_number, payment.status)

    record_event(
        s,
        actor=None,
        action="payment.webhook",
        entity_type="Payment",
        entity_id=payment.payment_number,
        metadata={"provider": provider, "status": result.status, "transaction_id": result.transaction_id},
    )
    return "applied"


# ---------- Refunds ----------
def _owned_order(s: "Session", user: User, order_id: Any) -> Order:
    oid = parse_int(order_id)
    if oid is None:
        raise ApiError("orderId is required.")
    order = s.query(Order).filter(Order.id == oid, Order.user_id == user.id).one_or_none()
    if order is None:
        raise NotFound("Order not found.")
    return order


def create_refund(s: "Session", user: User, payload: dict) -> Refund:
    order = _owned_order(s, user, payload.get("orderId"))
    if order.status not in REFUNDABLE_STATUSES:
        raise ApiError("This order cannot be refunded in its current status.")

    total = money(order.final_amount)
    raw_amount = payload.get("amount")
    amount = total if raw_amount in (None, "") else parse_decimal(raw_amount)
    if amount is None or money(amount) <= 0 or money(amount) > total:
        raise ApiError("Refund amount is invalid.")

    payment = (
        s.query(Payment)
        .filter(Payment.order_id == order.id, Payment.status == "completed")
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .first()
    )
    refund = Refund(
        refund_number=new_refund_number(),
        order_id=order.id,
        payment_id=payment.id if payment else None,
        amount=money(amount),
        reason=normalize_text(payload.get("reason")) or None,
        status="completed",
        created_at=datetime.utcnow(),
    )
    s.add(refund)
    change_status(s, order, "REFUNDED", user)
    add_tracking_entry(s, order, "REFUNDED", f"Refund {refund.refund_number} of {refund.amount} issued.")
    record_event(
        s,
        actor=user,
        action="payment.refund",
        entity_type="Order",
        entity_id=str(order.id),
        reason=refund.reason,
        metadata={"order_no": order.order_no, "refund_number": refund.refund_number, "amount": str(refund.amount)},
    )
    s.flush()
    return refund


def get_refund(s: "Session", user: User, order_id: Any) -> Refund | None:
    order = _owned_order(s, user, order_id)
    return (
        s.query(Refund)
        .filter(Refund.order_id == order.id)
        .order_by(Refund.created_at.desc(), Refund.id.desc())
        .first()
    )
