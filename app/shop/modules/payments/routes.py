from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.shop.db import db_session
from app.shop.modules.payments.providers import PROVIDERS, WebhookRejected, parse_webhook
from app.shop.modules.payments.service import (
    apply_webhook,
    create_payment,
    create_refund,
    get_payment_for_user,
    get_refund,
    payment_to_dict,
    refund_to_dict,
)
from app.shop.rbac import require_login, require_user
from app.shop.utils import json_body

bp = Blueprint("payments", __name__)


def _acknowledge(provider: str):
    if provider == "alipay":
        return current_app.response_class("success", mimetype="text/plain")
    if provider == "wechat":
        return jsonify({"code": "SUCCESS", "message": "OK"})
    return jsonify({"received": True})


@bp.post("")
@require_login
def payments_create():
    s = db_session()
    payment = create_payment(s, require_user(), json_body(), current_app.config)
    s.commit()
    return jsonify({"success": True, "data": payment_to_dict(payment), "message": "Payment created."})


@bp.get("/status")
@require_login
def payments_status():
    payment = get_payment_for_user(db_session(), require_user(), request.args.get("paymentNumber"))
    return jsonify({"success": True, "data": payment_to_dict(payment)})


@bp.post("/webhook")
def payments_webhook():
    provider = (request.args.get("provider") or "").strip().lower()
    if not provider:
        raise WebhookRejected("provider is required.")
    if provider not in PROVIDERS:
        raise WebhookRejected("Unsupported payment provider.")

    result = parse_webhook(provider, request.get_data(), request.headers, current_app.config)
    if result is not None:
        s = db_session()
        outcome = apply_webhook(s, provider, result)
        s.commit()
        current_app.logger.info(
            "Webhook %s for %s: %s (request_id=%s)", provider, result.payment_number, outcome, g.get("request_id")
        )
    return _acknowledge(provider)


@bp.post("/refund")
@require_login
def payments_refund():
    s = db_session()
    refund = create_refund(s, require_user(), json_body())
    s.commit()
    return jsonify({"success": True, "data": refund_to_dict(refund), "message": "Refund issued."})


@bp.get("/refund")
@require_login
def payments_refund_status():
    refund = get_refund(db_session(), require_user(), request.args.get("orderId"))
    return jsonify({"success": True, "data": refund_to_dict(refund) if refund else None})
