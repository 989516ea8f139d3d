"""Tests for payments, provider notifications and refunds."""
import base64
import json
import time
from decimal import Decimal
from urllib.parse import urlencode

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from app.shop.modules.payments.providers import (
    WebhookRejected,
    alipay_sign,
    parse_stripe,
    parse_wechat,
    stripe_signature,
    verify_alipay_signature,
    verify_stripe_signature,
    wechat_sign,
)

WECHAT_KEY = "wechat-test-key"
STRIPE_SECRET = "whsec_test"


@pytest.fixture(scope="module")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")
    public_der = key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    # Alipay hands out bare base64 public keys without PEM armour.
    return private_pem, base64.b64encode(public_der).decode("ascii")


@pytest.fixture()
def pending_order(alice_headers, catalog, place_order):
    return place_order(alice_headers, [(catalog["band"], 1)])


def _pay(client, headers, order, method, **overrides):
    payload = {"orderId": order["id"], "paymentMethod": method, "amount": order["finalAmount"], **overrides}
    return client.post("/api/payments", json=payload, headers=headers)


def _order(client, headers, order_id):
    return client.get(f"/api/orders/{order_id}", headers=headers).json["data"]


def _stripe_event(payment_number, cents, event_type="payment_intent.succeeded"):
    return json.dumps(
        {
            "type": event_type,
            "data": {"object": {"id": "pi_123", "amount_received": cents, "metadata": {"paymentNumber": payment_number}}},
        }
    ).encode("utf-8")


def _stripe_headers(body, secret=STRIPE_SECRET, ts=None):
    ts = ts or int(time.time())
    return {"Stripe-Signature": f"t={ts},v1={stripe_signature(body, ts, secret)}", "Content-Type": "application/json"}


def _wechat_xml(params):
    fields = "".join(f"<{k}><![CDATA[{v}]]></{k}>" for k, v in params.items())
    return f"<xml>{fields}</xml>".encode("utf-8")


# ---------- Signatures ----------
def test_stripe_signature_tolerance():
    body = b'{"type":"x"}'
    sig = stripe_signature(body, 1_000, STRIPE_SECRET)
    assert verify_stripe_signature(body, f"t=1000,v1={sig}", STRIPE_SECRET, now=1_200)
    assert verify_stripe_signature(body, f"t=1000,v1=bogus,v1={sig}", STRIPE_SECRET, now=1_000)
    assert not verify_stripe_signature(body, f"t=1000,v1={sig}", STRIPE_SECRET, now=1_301)
    assert not verify_stripe_signature(body, f"t=1000,v1={sig}", "other", now=1_000)
    assert not verify_stripe_signature(body + b" ", f"t=1000,v1={sig}", STRIPE_SECRET, now=1_000)
    assert not verify_stripe_signature(body, None, STRIPE_SECRET)
    assert not verify_stripe_signature(body, f"v1={sig}", STRIPE_SECRET)


def test_stripe_ignores_other_events():
    body = _stripe_event("PAY1", 100, event_type="charge.refunded")
    assert parse_stripe(body, _stripe_headers(body)["Stripe-Signature"], {"STRIPE_WEBHOOK_SECRET": STRIPE_SECRET}) is None


def test_wechat_sign_skips_empty_values():
    a = wechat_sign({"b": "2", "a": "1", "sign": "X"}, "k")
    b = wechat_sign({"a": "1", "b": "2", "c": ""}, "k")
    assert a == b
    assert a == a.upper() and len(a) == 32


def test_wechat_notification_parsing():
    params = {"out_trade_no": "PAY1", "total_fee": "6000", "result_code": "SUCCESS", "time_end": "20240101120000"}
    params["sign"] = wechat_sign(params, WECHAT_KEY)
    result = parse_wechat(_wechat_xml(params), {"WECHAT_API_KEY": WECHAT_KEY})
    assert result.amount == Decimal("60.00")
    assert result.status == "completed"
    assert result.paid_at.hour == 4

    params["sign"] = "0" * 32
    with pytest.raises(WebhookRejected):
        parse_wechat(_wechat_xml(params), {"WECHAT_API_KEY": WECHAT_KEY})

    with pytest.raises(WebhookRejected):
        parse_wechat(b"<xml><unclosed>", {"WECHAT_API_KEY": WECHAT_KEY})


def test_alipay_rsa2_signature(rsa_keys):
    private_pem, public_b64 = rsa_keys
    params = {"out_trade_no": "PAY1", "total_amount": "60.00", "trade_status": "TRADE_SUCCESS", "sign_type": "RSA2"}
    params["sign"] = alipay_sign(params, private_pem)
    assert verify_alipay_signature(params, public_b64)

    tampered = {**params, "total_amount": "0.01"}
    assert not verify_alipay_signature(tampered, public_b64)
    assert not verify_alipay_signature(params, "")
    assert not verify_alipay_signature({k: v for k, v in params.items() if k != "sign"}, public_b64)


# ---------- Creating payments ----------
def test_balance_payment_completes_order(client, alice_headers, pending_order):
    r = _pay(client, alice_headers, pending_order, "balance")
    assert r.status_code == 200
    data = r.json["data"]
    assert data["paymentNumber"].startswith("PAY")
    assert data["status"] == "completed"
    assert data["order"]["status"] == "PAID"

    order = _order(client, alice_headers, pending_order["id"])
    assert order["status"] == "PAID"
    assert order["paymentId"] == data["paymentNumber"]

    r = client.get(f"/api/payments/status?paymentNumber={data['paymentNumber']}", headers=alice_headers)
    assert r.json["data"]["status"] == "completed"

    r = _pay(client, alice_headers, pending_order, "balance")
    assert r.json["error"] == "Order is not awaiting payment."


def test_payment_validation(client, alice_headers, bob_headers, pending_order):
    r = client.post("/api/payments", json={"orderId": pending_order["id"]}, headers=alice_headers)
    assert r.json["error"] == "orderId, paymentMethod and amount are required."

    r = _pay(client, alice_headers, pending_order, "paypal")
    assert r.json["error"].startswith("Unsupported payment method.")

    r = _pay(client, alice_headers, pending_order, "balance", amount=1)
    assert r.json["error"] == "Payment amount does not match the order total."

    r = _pay(client, bob_headers, pending_order, "balance")
    assert r.status_code == 404


def test_one_payment_in_flight(client, alice_headers, pending_order):
    r = _pay(client, alice_headers, pending_order, "stripe")
    data = r.json["data"]
    assert data["status"] == "processing"
    assert data["paymentData"]["amount"] == 6000
    assert data["paymentData"]["metadata"] == {"paymentNumber": data["paymentNumber"]}

    r = _pay(client, alice_headers, pending_order, "wechat")
    assert r.status_code == 400
    assert r.json["error"] == "A payment for this order is already in progress."


def test_alipay_start_returns_gateway_url(client, alice_headers, pending_order):
    data = _pay(client, alice_headers, pending_order, "alipay").json["data"]
    assert data["paymentData"]["paymentUrl"].startswith("https://openapi.alipay.com/gateway.do?")
    assert data["thirdPartyOrderId"].startswith("ALIPAY_")


# ---------- Notifications ----------
def test_stripe_webhook_marks_paid_once(client, alice_headers, pending_order):
    number = _pay(client, alice_headers, pending_order, "stripe").json["data"]["paymentNumber"]
    body = _stripe_event(number, 6000)

    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    assert r.json == {"received": True}

    order = _order(client, alice_headers, pending_order["id"])
    assert order["status"] == "PAID"
    payment = client.get(f"/api/payments/status?paymentNumber={number}", headers=alice_headers).json["data"]
    assert payment["status"] == "completed"
    assert payment["transactionId"] == "pi_123"

    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    tracking = client.get(f"/api/orders/{pending_order['id']}/tracking", headers=alice_headers).json["data"]
    assert [t["status"] for t in tracking["trackingHistory"]] == ["PAID"]


def test_stripe_webhook_rejections(client, alice_headers, pending_order):
    number = _pay(client, alice_headers, pending_order, "stripe").json["data"]["paymentNumber"]

    body = _stripe_event(number, 6000)
    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body, secret="nope"))
    assert r.status_code == 400
    assert r.json["error"] == "Invalid signature."

    body = _stripe_event(number, 100)
    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body))
    assert r.status_code == 400
    assert r.json["error"] == "Notified amount does not match the payment."
    assert _order(client, alice_headers, pending_order["id"])["status"] == "PENDING"

    body = _stripe_event(number, 6000, event_type="payment_intent.created")
    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body))
    assert r.status_code == 200
    assert _order(client, alice_headers, pending_order["id"])["status"] == "PENDING"


def test_webhook_provider_checks(client, alice_headers, pending_order):
    assert client.post("/api/payments/webhook").status_code == 400
    assert client.post("/api/payments/webhook?provider=paypal").status_code == 400

    body = _stripe_event("PAY-UNKNOWN", 6000)
    r = client.post("/api/payments/webhook?provider=stripe", data=body, headers=_stripe_headers(body))
    assert r.status_code == 200

    # A WeChat notification cannot settle a Stripe payment.
    number = _pay(client, alice_headers, pending_order, "stripe").json["data"]["paymentNumber"]
    params = {"out_trade_no": number, "total_fee": "6000", "result_code": "SUCCESS"}
    params["sign"] = wechat_sign(params, WECHAT_KEY)
    r = client.post("/api/payments/webhook?provider=wechat", data=_wechat_xml(params), content_type="text/xml")
    assert r.status_code == 400


def test_wechat_webhook(client, alice_headers, pending_order):
    number = _pay(client, alice_headers, pending_order, "wechat").json["data"]["paymentNumber"]
    params = {
        "out_trade_no": number,
        "transaction_id": "420000001",
        "total_fee": "6000",
        "result_code": "SUCCESS",
        "time_end": "20240301083000",
    }
    params["sign"] = wechat_sign(params, WECHAT_KEY)

    r = client.post("/api/payments/webhook?provider=wechat", data=_wechat_xml(params), content_type="text/xml")
    assert r.status_code == 200
    assert r.json == {"code": "SUCCESS", "message": "OK"}

    payment = client.get(f"/api/payments/status?paymentNumber={number}", headers=alice_headers).json["data"]
    assert payment["status"] == "completed"
    assert payment["paidAt"] == "2024-03-01T00:30:00"


def test_failed_wechat_payment_allows_retry(client, alice_headers, pending_order):
    number = _pay(client, alice_headers, pending_order, "wechat").json["data"]["paymentNumber"]
    params = {"out_trade_no": number, "total_fee": "6000", "result_code": "FAIL"}
    params["sign"] = wechat_sign(params, WECHAT_KEY)
    client.post("/api/payments/webhook?provider=wechat", data=_wechat_xml(params), content_type="text/xml")

    payment = client.get(f"/api/payments/status?paymentNumber={number}", headers=alice_headers).json["data"]
    assert payment["status"] == "failed"
    assert _pay(client, alice_headers, pending_order, "balance").json["data"]["status"] == "completed"


def test_alipay_webhook(app, client, alice_headers, pending_order, rsa_keys):
    private_pem, public_b64 = rsa_keys
    app.config["ALIPAY_PUBLIC_KEY"] = public_b64
    number = _pay(client, alice_headers, pending_order, "alipay").json["data"]["paymentNumber"]

    params = {
        "out_trade_no": number,
        "trade_no": "2024030122001",
        "total_amount": "60.00",
        "trade_status": "TRADE_SUCCESS",
        "gmt_payment": "2024-03-01 08:30:00",
        "sign_type": "RSA2",
    }
    params["sign"] = alipay_sign(params, private_pem)

    r = client.post(
        "/api/payments/webhook?provider=alipay",
        data=urlencode(params),
        content_type="application/x-www-form-urlencoded",
    )
    assert r.status_code == 200
    assert r.data == b"success"
    assert _order(client, alice_headers, pending_order["id"])["status"] == "PAID"

    forged = {**params, "sign": base64.b64encode(b"x" * 256).decode("ascii")}
    r = client.post(
        "/api/payments/webhook?provider=alipay",
        data=urlencode(forged),
        content_type="application/x-www-form-urlencoded",
    )
    assert r.status_code == 400


# ---------- Refunds ----------
def test_refund_flow(client, alice_headers, bob_headers, pending_order):
    r = client.post("/api/payments/refund", json={"orderId": pending_order["id"]}, headers=alice_headers)
    assert r.json["error"] == "This order cannot be refunded in its current status."

    _pay(client, alice_headers, pending_order, "balance")

    r = client.post("/api/payments/refund", json={"orderId": pending_order["id"]}, headers=bob_headers)
    assert r.status_code == 404

    r = client.post("/api/payments/refund", json={"orderId": pending_order["id"], "amount": 999}, headers=alice_headers)
    assert r.json["error"] == "Refund amount is invalid."

    r = client.post(
        "/api/payments/refund",
        json={"orderId": pending_order["id"], "reason": "Changed my mind"},
        headers=alice_headers,
    )
    assert r.status_code == 200
    refund = r.json["data"]
    assert refund["refundNumber"].startswith("RF")
    assert refund["amount"] == 60.0
    assert refund["status"] == "completed"

    assert _order(client, alice_headers, pending_order["id"])["status"] == "REFUNDED"
    r = client.get(f"/api/payments/refund?orderId={pending_order['id']}", headers=alice_headers)
    assert r.json["data"]["refundNumber"] == refund["refundNumber"]
