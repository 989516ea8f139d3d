"""
Payment provider adapters.

Each provider has two halves:
- start_*: what the client needs to complete a payment (gateway URL, JSAPI package, client secret).
- parse_*: turn an incoming notification into a WebhookResult after checking its signature.

Nothing here touches the database; the service layer decides what a result means for an order.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import textwrap
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from app.shop.errors import ApiError
from app.shop.utils import money, parse_decimal, parse_int

logger = logging.getLogger(__name__)

PROVIDERS = ("alipay", "wechat", "stripe")
ALIPAY_GATEWAY = "https://openapi.alipay.com/gateway.do"
STRIPE_TOLERANCE_SECONDS = 300
# Alipay and WeChat report times in China Standard Time.
PROVIDER_UTC_OFFSET = timedelta(hours=8)


class WebhookRejected(ApiError):
    status_code = 400


@dataclass(frozen=True)
class WebhookResult:
    payment_number: str
    transaction_id: str | None
    status: str  # completed | processing | failed
    amount: Decimal
    paid_at: datetime
    raw: str


@dataclass(frozen=True)
class PaymentStart:
    status: str
    third_party_order_id: str
    payment_data: dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _local_time(value: str | None, fmt: str) -> datetime:
    if value:
        try:
            return datetime.strptime(value, fmt) - PROVIDER_UTC_OFFSET
        except ValueError:
            logger.warning("Unparseable provider timestamp %r", value)
    return datetime.utcnow()


def _sorted_pairs(params: Mapping[str, Any], exclude: tuple[str, ...]) -> str:
    return "&".join(
        f"{k}={params[k]}" for k in sorted(params) if k not in exclude and params[k] not in (None, "")
    )


# ---------- Alipay ----------
def _pem(raw: str, kind: str) -> bytes:
    text = raw.strip().replace("\\n", "\n")
    if "-----BEGIN" not in text:
        body = "\n".join(textwrap.wrap("".join(text.split()), 64))
        text = f"-----BEGIN {kind}-----\n{body}\n-----END {kind}-----\n"
    return text.encode("ascii")


def alipay_sign_content(params: Mapping[str, Any]) -> str:
    return _sorted_pairs(params, ("sign", "sign_type"))


def alipay_sign(params: Mapping[str, Any], private_key: str) -> str:
    key = serialization.load_pem_private_key(_pem(private_key, "PRIVATE KEY"), password=None)
    sig = key.sign(alipay_sign_content(params).encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())  # type: ignore[union-attr,call-arg]
    return base64.b64encode(sig).decode("ascii")


def verify_alipay_signature(params: Mapping[str, Any], public_key: str) -> bool:
    """RSA2 (SHA256withRSA) over the sorted k=v pairs, excluding sign and sign_type."""
    sign = params.get("sign")
    if not sign or not public_key:
        return False
    try:
        key = serialization.load_pem_public_key(_pem(public_key, "PUBLIC KEY"))
        signature = base64.b64decode(sign)
    except (ValueError, TypeError):
        logger.error("Alipay public key or signature could not be decoded")
        return False
    try:
        key.verify(signature, alipay_sign_content(params).encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())  # type: ignore[union-attr,call-arg]
    except InvalidSignature:
        return False
    return True


def start_alipay(payment_number: str, amount: Decimal, subject: str, config: Mapping[str, Any]) -> PaymentStart:
    params = {
        "app_id": config.get("ALIPAY_APP_ID") or "",
        "method": "alipay.trade.page.pay",
        "charset": "UTF-8",
        "sign_type": "RSA2",
        "timestamp": (datetime.utcnow() + PROVIDER_UTC_OFFSET).strftime("%Y-%m-%d %H:%M:%S"),
        "version": "1.0",
        "biz_content": json.dumps(
            {
                "out_trade_no": payment_number,
                "total_amount": str(money(amount)),
                "subject": subject,
                "product_code": "FAST_INSTANT_TRADE_PAY",
            },
            separators=(",", ":"),
        ),
    }
    private_key = config.get("ALIPAY_PRIVATE_KEY")
    if private_key:
        params["sign"] = alipay_sign(params, private_key)
    return PaymentStart(
        status="processing",
        third_party_order_id=f"ALIPAY_{_now_ms()}",
        payment_data={"paymentUrl": f"{ALIPAY_GATEWAY}?{urlencode(params)}", "qrCode": None},
    )


def parse_alipay(body: bytes, config: Mapping[str, Any]) -> WebhookResult:
    try:
        params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except UnicodeDecodeError:
        raise WebhookRejected("Malformed Alipay notification.")
    if not verify_alipay_signature(params, config.get("ALIPAY_PUBLIC_KEY") or ""):
        logger.warning("Alipay notification failed signature verification (out_trade_no=%s)", params.get("out_trade_no"))
        raise WebhookRejected("Invalid signature.")
    payment_number = params.get("out_trade_no")
    amount = parse_decimal(params.get("total_amount"))
    if not payment_number or amount is None:
        raise WebhookRejected("Malformed Alipay notification.")

    trade_status = params.get("trade_status")
    if trade_status in ("TRADE_SUCCESS", "TRADE_FINISHED"):
        status = "completed"
    elif trade_status == "WAIT_BUYER_PAY":
        status = "processing"
    else:
        status = "failed"
    return WebhookResult(
        payment_number=payment_number,
        transaction_id=params.get("trade_no") or None,
        status=status,
        amount=money(amount),
        paid_at=_local_time(params.get("gmt_payment"), "%Y-%m-%d %H:%M:%S"),
        raw=json.dumps(params, sort_keys=True, ensure_ascii=False),
    )


# ---------- WeChat Pay ----------
def wechat_sign(params: Mapping[str, Any], api_key: str) -> str:
    content = _sorted_pairs(params, ("sign",)) + f"&key={api_key}"
    return hashlib.md5(content.encode("utf-8")).hexdigest().upper()


def parse_wechat_xml(body: bytes) -> dict[str, str]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        raise WebhookRejected("Malformed WeChat notification.")
    return {child.tag: (child.text or "").strip() for child in root}


def start_wechat(payment_number: str, amount: Decimal, config: Mapping[str, Any]) -> PaymentStart:
    third_party_id = f"WECHAT_{_now_ms()}"
    params = {
        "appId": config.get("WECHAT_APP_ID") or "",
        "timeStamp": str(int(time.time())),
        "nonceStr": secrets.token_hex(8),
        "package": f"prepay_id={third_party_id}",
        "signType": "MD5",
    }
    params["paySign"] = wechat_sign(params, config.get("WECHAT_API_KEY") or "")
    return PaymentStart(status="processing", third_party_order_id=third_party_id, payment_data=params)


def parse_wechat(body: bytes, config: Mapping[str, Any]) -> WebhookResult:
    data = parse_wechat_xml(body)
    api_key = config.get("WECHAT_API_KEY") or ""
    sign = data.get("sign") or ""
    if not api_key or not sign or not hmac.compare_digest(wechat_sign(data, api_key), sign.upper()):
        logger.warning("WeChat notification failed signature verification (out_trade_no=%s)", data.get("out_trade_no"))
        raise WebhookRejected("Invalid signature.")
    payment_number = data.get("out_trade_no")
    total_fee = parse_int(data.get("total_fee"))
    if not payment_number or total_fee is None:
        raise WebhookRejected("Malformed WeChat notification.")
    return WebhookResult(
        payment_number=payment_number,
        transaction_id=data.get("transaction_id") or None,
        status="completed" if data.get("result_code") == "SUCCESS" else "failed",
        amount=money(Decimal(total_fee) / 100),
        paid_at=_local_time(data.get("time_end"), "%Y%m%d%H%M%S"),
        raw=json.dumps(data, sort_keys=True, ensure_ascii=False),
    )


# ---------- Stripe ----------
def start_stripe(payment_number: str, amount: Decimal, currency: str, config: Mapping[str, Any]) -> PaymentStart:
    intent_id = f"STRIPE_{_now_ms()}"
    return PaymentStart(
        status="processing",
        third_party_order_id=intent_id,
        payment_data={
            "clientSecret": f"{intent_id}_secret_{secrets.token_hex(8)}",
            "publishableKey": config.get("STRIPE_PUBLISHABLE_KEY") or "",
            "amount": int((money(amount) * 100).to_integral_value()),
            "currency": currency.lower(),
            "metadata": {"paymentNumber": payment_number},
        },
    )


def stripe_signature(body: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    body: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance: int = STRIPE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Checks a `t=...,v1=...` header: HMAC-SHA256 of "{t}.{body}" within the timestamp tolerance."""
    if not header or not secret:
        return False
    timestamp: int | None = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = parse_int(value)
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        return False
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        return False
    expected = stripe_signature(body, timestamp, secret)
    return any(hmac.compare_digest(expected, c) for c in candidates)


def parse_stripe(body: bytes, signature_header: str | None, config: Mapping[str, Any]) -> WebhookResult | None:
    if not verify_stripe_signature(body, signature_header, config.get("STRIPE_WEBHOOK_SECRET") or ""):
        logger.warning("Stripe notification failed signature verification")
        raise WebhookRejected("Invalid signature.")
    try:
        event = json.loads(body)
    except ValueError:
        raise WebhookRejected("Malformed Stripe event.")
    if not isinstance(event, dict):
        raise WebhookRejected("Malformed Stripe event.")
    if event.get("type") != "payment_intent.succeeded":
        logger.info("Ignoring Stripe event type=%s", event.get("type"))
        return None

    intent = (event.get("data") or {}).get("object") or {}
    payment_number = (intent.get("metadata") or {}).get("paymentNumber")
    cents = parse_int(intent.get("amount_received", intent.get("amount")))
    if not payment_number or cents is None:
        raise WebhookRejected("Stripe event is missing the payment number or amount.")
    created = parse_int(intent.get("created"))
    return WebhookResult(
        payment_number=payment_number,
        transaction_id=intent.get("id"),
        status="completed",
        amount=money(Decimal(cents) / 100),
        paid_at=datetime.utcfromtimestamp(created) if created else datetime.utcnow(),
        raw=body.decode("utf-8", errors="replace"),
    )


def parse_webhook(provider: str, body: bytes, headers: Mapping[str, str], config: Mapping[str, Any]) -> WebhookResult | None:
    """
    Returns the normalized notification, or None when the event is acknowledged but carries nothing to apply.
    Raises WebhookRejected for unknown providers, bad signatures and unparseable payloads.
    """
    if provider == "alipay":
        return parse_alipay(body, config)
    if provider == "wechat":
        return parse_wechat(body, config)
    if provider == "stripe":
        return parse_stripe(body, headers.get("Stripe-Signature"), config)
    raise WebhookRejected("Unsupported payment provider.")
