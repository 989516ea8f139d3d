"""Tests for coupon pricing, claiming and administration."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.shop.modules.coupons.models import Coupon
from app.shop.modules.coupons.service import calculate_discount, check_coupon
from conftest import ADDRESS


def _coupon(**kw):
    now = datetime.utcnow()
    defaults = dict(
        name="Test",
        code="TEST",
        type="AMOUNT",
        value=Decimal("10"),
        total_count=10,
        used_count=0,
        is_active=True,
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=1),
    )
    defaults.update(kw)
    return Coupon(**defaults)


def _payload(**overrides):
    now = datetime.utcnow()
    payload = {
        "name": "Ten off",
        "code": "ten-off",
        "type": "AMOUNT",
        "value": 10,
        "minAmount": 40,
        "totalCount": 5,
        "startDate": (now - timedelta(days=1)).isoformat(),
        "endDate": (now + timedelta(days=7)).isoformat(),
    }
    payload.update(overrides)
    return payload


class TestCalculateDiscount:
    def test_amount_is_capped_by_subtotal(self):
        c = _coupon(type="AMOUNT", value=Decimal("30"))
        assert calculate_discount(c, Decimal("100")) == Decimal("30.00")
        assert calculate_discount(c, Decimal("20")) == Decimal("20.00")

    def test_percentage_with_cap(self):
        c = _coupon(type="DISCOUNT", value=Decimal("15"), max_discount=Decimal("20"))
        assert calculate_discount(c, Decimal("100")) == Decimal("15.00")
        assert calculate_discount(c, Decimal("200")) == Decimal("20.00")

    def test_percentage_rounds_half_up(self):
        c = _coupon(type="DISCOUNT", value=Decimal("10"), max_discount=None)
        assert calculate_discount(c, Decimal("33.35")) == Decimal("3.34")

    def test_shipping_waives_fee(self):
        c = _coupon(type="SHIPPING", value=Decimal("0"))
        assert calculate_discount(c, Decimal("50"), Decimal("10")) == Decimal("10.00")
        assert calculate_discount(c, Decimal("150"), Decimal("0")) == Decimal("0.00")


class TestCheckCoupon:
    def test_valid(self):
        assert check_coupon(_coupon(), Decimal("50")) is None

    @pytest.mark.parametrize(
        "kw, message",
        [
            ({"is_active": False}, "Coupon is invalid or expired."),
            ({"end_date": datetime(2000, 1, 1), "start_date": datetime(1999, 1, 1)}, "Coupon is invalid or expired."),
            ({"used_count": 10}, "Coupon has been fully redeemed."),
            ({"min_amount": Decimal("99")}, "Minimum order amount is 99.00."),
        ],
    )
    def test_problems(self, kw, message):
        assert check_coupon(_coupon(**kw), Decimal("50")) == message

    def test_missing(self):
        assert check_coupon(None, Decimal("50")) == "Coupon is invalid or expired."


def test_admin_create_normalizes_code(client, admin_headers):
    r = client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)
    assert r.status_code == 201
    data = r.json["data"]
    assert data["code"] == "TEN-OFF"
    assert data["status"] == "active"
    assert data["remaining"] == 5

    r = client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)
    assert r.status_code == 400
    assert r.json["error"] == "Coupon code already exists."


def test_admin_create_validation(client, admin_headers):
    r = client.post("/api/admin/coupons", json=_payload(type="DISCOUNT", value=150), headers=admin_headers)
    assert r.json["error"] == "Percentage discount cannot exceed 100."

    now = datetime.utcnow()
    r = client.post(
        "/api/admin/coupons",
        json=_payload(startDate=now.isoformat(), endDate=(now - timedelta(days=1)).isoformat()),
        headers=admin_headers,
    )
    assert r.json["error"] == "End date must be after start date."

    r = client.post("/api/admin/coupons", json=_payload(), headers={})
    assert r.status_code == 401


def test_admin_list_update_toggle_delete(client, admin_headers):
    cid = client.post("/api/admin/coupons", json=_payload(), headers=admin_headers).json["data"]["id"]
    client.post("/api/admin/coupons", json=_payload(code="SHIPFREE", type="SHIPPING", value=None), headers=admin_headers)

    r = client.get("/api/admin/coupons?type=shipping", headers=admin_headers)
    assert [c["code"] for c in r.json["data"]["coupons"]] == ["SHIPFREE"]

    r = client.put(f"/api/admin/coupons/{cid}", json={"value": 12}, headers=admin_headers)
    assert r.json["data"]["value"] == 12.0

    r = client.post(f"/api/admin/coupons/{cid}/toggle", headers=admin_headers)
    assert r.json["data"]["isActive"] is False
    assert r.json["data"]["status"] == "inactive"

    assert client.delete(f"/api/admin/coupons/{cid}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/admin/coupons/{cid}", headers=admin_headers).status_code == 404


def test_claim_and_list_mine(client, admin_headers, alice_headers):
    client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)

    r = client.get("/api/coupons", headers=alice_headers)
    assert [(c["code"], c["claimed"]) for c in r.json["data"]] == [("TEN-OFF", False)]

    r = client.post("/api/coupons/ten-off/claim", headers=alice_headers)
    assert r.status_code == 201
    assert r.json["data"]["status"] == "UNUSED"

    r = client.post("/api/coupons/TEN-OFF/claim", headers=alice_headers)
    assert r.status_code == 400
    assert r.json["error"] == "You have already claimed this coupon."

    assert client.post("/api/coupons/NOPE/claim", headers=alice_headers).status_code == 404
    assert client.get("/api/coupons", headers=alice_headers).json["data"][0]["claimed"] is True
    assert len(client.get("/api/coupons/mine", headers=alice_headers).json["data"]) == 1


def test_quote(client, admin_headers):
    client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)

    r = client.post("/api/coupons/quote", json={"code": "ten-off", "subtotal": 50})
    assert r.json["data"] == {
        "coupon": r.json["data"]["coupon"],
        "subtotal": 50.0,
        "shippingFee": 10.0,
        "discount": 10.0,
        "total": 50.0,
    }

    r = client.post("/api/coupons/quote", json={"code": "ten-off", "subtotal": 20})
    assert r.status_code == 400
    assert r.json["error"] == "Minimum order amount is 40.00."


def test_checkout_applies_coupon_once(client, admin_headers, alice_headers, catalog, place_order):
    client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)
    order = place_order(alice_headers, [(catalog["band"], 1)], couponCode="TEN-OFF")
    assert order["discountAmount"] == 10.0
    assert order["finalAmount"] == 50.0
    assert order["coupon"]["code"] == "TEN-OFF"

    cid = order["coupon"]["id"]
    assert client.get(f"/api/admin/coupons/{cid}", headers=admin_headers).json["data"]["usedCount"] == 1
    r = client.delete(f"/api/admin/coupons/{cid}", headers=admin_headers)
    assert r.status_code == 400


def test_coupon_redeemed_once_per_customer(client, admin_headers, alice_headers, bob_headers, catalog, place_order):
    client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)
    first = place_order(alice_headers, [(catalog["band"], 1)], couponCode="TEN-OFF")
    assert first["discountAmount"] == 10.0

    order = {"items": [{"productId": catalog["band"], "quantity": 1}], "shippingAddress": ADDRESS, "couponCode": "TEN-OFF"}
    r = client.post("/api/orders", json=order, headers=alice_headers)
    assert r.status_code == 400
    assert r.json["error"] == "You have already used this coupon."

    r = client.post("/api/orders", json={**order, "couponCode": "NO-SUCH"}, headers=bob_headers)
    assert r.status_code == 400
    assert r.json["error"] == "Coupon is invalid or expired."

    assert place_order(bob_headers, [(catalog["band"], 1)], couponCode="TEN-OFF")["discountAmount"] == 10.0

    client.post(f"/api/orders/{first['id']}/cancel", headers=alice_headers)
    assert place_order(alice_headers, [(catalog["band"], 1)], couponCode="TEN-OFF")["discountAmount"] == 10.0


def test_cancelling_paid_order_releases_claim(client, admin_headers, alice_headers, catalog, place_order):
    client.post("/api/admin/coupons", json=_payload(), headers=admin_headers)
    client.post("/api/coupons/TEN-OFF/claim", headers=alice_headers)
    order = place_order(alice_headers, [(catalog["band"], 1)], couponCode="TEN-OFF")
    r = client.post(
        "/api/payments",
        json={"orderId": order["id"], "paymentMethod": "balance", "amount": order["finalAmount"]},
        headers=alice_headers,
    )
    assert r.json["data"]["status"] == "completed"

    mine = client.get("/api/coupons/mine", headers=alice_headers).json["data"]
    assert [(c["status"], c["orderId"]) for c in mine] == [("USED", order["id"])]

    r = client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=admin_headers)
    assert r.json["data"]["status"] == "CANCELLED"

    mine = client.get("/api/coupons/mine", headers=alice_headers).json["data"]
    assert [(c["status"], c["orderId"], c["usedAt"]) for c in mine] == [("UNUSED", None, None)]
    assert mine[0]["coupon"]["usedCount"] == 0
