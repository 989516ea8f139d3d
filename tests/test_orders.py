"""Tests for checkout, order status management, tracking and export."""
import csv
import io

from openpyxl import load_workbook

from conftest import ADDRESS


def _stock(client, product_id):
    return client.get(f"/api/products/{product_id}").json["data"]["stock"]


def test_create_order_prices_and_reserves_stock(client, alice_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 2)], paymentMethod="Stripe", notes="Leave at door")
    assert order["status"] == "PENDING"
    assert order["orderNo"].startswith("ORD")
    assert order["totalAmount"] == 100.0
    assert order["shippingFee"] == 0.0
    assert order["finalAmount"] == 100.0
    assert order["paymentMethod"] == "stripe"
    assert order["remark"] == "Leave at door"
    assert order["shippingAddress"] == ADDRESS
    assert order["items"][0]["price"] == 50.0
    assert _stock(client, catalog["band"]) == 8


def test_small_order_pays_shipping(client, alice_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    assert order["shippingFee"] == 10.0
    assert order["finalAmount"] == 60.0


def test_duplicate_lines_are_merged(client, alice_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["watch"], 1), (catalog["watch"], 2)])
    assert order["itemCount"] == 1
    assert order["items"][0]["quantity"] == 3
    assert _stock(client, catalog["watch"]) == 0


def test_create_order_rejections(client, alice_headers, bob_headers, catalog):
    def post(payload, headers=alice_headers):
        return client.post("/api/orders", json=payload, headers=headers)

    r = post({"items": [], "shippingAddress": ADDRESS})
    assert r.json["error"] == "Order must contain at least one item."

    r = post({"items": [{"productId": catalog["watch"], "quantity": 4}], "shippingAddress": ADDRESS})
    assert r.status_code == 400
    assert r.json["error"] == "Not enough stock for Watch."

    r = post({"items": [{"productId": catalog["band"], "quantity": 1}]})
    assert r.json["error"] == "Shipping address is required."

    r = post({"items": [{"productId": catalog["band"], "quantity": 1}], "shippingAddress": ADDRESS, "paymentMethod": "cash"})
    assert r.json["error"].startswith("Unsupported payment method.")

    aid = client.post("/api/addresses", json=ADDRESS, headers=bob_headers).json["data"]["id"]
    r = post({"items": [{"productId": catalog["band"], "quantity": 1}], "addressId": aid})
    assert r.json["error"] == "Shipping address not found."

    assert _stock(client, catalog["watch"]) == 3


def test_order_from_saved_address_clears_cart(client, alice_headers, catalog):
    aid = client.post("/api/addresses", json=ADDRESS, headers=alice_headers).json["data"]["id"]
    client.post("/api/cart", json={"productId": catalog["band"], "quantity": 1}, headers=alice_headers)
    client.post("/api/cart", json={"productId": catalog["watch"], "quantity": 1}, headers=alice_headers)

    r = client.post(
        "/api/orders",
        json={"items": [{"productId": catalog["band"], "quantity": 1}], "addressId": aid, "fromCart": True},
        headers=alice_headers,
    )
    assert r.status_code == 201
    assert r.json["data"]["addressId"] == aid

    cart = client.get("/api/cart", headers=alice_headers).json["data"]
    assert [i["productId"] for i in cart["items"]] == [catalog["watch"]]


def test_listing_scopes_and_stats(client, alice_headers, bob_headers, admin_headers, catalog, place_order):
    mine = place_order(alice_headers, [(catalog["band"], 1)])
    place_order(bob_headers, [(catalog["band"], 1)])

    data = client.get("/api/orders", headers=alice_headers).json["data"]
    assert [o["id"] for o in data["orders"]] == [mine["id"]]
    assert data["stats"]["PENDING"] == 1

    data = client.get("/api/orders", headers=admin_headers).json["data"]
    assert data["pagination"]["total"] == 2
    assert data["stats"]["PENDING"] == 2

    data = client.get("/api/orders?search=bob", headers=admin_headers).json["data"]
    assert [o["user"]["email"] for o in data["orders"]] == ["bob@example.com"]


def test_detail_is_owner_or_admin(client, alice_headers, bob_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    assert client.get(f"/api/orders/{order['id']}", headers=alice_headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=bob_headers).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
    assert client.get("/api/orders/9999", headers=admin_headers).status_code == 404


def test_cancel_restores_stock(client, alice_headers, bob_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["watch"], 2)])
    assert _stock(client, catalog["watch"]) == 1

    assert client.post(f"/api/orders/{order['id']}/cancel", headers=bob_headers).status_code == 403

    r = client.post(f"/api/orders/{order['id']}/cancel", headers=alice_headers)
    assert r.json["data"]["status"] == "CANCELLED"
    assert _stock(client, catalog["watch"]) == 3

    r = client.post(f"/api/orders/{order['id']}/cancel", headers=alice_headers)
    assert r.status_code == 400
    assert r.json["error"] == "Only unpaid orders can be cancelled."


def test_admin_status_flow_and_tracking(client, alice_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    url = f"/api/orders/{order['id']}"

    assert client.put(url, json={"status": "PAID"}, headers=alice_headers).status_code == 403
    assert client.put(url, json={"status": "LOST"}, headers=admin_headers).status_code == 400

    r = client.put(
        url,
        json={"status": "shipped", "trackingNumber": "SF123", "shippingCompany": "SF Express"},
        headers=admin_headers,
    )
    assert r.json["data"]["status"] == "SHIPPED"
    assert r.json["data"]["trackingNumber"] == "SF123"
    assert r.json["data"]["shippedAt"]

    r = client.post(
        f"{url}/tracking",
        json={"status": "IN_TRANSIT", "description": "Arrived at hub", "location": "Shanghai"},
        headers=admin_headers,
    )
    assert r.status_code == 201
    assert client.post(f"{url}/tracking", json={"status": "X"}, headers=admin_headers).status_code == 400

    client.put(url, json={"status": "DELIVERED"}, headers=admin_headers)

    data = client.get(f"{url}/tracking", headers=alice_headers).json["data"]
    assert data["order"]["deliveredAt"]
    assert [t["status"] for t in data["trackingHistory"]] == ["DELIVERED", "IN_TRANSIT", "SHIPPED"]


def test_update_tracking_info(client, alice_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    r = client.put(
        f"/api/orders/{order['id']}/tracking",
        json={"trackingNumber": "YT9", "shippingCompany": "YTO", "estimatedDelivery": "2030-01-05"},
        headers=admin_headers,
    )
    data = r.json["data"]
    assert data["order"]["trackingNumber"] == "YT9"
    assert data["order"]["estimatedDelivery"] == "2030-01-05T00:00:00"
    assert data["trackingHistory"][0]["status"] == "TRACKING_UPDATED"

    r = client.put(f"/api/orders/{order['id']}/tracking", json={"estimatedDelivery": "soon"}, headers=admin_headers)
    assert r.status_code == 400


def test_terminal_orders_cannot_change(client, alice_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    client.put(f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=admin_headers)

    r = client.put(f"/api/orders/{order['id']}", json={"status": "PAID"}, headers=admin_headers)
    assert r.status_code == 400
    assert "can no longer change status" in r.json["error"]


def test_bulk_status_skips_terminal(client, alice_headers, admin_headers, catalog, place_order):
    a = place_order(alice_headers, [(catalog["band"], 1)])
    b = place_order(alice_headers, [(catalog["band"], 1)])
    client.post(f"/api/orders/{b['id']}/cancel", headers=alice_headers)

    r = client.put("/api/orders", json={"orderIds": [a["id"], b["id"]], "status": "CONFIRMED"}, headers=admin_headers)
    data = r.json["data"]
    assert data["count"] == 1
    assert data["updated"] == [a["id"]]
    assert [s["id"] for s in data["skipped"]] == [b["id"]]

    assert client.put("/api/orders", json={"orderIds": [], "status": "PAID"}, headers=admin_headers).status_code == 400


def test_delete_only_terminal(client, alice_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 1)])
    r = client.delete(f"/api/orders/{order['id']}", headers=admin_headers)
    assert r.json["error"] == "Only cancelled or refunded orders can be deleted."

    client.post(f"/api/orders/{order['id']}/cancel", headers=alice_headers)
    assert client.delete(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 404


def test_export_formats(client, alice_headers, admin_headers, catalog, place_order):
    order = place_order(alice_headers, [(catalog["band"], 2)])

    r = client.get("/api/orders/export", headers=admin_headers)
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    text = r.data.decode("utf-8")
    assert text.startswith("\ufeff")
    rows = list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
    assert rows[0][0] == "Order No"
    assert rows[1][0] == order["orderNo"]
    assert rows[1][7] == "Smart Band x2"

    r = client.get("/api/orders/export?format=excel", headers=admin_headers)
    wb = load_workbook(io.BytesIO(r.data))
    assert wb.sheetnames == ["Orders"]
    assert wb["Orders"]["A2"].value == order["orderNo"]

    r = client.get("/api/orders/export?format=json&status=PAID", headers=admin_headers)
    assert r.json["data"] == []

    r = client.get("/api/orders/export?format=json", headers=admin_headers)
    assert r.json["data"][0]["Amount Paid"] == 100.0

    assert client.get("/api/orders/export?format=pdf", headers=admin_headers).status_code == 400
    assert client.get("/api/orders/export", headers=alice_headers).status_code == 403
