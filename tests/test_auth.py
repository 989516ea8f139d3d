"""Tests for registration, login and session handling."""


def _login(client, email, password="secret123", path="/api/auth/login"):
    return client.post(path, json={"email": email, "password": password})


def test_register_creates_customer(client):
    r = client.post(
        "/api/auth/register",
        json={"email": "New@Example.com", "password": "hunter22", "name": "Newbie"},
    )
    assert r.status_code == 201
    body = r.json
    assert body["success"] is True
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["roles"] == ["customer"]
    assert body["user"]["isNewUser"] is True
    assert body["token"]
    assert r.headers["Cache-Control"] == "no-store"


def test_register_duplicate_email(client):
    r = client.post("/api/auth/register", json={"email": "alice@example.com", "password": "hunter22"})
    assert r.status_code == 400
    assert r.json["error"] == "User already exists."


def test_register_validation_errors(client):
    r = client.post("/api/auth/register", json={"email": "not-an-email", "password": "x"})
    assert r.status_code == 400
    assert r.json["success"] is False
    assert len(r.json["errors"]) >= 2


def test_login_customer(client):
    r = _login(client, "alice@example.com")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "alice@example.com"
    assert r.json["csrfToken"]


def test_login_bad_password(client):
    r = _login(client, "alice@example.com", "wrong-password")
    assert r.status_code == 400
    assert r.json["error"] == "Invalid email or password."


def test_admin_must_use_admin_login(client):
    r = _login(client, "admin@example.com")
    assert r.status_code == 403

    r = _login(client, "admin@example.com", path="/api/auth/admin/login")
    assert r.status_code == 200
    assert "admin" in r.json["user"]["roles"]


def test_customer_rejected_by_admin_login(client):
    r = _login(client, "alice@example.com", path="/api/auth/admin/login")
    assert r.status_code == 403
    assert r.json["error"] == "Administrator access required."


def test_me_with_bearer_token(client):
    token = _login(client, "bob@example.com").json["token"]
    fresh = client.application.test_client()
    r = fresh.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "bob@example.com"


def test_me_rejects_garbage_token(client):
    r = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_verify_reports_admin_flag(client, admin_headers, alice_headers):
    assert client.get("/api/auth/verify", headers=admin_headers).json["isAdmin"] is True
    assert client.get("/api/auth/verify", headers=alice_headers).json["isAdmin"] is False


def test_cookie_session_needs_csrf_token(client, catalog):
    csrf = _login(client, "alice@example.com").json["csrfToken"]

    r = client.post("/api/cart", json={"productId": catalog["band"], "quantity": 1})
    assert r.status_code == 400
    assert r.json["error"] == "CSRF token missing or invalid."

    r = client.post(
        "/api/cart",
        json={"productId": catalog["band"], "quantity": 1},
        headers={"X-CSRF-Token": csrf},
    )
    assert r.status_code == 200


def test_bearer_requests_skip_csrf(client, alice_headers, catalog):
    r = client.post("/api/cart", json={"productId": catalog["band"]}, headers=alice_headers)
    assert r.status_code == 200


def test_logout_clears_session(client):
    _login(client, "alice@example.com")
    assert client.get("/api/auth/me").status_code == 200
    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401
