"""Tests for back-office user management."""
import pytest
from werkzeug.security import generate_password_hash

from app.shop.db import session_scope
from app.shop.models import Permission, Role, User


def test_list_requires_users_manage(client, alice_headers, admin_headers):
    assert client.get("/api/users", headers=alice_headers).status_code == 403

    data = client.get("/api/users", headers=admin_headers).json["data"]
    assert data["pagination"]["total"] == 4
    assert data["stats"]["total"] == 4
    assert data["stats"]["roles"] == {"customer": 2, "admin": 1, "super_admin": 1}


def test_list_filters_and_counts(client, admin_headers, alice_headers, catalog, place_order):
    place_order(alice_headers, [(catalog["band"], 1)])

    data = client.get("/api/users?role=customer&sortBy=email&sortOrder=asc", headers=admin_headers).json["data"]
    assert [u["email"] for u in data["users"]] == ["alice@example.com", "bob@example.com"]
    assert data["users"][0]["counts"] == {"orders": 1, "addresses": 0}

    data = client.get("/api/users?search=bob", headers=admin_headers).json["data"]
    assert [u["email"] for u in data["users"]] == ["bob@example.com"]


def test_create_user(client, admin_headers):
    r = client.post(
        "/api/users",
        json={"name": "Carol", "email": "Carol@Example.com", "password": "hunter22"},
        headers=admin_headers,
    )
    assert r.status_code == 201
    assert r.json["data"]["email"] == "carol@example.com"
    assert r.json["data"]["role"] == "customer"

    r = client.post(
        "/api/users",
        json={"name": "Carol", "email": "carol@example.com", "password": "hunter22"},
        headers=admin_headers,
    )
    assert r.json["error"] == "A user with this email already exists."

    r = client.post("/api/users", json={"email": "x@example.com", "password": "1"}, headers=admin_headers)
    assert r.json["error"] == "Name is required."
    assert "Password must be at least 6 characters." in r.json["errors"]

    r = client.post(
        "/api/users",
        json={"name": "D", "email": "d@example.com", "password": "hunter22", "role": "wizard"},
        headers=admin_headers,
    )
    assert r.json["error"] == "Role does not exist."


def test_only_role_managers_create_admins(client, admin_headers, root_headers):
    payload = {"name": "Eve", "email": "eve@example.com", "password": "hunter22", "role": "admin"}
    assert client.post("/api/users", json=payload, headers=admin_headers).status_code == 403

    r = client.post("/api/users", json=payload, headers=root_headers)
    assert r.status_code == 201
    assert r.json["data"]["roles"] == ["admin"]


def test_detail_self_or_admin(client, alice_headers, bob_headers, admin_headers, user_id, catalog, place_order):
    alice = user_id("alice@example.com")
    place_order(alice_headers, [(catalog["band"], 1)])

    data = client.get(f"/api/users/{alice}", headers=alice_headers).json["data"]
    assert data["stats"]["orderCount"] == 1
    assert data["stats"]["totalSpent"] == 60.0
    assert data["stats"]["ordersByStatus"]["PENDING"] == 1
    assert len(data["recentOrders"]) == 1

    assert client.get(f"/api/users/{alice}", headers=bob_headers).status_code == 403
    assert client.get(f"/api/users/{alice}", headers=admin_headers).status_code == 200
    assert client.get("/api/users/9999", headers=admin_headers).status_code == 404


def test_self_update_limits(client, alice_headers, user_id):
    alice = user_id("alice@example.com")

    r = client.put(f"/api/users/{alice}", json={"name": "Alice L", "phone": "13900139000"}, headers=alice_headers)
    assert r.json["data"]["name"] == "Alice L"

    assert client.put(f"/api/users/{alice}", json={"role": "admin"}, headers=alice_headers).status_code == 403
    assert client.put(f"/api/users/{alice}", json={"isActive": False}, headers=alice_headers).status_code == 403

    r = client.put(f"/api/users/{alice}", json={"email": "bob@example.com"}, headers=alice_headers)
    assert r.json["error"] == "A user with this email already exists."


def test_password_change_applies_to_login(client, alice_headers, user_id):
    alice = user_id("alice@example.com")
    client.put(f"/api/users/{alice}", json={"password": "brand-new-pw"}, headers=alice_headers)
    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "brand-new-pw"})
    assert r.status_code == 200


def test_admin_role_and_status_changes(client, root_headers, admin_headers, user_id):
    bob = user_id("bob@example.com")
    root = user_id("root@example.com")

    assert client.put(f"/api/users/{bob}", json={"role": "admin"}, headers=admin_headers).status_code == 403

    r = client.put(f"/api/users/{bob}", json={"role": "admin"}, headers=root_headers)
    assert r.json["data"]["roles"] == ["admin"]

    r = client.put(f"/api/users/{root}", json={"role": "customer"}, headers=root_headers)
    assert r.json["error"] == "You cannot remove your own administrator role."

    r = client.put(f"/api/users/{root}", json={"isActive": False}, headers=root_headers)
    assert r.json["error"] == "You cannot change your own account status."

    r = client.put(f"/api/users/{bob}", json={"isActive": False}, headers=admin_headers)
    assert r.json["data"]["isActive"] is False


def test_deactivated_user_loses_access(client, admin_headers, bob_headers, user_id):
    bob = user_id("bob@example.com")
    r = client.put("/api/users", json={"userIds": [bob], "updates": {"isActive": False}}, headers=admin_headers)
    assert r.json["data"]["count"] == 1
    assert client.get("/api/cart", headers=bob_headers).status_code == 401

    r = client.post("/api/auth/login", json={"email": "bob@example.com", "password": "secret123"})
    assert r.status_code == 403


def test_bulk_status_validation(client, admin_headers, user_id):
    admin = user_id("admin@example.com")
    r = client.put("/api/users", json={"userIds": [admin], "updates": {"isActive": False}}, headers=admin_headers)
    assert r.json["error"] == "You cannot change your own account status."

    r = client.put("/api/users", json={"userIds": [1], "updates": {"isActive": "no"}}, headers=admin_headers)
    assert r.json["error"] == "updates.isActive must be true or false."


def test_delete_users(client, admin_headers, alice_headers, user_id, catalog, place_order):
    alice = user_id("alice@example.com")
    bob = user_id("bob@example.com")
    admin = user_id("admin@example.com")
    place_order(alice_headers, [(catalog["band"], 1)])

    r = client.delete(f"/api/users/{admin}", headers=admin_headers)
    assert r.json["error"] == "You cannot delete your own account."

    r = client.delete(f"/api/users?ids={alice},{bob}", headers=admin_headers)
    assert r.json["error"] == f"Users with orders cannot be deleted (ids: {alice})."

    r = client.delete(f"/api/users/{bob}", headers=admin_headers)
    assert r.status_code == 200
    assert client.get(f"/api/users/{bob}", headers=admin_headers).status_code == 404


def test_admin_cannot_take_over_role_managers(client, admin_headers, user_id):
    root = user_id("root@example.com")

    for payload in ({"password": "taken-over"}, {"email": "mine@example.com"}, {"isActive": False}, {"name": "Root?"}):
        r = client.put(f"/api/users/{root}", json=payload, headers=admin_headers)
        assert r.status_code == 403
        assert r.json["error"] == "You are not allowed to modify this account."

    r = client.put("/api/users", json={"userIds": [root], "updates": {"isActive": False}}, headers=admin_headers)
    assert r.status_code == 403
    assert client.delete(f"/api/users/{root}", headers=admin_headers).status_code == 403

    r = client.post("/api/auth/admin/login", json={"email": "root@example.com", "password": "secret123"})
    assert r.status_code == 200
    assert r.json["user"]["roles"] == ["super_admin"]


@pytest.fixture()
def ops_headers(app, headers_for):
    """A non-super-admin account that may still assign roles."""
    with session_scope(app) as s:
        perms = s.query(Permission).filter(Permission.key.in_(["admin.view", "users.manage", "users.roles"])).all()
        role = Role(key="user_admin", name="User administrator")
        role.permissions.extend(perms)
        ops = User(email="ops@example.com", name="Ops", password_hash=generate_password_hash("secret123"), is_active=True)
        ops.roles.append(role)
        s.add_all([role, ops])
    return headers_for("ops@example.com")


def test_last_super_admin_is_kept(client, ops_headers, root_headers, user_id):
    root = user_id("root@example.com")
    guard = "At least one active super administrator must remain."

    assert client.delete(f"/api/users/{root}", headers=ops_headers).json["error"] == guard
    assert client.put(f"/api/users/{root}", json={"isActive": False}, headers=ops_headers).json["error"] == guard
    assert client.put(f"/api/users/{root}", json={"role": "admin"}, headers=ops_headers).json["error"] == guard
    r = client.put("/api/users", json={"userIds": [root], "updates": {"isActive": False}}, headers=ops_headers)
    assert r.json["error"] == guard

    r = client.post(
        "/api/users",
        json={"name": "Root Two", "email": "root2@example.com", "password": "hunter22", "role": "super_admin"},
        headers=root_headers,
    )
    assert r.status_code == 201

    r = client.put(f"/api/users/{root}", json={"isActive": False}, headers=ops_headers)
    assert r.status_code == 200
    assert r.json["data"]["isActive"] is False
