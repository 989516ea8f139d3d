from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app.shop import create_app
from app.shop.db import session_scope
from app.shop.models import Base, User
from app.shop.modules.catalog.models import Category, Product
from app.shop.security import issue_auth_token
from scripts.init_db import seed_rbac

PASSWORD = "secret123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("API_RATE_LIMIT", "1000")
    monkeypatch.setenv("STRICT_RATE_LIMIT", "50")
    monkeypatch.setenv("SHIPPING_FEE", "10")
    monkeypatch.setenv("FREE_SHIPPING_THRESHOLD", "99")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("WECHAT_API_KEY", "wechat-test-key")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "ALIPAY_PUBLIC_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_rbac(s)
        for email, name, role in (
            ("root@example.com", "Root", "super_admin"),
            ("admin@example.com", "Admin", "admin"),
            ("alice@example.com", "Alice", "customer"),
            ("bob@example.com", "Bob", "customer"),
        ):
            u = User(email=email, name=name, password_hash=generate_password_hash(PASSWORD), is_active=True)
            u.roles.append(roles[role])
            s.add(u)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def user_id(app):
    def _lookup(email: str) -> int:
        with session_scope(app) as s:
            return s.query(User.id).filter(User.email == email).scalar()

    return _lookup


@pytest.fixture()
def headers_for(app, user_id):
    def _headers(email: str) -> dict:
        with app.app_context():
            return {"Authorization": f"Bearer {issue_auth_token(user_id(email))}"}

    return _headers


@pytest.fixture()
def admin_headers(headers_for):
    return headers_for("admin@example.com")


@pytest.fixture()
def root_headers(headers_for):
    return headers_for("root@example.com")


@pytest.fixture()
def alice_headers(headers_for):
    return headers_for("alice@example.com")


@pytest.fixture()
def bob_headers(headers_for):
    return headers_for("bob@example.com")


@pytest.fixture()
def catalog(app):
    """Two categories and three products; returns their ids by name."""
    with session_scope(app) as s:
        wearables = Category(name="Wearables", sort=1)
        home = Category(name="Smart Home", sort=2)
        s.add_all([wearables, home])
        s.flush()
        band = Product(name="Smart Band", price=Decimal("50.00"), stock=10, category_id=wearables.id, images=["/img/band.png"])
        watch = Product(name="Watch", price=Decimal("120.00"), original_price=Decimal("150.00"), stock=3, category_id=wearables.id, images=[])
        lamp = Product(name="Desk Lamp", price=Decimal("30.00"), stock=0, category_id=home.id, images=[])
        s.add_all([band, watch, lamp])
        s.flush()
        return {
            "wearables": wearables.id,
            "home": home.id,
            "band": band.id,
            "watch": watch.id,
            "lamp": lamp.id,
        }


ADDRESS = {
    "name": "Alice Liddell",
    "phone": "13800138000",
    "province": "Zhejiang",
    "city": "Hangzhou",
    "district": "Xihu",
    "detail": "1 Lakeside Road",
}


@pytest.fixture()
def place_order(client):
    """POST /api/orders with an inline shipping address; returns the order dict."""

    def _place(headers: dict, items: list[tuple[int, int]], **extra) -> dict:
        payload = {
            "items": [{"productId": pid, "quantity": qty} for pid, qty in items],
            "shippingAddress": ADDRESS,
            **extra,
        }
        r = client.post("/api/orders", json=payload, headers=headers)
        assert r.status_code == 201, r.json
        return r.json["data"]

    return _place
