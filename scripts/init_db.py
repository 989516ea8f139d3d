import os
import sys
from decimal import Decimal
from pathlib import Path

from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.shop.models import Permission, Role, User  # noqa: E402
from app.shop.modules.catalog.models import Category, Product  # noqa: E402
from app.shop.modules.home_sections.models import HomeSection  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

PERMISSIONS = {
    "admin.view": "Admin: back-office access",
    "products.manage": "Products: create, edit, delete",
    "categories.manage": "Categories: create, edit, delete",
    "orders.view_all": "Orders: view every customer's orders",
    "orders.manage": "Orders: status, tracking, export",
    "coupons.manage": "Coupons: create, edit, delete",
    "users.manage": "Users: manage accounts",
    "users.roles": "Users: assign roles",
    "analytics.view": "Analytics: reports and export",
    "home_sections.manage": "Home page: manage sections",
}

ROLES = {
    "customer": ("Customer", ()),
    "admin": ("Administrator", tuple(k for k in PERMISSIONS if k != "users.roles")),
    "super_admin": ("Super Administrator", tuple(PERMISSIONS)),
}

CATEGORIES = [
    ("Wearables", "Watches, bands and earbuds.", 1),
    ("Smart Home", "Lighting, cameras and connected appliances.", 2),
    ("Lifestyle", "Everyday carry and travel gear.", 3),
]

PRODUCTS = [
    ("Smart Band 8", "Wearables", "249.00", "299.00", 120),
    ("Watch S3", "Wearables", "899.00", None, 45),
    ("Wireless Earbuds Pro", "Wearables", "399.00", "499.00", 80),
    ("Robot Vacuum X10", "Smart Home", "2499.00", "2999.00", 20),
    ("Smart Desk Lamp", "Smart Home", "169.00", None, 200),
    ("Security Camera 2K", "Smart Home", "199.00", "249.00", 8),
    ("Travel Backpack", "Lifestyle", "149.00", None, 60),
    ("Insulated Bottle", "Lifestyle", "59.00", "79.00", 300),
]

HOME_SECTIONS = [
    ("New arrivals", "Fresh picks for the season", "Shop now", "/products?sortBy=createdAt", 1),
    ("Smart home deals", "Save on connected living", "Browse", "/products?category=smart_home", 2),
]


def seed_rbac(s: Session) -> dict[str, Role]:
    """Create permissions and the built-in roles; safe to run repeatedly."""

    def ensure_perm(key: str, name: str) -> Permission:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        return p

    perms = {key: ensure_perm(key, name) for key, name in PERMISSIONS.items()}
    roles: dict[str, Role] = {}
    for key, (name, keys) in ROLES.items():
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for pk in keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
        roles[key] = role
    s.flush()
    return roles


def seed_catalog(s: Session) -> None:
    by_name: dict[str, Category] = {}
    for name, description, sort in CATEGORIES:
        c = s.query(Category).filter(Category.name == name).one_or_none()
        if not c:
            c = Category(name=name, description=description, sort=sort, is_active=True)
            s.add(c)
        by_name[name] = c
    s.flush()

    if s.query(Product.id).first() is not None:
        return
    for name, category, price, original, stock in PRODUCTS:
        s.add(
            Product(
                name=name,
                category_id=by_name[category].id,
                price=Decimal(price),
                original_price=Decimal(original) if original else None,
                stock=stock,
                images=[],
                is_active=True,
            )
        )


def seed_home_sections(s: Session) -> None:
    for title, subtitle, button_text, button_link, sort in HOME_SECTIONS:
        if s.query(HomeSection.id).filter(HomeSection.title == title).first() is None:
            s.add(HomeSection(title=title, subtitle=subtitle, button_text=button_text, button_link=button_link, sort=sort))


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user and demo catalog content in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    seed_demo = (os.environ.get("SEED_DEMO_DATA") or "1").strip().lower() not in ("0", "false", "no")

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///shop.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        roles = seed_rbac(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                is_new_user=False,
            )
            s.add(user)
        if roles["super_admin"] not in user.roles:
            user.roles.append(roles["super_admin"])

        if seed_demo:
            seed_catalog(s)
            seed_home_sections(s)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
