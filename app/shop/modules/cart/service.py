from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.shop.errors import ApiError, NotFound
from app.shop.modules.cart.models import CartItem
from app.shop.modules.catalog.models import Product
from app.shop.modules.catalog.service import first_image
from app.shop.utils import as_float, money, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.shop.models import User


def cart_item_to_dict(ci: CartItem) -> dict[str, Any]:
    p = ci.product
    return {
        "id": ci.id,
        "productId": ci.product_id,
        "name": p.name,
        "price": as_float(p.price),
        "originalPrice": as_float(p.original_price),
        "image": first_image(p),
        "quantity": ci.quantity,
        "inStock": p.stock > 0,
        "stock": p.stock,
    }


def list_cart(s: "Session", user: "User") -> dict[str, Any]:
    items = s.query(CartItem).filter(CartItem.user_id == user.id).order_by(CartItem.created_at.asc(), CartItem.id.asc()).all()
    subtotal = sum((ci.product.price * ci.quantity for ci in items), Decimal("0"))
    return {
        "items": [cart_item_to_dict(ci) for ci in items],
        "subtotal": as_float(money(subtotal)),
        "count": sum(ci.quantity for ci in items),
    }


def _quantity(raw: Any, default: int | None = None) -> int:
    q = default if raw is None and default is not None else parse_int(raw)
    if q is None or q < 1:
        raise ApiError("Quantity must be at least 1.")
    return q


def add_to_cart(s: "Session", user: "User", payload: dict) -> CartItem:
    product_id = parse_int(payload.get("productId"))
    quantity = _quantity(payload.get("quantity"), default=1)
    if product_id is None:
        raise ApiError("Product is required.")

    product = s.get(Product, product_id)
    if product is None or not product.is_active:
        raise ApiError("Product does not exist or is no longer available.")
    if product.stock < 1:
        raise ApiError("Product is out of stock.")

    item = (
        s.query(CartItem)
        .filter(CartItem.user_id == user.id, CartItem.product_id == product_id)
        .one_or_none()
    )
    now = datetime.utcnow()
    # Quantity silently clamps to what is in stock.
    new_quantity = min((item.quantity if item else 0) + quantity, product.stock)
    if item is None:
        item = CartItem(user_id=user.id, product_id=product_id, quantity=new_quantity, created_at=now, updated_at=now)
        s.add(item)
    else:
        item.quantity = new_quantity
        item.updated_at = now
    s.flush()
    return item


def find_cart_item(s: "Session", user: "User", payload: dict) -> CartItem:
    item_id = parse_int(payload.get("itemId"))
    product_id = parse_int(payload.get("productId"))
    if item_id is None and product_id is None:
        raise ApiError("itemId or productId is required.")
    q = s.query(CartItem).filter(CartItem.user_id == user.id)
    if item_id is not None:
        q = q.filter(CartItem.id == item_id)
    else:
        q = q.filter(CartItem.product_id == product_id)
    item = q.one_or_none()
    if item is None:
        raise NotFound("Cart item not found.")
    return item


def update_cart_item(s: "Session", user: "User", payload: dict) -> CartItem:
    quantity = _quantity(payload.get("quantity"))
    item = find_cart_item(s, user, payload)
    if item.product.stock < quantity:
        raise ApiError("Not enough stock for that quantity.")
    item.quantity = quantity
    item.updated_at = datetime.utcnow()
    return item


def remove_cart_item(s: "Session", user: "User", payload: dict) -> None:
    s.delete(find_cart_item(s, user, payload))


def clear_cart(s: "Session", user: "User", product_ids: list[int] | None = None) -> int:
    q = s.query(CartItem).filter(CartItem.user_id == user.id)
    if product_ids is not None:
        if not product_ids:
            return 0
        q = q.filter(CartItem.product_id.in_(product_ids))
    return q.delete(synchronize_session=False)
