from __future__ import annotations

import logging
import math
import re
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from app.shop.audit import record_event
from app.shop.errors import ApiError, NotFound
from app.shop.modules.catalog.models import Category, Product
from app.shop.utils import as_float, iso, money, normalize_text, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.shop.models import User
    from app.shop.storage import Storage

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "/images/placeholder.png"
PRODUCT_STATUSES = ("active", "inactive", "out_of_stock")
SORT_FIELDS = {
    "createdAt": Product.created_at,
    "updatedAt": Product.updated_at,
    "price": Product.price,
    "name": Product.name,
    "stock": Product.stock,
}
BULK_UPDATE_FIELDS = ("price", "originalPrice", "stock", "isActive", "categoryId")

IMAGE_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024

_CODE_STRIP_RE = re.compile(r"[^a-z0-9]+")


def category_code(name: str | None) -> str:
    """Stable slug for a category name; a few storefront sections have fixed codes."""
    raw = (name or "").strip()
    n = raw.lower()
    if raw == "穿戴设备/手表" or n in ("wearable", "wearables"):
        return "wearable"
    if raw == "智能家居" or n in ("smart home", "home goods"):
        return "smart_home"
    if raw == "生活用品" or n in ("life style", "lifestyle"):
        return "life_style"
    return _CODE_STRIP_RE.sub("_", n).strip("_") or "uncategorized"


def category_to_dict(c: Category) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "code": category_code(c.name),
        "description": c.description,
        "image": c.image,
        "parentId": c.parent_id,
        "sort": c.sort,
        "isActive": c.is_active,
        "createdAt": iso(c.created_at),
        "updatedAt": iso(c.updated_at),
    }


def product_to_dict(p: Product, *, sales: int | None = None) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "price": as_float(p.price),
        "originalPrice": as_float(p.original_price),
        "stock": p.stock,
        "categoryId": p.category_id,
        "category": {"id": p.category.id, "name": p.category.name, "code": category_code(p.category.name)}
        if p.category
        else None,
        "images": list(p.images or []),
        "specs": p.specs,
        "isActive": p.is_active,
        "createdAt": iso(p.created_at),
        "updatedAt": iso(p.updated_at),
    }
    if sales is not None:
        d["totalSales"] = sales
    return d


def first_image(p: Product) -> str:
    images = p.images or []
    return images[0] if images else PLACEHOLDER_IMAGE


# ---------- Listing ----------
def normalize_listing_params(args: Any, *, include_inactive: bool) -> dict[str, Any]:
    page = parse_int(args.get("page"))
    limit = parse_int(args.get("limit"))
    sort_by = normalize_text(args.get("sortBy")) or "createdAt"
    sort_order = normalize_text(args.get("sortOrder")).lower() or "desc"
    status = normalize_text(args.get("status"))
    return {
        "page": page if page and page > 0 else 1,
        "limit": min(limit, 100) if limit and limit > 0 else 10,
        "search": normalize_text(args.get("search")),
        "category": normalize_text(args.get("category")),
        "status": status if status in PRODUCT_STATUSES else "",
        "sortBy": sort_by if sort_by in SORT_FIELDS else "createdAt",
        "sortOrder": sort_order if sort_order in ("asc", "desc") else "desc",
        "scope": "all" if include_inactive else "public",
    }


def _category_ids_for(s: "Session", token: str) -> list[int]:
    cid = parse_int(token)
    if cid is not None:
        return [cid]
    return [c.id for c in s.query(Category).all() if category_code(c.name) == token]


def _order_line_counts(s: "Session", product_ids: list[int]) -> dict[int, int]:
    from app.shop.modules.orders.models import OrderItem

    if not product_ids:
        return {}
    rows = (
        s.query(OrderItem.product_id, func.count(OrderItem.id))
        .filter(OrderItem.product_id.in_(product_ids))
        .group_by(OrderItem.product_id)
        .all()
    )
    return {pid: int(n) for pid, n in rows}


def list_products(s: "Session", params: dict[str, Any]) -> dict[str, Any]:
    q = s.query(Product)
    if params["scope"] == "public":
        q = q.filter(Product.is_active.is_(True))

    if params["search"]:
        like = f"%{params['search']}%"
        q = q.filter(or_(Product.name.ilike(like), Product.description.ilike(like)))

    if params["category"]:
        q = q.filter(Product.category_id.in_(_category_ids_for(s, params["category"])))

    # Stats describe the filtered set before the status filter narrows it.
    base = q
    stats = {
        "active": base.filter(Product.is_active.is_(True)).count(),
        "inactive": base.filter(Product.is_active.is_(False)).count(),
        "outOfStock": base.filter(Product.stock <= 0).count(),
    }

    status = params["status"]
    if status == "active":
        q = q.filter(Product.is_active.is_(True))
    elif status == "inactive":
        q = q.filter(Product.is_active.is_(False))
    elif status == "out_of_stock":
        q = q.filter(Product.stock <= 0)

    total = q.count()
    col = SORT_FIELDS[params["sortBy"]]
    order = col.asc() if params["sortOrder"] == "asc" else col.desc()
    page, limit = params["page"], params["limit"]
    products = q.order_by(order, Product.id.desc()).offset((page - 1) * limit).limit(limit).all()
    sales = _order_line_counts(s, [p.id for p in products])

    return {
        "success": True,
        "data": {
            "products": [product_to_dict(p, sales=sales.get(p.id, 0)) for p in products],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
            "stats": stats,
        },
    }


def get_product(s: "Session", product_id: int) -> Product:
    p = s.get(Product, product_id)
    if p is None:
        raise NotFound("Product not found.")
    return p


def product_detail(s: "Session", p: Product) -> dict[str, Any]:
    return product_to_dict(p, sales=_order_line_counts(s, [p.id]).get(p.id, 0))


# ---------- Validation ----------
def _validate_fields(s: "Session", payload: dict, *, partial: bool) -> tuple[dict[str, Any], list[str]]:
    errors: list[str] = []
    values: dict[str, Any] = {}

    if not partial or "name" in payload:
        name = normalize_text(payload.get("name"))
        if not name:
            errors.append("Product name is required.")
        else:
            values["name"] = name

    if not partial or "price" in payload:
        price = parse_decimal(payload.get("price"))
        if price is None or price <= 0:
            errors.append("Price must be greater than 0.")
        else:
            values["price"] = money(price)

    if "originalPrice" in payload:
        raw = payload.get("originalPrice")
        if raw in (None, ""):
            values["original_price"] = None
        else:
            op = parse_decimal(raw)
            if op is None or op < 0:
                errors.append("Original price must be a non-negative amount.")
            else:
                values["original_price"] = money(op)

    if not partial or "stock" in payload:
        raw = payload.get("stock")
        stock = 0 if raw in (None, "") and not partial else parse_int(raw)
        if stock is None or stock < 0:
            errors.append("Stock must be a non-negative integer.")
        else:
            values["stock"] = stock

    if not partial or "categoryId" in payload:
        cid = parse_int(payload.get("categoryId"))
        if cid is None:
            errors.append("Category is required.")
        elif s.get(Category, cid) is None:
            errors.append("Category does not exist.")
        else:
            values["category_id"] = cid

    if "description" in payload:
        values["description"] = normalize_text(payload.get("description")) or None

    if "images" in payload:
        images = payload.get("images") or []
        if not isinstance(images, list) or not all(isinstance(i, str) for i in images):
            errors.append("Images must be a list of URLs.")
        else:
            values["images"] = [i.strip() for i in images if i.strip()]

    if "specs" in payload:
        specs = payload.get("specs")
        if specs is not None and not isinstance(specs, dict):
            errors.append("Specs must be an object.")
        else:
            values["specs"] = specs

    if "isActive" in payload:
        if not isinstance(payload.get("isActive"), bool):
            errors.append("isActive must be true or false.")
        else:
            values["is_active"] = payload["isActive"]

    return values, errors


# ---------- Writes ----------
def create_product(s: "Session", payload: dict, user: "User") -> Product:
    values, errors = _validate_fields(s, payload, partial=False)
    if errors:
        raise ApiError(errors[0], errors=errors)
    now = datetime.utcnow()
    values.setdefault("images", [])
    p = Product(created_at=now, updated_at=now, **values)
    s.add(p)
    s.flush()
    record_event(
        s,
        actor=user,
        action="product.create",
        entity_type="Product",
        entity_id=str(p.id),
        metadata={"name": p.name, "price": p.price, "stock": p.stock},
    )
    return p


def update_product(s: "Session", p: Product, payload: dict, user: "User") -> Product:
    values, errors = _validate_fields(s, payload, partial=True)
    if errors:
        raise ApiError(errors[0], errors=errors)
    changes: dict[str, Any] = {}
    for field, new in values.items():
        old = getattr(p, field)
        if old != new:
            changes[field] = {"old": old, "new": new}
            setattr(p, field, new)
    if changes:
        p.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="product.update",
            entity_type="Product",
            entity_id=str(p.id),
            metadata={"changes": changes},
        )
    return p


def _ensure_not_ordered(s: "Session", product_ids: list[int]) -> None:
    from app.shop.modules.orders.models import OrderItem

    if s.query(OrderItem.id).filter(OrderItem.product_id.in_(product_ids)).first() is not None:
        raise ApiError("Cannot delete products that already have orders.")


def delete_product(s: "Session", p: Product, user: "User") -> None:
    _ensure_not_ordered(s, [p.id])
    record_event(s, actor=user, action="product.delete", entity_type="Product", entity_id=str(p.id), metadata={"name": p.name})
    s.delete(p)


def bulk_update_products(s: "Session", product_ids: list[int], updates: Any, user: "User") -> int:
    if not product_ids:
        raise ApiError("Select at least one product to update.")
    if not isinstance(updates, dict) or not updates:
        raise ApiError("No updates provided.")
    unknown = sorted(set(updates) - set(BULK_UPDATE_FIELDS))
    if unknown:
        raise ApiError(f"Fields cannot be bulk updated: {', '.join(unknown)}")
    values, errors = _validate_fields(s, updates, partial=True)
    if errors:
        raise ApiError(errors[0], errors=errors)

    values["updated_at"] = datetime.utcnow()
    count = (
        s.query(Product)
        .filter(Product.id.in_(product_ids))
        .update(values, synchronize_session=False)
    )
    record_event(
        s,
        actor=user,
        action="product.bulk_update",
        entity_type="Product",
        entity_id=",".join(str(i) for i in product_ids),
        metadata={"updates": updates, "count": count},
    )
    return count


def bulk_delete_products(s: "Session", product_ids: list[int], user: "User") -> int:
    if not product_ids:
        raise ApiError("Select at least one product to delete.")
    _ensure_not_ordered(s, product_ids)
    products = s.query(Product).filter(Product.id.in_(product_ids)).all()
    for p in products:
        s.delete(p)
    record_event(
        s,
        actor=user,
        action="product.bulk_delete",
        entity_type="Product",
        entity_id=",".join(str(i) for i in product_ids),
        metadata={"count": len(products)},
    )
    return len(products)


def store_product_image(storage: "Storage", upload: FileStorage | None, user: "User") -> dict[str, str]:
    if upload is None or not upload.filename:
        raise ApiError("No image file provided.")
    filename = secure_filename(upload.filename)
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    content_type = IMAGE_TYPES.get(ext)
    if content_type is None:
        raise ApiError("Only PNG, JPEG, GIF and WebP images are allowed.")
    data = upload.read()
    if not data:
        raise ApiError("Image file is empty.")
    if len(data) > MAX_IMAGE_BYTES:
        raise ApiError("Image must be 5MB or smaller.")

    name = f"{uuid.uuid4().hex}.{ext}"
    storage.put_bytes(f"products/{name}", data, content_type=content_type)
    logger.info("Stored product image %s (%d bytes) for user_id=%s", name, len(data), user.id)
    return {"key": name, "url": f"/api/products/images/{name}", "contentType": content_type}


def delete_product_image(storage: "Storage", name: str, user: "User") -> None:
    key = f"products/{secure_filename(name)}"
    if not storage.exists(key):
        raise NotFound("Image not found.")
    storage.delete(key)
    logger.info("Deleted product image %s for user_id=%s", name, user.id)


# ---------- Categories ----------
def list_categories(s: "Session", *, include_inactive: bool = False) -> list[Category]:
    q = s.query(Category)
    if not include_inactive:
        q = q.filter(Category.is_active.is_(True))
    return q.order_by(Category.sort.asc(), Category.name.asc()).all()


def get_category(s: "Session", category_id: int) -> Category:
    c = s.get(Category, category_id)
    if c is None:
        raise NotFound("Category not found.")
    return c


def _name_taken(s: "Session", name: str, exclude_id: int | None = None) -> bool:
    q = s.query(Category.id).filter(func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        q = q.filter(Category.id != exclude_id)
    return q.first() is not None


def _category_values(s: "Session", payload: dict, *, partial: bool, category_id: int | None = None) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if not partial or "name" in payload:
        name = normalize_text(payload.get("name"))
        if not name:
            raise ApiError("Category name is required.")
        if _name_taken(s, name, category_id):
            raise ApiError("Category name already exists.")
        values["name"] = name
    for key, field in (("description", "description"), ("image", "image")):
        if key in payload:
            values[field] = normalize_text(payload.get(key)) or None
    if "parentId" in payload:
        raw = payload.get("parentId")
        parent_id = None if raw in (None, "") else parse_int(raw)
        if raw not in (None, "") and (parent_id is None or s.get(Category, parent_id) is None):
            raise ApiError("Parent category does not exist.")
        if parent_id is not None and parent_id == category_id:
            raise ApiError("A category cannot be its own parent.")
        values["parent_id"] = parent_id
    if "sort" in payload:
        sort = parse_int(payload.get("sort"))
        if sort is None:
            raise ApiError("Sort must be an integer.")
        values["sort"] = sort
    if "isActive" in payload:
        if not isinstance(payload.get("isActive"), bool):
            raise ApiError("isActive must be true or false.")
        values["is_active"] = payload["isActive"]
    return values


def create_category(s: "Session", payload: dict, user: "User") -> Category:
    values = _category_values(s, payload, partial=False)
    now = datetime.utcnow()
    c = Category(created_at=now, updated_at=now, **values)
    s.add(c)
    s.flush()
    record_event(s, actor=user, action="category.create", entity_type="Category", entity_id=str(c.id), metadata={"name": c.name})
    return c


def update_category(s: "Session", c: Category, payload: dict, user: "User") -> Category:
    values = _category_values(s, payload, partial=True, category_id=c.id)
    changes = {k: {"old": getattr(c, k), "new": v} for k, v in values.items() if getattr(c, k) != v}
    for k, v in values.items():
        setattr(c, k, v)
    if changes:
        c.updated_at = datetime.utcnow()
        record_event(s, actor=user, action="category.update", entity_type="Category", entity_id=str(c.id), metadata={"changes": changes})
    return c


def delete_category(s: "Session", c: Category, user: "User", *, hard: bool = False) -> Category | None:
    """Soft delete deactivates; hard delete only for categories without products."""
    if hard:
        if s.query(Product.id).filter(Product.category_id == c.id).first() is not None:
            raise ApiError("Cannot delete a category that still has products.")
        record_event(s, actor=user, action="category.delete", entity_type="Category", entity_id=str(c.id), metadata={"name": c.name})
        s.delete(c)
        return None
    c.is_active = False
    c.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="category.deactivate", entity_type="Category", entity_id=str(c.id), metadata={"name": c.name})
    return c
