from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, send_file

from app.shop.cache import cached_json_response, clear_product_cache, product_cache
from app.shop.db import db_session
from app.shop.errors import NotFound
from app.shop.modules.catalog.service import (
    bulk_delete_products,
    bulk_update_products,
    category_to_dict,
    create_category,
    create_product,
    delete_category,
    delete_product,
    delete_product_image,
    get_category,
    get_product,
    list_categories,
    list_products,
    normalize_listing_params,
    product_detail,
    product_to_dict,
    store_product_image,
    update_category,
    update_product,
)
from app.shop.rbac import current_user, require_permission, require_user, user_has_permission
from app.shop.storage import StorageError, storage_from_config
from app.shop.utils import json_body, parse_id_list

bp = Blueprint("catalog", __name__)


# ---------- Products ----------
@bp.get("/products")
def products_list():
    include_inactive = user_has_permission(current_user(), "products.manage")
    params = normalize_listing_params(request.args, include_inactive=include_inactive)
    s = db_session()
    return cached_json_response(product_cache(), request, params, lambda: list_products(s, params))


@bp.post("/products")
@require_permission("products.manage")
def products_create():
    s = db_session()
    p = create_product(s, json_body(), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": product_to_dict(p), "message": "Product created."}), 201


@bp.put("/products")
@require_permission("products.manage")
def products_bulk_update():
    s = db_session()
    payload = json_body()
    count = bulk_update_products(s, parse_id_list(payload.get("productIds")), payload.get("updates"), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": {"count": count}, "message": f"Updated {count} products."})


@bp.delete("/products")
@require_permission("products.manage")
def products_bulk_delete():
    s = db_session()
    count = bulk_delete_products(s, parse_id_list(request.args.get("ids")), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": {"count": count}, "message": f"Deleted {count} products."})


@bp.get("/products/<int:product_id>")
def products_detail(product_id: int):
    s = db_session()
    p = get_product(s, product_id)
    if not p.is_active and not user_has_permission(current_user(), "products.manage"):
        raise NotFound("Product not found.")
    return jsonify({"success": True, "data": product_detail(s, p)})


@bp.put("/products/<int:product_id>")
@require_permission("products.manage")
def products_update(product_id: int):
    s = db_session()
    p = update_product(s, get_product(s, product_id), json_body(), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": product_to_dict(p), "message": "Product updated."})


@bp.delete("/products/<int:product_id>")
@require_permission("products.manage")
def products_delete(product_id: int):
    s = db_session()
    delete_product(s, get_product(s, product_id), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "message": "Product deleted."})


# ---------- Product images ----------
@bp.post("/products/images")
@require_permission("products.manage")
def product_images_upload():
    storage = storage_from_config(current_app.config)
    info = store_product_image(storage, request.files.get("file"), require_user())
    return jsonify({"success": True, "data": info}), 201


@bp.get("/products/images/<name>")
def product_images_get(name: str):
    storage = storage_from_config(current_app.config)
    key = f"products/{name}"
    try:
        if not storage.exists(key):
            raise NotFound("Image not found.")
        mimetype = storage.content_type(key)
        fobj = storage.open(key)
    except StorageError:
        raise NotFound("Image not found.")
    return send_file(fobj, mimetype=mimetype, max_age=86400)


@bp.delete("/products/images/<name>")
@require_permission("products.manage")
def product_images_delete(name: str):
    storage = storage_from_config(current_app.config)
    delete_product_image(storage, name, require_user())
    return jsonify({"success": True, "message": "Image deleted."})


# ---------- Categories ----------
@bp.get("/categories")
def categories_list():
    s = db_session()
    include_inactive = request.args.get("all") == "true" and user_has_permission(current_user(), "categories.manage")
    categories = list_categories(s, include_inactive=include_inactive)
    return jsonify({"success": True, "data": [category_to_dict(c) for c in categories]})


@bp.post("/categories")
@require_permission("categories.manage")
def categories_create():
    s = db_session()
    c = create_category(s, json_body(), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": category_to_dict(c)}), 201


@bp.get("/categories/<int:category_id>")
def categories_detail(category_id: int):
    c = get_category(db_session(), category_id)
    if not c.is_active and not user_has_permission(current_user(), "categories.manage"):
        raise NotFound("Category not found.")
    return jsonify({"success": True, "data": category_to_dict(c)})


@bp.put("/categories/<int:category_id>")
@require_permission("categories.manage")
def categories_update(category_id: int):
    s = db_session()
    c = update_category(s, get_category(s, category_id), json_body(), require_user())
    s.commit()
    clear_product_cache()
    return jsonify({"success": True, "data": category_to_dict(c)})


@bp.delete("/categories/<int:category_id>")
@require_permission("categories.manage")
def categories_delete(category_id: int):
    s = db_session()
    hard = (request.args.get("hard") or "").lower() == "true"
    c = delete_category(s, get_category(s, category_id), require_user(), hard=hard)
    s.commit()
    clear_product_cache()
    if c is None:
        return jsonify({"success": True})
    return jsonify({"success": True, "data": category_to_dict(c)})
