import logging

from flask import Blueprint, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.shop.cache import product_cache

bp = Blueprint("routes", __name__)
logger = logging.getLogger(__name__)


@bp.get("/health")
def health():
    """Readiness: database round trip plus the size of the product listing cache."""
    engine = current_app.extensions["sqlalchemy_engine"]
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        return {"ok": False, "database": "unavailable"}, 503
    return {
        "ok": True,
        "database": "ok",
        "env": current_app.config.get("ENV"),
        "productCacheEntries": len(product_cache()),
    }


@bp.get("/healthz")
def healthz():
    # Liveness only; must not touch the database.
    return "ok", 200
