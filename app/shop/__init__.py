import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request

from app.shop.auth import bp as auth_bp, load_current_user
from app.shop.cache import ResponseCache
from app.shop.config import load_config
from app.shop.db import init_db, teardown_db_session
from app.shop.errors import error_response, register_error_handlers
from app.shop.modules.addresses.routes import bp as addresses_bp
from app.shop.modules.analytics.routes import bp as analytics_bp
from app.shop.modules.cart.routes import bp as cart_bp
from app.shop.modules.catalog.routes import bp as catalog_bp
from app.shop.modules.coupons.routes import bp as coupons_bp
from app.shop.modules.home_sections.routes import bp as home_sections_bp
from app.shop.modules.orders.routes import bp as orders_bp
from app.shop.modules.payments.routes import bp as payments_bp
from app.shop.modules.users.routes import bp as users_bp
from app.shop.rate_limit import init_rate_limiting
from app.shop.routes import bp as routes_bp

logger = logging.getLogger(__name__)

_CSRF_EXEMPT_PREFIXES = ("/api/auth/", "/api/payments/webhook")


def _check_production_config(app: Flask) -> None:
    env = (app.config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return
    if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
        raise RuntimeError("DATABASE_URL is required in production.")
    if str(app.config["DATABASE_URL"]).startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    missing = [k for k in ("STRIPE_WEBHOOK_SECRET", "WECHAT_API_KEY", "ALIPAY_PUBLIC_KEY") if not app.config.get(k)]
    if missing:
        raise RuntimeError(f"Payment webhook secrets missing in production: {', '.join(missing)}")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(seconds=app.config["AUTH_TOKEN_MAX_AGE"])
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False  # type: ignore[attr-defined]

    # Production guardrails (fail fast with clear logs)
    _check_production_config(app)

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.extensions["product_cache"] = ResponseCache(ttl=app.config["PRODUCT_CACHE_TTL"])

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    init_rate_limiting(app)

    @app.before_request
    def _csrf_guard():
        from app.shop.security import validate_csrf

        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        # Only cookie sessions are exposed to cross-site forgery.
        if getattr(g, "auth_via_token", False) or getattr(g, "current_user", None) is None:
            return None
        if request.path.startswith(_CSRF_EXEMPT_PREFIXES):
            return None
        if not validate_csrf(request):
            app.logger.warning("CSRF rejected: path=%s request_id=%s", request.path, getattr(g, "request_id", None))
            return error_response("CSRF token missing or invalid.", 400)
        return None

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(catalog_bp, url_prefix="/api")
    app.register_blueprint(cart_bp, url_prefix="/api/cart")
    app.register_blueprint(addresses_bp, url_prefix="/api/addresses")
    app.register_blueprint(coupons_bp, url_prefix="/api")
    app.register_blueprint(orders_bp, url_prefix="/api/orders")
    app.register_blueprint(payments_bp, url_prefix="/api/payments")
    app.register_blueprint(users_bp, url_prefix="/api/users")
    app.register_blueprint(home_sections_bp, url_prefix="/api/home-sections")
    app.register_blueprint(analytics_bp, url_prefix="/api/analytics")

    register_error_handlers(app)
    app.teardown_appcontext(teardown_db_session)

    logger.info("create_app() complete; app ready to serve")
    return app
