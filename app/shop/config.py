import os
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    auth_token_max_age: int

    storage_backend: str
    storage_local_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    api_rate_limit: int
    api_rate_window: int
    strict_rate_limit: int
    strict_rate_window: int
    product_cache_ttl: int

    shipping_fee: Decimal
    free_shipping_threshold: Decimal
    low_stock_threshold: int

    stripe_webhook_secret: str
    stripe_publishable_key: str
    wechat_app_id: str
    wechat_api_key: str
    alipay_app_id: str
    alipay_public_key: str
    alipay_private_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def _getdecimal(name: str, default: str) -> Decimal:
    raw = _getenv(name, default)
    try:
        return Decimal(raw)
    except Exception:
        raise RuntimeError(f"{name} must be a decimal amount (got {raw!r}).")


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///shop.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        auth_token_max_age=_getint("AUTH_TOKEN_MAX_AGE", 7 * 24 * 3600),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_local_root=_getenv("STORAGE_LOCAL_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        api_rate_limit=_getint("API_RATE_LIMIT", 100),
        api_rate_window=_getint("API_RATE_WINDOW", 60),
        strict_rate_limit=_getint("STRICT_RATE_LIMIT", 20),
        strict_rate_window=_getint("STRICT_RATE_WINDOW", 60),
        product_cache_ttl=_getint("PRODUCT_CACHE_TTL", 300),
        shipping_fee=_getdecimal("SHIPPING_FEE", "0"),
        free_shipping_threshold=_getdecimal("FREE_SHIPPING_THRESHOLD", "0"),
        low_stock_threshold=_getint("LOW_STOCK_THRESHOLD", 10),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_publishable_key=_getenv("STRIPE_PUBLISHABLE_KEY", ""),
        wechat_app_id=_getenv("WECHAT_APP_ID", ""),
        wechat_api_key=_getenv("WECHAT_API_KEY", ""),
        alipay_app_id=_getenv("ALIPAY_APP_ID", ""),
        alipay_public_key=_getenv("ALIPAY_PUBLIC_KEY", ""),
        alipay_private_key=_getenv("ALIPAY_PRIVATE_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "AUTH_TOKEN_MAX_AGE": s.auth_token_max_age,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_LOCAL_ROOT": s.storage_local_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "API_RATE_LIMIT": s.api_rate_limit,
        "API_RATE_WINDOW": s.api_rate_window,
        "STRICT_RATE_LIMIT": s.strict_rate_limit,
        "STRICT_RATE_WINDOW": s.strict_rate_window,
        "PRODUCT_CACHE_TTL": s.product_cache_ttl,
        "SHIPPING_FEE": s.shipping_fee,
        "FREE_SHIPPING_THRESHOLD": s.free_shipping_threshold,
        "LOW_STOCK_THRESHOLD": s.low_stock_threshold,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        "STRIPE_PUBLISHABLE_KEY": s.stripe_publishable_key,
        "WECHAT_APP_ID": s.wechat_app_id,
        "WECHAT_API_KEY": s.wechat_api_key,
        "ALIPAY_APP_ID": s.alipay_app_id,
        "ALIPAY_PUBLIC_KEY": s.alipay_public_key,
        "ALIPAY_PRIVATE_KEY": s.alipay_private_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # product image uploads (5MB each, enforced in the upload handler)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
