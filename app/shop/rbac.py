from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.shop.errors import Unauthorized
from app.shop.models import User

ADMIN_PERMISSION = "admin.view"


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def is_admin(user: User | None) -> bool:
    return user_has_permission(user, ADMIN_PERMISSION)


def current_user() -> User | None:
    return getattr(g, "current_user", None)


def require_user() -> User:
    u = current_user()
    if not u or not u.is_active:
        raise Unauthorized("Please log in first.")
    return u


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        require_user()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user = require_user()
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403, description="Insufficient permissions.")
            return fn(*args, **kwargs)

        return wrapped

    return decorator
