from __future__ import annotations

import uuid
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.shop.audit import record_event
from app.shop.db import db_session
from app.shop.errors import ApiError, Forbidden, error_response, validation_failed
from app.shop.models import Role, User
from app.shop.rate_limit import strict_limit
from app.shop.rbac import is_admin, require_user
from app.shop.security import bearer_token, ensure_csrf_token, issue_auth_token, read_auth_token
from app.shop.utils import json_body, normalize_text, validate_email, validate_password, validate_phone

bp = Blueprint("auth", __name__)

CUSTOMER_ROLE = "customer"


def load_current_user() -> None:
    """
    Loads g.current_user from a bearer token or the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.auth_via_token = False

    token = bearer_token(request)
    if token:
        user_id = read_auth_token(token)
        g.auth_via_token = True
    else:
        user_id = session.get("user_id")
    if not user_id:
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active:
        if not token:
            session.pop("user_id", None)
        return
    g.current_user = user


def _login_payload(user: User) -> dict:
    return {
        "success": True,
        "user": user.to_dict(),
        "token": issue_auth_token(user.id),
        "csrfToken": ensure_csrf_token(),
    }


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _authenticate(s, email: str, password: str) -> User:
    if not email or not password:
        raise ApiError("Email and password are required.")
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        raise ApiError("Invalid email or password.")
    if not user.is_active:
        raise Forbidden("This account has been disabled.")
    return user


def _start_session(s, user: User, action: str):
    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    user.is_new_user = False
    user.updated_at = datetime.utcnow()
    record_event(s, actor=user, action=action, entity_type="User", entity_id=str(user.id))
    s.commit()
    return _no_store(jsonify(_login_payload(user)))


@bp.post("/register")
@strict_limit
def register():
    s = db_session()
    payload = json_body()
    email = normalize_text(payload.get("email")).lower()
    password = payload.get("password") or ""
    name = normalize_text(payload.get("name")) or None
    phone = normalize_text(payload.get("phone")) or None

    errors = [e for e in (validate_email(email), validate_password(password), validate_phone(phone or "")) if e]
    if errors:
        return validation_failed(errors)

    q = s.query(User).filter(User.email == email)
    if phone:
        q = s.query(User).filter((User.email == email) | (User.phone == phone))
    if q.first() is not None:
        return error_response("User already exists.", 400)

    role = s.query(Role).filter(Role.key == CUSTOMER_ROLE).one_or_none()
    if role is None:
        current_app.logger.error("Role %r missing; run scripts/init_db.py", CUSTOMER_ROLE)
        raise ApiError("Registration is unavailable.", 500)

    now = datetime.utcnow()
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        name=name,
        phone=phone,
        is_active=True,
        is_new_user=True,
        created_at=now,
        updated_at=now,
    )
    user.roles.append(role)
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    s.commit()

    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    resp = jsonify(_login_payload(user))
    resp.status_code = 201
    return _no_store(resp)


@bp.post("/login")
@strict_limit
def login():
    s = db_session()
    payload = json_body()
    email = normalize_text(payload.get("email")).lower()
    user = _authenticate(s, email, payload.get("password") or "")
    if is_admin(user):
        raise Forbidden("Administrators must use the admin login.")
    return _start_session(s, user, "auth.login")


@bp.post("/admin/login")
@strict_limit
def admin_login():
    s = db_session()
    payload = json_body()
    email = normalize_text(payload.get("email")).lower()
    user = _authenticate(s, email, payload.get("password") or "")
    if not is_admin(user):
        raise Forbidden("Administrator access required.")
    return _start_session(s, user, "auth.admin_login")


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return _no_store(jsonify({"success": True}))


@bp.get("/me")
def me():
    user = require_user()
    return _no_store(jsonify({"success": True, "user": user.to_dict(), "csrfToken": ensure_csrf_token()}))


@bp.get("/verify")
def verify():
    user = require_user()
    return _no_store(jsonify({"success": True, "valid": True, "user": user.to_dict(), "isAdmin": is_admin(user)}))
