from __future__ import annotations

import re
import secrets
import string
import time
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping

from flask import request

CENTS = Decimal("0.01")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^1[3-9]\d{9}$")
_BASE36 = string.digits + string.ascii_uppercase


def normalize_text(s: Any) -> str:
    if s is None:
        return ""
    return str(s).strip()


def parse_int(s: Any) -> int | None:
    if isinstance(s, bool):
        return None
    if isinstance(s, int):
        return s
    s = normalize_text(s)
    if not s:
        return None
    try:
        return int(s)
    except ValueError:
        return None


def parse_page(args: Mapping[str, Any]) -> int:
    p = parse_int(args.get("page"))
    return p if p and p > 0 else 1


def parse_limit(args: Mapping[str, Any], default: int = 10, maximum: int = 100) -> int:
    n = parse_int(args.get("limit"))
    if not n or n < 1:
        return default
    return min(n, maximum)


def parse_id_list(raw: Any) -> list[int]:
    """Accepts "1,2,3" or a JSON list; drops anything that is not an integer."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else raw
    if not isinstance(items, (list, tuple)):
        return []
    out: list[int] = []
    for item in items:
        v = parse_int(item)
        if v is not None and v not in out:
            out.append(v)
    return out


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        value = repr(value)
    try:
        d = Decimal(normalize_text(value))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def as_float(value: Decimal | None) -> float | None:
    if value is None:
        return None
    return float(money(value))


def iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def parse_datetime(s: Any) -> datetime | None:
    """Parse an ISO date or datetime string. Naive UTC is assumed."""
    s = normalize_text(s)
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1]
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = (dt - dt.utcoffset()).replace(tzinfo=None)  # type: ignore[operator]
    return dt


def parse_date(s: Any) -> date | None:
    s = normalize_text(s)
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def parse_date_range(start: Any, end: Any) -> tuple[datetime | None, datetime | None]:
    """
    Returns (inclusive start, exclusive end). A date-only end covers that whole day.
    """
    lo = parse_datetime(start)
    hi = parse_datetime(end)
    if hi is not None and len(normalize_text(end)) <= 10:
        hi = hi + timedelta(days=1)
    return lo, hi


def validate_email(email: str) -> str | None:
    if not email:
        return "Email is required."
    if not EMAIL_RE.match(email):
        return "Email format is invalid."
    return None


def validate_phone(phone: str) -> str | None:
    if phone and not PHONE_RE.match(phone):
        return "Phone number is invalid."
    return None


def validate_password(password: str) -> str | None:
    if not password:
        return "Password is required."
    if len(password) < 6:
        return "Password must be at least 6 characters."
    return None


def random_base36(n: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


def reference_number(prefix: str, random_len: int) -> str:
    """e.g. ORD1712345678901K3ZQ: prefix + epoch millis + random base36 suffix."""
    return f"{prefix}{int(time.time() * 1000)}{random_base36(random_len)}"


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
