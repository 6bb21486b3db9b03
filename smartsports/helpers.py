from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from flask import request

from .errors import ApiError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Rwandan MSISDN, with or without the country code.
PHONE_RE = re.compile(r"^(\+250|250)?[0-9]{9}$")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string; stored timestamps compare lexically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def iso_now() -> str:
    return iso(now_utc())


def parse_iso(s: str) -> datetime:
    """Parse an ISO 8601 date or datetime; naive values are taken as UTC."""
    dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_iso_datetime(s: str) -> bool:
    if not isinstance(s, str) or not s.strip():
        return False
    try:
        parse_iso(s)
        return True
    except ValueError:
        return False


def require_iso(value: Any, field: str) -> str:
    """Validate an ISO date/datetime and return it as a UTC ISO string."""
    if not is_iso_datetime(value):
        raise ApiError(f"{field} must be ISO format (e.g., 2026-01-01T15:00:00Z).", 400, "validation_error",
                       {"field": field})
    return iso(parse_iso(value))


def date_bound(value: Any, field: str, end_of_day: bool = False) -> str:
    """A filter bound; a bare date as an upper bound covers that whole day."""
    bound = parse_iso(require_iso(value, field))
    if end_of_day and "T" not in value.strip():
        bound += timedelta(days=1) - timedelta(seconds=1)
    return iso(bound)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_oid(value: Any, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        raise ApiError(f"Invalid {field}.", 400, "validation_error", {"field": field})


def oid_str(value: Any) -> Optional[str]:
    return str(value) if value else None


# -------------------------
# Field validation
# -------------------------
def safe_int(value: Any, field: str, min_value: Optional[int] = None,
             max_value: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ApiError(f"{field} must be an integer.", 400, "validation_error", {"field": field})
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be an integer.", 400, "validation_error", {"field": field})
    if min_value is not None and n < min_value:
        raise ApiError(f"{field} must be >= {min_value}.", 400, "validation_error", {"field": field})
    if max_value is not None and n > max_value:
        raise ApiError(f"{field} must be <= {max_value}.", 400, "validation_error", {"field": field})
    return n


def safe_float(value: Any, field: str, min_value: Optional[float] = None) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be a number.", 400, "validation_error", {"field": field})
    if min_value is not None and n < min_value:
        raise ApiError(f"{field} must be >= {min_value}.", 400, "validation_error", {"field": field})
    return n


def require_choice(value: Any, field: str, choices) -> str:
    v = (value or "").strip().lower() if isinstance(value, str) else ""
    if v not in choices:
        raise ApiError(
            f"{field} must be one of: {', '.join(choices)}.",
            400,
            "validation_error",
            {"field": field},
        )
    return v


def require_text(value: Any, field: str, min_len: int = 1, max_len: int = 200) -> str:
    v = (value or "").strip() if isinstance(value, str) else ""
    if len(v) < min_len or len(v) > max_len:
        raise ApiError(
            f"{field} must be {min_len}-{max_len} characters.",
            400,
            "validation_error",
            {"field": field},
        )
    return v


def optional_text(value: Any, field: str, max_len: int = 100) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ApiError(f"{field} must be a string.", 400, "validation_error", {"field": field})
    return value.strip()[:max_len]


def validate_email(email: Any) -> str:
    email = email.strip().lower() if isinstance(email, str) else ""
    if not EMAIL_RE.match(email):
        raise ApiError("A valid email is required.", 400, "validation_error", {"field": "email"})
    return email


def validate_password(pw: Any) -> str:
    pw = pw if isinstance(pw, str) else ""
    if len(pw) < 6:
        raise ApiError("Password must be at least 6 characters.", 400, "validation_error", {"field": "password"})
    return pw


def validate_phone(phone: Any, field: str = "customer_phone") -> str:
    phone = re.sub(r"\s", "", phone) if isinstance(phone, str) else ""
    if not PHONE_RE.match(phone):
        raise ApiError("A valid Rwandan phone number is required.", 400, "validation_error", {"field": field})
    return phone


def pagination(max_limit: int = 100, default_limit: int = 20) -> Tuple[int, int]:
    page = safe_int(request.args.get("page", 1), "page", min_value=1)
    limit = safe_int(request.args.get("limit", default_limit), "limit", min_value=1, max_value=max_limit)
    return page, limit


def page_info(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "total_pages": math.ceil(total / limit) if limit else 0}
