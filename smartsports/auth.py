from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from flask import jsonify
from flask_login import UserMixin, current_user

from .db import USERS, col
from .errors import ApiError
from .extensions import login_manager
from .helpers import to_oid

ROLES = ("fan", "scanner", "venue_admin", "admin", "super_admin")
ADMIN_ROLES = ("admin", "super_admin")


# -------------------------
# Auth (Flask-Login)
# -------------------------
class User(UserMixin):
    def __init__(self, doc: Dict[str, Any]):
        self.doc = doc
        self.id = str(doc["_id"])
        self.email = doc.get("email", "")
        self.role = doc.get("role", "fan")
        self.status = doc.get("status", "active")

    @property
    def oid(self) -> ObjectId:
        return self.doc["_id"]

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    if not ObjectId.is_valid(user_id):
        return None
    doc = col(USERS).find_one({"_id": ObjectId(user_id)})
    return User(doc) if doc else None


@login_manager.unauthorized_handler
def unauthorized():
    # JSON only
    return jsonify({"ok": False, "error": "Authentication required.", "code": "unauthorized"}), 401


def require_roles(*roles: str):
    def decorator(fn):
        def wrapped(*args, **kwargs):
            if not current_user.is_authenticated:
                return unauthorized()
            if current_user.role not in roles:
                return jsonify({"ok": False, "error": "Forbidden.", "code": "forbidden"}), 403
            return fn(*args, **kwargs)

        # keep function identity (Flask uses __name__)
        wrapped.__name__ = fn.__name__
        wrapped.__doc__ = fn.__doc__
        return wrapped

    return decorator


def is_admin() -> bool:
    return current_user.is_authenticated and current_user.role in ADMIN_ROLES


def current_owner(session_id: Any = None) -> Tuple[Optional[ObjectId], Optional[str]]:
    """Who is buying: the signed-in user, or an anonymous checkout session."""
    if current_user.is_authenticated:
        return to_oid(current_user.id, "user_id"), None
    sid = session_id.strip() if isinstance(session_id, str) else ""
    if not sid:
        raise ApiError("Sign in or provide a session_id.", 400, "validation_error", {"field": "session_id"})
    return None, sid


def owns(doc: Dict[str, Any], user_id: Optional[ObjectId], session_id: Optional[str]) -> bool:
    if doc.get("user_id"):
        return user_id is not None and doc["user_id"] == user_id
    return bool(session_id) and doc.get("session_id") == session_id


def ensure_owner_or_admin(doc: Dict[str, Any], session_id: Optional[str] = None) -> None:
    if is_admin():
        return
    user_id = to_oid(current_user.id, "user_id") if current_user.is_authenticated else None
    if not owns(doc, user_id, session_id):
        if not current_user.is_authenticated and doc.get("user_id"):
            raise ApiError("Authentication required.", 401, "unauthorized")
        raise ApiError("Forbidden.", 403, "forbidden")
