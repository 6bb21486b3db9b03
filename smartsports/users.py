from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, current_app, request
from flask_login import current_user, login_required, login_user, logout_user
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.security import check_password_hash, generate_password_hash

from .auth import ADMIN_ROLES, ROLES, User, require_roles
from .db import USERS, col
from .errors import ApiError, ok, require_json
from .extensions import limiter
from .helpers import iso_now, optional_text, require_choice, to_oid, validate_email, validate_password, validate_phone
from .serializers import public_user
from .wallet import get_or_create_wallet

logger = logging.getLogger("smartsports.users")

bp = Blueprint("users", __name__)


# -------------------------
# Default Admin Seed
# -------------------------
def ensure_default_admin() -> None:
    email = current_app.config.get("DEFAULT_ADMIN_EMAIL")
    password = current_app.config.get("DEFAULT_ADMIN_PASSWORD")
    if not email or not password:
        return
    if col(USERS).find_one({"email": email}):
        return
    try:
        col(USERS).insert_one(
            {
                "email": email,
                "password_hash": generate_password_hash(password),
                "role": "super_admin",
                "first_name": "System",
                "last_name": "Administrator",
                "phone": "",
                "status": "active",
                "created_at": iso_now(),
            }
        )
        logger.info("Default admin created: %s", email)
    except DuplicateKeyError:
        # another worker seeded it first
        pass


# -------------------------
# Auth APIs
# -------------------------
@bp.post("/auth/register")
@limiter.limit("10 per hour")
def register():
    data = require_json()
    email = validate_email(data.get("email", ""))
    password = validate_password(data.get("password", ""))
    phone = data.get("phone") or ""
    if phone:
        phone = validate_phone(phone, "phone")

    doc = {
        "email": email,
        "password_hash": generate_password_hash(password),
        "role": "fan",
        "first_name": optional_text(data.get("first_name"), "first_name"),
        "last_name": optional_text(data.get("last_name"), "last_name"),
        "phone": phone,
        "status": "active",
        "created_at": iso_now(),
    }
    try:
        res = col(USERS).insert_one(doc)
    except DuplicateKeyError:
        raise ApiError("Email already registered.", 409, "conflict", {"field": "email"})

    u = col(USERS).find_one({"_id": res.inserted_id})
    get_or_create_wallet(u["_id"])
    login_user(User(u))
    logger.info("User registered: %s", email)
    return ok({"user": public_user(u)}, 201)


@bp.post("/auth/login")
@limiter.limit("10 per minute")
def login():
    data = require_json()
    email = validate_email(data.get("email", ""))
    password = data.get("password")
    if not isinstance(password, str) or not password:
        raise ApiError("password is required.", 400, "validation_error", {"field": "password"})

    u = col(USERS).find_one({"email": email})
    if not u or not check_password_hash(u.get("password_hash", ""), password):
        raise ApiError("Invalid credentials.", 401, "unauthorized")
    if u.get("status", "active") != "active":
        raise ApiError("Account is not active.", 403, "account_inactive")

    login_user(User(u))
    return ok({"user": public_user(u)})


@bp.post("/auth/logout")
@login_required
def logout():
    logout_user()
    return ok({})


@bp.get("/auth/me")
def me():
    if not current_user.is_authenticated:
        return ok({"user": None})
    # Load from db to avoid stale role/email in session
    u = col(USERS).find_one({"_id": to_oid(current_user.id)})
    return ok({"user": public_user(u) if u else None})


# -------------------------
# User management
# -------------------------
@bp.put("/users/me")
@login_required
def update_me():
    data = require_json()
    updates: Dict[str, Any] = {}
    for k in ("first_name", "last_name"):
        if k in data:
            updates[k] = optional_text(data.get(k), k)
    if "phone" in data:
        updates["phone"] = validate_phone(data.get("phone") or "", "phone")
    updates["updated_at"] = iso_now()

    u = col(USERS).find_one_and_update(
        {"_id": to_oid(current_user.id)},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    return ok({"user": public_user(u)})


@bp.get("/users")
@require_roles(*ADMIN_ROLES)
def list_users():
    query: Dict[str, Any] = {}
    role = (request.args.get("role") or "").strip().lower()
    if role:
        query["role"] = require_choice(role, "role", ROLES)
    docs = list(col(USERS).find(query).sort("created_at", DESCENDING).limit(200))
    return ok({"users": [public_user(u) for u in docs]})


def _set_user_field(user_id: str, field: str, value: str):
    oid = to_oid(user_id, "user_id")
    if oid == to_oid(current_user.id):
        raise ApiError("You cannot change your own account here.", 409, "conflict")
    u = col(USERS).find_one_and_update(
        {"_id": oid},
        {"$set": {field: value, "updated_at": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not u:
        raise ApiError("User not found.", 404, "not_found")
    logger.info("User %s %s set to %s by %s", user_id, field, value, current_user.id)
    return ok({"user": public_user(u)})


@bp.put("/users/<user_id>/role")
@require_roles("super_admin")
def set_role(user_id: str):
    data = require_json()
    role = require_choice(data.get("role"), "role", ROLES)
    return _set_user_field(user_id, "role", role)


@bp.put("/users/<user_id>/status")
@require_roles("super_admin")
def set_status(user_id: str):
    data = require_json()
    status = require_choice(data.get("status"), "status", ("active", "suspended"))
    return _set_user_field(user_id, "status", status)
