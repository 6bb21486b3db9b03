from __future__ import annotations

import re
from typing import Any, Dict, Optional

from flask import Blueprint, request
from pymongo import ASCENDING, ReturnDocument

from .auth import ADMIN_ROLES, require_roles
from .db import USERS, VENUES, col
from .errors import ApiError, ok, require_json
from .helpers import iso_now, require_text, safe_int, to_oid
from .serializers import public_venue

bp = Blueprint("venues", __name__)


def _load(venue_id: Any) -> Dict[str, Any]:
    v = col(VENUES).find_one({"_id": to_oid(venue_id, "venue_id")})
    if not v:
        raise ApiError("Venue not found.", 404, "not_found")
    return v


def _venue_admin(value: Any) -> Optional[Any]:
    if not value:
        return None
    uid = to_oid(value, "admin_user_id")
    u = col(USERS).find_one({"_id": uid})
    if not u or u.get("role") != "venue_admin":
        raise ApiError("admin_user_id must reference a venue admin.", 400, "validation_error",
                       {"field": "admin_user_id"})
    return uid


@bp.get("/venues")
def list_venues():
    query: Dict[str, Any] = {}
    city = (request.args.get("city") or "").strip()
    if city:
        query["city"] = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
    venues = list(col(VENUES).find(query).sort("name", ASCENDING).limit(200))
    return ok({"venues": [public_venue(v) for v in venues]})


@bp.get("/venues/<venue_id>")
def get_venue(venue_id: str):
    return ok({"venue": public_venue(_load(venue_id))})


@bp.post("/venues")
@require_roles(*ADMIN_ROLES)
def create_venue():
    data = require_json()
    doc = {
        "name": require_text(data.get("name"), "name", 2, 200),
        "address": (data.get("address") or "").strip(),
        "city": (data.get("city") or "").strip(),
        "capacity": safe_int(data.get("capacity"), "capacity", min_value=1),
        "admin_user_id": _venue_admin(data.get("admin_user_id")),
        "created_at": iso_now(),
        "updated_at": iso_now(),
    }
    res = col(VENUES).insert_one(doc)
    return ok({"venue": public_venue(col(VENUES).find_one({"_id": res.inserted_id}))}, 201)


@bp.put("/venues/<venue_id>")
@require_roles(*ADMIN_ROLES)
def update_venue(venue_id: str):
    data = require_json()
    v = _load(venue_id)

    updates: Dict[str, Any] = {}
    if "name" in data:
        updates["name"] = require_text(data.get("name"), "name", 2, 200)
    for k in ("address", "city"):
        if k in data:
            updates[k] = (data.get(k) or "").strip()
    if "capacity" in data:
        updates["capacity"] = safe_int(data.get("capacity"), "capacity", min_value=1)
    if "admin_user_id" in data:
        updates["admin_user_id"] = _venue_admin(data.get("admin_user_id"))
    updates["updated_at"] = iso_now()

    updated = col(VENUES).find_one_and_update(
        {"_id": v["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return ok({"venue": public_venue(updated)})
