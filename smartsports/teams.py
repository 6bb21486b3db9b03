from __future__ import annotations

import re
from typing import Any, Dict

from flask import Blueprint, request
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .auth import ADMIN_ROLES, require_roles
from .db import EVENTS, TEAMS, col
from .errors import ApiError, ok, require_json
from .helpers import iso_now, require_choice, require_text, to_oid
from .serializers import public_team

SPORTS = ("football", "basketball", "volleyball", "tennis", "rugby", "athletics", "other")

bp = Blueprint("teams", __name__)


def _load(team_id: str) -> Dict[str, Any]:
    t = col(TEAMS).find_one({"_id": to_oid(team_id, "team_id")})
    if not t:
        raise ApiError("Team not found.", 404, "not_found")
    return t


@bp.get("/teams")
def list_teams():
    query: Dict[str, Any] = {}
    sport = (request.args.get("sport") or "").strip()
    q = (request.args.get("q") or "").strip()
    if sport:
        query["sport"] = require_choice(sport, "sport", SPORTS)
    if q:
        query["name"] = {"$regex": re.escape(q), "$options": "i"}
    teams = list(col(TEAMS).find(query).sort("name", ASCENDING).limit(200))
    return ok({"teams": [public_team(t) for t in teams]})


@bp.get("/teams/<team_id>")
def get_team(team_id: str):
    return ok({"team": public_team(_load(team_id))})


@bp.post("/teams")
@require_roles(*ADMIN_ROLES)
def create_team():
    data = require_json()
    name = require_text(data.get("name"), "name", 2, 100)
    doc = {
        "name": name,
        "name_key": name.lower(),
        "short_name": (data.get("short_name") or "").strip()[:10],
        "sport": require_choice(data.get("sport"), "sport", SPORTS),
        "city": (data.get("city") or "").strip(),
        "logo_url": (data.get("logo_url") or "").strip(),
        "description": (data.get("description") or "").strip()[:1000],
        "created_at": iso_now(),
        "updated_at": iso_now(),
    }
    try:
        res = col(TEAMS).insert_one(doc)
    except DuplicateKeyError:
        raise ApiError("A team with this name already exists for this sport.", 409, "conflict", {"field": "name"})
    return ok({"team": public_team(col(TEAMS).find_one({"_id": res.inserted_id}))}, 201)


@bp.put("/teams/<team_id>")
@require_roles(*ADMIN_ROLES)
def update_team(team_id: str):
    data = require_json()
    t = _load(team_id)

    updates: Dict[str, Any] = {}
    if "name" in data:
        updates["name"] = require_text(data.get("name"), "name", 2, 100)
        updates["name_key"] = updates["name"].lower()
    if "sport" in data:
        updates["sport"] = require_choice(data.get("sport"), "sport", SPORTS)
    for k in ("short_name", "city", "logo_url", "description"):
        if k in data:
            updates[k] = (data.get(k) or "").strip()
    updates["updated_at"] = iso_now()

    try:
        updated = col(TEAMS).find_one_and_update(
            {"_id": t["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise ApiError("A team with this name already exists for this sport.", 409, "conflict", {"field": "name"})
    return ok({"team": public_team(updated)})


@bp.delete("/teams/<team_id>")
@require_roles(*ADMIN_ROLES)
def delete_team(team_id: str):
    t = _load(team_id)
    in_use = col(EVENTS).count_documents({"$or": [{"home_team_id": t["_id"]}, {"away_team_id": t["_id"]}]})
    if in_use:
        raise ApiError("Team is referenced by events.", 409, "conflict", {"events": in_use})
    col(TEAMS).delete_one({"_id": t["_id"]})
    return ok({})
