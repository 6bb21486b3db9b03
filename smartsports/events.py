from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from flask import Blueprint, request
from flask_login import current_user
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .auth import ADMIN_ROLES, require_roles
from .db import EVENTS, TEAMS, TICKET_TYPES, VENUES, col
from .errors import ApiError, ok, require_json
from .helpers import (
    date_bound,
    iso_now,
    page_info,
    pagination,
    parse_iso,
    require_choice,
    require_iso,
    require_text,
    safe_int,
    to_oid,
)
from .serializers import public_event, public_ticket_type
from .teams import SPORTS

logger = logging.getLogger("smartsports.events")

bp = Blueprint("events", __name__)

EVENT_TYPES = ("match", "tournament", "training", "friendly", "concert", "other")
EVENT_STATUSES = ("active", "cancelled", "postponed", "completed")
TICKET_TYPES_ALLOWED = ("regular", "vip", "student", "child")
EVENT_MANAGERS = ("venue_admin",) + ADMIN_ROLES

# Share of venue capacity given to each tier when prices are supplied
# instead of an explicit ticket type list.
CAPACITY_SPLIT = (("regular", 0.7), ("vip", 0.2), ("student", 0.1))


def load_event(event_id: Any) -> Dict[str, Any]:
    e = col(EVENTS).find_one({"_id": to_oid(event_id, "event_id")})
    if not e:
        raise ApiError("Event not found.", 404, "not_found")
    return e


def can_manage_venue(venue: Dict[str, Any]) -> bool:
    if not current_user.is_authenticated:
        return False
    if current_user.role in ADMIN_ROLES:
        return True
    return current_user.role == "venue_admin" and str(venue.get("admin_user_id")) == current_user.id


def can_manage_event(event: Dict[str, Any]) -> bool:
    venue = col(VENUES).find_one({"_id": event.get("venue_id")}) or {}
    return can_manage_venue(venue)


def ticket_stats(event_ids: Iterable[ObjectId]) -> Dict[ObjectId, Dict[str, int]]:
    stats: Dict[ObjectId, Dict[str, int]] = {
        eid: {"total": 0, "sold": 0, "held": 0, "available": 0} for eid in event_ids
    }
    if not stats:
        return stats
    for t in col(TICKET_TYPES).find({"event_id": {"$in": list(stats)}}):
        s = stats[t["event_id"]]
        s["total"] += int(t.get("quantity", 0))
        s["sold"] += int(t.get("sold", 0))
        s["held"] += int(t.get("held", 0))
        s["available"] += int(t.get("remaining", 0))
    return stats


def new_ticket_type(event_id: ObjectId, ttype: str, price: int, quantity: int) -> Dict[str, Any]:
    return {
        "event_id": event_id,
        "type": ttype,
        "price": price,
        "quantity": quantity,
        "remaining": quantity,
        "held": 0,
        "sold": 0,
        "seat_counter": 0,
        "created_at": iso_now(),
        "updated_at": iso_now(),
    }


def _ticket_plan(data: Dict[str, Any], capacity: int) -> List[Dict[str, int]]:
    """Turn either an explicit list or tiered prices into ticket type rows."""
    plan: List[Dict[str, Any]] = []
    if data.get("ticket_types"):
        rows = data["ticket_types"]
        if not isinstance(rows, list):
            raise ApiError("ticket_types must be a list.", 400, "validation_error", {"field": "ticket_types"})
        seen = set()
        for row in rows:
            row = row if isinstance(row, dict) else {}
            ttype = require_choice(row.get("type"), "type", TICKET_TYPES_ALLOWED)
            if ttype in seen:
                raise ApiError(f"Duplicate ticket type: {ttype}.", 400, "validation_error", {"field": "ticket_types"})
            seen.add(ttype)
            plan.append({
                "type": ttype,
                "price": safe_int(row.get("price"), "price", min_value=0),
                "quantity": safe_int(row.get("quantity"), "quantity", min_value=1),
            })
        if sum(p["quantity"] for p in plan) > capacity:
            raise ApiError("Ticket quantities exceed venue capacity.", 400, "validation_error",
                           {"field": "ticket_types", "capacity": capacity})
        return plan

    if data.get("ticket_price_regular") is None:
        raise ApiError("ticket_types or ticket_price_regular is required.", 400, "validation_error",
                       {"field": "ticket_price_regular"})
    for ttype, share in CAPACITY_SPLIT:
        raw = data.get(f"ticket_price_{ttype}")
        if raw is None or raw == "":
            continue
        price = safe_int(raw, f"ticket_price_{ttype}", min_value=0)
        quantity = int(math.floor(capacity * share))
        if quantity > 0:
            plan.append({"type": ttype, "price": price, "quantity": quantity})
    return plan


def _team_id(value: Any, field: str) -> Optional[ObjectId]:
    if not value:
        return None
    tid = to_oid(value, field)
    if not col(TEAMS).find_one({"_id": tid}, {"_id": 1}):
        raise ApiError(f"{field.replace('_id', '').replace('_', ' ').capitalize()} not found.", 404, "not_found")
    return tid


# -------------------------
# Event APIs
# -------------------------
@bp.get("/events")
def list_events():
    q = (request.args.get("q") or "").strip()
    sport = (request.args.get("sport") or "").strip()
    status = (request.args.get("status") or "active").strip().lower()
    venue_id = (request.args.get("venue_id") or "").strip()
    team_id = (request.args.get("team_id") or "").strip()
    date_from = (request.args.get("date_from") or "").strip()
    date_to = (request.args.get("date_to") or "").strip()
    page, limit = pagination()

    ands: List[Dict[str, Any]] = []
    if q:
        ands.append(
            {
                "$or": [
                    {"title": {"$regex": re.escape(q), "$options": "i"}},
                    {"description": {"$regex": re.escape(q), "$options": "i"}},
                ]
            }
        )
    if sport:
        ands.append({"sport": require_choice(sport, "sport", SPORTS)})
    if status != "all":
        ands.append({"status": require_choice(status, "status", EVENT_STATUSES)})
    if venue_id:
        ands.append({"venue_id": to_oid(venue_id, "venue_id")})
    if team_id:
        tid = to_oid(team_id, "team_id")
        ands.append({"$or": [{"home_team_id": tid}, {"away_team_id": tid}]})
    if date_from:
        ands.append({"start_datetime": {"$gte": date_bound(date_from, "date_from")}})
    if date_to:
        ands.append({"start_datetime": {"$lte": date_bound(date_to, "date_to", end_of_day=True)}})

    query: Dict[str, Any] = {"$and": ands} if ands else {}
    total = col(EVENTS).count_documents(query)
    events = list(
        col(EVENTS).find(query).sort("start_datetime", ASCENDING).skip((page - 1) * limit).limit(limit)
    )
    stats = ticket_stats(e["_id"] for e in events)
    return ok({
        "events": [public_event(e, stats[e["_id"]]) for e in events],
        "pagination": page_info(page, limit, total),
    })


@bp.get("/events/<event_id>")
def get_event(event_id: str):
    e = load_event(event_id)
    types = list(col(TICKET_TYPES).find({"event_id": e["_id"]}).sort("price", ASCENDING))
    stats = ticket_stats([e["_id"]])[e["_id"]]
    return ok({"event": public_event(e, stats), "ticket_types": [public_ticket_type(t) for t in types]})


@bp.post("/events")
@require_roles(*EVENT_MANAGERS)
def create_event():
    data = require_json()
    title = require_text(data.get("title"), "title", 3, 200)
    description = (data.get("description") or "").strip()
    if len(description) > 1000:
        raise ApiError("description must be at most 1000 characters.", 400, "validation_error", {"field": "description"})
    sport = require_choice(data.get("sport"), "sport", SPORTS)
    event_type = require_choice(data.get("event_type"), "event_type", EVENT_TYPES)
    start = require_iso(data.get("start_datetime"), "start_datetime")
    end = require_iso(data.get("end_datetime"), "end_datetime")
    if parse_iso(start) >= parse_iso(end):
        raise ApiError("End datetime must be after start datetime.", 400, "validation_error", {"field": "end_datetime"})
    max_per_user = safe_int(data.get("max_tickets_per_user", 10), "max_tickets_per_user", min_value=1, max_value=20)

    venue = col(VENUES).find_one({"_id": to_oid(data.get("venue_id"), "venue_id")})
    if not venue:
        raise ApiError("Venue not found.", 404, "not_found")
    if not can_manage_venue(venue):
        raise ApiError("Not authorized to create events at this venue.", 403, "forbidden")

    home = _team_id(data.get("home_team_id"), "home_team_id")
    away = _team_id(data.get("away_team_id"), "away_team_id")
    if home and away and home == away:
        raise ApiError("Home and away teams must differ.", 400, "validation_error", {"field": "away_team_id"})

    plan = _ticket_plan(data, int(venue.get("capacity", 0)))

    doc = {
        "title": title,
        "description": description,
        "sport": sport,
        "event_type": event_type,
        "start_datetime": start,
        "end_datetime": end,
        "venue_id": venue["_id"],
        "home_team_id": home,
        "away_team_id": away,
        "max_tickets_per_user": max_per_user,
        "image_url": (data.get("image_url") or "").strip(),
        "status": "active",
        "created_by": to_oid(current_user.id),
        "created_at": iso_now(),
        "updated_at": iso_now(),
    }
    res = col(EVENTS).insert_one(doc)
    types = [new_ticket_type(res.inserted_id, p["type"], p["price"], p["quantity"]) for p in plan]
    if types:
        try:
            col(TICKET_TYPES).insert_many(types)
        except Exception:
            # Best-effort rollback so no event exists without its inventory
            logger.exception("Failed to create ticket types; removing event %s", res.inserted_id)
            col(TICKET_TYPES).delete_many({"event_id": res.inserted_id})
            col(EVENTS).delete_one({"_id": res.inserted_id})
            raise

    created = col(EVENTS).find_one({"_id": res.inserted_id})
    logger.info("Event created id=%s title=%s by=%s seats=%s",
                res.inserted_id, title, current_user.id, sum(p["quantity"] for p in plan))
    stored = list(col(TICKET_TYPES).find({"event_id": res.inserted_id}).sort("price", ASCENDING))
    return ok({
        "event": public_event(created, ticket_stats([res.inserted_id])[res.inserted_id]),
        "ticket_types": [public_ticket_type(t) for t in stored],
    }, 201)


@bp.put("/events/<event_id>")
@require_roles(*EVENT_MANAGERS)
def update_event(event_id: str):
    data = require_json()
    e = load_event(event_id)
    if not can_manage_event(e):
        raise ApiError("Not authorized to update this event.", 403, "forbidden")

    updates: Dict[str, Any] = {}
    if "title" in data:
        updates["title"] = require_text(data.get("title"), "title", 3, 200)
    if "description" in data:
        updates["description"] = (data.get("description") or "").strip()[:1000]
    if "image_url" in data:
        updates["image_url"] = (data.get("image_url") or "").strip()
    if "status" in data:
        updates["status"] = require_choice(data.get("status"), "status", EVENT_STATUSES)
    if "max_tickets_per_user" in data:
        updates["max_tickets_per_user"] = safe_int(data.get("max_tickets_per_user"), "max_tickets_per_user",
                                                   min_value=1, max_value=20)
    for k in ("start_datetime", "end_datetime"):
        if k in data:
            updates[k] = require_iso(data.get(k), k)

    start = updates.get("start_datetime", e.get("start_datetime"))
    end = updates.get("end_datetime", e.get("end_datetime"))
    if parse_iso(start) >= parse_iso(end):
        raise ApiError("End datetime must be after start datetime.", 400, "validation_error", {"field": "end_datetime"})

    updates["updated_at"] = iso_now()
    updated = col(EVENTS).find_one_and_update(
        {"_id": e["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    logger.info("Event updated id=%s by=%s changes=%s", e["_id"], current_user.id, sorted(updates))
    return ok({"event": public_event(updated)})


@bp.delete("/events/<event_id>")
@require_roles(*EVENT_MANAGERS)
def delete_event(event_id: str):
    e = load_event(event_id)
    if not can_manage_event(e):
        raise ApiError("Forbidden.", 403, "forbidden")
    busy = col(TICKET_TYPES).count_documents(
        {"event_id": e["_id"], "$or": [{"sold": {"$gt": 0}}, {"held": {"$gt": 0}}]}
    )
    if busy:
        raise ApiError("Cannot delete an event with sales or active holds; cancel it instead.", 409, "conflict")
    col(TICKET_TYPES).delete_many({"event_id": e["_id"]})
    col(EVENTS).delete_one({"_id": e["_id"]})
    return ok({})


# -------------------------
# Ticket Type APIs
# -------------------------
def _load_ticket_type(ticket_type_id: str) -> Dict[str, Any]:
    t = col(TICKET_TYPES).find_one({"_id": to_oid(ticket_type_id, "ticket_type_id")})
    if not t:
        raise ApiError("Ticket type not found.", 404, "not_found")
    e = col(EVENTS).find_one({"_id": t["event_id"]})
    if not e or not can_manage_event(e):
        raise ApiError("Forbidden.", 403, "forbidden")
    return t


@bp.post("/events/<event_id>/ticket-types")
@require_roles(*EVENT_MANAGERS)
def create_ticket_type(event_id: str):
    data = require_json()
    e = load_event(event_id)
    if not can_manage_event(e):
        raise ApiError("Forbidden.", 403, "forbidden")
    ttype = require_choice(data.get("type"), "type", TICKET_TYPES_ALLOWED)
    price = safe_int(data.get("price"), "price", min_value=0)
    quantity = safe_int(data.get("quantity"), "quantity", min_value=1)
    try:
        res = col(TICKET_TYPES).insert_one(new_ticket_type(e["_id"], ttype, price, quantity))
    except DuplicateKeyError:
        raise ApiError("Ticket type already exists for this event.", 409, "conflict", {"field": "type"})
    return ok({"ticket_type": public_ticket_type(col(TICKET_TYPES).find_one({"_id": res.inserted_id}))}, 201)


@bp.put("/ticket-types/<ticket_type_id>")
@require_roles(*EVENT_MANAGERS)
def update_ticket_type(ticket_type_id: str):
    data = require_json()
    t = _load_ticket_type(ticket_type_id)

    sets: Dict[str, Any] = {"updated_at": iso_now()}
    inc: Dict[str, int] = {}
    guard: Dict[str, Any] = {"_id": t["_id"]}
    if "price" in data:
        sets["price"] = safe_int(data.get("price"), "price", min_value=0)
    if "quantity" in data:
        new_qty = safe_int(data.get("quantity"), "quantity", min_value=1)
        delta = new_qty - int(t["quantity"])
        if delta:
            # Seats already sold or held stay untouched.
            guard.update({"quantity": t["quantity"], "remaining": {"$gte": max(0, -delta)}})
            sets["quantity"] = new_qty
            inc["remaining"] = delta

    update: Dict[str, Any] = {"$set": sets}
    if inc:
        update["$inc"] = inc
    updated = col(TICKET_TYPES).find_one_and_update(guard, update, return_document=ReturnDocument.AFTER)
    if not updated:
        raise ApiError("Quantity cannot be less than already sold or held.", 409, "conflict", {"field": "quantity"})
    return ok({"ticket_type": public_ticket_type(updated)})


@bp.delete("/ticket-types/<ticket_type_id>")
@require_roles(*EVENT_MANAGERS)
def delete_ticket_type(ticket_type_id: str):
    t = _load_ticket_type(ticket_type_id)
    res = col(TICKET_TYPES).delete_one({"_id": t["_id"], "sold": 0, "held": 0})
    if not res.deleted_count:
        raise ApiError("Cannot delete a ticket type that has sales or holds.", 409, "conflict")
    return ok({})
