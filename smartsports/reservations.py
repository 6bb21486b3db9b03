"""Seat holds.

A reservation moves seats from a ticket type's ``remaining`` counter into
``held`` for a limited time. It ends in exactly one of three ways:

* ``confirmed``: a completed payment turned the held seats into ``sold``;
* ``cancelled``: the buyer (or a failed payment) gave the seats back;
* ``expired``: nobody paid before ``expires_at`` and the seats went back.

Every transition out of ``active`` is a guarded update on the reservation's
status, so concurrent cancel/expire/confirm calls can never return or sell
the same seats twice.
"""
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from flask import Blueprint, current_app
from flask_login import current_user, login_required
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from .auth import current_owner, ensure_owner_or_admin
from .db import EVENTS, RESERVATIONS, TICKET_TYPES, TICKETS, col
from .errors import ApiError, ok, optional_json, require_json
from .events import TICKET_TYPES_ALLOWED, load_event
from .extensions import limiter
from .helpers import iso, iso_now, now_utc, parse_iso, require_choice, safe_int, to_oid
from .serializers import public_reservation

logger = logging.getLogger("smartsports.reservations")

bp = Blueprint("reservations", __name__)

MAX_PER_RESERVATION = 10
CANCEL_REASONS = ("user_cancelled", "timeout", "insufficient_funds", "expired", "payment_failed")


def is_expired(reservation: Dict[str, Any]) -> bool:
    return parse_iso(reservation["expires_at"]) <= now_utc()


def _owner_query(user_id: Optional[ObjectId], session_id: Optional[str]) -> Dict[str, Any]:
    return {"user_id": user_id} if user_id else {"user_id": None, "session_id": session_id}


def seats_taken_by(event_id: ObjectId, user_id: Optional[ObjectId], session_id: Optional[str]) -> int:
    """Seats a buyer already holds or owns for an event."""
    owner = _owner_query(user_id, session_id)
    held = sum(
        int(r.get("quantity", 0))
        for r in col(RESERVATIONS).find(
            {**owner, "event_id": event_id, "status": "active", "expires_at": {"$gt": iso_now()}}
        )
    )
    owned = col(TICKETS).count_documents({**owner, "event_id": event_id, "status": {"$in": ["valid", "used"]}})
    return held + owned


def _release(reservation: Dict[str, Any], status: str, reason: str) -> bool:
    """Return held seats to inventory. Only the caller that wins the status change does it."""
    released = col(RESERVATIONS).find_one_and_update(
        {"_id": reservation["_id"], "status": "active"},
        {"$set": {"status": status, "release_reason": reason, "released_at": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not released:
        return False
    qty = int(released["quantity"])
    col(TICKET_TYPES).update_one(
        {"_id": released["ticket_type_id"]},
        {"$inc": {"held": -qty, "remaining": qty}, "$set": {"updated_at": iso_now()}},
    )
    logger.info("Reservation %s %s (%s): %s x %s returned",
                released["token"], status, reason, qty, released["ticket_type"])
    return True


# -------------------------
# Reservation service
# -------------------------
def reserve(event_id: ObjectId, ticket_type: str, quantity: int,
            user_id: Optional[ObjectId] = None, session_id: Optional[str] = None) -> Dict[str, Any]:
    if quantity < 1 or quantity > MAX_PER_RESERVATION:
        raise ApiError(f"Quantity must be between 1 and {MAX_PER_RESERVATION}.", 400, "validation_error",
                       {"field": "quantity"})
    if not user_id and not session_id:
        raise ApiError("User ID or session ID required.", 400, "validation_error", {"field": "session_id"})

    event = col(EVENTS).find_one({"_id": event_id})
    if not event:
        raise ApiError("Event not found.", 404, "not_found")
    if event.get("status") != "active":
        raise ApiError("Event not available for booking.", 409, "event_unavailable")

    tt = col(TICKET_TYPES).find_one({"event_id": event_id, "type": ticket_type})
    if not tt:
        raise ApiError("Ticket type not offered for this event.", 404, "not_found")

    release_expired(ticket_type_id=tt["_id"])

    cap = int(event.get("max_tickets_per_user", 10))
    taken = seats_taken_by(event_id, user_id, session_id)
    if taken + quantity > cap:
        raise ApiError(f"At most {cap} tickets per person for this event.", 409, "limit_exceeded",
                       {"limit": cap, "already": taken})

    # Atomic oversell protection: only take seats if enough remain
    updated = col(TICKET_TYPES).find_one_and_update(
        {"_id": tt["_id"], "remaining": {"$gte": quantity}},
        {"$inc": {"remaining": -quantity, "held": quantity}, "$set": {"updated_at": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        current = col(TICKET_TYPES).find_one({"_id": tt["_id"]}) or {}
        available = max(0, int(current.get("remaining", 0)))
        raise ApiError(f"Only {available} tickets available.", 409, "sold_out", {"available": available})

    now = now_utc()
    ttl = int(current_app.config["RESERVATION_TTL_SECONDS"])
    doc = {
        "token": str(uuid.uuid4()),
        "event_id": event_id,
        "ticket_type_id": tt["_id"],
        "ticket_type": ticket_type,
        "quantity": quantity,
        "unit_price": int(tt.get("price", 0)),
        "user_id": user_id,
        "session_id": session_id,
        "status": "active",
        "payment_id": None,
        "created_at": iso(now),
        "expires_at": iso(now + timedelta(seconds=ttl)),
    }
    try:
        res = col(RESERVATIONS).insert_one(doc)
    except PyMongoError:
        # Best-effort rollback if recording the hold fails (rare):
        logger.exception("Failed to record reservation; returning seats")
        col(TICKET_TYPES).update_one(
            {"_id": tt["_id"]}, {"$inc": {"remaining": quantity, "held": -quantity}}
        )
        raise
    doc["_id"] = res.inserted_id
    logger.info("Seats reserved token=%s event=%s type=%s qty=%s user=%s",
                doc["token"], event_id, ticket_type, quantity, user_id or session_id)
    return doc


def get_reservation(token: str) -> Dict[str, Any]:
    """Load a reservation, expiring it first if its hold has lapsed."""
    r = col(RESERVATIONS).find_one({"token": token})
    if not r:
        raise ApiError("Reservation not found.", 404, "not_found")
    if r["status"] == "active" and is_expired(r):
        _release(r, "expired", "expired")
        r = col(RESERVATIONS).find_one({"_id": r["_id"]})
    return r


def cancel_reservation(token: str, reason: str = "user_cancelled") -> Dict[str, Any]:
    if reason not in CANCEL_REASONS:
        raise ApiError("Invalid cancellation reason.", 400, "validation_error", {"field": "reason"})
    r = get_reservation(token)
    if r["status"] == "confirmed":
        raise ApiError("Confirmed reservations cannot be cancelled.", 409, "reservation_confirmed")
    if r["status"] == "active":
        status = "expired" if reason == "expired" else "cancelled"
        _release(r, status, reason)
        r = col(RESERVATIONS).find_one({"_id": r["_id"]})
    return r


def confirm_reservation(token: str, payment_id: ObjectId) -> Dict[str, Any]:
    """Turn held seats into sold seats for a completed payment.

    A hold that lapsed while the payment was in flight is re-taken from
    remaining inventory when the seats are still there.
    """
    r = get_reservation(token)
    if r["status"] == "confirmed":
        if r.get("payment_id") == payment_id:
            return r
        raise ApiError("Reservation already confirmed by another payment.", 409, "reservation_confirmed")

    qty = int(r["quantity"])
    if r["status"] == "active":
        confirmed = col(RESERVATIONS).find_one_and_update(
            {"_id": r["_id"], "status": "active"},
            {"$set": {"status": "confirmed", "payment_id": payment_id, "confirmed_at": iso_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if confirmed:
            col(TICKET_TYPES).update_one(
                {"_id": r["ticket_type_id"]},
                {"$inc": {"held": -qty, "sold": qty}, "$set": {"updated_at": iso_now()}},
            )
            logger.info("Reservation confirmed token=%s payment=%s", token, payment_id)
            return confirmed
        r = col(RESERVATIONS).find_one({"_id": r["_id"]})
        if r["status"] == "confirmed" and r.get("payment_id") == payment_id:
            return r

    if r["status"] in ("expired", "cancelled"):
        taken = col(TICKET_TYPES).find_one_and_update(
            {"_id": r["ticket_type_id"], "remaining": {"$gte": qty}},
            {"$inc": {"remaining": -qty, "sold": qty}, "$set": {"updated_at": iso_now()}},
        )
        if taken:
            confirmed = col(RESERVATIONS).find_one_and_update(
                {"_id": r["_id"], "status": r["status"]},
                {"$set": {"status": "confirmed", "payment_id": payment_id, "confirmed_at": iso_now()}},
                return_document=ReturnDocument.AFTER,
            )
            if confirmed:
                logger.warning("Reservation %s confirmed after %s; seats re-taken", token, r["status"])
                return confirmed
            col(TICKET_TYPES).update_one(
                {"_id": r["ticket_type_id"]}, {"$inc": {"remaining": qty, "sold": -qty}}
            )

    raise ApiError("Reservation is no longer active.", 409, "reservation_inactive",
                   {"status": r["status"]})


def release_expired(event_id: Optional[ObjectId] = None, ticket_type_id: Optional[ObjectId] = None) -> int:
    query: Dict[str, Any] = {"status": "active", "expires_at": {"$lte": iso_now()}}
    if event_id:
        query["event_id"] = event_id
    if ticket_type_id:
        query["ticket_type_id"] = ticket_type_id
    released = 0
    for r in col(RESERVATIONS).find(query):
        if _release(r, "expired", "expired"):
            released += 1
    return released


def availability(event_id: ObjectId) -> List[Dict[str, Any]]:
    release_expired(event_id=event_id)
    out = []
    for t in col(TICKET_TYPES).find({"event_id": event_id}).sort("price", ASCENDING):
        out.append({
            "ticket_type": t["type"],
            "price": int(t.get("price", 0)),
            "total": int(t.get("quantity", 0)),
            "sold": int(t.get("sold", 0)),
            "reserved": int(t.get("held", 0)),
            "available": max(0, int(t.get("remaining", 0))),
        })
    return out


def active_reservations(user_id: ObjectId) -> List[Dict[str, Any]]:
    out = []
    for r in col(RESERVATIONS).find({"user_id": user_id, "status": "active"}).sort("created_at", DESCENDING):
        if is_expired(r):
            _release(r, "expired", "expired")
            continue
        out.append(r)
    return out


# -------------------------
# Reservation APIs
# -------------------------
@bp.post("/reservations")
@limiter.limit("20 per 5 minutes")
def create_reservation():
    data = require_json()
    event_id = to_oid(data.get("event_id"), "event_id")
    ticket_type = require_choice(data.get("ticket_type"), "ticket_type", TICKET_TYPES_ALLOWED)
    quantity = safe_int(data.get("quantity"), "quantity", min_value=1, max_value=MAX_PER_RESERVATION)
    user_id, session_id = current_owner(data.get("session_id"))

    r = reserve(event_id, ticket_type, quantity, user_id, session_id)
    return ok({"message": "Seats reserved successfully.", "reservation": public_reservation(r)}, 201)


@bp.get("/reservations/mine")
@login_required
def my_reservations():
    docs = active_reservations(to_oid(current_user.id))
    return ok({"reservations": [public_reservation(r) for r in docs]})


@bp.get("/reservations/<token>")
def get_reservation_view(token: str):
    return ok({"reservation": public_reservation(get_reservation(token))})


@bp.post("/reservations/<token>/cancel")
def cancel_reservation_view(token: str):
    data = optional_json()
    reason = (data.get("reason") or "user_cancelled").strip().lower()
    ensure_owner_or_admin(get_reservation(token), data.get("session_id"))
    r = cancel_reservation(token, reason)
    return ok({"message": "Reservation cancelled.", "reservation": public_reservation(r)})


@bp.get("/events/<event_id>/availability")
def event_availability(event_id: str):
    e = load_event(event_id)
    return ok({
        "event_id": str(e["_id"]),
        "availability": availability(e["_id"]),
        "last_updated": iso_now(),
    })
