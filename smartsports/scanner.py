from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import Blueprint, request
from flask_login import current_user
from pymongo import DESCENDING, ReturnDocument

from .auth import ADMIN_ROLES, require_roles
from .db import EVENTS, SCANNER_LOGS, TICKETS, VENUES, col
from .errors import ok, require_json
from .helpers import iso, iso_now, now_utc, page_info, pagination, parse_iso, require_choice, to_oid
from .qr import QrError, parse_payload
from .serializers import public_scan_log

logger = logging.getLogger("smartsports.scanner")

bp = Blueprint("scanner", __name__)

SCANNER_ROLES = ("scanner",) + ADMIN_ROLES
EARLY_ENTRY = timedelta(hours=2)

TICKET_STATUS_CODES = {
    "cancelled": ("TICKET_CANCELLED", "Ticket has been cancelled."),
    "refunded": ("TICKET_REFUNDED", "Ticket has been refunded."),
    "used": ("TICKET_ALREADY_USED", "Ticket has already been used."),
}
EVENT_STATUS_CODES = {
    "cancelled": ("EVENT_CANCELLED", "Event has been cancelled."),
    "postponed": ("EVENT_POSTPONED", "Event has been postponed."),
}


def _reject(code: str, reason: str, **extra: Any) -> Dict[str, Any]:
    return {"valid": False, "code": code, "reason": reason, **extra}


def validate_qr(qr_string: Any, venue_id: Optional[ObjectId] = None) -> Dict[str, Any]:
    """Check a scanned QR code without admitting anyone."""
    try:
        data = parse_payload(qr_string)
    except QrError as e:
        return _reject(e.code, e.message)

    try:
        ticket = col(TICKETS).find_one({"_id": ObjectId(str(data["id"]))})
    except InvalidId:
        ticket = None
    if not ticket:
        return _reject("TICKET_NOT_FOUND", "Ticket not found.")
    return validate_ticket(ticket, data, venue_id)


def validate_ticket(ticket: Dict[str, Any], data: Dict[str, Any],
                    venue_id: Optional[ObjectId] = None) -> Dict[str, Any]:
    base = {"ticket": ticket}
    if ticket.get("ticket_number") != data.get("num") or str(ticket.get("event_id")) != str(data.get("evt")):
        return _reject("DATA_MISMATCH", "QR data does not match the ticket.", **base)

    status = ticket.get("status")
    if status in TICKET_STATUS_CODES:
        code, reason = TICKET_STATUS_CODES[status]
        extra = {"used_at": ticket.get("used_at")} if status == "used" else {}
        return _reject(code, reason, **base, **extra)

    event = col(EVENTS).find_one({"_id": ticket["event_id"]})
    if not event:
        return _reject("TICKET_NOT_FOUND", "Event for this ticket no longer exists.", **base)
    base["event"] = event
    if event.get("status") in EVENT_STATUS_CODES:
        code, reason = EVENT_STATUS_CODES[event["status"]]
        return _reject(code, reason, **base)

    now = now_utc()
    allowed_from = parse_iso(event["start_datetime"]) - EARLY_ENTRY
    if now < allowed_from:
        return _reject("TOO_EARLY", "Too early for entry.", allowed_from=iso(allowed_from), **base)
    if now > parse_iso(event["end_datetime"]):
        return _reject("EVENT_ENDED", "Event has ended.", **base)

    if venue_id and event.get("venue_id") != venue_id:
        return _reject("WRONG_VENUE", "Ticket is for a different venue.", **base)

    return {"valid": True, "code": "VALID", "reason": "Ticket is valid.", **base}


def admit(ticket: Dict[str, Any], location: str) -> Optional[Dict[str, Any]]:
    """Mark a ticket used; None if someone else admitted it first."""
    return col(TICKETS).find_one_and_update(
        {"_id": ticket["_id"], "status": "valid"},
        {"$set": {"status": "used", "used_at": iso_now(), "used_by": ObjectId(current_user.id),
                  "scan_location": location}},
        return_document=ReturnDocument.AFTER,
    )


def _summary(result: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in result.items() if k not in ("ticket", "event")}
    t = result.get("ticket")
    if t:
        out["ticket"] = {
            "id": str(t["_id"]),
            "number": t.get("ticket_number"),
            "type": t.get("ticket_type"),
            "holder": t.get("holder_name"),
            "seat": t.get("seat_number"),
            "section": t.get("section"),
            "row": t.get("row"),
            "status": t.get("status"),
        }
    e = result.get("event")
    if e:
        venue = col(VENUES).find_one({"_id": e.get("venue_id")}, {"name": 1}) or {}
        out["event"] = {
            "id": str(e["_id"]),
            "title": e.get("title"),
            "start": e.get("start_datetime"),
            "venue": venue.get("name"),
        }
    return out


def _log_scan(result: Dict[str, Any], location: str, device_id: Optional[str]) -> None:
    t = result.get("ticket") or {}
    col(SCANNER_LOGS).insert_one(
        {
            "ticket_id": t.get("_id"),
            "ticket_number": t.get("ticket_number"),
            "event_id": t.get("event_id"),
            "operator_id": ObjectId(current_user.id),
            "scan_result": "valid" if result["valid"] else "invalid",
            "code": result["code"],
            "message": result["reason"],
            "scan_location": location,
            "device_id": device_id,
            "ip_address": request.remote_addr,
            "scanned_at": iso_now(),
        }
    )


def _scan_request() -> Dict[str, Any]:
    data = require_json()
    venue_id = to_oid(data["venue_id"], "venue_id") if data.get("venue_id") else None
    return {
        "qr": data.get("qr_code") or data.get("qr_data"),
        "venue_id": venue_id,
        "location": (data.get("scan_location") or "").strip()[:200],
        "device_id": (data.get("device_id") or "").strip()[:100] or None,
    }


# -------------------------
# Scanner APIs
# -------------------------
@bp.post("/scanner/validate")
@require_roles(*SCANNER_ROLES)
def validate():
    req = _scan_request()
    return ok(_summary(validate_qr(req["qr"], req["venue_id"])))


@bp.post("/scanner/scan")
@require_roles(*SCANNER_ROLES)
def scan():
    req = _scan_request()
    result = validate_qr(req["qr"], req["venue_id"])
    if result["valid"]:
        used = admit(result["ticket"], req["location"])
        if used:
            result["ticket"] = used
            result["reason"] = "Entry granted."
        else:
            current = col(TICKETS).find_one({"_id": result["ticket"]["_id"]}) or result["ticket"]
            result = _reject("TICKET_ALREADY_USED", "Ticket has already been used.",
                             ticket=current, event=result.get("event"), used_at=current.get("used_at"))

    _log_scan(result, req["location"], req["device_id"])
    t = result.get("ticket") or {}
    logger.info("Scan %s ticket=%s operator=%s", result["code"], t.get("ticket_number"), current_user.id)
    return ok(_summary(result))


@bp.get("/scanner/logs")
@require_roles(*ADMIN_ROLES)
def logs():
    page, limit = pagination()
    query: Dict[str, Any] = {}
    if request.args.get("event_id"):
        query["event_id"] = to_oid(request.args.get("event_id"), "event_id")
    result = (request.args.get("result") or "").strip()
    if result:
        query["scan_result"] = require_choice(result, "result", ("valid", "invalid"))

    total = col(SCANNER_LOGS).count_documents(query)
    docs = list(
        col(SCANNER_LOGS).find(query).sort("scanned_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    )
    return ok({"logs": [public_scan_log(s) for s in docs], "pagination": page_info(page, limit, total)})
