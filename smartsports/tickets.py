from __future__ import annotations

import logging
import math
from io import BytesIO
from typing import Any, Dict, List

from bson import ObjectId
from flask import Blueprint, request, send_file
from flask_login import current_user, login_required
from pymongo import DESCENDING, ReturnDocument

from .auth import ensure_owner_or_admin
from .db import TICKET_TYPES, TICKETS, col
from .errors import ApiError, ok
from .helpers import iso_now, page_info, pagination, require_choice, to_oid
from .qr import build_payload, render_data_url, render_png
from .serializers import public_ticket

logger = logging.getLogger("smartsports.tickets")

bp = Blueprint("tickets", __name__)

TICKET_STATUSES = ("valid", "used", "cancelled", "refunded")


# -------------------------
# Issuance
# -------------------------
def issue_tickets(payment: Dict[str, Any], reservation: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Create one signed ticket per reserved seat."""
    qty = int(reservation["quantity"])
    tt = col(TICKET_TYPES).find_one_and_update(
        {"_id": reservation["ticket_type_id"]},
        {"$inc": {"seat_counter": qty}},
        return_document=ReturnDocument.AFTER,
    )
    if not tt:
        raise ApiError("Ticket type not found.", 404, "not_found")
    first_seat = int(tt["seat_counter"]) - qty + 1
    ttype = reservation["ticket_type"]
    now = iso_now()

    docs = []
    for i in range(qty):
        seat = first_seat + i
        doc = {
            "_id": ObjectId(),
            "ticket_number": f"{payment['payment_reference']}-{i + 1:03d}",
            "event_id": reservation["event_id"],
            "ticket_type_id": reservation["ticket_type_id"],
            "ticket_type": ttype,
            "price": int(reservation.get("unit_price", 0)),
            "seat_number": f"{ttype.upper()}-{seat:04d}",
            "section": ttype.upper(),
            "row": math.ceil(seat / 10),
            "holder_name": payment.get("customer_name", ""),
            "holder_phone": payment.get("customer_phone", ""),
            "holder_email": payment.get("customer_email", ""),
            "user_id": payment.get("user_id"),
            "session_id": payment.get("session_id"),
            "payment_id": payment["_id"],
            "reservation_token": reservation["token"],
            "status": "valid",
            "purchased_at": now,
            "used_at": None,
        }
        doc["qr_code"] = build_payload(doc)
        docs.append(doc)

    col(TICKETS).insert_many(docs)
    logger.info("Issued %s tickets for payment %s", len(docs), payment["payment_reference"])
    return docs


def tickets_for_payment(payment_id: ObjectId) -> List[Dict[str, Any]]:
    return list(col(TICKETS).find({"payment_id": payment_id}).sort("ticket_number", 1))


def _load(ticket_id: str) -> Dict[str, Any]:
    t = col(TICKETS).find_one({"_id": to_oid(ticket_id, "ticket_id")})
    if not t:
        raise ApiError("Ticket not found.", 404, "not_found")
    ensure_owner_or_admin(t, request.args.get("session_id"))
    return t


# -------------------------
# Ticket APIs
# -------------------------
@bp.get("/tickets/mine")
@login_required
def my_tickets():
    page, limit = pagination()
    query: Dict[str, Any] = {"user_id": to_oid(current_user.id, "user_id")}
    status = (request.args.get("status") or "").strip()
    if status:
        query["status"] = require_choice(status, "status", TICKET_STATUSES)
    if request.args.get("event_id"):
        query["event_id"] = to_oid(request.args.get("event_id"), "event_id")

    total = col(TICKETS).count_documents(query)
    docs = list(
        col(TICKETS).find(query).sort("purchased_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    )
    return ok({"tickets": [public_ticket(t, include_qr=False) for t in docs],
               "pagination": page_info(page, limit, total)})


@bp.get("/tickets/<ticket_id>")
def get_ticket(ticket_id: str):
    t = _load(ticket_id)
    out = public_ticket(t)
    if t.get("status") == "valid":
        out["qr_image"] = render_data_url(t["qr_code"])
    return ok({"ticket": out})


@bp.get("/tickets/<ticket_id>/qr.png")
def ticket_qr(ticket_id: str):
    t = _load(ticket_id)
    if t.get("status") != "valid":
        raise ApiError(f"Ticket is {t.get('status')}.", 409, "ticket_unavailable")
    return send_file(
        BytesIO(render_png(t["qr_code"])),
        mimetype="image/png",
        as_attachment=True,
        download_name=f"ticket-{t['ticket_number']}.png",
    )
