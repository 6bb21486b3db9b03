from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint
from flask_login import current_user

from .auth import ADMIN_ROLES, require_roles
from .db import EVENTS, PAYMENTS, RESERVATIONS, TICKETS, USERS, VENUES, col, is_connected
from .errors import ok
from .events import EVENT_MANAGERS
from .helpers import iso_now, to_oid
from .serializers import public_event

bp = Blueprint("admin", __name__)


@bp.get("/health")
def health():
    return ok({"status": "up", "database": "connected" if is_connected() else "down", "time": iso_now()})


# -------------------------
# Reporting
# -------------------------
@bp.get("/admin/stats")
@require_roles(*ADMIN_ROLES)
def stats():
    revenue_rows = list(
        col(PAYMENTS).aggregate(
            [
                {"$match": {"status": "completed"}},
                {"$group": {"_id": None, "revenue": {"$sum": "$total_amount"}, "count": {"$sum": 1}}},
            ]
        )
    )
    revenue = revenue_rows[0] if revenue_rows else {}
    payments_by_status = {
        r["_id"]: int(r["count"])
        for r in col(PAYMENTS).aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    }
    return ok(
        {
            "stats": {
                "total_users": col(USERS).count_documents({}),
                "total_events": col(EVENTS).count_documents({}),
                "active_events": col(EVENTS).count_documents({"status": "active"}),
                "tickets_sold": col(TICKETS).count_documents({"status": {"$in": ["valid", "used"]}}),
                "tickets_used": col(TICKETS).count_documents({"status": "used"}),
                "active_reservations": col(RESERVATIONS).count_documents(
                    {"status": "active", "expires_at": {"$gt": iso_now()}}
                ),
                "completed_payments": int(revenue.get("count", 0)),
                "total_revenue": int(revenue.get("revenue", 0)),
                "payments_by_status": payments_by_status,
            }
        }
    )


@bp.get("/admin/sales")
@require_roles(*EVENT_MANAGERS)
def sales():
    # venue admins: only events at their venues
    if current_user.role == "venue_admin":
        venue_ids = [v["_id"] for v in col(VENUES).find({"admin_user_id": to_oid(current_user.id)}, {"_id": 1})]
        my_event_ids = [e["_id"] for e in col(EVENTS).find({"venue_id": {"$in": venue_ids}}, {"_id": 1})]
        if not my_event_ids:
            return ok(
                {
                    "summary": {"total_revenue": 0, "total_tickets": 0},
                    "per_event": [],
                    "most_popular": [],
                }
            )
        payments_match: Dict[str, Any] = {"status": "completed", "event_id": {"$in": my_event_ids}}
    else:
        payments_match = {"status": "completed"}

    pipeline = [
        {"$match": payments_match},
        {"$group": {"_id": "$event_id", "tickets": {"$sum": "$quantity"}, "revenue": {"$sum": "$total_amount"}}},
        {"$sort": {"revenue": -1}},
    ]

    rows = list(col(PAYMENTS).aggregate(pipeline))
    events_map = {e["_id"]: e for e in col(EVENTS).find({"_id": {"$in": [r["_id"] for r in rows]}})}
    per_event = []
    total_rev = 0
    total_tickets = 0

    for r in rows:
        ev = events_map.get(r["_id"])
        if not ev:
            continue
        tickets_sold = int(r.get("tickets", 0))
        revenue = int(r.get("revenue", 0))
        per_event.append({"event": public_event(ev), "tickets_sold": tickets_sold, "revenue": revenue})
        total_rev += revenue
        total_tickets += tickets_sold

    most_popular = sorted(per_event, key=lambda x: x["tickets_sold"], reverse=True)[:5]
    per_event_sorted = sorted(per_event, key=lambda x: x["revenue"], reverse=True)

    return ok(
        {
            "summary": {"total_revenue": total_rev, "total_tickets": total_tickets},
            "per_event": per_event_sorted,
            "most_popular": most_popular,
        }
    )
