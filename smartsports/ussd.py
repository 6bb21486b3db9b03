"""USSD channel: buy tickets, list tickets and check the wallet from any phone.

The gateway posts ``sessionId``, ``phoneNumber`` and ``text`` on every step.
``text`` is the whole menu path so far, choices joined by ``*`` (``1*2*1*2``).
Replies are plain text starting with ``CON`` (show a menu, keep the session)
or ``END`` (close it).
"""
from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from flask import Blueprint, Response, current_app, request
from pymongo import ASCENDING, DESCENDING

from .db import EVENTS, TICKETS, USERS, col
from .errors import ApiError, require_json
from .extensions import limiter
from .helpers import iso_now, parse_iso, require_text, safe_int, validate_phone
from .payments import find_replay, initiate_payment, price_breakdown
from .reservations import MAX_PER_RESERVATION, availability, cancel_reservation, reserve
from .tickets import tickets_for_payment
from .wallet import get_or_create_wallet

logger = logging.getLogger("smartsports.ussd")

bp = Blueprint("ussd", __name__)

MAX_MENU_ITEMS = 9
MAX_TICKETS_LISTED = 5
PAY_OPTIONS = (("mtn_momo", "MTN MoMo"), ("airtel_money", "Airtel Money"), ("wallet", "Wallet"))
REGISTER_FIRST = "Please register first by selecting option 4."


# -------------------------
# Helpers
# -------------------------
def msisdn(phone: str) -> str:
    """Canonical +250XXXXXXXXX form of a validated Rwandan number."""
    return "+250" + validate_phone(phone, "phoneNumber")[-9:]


def find_user_by_phone(phone: str) -> Optional[Dict[str, Any]]:
    local = phone[-9:]
    return col(USERS).find_one({"phone": {"$in": [phone, "250" + local, local]}})


def _active_user(phone: str) -> Dict[str, Any]:
    u = find_user_by_phone(phone)
    if not u:
        raise ApiError(REGISTER_FIRST, 404, "not_found")
    if u.get("status", "active") != "active":
        raise ApiError("Account is not active.", 403, "account_inactive")
    return u


def _pick(items: List[Any], choice: str, what: str) -> Any:
    try:
        i = int(choice)
    except ValueError:
        i = 0
    if i < 1 or i > len(items):
        raise ApiError(f"Invalid {what} selection.", 400, "validation_error")
    return items[i - 1]


def _when(value: str) -> str:
    local = parse_iso(value).astimezone(ZoneInfo(current_app.config["TIMEZONE"]))
    return local.strftime("%d/%m %H:%M")


def open_events() -> List[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
    """Active, not yet finished events that still have seats, soonest first."""
    out = []
    cursor = col(EVENTS).find({"status": "active", "end_datetime": {"$gt": iso_now()}}).sort(
        "start_datetime", ASCENDING
    )
    for e in cursor:
        types = [a for a in availability(e["_id"]) if a["available"] > 0]
        if types:
            out.append((e, types))
        if len(out) == MAX_MENU_ITEMS:
            break
    return out


# -------------------------
# Menus
# -------------------------
def main_menu() -> str:
    return (
        f"CON Welcome to {current_app.config['USSD_SERVICE_NAME']}\n"
        "1. Buy Ticket\n2. My Tickets\n3. Check Balance\n4. Register"
    )


def buy_ticket(phone: str, session_id: str, steps: List[str]) -> str:
    user = _active_user(phone)
    events = open_events()
    if not events:
        return "END No events have tickets on sale right now."

    if len(steps) == 1:
        lines = [f"{i}. {e['title']} {_when(e['start_datetime'])}" for i, (e, _) in enumerate(events, 1)]
        return "CON Select an event:\n" + "\n".join(lines)

    event, types = _pick(events, steps[1], "event")
    if len(steps) == 2:
        lines = [
            f"{i}. {t['ticket_type'].upper()} - {t['price']} RWF ({t['available']} left)"
            for i, t in enumerate(types, 1)
        ]
        return f"CON {event['title']}\n{_when(event['start_datetime'])}\nSelect ticket type:\n" + "\n".join(lines)

    tier = _pick(types, steps[2], "ticket type")
    most = min(tier["available"], MAX_PER_RESERVATION)
    if len(steps) == 3:
        return f"CON Enter number of {tier['ticket_type'].upper()} tickets (1-{most}):"

    quantity = safe_int(steps[3], "quantity", min_value=1, max_value=most)
    if len(steps) == 4:
        total = price_breakdown(tier["price"], quantity)["total_amount"]
        options = "\n".join(f"{i}. {label}" for i, (_, label) in enumerate(PAY_OPTIONS, 1))
        return (
            f"CON {quantity} x {tier['ticket_type'].upper()} - {event['title']}\n"
            f"Total: {total} RWF incl. fees and VAT\nPay with:\n{options}\n0. Cancel"
        )

    if len(steps) > 5:
        return "END Invalid option."
    if steps[4] == "0":
        return "END Purchase cancelled."
    method, _ = _pick(list(PAY_OPTIONS), steps[4], "payment")
    return _checkout(user, phone, session_id, event, tier["ticket_type"], quantity, method)


def _checkout(user: Dict[str, Any], phone: str, session_id: str, event: Dict[str, Any],
              ticket_type: str, quantity: int, method: str) -> str:
    owner = (user["_id"], None)
    # the gateway may resend the last step of a session
    key = f"ussd-{session_id}"
    p = find_replay(key, user["_id"], None)
    if not p:
        r = reserve(event["_id"], ticket_type, quantity, user["_id"])
        data = {
            "reservation_token": r["token"],
            "payment_method": method,
            "customer_phone": phone,
            "customer_name": f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        }
        try:
            p, _ = initiate_payment(data, key, owner=owner)
        except ApiError:
            cancel_reservation(r["token"], "payment_failed")
            raise
        if p["status"] == "failed":
            # no retry from a USSD session
            cancel_reservation(r["token"], "payment_failed")
    return payment_message(p)


def payment_message(p: Dict[str, Any]) -> str:
    ref = p["payment_reference"]
    if p["status"] == "completed":
        if p.get("fulfillment") != "issued":
            return f"END Payment received. Your tickets are being issued. Ref: {ref}"
        numbers = [t["ticket_number"] for t in tickets_for_payment(p["_id"])]
        return "END Payment complete. Your tickets:\n" + "\n".join(numbers)
    if p["status"] == "failed":
        reason = (p.get("failure_reason") or "unknown error").rstrip(".")
        return f"END Payment failed: {reason}. Ref: {ref}"
    return f"END Approve {p['total_amount']} RWF on your phone to finish. Ref: {ref}"


def my_tickets(phone: str, steps: List[str]) -> str:
    user = _active_user(phone)
    tickets = list(
        col(TICKETS).find({"user_id": user["_id"], "status": "valid"})
        .sort("purchased_at", DESCENDING)
        .limit(MAX_TICKETS_LISTED)
    )
    if not tickets:
        return "END You have no active tickets."
    events = {
        e["_id"]: e
        for e in col(EVENTS).find({"_id": {"$in": list({t["event_id"] for t in tickets})}})
    }

    if len(steps) == 1:
        lines = [f"{i}. {events[t['event_id']]['title']} - {t['seat_number']}" for i, t in enumerate(tickets, 1)]
        return "CON Your active tickets:\n" + "\n".join(lines) + "\nSelect ticket for details:"

    t = _pick(tickets, steps[1], "ticket")
    e = events[t["event_id"]]
    return (
        f"END {e['title']}\n{_when(e['start_datetime'])}\n"
        f"Seat: {t['seat_number']}\nTicket: {t['ticket_number']}"
    )


def check_balance(phone: str) -> str:
    user = _active_user(phone)
    wallet = get_or_create_wallet(user["_id"])
    return f"END Your wallet balance: {int(wallet['balance'])} {wallet.get('currency', 'RWF')}"


def register(phone: str, steps: List[str]) -> str:
    if len(steps) == 1:
        return "CON Enter your full name:"
    if len(steps) > 2:
        return "END Invalid input."

    full_name = " ".join(steps[1].split())
    if len(full_name) < 2:
        return "END Please enter a valid full name."
    if find_user_by_phone(phone):
        return "END You are already registered."

    first, _, last = full_name.partition(" ")
    res = col(USERS).insert_one({
        "phone": phone,
        "role": "fan",
        "first_name": first[:100],
        "last_name": last[:100],
        "status": "active",
        "registered_via": "ussd",
        "created_at": iso_now(),
    })
    get_or_create_wallet(res.inserted_id)
    logger.info("USSD registration user=%s", res.inserted_id)
    return f"END Registration successful! Welcome {full_name}. You can now buy tickets here."


def handle(phone: str, session_id: str, text: str) -> str:
    steps = [s.strip() for s in text.split("*")] if text else []
    if not steps:
        return main_menu()
    try:
        if steps[0] == "1":
            return buy_ticket(phone, session_id, steps)
        if steps[0] == "2":
            return my_tickets(phone, steps)
        if steps[0] == "3":
            return check_balance(phone)
        if steps[0] == "4":
            return register(phone, steps)
    except ApiError as e:
        logger.info("USSD session %s ended: %s", session_id, e.message)
        return f"END {e.message}"
    return "END Invalid option. Please try again."


# -------------------------
# Route
# -------------------------
@bp.post("/ussd")
@limiter.limit("60 per minute")
def ussd():
    secret = current_app.config.get("USSD_SECRET") or ""
    if secret and not hmac.compare_digest(secret, request.headers.get("X-USSD-Secret", "")):
        raise ApiError("Invalid gateway secret.", 401, "unauthorized")

    data = request.form if request.form else require_json()
    session_id = require_text(data.get("sessionId"), "sessionId", 1, 100)
    phone = msisdn(data.get("phoneNumber") or "")
    text = data.get("text") or ""
    if not isinstance(text, str):
        raise ApiError("text must be a string.", 400, "validation_error", {"field": "text"})

    reply = handle(phone, session_id, text.strip())
    return Response(reply, mimetype="text/plain")
