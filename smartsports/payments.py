"""Payment initiation, provider callbacks and the payment state machine.

Amounts are whole Rwandan francs. A payment always belongs to exactly one
active reservation; the reservation decides what is being bought and for
how much, never the client.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from bson import ObjectId
from flask import Blueprint, current_app, request
from flask_login import current_user, login_required
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .auth import ADMIN_ROLES, current_owner, ensure_owner_or_admin, owns, require_roles
from .db import PAYMENTS, RESERVATIONS, TICKET_TYPES, TICKETS, WEBHOOK_DELIVERIES, col
from .errors import ApiError, ok, optional_json, require_json
from .events import TICKET_TYPES_ALLOWED
from .extensions import limiter
from .helpers import (
    iso,
    iso_now,
    now_utc,
    page_info,
    pagination,
    parse_iso,
    require_choice,
    round_half_up,
    safe_int,
    to_oid,
    validate_email,
    validate_phone,
)
from .providers import PROVIDER_CHAINS, PaymentGateways, ProviderError, ProviderResult
from .reservations import (
    MAX_PER_RESERVATION,
    cancel_reservation,
    confirm_reservation,
    get_reservation,
    reserve,
)
from .serializers import public_payment, public_reservation, public_ticket
from .tickets import issue_tickets, tickets_for_payment
from .wallet import credit

logger = logging.getLogger("smartsports.payments")

bp = Blueprint("payments", __name__)

PAYMENT_METHODS = tuple(PROVIDER_CHAINS)
MOBILE_METHODS = ("mtn_momo", "airtel_money")

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "failed", "cancelled"),
    "processing": ("completed", "failed", "cancelled"),
    "completed": ("refunded", "partially_refunded"),
    "failed": ("pending",),
    "partially_refunded": ("refunded",),
    "cancelled": (),
    "refunded": (),
}
OPEN_STATUSES = ("pending", "processing")

WEBHOOK_SECRETS = {
    "mtn": "MTN_WEBHOOK_SECRET",
    "airtel": "AIRTEL_WEBHOOK_SECRET",
    "rswitch": "RSWITCH_WEBHOOK_SECRET",
}

# provider vocabulary -> payment status
PROVIDER_STATUSES = {
    "successful": "completed",
    "success": "completed",
    "completed": "completed",
    "ts": "completed",
    "failed": "failed",
    "rejected": "failed",
    "tf": "failed",
    "pending": "processing",
    "processing": "processing",
    "ta": "processing",
    "cancelled": "cancelled",
    "refunded": "refunded",
}


def gateways() -> PaymentGateways:
    return current_app.extensions["payment_gateways"]


def payment_reference() -> str:
    return f"SSR{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def price_breakdown(unit_price: int, quantity: int) -> Dict[str, int]:
    subtotal = int(unit_price) * int(quantity)
    service_fee = round_half_up(subtotal * current_app.config["SERVICE_FEE_RATE"])
    vat = round_half_up((subtotal + service_fee) * current_app.config["VAT_RATE"])
    return {
        "subtotal": subtotal,
        "service_fee": service_fee,
        "vat_amount": vat,
        "total_amount": subtotal + service_fee + vat,
    }


def fraud_score(phone: str, email: str, amount: int) -> int:
    score = 0
    if phone:
        since = iso(now_utc() - timedelta(hours=1))
        recent = col(PAYMENTS).count_documents({"customer_phone": phone, "initiated_at": {"$gte": since}})
        if recent > 5:
            score += 30
        elif recent > 3:
            score += 15

        completed = [
            int(p.get("total_amount", 0))
            for p in col(PAYMENTS).find(
                {"customer_phone": phone, "status": "completed"}, {"total_amount": 1}
            ).limit(100)
        ]
        if completed and amount > 5 * (sum(completed) / len(completed)):
            score += 25

    if email and "temp" in email:
        score += 20

    local_hour = datetime.now(ZoneInfo(current_app.config["TIMEZONE"])).hour
    if local_hour < 6:
        score += 10

    return min(score, 100)


def validate_payment_request(data: Dict[str, Any], require_token: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if require_token:
        token = data.get("reservation_token")
        if not isinstance(token, str) or not token.strip():
            raise ApiError("reservation_token is required.", 400, "validation_error",
                           {"field": "reservation_token"})
        out["reservation_token"] = token.strip()

    method = require_choice(data.get("payment_method"), "payment_method", PAYMENT_METHODS)
    out["payment_method"] = method

    phone = data.get("customer_phone") or ""
    if method in MOBILE_METHODS and not phone:
        raise ApiError("customer_phone is required for mobile money.", 400, "validation_error",
                       {"field": "customer_phone"})
    out["customer_phone"] = validate_phone(phone) if phone else ""

    email = data.get("customer_email") or ""
    out["customer_email"] = validate_email(email) if email else ""
    out["customer_name"] = (data.get("customer_name") or "").strip()[:200]
    return out


def find_replay(key: Optional[str], user_id: Optional[ObjectId],
                session_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """The payment already created under an idempotency key, if any."""
    if not key:
        return None
    existing = col(PAYMENTS).find_one({"idempotency_key": key})
    if not existing:
        return None
    if not owns(existing, user_id, session_id):
        raise ApiError("Idempotency key already used.", 409, "conflict", {"field": "Idempotency-Key"})
    logger.info("Idempotent replay for key %s -> %s", key, existing["payment_reference"])
    return existing


def load_payment(payment_id: Any) -> Dict[str, Any]:
    p = col(PAYMENTS).find_one({"_id": to_oid(payment_id, "payment_id")})
    if not p:
        raise ApiError("Payment not found.", 404, "not_found")
    return p


def payment_view(p: Dict[str, Any]) -> Dict[str, Any]:
    out = {"payment": public_payment(p)}
    if p.get("ticket_ids"):
        out["tickets"] = [public_ticket(t) for t in tickets_for_payment(p["_id"])]
    return out


# -------------------------
# Status machine
# -------------------------
def update_payment_status(payment: Dict[str, Any], new_status: str,
                          **fields: Any) -> Optional[Dict[str, Any]]:
    """Move a payment to ``new_status`` if it is still in the status we loaded.

    Raises 409 for a transition the state machine does not allow; returns
    None when another writer changed the payment first.
    """
    current = payment["status"]
    if new_status not in TRANSITIONS.get(current, ()):
        raise ApiError(f"Cannot move payment from {current} to {new_status}.", 409, "invalid_transition",
                       {"from": current, "to": new_status})

    now = iso_now()
    updates = {"status": new_status, "updated_at": now, **fields}
    if new_status in ("completed", "failed", "cancelled", "refunded"):
        updates[f"{new_status}_at"] = now

    updated = col(PAYMENTS).find_one_and_update(
        {"_id": payment["_id"], "status": current},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated:
        logger.info("Payment %s %s -> %s", payment["payment_reference"], current, new_status)
    return updated


def _advance(payment: Dict[str, Any], target: str, **fields: Any) -> Dict[str, Any]:
    """Walk a payment to ``target``, passing through processing when needed."""
    p = payment
    if p["status"] == target:
        return p
    if p["status"] == "pending" and target == "completed":
        p = update_payment_status(p, "processing") or load_payment(p["_id"])
        if p["status"] == target:
            return p
    updated = update_payment_status(p, target, **fields)
    return updated or load_payment(p["_id"])


def finalize_payment(payment: Dict[str, Any]) -> Dict[str, Any]:
    """Confirm the hold and issue tickets for a completed payment, once."""
    claimed = col(PAYMENTS).find_one_and_update(
        {"_id": payment["_id"], "status": "completed", "fulfillment": None},
        {"$set": {"fulfillment": "issuing", "updated_at": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        return load_payment(payment["_id"])

    try:
        reservation = confirm_reservation(claimed["reservation_token"], claimed["_id"])
        tickets = issue_tickets(claimed, reservation)
    except (ApiError, PyMongoError) as e:
        error = e.message if isinstance(e, ApiError) else str(e)
        logger.error("Fulfillment failed for %s: %s", claimed["payment_reference"], error)
        col(PAYMENTS).update_one(
            {"_id": claimed["_id"]},
            {"$set": {"fulfillment": "failed", "fulfillment_error": error, "updated_at": iso_now()}},
        )
        return load_payment(claimed["_id"])

    return col(PAYMENTS).find_one_and_update(
        {"_id": claimed["_id"]},
        {"$set": {"fulfillment": "issued", "ticket_ids": [t["_id"] for t in tickets], "updated_at": iso_now()}},
        return_document=ReturnDocument.AFTER,
    )


def _release_hold(payment: Dict[str, Any], reason: str = "payment_failed") -> None:
    r = col(RESERVATIONS).find_one({"token": payment.get("reservation_token")})
    if r and r.get("status") == "active":
        cancel_reservation(r["token"], reason)


# -------------------------
# Provider round trip
# -------------------------
def _apply_provider_result(payment: Dict[str, Any], result: Optional[ProviderResult],
                           attempts: List[Dict[str, str]]) -> Dict[str, Any]:
    if result is None:
        reason = "; ".join(f"{a['provider']}: {a['error']}" for a in attempts) or "No provider available"
        logger.warning("All providers failed for %s", payment["payment_reference"])
        return _advance(payment, "failed", failure_reason=reason, provider_attempts=attempts)

    p = _advance(
        payment,
        "processing",
        provider=result.provider,
        external_reference=result.external_reference,
        payment_url=result.payment_url,
        provider_response=result.data,
        provider_attempts=attempts,
    )
    if result.status == "completed" and p["status"] == "processing":
        p = _advance(p, "completed")
    if p["status"] == "completed":
        p = finalize_payment(p)
    return p


def _run_providers(payment: Dict[str, Any]) -> Dict[str, Any]:
    if int(payment["total_amount"]) == 0:
        # nothing to collect
        logger.info("Payment %s is free, skipping providers", payment["payment_reference"])
        return finalize_payment(_advance(payment, "completed", provider="free"))
    result, attempts = gateways().process(payment)
    return _apply_provider_result(payment, result, attempts)


# -------------------------
# Payment service
# -------------------------
def initiate_payment(data: Dict[str, Any], idempotency_key: Optional[str] = None,
                     session_id: Optional[str] = None,
                     owner: Optional[Tuple[Optional[ObjectId], Optional[str]]] = None) -> Tuple[Dict[str, Any], bool]:
    """Start paying for a reservation. Returns (payment, replayed).

    ``owner`` overrides the signed-in user for channels without a web session.
    """
    user_id, session_id = owner or current_owner(session_id or data.get("session_id"))
    key = (idempotency_key or "").strip() or None

    existing = find_replay(key, user_id, session_id)
    if existing:
        return existing, True

    fields = validate_payment_request(data)
    r = get_reservation(fields["reservation_token"])
    if not owns(r, user_id, session_id):
        raise ApiError("Reservation belongs to someone else.", 403, "forbidden")
    if r["status"] != "active":
        raise ApiError("Reservation is no longer active.", 409, "reservation_inactive", {"status": r["status"]})

    previous = r.get("payment_id")
    if previous:
        prev = col(PAYMENTS).find_one({"_id": previous}, {"status": 1})
        if prev and prev["status"] != "failed":
            raise ApiError("A payment for this reservation is already in progress.", 409,
                           "payment_in_progress", {"payment_id": str(previous)})

    if fields["payment_method"] == "wallet" and not user_id:
        raise ApiError("Sign in to pay from a wallet.", 401, "unauthorized")

    amounts = price_breakdown(r["unit_price"], r["quantity"])
    score = fraud_score(fields["customer_phone"], fields["customer_email"], amounts["total_amount"])
    if score > current_app.config["FRAUD_BLOCK_THRESHOLD"]:
        logger.warning("Payment blocked, fraud score %s for reservation %s", score, r["token"])
        cancel_reservation(r["token"], "payment_failed")
        raise ApiError("Payment blocked due to suspicious activity.", 403, "fraud_blocked",
                       {"fraud_score": score})

    pid = ObjectId()
    claimed = col(RESERVATIONS).find_one_and_update(
        {"_id": r["_id"], "status": "active", "payment_id": previous},
        {"$set": {"payment_id": pid}},
    )
    if not claimed:
        raise ApiError("Reservation changed, please try again.", 409, "conflict")

    now = now_utc()
    doc = {
        "_id": pid,
        "payment_reference": payment_reference(),
        "user_id": user_id,
        "session_id": session_id,
        "event_id": r["event_id"],
        "reservation_token": r["token"],
        "ticket_type": r["ticket_type"],
        "quantity": int(r["quantity"]),
        "unit_price": int(r["unit_price"]),
        **amounts,
        "currency": current_app.config["CURRENCY"],
        "payment_method": fields["payment_method"],
        "customer_phone": fields["customer_phone"],
        "customer_email": fields["customer_email"],
        "customer_name": fields["customer_name"],
        "status": "pending",
        "fraud_score": score,
        "retry_count": 0,
        "provider": None,
        "external_reference": None,
        "payment_url": None,
        "failure_reason": None,
        "fulfillment": None,
        "ticket_ids": [],
        "ip_address": request.remote_addr,
        "user_agent": request.headers.get("User-Agent", "")[:300],
        "initiated_at": iso(now),
        "expires_at": iso(now + timedelta(seconds=int(current_app.config["PAYMENT_EXPIRY_SECONDS"]))),
    }
    if key:
        doc["idempotency_key"] = key

    try:
        col(PAYMENTS).insert_one(doc)
    except DuplicateKeyError:
        # lost a race on the same idempotency key
        col(RESERVATIONS).update_one({"_id": r["_id"], "payment_id": pid}, {"$set": {"payment_id": previous}})
        existing = col(PAYMENTS).find_one({"idempotency_key": key}) if key else None
        if existing and owns(existing, user_id, session_id):
            return existing, True
        raise

    logger.info("Payment initiated %s method=%s total=%s reservation=%s",
                doc["payment_reference"], doc["payment_method"], doc["total_amount"], r["token"])
    return _run_providers(doc), False


def check_status(payment: Dict[str, Any]) -> Dict[str, Any]:
    p = payment
    if p["status"] == "completed" and p.get("fulfillment") is None:
        return finalize_payment(p)
    if p["status"] not in OPEN_STATUSES:
        return p

    if parse_iso(p["expires_at"]) <= now_utc():
        p = _advance(p, "failed", failure_reason="expired")
        if p["status"] == "failed":
            _release_hold(p, "timeout")
        return p

    if p["status"] == "processing" and p["payment_method"] in MOBILE_METHODS:
        try:
            status = gateways().poll(p)
        except ProviderError as e:
            logger.warning("Status poll failed for %s: %s", p["payment_reference"], e.message)
            return p
        if status == "completed":
            p = finalize_payment(_advance(p, "completed"))
        elif status == "failed":
            p = _advance(p, "failed", failure_reason="provider_reported_failure")
            if p["status"] == "failed":
                _release_hold(p)
    return p


def retry_payment(payment: Dict[str, Any]) -> Dict[str, Any]:
    if payment["status"] != "failed":
        raise ApiError("Only failed payments can be retried.", 409, "invalid_transition",
                       {"status": payment["status"]})
    max_retries = int(current_app.config["MAX_PAYMENT_RETRIES"])
    if int(payment.get("retry_count", 0)) >= max_retries:
        raise ApiError(f"Retry limit of {max_retries} reached.", 409, "retry_limit")

    r = get_reservation(payment["reservation_token"])
    if r["status"] != "active" or r.get("payment_id") != payment["_id"]:
        raise ApiError("Reservation is no longer active.", 409, "reservation_inactive", {"status": r["status"]})

    now = now_utc()
    p = col(PAYMENTS).find_one_and_update(
        {"_id": payment["_id"], "status": "failed", "retry_count": payment.get("retry_count", 0)},
        {
            "$set": {
                "status": "pending",
                "failure_reason": None,
                "provider": None,
                "external_reference": None,
                "payment_url": None,
                "expires_at": iso(now + timedelta(seconds=int(current_app.config["PAYMENT_EXPIRY_SECONDS"]))),
                "updated_at": iso(now),
            },
            "$inc": {"retry_count": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not p:
        raise ApiError("Payment changed, please try again.", 409, "conflict")
    logger.info("Retrying payment %s (attempt %s)", p["payment_reference"], p["retry_count"])
    return _run_providers(p)


def refund_payment(payment: Dict[str, Any], reason: str = "") -> Dict[str, Any]:
    p = update_payment_status(payment, "refunded", refund_reason=reason,
                              refund_channel="wallet" if payment["payment_method"] == "wallet" else "provider")
    if not p:
        raise ApiError("Payment changed, please try again.", 409, "conflict")

    returned = 0
    for t in col(TICKETS).find({"payment_id": p["_id"], "status": "valid"}):
        res = col(TICKETS).update_one(
            {"_id": t["_id"], "status": "valid"},
            {"$set": {"status": "refunded", "refunded_at": iso_now()}},
        )
        if res.modified_count:
            col(TICKET_TYPES).update_one(
                {"_id": t["ticket_type_id"]}, {"$inc": {"sold": -1, "remaining": 1}}
            )
            returned += 1

    if p["payment_method"] == "wallet" and p.get("user_id") and int(p["total_amount"]) > 0:
        credit(p["user_id"], int(p["total_amount"]), "refund", p["_id"],
               f"Refund for {p['payment_reference']}")
    logger.info("Payment %s refunded, %s seats returned", p["payment_reference"], returned)
    return p


# -------------------------
# Webhooks
# -------------------------
def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    sig = signature.strip().lower()
    if sig.startswith("sha256="):
        sig = sig[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, sig)


def _claim_delivery(key: str, provider: str) -> bool:
    """Record a webhook delivery; False if it was already handled."""
    try:
        col(WEBHOOK_DELIVERIES).insert_one(
            {"delivery_key": key, "provider": provider, "status": "processing", "attempts": 1,
             "received_at": iso_now()}
        )
        return True
    except DuplicateKeyError:
        # failed deliveries may be redelivered
        retried = col(WEBHOOK_DELIVERIES).find_one_and_update(
            {"delivery_key": key, "status": "failed"},
            {"$set": {"status": "processing", "received_at": iso_now()}, "$inc": {"attempts": 1}},
        )
        return retried is not None


def _finish_delivery(key: str, status: str, **fields: Any) -> None:
    col(WEBHOOK_DELIVERIES).update_one(
        {"delivery_key": key}, {"$set": {"status": status, "processed_at": iso_now(), **fields}}
    )


def process_webhook(provider: str, raw_body: bytes, signature: str) -> Dict[str, Any]:
    if provider not in WEBHOOK_SECRETS:
        raise ApiError("Unknown payment provider.", 404, "not_found")
    secret = current_app.config.get(WEBHOOK_SECRETS[provider]) or current_app.config.get("DEFAULT_WEBHOOK_SECRET")
    if not verify_signature(raw_body, signature, secret or ""):
        logger.warning("Rejected %s webhook with bad signature from %s", provider, request.remote_addr)
        raise ApiError("Invalid webhook signature.", 401, "invalid_signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise ApiError("Invalid JSON payload.", 400, "invalid_json")
    if not isinstance(payload, dict):
        raise ApiError("JSON body must be an object.", 400, "invalid_json")

    event_type = str(payload.get("event_type") or "payment.status")
    reference = payload.get("payment_reference")
    external = payload.get("external_reference")
    target = PROVIDER_STATUSES.get(str(payload.get("status") or "").lower())
    if not reference and not external:
        raise ApiError("payment_reference or external_reference is required.", 400, "validation_error")
    if not target:
        raise ApiError("Unknown payment status.", 400, "validation_error", {"field": "status"})

    key = f"{provider}:{external or reference}:{event_type}"
    if not _claim_delivery(key, provider):
        logger.info("Duplicate webhook ignored: %s", key)
        return {"status": "duplicate"}

    try:
        clauses = []
        if reference:
            clauses.append({"payment_reference": reference})
        if external:
            clauses.append({"external_reference": external})
        p = col(PAYMENTS).find_one({"$or": clauses})
        if not p:
            raise ApiError("Payment not found.", 404, "not_found")

        if target != p["status"] and (
            target in TRANSITIONS.get(p["status"], ()) or (p["status"] == "pending" and target == "completed")
        ):
            fields: Dict[str, Any] = {}
            if target == "failed":
                fields["failure_reason"] = str(payload.get("reason") or "provider_reported_failure")
            if external and not p.get("external_reference"):
                fields["external_reference"] = external
            p = _advance(p, target, **fields)
            if p["status"] == "completed":
                p = finalize_payment(p)
            elif p["status"] in ("failed", "cancelled"):
                _release_hold(p)
        else:
            logger.info("Webhook %s: payment %s already %s, ignoring %s",
                        key, p["payment_reference"], p["status"], target)
    except Exception as e:
        _finish_delivery(key, "failed", error=str(e))
        raise

    _finish_delivery(key, "delivered", payment_id=p["_id"])
    return {"status": "processed", "payment": public_payment(p)}


# -------------------------
# Payment APIs
# -------------------------
@bp.post("/payments/initiate")
@limiter.limit("10 per minute")
def initiate():
    data = require_json()
    p, replayed = initiate_payment(data, request.headers.get("Idempotency-Key"))
    out = payment_view(p)
    out["idempotent_replay"] = replayed
    return ok(out, 200 if replayed else 201)


@bp.get("/payments/mine")
@login_required
def my_payments():
    page, limit = pagination()
    query = {"user_id": to_oid(current_user.id, "user_id")}
    total = col(PAYMENTS).count_documents(query)
    docs = list(col(PAYMENTS).find(query).sort("initiated_at", DESCENDING).skip((page - 1) * limit).limit(limit))
    return ok({"payments": [public_payment(p) for p in docs], "pagination": page_info(page, limit, total)})


@bp.get("/payments/<payment_id>/status")
def payment_status(payment_id: str):
    p = load_payment(payment_id)
    ensure_owner_or_admin(p, request.args.get("session_id"))
    return ok(payment_view(check_status(p)))


@bp.post("/payments/<payment_id>/retry")
@limiter.limit("10 per minute")
def retry(payment_id: str):
    data = optional_json()
    p = load_payment(payment_id)
    ensure_owner_or_admin(p, data.get("session_id"))
    return ok(payment_view(retry_payment(p)))


@bp.post("/payments/<payment_id>/refund")
@require_roles(*ADMIN_ROLES)
def refund(payment_id: str):
    data = optional_json()
    p = refund_payment(load_payment(payment_id), (data.get("reason") or "").strip()[:500])
    logger.info("Refund of %s requested by %s", p["payment_reference"], current_user.id)
    return ok(payment_view(p))


@bp.post("/payments/webhook/<provider>")
@limiter.limit("100 per minute")
def webhook(provider: str):
    raw = request.get_data(cache=True)
    signature = request.headers.get("X-Signature") or request.headers.get("Signature") or ""
    return ok(process_webhook(provider.lower(), raw, signature))


@bp.post("/tickets/purchase")
@limiter.limit("10 per minute")
def purchase():
    data = require_json()
    event_id = to_oid(data.get("event_id"), "event_id")
    ticket_type = require_choice(data.get("ticket_type"), "ticket_type", TICKET_TYPES_ALLOWED)
    quantity = safe_int(data.get("quantity"), "quantity", min_value=1, max_value=MAX_PER_RESERVATION)
    validate_payment_request(data, require_token=False)
    user_id, session_id = current_owner(data.get("session_id"))
    if data.get("payment_method") == "wallet" and not user_id:
        raise ApiError("Sign in to pay from a wallet.", 401, "unauthorized")

    key = (request.headers.get("Idempotency-Key") or "").strip() or None
    existing = find_replay(key, user_id, session_id)
    if existing:
        out = payment_view(existing)
        out["reservation"] = public_reservation(get_reservation(existing["reservation_token"]))
        out["idempotent_replay"] = True
        return ok(out)

    r = reserve(event_id, ticket_type, quantity, user_id, session_id)
    try:
        p, _ = initiate_payment({**data, "reservation_token": r["token"]}, key, session_id)
    except ApiError:
        _release_hold({"reservation_token": r["token"]})
        raise

    out = payment_view(p)
    out["reservation"] = public_reservation(get_reservation(r["token"]))
    out["idempotent_replay"] = False
    return ok(out, 201)
