"""Public JSON shapes for stored documents."""
from __future__ import annotations

from typing import Any, Dict, Optional

from .helpers import oid_str


def public_user(u: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(u["_id"]),
        "email": u.get("email", ""),
        "role": u.get("role", "fan"),
        "first_name": u.get("first_name", ""),
        "last_name": u.get("last_name", ""),
        "phone": u.get("phone", ""),
        "status": u.get("status", "active"),
        "created_at": u.get("created_at", ""),
    }


def public_team(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(t["_id"]),
        "name": t.get("name", ""),
        "short_name": t.get("short_name", ""),
        "sport": t.get("sport", ""),
        "city": t.get("city", ""),
        "logo_url": t.get("logo_url", ""),
        "description": t.get("description", ""),
        "created_at": t.get("created_at", ""),
        "updated_at": t.get("updated_at", ""),
    }


def public_venue(v: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(v["_id"]),
        "name": v.get("name", ""),
        "address": v.get("address", ""),
        "city": v.get("city", ""),
        "capacity": int(v.get("capacity", 0)),
        "admin_user_id": oid_str(v.get("admin_user_id")),
        "created_at": v.get("created_at", ""),
        "updated_at": v.get("updated_at", ""),
    }


def public_ticket_type(t: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(t["_id"]),
        "event_id": oid_str(t.get("event_id")),
        "type": t.get("type", ""),
        "price": int(t.get("price", 0)),
        "quantity": int(t.get("quantity", 0)),
        "sold": int(t.get("sold", 0)),
        "held": int(t.get("held", 0)),
        "available": max(0, int(t.get("remaining", 0))),
    }


def public_event(e: Dict[str, Any], ticket_stats: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    out = {
        "id": str(e["_id"]),
        "title": e.get("title", ""),
        "description": e.get("description", ""),
        "sport": e.get("sport", ""),
        "event_type": e.get("event_type", ""),
        "start_datetime": e.get("start_datetime", ""),
        "end_datetime": e.get("end_datetime", ""),
        "venue_id": oid_str(e.get("venue_id")),
        "home_team_id": oid_str(e.get("home_team_id")),
        "away_team_id": oid_str(e.get("away_team_id")),
        "max_tickets_per_user": int(e.get("max_tickets_per_user", 10)),
        "image_url": e.get("image_url", ""),
        "status": e.get("status", "active"),
        "created_by": oid_str(e.get("created_by")),
        "created_at": e.get("created_at", ""),
        "updated_at": e.get("updated_at", ""),
    }
    if ticket_stats is not None:
        out["ticket_stats"] = ticket_stats
    return out


def public_reservation(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "reservation_token": r.get("token", ""),
        "event_id": oid_str(r.get("event_id")),
        "ticket_type": r.get("ticket_type", ""),
        "quantity": int(r.get("quantity", 0)),
        "unit_price": int(r.get("unit_price", 0)),
        "status": r.get("status", ""),
        "user_id": oid_str(r.get("user_id")),
        "session_id": r.get("session_id"),
        "payment_id": oid_str(r.get("payment_id")),
        "created_at": r.get("created_at", ""),
        "expires_at": r.get("expires_at", ""),
        "release_reason": r.get("release_reason"),
    }


def public_payment(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "payment_id": str(p["_id"]),
        "payment_reference": p.get("payment_reference", ""),
        "status": p.get("status", ""),
        "payment_method": p.get("payment_method", ""),
        "event_id": oid_str(p.get("event_id")),
        "reservation_token": p.get("reservation_token"),
        "quantity": int(p.get("quantity", 0)),
        "subtotal": int(p.get("subtotal", 0)),
        "service_fee": int(p.get("service_fee", 0)),
        "vat_amount": int(p.get("vat_amount", 0)),
        "total_amount": int(p.get("total_amount", 0)),
        "currency": p.get("currency", "RWF"),
        "provider": p.get("provider"),
        "external_reference": p.get("external_reference"),
        "payment_url": p.get("payment_url"),
        "fraud_score": int(p.get("fraud_score", 0)),
        "retry_count": int(p.get("retry_count", 0)),
        "failure_reason": p.get("failure_reason"),
        "fulfillment": p.get("fulfillment"),
        "ticket_ids": [str(t) for t in p.get("ticket_ids", [])],
        "initiated_at": p.get("initiated_at", ""),
        "expires_at": p.get("expires_at", ""),
        "completed_at": p.get("completed_at"),
    }


def public_ticket(t: Dict[str, Any], include_qr: bool = True) -> Dict[str, Any]:
    out = {
        "id": str(t["_id"]),
        "ticket_number": t.get("ticket_number", ""),
        "event_id": oid_str(t.get("event_id")),
        "ticket_type": t.get("ticket_type", ""),
        "price": int(t.get("price", 0)),
        "seat_number": t.get("seat_number", ""),
        "section": t.get("section", ""),
        "row": t.get("row"),
        "holder_name": t.get("holder_name", ""),
        "status": t.get("status", ""),
        "payment_id": oid_str(t.get("payment_id")),
        "purchased_at": t.get("purchased_at", ""),
        "used_at": t.get("used_at"),
        "qr_download_url": f"/api/tickets/{t['_id']}/qr.png",
    }
    if include_qr:
        out["qr_code"] = t.get("qr_code", "")
    return out


def public_wallet(w: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(w["_id"]),
        "user_id": oid_str(w.get("user_id")),
        "balance": int(w.get("balance", 0)),
        "currency": w.get("currency", "RWF"),
        "status": w.get("status", "active"),
        "lifetime_spent": int(w.get("lifetime_spent", 0)),
        "lifetime_credited": int(w.get("lifetime_credited", 0)),
        "total_transactions": int(w.get("total_transactions", 0)),
        "last_transaction_at": w.get("last_transaction_at"),
    }


def public_wallet_transaction(tx: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(tx["_id"]),
        "transaction_reference": tx.get("transaction_reference", ""),
        "type": tx.get("type", ""),
        "amount": int(tx.get("amount", 0)),
        "balance_before": int(tx.get("balance_before", 0)),
        "balance_after": int(tx.get("balance_after", 0)),
        "payment_id": oid_str(tx.get("payment_id")),
        "description": tx.get("description", ""),
        "created_at": tx.get("created_at", ""),
    }


def public_scan_log(s: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(s["_id"]),
        "ticket_id": oid_str(s.get("ticket_id")),
        "ticket_number": s.get("ticket_number"),
        "event_id": oid_str(s.get("event_id")),
        "operator_id": oid_str(s.get("operator_id")),
        "scan_result": s.get("scan_result", ""),
        "code": s.get("code", ""),
        "message": s.get("message", ""),
        "scan_location": s.get("scan_location", ""),
        "device_id": s.get("device_id"),
        "scanned_at": s.get("scanned_at", ""),
    }
