"""Signed ticket QR payloads.

The QR text is compact JSON::

    {"id": ..., "num": ..., "evt": ..., "usr": ..., "typ": ..., "seat": ...,
     "sec": ..., "row": ..., "ts": ..., "sig": ...}

``sig`` is an HMAC-SHA256 (hex) over the canonical JSON of every other field,
so any edit to the payload invalidates it.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from io import BytesIO
from typing import Any, Dict

import qrcode
from flask import current_app

REQUIRED_FIELDS = ("id", "num", "evt", "sig")


class QrError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def _secret() -> bytes:
    key = current_app.config.get("QR_SECRET_KEY") or current_app.config["SECRET_KEY"]
    return key.encode("utf-8")


def canonical(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def sign(data: Dict[str, Any]) -> str:
    return hmac.new(_secret(), canonical(data).encode("utf-8"), hashlib.sha256).hexdigest()


def build_payload(ticket: Dict[str, Any]) -> str:
    data = {
        "id": str(ticket["_id"]),
        "num": ticket["ticket_number"],
        "evt": str(ticket["event_id"]),
        "usr": str(ticket["user_id"]) if ticket.get("user_id") else None,
        "typ": ticket.get("ticket_type", ""),
        "seat": ticket.get("seat_number", ""),
        "sec": ticket.get("section", ""),
        "row": ticket.get("row"),
        "ts": int(time.time() * 1000),
    }
    data["sig"] = sign(data)
    return canonical(data)


def parse_payload(text: Any) -> Dict[str, Any]:
    """Decode and verify a scanned QR string; raises QrError with a scan code."""
    if not isinstance(text, str) or not text.strip():
        raise QrError("INVALID_FORMAT", "QR code is empty.")
    try:
        data = json.loads(text)
    except ValueError:
        raise QrError("INVALID_FORMAT", "QR code is not a valid ticket code.")
    if not isinstance(data, dict):
        raise QrError("INVALID_FORMAT", "QR code is not a valid ticket code.")
    if any(not data.get(k) for k in REQUIRED_FIELDS):
        raise QrError("MISSING_DATA", "QR code is missing ticket data.")
    if not verify(data):
        raise QrError("INVALID_SIGNATURE", "QR code signature is invalid.")
    return data


def verify(data: Dict[str, Any]) -> bool:
    sig = data.get("sig")
    if not isinstance(sig, str):
        return False
    body = {k: v for k, v in data.items() if k != "sig"}
    return hmac.compare_digest(sig, sign(body))


def render_png(text: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


def render_data_url(text: str) -> str:
    return "data:image/png;base64," + base64.b64encode(render_png(text)).decode("ascii")
