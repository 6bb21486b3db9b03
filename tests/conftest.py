from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta
from typing import Any, Dict, Optional

import mongomock
import pytest
from bson import ObjectId
from werkzeug.security import generate_password_hash

from smartsports import create_app
from smartsports.db import USERS
from smartsports.helpers import iso, iso_now, now_utc
from smartsports.providers import PaymentGateways, ProviderError, ProviderResult
from smartsports.wallet import credit, get_or_create_wallet

PASSWORD = "secret123"
ADMIN_EMAIL = "root@smartsports.rw"
WEBHOOK_SECRET = "whsec-test"


class FakeProvider:
    """Stands in for a remote payment API."""

    def __init__(self, name: str, fail: bool = False, status: str = "processing"):
        self.name = name
        self.fail = fail
        self.status = status
        self.remote_status = "processing"
        self.charged = []

    def charge(self, payment: Dict[str, Any]) -> ProviderResult:
        if self.fail:
            raise ProviderError(self.name, "timeout")
        self.charged.append(payment["payment_reference"])
        return ProviderResult(self.name, self.status, external_reference=f"{self.name}-{payment['payment_reference']}")

    def get_status(self, payment: Dict[str, Any]) -> str:
        return self.remote_status


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "QR_SECRET_KEY": "qr-test-secret",
            "MONGO_DB": "smartsports_test",
            "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
            "DEFAULT_ADMIN_PASSWORD": PASSWORD,
            "RATELIMIT_ENABLED": False,
            "DEFAULT_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "MTN_WEBHOOK_SECRET": "",
            "AIRTEL_WEBHOOK_SECRET": "",
            "RSWITCH_WEBHOOK_SECRET": "",
            "MTN_MOMO_API_URL": "",
            "MTN_MOMO_SECONDARY_API_URL": "",
            "AIRTEL_MONEY_API_URL": "",
            "RSWITCH_API_URL": "",
        },
        mongo_client=mongomock.MongoClient(),
    )
    yield app


@pytest.fixture
def db(app):
    return app.extensions["mongo_db"]


@pytest.fixture
def gateways(app):
    """Real failover logic over fake remote providers."""
    gw = PaymentGateways(app.config)
    for name in ("mtn_primary", "mtn_secondary", "airtel_primary", "rswitch"):
        gw.clients[name] = FakeProvider(name)
    app.extensions["payment_gateways"] = gw
    return gw


# -------------------------
# Users and sessions
# -------------------------
def make_user(app, email: str, role: str = "fan", status: str = "active") -> ObjectId:
    with app.app_context():
        db = app.extensions["mongo_db"]
        uid = db[USERS].insert_one(
            {
                "email": email,
                "password_hash": generate_password_hash(PASSWORD),
                "role": role,
                "first_name": email.split("@")[0],
                "last_name": "",
                "phone": "",
                "status": status,
                "created_at": iso_now(),
            }
        ).inserted_id
        get_or_create_wallet(uid)
    return uid


def login(client, email: str, password: str = PASSWORD):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.get_json()
    return r


def fund(app, user_id: ObjectId, amount: int) -> None:
    with app.app_context():
        credit(user_id, amount, "topup", description="test funding")


def signed_post(client, provider: str, payload: Dict[str, Any], secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return client.post(
        f"/api/payments/webhook/{provider}",
        data=body,
        content_type="application/json",
        headers={"X-Signature": sig},
    )


@pytest.fixture
def admin_client(app):
    c = app.test_client()
    login(c, ADMIN_EMAIL)
    return c


@pytest.fixture
def fan(app):
    return make_user(app, "fan@example.com")


@pytest.fixture
def fan_client(app, fan):
    c = app.test_client()
    login(c, "fan@example.com")
    return c


@pytest.fixture
def other_fan_client(app):
    make_user(app, "other@example.com")
    c = app.test_client()
    login(c, "other@example.com")
    return c


@pytest.fixture
def scanner_client(app):
    make_user(app, "gate@example.com", role="scanner")
    c = app.test_client()
    login(c, "gate@example.com")
    return c


# -------------------------
# Catalog
# -------------------------
@pytest.fixture
def venue(admin_client) -> Dict[str, Any]:
    r = admin_client.post(
        "/api/venues", json={"name": "Amahoro Stadium", "city": "Kigali", "address": "KG 17 Ave", "capacity": 100}
    )
    assert r.status_code == 201, r.get_json()
    return r.get_json()["venue"]


def create_event(admin_client, venue_id: str, start_offset: timedelta = timedelta(hours=-1),
                 duration: timedelta = timedelta(hours=4), **extra: Any) -> Dict[str, Any]:
    start = now_utc() + start_offset
    body = {
        "title": "APR FC vs Rayon Sports",
        "sport": "football",
        "event_type": "match",
        "venue_id": venue_id,
        "start_datetime": iso(start),
        "end_datetime": iso(start + duration),
        "ticket_types": [
            {"type": "regular", "price": 1000, "quantity": 5},
            {"type": "vip", "price": 5000, "quantity": 2},
        ],
    }
    body.update(extra)
    r = admin_client.post("/api/events", json=body)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["event"]


@pytest.fixture
def event(admin_client, venue) -> Dict[str, Any]:
    return create_event(admin_client, venue["id"])


def reserve(client, event_id: str, quantity: int = 1, ticket_type: str = "regular",
            session_id: Optional[str] = None):
    body: Dict[str, Any] = {"event_id": event_id, "ticket_type": ticket_type, "quantity": quantity}
    if session_id:
        body["session_id"] = session_id
    return client.post("/api/reservations", json=body)


def purchase(client, event_id: str, quantity: int = 1, method: str = "wallet", **extra: Any):
    body: Dict[str, Any] = {"event_id": event_id, "ticket_type": "regular", "quantity": quantity,
                            "payment_method": method}
    body.update(extra)
    headers = {}
    if "idempotency_key" in body:
        headers["Idempotency-Key"] = body.pop("idempotency_key")
    return client.post("/api/tickets/purchase", json=body, headers=headers)


def inventory(db, event_id: str, ticket_type: str = "regular") -> Dict[str, int]:
    t = db["ticket_types"].find_one({"event_id": ObjectId(event_id), "type": ticket_type})
    return {k: int(t[k]) for k in ("quantity", "remaining", "held", "sold")}


def assert_balanced(db, event_id: str, ticket_type: str = "regular") -> None:
    inv = inventory(db, event_id, ticket_type)
    assert inv["remaining"] + inv["held"] + inv["sold"] == inv["quantity"]
    assert min(inv.values()) >= 0
