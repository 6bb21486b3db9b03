import json
from datetime import timedelta

import pytest
from bson import ObjectId

from conftest import create_event, fund, purchase
from smartsports.helpers import iso, now_utc
from smartsports.qr import build_payload


@pytest.fixture
def ticket(app, fan, fan_client, event):
    fund(app, fan, 10000)
    r = purchase(fan_client, event["id"], 1)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["tickets"][0]


def scan(client, qr, path="scan", **extra):
    return client.post(f"/api/scanner/{path}", json={"qr_code": qr, "scan_location": "Gate A", **extra})


def test_validate_does_not_admit(scanner_client, fan_client, ticket):
    r = scan(scanner_client, ticket["qr_code"], path="validate")
    body = r.get_json()
    assert r.status_code == 200
    assert body["valid"] is True
    assert body["code"] == "VALID"
    assert body["ticket"]["number"] == ticket["ticket_number"]
    assert body["event"]["venue"] == "Amahoro Stadium"
    assert fan_client.get(f"/api/tickets/{ticket['id']}").get_json()["ticket"]["status"] == "valid"


def test_scan_admits_once(db, scanner_client, ticket):
    first = scan(scanner_client, ticket["qr_code"]).get_json()
    assert first["valid"] is True
    assert first["reason"] == "Entry granted."
    assert first["ticket"]["status"] == "used"

    stored = db["tickets"].find_one({"_id": ObjectId(ticket["id"])})
    assert stored["scan_location"] == "Gate A"
    assert stored["used_by"] is not None

    second = scan(scanner_client, ticket["qr_code"]).get_json()
    assert second["valid"] is False
    assert second["code"] == "TICKET_ALREADY_USED"
    assert second["used_at"] == stored["used_at"]


def test_bad_qr_codes(app, scanner_client, ticket):
    assert scan(scanner_client, "hello").get_json()["code"] == "INVALID_FORMAT"
    assert scan(scanner_client, "").get_json()["code"] == "INVALID_FORMAT"
    assert scan(scanner_client, "[1, 2]").get_json()["code"] == "INVALID_FORMAT"

    data = json.loads(ticket["qr_code"])
    data["seat"] = "VIP-0001"
    assert scan(scanner_client, json.dumps(data)).get_json()["code"] == "INVALID_SIGNATURE"

    del data["sig"]
    assert scan(scanner_client, json.dumps(data)).get_json()["code"] == "MISSING_DATA"


def test_signed_code_for_unknown_or_mismatched_ticket(app, scanner_client, ticket):
    with app.app_context():
        ghost = build_payload({"_id": ObjectId(), "ticket_number": "SSR1-001", "event_id": ObjectId()})
        forged = build_payload({"_id": ObjectId(ticket["id"]), "ticket_number": "SSR1-001",
                                "event_id": ObjectId(ticket["event_id"])})
    assert scan(scanner_client, ghost).get_json()["code"] == "TICKET_NOT_FOUND"
    assert scan(scanner_client, forged).get_json()["code"] == "DATA_MISMATCH"


def test_entry_window(app, db, admin_client, venue, fan, fan_client, scanner_client):
    later = create_event(admin_client, venue["id"], start_offset=timedelta(days=10))
    fund(app, fan, 10000)
    t = purchase(fan_client, later["id"], 1).get_json()["tickets"][0]

    early = scan(scanner_client, t["qr_code"]).get_json()
    assert early["code"] == "TOO_EARLY"
    assert early["allowed_from"]

    db["events"].update_one({"_id": ObjectId(later["id"])},
                            {"$set": {"start_datetime": iso(now_utc() - timedelta(hours=1)),
                                      "end_datetime": iso(now_utc() - timedelta(minutes=1))}})
    assert scan(scanner_client, t["qr_code"]).get_json()["code"] == "EVENT_ENDED"


def test_wrong_venue(admin_client, scanner_client, ticket):
    other = admin_client.post("/api/venues", json={"name": "Kigali Arena", "capacity": 50}).get_json()["venue"]
    r = scan(scanner_client, ticket["qr_code"], venue_id=other["id"]).get_json()
    assert r["code"] == "WRONG_VENUE"

    event_venue = admin_client.get(f"/api/events/{ticket['event_id']}").get_json()["event"]["venue_id"]
    assert scan(scanner_client, ticket["qr_code"], venue_id=event_venue).get_json()["valid"] is True


def test_refunded_ticket_and_cancelled_event(admin_client, scanner_client, ticket):
    admin_client.put(f"/api/events/{ticket['event_id']}", json={"status": "cancelled"})
    assert scan(scanner_client, ticket["qr_code"], path="validate").get_json()["code"] == "EVENT_CANCELLED"

    admin_client.post(f"/api/payments/{ticket['payment_id']}/refund")
    assert scan(scanner_client, ticket["qr_code"]).get_json()["code"] == "TICKET_REFUNDED"


def test_scanner_access_and_logs(admin_client, fan_client, scanner_client, ticket):
    assert scan(fan_client, ticket["qr_code"]).status_code == 403
    assert scanner_client.get("/api/scanner/logs").status_code == 403

    scan(scanner_client, ticket["qr_code"], device_id="handheld-3")
    scan(scanner_client, ticket["qr_code"])
    scan(scanner_client, "garbage")
    # validate never writes a log entry
    scan(scanner_client, ticket["qr_code"], path="validate")

    logs = admin_client.get("/api/scanner/logs").get_json()
    assert logs["pagination"]["total"] == 3

    valid = admin_client.get(f"/api/scanner/logs?result=valid&event_id={ticket['event_id']}").get_json()["logs"]
    assert len(valid) == 1
    assert valid[0]["device_id"] == "handheld-3"
    assert valid[0]["ticket_number"] == ticket["ticket_number"]

    invalid = admin_client.get("/api/scanner/logs?result=invalid").get_json()["logs"]
    assert sorted(l["code"] for l in invalid) == ["INVALID_FORMAT", "TICKET_ALREADY_USED"]
    assert admin_client.get("/api/scanner/logs?result=maybe").status_code == 400
