from __future__ import annotations

import logging
from typing import Any, Optional

from flask import Flask, current_app
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger("smartsports.db")

USERS = "users"
TEAMS = "teams"
VENUES = "venues"
EVENTS = "events"
TICKET_TYPES = "ticket_types"
RESERVATIONS = "reservations"
TICKETS = "tickets"
PAYMENTS = "payments"
WALLETS = "wallets"
WALLET_TRANSACTIONS = "wallet_transactions"
WEBHOOK_DELIVERIES = "webhook_deliveries"
SCANNER_LOGS = "scanner_logs"


# -------------------------
# MongoDB
# -------------------------
def connect(uri: str) -> MongoClient:
    try:
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=3000,
            connectTimeoutMS=3000,
            socketTimeoutMS=5000,
            retryWrites=True,
        )
        # Verify connectivity early (will raise if unreachable)
        client.admin.command("ping")
        return client
    except Exception as e:
        logger.exception("MongoDB connection failed")
        raise RuntimeError(f"MongoDB connection failed: {e}") from e


def init_db(app: Flask, client: Optional[Any] = None) -> Database:
    if client is None:
        client = connect(app.config["MONGO_URI"])
    db = client[app.config["MONGO_DB"]]
    app.extensions["mongo_client"] = client
    app.extensions["mongo_db"] = db
    ensure_indexes(db)
    return db


def get_db() -> Database:
    return current_app.extensions["mongo_db"]


def col(name: str):
    return get_db()[name]


def is_connected() -> bool:
    try:
        get_db().command("ping")
        return True
    except Exception:
        return False


def ensure_indexes(db: Database) -> None:
    # USSD sign-ups have a phone and no email
    db[USERS].create_index([("email", ASCENDING)], unique=True, sparse=True)
    db[USERS].create_index([("phone", ASCENDING)])
    db[USERS].create_index([("role", ASCENDING)])

    db[TEAMS].create_index([("name_key", ASCENDING), ("sport", ASCENDING)], unique=True)

    db[VENUES].create_index([("name", ASCENDING)])
    db[VENUES].create_index([("admin_user_id", ASCENDING)])

    db[EVENTS].create_index([("status", ASCENDING), ("start_datetime", ASCENDING)])
    db[EVENTS].create_index([("venue_id", ASCENDING)])
    db[EVENTS].create_index([("home_team_id", ASCENDING)])
    db[EVENTS].create_index([("away_team_id", ASCENDING)])

    db[TICKET_TYPES].create_index([("event_id", ASCENDING), ("type", ASCENDING)], unique=True)

    db[RESERVATIONS].create_index([("token", ASCENDING)], unique=True)
    db[RESERVATIONS].create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    db[RESERVATIONS].create_index([("event_id", ASCENDING), ("user_id", ASCENDING)])

    db[TICKETS].create_index([("ticket_number", ASCENDING)], unique=True)
    db[TICKETS].create_index([("user_id", ASCENDING), ("purchased_at", DESCENDING)])
    db[TICKETS].create_index([("payment_id", ASCENDING)])
    db[TICKETS].create_index([("event_id", ASCENDING), ("status", ASCENDING)])

    db[PAYMENTS].create_index([("payment_reference", ASCENDING)], unique=True)
    db[PAYMENTS].create_index([("idempotency_key", ASCENDING)], unique=True, sparse=True)
    db[PAYMENTS].create_index([("external_reference", ASCENDING)])
    db[PAYMENTS].create_index([("customer_phone", ASCENDING), ("initiated_at", DESCENDING)])
    db[PAYMENTS].create_index([("user_id", ASCENDING), ("initiated_at", DESCENDING)])

    db[WALLETS].create_index([("user_id", ASCENDING)], unique=True)
    db[WALLET_TRANSACTIONS].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    db[WEBHOOK_DELIVERIES].create_index([("delivery_key", ASCENDING)], unique=True)

    db[SCANNER_LOGS].create_index([("event_id", ASCENDING), ("scanned_at", DESCENDING)])
    db[SCANNER_LOGS].create_index([("ticket_id", ASCENDING)])
