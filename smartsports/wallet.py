from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Optional

from bson import ObjectId
from flask import Blueprint, current_app, request
from flask_login import current_user, login_required
from pymongo import DESCENDING, ReturnDocument

from .auth import ADMIN_ROLES, require_roles
from .db import USERS, WALLET_TRANSACTIONS, WALLETS, col
from .errors import ApiError, ok, require_json
from .helpers import iso_now, page_info, pagination, safe_int, to_oid
from .serializers import public_wallet, public_wallet_transaction

logger = logging.getLogger("smartsports.wallet")

bp = Blueprint("wallet", __name__)


def transaction_reference() -> str:
    return f"WTX{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


def get_or_create_wallet(user_id: ObjectId) -> Dict[str, Any]:
    now = iso_now()
    col(WALLETS).update_one(
        {"user_id": user_id},
        {
            "$setOnInsert": {
                "user_id": user_id,
                "balance": 0,
                "currency": current_app.config["CURRENCY"],
                "status": "active",
                "lifetime_spent": 0,
                "lifetime_credited": 0,
                "total_transactions": 0,
                "last_transaction_at": None,
                "created_at": now,
                "updated_at": now,
            }
        },
        upsert=True,
    )
    return col(WALLETS).find_one({"user_id": user_id})


def _record(wallet: Dict[str, Any], tx_type: str, amount: int, balance_before: int,
            payment_id: Optional[ObjectId], description: str) -> Dict[str, Any]:
    now = iso_now()
    tx = {
        "wallet_id": wallet["_id"],
        "user_id": wallet["user_id"],
        "transaction_reference": transaction_reference(),
        "type": tx_type,
        "amount": amount,
        "balance_before": balance_before,
        "balance_after": balance_before + amount,
        "status": "completed",
        "payment_id": payment_id,
        "description": description,
        "created_at": now,
        "completed_at": now,
    }
    res = col(WALLET_TRANSACTIONS).insert_one(tx)
    tx["_id"] = res.inserted_id
    return tx


def debit(user_id: ObjectId, amount: int, payment_id: Optional[ObjectId] = None,
          description: str = "") -> Dict[str, Any]:
    """Take ``amount`` from the user's wallet; never lets the balance go negative."""
    if amount <= 0:
        raise ApiError("Amount must be positive.", 400, "validation_error", {"field": "amount"})

    updated = col(WALLETS).find_one_and_update(
        {"user_id": user_id, "status": "active", "balance": {"$gte": amount}},
        {
            "$inc": {"balance": -amount, "lifetime_spent": amount, "total_transactions": 1},
            "$set": {"last_transaction_at": iso_now(), "updated_at": iso_now()},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        wallet = col(WALLETS).find_one({"user_id": user_id})
        if not wallet:
            raise ApiError("Wallet not found.", 404, "not_found")
        if wallet.get("status") != "active":
            raise ApiError("Wallet is not active.", 403, "wallet_inactive")
        raise ApiError("Insufficient wallet balance.", 402, "insufficient_funds",
                       {"balance": int(wallet.get("balance", 0)), "required": amount})

    tx = _record(updated, "payment", -amount, int(updated["balance"]) + amount, payment_id, description)
    logger.info("Wallet debited user=%s amount=%s ref=%s", user_id, amount, tx["transaction_reference"])
    return tx


def credit(user_id: ObjectId, amount: int, tx_type: str = "topup",
           payment_id: Optional[ObjectId] = None, description: str = "") -> Dict[str, Any]:
    if amount <= 0:
        raise ApiError("Amount must be positive.", 400, "validation_error", {"field": "amount"})

    wallet = get_or_create_wallet(user_id)
    if wallet.get("status") != "active":
        raise ApiError("Wallet is not active.", 403, "wallet_inactive")

    updated = col(WALLETS).find_one_and_update(
        {"_id": wallet["_id"]},
        {
            "$inc": {"balance": amount, "lifetime_credited": amount, "total_transactions": 1},
            "$set": {"last_transaction_at": iso_now(), "updated_at": iso_now()},
        },
        return_document=ReturnDocument.AFTER,
    )
    tx = _record(updated, tx_type, amount, int(updated["balance"]) - amount, payment_id, description)
    logger.info("Wallet credited user=%s amount=%s type=%s", user_id, amount, tx_type)
    return tx


# -------------------------
# Wallet APIs
# -------------------------
@bp.get("/wallet")
@login_required
def balance():
    wallet = get_or_create_wallet(to_oid(current_user.id, "user_id"))
    return ok({"wallet": public_wallet(wallet)})


@bp.get("/wallet/transactions")
@login_required
def transactions():
    page, limit = pagination()
    query = {"user_id": to_oid(current_user.id, "user_id")}
    total = col(WALLET_TRANSACTIONS).count_documents(query)
    docs = list(
        col(WALLET_TRANSACTIONS)
        .find(query)
        .sort("created_at", DESCENDING)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return ok({
        "transactions": [public_wallet_transaction(t) for t in docs],
        "pagination": page_info(page, limit, total),
    })


@bp.post("/wallet/topup")
@require_roles(*ADMIN_ROLES)
def topup():
    data = require_json()
    user_id = to_oid(data.get("user_id"), "user_id")
    amount = safe_int(data.get("amount"), "amount", min_value=1)
    description = (data.get("description") or "Wallet top-up").strip()

    if not col(USERS).find_one({"_id": user_id}, {"_id": 1}):
        raise ApiError("User not found.", 404, "not_found")

    tx = credit(user_id, amount, "topup", description=description)
    wallet = col(WALLETS).find_one({"user_id": user_id})
    logger.info("Top-up by %s for user=%s amount=%s ip=%s", current_user.id, user_id, amount, request.remote_addr)
    return ok({"transaction": public_wallet_transaction(tx), "wallet": public_wallet(wallet)}, 201)
