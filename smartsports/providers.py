"""Outbound payment provider clients and failover.

Each payment method maps to an ordered chain of providers. ``process`` tries
them in order and returns the first accepted result; a provider that errors
or times out is logged and the next one is tried.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from .errors import ApiError
from .wallet import debit

logger = logging.getLogger("smartsports.providers")

PROVIDER_CHAINS: Dict[str, Tuple[str, ...]] = {
    "mtn_momo": ("mtn_primary", "mtn_secondary"),
    "airtel_money": ("airtel_primary",),
    "bank_transfer": ("rswitch",),
    "credit_card": ("rswitch",),
    "debit_card": ("rswitch",),
    "wallet": ("wallet",),
}


class ProviderError(Exception):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


@dataclass
class ProviderResult:
    provider: str
    status: str  # processing | completed
    external_reference: Optional[str] = None
    payment_url: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


def msisdn(phone: str) -> str:
    return (phone or "").replace("+", "").replace(" ", "")


def rswitch_signature(data: Mapping[str, Any], secret: str) -> str:
    """HMAC-SHA256 over ``key=value`` pairs in key order, joined with ``&``."""
    message = "&".join(f"{k}={data[k]}" for k in sorted(data))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


# -------------------------
# HTTP clients
# -------------------------
class HttpProvider:
    name = "http"

    def __init__(self, name: str, base_url: str, config: Mapping[str, Any],
                 session: Optional[requests.Session] = None):
        self.name = name
        self.base_url = (base_url or "").rstrip("/")
        self.config = config
        self.session = session or requests.Session()
        self.timeout = float(config.get("PROVIDER_TIMEOUT_SECONDS", 15))
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ProviderError(self.name, "provider is not configured")
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = self._url(path)
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
            r.raise_for_status()
        except requests.RequestException as e:
            raise ProviderError(self.name, f"request failed: {e}") from e
        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise ProviderError(self.name, "invalid JSON response") from e

    def _cached_token(self) -> Optional[str]:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        return None

    def _store_token(self, body: Dict[str, Any]) -> str:
        token = body.get("access_token")
        if not token:
            raise ProviderError(self.name, "no access token in response")
        # refresh a minute early
        ttl = max(0, int(body.get("expires_in", 3600)) - 60)
        self._token = token
        self._token_expires = time.monotonic() + ttl
        return token


class MtnMomoClient(HttpProvider):
    def _environment(self) -> str:
        return "live" if self.config.get("PROVIDER_ENVIRONMENT") == "production" else "sandbox"

    def access_token(self) -> str:
        token = self._cached_token()
        if token:
            return token
        creds = f"{self.config.get('MTN_MOMO_API_USER_ID', '')}:{self.config.get('MTN_MOMO_API_KEY', '')}"
        body = self._request(
            "POST",
            "/collection/token/",
            headers={
                "Ocp-Apim-Subscription-Key": self.config.get("MTN_MOMO_SUBSCRIPTION_KEY", ""),
                "Authorization": "Basic " + base64.b64encode(creds.encode("utf-8")).decode("ascii"),
            },
        )
        return self._store_token(body)

    def charge(self, payment: Dict[str, Any]) -> ProviderResult:
        request_id = str(uuid.uuid4())
        ref = payment["payment_reference"]
        body = self._request(
            "POST",
            "/collection/v1_0/requesttopay",
            json={
                "amount": str(payment["total_amount"]),
                "currency": payment.get("currency", "RWF"),
                "externalId": ref,
                "payer": {"partyIdType": "MSISDN", "partyId": msisdn(payment.get("customer_phone", ""))},
                "payerMessage": f"Payment for SmartSports Rwanda - {ref}",
                "payeeNote": f"Ticket payment - {ref}",
            },
            headers={
                "Authorization": f"Bearer {self.access_token()}",
                "X-Reference-Id": request_id,
                "X-Target-Environment": self._environment(),
                "X-Callback-Url": self.config.get("MTN_MOMO_CALLBACK_URL", ""),
                "Ocp-Apim-Subscription-Key": self.config.get("MTN_MOMO_SUBSCRIPTION_KEY", ""),
            },
        )
        return ProviderResult(self.name, "processing", external_reference=request_id, data=body)

    def get_status(self, payment: Dict[str, Any]) -> str:
        body = self._request(
            "GET",
            f"/collection/v1_0/requesttopay/{payment['external_reference']}",
            headers={
                "Authorization": f"Bearer {self.access_token()}",
                "X-Target-Environment": self._environment(),
                "Ocp-Apim-Subscription-Key": self.config.get("MTN_MOMO_SUBSCRIPTION_KEY", ""),
            },
        )
        return {"SUCCESSFUL": "completed", "FAILED": "failed"}.get(body.get("status"), "processing")


class AirtelMoneyClient(HttpProvider):
    def access_token(self) -> str:
        token = self._cached_token()
        if token:
            return token
        body = self._request(
            "POST",
            "/auth/oauth2/token",
            json={
                "client_id": self.config.get("AIRTEL_MONEY_CLIENT_ID", ""),
                "client_secret": self.config.get("AIRTEL_MONEY_CLIENT_SECRET", ""),
                "grant_type": "client_credentials",
            },
        )
        return self._store_token(body)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token()}", "X-Country": "RW", "X-Currency": "RWF"}

    def charge(self, payment: Dict[str, Any]) -> ProviderResult:
        ref = payment["payment_reference"]
        body = self._request(
            "POST",
            "/merchant/v1/payments/",
            json={
                "reference": ref,
                "subscriber": {"country": "RW", "currency": "RWF", "msisdn": msisdn(payment.get("customer_phone", ""))},
                "transaction": {"amount": payment["total_amount"], "country": "RW", "currency": "RWF", "id": ref},
            },
            headers=self._headers(),
        )
        txn = (body.get("data") or {}).get("transaction") or {}
        return ProviderResult(self.name, "processing", external_reference=txn.get("id") or ref, data=body)

    def get_status(self, payment: Dict[str, Any]) -> str:
        body = self._request(
            "GET", f"/standard/v1/payments/{payment['external_reference']}", headers=self._headers()
        )
        status = ((body.get("data") or {}).get("transaction") or {}).get("status")
        return {"TS": "completed", "TF": "failed"}.get(status, "processing")


class RSwitchClient(HttpProvider):
    def charge(self, payment: Dict[str, Any]) -> ProviderResult:
        data = {
            "merchantId": self.config.get("RSWITCH_MERCHANT_ID", ""),
            "amount": payment["total_amount"],
            "currency": payment.get("currency", "RWF"),
            "reference": payment["payment_reference"],
            "description": "SmartSports Rwanda - Ticket Payment",
            "callbackUrl": self.config.get("RSWITCH_CALLBACK_URL", ""),
            "customerEmail": payment.get("customer_email", ""),
            "customerPhone": payment.get("customer_phone", ""),
        }
        data["signature"] = rswitch_signature(data, self.config.get("RSWITCH_SECRET_KEY", ""))
        body = self._request(
            "POST",
            "/api/v1/payments/initiate",
            json=data,
            headers={"Authorization": f"Bearer {self.config.get('RSWITCH_API_KEY', '')}"},
        )
        if not body.get("transactionId"):
            raise ProviderError(self.name, "no transactionId in response")
        return ProviderResult(self.name, "processing", external_reference=body["transactionId"],
                              payment_url=body.get("paymentUrl"), data=body)


class WalletProvider:
    """Internal wallet: settles synchronously."""

    name = "wallet"

    def charge(self, payment: Dict[str, Any]) -> ProviderResult:
        if not payment.get("user_id"):
            raise ProviderError(self.name, "wallet payments require a signed-in user")
        try:
            tx = debit(payment["user_id"], int(payment["total_amount"]), payment["_id"],
                       f"Payment for tickets - {payment['payment_reference']}")
        except ApiError as e:
            raise ProviderError(self.name, e.message) from e
        return ProviderResult(self.name, "completed", external_reference=tx["transaction_reference"],
                              data={"wallet_transaction_id": str(tx["_id"])})


# -------------------------
# Failover
# -------------------------
class PaymentGateways:
    def __init__(self, config: Mapping[str, Any], session: Optional[requests.Session] = None):
        session = session or requests.Session()
        self.clients: Dict[str, Any] = {
            "mtn_primary": MtnMomoClient("mtn_primary", config.get("MTN_MOMO_API_URL", ""), config, session),
            "mtn_secondary": MtnMomoClient("mtn_secondary", config.get("MTN_MOMO_SECONDARY_API_URL", ""),
                                           config, session),
            "airtel_primary": AirtelMoneyClient("airtel_primary", config.get("AIRTEL_MONEY_API_URL", ""),
                                                config, session),
            "rswitch": RSwitchClient("rswitch", config.get("RSWITCH_API_URL", ""), config, session),
            "wallet": WalletProvider(),
        }

    def chain(self, method: str) -> Tuple[str, ...]:
        return PROVIDER_CHAINS.get(method, ())

    def process(self, payment: Dict[str, Any]) -> Tuple[Optional[ProviderResult], List[Dict[str, str]]]:
        """Try each provider for the payment's method.

        Returns the first successful result (or None) and the list of failed
        attempts, in order.
        """
        attempts: List[Dict[str, str]] = []
        for name in self.chain(payment["payment_method"]):
            client = self.clients[name]
            try:
                result = client.charge(payment)
            except ProviderError as e:
                logger.warning("Provider %s failed for %s: %s", name, payment["payment_reference"], e.message)
                attempts.append({"provider": name, "error": e.message})
                continue
            logger.info("Provider %s accepted %s status=%s", name, payment["payment_reference"], result.status)
            return result, attempts
        return None, attempts

    def poll(self, payment: Dict[str, Any]) -> Optional[str]:
        """Ask the provider that took the payment for its current status."""
        client = self.clients.get(payment.get("provider") or "")
        if client is None or not hasattr(client, "get_status") or not payment.get("external_reference"):
            return None
        return client.get_status(payment)
