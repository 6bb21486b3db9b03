"""Environment-driven settings.

Values come from the process environment (a local ``.env`` file is loaded
first when present). ``create_app`` accepts a mapping of overrides that wins
over anything read here.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default) == "1"


def env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    # -------------------------
    # Core
    # -------------------------
    SECRET_KEY = os.environ.get("SECRET_KEY", "CHANGE_ME_IN_PRODUCTION")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    SESSION_COOKIE_SECURE = env_flag("SESSION_COOKIE_SECURE")  # set to 1 behind HTTPS
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_HTTPONLY = True
    TIMEZONE = os.environ.get("TIMEZONE", "Africa/Kigali")
    CURRENCY = os.environ.get("CURRENCY", "RWF")

    # -------------------------
    # MongoDB
    # -------------------------
    MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB = os.environ.get("MONGO_DB", "smartsports")

    # Seeded on startup when both are set.
    DEFAULT_ADMIN_EMAIL = os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@smartsports.rw")
    DEFAULT_ADMIN_PASSWORD = os.environ.get("DEFAULT_ADMIN_PASSWORD", "")

    # -------------------------
    # Reservations / payments
    # -------------------------
    RESERVATION_TTL_SECONDS = env_int("RESERVATION_TTL_SECONDS", 15 * 60)
    PAYMENT_EXPIRY_SECONDS = env_int("PAYMENT_EXPIRY_SECONDS", 10 * 60)
    MAX_PAYMENT_RETRIES = env_int("MAX_PAYMENT_RETRIES", 3)
    FRAUD_BLOCK_THRESHOLD = env_int("FRAUD_BLOCK_THRESHOLD", 80)
    SERVICE_FEE_RATE = env_float("SERVICE_FEE_RATE", 0.05)
    VAT_RATE = env_float("VAT_RATE", 0.18)
    QR_SECRET_KEY = os.environ.get("QR_SECRET_KEY", "")

    # -------------------------
    # Payment providers
    # -------------------------
    PROVIDER_TIMEOUT_SECONDS = env_float("PROVIDER_TIMEOUT_SECONDS", 15.0)
    PROVIDER_ENVIRONMENT = os.environ.get("PROVIDER_ENVIRONMENT", "sandbox")

    MTN_MOMO_API_URL = os.environ.get("MTN_MOMO_API_URL", "")
    MTN_MOMO_SECONDARY_API_URL = os.environ.get("MTN_MOMO_SECONDARY_API_URL", "")
    MTN_MOMO_SUBSCRIPTION_KEY = os.environ.get("MTN_MOMO_SUBSCRIPTION_KEY", "")
    MTN_MOMO_API_USER_ID = os.environ.get("MTN_MOMO_API_USER_ID", "")
    MTN_MOMO_API_KEY = os.environ.get("MTN_MOMO_API_KEY", "")
    MTN_MOMO_CALLBACK_URL = os.environ.get("MTN_MOMO_CALLBACK_URL", "")

    AIRTEL_MONEY_API_URL = os.environ.get("AIRTEL_MONEY_API_URL", "")
    AIRTEL_MONEY_CLIENT_ID = os.environ.get("AIRTEL_MONEY_CLIENT_ID", "")
    AIRTEL_MONEY_CLIENT_SECRET = os.environ.get("AIRTEL_MONEY_CLIENT_SECRET", "")

    RSWITCH_API_URL = os.environ.get("RSWITCH_API_URL", "")
    RSWITCH_MERCHANT_ID = os.environ.get("RSWITCH_MERCHANT_ID", "")
    RSWITCH_API_KEY = os.environ.get("RSWITCH_API_KEY", "")
    RSWITCH_SECRET_KEY = os.environ.get("RSWITCH_SECRET_KEY", "")
    RSWITCH_CALLBACK_URL = os.environ.get("RSWITCH_CALLBACK_URL", "")

    MTN_WEBHOOK_SECRET = os.environ.get("MTN_WEBHOOK_SECRET", "")
    AIRTEL_WEBHOOK_SECRET = os.environ.get("AIRTEL_WEBHOOK_SECRET", "")
    RSWITCH_WEBHOOK_SECRET = os.environ.get("RSWITCH_WEBHOOK_SECRET", "")
    DEFAULT_WEBHOOK_SECRET = os.environ.get("DEFAULT_WEBHOOK_SECRET", "")

    # Shared secret the USSD gateway sends in X-USSD-Secret; empty disables the check
    USSD_SECRET = os.environ.get("USSD_SECRET", "")
    USSD_SERVICE_NAME = os.environ.get("USSD_SERVICE_NAME", "SmartSports Rwanda")

    # -------------------------
    # Rate limiting (Flask-Limiter)
    # -------------------------
    RATELIMIT_ENABLED = env_flag("RATELIMIT_ENABLED", "1")
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_HEADERS_ENABLED = True
