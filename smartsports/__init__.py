"""
SmartSports Rwanda ticketing API
- Flask backend (application factory, one blueprint per resource)
- Flask-Login authentication (session-based)
- MongoDB via PyMongo
- JSON-only API endpoints under /api
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Optional

import click
from flask import Flask, Response, request
from pymongo.errors import DuplicateKeyError
from werkzeug.security import generate_password_hash

from .config import Config
from .db import USERS, col, init_db
from .errors import ApiError, register_error_handlers
from .extensions import limiter, login_manager
from .helpers import iso_now, validate_email, validate_password
from .providers import PaymentGateways

logger = logging.getLogger("smartsports")


def create_app(overrides: Optional[Mapping[str, Any]] = None, mongo_client: Optional[Any] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # -------------------------
    # Logging
    # -------------------------
    logging.basicConfig(
        level=getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    init_db(app, mongo_client)
    login_manager.init_app(app)
    limiter.init_app(app)
    app.extensions["payment_gateways"] = PaymentGateways(app.config)

    # Attach a request id for debugging/traceability.
    @app.before_request
    def attach_request_id():
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.environ["request_id"] = rid

    @app.after_request
    def add_security_headers(resp: Response):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["X-Request-Id"] = request.environ.get("request_id", "")
        return resp

    register_error_handlers(app)
    _register_blueprints(app)
    _register_commands(app)

    from .users import ensure_default_admin

    with app.app_context():
        ensure_default_admin()

    logger.info("SmartSports API ready (db=%s)", app.config["MONGO_DB"])
    return app


def _register_blueprints(app: Flask) -> None:
    from . import admin, events, payments, reservations, scanner, teams, tickets, users, ussd, venues, wallet

    for module in (users, teams, venues, events, reservations, payments, wallet, tickets, scanner, admin, ussd):
        app.register_blueprint(module.bp, url_prefix="/api")


def _register_commands(app: Flask) -> None:
    @app.cli.command("release-expired-reservations")
    def release_expired_reservations():
        """Return seats from holds that passed their expiry."""
        from .reservations import release_expired

        released = release_expired()
        click.echo(f"Released {released} expired reservation(s).")

    @app.cli.command("seed-admin")
    @click.argument("email")
    @click.password_option()
    def seed_admin(email, password):
        """Create a super admin, or promote an existing account."""
        try:
            email = validate_email(email)
        except ApiError as e:
            raise click.ClickException(e.message)
        existing = col(USERS).find_one({"email": email})
        if existing:
            col(USERS).update_one(
                {"_id": existing["_id"]},
                {"$set": {"role": "super_admin", "status": "active", "updated_at": iso_now()}},
            )
            click.echo(f"User '{email}' is now a super admin.")
            return
        try:
            password = validate_password(password)
        except ApiError as e:
            raise click.ClickException(e.message)
        try:
            col(USERS).insert_one(
                {
                    "email": email,
                    "password_hash": generate_password_hash(password),
                    "role": "super_admin",
                    "first_name": "",
                    "last_name": "",
                    "phone": "",
                    "status": "active",
                    "created_at": iso_now(),
                }
            )
        except DuplicateKeyError:
            raise click.ClickException(f"User '{email}' already exists.")
        click.echo(f"Super admin '{email}' created.")
