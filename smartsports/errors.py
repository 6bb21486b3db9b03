from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, jsonify, request
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger("smartsports")


# -------------------------
# API Error Handling
# -------------------------
@dataclass
class ApiError(Exception):
    message: str
    status: int = 400
    code: str = "bad_request"
    details: Optional[Dict[str, Any]] = None


def ok(payload: Dict[str, Any] | None = None, status: int = 200) -> Tuple[Response, int]:
    data = {"ok": True}
    if payload:
        data.update(payload)
    return jsonify(data), status


def fail(err: ApiError) -> Tuple[Response, int]:
    data = {"ok": False, "error": err.message, "code": err.code}
    if err.details:
        data["details"] = err.details
    return jsonify(data), err.status


def require_json() -> Dict[str, Any]:
    if not request.is_json:
        raise ApiError("Request must be JSON.", 415, "unsupported_media_type")
    data = request.get_json(silent=True)
    if data is None:
        raise ApiError("Invalid JSON payload.", 400, "invalid_json")
    if not isinstance(data, dict):
        raise ApiError("JSON body must be an object.", 400, "invalid_json")
    return data


def optional_json() -> Dict[str, Any]:
    """Like require_json, but an empty body is an empty object."""
    if not request.get_data(cache=True):
        return {}
    return require_json()


HTTP_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    415: "unsupported_media_type",
    429: "rate_limited",
}

HTTP_MESSAGES = {
    404: "Not found.",
    405: "Method not allowed.",
    429: "Too many requests, please try again later.",
}


# -------------------------
# Global Error Handlers
# -------------------------
def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        return fail(err)

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate(err: DuplicateKeyError):
        logger.warning("Duplicate key: %s", err)
        return fail(ApiError("Resource already exists.", 409, "conflict"))

    @app.errorhandler(PyMongoError)
    def handle_db_error(err: PyMongoError):
        rid = request.environ.get("request_id", "")
        logger.exception("Database error (request_id=%s): %s", rid, err)
        return fail(ApiError("Database error.", 500, "db_error", {"request_id": rid}))

    @app.errorhandler(HTTPException)
    def handle_http(err: HTTPException):
        status = err.code or 500
        message = HTTP_MESSAGES.get(status) or err.description or err.name
        return fail(ApiError(message, status, HTTP_CODES.get(status, "http_error")))

    @app.errorhandler(Exception)
    def handle_exception(e: Exception):
        rid = request.environ.get("request_id", "")
        logger.exception("Unhandled error (request_id=%s): %s", rid, e)
        return (
            jsonify(
                {
                    "ok": False,
                    "error": "Internal server error.",
                    "code": "internal_error",
                    "request_id": rid,
                }
            ),
            500,
        )
