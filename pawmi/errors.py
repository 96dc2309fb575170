"""Error types raised by the appointment services and their HTTP mapping."""
from __future__ import annotations

from flask import Flask, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

# PostgREST codes for expired/invalid JWTs surfaced by the hosted store
AUTH_ERROR_CODES = {"PGRST301", "PGRST302", "PGRST303"}


class ServiceError(Exception):
    status = 500

    def __init__(self, code: str, message: str | None = None, status: int | None = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        if status is not None:
            self.status = status

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class ValidationError(ServiceError):
    status = 400


class AuthorizationError(ServiceError):
    status = 401


class NotFoundError(ServiceError):
    status = 404


class ConflictError(ServiceError):
    status = 409


def status_from_store_error(exc: BaseException | None) -> int:
    """Map store failures that look like auth problems to 401 so clients refresh tokens."""
    if exc is None:
        return 500
    orig = getattr(exc, "orig", None)
    # SQLAlchemy errors carry their own ``code``; the driver's lives on ``orig``
    codes = {
        getattr(exc, "code", None),
        getattr(orig, "pgcode", None),
        getattr(orig, "code", None),
    }
    if codes & AUTH_ERROR_CODES:
        return 401
    if "jwt" in str(orig or exc).lower():
        return 401
    return 500


def store_error_response(exc: SQLAlchemyError, log_message: str):
    from .extensions import db

    db.session.rollback()
    current_app.logger.exception(log_message, exc_info=exc)
    status = status_from_store_error(exc)
    error = "unauthorized" if status == 401 else "database_error"
    return jsonify({"error": error, "message": str(getattr(exc, "orig", None) or exc)}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ServiceError)
    def handle_service_error(exc: ServiceError):
        if exc.status >= 500:
            current_app.logger.error("Service error %s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status
