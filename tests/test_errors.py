"""Tests for the store error mapping and the service error handler."""
from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from pawmi.errors import ConflictError, NotFoundError, ServiceError, status_from_store_error, store_error_response


class DriverError(Exception):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


def _store_error(message: str, code: str | None = None) -> OperationalError:
    return OperationalError("SELECT 1", {}, DriverError(message, code))


@pytest.mark.parametrize(
    "exc, expected",
    [
        (None, 500),
        (_store_error("JWT expired", "PGRST301"), 401),
        (_store_error("bad token", "PGRST303"), 401),
        (_store_error("JWT expired"), 401),
        (_store_error("connection refused"), 500),
        (_store_error("duplicate key value", "23505"), 500),
    ],
)
def test_status_from_store_error(exc, expected) -> None:
    assert status_from_store_error(exc) == expected


def test_store_error_response_maps_auth_failures(app) -> None:
    with app.test_request_context():
        response, status = store_error_response(_store_error("JWT expired", "PGRST301"), "Failed")

    assert status == 401
    assert response.get_json() == {"error": "unauthorized", "message": "JWT expired"}


def test_store_error_response_defaults_to_database_error(app) -> None:
    with app.test_request_context():
        response, status = store_error_response(_store_error("disk full"), "Failed")

    assert status == 500
    assert response.get_json()["error"] == "database_error"


def test_service_error_defaults() -> None:
    error = ServiceError("boom")

    assert error.status == 500
    assert error.to_dict() == {"error": "boom", "message": "boom"}
    assert NotFoundError("appointment_not_found").status == 404
    assert ConflictError("series_conflict", "Series changed").status == 409
    assert ServiceError("teapot", status=418).status == 418
