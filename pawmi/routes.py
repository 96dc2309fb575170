"""HTTP routes for appointments, recurring series and reminders."""
from __future__ import annotations

import hmac

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .errors import AuthorizationError, store_error_response
from .extensions import db
from .models import Appointment
from .recurrence import coerce_date
from .reminders import dispatch_reminders
from .series import (APPOINTMENT_STATUSES, create_appointments, delete_appointment,
                     delete_series_occurrences, get_appointment, list_series_occurrences,
                     update_appointment, update_appointment_status)

bp = Blueprint("api", __name__)

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 50


def register_routes(app: Flask) -> None:
    from .routes_notifications import bp_notifications

    app.register_blueprint(bp)
    app.register_blueprint(bp_notifications)


def _require_account() -> int:
    """Tenant id set by the auth proxy in front of the API."""
    raw = (request.headers.get("X-Account-Id") or "").strip()
    try:
        account_id = int(raw)
    except ValueError:
        raise AuthorizationError("unauthorized", "X-Account-Id header is required")
    if account_id <= 0:
        raise AuthorizationError("unauthorized", "X-Account-Id header is required")
    return account_id


def _cron_authorized() -> bool:
    secret = current_app.config.get("CRON_SECRET")
    header = request.headers.get("Authorization", "")
    token = header[7:] if header.startswith("Bearer ") else None
    token = token or request.headers.get("X-Cron-Secret")
    if not secret or not token:
        return False
    return hmac.compare_digest(token.encode(), secret.encode())


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service and database are reachable.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"status": "degraded", "database": "unavailable"}), 500

    return jsonify({"status": "ok", "database": "ok"}), 200


@bp.get("/appointments")
def list_appointments() -> tuple[dict[str, object], int]:
    """List the account's appointments.
    ---
    tags:
      - Appointments
    parameters:
      - name: date_from
        in: query
        type: string
        format: date
      - name: date_to
        in: query
        type: string
        format: date
      - name: status
        in: query
        type: string
      - name: limit
        in: query
        type: integer
        default: 50
        maximum: 500
      - name: offset
        in: query
        type: integer
        default: 0
    responses:
      200:
        description: Appointments ordered by date and time
      400:
        description: Invalid parameters
      401:
        description: Missing account
    """
    account_id = _require_account()
    try:
        limit = min(MAX_PAGE_SIZE, max(1, int(request.args.get("limit", DEFAULT_PAGE_SIZE))))
        offset = max(0, int(request.args.get("offset", 0)))
    except (TypeError, ValueError) as exc:
        current_app.logger.warning(f"Invalid pagination parameters: {exc}")
        return jsonify({"error": "invalid_parameters", "message": "limit and offset must be integers"}), 400

    date_from = request.args.get("date_from")
    date_to = request.args.get("date_to")
    status = (request.args.get("status") or "").strip()
    if (date_from and coerce_date(date_from) is None) or (date_to and coerce_date(date_to) is None):
        return jsonify({"error": "invalid_parameters", "message": "dates must be YYYY-MM-DD"}), 400
    if status and status not in APPOINTMENT_STATUSES:
        return jsonify({"error": "invalid_parameters", "message": f"unknown status {status}"}), 400

    try:
        query = Appointment.query.filter(Appointment.account_id == account_id)
        if date_from:
            query = query.filter(Appointment.appointment_date >= coerce_date(date_from))
        if date_to:
            query = query.filter(Appointment.appointment_date <= coerce_date(date_to))
        if status:
            query = query.filter(Appointment.status == status)

        total = query.count()
        appointments = (
            query.order_by(Appointment.appointment_date, Appointment.appointment_time, Appointment.appointment_id)
            .limit(limit)
            .offset(offset)
            .all()
        )
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to list appointments")

    return jsonify({
        "data": [appointment.to_dict() for appointment in appointments],
        "meta": {"total": total, "limit": limit, "offset": offset},
    }), 200


@bp.post("/appointments")
def create_appointment() -> tuple[dict[str, object], int]:
    """Create an appointment, expanding its recurrence rule when one is given.
    ---
    tags:
      - Appointments
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            customer_id:
              type: integer
            appointment_date:
              type: string
              format: date
            appointment_time:
              type: string
              example: "14:00"
            recurrence_rule:
              type: string
              example: FREQ=WEEKLY;INTERVAL=2
            recurrence_count:
              type: integer
            recurrence_until:
              type: string
              format: date
            service_selections:
              type: array
              items:
                type: object
          required:
            - appointment_date
            - service_selections
    responses:
      201:
        description: Anchor appointment plus the number of occurrences created
      400:
        description: Invalid payload
      401:
        description: Missing account
      500:
        description: Database error
    """
    account_id = _require_account()
    payload = request.get_json(silent=True) or {}
    try:
        anchor, created, series_id = create_appointments(account_id, payload)
        data = anchor.to_dict()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to create appointment")

    return jsonify({"data": data, "meta": {"created": created, "series_id": series_id}}), 201


@bp.get("/appointments/<int:appointment_id>")
def get_appointment_details(appointment_id: int) -> tuple[dict[str, object], int]:
    account_id = _require_account()
    try:
        appointment = get_appointment(account_id, appointment_id)
        data = appointment.to_dict()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to load appointment")
    return jsonify({"data": data}), 200


@bp.patch("/appointments/<int:appointment_id>")
def patch_appointment(appointment_id: int) -> tuple[dict[str, object], int]:
    """Update an appointment and, by default, the rest of its series.
    ---
    tags:
      - Appointments
    parameters:
      - name: appointment_id
        in: path
        type: integer
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            update_scope:
              type: string
              enum: [single, future]
              default: future
    responses:
      200:
        description: Updated appointment
      400:
        description: Invalid payload or nothing to update
      404:
        description: Appointment not found
      409:
        description: The series changed concurrently
    """
    account_id = _require_account()
    payload = request.get_json(silent=True) or {}
    try:
        appointment = update_appointment(account_id, appointment_id, payload)
        data = appointment.to_dict()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to update appointment")
    return jsonify({"data": data}), 200


@bp.patch("/appointments/<int:appointment_id>/status")
def patch_appointment_status(appointment_id: int) -> tuple[dict[str, object], int]:
    account_id = _require_account()
    payload = request.get_json(silent=True) or {}
    try:
        appointment = update_appointment_status(account_id, appointment_id, payload.get("status"))
        data = appointment.to_dict()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to update appointment status")
    return jsonify({"data": data}), 200


@bp.delete("/appointments/<int:appointment_id>")
def remove_appointment(appointment_id: int):
    account_id = _require_account()
    try:
        delete_appointment(account_id, appointment_id)
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to delete appointment")
    return "", 204


@bp.get("/appointments/series/<int:series_id>/occurrences")
def get_series_occurrences(series_id: int) -> tuple[dict[str, object], int]:
    """List every occurrence of a recurring series.
    ---
    tags:
      - Appointments
    parameters:
      - name: series_id
        in: path
        type: integer
        required: true
    responses:
      200:
        description: Series definition and its occurrences ordered by date
      404:
        description: Series not found
    """
    account_id = _require_account()
    try:
        series, occurrences = list_series_occurrences(account_id, series_id)
        payload = {
            "series": series.to_dict(),
            "data": [occurrence.to_dict() for occurrence in occurrences],
        }
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to load series occurrences")
    return jsonify(payload), 200


@bp.post("/appointments/series/<int:series_id>/delete")
@bp.delete("/appointments/series/<int:series_id>")
def remove_series(series_id: int) -> tuple[dict[str, object], int]:
    """Delete a series' occurrences, optionally only from a date onward.
    ---
    tags:
      - Appointments
    parameters:
      - name: series_id
        in: path
        type: integer
        required: true
      - name: from_date
        in: query
        type: string
        format: date
    responses:
      200:
        description: Number of deleted and remaining occurrences
      400:
        description: Invalid from_date
      404:
        description: Series not found
    """
    account_id = _require_account()
    payload = request.get_json(silent=True) or {}
    from_date = payload.get("from_date") or request.args.get("from_date")
    try:
        result = delete_series_occurrences(account_id, series_id, from_date)
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to delete series")
    return jsonify({"ok": True, **result}), 200


@bp.post("/appointments/reminders")
def run_reminders() -> tuple[dict[str, object], int]:
    """Send due appointment reminders. Called by the scheduler.
    ---
    tags:
      - Appointments
    parameters:
      - name: Authorization
        in: header
        type: string
        description: Bearer <CRON_SECRET>
      - name: X-Cron-Secret
        in: header
        type: string
    responses:
      200:
        description: Run summary
      401:
        description: Missing or wrong secret
    """
    if not _cron_authorized():
        current_app.logger.warning("Rejected reminder run with a missing or wrong secret")
        return jsonify({"error": "unauthorized", "message": "Unauthorized"}), 401

    try:
        summary = dispatch_reminders()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to dispatch reminders")
    return jsonify({"ok": True, **summary}), 200
