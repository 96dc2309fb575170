"""Appointment booking and recurring series maintenance.

An appointment moves between three shapes:

* standalone: no rule, no series;
* anchored: a rule is set but no series row exists yet;
* seriesed: a series row owns the generated occurrences.

Recurrence fields only live on the anchor. Saving an anchored appointment
creates the series and expands it; later edits to the rule, the date/time or
the booked services rebuild every occurrence after the anchor date. The store
commits each write on its own, so multi-row operations keep an ``UndoLog`` of
what they wrote and replay it when a later step fails.
"""
from __future__ import annotations

from datetime import date, time, timedelta
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from .errors import ConflictError, NotFoundError, ServiceError, ValidationError
from .extensions import db
from .models import Appointment, AppointmentSeries, Customer
from .notifications import send_push_notifications
from .preferences import normalize_reminder_offsets
from .recurrence import build_recurrence_dates, coerce_date
from .selections import (ensure_services_in_account, normalize_service_selections,
                         reconcile_appointment_services, selections_from_appointment,
                         validate_selections)

APPOINTMENT_STATUSES = ("scheduled", "confirmed", "in_progress", "completed", "cancelled")
PAYMENT_STATUSES = ("unpaid", "paid", "partial", "refunded")
UPDATE_SCOPES = ("single", "future")

BASE_FIELDS = (
    "customer_id",
    "appointment_date",
    "appointment_time",
    "duration",
    "notes",
    "amount",
    "status",
    "payment_status",
    "reminder_offsets",
)
RECURRENCE_FIELDS = (
    "recurrence_rule",
    "recurrence_count",
    "recurrence_until",
    "recurrence_timezone",
)
UPDATABLE_FIELDS = BASE_FIELDS + RECURRENCE_FIELDS
ANCHOR_STATE_FIELDS = UPDATABLE_FIELDS + ("series_id", "series_occurrence")
SERIES_FIELDS = (
    "recurrence_rule",
    "recurrence_count",
    "recurrence_until",
    "timezone",
    "start_date",
    "start_time",
    "duration",
    "notes",
    "status",
)

# Statuses that notify the customer when an appointment moves into them
STATUS_NOTIFICATIONS = {
    "confirmed": ("appointments.confirmed", "Marcacao confirmada", "confirmada"),
    "cancelled": ("appointments.cancelled", "Marcacao cancelada", "cancelada"),
}


class UndoLog:
    """Compensating actions for writes that were already committed.

    ``replay`` runs them newest first. A failing undo step is logged and the
    remaining steps still run, so one stuck row does not strand the rest.
    """

    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], None]]] = []

    def __len__(self) -> int:
        return len(self._actions)

    def record(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append((description, action))

    def record_insert(self, instance) -> None:
        model = type(instance)
        identity = inspect(instance).identity
        self.record(f"insert of {model.__name__} {identity}", partial(_delete_by_identity, model, identity))

    def replay(self) -> None:
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                current_app.logger.exception("Failed to undo %s", description, exc_info=exc)


def _delete_by_identity(model, identity) -> None:
    instance = db.session.get(model, identity)
    if instance is not None:
        db.session.delete(instance)


def _unassign_series(appointment_id: int) -> None:
    appointment = db.session.get(Appointment, appointment_id)
    if appointment is not None:
        appointment.series_id = None
        appointment.series_occurrence = None


def _restore_fields(model, identity, values: dict) -> None:
    instance = db.session.get(model, identity)
    if instance is not None:
        for field, value in values.items():
            setattr(instance, field, value)


def _restore_services(account_id: int, appointment_id: int, selections) -> None:
    appointment = db.session.get(Appointment, appointment_id)
    if appointment is not None:
        reconcile_appointment_services(appointment, selections, account_id)


def _services_snapshot(appointment: Appointment):
    """Selections that put the stored rows back exactly, tiers and addons included."""
    selections = selections_from_appointment(appointment)
    for selection in selections:
        selection.has_tier_field = True
        selection.has_addon_field = True
    return selections


# --- Payload coercion ---

def _coerce_int(field: str, value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"invalid_{field}", f"{field} must be a number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"invalid_{field}", f"{field} must be a number")


def _coerce_amount(field: str, value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("invalid_amount", "amount must be a number")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("invalid_amount", "amount must be a number")


def _coerce_date_field(field: str, value):
    if value is None or value == "":
        return None
    parsed = coerce_date(value)
    if parsed is None:
        raise ValidationError(f"invalid_{field}", f"{field} must be an ISO date (YYYY-MM-DD)")
    return parsed


def _coerce_time(field: str, value):
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError("invalid_appointment_time", "appointment_time must look like HH:MM")


def _coerce_choice(choices: tuple[str, ...]):
    def coerce(field: str, value):
        if value not in choices:
            raise ValidationError(f"invalid_{field}", f"{field} must be one of {', '.join(choices)}")
        return value
    return coerce


def _coerce_text(field: str, value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_offsets(field: str, value):
    if value is None:
        return None
    return normalize_reminder_offsets(value, fallback=[]) or None


def _coerce_timezone(field: str, value):
    name = _coerce_text(field, value)
    if name is None:
        return None
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("invalid_recurrence_timezone", f"Unknown timezone: {name}")
    return name


_COERCERS = {
    "customer_id": _coerce_int,
    "appointment_date": _coerce_date_field,
    "appointment_time": _coerce_time,
    "duration": _coerce_int,
    "notes": lambda field, value: value if value is None else str(value),
    "amount": _coerce_amount,
    "status": _coerce_choice(APPOINTMENT_STATUSES),
    "payment_status": _coerce_choice(PAYMENT_STATUSES),
    "reminder_offsets": _coerce_offsets,
    "recurrence_rule": _coerce_text,
    "recurrence_count": _coerce_int,
    "recurrence_until": _coerce_date_field,
    "recurrence_timezone": _coerce_timezone,
}


def coerce_appointment_fields(payload: dict, fields) -> dict:
    """Pick ``fields`` present in ``payload`` and convert them to column types."""
    values = {}
    for field in fields:
        if field in payload:
            values[field] = _COERCERS[field](field, payload[field])
    return values


def _ensure_customer(account_id: int, customer_id: int | None) -> None:
    if customer_id is None:
        return
    exists = Customer.query.filter_by(customer_id=customer_id, account_id=account_id).first()
    if exists is None:
        raise ValidationError("invalid_customer_id", f"Unknown customer: {customer_id}")


# --- Lookups ---

def get_appointment(account_id: int, appointment_id: int) -> Appointment:
    appointment = Appointment.query.filter_by(
        appointment_id=appointment_id, account_id=account_id
    ).first()
    if appointment is None:
        raise NotFoundError("appointment_not_found", "Appointment not found")
    return appointment


def get_series(account_id: int, series_id: int) -> AppointmentSeries:
    series = AppointmentSeries.query.filter_by(series_id=series_id, account_id=account_id).first()
    if series is None:
        raise NotFoundError("series_not_found", "Appointment series not found")
    return series


def _series_occurrences(account_id: int, series_id: int):
    return Appointment.query.filter(
        Appointment.series_id == series_id,
        Appointment.account_id == account_id,
    )


def list_series_occurrences(account_id: int, series_id: int) -> tuple[AppointmentSeries, list[Appointment]]:
    series = get_series(account_id, series_id)
    occurrences = (
        _series_occurrences(account_id, series_id)
        .order_by(Appointment.appointment_date, Appointment.appointment_time, Appointment.appointment_id)
        .all()
    )
    return series, occurrences


# --- Writes ---

def _insert_occurrence(account_id: int, values: dict, selections, series_id: int | None) -> Appointment:
    appointment = Appointment(account_id=account_id, **values)
    if series_id is not None:
        appointment.series_id = series_id
        appointment.series_occurrence = appointment.appointment_date
    db.session.add(appointment)
    reconcile_appointment_services(appointment, selections, account_id)
    db.session.commit()
    return appointment


def _delete_occurrences(account_id: int, series_id: int, from_date: date | None = None) -> int:
    """Delete occurrences on or after ``from_date`` (all when None) through the ORM."""
    query = _series_occurrences(account_id, series_id)
    if from_date is not None:
        query = query.filter(Appointment.appointment_date >= from_date)
    rows = query.all()
    for row in rows:
        db.session.delete(row)
    db.session.commit()
    return len(rows)


def _delete_appointments(appointment_ids) -> int:
    removed = 0
    for appointment_id in appointment_ids:
        row = db.session.get(Appointment, appointment_id)
        if row is not None:
            db.session.delete(row)
            removed += 1
    db.session.commit()
    return removed


def _new_series(account_id: int, anchor_values: dict) -> AppointmentSeries:
    series = AppointmentSeries(
        account_id=account_id,
        recurrence_rule=anchor_values["recurrence_rule"],
        recurrence_count=anchor_values.get("recurrence_count"),
        recurrence_until=anchor_values.get("recurrence_until"),
        start_date=anchor_values["appointment_date"],
        start_time=anchor_values.get("appointment_time"),
        duration=anchor_values.get("duration"),
        notes=anchor_values.get("notes"),
        timezone=anchor_values.get("recurrence_timezone"),
        status="active",
        version=1,
    )
    db.session.add(series)
    db.session.commit()
    return series


def _describe(appointment: Appointment) -> str:
    when = appointment.appointment_date.isoformat()
    if appointment.appointment_time:
        when = f"{when} {appointment.appointment_time.strftime('%H:%M')}"
    return when


def _notify_customer(account_id: int, appointment: Appointment, notification_type: str, title: str,
                     body: str, push_client=None) -> None:
    customer = appointment.customer
    if customer is None or not customer.user_id:
        return
    try:
        send_push_notifications(
            [customer.user_id],
            title,
            body,
            notification_type,
            data={"appointmentId": appointment.appointment_id},
            account_id=account_id,
            push_client=push_client,
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to send %s notification", notification_type, exc_info=exc)


def _notify_status_change(account_id: int, appointment: Appointment, previous_status: str | None,
                          push_client=None) -> None:
    if appointment.status == previous_status or appointment.status not in STATUS_NOTIFICATIONS:
        return
    notification_type, title, verb = STATUS_NOTIFICATIONS[appointment.status]
    _notify_customer(
        account_id,
        appointment,
        notification_type,
        title,
        f"A tua marcacao de {_describe(appointment)} foi {verb}.",
        push_client=push_client,
    )


def create_appointments(account_id: int, payload: dict, push_client=None) -> tuple[Appointment, int, int | None]:
    """Book an appointment and, when a rule is given, every occurrence of its series.

    Returns ``(anchor, created_count, series_id)``.
    """
    raw_selections = payload.get("service_selections")
    selections = normalize_service_selections(raw_selections)
    validate_selections(raw_selections, selections)
    ensure_services_in_account(account_id, selections)

    values = coerce_appointment_fields(payload, BASE_FIELDS)
    if values.get("appointment_date") is None:
        raise ValidationError("appointment_date_required", "appointment_date is required")
    _ensure_customer(account_id, values.get("customer_id"))
    values.setdefault("status", "scheduled")
    values.setdefault("payment_status", "unpaid")

    recurrence = coerce_appointment_fields(payload, RECURRENCE_FIELDS)
    rule = recurrence.get("recurrence_rule")
    if rule:
        dates = build_recurrence_dates(
            values["appointment_date"],
            rule,
            recurrence.get("recurrence_count"),
            recurrence.get("recurrence_until"),
        )
    else:
        dates = [values["appointment_date"]]

    undo = UndoLog()
    created: list[Appointment] = []
    series_id = None
    try:
        if rule:
            series = _new_series(account_id, {**values, **recurrence})
            undo.record_insert(series)
            series_id = series.series_id
        for index, occurrence_date in enumerate(dates):
            occurrence_values = dict(values, appointment_date=occurrence_date)
            if index == 0:
                occurrence_values.update(recurrence)
            appointment = _insert_occurrence(account_id, occurrence_values, selections, series_id)
            undo.record_insert(appointment)
            created.append(appointment)
    except (SQLAlchemyError, ServiceError):
        db.session.rollback()
        current_app.logger.warning(
            "Appointment creation failed after %d writes; undoing", len(undo)
        )
        undo.replay()
        raise

    anchor = created[0]
    _notify_customer(
        account_id,
        anchor,
        "appointments.created",
        "Marcacao criada",
        f"A tua marcacao foi criada para {_describe(anchor)}.",
        push_client=push_client,
    )
    return anchor, len(created), series_id


def _rebuild_series(account_id: int, anchor: Appointment, expected_version: int | None, undo: UndoLog) -> int:
    """Refresh the series row and regenerate every occurrence after the anchor date."""
    series_id = anchor.series_id
    anchor_date = anchor.appointment_date

    series = db.session.get(AppointmentSeries, series_id)
    previous_series = {field: getattr(series, field) for field in SERIES_FIELDS} if series else None

    query = AppointmentSeries.query.filter(
        AppointmentSeries.series_id == series_id,
        AppointmentSeries.account_id == account_id,
    )
    if expected_version is not None:
        query = query.filter(AppointmentSeries.version == expected_version)
    updated = query.update(
        {
            "recurrence_rule": anchor.recurrence_rule,
            "recurrence_count": anchor.recurrence_count,
            "recurrence_until": anchor.recurrence_until,
            "timezone": anchor.recurrence_timezone,
            "start_date": anchor_date,
            "start_time": anchor.appointment_time,
            "duration": anchor.duration,
            "notes": anchor.notes,
            "status": "active",
            "version": AppointmentSeries.version + 1,
        },
        synchronize_session=False,
    )
    if not updated:
        db.session.rollback()
        raise ConflictError(
            "series_conflict",
            "The series was changed by another request; reload it and try again",
        )
    anchor.series_occurrence = anchor_date
    db.session.commit()
    if previous_series is not None:
        undo.record(
            f"update of series {series_id}",
            partial(_restore_fields, AppointmentSeries, series_id, previous_series),
        )

    # Stale occurrences are removed only after every new one is in place
    stale_ids = [
        row.appointment_id
        for row in _series_occurrences(account_id, series_id)
        .filter(Appointment.appointment_date >= anchor_date + timedelta(days=1))
        .all()
    ]

    dates = build_recurrence_dates(
        anchor_date, anchor.recurrence_rule, anchor.recurrence_count, anchor.recurrence_until
    )[1:]
    selections = selections_from_appointment(anchor)
    base = {
        "customer_id": anchor.customer_id,
        "appointment_time": anchor.appointment_time,
        "duration": anchor.duration,
        "notes": anchor.notes,
        "amount": anchor.amount,
        "reminder_offsets": anchor.reminder_offsets,
        "status": "scheduled",
        "payment_status": "unpaid",
    }
    for occurrence_date in dates:
        occurrence = _insert_occurrence(account_id, dict(base, appointment_date=occurrence_date), selections, series_id)
        undo.record_insert(occurrence)

    removed = _delete_appointments(stale_ids)

    current_app.logger.info(
        "Rebuilt series %s: removed %d occurrences, inserted %d", series_id, removed, len(dates)
    )
    return len(dates)


def detach_series(account_id: int, anchor: Appointment, series_id: int) -> int:
    """Turn a seriesed anchor back into a standalone appointment."""
    removed = _delete_occurrences(account_id, series_id, anchor.appointment_date + timedelta(days=1))
    _series_occurrences(account_id, series_id).update(
        {"series_id": None, "series_occurrence": None}, synchronize_session=False
    )
    AppointmentSeries.query.filter(
        AppointmentSeries.series_id == series_id,
        AppointmentSeries.account_id == account_id,
    ).delete(synchronize_session=False)
    db.session.commit()
    current_app.logger.info("Detached series %s: removed %d occurrences", series_id, removed)
    return removed


def _sync_series(account_id: int, appointment: Appointment, previous: dict, expected_version: int | None,
                 services_changed: bool, undo: UndoLog) -> None:
    series_id = previous["series_id"]

    if not appointment.recurrence_rule:
        if series_id is not None and previous["recurrence_rule"]:
            detach_series(account_id, appointment, series_id)
        return

    created = False
    if series_id is None:
        series = _new_series(
            account_id,
            {field: getattr(appointment, field) for field in UPDATABLE_FIELDS},
        )
        undo.record_insert(series)
        appointment.series_id = series.series_id
        appointment.series_occurrence = appointment.appointment_date
        db.session.commit()
        undo.record(
            f"series assignment of appointment {appointment.appointment_id}",
            partial(_unassign_series, appointment.appointment_id),
        )
        created = True

    watched = RECURRENCE_FIELDS + ("appointment_date", "appointment_time")
    changed = any(previous[field] != getattr(appointment, field) for field in watched)
    if created or changed or services_changed:
        _rebuild_series(account_id, appointment, None if created else expected_version, undo)


def update_appointment(account_id: int, appointment_id: int, payload: dict, push_client=None) -> Appointment:
    """Apply a PATCH. ``update_scope="single"`` touches only this row.

    With the default ``future`` scope a failed series sync also puts the
    anchor's own fields and services back, so the request can be retried.
    """
    scope = payload.get("update_scope") or "future"
    if scope not in UPDATE_SCOPES:
        raise ValidationError("invalid_update_scope", "update_scope must be 'single' or 'future'")

    has_selections = "service_selections" in payload
    selections = []
    if has_selections:
        raw_selections = payload.get("service_selections")
        selections = normalize_service_selections(raw_selections)
        validate_selections(raw_selections, selections)
        ensure_services_in_account(account_id, selections)

    updates = coerce_appointment_fields(payload, UPDATABLE_FIELDS)
    if not updates and not has_selections:
        raise ValidationError("no_fields_to_update", "Nothing to update")
    if "appointment_date" in updates and updates["appointment_date"] is None:
        raise ValidationError("invalid_appointment_date", "appointment_date cannot be cleared")
    for field in ("status", "payment_status"):
        if field in updates and updates[field] is None:
            raise ValidationError(f"invalid_{field}", f"{field} cannot be cleared")
    if "customer_id" in updates:
        _ensure_customer(account_id, updates["customer_id"])

    appointment = get_appointment(account_id, appointment_id)
    previous = {
        field: getattr(appointment, field)
        for field in RECURRENCE_FIELDS + ("appointment_date", "appointment_time", "series_id", "status")
    }
    expected_version = appointment.series.version if appointment.series is not None else None

    undo = UndoLog()
    if scope == "future":
        undo.record(
            f"update of appointment {appointment_id}",
            partial(
                _restore_fields,
                Appointment,
                appointment_id,
                {field: getattr(appointment, field) for field in ANCHOR_STATE_FIELDS},
            ),
        )
        if has_selections:
            undo.record(
                f"services of appointment {appointment_id}",
                partial(_restore_services, account_id, appointment_id, _services_snapshot(appointment)),
            )

    for field, value in updates.items():
        setattr(appointment, field, value)
    if has_selections:
        reconcile_appointment_services(appointment, selections, account_id)
    db.session.commit()

    if scope == "future":
        try:
            _sync_series(account_id, appointment, previous, expected_version, has_selections, undo)
        except (SQLAlchemyError, ServiceError):
            db.session.rollback()
            current_app.logger.warning(
                "Series sync for appointment %s failed; undoing %d writes", appointment_id, len(undo)
            )
            undo.replay()
            raise

    _notify_status_change(account_id, appointment, previous["status"], push_client=push_client)
    return appointment


def update_appointment_status(account_id: int, appointment_id: int, status, push_client=None) -> Appointment:
    status = _coerce_choice(APPOINTMENT_STATUSES)("status", status)
    appointment = get_appointment(account_id, appointment_id)
    previous_status = appointment.status
    appointment.status = status
    db.session.commit()
    _notify_status_change(account_id, appointment, previous_status, push_client=push_client)
    return appointment


def delete_appointment(account_id: int, appointment_id: int) -> None:
    appointment = get_appointment(account_id, appointment_id)
    db.session.delete(appointment)
    db.session.commit()


def delete_series_occurrences(account_id: int, series_id: int, from_date=None) -> dict:
    """Delete occurrences on or after ``from_date`` (every occurrence when omitted).

    The series row goes too once nothing references it.
    """
    series = get_series(account_id, series_id)
    cut = None
    if from_date not in (None, ""):
        cut = coerce_date(from_date)
        if cut is None:
            raise ValidationError("invalid_from_date", "from_date must be an ISO date (YYYY-MM-DD)")

    deleted = _delete_occurrences(account_id, series_id, cut)
    remaining = _series_occurrences(account_id, series_id).count()
    series_deleted = False
    if remaining == 0:
        db.session.delete(series)
        db.session.commit()
        series_deleted = True

    current_app.logger.info(
        "Deleted %d occurrences of series %s from %s", deleted, series_id, cut or "start"
    )
    return {"deleted": deleted, "remaining": remaining, "series_deleted": series_deleted}
