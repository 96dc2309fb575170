"""Scheduled appointment reminders.

One call is one run: work out which (appointment, member, offset) reminders
fall inside ``now +/- window``, drop those already logged, and push the rest
grouped per (appointment, offset). Runs are expected every few minutes from
cron, so the window overlaps between runs and the notification log is what
keeps a reminder from going out twice.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from .models import Account, AccountMember, Appointment, Notification, utc_now
from .notifications import load_preferences_for_users, send_push_notifications
from .preferences import REMINDER_MAX_OFFSET_MINUTES, normalize_reminder_offsets, should_send

REMINDER_TYPE = "appointments.reminder"
REMINDER_TITLE = "Lembrete de marcacao"
REMINDER_WINDOW_MINUTES = 10
EXCLUDED_STATUSES = ("cancelled", "completed", "in_progress")


def empty_summary() -> dict[str, int]:
    return {"processed": 0, "reminders": 0, "sent": 0, "failed": 0, "skipped": 0}


def format_offset_label(offset_minutes: int) -> str:
    if offset_minutes % 1440 == 0:
        days = offset_minutes // 1440
        return f"{days} dia" if days == 1 else f"{days} dias"
    if offset_minutes % 60 == 0:
        return f"{offset_minutes // 60} h"
    return f"{offset_minutes} min"


def resolve_timezone(*names: str | None) -> tzinfo:
    """First zone name that resolves wins; UTC when none does."""
    for name in names:
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            current_app.logger.warning("Ignoring unknown timezone %r", name)
    return timezone.utc


def appointment_datetime(appointment: Appointment, zone: tzinfo) -> datetime | None:
    """Aware UTC start of the appointment, or None without a date and time."""
    if appointment.appointment_date is None or appointment.appointment_time is None:
        return None
    local = datetime.combine(appointment.appointment_date, appointment.appointment_time, tzinfo=zone)
    return local.astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ledger_key(row: Notification) -> tuple[int, int, int] | None:
    payload = row.payload if isinstance(row.payload, dict) else {}
    appointment_id = payload.get("appointmentId") or payload.get("appointment_id")
    offset = (
        payload.get("reminderOffsetMinutes")
        or payload.get("offsetMinutes")
        or payload.get("offset_minutes")
    )
    if not row.user_id or not appointment_id or not offset:
        return None
    try:
        return row.user_id, int(appointment_id), int(offset)
    except (TypeError, ValueError):
        return None


def _reminder_body(appointment: Appointment, offset: int) -> str:
    parts = [appointment.appointment_date.isoformat()]
    if appointment.appointment_time:
        parts.append(appointment.appointment_time.strftime("%H:%M"))
    return f"Tens uma marcacao em {format_offset_label(offset)} ({' '.join(parts)})."


def dispatch_reminders(now: datetime | None = None, window_minutes: int | None = None,
                       push_client=None) -> dict[str, int]:
    """Run one reminder pass and return counts for the run."""
    summary = empty_summary()
    now = _as_utc(now or utc_now())
    if window_minutes is None:
        window_minutes = current_app.config.get("REMINDER_WINDOW_MINUTES", REMINDER_WINDOW_MINUTES)
    window = timedelta(minutes=max(1, int(window_minutes or REMINDER_WINDOW_MINUTES)))
    horizon = timedelta(minutes=REMINDER_MAX_OFFSET_MINUTES) + window

    members_by_account: dict[int, set[int]] = defaultdict(set)
    for member in AccountMember.query.filter_by(status="accepted").all():
        members_by_account[member.account_id].add(member.user_id)
    user_ids = set().union(*members_by_account.values()) if members_by_account else set()
    if not user_ids:
        return summary

    enabled_users: set[int] = set()
    offsets_by_user: dict[int, list[int]] = {}
    for user_id, preferences in load_preferences_for_users(user_ids).items():
        if not should_send(preferences, REMINDER_TYPE):
            continue
        enabled_users.add(user_id)
        offsets = normalize_reminder_offsets(
            preferences["push"]["appointments"]["reminder_offsets"], []
        )
        if offsets:
            offsets_by_user[user_id] = offsets
    if not enabled_users:
        return summary

    # Local dates can sit a day either side of the UTC date
    range_start = (now - horizon).date() - timedelta(days=1)
    range_end = (now + horizon).date() + timedelta(days=1)
    appointments = (
        Appointment.query.filter(
            Appointment.account_id.in_(list(members_by_account)),
            Appointment.appointment_date >= range_start,
            Appointment.appointment_date <= range_end,
            Appointment.status.notin_(EXCLUDED_STATUSES),
        )
        .order_by(Appointment.appointment_date, Appointment.appointment_time, Appointment.appointment_id)
        .all()
    )
    summary["processed"] = len(appointments)
    if not appointments:
        return summary

    account_zones = {
        account.account_id: account.timezone
        for account in Account.query.filter(
            Account.account_id.in_({appointment.account_id for appointment in appointments})
        ).all()
    }
    default_zone = current_app.config.get("DEFAULT_TIMEZONE")

    ledger = Notification.query.filter(
        Notification.type == REMINDER_TYPE,
        Notification.user_id.in_(list(enabled_users)),
        Notification.created_at >= now - horizon,
        Notification.status != "failed",
    ).all()
    already_sent = {key for key in (_ledger_key(row) for row in ledger) if key}

    window_start = now - window
    window_end = now + window
    queued: dict[tuple[int, int], dict] = {}
    for appointment in appointments:
        zone = resolve_timezone(
            appointment.recurrence_timezone,
            account_zones.get(appointment.account_id),
            default_zone,
        )
        starts_at = appointment_datetime(appointment, zone)
        if starts_at is None:
            continue
        appointment_offsets = normalize_reminder_offsets(appointment.reminder_offsets, [])

        for user_id in sorted(members_by_account.get(appointment.account_id, ())):
            if user_id not in enabled_users:
                continue
            offsets = appointment_offsets or offsets_by_user.get(user_id) or []
            for offset in offsets:
                reminder_at = starts_at - timedelta(minutes=offset)
                if reminder_at < window_start or reminder_at > window_end:
                    continue
                key = (user_id, appointment.appointment_id, offset)
                if key in already_sent:
                    continue
                already_sent.add(key)
                entry = queued.setdefault(
                    (appointment.appointment_id, offset),
                    {"appointment": appointment, "offset": offset, "reminder_at": reminder_at, "user_ids": []},
                )
                entry["user_ids"].append(user_id)

    for entry in queued.values():
        appointment = entry["appointment"]
        summary["reminders"] += len(entry["user_ids"])
        result = send_push_notifications(
            entry["user_ids"],
            REMINDER_TITLE,
            _reminder_body(appointment, entry["offset"]),
            REMINDER_TYPE,
            data={
                "appointmentId": appointment.appointment_id,
                "reminderOffsetMinutes": entry["offset"],
                "reminderAt": entry["reminder_at"].isoformat(),
            },
            account_id=appointment.account_id,
            push_client=push_client,
            now=now,
        )
        summary["sent"] += result["sent"]
        summary["failed"] += result["failed"]
        summary["skipped"] += result["skipped"]

    current_app.logger.info(
        "Reminder run at %s: processed=%d reminders=%d sent=%d failed=%d skipped=%d",
        now.isoformat(),
        summary["processed"],
        summary["reminders"],
        summary["sent"],
        summary["failed"],
        summary["skipped"],
    )
    return summary
