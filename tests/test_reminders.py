"""Tests for the reminder dispatcher and its cron route."""
from __future__ import annotations

from datetime import date, datetime, time, timezone

import pytest
from conftest import ACCOUNT_ID, CUSTOMER_ID, OWNER_ID, OWNER_TOKEN, STAFF_ID

from pawmi import create_app
from pawmi.config import TestConfig
from pawmi.extensions import db
from pawmi.models import Account, Appointment, Notification, NotificationDevice, NotificationPreference
from pawmi.reminders import dispatch_reminders, format_offset_label


def at(hour: int, minute: int) -> datetime:
    return datetime(2024, 6, 10, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def appointment_id(app, tenant) -> int:
    with app.app_context():
        appointment = Appointment(
            account_id=ACCOUNT_ID,
            customer_id=CUSTOMER_ID,
            appointment_date=date(2024, 6, 10),
            appointment_time=time(14, 0),
            status="scheduled",
            payment_status="unpaid",
        )
        db.session.add(appointment)
        db.session.commit()
        return appointment.appointment_id


def _run(app, now: datetime, **kwargs) -> dict:
    with app.app_context():
        return dispatch_reminders(now=now, **kwargs)


def _ledger(app) -> list[tuple[int, str, dict]]:
    with app.app_context():
        rows = Notification.query.filter_by(type="appointments.reminder").order_by(Notification.notification_id)
        return [(row.user_id, row.status, row.payload) for row in rows]


@pytest.mark.parametrize(
    "minutes, label",
    [(30, "30 min"), (90, "90 min"), (60, "1 h"), (120, "2 h"), (1440, "1 dia"), (2880, "2 dias")],
)
def test_format_offset_label(minutes, label) -> None:
    assert format_offset_label(minutes) == label


def test_reminder_end_to_end(app, appointment_id, push_client) -> None:
    early = _run(app, at(13, 0))
    assert early == {"processed": 1, "reminders": 0, "sent": 0, "failed": 0, "skipped": 0}
    assert push_client.sent == []

    due = _run(app, at(13, 30))
    assert due == {"processed": 1, "reminders": 1, "sent": 1, "failed": 0, "skipped": 0}
    [message] = push_client.sent
    assert message["to"] == OWNER_TOKEN
    assert message["title"] == "Lembrete de marcacao"
    assert message["body"] == "Tens uma marcacao em 30 min (2024-06-10 14:00)."
    assert message["data"]["appointmentId"] == appointment_id
    assert message["data"]["reminderOffsetMinutes"] == 30
    assert message["data"]["type"] == "appointments.reminder"

    rerun = _run(app, at(13, 35))
    assert rerun["reminders"] == 0
    assert len(push_client.sent) == 1

    assert _ledger(app) == [
        (OWNER_ID, "sent", {
            "appointmentId": appointment_id,
            "reminderOffsetMinutes": 30,
            "reminderAt": "2024-06-10T13:30:00+00:00",
        }),
    ]


def test_failed_send_is_retried_on_the_next_run(app, appointment_id, push_client) -> None:
    push_client.receipts[OWNER_TOKEN] = {"status": "error", "message": "Rate exceeded"}
    first = _run(app, at(13, 30))
    assert first["failed"] == 1

    push_client.receipts.clear()
    second = _run(app, at(13, 35))
    assert second["sent"] == 1

    assert [(user_id, status) for user_id, status, _ in _ledger(app)] == [
        (OWNER_ID, "failed"),
        (OWNER_ID, "sent"),
    ]


def test_whole_chunk_failure_is_counted_not_raised(app, appointment_id, push_client) -> None:
    push_client.fail_with = "push service unavailable"

    summary = _run(app, at(13, 30))

    assert summary["failed"] == 1
    assert summary["sent"] == 0
    with app.app_context():
        row = Notification.query.filter_by(type="appointments.reminder").one()
        assert row.status == "failed"
        assert row.error == "push service unavailable"


def test_unregistered_device_is_disabled(app, appointment_id, push_client) -> None:
    push_client.receipts[OWNER_TOKEN] = {
        "status": "error",
        "message": "not a registered push notification recipient",
        "details": {"error": "DeviceNotRegistered"},
    }

    summary = _run(app, at(13, 30))

    assert summary["failed"] == 1
    with app.app_context():
        device = NotificationDevice.query.filter_by(push_token=OWNER_TOKEN).one()
        assert device.enabled is False


def test_appointment_offsets_override_user_offsets(app, appointment_id, push_client) -> None:
    with app.app_context():
        db.session.get(Appointment, appointment_id).reminder_offsets = [120]
        db.session.commit()

    assert _run(app, at(13, 30))["reminders"] == 0
    due = _run(app, at(12, 0))
    assert due["sent"] == 1
    assert push_client.sent[0]["body"].startswith("Tens uma marcacao em 2 h")


def test_user_offsets_come_from_preferences(app, appointment_id, push_client) -> None:
    with app.app_context():
        prefs = db.session.get(NotificationPreference, OWNER_ID)
        prefs.preferences = {"push": {"enabled": True, "appointments": {"reminder_offsets": [1440, 60]}}}
        db.session.commit()

    assert _run(app, at(13, 30))["reminders"] == 0
    assert _run(app, at(13, 0))["sent"] == 1
    assert _run(app, datetime(2024, 6, 9, 14, 5, tzinfo=timezone.utc))["sent"] == 1


def test_reminder_toggle_off_skips_user(app, appointment_id, push_client) -> None:
    with app.app_context():
        prefs = db.session.get(NotificationPreference, OWNER_ID)
        prefs.preferences = {"push": {"enabled": True, "appointments": {"reminder": False}}}
        db.session.commit()

    assert _run(app, at(13, 30)) == {"processed": 0, "reminders": 0, "sent": 0, "failed": 0, "skipped": 0}


def test_staff_member_with_push_enabled_gets_the_same_push(app, appointment_id, push_client) -> None:
    with app.app_context():
        db.session.add(NotificationPreference(user_id=STAFF_ID, preferences={"push": {"enabled": True}}))
        db.session.add(NotificationDevice(user_id=STAFF_ID, push_token="ExpoPushToken[staff]", enabled=True))
        db.session.commit()

    summary = _run(app, at(13, 30))

    assert summary["reminders"] == 2
    assert sorted(message["to"] for message in push_client.sent) == ["ExpoPushToken[staff]", OWNER_TOKEN]


@pytest.mark.parametrize("status", ["cancelled", "completed", "in_progress"])
def test_excluded_statuses_are_ignored(app, appointment_id, push_client, status) -> None:
    with app.app_context():
        db.session.get(Appointment, appointment_id).status = status
        db.session.commit()

    summary = _run(app, at(13, 30))

    assert summary["processed"] == 0
    assert push_client.sent == []


def test_account_timezone_applies_to_naive_times(app, appointment_id, push_client) -> None:
    with app.app_context():
        db.session.get(Account, ACCOUNT_ID).timezone = "Europe/Lisbon"
        db.session.commit()

    # 14:00 in Lisbon during summer time is 13:00 UTC
    assert _run(app, at(13, 30))["reminders"] == 0
    assert _run(app, at(12, 30))["sent"] == 1


def test_window_is_configurable(app, appointment_id, push_client) -> None:
    assert _run(app, at(13, 10))["reminders"] == 0
    assert _run(app, at(13, 10), window_minutes=25)["sent"] == 1


def test_cron_route_requires_the_secret(client, tenant) -> None:
    assert client.post("/appointments/reminders").status_code == 401
    wrong = client.post("/appointments/reminders", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    assert wrong.get_json()["error"] == "unauthorized"
    non_ascii = client.post("/appointments/reminders", headers={"X-Cron-Secret": "sécret"})
    assert non_ascii.status_code == 401


@pytest.mark.parametrize(
    "headers",
    [{"Authorization": "Bearer test-cron-secret"}, {"X-Cron-Secret": "test-cron-secret"}],
)
def test_cron_route_returns_summary(client, tenant, headers) -> None:
    response = client.post("/appointments/reminders", headers=headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is True
    assert set(body) == {"ok", "processed", "reminders", "sent", "failed", "skipped"}


def test_cron_route_is_closed_without_configured_secret() -> None:
    class NoSecretConfig(TestConfig):
        CRON_SECRET = None

    client = create_app(NoSecretConfig).test_client()

    response = client.post("/appointments/reminders", headers={"X-Cron-Secret": "anything"})
    assert response.status_code == 401
