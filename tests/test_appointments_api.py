"""Tests for the appointment CRUD routes."""
from __future__ import annotations

from conftest import (ACCOUNT_ID, CUSTOMER_TOKEN, CUSTOMER_USER_ID, HEADERS, OTHER_ACCOUNT_ID, PET_ID, booking,
                      selection)

from pawmi.extensions import db
from pawmi.models import AccountMember, Appointment, AppointmentService, Notification

OTHER_HEADERS = {"X-Account-Id": str(OTHER_ACCOUNT_ID)}


def _create(client, **overrides) -> dict:
    response = client.post("/appointments", json=booking(**overrides), headers=HEADERS)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def test_create_one_off_appointment(client, tenant, app) -> None:
    body = _create(client)

    assert body["meta"] == {"created": 1, "series_id": None}
    data = body["data"]
    assert data["appointment_date"] == "2024-07-01"
    assert data["appointment_time"] == "10:00:00"
    assert data["status"] == "scheduled"
    assert data["payment_status"] == "unpaid"
    assert data["series_id"] is None
    assert [row["pet_id"] for row in data["appointment_services"]] == [PET_ID]

    with app.app_context():
        assert Appointment.query.count() == 1
        assert AppointmentService.query.count() == 1


def test_create_recurring_appointment_expands_series(client, tenant, app) -> None:
    body = _create(client, recurrence_rule="FREQ=WEEKLY;INTERVAL=2", recurrence_count=4)

    series_id = body["meta"]["series_id"]
    assert body["meta"]["created"] == 4
    assert series_id is not None
    assert body["data"]["recurrence_rule"] == "FREQ=WEEKLY;INTERVAL=2"

    with app.app_context():
        rows = Appointment.query.order_by(Appointment.appointment_date).all()
        assert [row.appointment_date.isoformat() for row in rows] == [
            "2024-07-01", "2024-07-15", "2024-07-29", "2024-08-12",
        ]
        assert all(row.series_id == series_id for row in rows)
        assert all(row.series_occurrence == row.appointment_date for row in rows)
        # only the anchor carries the rule
        assert [row.recurrence_rule for row in rows] == ["FREQ=WEEKLY;INTERVAL=2", None, None, None]
        assert AppointmentService.query.count() == 4


def test_create_requires_service_selections(client, tenant) -> None:
    response = client.post("/appointments", json=booking(service_selections=[]), headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "service_selections_required"


def test_create_requires_pet_on_every_selection(client, tenant) -> None:
    payload = booking(service_selections=[selection(), selection(pet_id=None)])
    response = client.post("/appointments", json=payload, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "pet_required"


def test_create_requires_date(client, tenant) -> None:
    response = client.post("/appointments", json=booking(appointment_date=None), headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "appointment_date_required"


def test_create_rejects_bad_time(client, tenant) -> None:
    response = client.post("/appointments", json=booking(appointment_time="half past ten"), headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_appointment_time"


def test_missing_account_header_is_unauthorized(client, tenant) -> None:
    response = client.post("/appointments", json=booking())

    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_list_appointments_is_tenant_scoped_and_filtered(client, tenant) -> None:
    _create(client, recurrence_rule="FREQ=WEEKLY", recurrence_count=3)

    response = client.get("/appointments?date_from=2024-07-05", headers=HEADERS)
    body = response.get_json()
    assert response.status_code == 200
    assert [row["appointment_date"] for row in body["data"]] == ["2024-07-08", "2024-07-15"]
    assert body["meta"]["total"] == 2

    other = client.get("/appointments", headers=OTHER_HEADERS)
    assert other.get_json()["data"] == []


def test_list_appointments_rejects_bad_limit(client, tenant) -> None:
    response = client.get("/appointments?limit=lots", headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_parameters"


def test_get_appointment_outside_tenant_is_not_found(client, tenant) -> None:
    appointment_id = _create(client)["data"]["id"]

    assert client.get(f"/appointments/{appointment_id}", headers=HEADERS).status_code == 200
    response = client.get(f"/appointments/{appointment_id}", headers=OTHER_HEADERS)
    assert response.status_code == 404
    assert response.get_json()["error"] == "appointment_not_found"


def test_patch_without_fields_is_rejected(client, tenant) -> None:
    appointment_id = _create(client)["data"]["id"]

    response = client.patch(f"/appointments/{appointment_id}", json={"update_scope": "single"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "no_fields_to_update"


def test_patch_rejects_unknown_scope(client, tenant) -> None:
    appointment_id = _create(client)["data"]["id"]

    response = client.patch(
        f"/appointments/{appointment_id}", json={"notes": "x", "update_scope": "all"}, headers=HEADERS
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_update_scope"


def test_patch_updates_plain_fields(client, tenant) -> None:
    appointment_id = _create(client)["data"]["id"]

    response = client.patch(
        f"/appointments/{appointment_id}",
        json={"notes": "Cao nervoso", "payment_status": "paid", "reminder_offsets": [60, 15, 15]},
        headers=HEADERS,
    )

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert data["notes"] == "Cao nervoso"
    assert data["payment_status"] == "paid"
    assert data["reminder_offsets"] == [15, 60]


def test_status_update_notifies_the_customer(client, tenant, app, push_client) -> None:
    with app.app_context():
        db.session.add(AccountMember(account_id=ACCOUNT_ID, user_id=CUSTOMER_USER_ID, status="accepted"))
        db.session.commit()
    appointment_id = _create(client)["data"]["id"]
    push_client.sent.clear()

    response = client.patch(f"/appointments/{appointment_id}/status", json={"status": "confirmed"}, headers=HEADERS)

    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "confirmed"
    assert [message["to"] for message in push_client.sent] == [CUSTOMER_TOKEN]
    assert push_client.sent[0]["data"] == {"appointmentId": appointment_id, "type": "appointments.confirmed"}
    with app.app_context():
        types = [row.type for row in Notification.query.order_by(Notification.notification_id)]
        assert types == ["appointments.created", "appointments.confirmed"]


def test_status_update_rejects_unknown_status(client, tenant) -> None:
    appointment_id = _create(client)["data"]["id"]

    response = client.patch(f"/appointments/{appointment_id}/status", json={"status": "lost"}, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_status"


def test_delete_appointment_cascades_services(client, tenant, app) -> None:
    appointment_id = _create(client, service_selections=[selection(addon_ids=[500])])["data"]["id"]

    response = client.delete(f"/appointments/{appointment_id}", headers=HEADERS)

    assert response.status_code == 204
    with app.app_context():
        assert Appointment.query.count() == 0
        assert AppointmentService.query.count() == 0
