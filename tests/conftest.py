"""pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pawmi import create_app  # noqa: E402
from pawmi.config import TestConfig  # noqa: E402
from pawmi.extensions import PUSH_CLIENT_KEY, db  # noqa: E402
from pawmi.models import (Account, AccountMember, Customer, NotificationDevice,  # noqa: E402
                          NotificationPreference, Pet, Service, ServiceAddon, ServicePriceTier, User)
from pawmi.push import PushSendError  # noqa: E402

ACCOUNT_ID = 1
OTHER_ACCOUNT_ID = 2
OWNER_ID = 10
STAFF_ID = 11
CUSTOMER_USER_ID = 20
CUSTOMER_ID = 100
PET_ID = 200
SECOND_PET_ID = 201
BATH_ID = 300
HAIRCUT_ID = 301
OTHER_SERVICE_ID = 302
SMALL_TIER_ID = 400
LARGE_TIER_ID = 401
OTHER_TIER_ID = 402
HAIRCUT_TIER_ID = 403
PERFUME_ID = 500
NAILS_ID = 501
OTHER_ADDON_ID = 502
OWNER_TOKEN = "ExponentPushToken[owner-device]"
CUSTOMER_TOKEN = "ExponentPushToken[customer-device]"

HEADERS = {"X-Account-Id": str(ACCOUNT_ID)}


class FakePushClient:
    """Stands in for ExpoPushClient; records messages and answers with canned receipts."""

    def __init__(self, chunk_size: int = 100) -> None:
        self.chunk_size = chunk_size
        self.sent: list[dict] = []
        self.receipts: dict[str, dict] = {}
        self.fail_with: str | None = None

    def chunk(self, messages):
        for start in range(0, len(messages), self.chunk_size):
            yield messages[start:start + self.chunk_size]

    def send(self, messages):
        if self.fail_with:
            raise PushSendError(self.fail_with)
        self.sent.extend(messages)
        return [self.receipts.get(message["to"], {"status": "ok"}) for message in messages]


@pytest.fixture
def push_client():
    return FakePushClient()


@pytest.fixture
def app(push_client):
    app = create_app(TestConfig)
    app.extensions[PUSH_CLIENT_KEY] = push_client
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tenant(app):
    """Two accounts; account 1 has an owner with push enabled, a customer, two pets and a catalog."""
    with app.app_context():
        db.session.add_all([
            Account(account_id=ACCOUNT_ID, name="Pawmi Lisboa", timezone="UTC"),
            Account(account_id=OTHER_ACCOUNT_ID, name="Other Salon", timezone="UTC"),
            User(user_id=OWNER_ID, name="Olivia Owner", email="owner@example.com"),
            User(user_id=STAFF_ID, name="Sam Staff", email="staff@example.com"),
            User(user_id=CUSTOMER_USER_ID, name="Rita Sousa", email="rita@example.com"),
        ])
        db.session.flush()

        db.session.add_all([
            AccountMember(account_id=ACCOUNT_ID, user_id=OWNER_ID, role="owner", status="accepted"),
            AccountMember(account_id=ACCOUNT_ID, user_id=STAFF_ID, role="member", status="accepted"),
            Customer(customer_id=CUSTOMER_ID, account_id=ACCOUNT_ID, user_id=CUSTOMER_USER_ID,
                     first_name="Rita", last_name="Sousa"),
            Service(service_id=BATH_ID, account_id=ACCOUNT_ID, name="Banho", price=Decimal("25.00"), duration=60),
            Service(service_id=HAIRCUT_ID, account_id=ACCOUNT_ID, name="Tosquia", price=Decimal("45.00"),
                    duration=120),
            Service(service_id=OTHER_SERVICE_ID, account_id=OTHER_ACCOUNT_ID, name="Banho",
                    price=Decimal("20.00"), duration=60),
        ])
        db.session.flush()

        db.session.add_all([
            Pet(pet_id=PET_ID, account_id=ACCOUNT_ID, customer_id=CUSTOMER_ID, name="Bolinha"),
            Pet(pet_id=SECOND_PET_ID, account_id=ACCOUNT_ID, customer_id=CUSTOMER_ID, name="Farrusco"),
            ServicePriceTier(tier_id=SMALL_TIER_ID, service_id=BATH_ID, label="Pequeno", price=Decimal("20.00")),
            ServicePriceTier(tier_id=LARGE_TIER_ID, service_id=BATH_ID, label="Grande", price=Decimal("35.00")),
            ServicePriceTier(tier_id=OTHER_TIER_ID, service_id=OTHER_SERVICE_ID, label="Pequeno",
                             price=Decimal("15.00")),
            ServicePriceTier(tier_id=HAIRCUT_TIER_ID, service_id=HAIRCUT_ID, label="Grande", price=Decimal("60.00")),
            ServiceAddon(addon_id=PERFUME_ID, account_id=ACCOUNT_ID, service_id=BATH_ID, name="Perfume",
                         price=Decimal("3.00")),
            ServiceAddon(addon_id=NAILS_ID, account_id=ACCOUNT_ID, service_id=BATH_ID, name="Corte de unhas",
                         price=Decimal("5.00")),
            ServiceAddon(addon_id=OTHER_ADDON_ID, account_id=OTHER_ACCOUNT_ID, service_id=OTHER_SERVICE_ID,
                         name="Laco", price=Decimal("2.00")),
            NotificationPreference(user_id=OWNER_ID, preferences={"push": {"enabled": True}}),
            NotificationPreference(user_id=CUSTOMER_USER_ID, preferences={"push": {"enabled": True}}),
            NotificationDevice(user_id=OWNER_ID, push_token=OWNER_TOKEN, platform="ios", enabled=True),
            NotificationDevice(user_id=CUSTOMER_USER_ID, push_token=CUSTOMER_TOKEN, platform="android",
                               enabled=True),
        ])
        db.session.commit()

    return {"account_id": ACCOUNT_ID, "headers": HEADERS}


def selection(service_id: int = BATH_ID, pet_id: int | None = PET_ID, **extra) -> dict:
    return {"service_id": service_id, "pet_id": pet_id, **extra}


def booking(**overrides) -> dict:
    payload = {
        "customer_id": CUSTOMER_ID,
        "appointment_date": "2024-07-01",
        "appointment_time": "10:00",
        "duration": 60,
        "amount": 25,
        "service_selections": [selection()],
    }
    payload.update(overrides)
    return payload
