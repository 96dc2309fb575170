#!/usr/bin/env python3
"""Seed a demo grooming account with a catalog, a customer and a pet for local development."""
from __future__ import annotations

import argparse
import sys
from decimal import Decimal
from pathlib import Path

# Ensure the project root is on sys.path so ``pawmi`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pawmi import create_app
from pawmi.extensions import db
from pawmi.models import (Account, AccountMember, Customer, NotificationDevice,
                          NotificationPreference, Pet, Service, ServiceAddon, ServicePriceTier, User)
from pawmi.push import is_push_token

SAMPLE_SERVICES = [
    {
        "name": "Banho",
        "price": "25.00",
        "duration": 60,
        "tiers": [("Pequeno", "20.00"), ("Medio", "25.00"), ("Grande", "35.00")],
        "addons": [("Perfume", "3.00"), ("Corte de unhas", "5.00")],
    },
    {
        "name": "Tosquia completa",
        "price": "45.00",
        "duration": 120,
        "tiers": [("Pequeno", "40.00"), ("Grande", "60.00")],
        "addons": [("Laco", "2.00")],
    },
]


def seed(owner_email: str, account_name: str, timezone: str, push_token: str | None) -> None:
    app = create_app()

    with app.app_context():
        db.create_all()

        owner = User.query.filter_by(email=owner_email).first()
        if owner is None:
            owner = User(name="Demo Owner", email=owner_email)
            db.session.add(owner)
            db.session.flush()
            print(f"Created owner user: {owner_email}")

        account = Account.query.filter_by(name=account_name).first()
        if account is None:
            account = Account(name=account_name, timezone=timezone)
            db.session.add(account)
            db.session.flush()
            db.session.add(AccountMember(account_id=account.account_id, user_id=owner.user_id,
                                         role="owner", status="accepted"))
            print(f"Created account '{account_name}' (id {account.account_id})")

        if not Service.query.filter_by(account_id=account.account_id).first():
            for sample in SAMPLE_SERVICES:
                service = Service(account_id=account.account_id, name=sample["name"],
                                  price=Decimal(sample["price"]), duration=sample["duration"])
                for label, price in sample["tiers"]:
                    service.price_tiers.append(ServicePriceTier(label=label, price=Decimal(price)))
                for name, price in sample["addons"]:
                    service.addons.append(ServiceAddon(account_id=account.account_id, name=name,
                                                       price=Decimal(price)))
                db.session.add(service)
            print(f"Added {len(SAMPLE_SERVICES)} services")

        customer = Customer.query.filter_by(account_id=account.account_id).first()
        if customer is None:
            customer = Customer(account_id=account.account_id, first_name="Rita", last_name="Sousa",
                                phone="+351910000000")
            db.session.add(customer)
            db.session.flush()
            db.session.add(Pet(account_id=account.account_id, customer_id=customer.customer_id,
                               name="Bolinha", breed="Caniche"))
            print("Added demo customer and pet")

        # Reminders go to account members; push is opt-in
        if db.session.get(NotificationPreference, owner.user_id) is None:
            db.session.add(NotificationPreference(user_id=owner.user_id,
                                                  preferences={"push": {"enabled": True}}))

        if push_token:
            if not is_push_token(push_token):
                print(f"Error: '{push_token}' is not an Expo push token")
                db.session.rollback()
                return
            if not NotificationDevice.query.filter_by(push_token=push_token).first():
                db.session.add(NotificationDevice(user_id=owner.user_id, push_token=push_token,
                                                  provider="expo", enabled=True))
                print("Registered push token for owner")

        db.session.commit()
        print(f"Demo account ready. Use header X-Account-Id: {account.account_id}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo Pawmi account for local testing.")
    parser.add_argument("--owner-email", default="owner@pawmi.local", help="Owner user email")
    parser.add_argument("--name", default="Pawmi Demo", help="Account name")
    parser.add_argument("--timezone", default="Europe/Lisbon", help="Account timezone")
    parser.add_argument("--push-token", default=None, help="Optional Expo push token for the owner")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    seed(args.owner_email, args.name, args.timezone, args.push_token)


if __name__ == "__main__":
    main()
