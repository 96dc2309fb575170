"""Database models for the Pawmi backend."""
from __future__ import annotations

from datetime import date, datetime, time, timezone

from .extensions import db


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: date | time | datetime | None) -> str | None:
    return value.isoformat() if value else None


class Account(db.Model):
    """A tenant; every business row is scoped by ``account_id``."""

    __tablename__ = "accounts"

    account_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    timezone = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.account_id,
            "name": self.name,
            "timezone": self.timezone,
        }


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
        }


class AccountMember(db.Model):
    __tablename__ = "account_members"

    member_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    role = db.Column(
        db.Enum(
            "owner",
            "admin",
            "member",
            name="account_member_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="member",
    )
    status = db.Column(
        db.Enum(
            "pending",
            "accepted",
            "declined",
            name="account_member_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
    )
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    account = db.relationship("Account")
    user = db.relationship("User")

    __table_args__ = (db.UniqueConstraint("account_id", "user_id", name="uq_account_member"),)


class Customer(db.Model):
    __tablename__ = "customers"

    customer_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    # Set when the customer has an app login of their own; push target for booking updates
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100))
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.customer_id,
            "user_id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
        }


class Pet(db.Model):
    __tablename__ = "pets"

    pet_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    breed = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {"id": self.pet_id, "name": self.name, "breed": self.breed}


class Service(db.Model):
    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    name = db.Column(db.String(150), nullable=False)
    price = db.Column(db.Numeric(10, 2))
    duration = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    price_tiers = db.relationship("ServicePriceTier", back_populates="service", cascade="all, delete-orphan")
    addons = db.relationship("ServiceAddon", back_populates="service", cascade="all, delete-orphan")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "price": float(self.price) if self.price is not None else None,
            "duration": self.duration,
        }


class ServicePriceTier(db.Model):
    __tablename__ = "service_price_tiers"

    tier_id = db.Column(db.Integer, primary_key=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False, index=True)
    label = db.Column(db.String(100), nullable=False)
    price = db.Column(db.Numeric(10, 2))

    service = db.relationship("Service", back_populates="price_tiers")


class ServiceAddon(db.Model):
    __tablename__ = "service_addons"

    addon_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=True)
    name = db.Column(db.String(150), nullable=False)
    price = db.Column(db.Numeric(10, 2))

    service = db.relationship("Service", back_populates="addons")


class AppointmentSeries(db.Model):
    """Recurrence definition owning the generated appointment occurrences."""

    __tablename__ = "appointment_series"

    series_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    recurrence_rule = db.Column(db.String(255), nullable=False)
    recurrence_count = db.Column(db.Integer)
    recurrence_until = db.Column(db.Date)
    start_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time)
    duration = db.Column(db.Integer)
    notes = db.Column(db.Text)
    timezone = db.Column(db.String(64))
    status = db.Column(
        db.Enum(
            "active",
            "cancelled",
            name="appointment_series_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="active",
    )
    # Bumped on every rebuild; a rebuild with a stale version is rejected
    version = db.Column(db.Integer, nullable=False, default=1, server_default="1")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.series_id,
            "recurrence_rule": self.recurrence_rule,
            "recurrence_count": self.recurrence_count,
            "recurrence_until": _iso(self.recurrence_until),
            "start_date": _iso(self.start_date),
            "start_time": _iso(self.start_time),
            "duration": self.duration,
            "notes": self.notes,
            "timezone": self.timezone,
            "status": self.status,
            "version": self.version,
        }


class Appointment(db.Model):
    __tablename__ = "appointments"

    appointment_id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.customer_id"), nullable=True)
    appointment_date = db.Column(db.Date, nullable=False, index=True)
    appointment_time = db.Column(db.Time)
    duration = db.Column(db.Integer)
    notes = db.Column(db.Text)
    amount = db.Column(db.Numeric(10, 2))
    status = db.Column(
        db.Enum(
            "scheduled",
            "confirmed",
            "in_progress",
            "completed",
            "cancelled",
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="scheduled",
    )
    payment_status = db.Column(
        db.Enum(
            "unpaid",
            "paid",
            "partial",
            "refunded",
            name="appointment_payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="unpaid",
    )
    reminder_offsets = db.Column(db.JSON, nullable=True)

    # Recurrence fields are only set on the anchor; generated occurrences carry series_id
    recurrence_rule = db.Column(db.String(255))
    recurrence_count = db.Column(db.Integer)
    recurrence_until = db.Column(db.Date)
    recurrence_timezone = db.Column(db.String(64))
    series_id = db.Column(db.Integer, db.ForeignKey("appointment_series.series_id"), nullable=True, index=True)
    series_occurrence = db.Column(db.Date)

    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    customer = db.relationship("Customer")
    series = db.relationship("AppointmentSeries")
    appointment_services = db.relationship(
        "AppointmentService",
        back_populates="appointment",
        cascade="all, delete-orphan",
        order_by="AppointmentService.id",
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.appointment_id,
            "account_id": self.account_id,
            "customer_id": self.customer_id,
            "customer": self.customer.to_dict() if self.customer else None,
            "appointment_date": _iso(self.appointment_date),
            "appointment_time": _iso(self.appointment_time),
            "duration": self.duration,
            "notes": self.notes,
            "amount": float(self.amount) if self.amount is not None else None,
            "status": self.status,
            "payment_status": self.payment_status,
            "reminder_offsets": self.reminder_offsets,
            "recurrence_rule": self.recurrence_rule,
            "recurrence_count": self.recurrence_count,
            "recurrence_until": _iso(self.recurrence_until),
            "recurrence_timezone": self.recurrence_timezone,
            "series_id": self.series_id,
            "series_occurrence": _iso(self.series_occurrence),
            "appointment_services": [row.to_dict() for row in self.appointment_services],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class AppointmentService(db.Model):
    """A (service, pet) pair booked on an appointment, with tier and addons."""

    __tablename__ = "appointment_services"

    id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(
        db.Integer,
        db.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    pet_id = db.Column(db.Integer, db.ForeignKey("pets.pet_id"), nullable=True)
    price_tier_id = db.Column(db.Integer, db.ForeignKey("service_price_tiers.tier_id"), nullable=True)
    price_tier_label = db.Column(db.String(100))
    price_tier_price = db.Column(db.Numeric(10, 2))

    appointment = db.relationship("Appointment", back_populates="appointment_services")
    service = db.relationship("Service")
    pet = db.relationship("Pet")
    addons = db.relationship(
        "AppointmentServiceAddon",
        back_populates="appointment_service",
        cascade="all, delete-orphan",
        order_by="AppointmentServiceAddon.id",
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "service_id": self.service_id,
            "pet_id": self.pet_id,
            "price_tier_id": self.price_tier_id,
            "price_tier_label": self.price_tier_label,
            "price_tier_price": float(self.price_tier_price) if self.price_tier_price is not None else None,
            "service": self.service.to_dict() if self.service else None,
            "pet": self.pet.to_dict() if self.pet else None,
            "addons": [addon.to_dict() for addon in self.addons],
        }


class AppointmentServiceAddon(db.Model):
    __tablename__ = "appointment_service_addons"

    id = db.Column(db.Integer, primary_key=True)
    appointment_service_id = db.Column(
        db.Integer,
        db.ForeignKey("appointment_services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    service_addon_id = db.Column(db.Integer, db.ForeignKey("service_addons.addon_id"), nullable=False)
    name = db.Column(db.String(150))
    price = db.Column(db.Numeric(10, 2))

    appointment_service = db.relationship("AppointmentService", back_populates="addons")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "service_addon_id": self.service_addon_id,
            "name": self.name,
            "price": float(self.price) if self.price is not None else None,
        }


class NotificationPreference(db.Model):
    __tablename__ = "notification_preferences"

    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    preferences = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class NotificationDevice(db.Model):
    __tablename__ = "notification_devices"

    device_pk = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    push_token = db.Column(db.String(255), nullable=False, unique=True)
    device_id = db.Column(db.String(255))
    platform = db.Column(db.String(20))
    provider = db.Column(db.String(20), nullable=False, server_default="expo")
    enabled = db.Column(db.Boolean, nullable=False, default=True, server_default="1")
    last_seen_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.device_pk,
            "user_id": self.user_id,
            "push_token": self.push_token,
            "device_id": self.device_id,
            "platform": self.platform,
            "provider": self.provider,
            "enabled": bool(self.enabled),
            "last_seen_at": _iso(self.last_seen_at),
        }


class Notification(db.Model):
    """Push delivery log; reminder rows double as the dedupe ledger."""

    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.account_id"), nullable=True)
    type = db.Column(db.String(64), nullable=False, index=True)
    channel = db.Column(db.String(20), nullable=False, server_default="push")
    title = db.Column(db.String(200))
    body = db.Column(db.Text)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(
        db.Enum(
            "pending",
            "sent",
            "failed",
            name="notification_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
    )
    error = db.Column(db.Text)
    sent_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "type": self.type,
            "channel": self.channel,
            "title": self.title,
            "body": self.body,
            "payload": self.payload or {},
            "status": self.status,
            "error": self.error,
            "sent_at": _iso(self.sent_at),
            "created_at": _iso(self.created_at),
        }
