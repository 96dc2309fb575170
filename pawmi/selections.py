"""Service selections attached to an appointment.

A selection is one ``(service, pet)`` pair with an optional price tier and
addons. Callers distinguish "no opinion" from "clear it": when the tier or
addon keys are absent from a payload entry the stored values are kept, when
they are present (even as ``null``/``[]``) they replace what is stored.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from .errors import ValidationError
from .extensions import db
from .models import (Appointment, AppointmentService, AppointmentServiceAddon, Service,
                     ServiceAddon, ServicePriceTier)

TIER_KEYS = ("price_tier_id", "tier_id", "price_tier_label", "price_tier_price")
ADDON_KEYS = ("addon_ids", "addons")


@dataclass
class ServiceSelection:
    service_id: int
    pet_id: int | None = None
    price_tier_id: int | None = None
    price_tier_label: str | None = None
    price_tier_price: float | None = None
    addon_ids: list[int] | None = None
    has_tier_field: bool = False
    has_addon_field: bool = False
    key: tuple = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.key = (self.service_id, self.pet_id)


def _as_id(value: object) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_price(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _addon_ids(entry: dict) -> list[int] | None:
    if isinstance(entry.get("addon_ids"), list):
        raw_ids = entry["addon_ids"]
    elif isinstance(entry.get("addons"), list):
        raw_ids = [addon.get("id") for addon in entry["addons"] if isinstance(addon, dict)]
    else:
        return None
    return [addon_id for addon_id in (_as_id(value) for value in raw_ids) if addon_id]


def normalize_service_selections(raw: object) -> list[ServiceSelection]:
    """Turn a raw payload list into selections; entries without a service are dropped."""
    if not isinstance(raw, list):
        return []
    selections = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        service_id = _as_id(entry.get("service_id"))
        if not service_id:
            continue
        selections.append(
            ServiceSelection(
                service_id=service_id,
                pet_id=_as_id(entry.get("pet_id")),
                price_tier_id=_as_id(entry.get("price_tier_id")) or _as_id(entry.get("tier_id")),
                price_tier_label=entry.get("price_tier_label") or None,
                price_tier_price=_as_price(entry.get("price_tier_price")),
                addon_ids=_addon_ids(entry),
                has_tier_field=any(key in entry for key in TIER_KEYS),
                has_addon_field=any(key in entry for key in ADDON_KEYS),
            )
        )
    return selections


def validate_selections(raw: object, selections: list[ServiceSelection]) -> None:
    if not isinstance(raw, list) or not selections:
        raise ValidationError("service_selections_required", "At least one service selection is required")
    if any(not selection.pet_id for selection in selections):
        raise ValidationError("pet_required", "Every service selection needs a pet")


def ensure_services_in_account(account_id: int, selections: list[ServiceSelection]) -> None:
    service_ids = {selection.service_id for selection in selections}
    if not service_ids:
        return
    found = {
        row.service_id
        for row in Service.query.filter(
            Service.service_id.in_(service_ids),
            Service.account_id == account_id,
        ).all()
    }
    missing = service_ids - found
    if missing:
        raise ValidationError(
            "invalid_service_selection",
            f"Unknown service(s): {', '.join(str(service_id) for service_id in sorted(missing))}",
        )


def selections_from_appointment(appointment: Appointment) -> list[ServiceSelection]:
    """Rebuild selections from stored rows, used to copy the anchor onto new occurrences."""
    selections = []
    for row in appointment.appointment_services:
        addon_ids = [addon.service_addon_id for addon in row.addons if addon.service_addon_id]
        has_tier = (
            row.price_tier_id is not None
            or row.price_tier_label is not None
            or row.price_tier_price is not None
        )
        selections.append(
            ServiceSelection(
                service_id=row.service_id,
                pet_id=row.pet_id,
                price_tier_id=row.price_tier_id,
                price_tier_label=row.price_tier_label,
                price_tier_price=float(row.price_tier_price) if row.price_tier_price is not None else None,
                addon_ids=addon_ids or None,
                has_tier_field=has_tier,
                has_addon_field=bool(addon_ids),
            )
        )
    return selections


def _claim(rows: list[AppointmentService], predicate) -> AppointmentService | None:
    for index, row in enumerate(rows):
        if predicate(row):
            return rows.pop(index)
    return None


def reconcile_appointment_services(
    appointment: Appointment,
    selections: list[ServiceSelection],
    account_id: int,
) -> None:
    """Make the appointment's service rows match ``selections``.

    Rows are matched on ``(service_id, pet_id)`` first; a selection left
    without a match then takes any unclaimed row of the same service and the
    row's pet is reassigned, so tier and addons survive a pet change.
    Selections still unmatched become new rows and unclaimed rows are removed.
    """
    unclaimed = list(appointment.appointment_services)
    matched: list[AppointmentService | None] = [None] * len(selections)

    for index, selection in enumerate(selections):
        matched[index] = _claim(
            unclaimed,
            lambda row, s=selection: row.service_id == s.service_id and row.pet_id == s.pet_id,
        )

    for index, selection in enumerate(selections):
        if matched[index] is not None:
            continue
        row = _claim(unclaimed, lambda row, s=selection: row.service_id == s.service_id)
        if row is None:
            row = AppointmentService(service_id=selection.service_id)
            appointment.appointment_services.append(row)
        row.pet_id = selection.pet_id
        matched[index] = row

    for row in unclaimed:
        appointment.appointment_services.remove(row)

    db.session.flush()

    for row, selection in zip(matched, selections):
        apply_selection(row, selection, account_id)


def apply_selection(row: AppointmentService, selection: ServiceSelection, account_id: int) -> None:
    if selection.has_tier_field:
        row.price_tier_id = None
        row.price_tier_label = None
        row.price_tier_price = None
        if selection.price_tier_id:
            tier = db.session.get(ServicePriceTier, selection.price_tier_id)
            # Tiers of another service (or tenant) clear the override
            if (
                tier is not None
                and tier.service_id == selection.service_id
                and tier.service is not None
                and tier.service.account_id == account_id
            ):
                row.price_tier_id = tier.tier_id
                row.price_tier_label = tier.label
                row.price_tier_price = tier.price
        elif selection.price_tier_label or selection.price_tier_price is not None:
            row.price_tier_label = selection.price_tier_label
            row.price_tier_price = selection.price_tier_price

    if selection.has_addon_field:
        row.addons.clear()
        if selection.addon_ids:
            catalog = ServiceAddon.query.filter(
                ServiceAddon.addon_id.in_(selection.addon_ids),
                ServiceAddon.account_id == account_id,
            ).order_by(ServiceAddon.addon_id).all()
            for addon in catalog:
                row.addons.append(
                    AppointmentServiceAddon(
                        service_addon_id=addon.addon_id,
                        name=addon.name,
                        price=addon.price,
                    )
                )
