"""Per-user notification preference documents: defaults, normalization and merge."""
from __future__ import annotations

import copy
import math

REMINDER_MAX_OFFSET_MINUTES = 1440
MAX_REMINDER_OFFSETS = 2
DEFAULT_REMINDER_OFFSETS = [30]

DEFAULT_NOTIFICATION_PREFERENCES: dict = {
    "push": {
        "enabled": False,
        "appointments": {
            "created": True,
            "confirmed": True,
            "cancelled": True,
            "reminder": True,
            "reminder_offsets": list(DEFAULT_REMINDER_OFFSETS),
        },
        "marketplace": {
            "request": True,
        },
        "payments": {
            "updated": True,
        },
        "marketing": False,
    }
}

PREFERENCE_PATHS = {
    "appointments.created": ("push", "appointments", "created"),
    "appointments.confirmed": ("push", "appointments", "confirmed"),
    "appointments.cancelled": ("push", "appointments", "cancelled"),
    "appointments.reminder": ("push", "appointments", "reminder"),
    "marketplace.request": ("push", "marketplace", "request"),
    "payments.updated": ("push", "payments", "updated"),
    "marketing": ("push", "marketing"),
}


def default_preferences() -> dict:
    return copy.deepcopy(DEFAULT_NOTIFICATION_PREFERENCES)


def _section(source: object, key: str) -> dict:
    value = source.get(key) if isinstance(source, dict) else None
    return value if isinstance(value, dict) else {}


def _bool(value: object, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def normalize_reminder_offsets(value: object, fallback: list[int] | None = None) -> list[int]:
    """Clean a list of minute offsets.

    Entries are coerced to integers; anything non-numeric, non-positive or
    above a day is dropped. The survivors are deduplicated, sorted and cut to
    two. An empty result (or a non-list input) returns ``fallback``.
    """
    if fallback is None:
        fallback = list(DEFAULT_REMINDER_OFFSETS)
    if not isinstance(value, (list, tuple)):
        return fallback
    offsets: set[int] = set()
    for entry in value:
        if isinstance(entry, bool):
            continue
        try:
            number = float(entry)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(number):
            continue
        rounded = int(math.floor(number + 0.5))
        if 0 < rounded <= REMINDER_MAX_OFFSET_MINUTES:
            offsets.add(rounded)
    if not offsets:
        return fallback
    return sorted(offsets)[:MAX_REMINDER_OFFSETS]


def _layer(source: object, base: dict) -> dict:
    push = _section(source, "push")
    appointments = _section(push, "appointments")
    marketplace = _section(push, "marketplace")
    payments = _section(push, "payments")
    base_push = base["push"]
    base_appointments = base_push["appointments"]

    return {
        "push": {
            "enabled": _bool(push.get("enabled"), base_push["enabled"]),
            "appointments": {
                "created": _bool(appointments.get("created"), base_appointments["created"]),
                "confirmed": _bool(appointments.get("confirmed"), base_appointments["confirmed"]),
                "cancelled": _bool(appointments.get("cancelled"), base_appointments["cancelled"]),
                "reminder": _bool(appointments.get("reminder"), base_appointments["reminder"]),
                "reminder_offsets": normalize_reminder_offsets(
                    appointments.get("reminder_offsets"),
                    list(base_appointments["reminder_offsets"]),
                ),
            },
            "marketplace": {
                "request": _bool(marketplace.get("request"), base_push["marketplace"]["request"]),
            },
            "payments": {
                "updated": _bool(payments.get("updated"), base_push["payments"]["updated"]),
            },
            "marketing": _bool(push.get("marketing"), base_push["marketing"]),
        }
    }


def normalize_preferences(document: object) -> dict:
    """Return a fully populated preference document, missing leaves taken from defaults."""
    return _layer(document, DEFAULT_NOTIFICATION_PREFERENCES)


def merge_preferences(existing: object, updates: object) -> dict:
    """Layer ``updates`` over the stored document (or the defaults when absent)."""
    return _layer(updates, normalize_preferences(existing))


def should_send(preferences: object, notification_type: str) -> bool:
    resolved = normalize_preferences(preferences)
    if not resolved["push"]["enabled"]:
        return False
    path = PREFERENCE_PATHS.get(notification_type)
    if not path:
        return False
    current: object = resolved
    for key in path:
        if not isinstance(current, dict):
            return False
        current = current.get(key)
    return current if isinstance(current, bool) else False
