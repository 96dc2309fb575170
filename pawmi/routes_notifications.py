"""Notification preference and push device routes for the signed-in user."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .errors import AuthorizationError, store_error_response
from .extensions import db
from .models import NotificationDevice, NotificationPreference, utc_now
from .preferences import merge_preferences, normalize_preferences
from .push import is_push_token

bp_notifications = Blueprint("notifications", __name__)

PLATFORMS = ("ios", "android", "web")


def _require_user() -> int:
    raw = (request.headers.get("X-User-Id") or "").strip()
    try:
        user_id = int(raw)
    except ValueError:
        raise AuthorizationError("unauthorized", "X-User-Id header is required")
    if user_id <= 0:
        raise AuthorizationError("unauthorized", "X-User-Id header is required")
    return user_id


def _normalize_platform(value: object) -> str | None:
    if not value:
        return None
    normalized = str(value).strip().lower()
    return normalized if normalized in PLATFORMS else None


def _preferences_payload(body: object) -> dict:
    if not isinstance(body, dict):
        return {}
    if isinstance(body.get("preferences"), dict):
        return body["preferences"]
    return body


@bp_notifications.get("/notifications/preferences")
def get_preferences() -> tuple[dict[str, object], int]:
    """Return the user's notification preferences with defaults filled in.
    ---
    tags:
      - Notifications
    responses:
      200:
        description: Full preference document
      401:
        description: Missing user
    """
    user_id = _require_user()
    try:
        row = db.session.get(NotificationPreference, user_id)
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to load notification preferences")

    return jsonify({"preferences": normalize_preferences(row.preferences if row else None)}), 200


@bp_notifications.put("/notifications/preferences")
def put_preferences() -> tuple[dict[str, object], int]:
    """Layer a partial preference document over the stored one.
    ---
    tags:
      - Notifications
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            preferences:
              type: object
    responses:
      200:
        description: Merged preference document
      401:
        description: Missing user
    """
    user_id = _require_user()
    updates = _preferences_payload(request.get_json(silent=True))
    try:
        row = db.session.get(NotificationPreference, user_id)
        merged = merge_preferences(row.preferences if row else None, updates)
        if row is None:
            row = NotificationPreference(user_id=user_id, preferences=merged)
            db.session.add(row)
        else:
            row.preferences = merged
        db.session.commit()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to save notification preferences")

    return jsonify({"preferences": merged}), 200


@bp_notifications.post("/notifications/push/register")
def register_push_device() -> tuple[dict[str, object], int]:
    """Register (or re-enable) an Expo push token for the user.
    ---
    tags:
      - Notifications
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            push_token:
              type: string
            device_id:
              type: string
            platform:
              type: string
              enum: [ios, android, web]
    responses:
      200:
        description: Stored device
      400:
        description: Missing or invalid token
    """
    user_id = _require_user()
    payload = request.get_json(silent=True) or {}
    token = payload.get("push_token") or payload.get("pushToken") or payload.get("token")
    if not token or not isinstance(token, str):
        return jsonify({"error": "push_token_required", "message": "push_token is required"}), 400
    if not is_push_token(token):
        current_app.logger.warning("Rejected invalid push token for user %s", user_id)
        return jsonify({"error": "invalid_push_token", "message": "Not an Expo push token"}), 400

    device_id = str(payload.get("device_id") or payload.get("deviceId") or "").strip() or None
    try:
        # A token moves to whoever registered it last
        device = NotificationDevice.query.filter_by(push_token=token).first()
        if device is None:
            device = NotificationDevice(push_token=token)
            db.session.add(device)
        device.user_id = user_id
        device.device_id = device_id
        device.platform = _normalize_platform(payload.get("platform"))
        device.provider = "expo"
        device.enabled = True
        device.last_seen_at = utc_now()
        db.session.commit()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to register push device")

    return jsonify({"device": device.to_dict()}), 200


@bp_notifications.post("/notifications/push/unregister")
def unregister_push_device() -> tuple[dict[str, object], int]:
    user_id = _require_user()
    payload = request.get_json(silent=True) or {}
    token = payload.get("push_token") or payload.get("pushToken") or payload.get("token")
    device_id = payload.get("device_id") or payload.get("deviceId")
    if not token and not device_id:
        return (
            jsonify({"error": "push_token_or_device_id_required", "message": "push_token or device_id is required"}),
            400,
        )

    try:
        query = NotificationDevice.query.filter(NotificationDevice.user_id == user_id)
        if token:
            query = query.filter(NotificationDevice.push_token == token)
        if device_id:
            query = query.filter(NotificationDevice.device_id == str(device_id))
        disabled = query.update({"enabled": False}, synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        return store_error_response(exc, "Failed to unregister push device")

    return jsonify({"ok": True, "disabled": disabled}), 200
