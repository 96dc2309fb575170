"""Push notification fan-out with a per-recipient delivery log."""
from __future__ import annotations

from datetime import datetime

from flask import current_app

from .extensions import db, get_push_client
from .models import AccountMember, Notification, NotificationDevice, NotificationPreference, utc_now
from .preferences import default_preferences, normalize_preferences, should_send
from .push import DEVICE_NOT_REGISTERED, PushSendError, is_push_token


def load_preferences_for_users(user_ids) -> dict[int, dict]:
    preferences = {user_id: default_preferences() for user_id in user_ids}
    if not preferences:
        return preferences
    rows = NotificationPreference.query.filter(
        NotificationPreference.user_id.in_(list(preferences))
    ).all()
    for row in rows:
        preferences[row.user_id] = normalize_preferences(row.preferences)
    return preferences


def load_push_tokens_for_users(user_ids) -> dict[int, list[str]]:
    tokens: dict[int, list[str]] = {}
    if not user_ids:
        return tokens
    rows = NotificationDevice.query.filter(
        NotificationDevice.user_id.in_(list(user_ids)),
        NotificationDevice.enabled.is_(True),
    ).all()
    for row in rows:
        if row.push_token:
            tokens.setdefault(row.user_id, []).append(row.push_token)
    return tokens


def load_accepted_members(account_id: int, user_ids) -> set[int]:
    if not user_ids:
        return set()
    rows = AccountMember.query.filter(
        AccountMember.account_id == account_id,
        AccountMember.status == "accepted",
        AccountMember.user_id.in_(list(user_ids)),
    ).all()
    return {row.user_id for row in rows}


def send_push_notifications(
    user_ids,
    title: str,
    body: str,
    notification_type: str,
    data: dict | None = None,
    account_id: int | None = None,
    push_client=None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Send one push to every eligible recipient and log each attempt.

    A recipient is eligible when (for an account-scoped send) they are an
    accepted member of the account, their preferences allow the type, and
    they own at least one valid, enabled device token. Returns counts of
    sent/failed messages and skipped recipients.
    """
    recipients = list(dict.fromkeys(user_id for user_id in (user_ids or []) if user_id))
    if not recipients:
        return {"sent": 0, "failed": 0, "skipped": 0}

    push_client = push_client or get_push_client()
    now = now or utc_now()

    preferences = load_preferences_for_users(recipients)
    tokens = load_push_tokens_for_users(recipients)
    members = load_accepted_members(account_id, recipients) if account_id else None

    eligible: list[tuple[int, list[str]]] = []
    for user_id in recipients:
        if members is not None and user_id not in members:
            continue
        if not should_send(preferences.get(user_id), notification_type):
            continue
        valid_tokens = [token for token in tokens.get(user_id, []) if is_push_token(token)]
        if valid_tokens:
            eligible.append((user_id, valid_tokens))

    if not eligible:
        return {"sent": 0, "failed": 0, "skipped": len(recipients)}

    payload = data if isinstance(data, dict) else {}
    log_rows: dict[int, Notification] = {}
    for user_id, _ in eligible:
        row = Notification(
            user_id=user_id,
            account_id=account_id,
            type=notification_type,
            channel="push",
            title=title,
            body=body,
            payload=payload,
            status="pending",
            created_at=now,
        )
        db.session.add(row)
        log_rows[user_id] = row
    db.session.commit()

    messages: list[dict] = []
    meta: list[tuple[int, str]] = []
    for user_id, valid_tokens in eligible:
        for token in valid_tokens:
            messages.append({
                "to": token,
                "sound": "default",
                "title": title,
                "body": body,
                "data": {**payload, "type": notification_type},
            })
            meta.append((user_id, token))

    delivered: set[int] = set()
    errors: dict[int, str] = {}
    invalid_tokens: set[str] = set()
    sent = 0
    failed = 0

    offset = 0
    try:
        for chunk in push_client.chunk(messages):
            chunk_meta = meta[offset:offset + len(chunk)]
            offset += len(chunk)
            try:
                receipts = push_client.send(chunk)
            except PushSendError as exc:
                current_app.logger.warning("Push chunk failed: %s", exc)
                failed += len(chunk)
                for user_id, _ in chunk_meta:
                    errors.setdefault(user_id, str(exc) or "push_failed")
                continue

            for index, (user_id, token) in enumerate(chunk_meta):
                receipt = receipts[index] if index < len(receipts) else None
                if not isinstance(receipt, dict):
                    receipt = {}
                if receipt.get("status") == "ok":
                    sent += 1
                    delivered.add(user_id)
                    continue
                failed += 1
                details = receipt.get("details")
                if not isinstance(details, dict):
                    details = {}
                errors.setdefault(user_id, receipt.get("message") or details.get("error") or "push_failed")
                if details.get("error") == DEVICE_NOT_REGISTERED:
                    invalid_tokens.add(token)
    finally:
        # Rows left pending would block reminder retries, so settle every one
        if invalid_tokens:
            NotificationDevice.query.filter(
                NotificationDevice.push_token.in_(list(invalid_tokens))
            ).update({"enabled": False}, synchronize_session=False)
            current_app.logger.info("Disabled %d unregistered push tokens", len(invalid_tokens))

        for user_id, row in log_rows.items():
            if user_id in delivered:
                row.status = "sent"
                row.sent_at = now
            else:
                row.status = "failed"
                row.error = errors.get(user_id, "push_failed")
        db.session.commit()

    return {"sent": sent, "failed": failed, "skipped": len(recipients) - len(eligible)}
