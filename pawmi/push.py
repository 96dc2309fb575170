"""
Expo push client
Chunks push messages and posts them to the Expo push API
"""
from __future__ import annotations

import logging
import re
from typing import Iterable

import httpx

logger = logging.getLogger(__name__)

DEVICE_NOT_REGISTERED = "DeviceNotRegistered"

_EXPO_TOKEN_RE = re.compile(r"^Expo(nent)?PushToken\[.+\]$")
_UUID_TOKEN_RE = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)


def is_push_token(token: object) -> bool:
    """Return True for tokens the Expo push service accepts."""
    if not isinstance(token, str):
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


class PushSendError(Exception):
    """Raised when a whole chunk could not be delivered to the push service."""


class ExpoPushClient:
    def __init__(
        self,
        url: str,
        access_token: str | None = None,
        chunk_size: int = 100,
        timeout: float = 15,
    ) -> None:
        self.url = url
        self.access_token = access_token
        self.chunk_size = max(1, int(chunk_size))
        self.timeout = timeout

    def chunk(self, messages: list[dict]) -> Iterable[list[dict]]:
        for start in range(0, len(messages), self.chunk_size):
            yield messages[start:start + self.chunk_size]

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def send(self, messages: list[dict]) -> list[dict]:
        """Send one chunk; returns one receipt per message, in order.

        Receipts look like ``{"status": "ok"}`` or
        ``{"status": "error", "message": ..., "details": {"error": ...}}``.
        """
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=messages, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(f"Expo push request failed: {exc}")
            raise PushSendError(str(exc)) from exc

        try:
            body = response.json()
        except ValueError as exc:
            logger.error(f"Expo push response was not JSON: {exc}")
            raise PushSendError("invalid_response") from exc
        if not isinstance(body, dict):
            raise PushSendError("invalid_response")
        receipts = body.get("data")
        if isinstance(receipts, dict):
            receipts = [receipts]
        if not isinstance(receipts, list):
            errors = body.get("errors") or []
            message = errors[0].get("message") if errors and isinstance(errors[0], dict) else "invalid_response"
            raise PushSendError(message)
        return receipts
