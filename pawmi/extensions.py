"""Shared Flask extensions for the application."""
from __future__ import annotations

from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy

from .push import ExpoPushClient

# SQLAlchemy database instance shared across the app.
db = SQLAlchemy()

PUSH_CLIENT_KEY = "pawmi_push_client"


def init_push_client(app: Flask) -> None:
    """Attach the Expo push client unless a test already injected one."""
    if PUSH_CLIENT_KEY in app.extensions:
        return
    app.extensions[PUSH_CLIENT_KEY] = ExpoPushClient(
        url=app.config["EXPO_PUSH_URL"],
        access_token=app.config.get("EXPO_ACCESS_TOKEN"),
        chunk_size=app.config.get("PUSH_CHUNK_SIZE", 100),
        timeout=app.config.get("PUSH_TIMEOUT_SECONDS", 15),
    )


def get_push_client():
    return current_app.extensions[PUSH_CLIENT_KEY]
