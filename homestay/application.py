"""Environment-driven application factory used by ``main.py`` and uvicorn."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .config import Settings, load_settings
from .database import Database
from .google import GoogleOAuthClient


logger = logging.getLogger("homestay.application")


def log_settings_status(settings: Settings) -> None:
    """Log which settings are configured without revealing their values."""

    logger.info("Environment variables status: %s", settings.describe())
    if not settings.google_configured:
        logger.warning(
            "Google OAuth is not configured. Set HOMESTAY_GOOGLE_CLIENT_ID and "
            "HOMESTAY_GOOGLE_CLIENT_SECRET to enable Google sign-in."
        )


def create_application(
    *,
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    config_path: Optional[str] = None,
) -> FastAPI:
    """Create the ASGI application from configuration files and environment."""

    if settings is None:
        settings = load_settings(Path(config_path) if config_path else None)

    if database is None:
        database = Database(settings.database_path)
    database.initialize()

    log_settings_status(settings)

    return create_app(
        database=database,
        settings=settings,
        google_client=GoogleOAuthClient(
            settings.google_client_id,
            settings.google_client_secret,
        ),
    )


__all__ = ["create_application", "log_settings_status"]
