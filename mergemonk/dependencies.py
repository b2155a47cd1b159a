"""FastAPI dependency factories."""

from __future__ import annotations

from fastapi import HTTPException

from mergemonk.config import Settings, SettingsError, get_settings
from mergemonk.logger import get_logger
from mergemonk.services.review_processor import ReviewProcessor

logger = get_logger()


def settings_dependency() -> Settings:
    """Resolve application settings, surfacing configuration errors via HTTPException."""

    try:
        return get_settings()
    except SettingsError as exc:
        logger.error(f"Failed to load settings: {exc}")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def review_processor_dependency() -> ReviewProcessor:
    """Provide the review pipeline (overridden in tests)."""

    return ReviewProcessor()
