"""Application configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, BaseModel, ValidationError

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DEFAULT_MAX_PATCH_CHARS_PER_FILE: Final[int] = 3500
DEFAULT_MAX_TOTAL_PATCH_CHARS: Final[int] = 58000
DEFAULT_OPENAI_MODEL: Final[str] = "gpt-4o-mini"


class SettingsError(RuntimeError):
    """Raised when application configuration is invalid or incomplete."""


@dataclass(frozen=True)
class GitHubCredentials:
    github_app_id: int
    github_private_key_pem: str


class Settings(BaseModel):
    """Runtime settings loaded from environment variables."""

    github_api_base_url: AnyHttpUrl = "https://api.github.com"
    github_app_id: int | None = None
    github_private_key_pem: str | None = None
    github_webhook_secret: str | None = None
    openai_api_key: str | None = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    request_changes: bool = True
    suggest_patches: bool = True
    max_patch_chars_per_file: int = DEFAULT_MAX_PATCH_CHARS_PER_FILE
    max_total_patch_chars: int = DEFAULT_MAX_TOTAL_PATCH_CHARS
    port: int = 3000

    @property
    def normalized_github_api_base_url(self) -> str:
        """Return the GitHub API base URL without a trailing slash."""
        return str(self.github_api_base_url).rstrip("/")

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def review_event(self) -> str:
        """Blocking reviews request changes; advisory reviews only comment."""
        return "REQUEST_CHANGES" if self.request_changes else "COMMENT"

    def require_github_credentials(self) -> GitHubCredentials:
        """Ensure GitHub App secrets are configured and return them."""

        missing = []
        if self.github_app_id is None:
            missing.append("GITHUB_APP_ID")
        if not self.github_private_key_pem:
            missing.append("GITHUB_PRIVATE_KEY")

        if missing:
            missing_vars = ", ".join(missing)
            raise SettingsError(
                "GitHub App is not configured. Missing environment variables: "
                f"{missing_vars}."
            )

        return GitHubCredentials(
            github_app_id=int(self.github_app_id),
            github_private_key_pem=self.github_private_key_pem,
        )


_TRUE_VALUES: Final[set[str]] = {"1", "true", "yes", "on"}
_FALSE_VALUES: Final[set[str]] = {"0", "false", "no", "off"}


def _parse_bool_env(raw_value: str | None, *, default: bool = False) -> bool:
    """Convert an environment variable string to a boolean value.

    Only a recognised opposite of ``default`` flips it; anything else keeps the default.
    """

    if raw_value is None or not raw_value.strip():
        return default
    value = raw_value.strip().lower()
    if default:
        return value not in _FALSE_VALUES
    return value in _TRUE_VALUES


def _parse_positive_int_env(name: str, *, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:
        raise SettingsError(f"Invalid value for {name}. It must be an integer.") from exc
    if value <= 0:
        raise SettingsError(f"Invalid value for {name}. It must be greater than zero.")
    return value


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _build_settings() -> Settings:
    github_api_base_url = os.getenv("GITHUB_API_BASE_URL")
    github_app_id = _first_env("GITHUB_APP_ID", "APP_ID")

    try:
        github_app_id_value: int | None
        if github_app_id and github_app_id.strip():
            github_app_id_value = int(github_app_id)
        else:
            github_app_id_value = None
    except ValueError as exc:
        raise SettingsError("Invalid value for GITHUB_APP_ID. It must be an integer.") from exc

    try:
        return Settings(
            github_api_base_url=github_api_base_url or "https://api.github.com",
            github_app_id=github_app_id_value,
            github_private_key_pem=_first_env("GITHUB_PRIVATE_KEY", "PRIVATE_KEY"),
            github_webhook_secret=_first_env("GITHUB_WEBHOOK_SECRET", "WEBHOOK_SECRET"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
            request_changes=_parse_bool_env(os.getenv("MERGEMONK_REQUEST_CHANGES"), default=True),
            suggest_patches=_parse_bool_env(os.getenv("MERGEMONK_PATCH_PRS"), default=True),
            max_patch_chars_per_file=_parse_positive_int_env(
                "MERGEMONK_MAX_PATCH_CHARS_PER_FILE", default=DEFAULT_MAX_PATCH_CHARS_PER_FILE
            ),
            max_total_patch_chars=_parse_positive_int_env(
                "MERGEMONK_MAX_TOTAL_PATCH_CHARS", default=DEFAULT_MAX_TOTAL_PATCH_CHARS
            ),
            port=_parse_positive_int_env("PORT", default=3000),
        )
    except ValidationError as exc:
        raise SettingsError("Invalid application configuration.") from exc


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return _build_settings()


def get_settings() -> Settings:
    """Retrieve cached application settings."""
    return _cached_settings()


def reset_settings_cache() -> None:
    """Clear the cached settings (primarily for tests)."""
    _cached_settings.cache_clear()
