"""Configuration settings for labbook.

Settings come from (lowest to highest priority):
1. ``<home>/credentials.json``
2. ``.env`` in the working directory
3. ``LABBOOK_*`` environment variables
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from labbook.utils import get_labbook_home

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = ("backend_url", "auth_token", "user_id")


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe bearer-token transmission.

    Rejects non-http/https schemes, URLs with no host, and remote plaintext
    HTTP endpoints (only localhost/127.0.0.1 may use http).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected (with a warning
        logged for the rejection reason).
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


class Settings(BaseSettings):
    """Runtime settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="LABBOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Local storage
    data_dir: Optional[Path] = None
    db_path: Optional[Path] = None

    # Remote document store
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    remote_timeout: float = 10.0

    # Display merge: "name" keeps the historical dedup-by-display-name policy,
    # "identifier" dedups through the identifier mapping table
    merge_dedup_key: Literal["name", "identifier"] = "name"

    log_level: str = "WARNING"

    @field_validator("backend_url")
    @classmethod
    def _check_backend_url(cls, value: Optional[str]) -> Optional[str]:
        validated = validate_backend_url(value)
        return validated.rstrip("/") if validated else None

    @property
    def home(self) -> Path:
        return self.data_dir.expanduser() if self.data_dir else get_labbook_home()

    @property
    def resolved_db_path(self) -> Path:
        if self.db_path:
            return self.db_path.expanduser()
        return self.home / "labbook.db"

    @property
    def has_remote(self) -> bool:
        return bool(self.backend_url and self.auth_token)


def _read_credentials_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            creds = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.debug(f"Failed to load credentials file: {e}")
        return {}
    if not isinstance(creds, dict):
        return {}
    # Accept both "auth_token" (preferred) and "token" (legacy)
    if "auth_token" not in creds and "token" in creds:
        creds["auth_token"] = creds["token"]
    return {k: creds[k] for k in CREDENTIAL_FIELDS if creds.get(k)}


def load_settings() -> Settings:
    """Build settings, filling unset credentials from credentials.json."""
    settings = Settings()
    file_values = _read_credentials_file(settings.home / "credentials.json")

    updates = {}
    for key, value in file_values.items():
        if getattr(settings, key) is not None:
            continue
        if key == "backend_url":
            value = validate_backend_url(value)
            if value is None:
                continue
            value = value.rstrip("/")
        updates[key] = value

    if updates:
        settings = settings.model_copy(update=updates)
    return settings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
