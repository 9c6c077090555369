"""Centralised configuration helper.

This module eliminates scattered ``os.getenv`` calls by exposing a **single**
process-wide :class:`Settings` instance (retrieved via :func:`get_settings`).

The deployment context (cloud vs. local) is resolved exactly once, the first
time settings are requested.  Every other component receives the resolved
value from here and never looks at the environment marker on its own.
"""

from __future__ import annotations

import enum
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict
from typing import Optional

from dotenv import dotenv_values

# ``_REPO_ROOT`` points to the top-level repository directory (one level
# **above** the "backend" package).  We use ``parents[3]`` because this file is
# located at ``backend/infracore/config/__init__.py``.

_REPO_ROOT = Path(__file__).resolve().parents[3]

# Presence of the key vault endpoint is what marks a managed cloud deployment.
CLOUD_MARKER_VARIABLE = "KEYVAULT_URL"

DATABASE_CONNECTION_STRING_VARIABLE = "DATABASE_CONNECTION_STRING"
MANAGED_IDENTITY_CLIENT_ID_VARIABLE = "MANAGED_IDENTITY_CLIENT_ID"
LOCAL_CONNECTION_STRING_PREFIX = "ConnectionStrings__"


class DeploymentContext(str, enum.Enum):
    """Where the process runs."""

    CLOUD = "cloud"
    LOCAL = "local"

    @property
    def is_cloud(self) -> bool:
        return self is DeploymentContext.CLOUD


def _truthy(value: str | None) -> bool:  # noqa: D401 – small helper
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_context() -> DeploymentContext:
    marker = os.getenv(CLOUD_MARKER_VARIABLE)
    if marker:
        return DeploymentContext.CLOUD
    return DeploymentContext.LOCAL


# ---------------------------------------------------------------------------
# Local configuration source
# ---------------------------------------------------------------------------


class LocalConfiguration:
    """Keyed connection-string lookup used only in the local context.

    Values come from ``ConnectionStrings__<name>`` in the process environment
    (what the local orchestrator injects) and fall back to the project ``.env``
    file.  The file is parsed with python-dotenv without touching
    ``os.environ``.
    """

    def __init__(self, env_file: Optional[Path] = None):
        self.env_file = env_file if env_file is not None else _REPO_ROOT / ".env"
        self._file_values: Optional[Dict[str, Optional[str]]] = None

    def _values(self) -> Dict[str, Optional[str]]:
        if self._file_values is None:
            if self.env_file.exists():
                self._file_values = dict(dotenv_values(self.env_file))
            else:
                self._file_values = {}
        return self._file_values

    def get_connection_string(self, connection_name: str) -> Optional[str]:
        key = f"{LOCAL_CONNECTION_STRING_PREFIX}{connection_name}"
        value = os.getenv(key)
        if value:
            return value
        return self._values().get(key) or None


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Settings:  # noqa: D401 – simple data container
    """Immutable settings resolved once at startup."""

    deployment_context: DeploymentContext

    # Cloud endpoints ---------------------------------------------------
    keyvault_url: Optional[str]
    database_connection_string: Optional[str]
    managed_identity_client_id: Optional[str]

    # Email -------------------------------------------------------------
    sender_email_address: str

    # Logging -----------------------------------------------------------
    log_level: str
    json_logs: bool

    @property
    def is_cloud(self) -> bool:
        return self.deployment_context.is_cloud


def _load_settings() -> Settings:  # noqa: D401 – helper
    """Populate :class:`Settings` from environment variables."""

    context = _read_context()

    return Settings(
        deployment_context=context,
        keyvault_url=os.getenv(CLOUD_MARKER_VARIABLE) or None,
        database_connection_string=os.getenv(DATABASE_CONNECTION_STRING_VARIABLE) or None,
        managed_identity_client_id=os.getenv(MANAGED_IDENTITY_CLIENT_ID_VARIABLE) or None,
        sender_email_address=os.getenv("SENDER_EMAIL_ADDRESS", "no-reply@localhost"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        # JSON in the cloud unless explicitly overridden
        json_logs=_truthy(os.getenv("LOG_FORMAT_JSON")) if os.getenv("LOG_FORMAT_JSON") else context.is_cloud,
    )


# ---------------------------------------------------------------------------
# Singleton accessor – values loaded only once per interpreter
# ---------------------------------------------------------------------------

_SETTINGS: Optional[Settings] = None
_SETTINGS_LOCK = threading.Lock()


def get_settings() -> Settings:  # noqa: D401 – public accessor
    """Return the process-wide :class:`Settings`, loading them on first use."""

    global _SETTINGS
    if _SETTINGS is None:
        with _SETTINGS_LOCK:
            if _SETTINGS is None:
                _SETTINGS = _load_settings()
    return _SETTINGS


def resolve_context() -> DeploymentContext:
    """Return the deployment context resolved for this process."""

    return get_settings().deployment_context


def reset_settings() -> None:
    """Drop the cached settings.  Tests only."""

    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = None


__all__ = [
    "DeploymentContext",
    "LocalConfiguration",
    "Settings",
    "get_settings",
    "reset_settings",
    "resolve_context",
]
