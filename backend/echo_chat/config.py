"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No orchestration logic
- No behavioral constants (see constants.py)
- No user chat settings (persisted, see services/settings.py)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _default_database_url() -> str:
    data_home = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return f"sqlite+aiosqlite:///{Path(data_home) / 'echo-chat' / 'echo.db'}"


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the app factory, which wires store, secrets and
    orchestrator from it.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    # "keyring" (system keyring) or "memory" (process lifetime only)
    secret_backend: str
    keyring_service: str

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    enable_json_logs: bool

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    cors_origins: tuple[str, ...]

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Every variable has a default; nothing is required.
        """
        origins = os.environ.get("ECHO_CORS_ORIGINS", "*")
        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            database_url=os.environ.get("ECHO_DATABASE_URL") or _default_database_url(),

            secret_backend=os.environ.get("ECHO_SECRET_BACKEND", "keyring"),
            keyring_service=os.environ.get("ECHO_KEYRING_SERVICE", "io.echo.chat"),

            enable_json_logs=os.environ.get("ENABLE_JSON_LOGS", "1") == "1",

            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )
