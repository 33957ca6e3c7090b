# src/taskdesk_sync/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets or live session required at import time.
- Components take explicit parameters, so tests never need the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv

ENV_PREFIX = "TASKDESK"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


def derive_health_url(server_url: str) -> str:
    """ws://host:port/ws -> http://host:port/api/health (wss -> https)."""
    parts = urlsplit(server_url)
    scheme = "https" if parts.scheme in ("wss", "https") else "http"
    return urlunsplit((scheme, parts.netloc, "/api/health", "", ""))


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Server ----
    server_url: str
    health_url: str
    health_check_enabled: bool
    health_timeout_seconds: float

    # ---- Session ----
    user_id: str | None
    username: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    state_db_path: Path

    # ---- Reconnect / replay tuning ----
    reconnect_base_ms: float
    reconnect_cap_ms: float
    max_reconnect_attempts: int
    max_delivery_attempts: int
    replay_interval_seconds: float

    # ---- Availability ----
    unavailable_window_seconds: float
    availability_check_interval_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskdesk") or "taskdesk"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        server_url = _env(_k("SERVER_URL"), "ws://localhost:5000/ws").strip()
        health_url = _env(_k("HEALTH_URL"), "").strip() or derive_health_url(server_url)

        raw_user = _env(_k("USER_ID"), "").strip()
        user_id = raw_user or None
        username = _env(_k("USERNAME"), "").strip()

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskdesk"))
        state_db_path = _env_path(_k("STATE_DB_PATH"), data_dir / "state.sqlite3")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            server_url=server_url,
            health_url=health_url,
            health_check_enabled=_env_bool(_k("HEALTH_CHECK_ENABLED"), True),
            health_timeout_seconds=_env_float(_k("HEALTH_TIMEOUT_SECONDS"), 5.0),
            user_id=user_id,
            username=username,
            data_dir=data_dir,
            state_db_path=state_db_path,
            reconnect_base_ms=_env_float(_k("RECONNECT_BASE_MS"), 1000.0),
            reconnect_cap_ms=_env_float(_k("RECONNECT_CAP_MS"), 30000.0),
            max_reconnect_attempts=_env_int(_k("MAX_RECONNECT_ATTEMPTS"), 10),
            max_delivery_attempts=_env_int(_k("MAX_DELIVERY_ATTEMPTS"), 5),
            replay_interval_seconds=_env_float(_k("REPLAY_INTERVAL_SECONDS"), 0.3),
            unavailable_window_seconds=_env_float(_k("UNAVAILABLE_WINDOW_SECONDS"), 300.0),
            availability_check_interval_seconds=_env_float(
                _k("AVAILABILITY_CHECK_INTERVAL_SECONDS"), 30.0
            ),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
