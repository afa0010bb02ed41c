# src/tasksync/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time (empty backend URL = offline demo backend).
- Platform capability (persistent local store or not) is decided here, once.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

ENV_PREFIX = "TASKSYNC"

PLATFORMS = ("native", "web")


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


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Platform ----
    platform: str
    console_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    local_db_path: Path

    # ---- Remote backend ----
    remote_url: str
    remote_api_key: str
    remote_access_token: str
    request_timeout_seconds: float

    # ---- Session ----
    owner_id: str

    # ---- Sync tuning ----
    sync_interval_seconds: float
    backoff_base_seconds: float
    backoff_max_seconds: float
    max_push_attempts: int
    connectivity_poll_seconds: float

    @property
    def persistent(self) -> bool:
        return self.platform == "native"

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "tasksync") or "tasksync"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        platform = _env(_k("PLATFORM"), "native").strip().lower()
        if platform not in PLATFORMS:
            platform = "native"
        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/tasksync"))
        local_db_path = _env_path(_k("LOCAL_DB_PATH"), data_dir / "tasksync.sqlite3")

        remote_url = _env(_k("REMOTE_URL")).strip()
        remote_api_key = _env(_k("REMOTE_API_KEY")).strip()
        remote_access_token = _env(_k("REMOTE_ACCESS_TOKEN")).strip()
        request_timeout_seconds = _env_float(_k("REQUEST_TIMEOUT_SECONDS"), 15.0)

        owner_id = _env(_k("OWNER_ID"), "local-user").strip() or "local-user"

        return Settings(
            app_name=app_name,
            log_level=log_level,
            platform=platform,
            console_enabled=console_enabled,
            data_dir=data_dir,
            local_db_path=local_db_path,
            remote_url=remote_url,
            remote_api_key=remote_api_key,
            remote_access_token=remote_access_token,
            request_timeout_seconds=request_timeout_seconds,
            owner_id=owner_id,
            sync_interval_seconds=_env_float(_k("SYNC_INTERVAL_SECONDS"), 60.0),
            backoff_base_seconds=_env_float(_k("BACKOFF_BASE_SECONDS"), 2.0),
            backoff_max_seconds=_env_float(_k("BACKOFF_MAX_SECONDS"), 300.0),
            max_push_attempts=_env_int(_k("MAX_PUSH_ATTEMPTS"), 5),
            connectivity_poll_seconds=_env_float(_k("CONNECTIVITY_POLL_SECONDS"), 10.0),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Load settings once (reads .env from the working directory on first call, never overrides real env vars)."""
    global _SETTINGS
    if _SETTINGS is None:
        load_dotenv(find_dotenv(usecwd=True), override=False)
        _SETTINGS = Settings.from_env()
    return _SETTINGS
