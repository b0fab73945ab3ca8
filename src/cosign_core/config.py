# src/cosign_core/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Local overrides via an optional, never-committed config_local.py.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "COSIGN"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env (gitignored) never overrides real environment variables.
load_dotenv(override=False)


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

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    tasks_db_path: Path

    # ---- Deadline scheduler ----
    scan_interval_seconds: float
    scan_batch_limit: int
    scan_workers: int
    drain_timeout_seconds: float

    # ---- Fan-out / registry ----
    fanout_workers: int
    registry_stripes: int

    # ---- Connectors ----
    console_enabled: bool
    websocket_enabled: bool
    websocket_host: str
    websocket_port: int
    websocket_queue_size: int

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "cosign") or "cosign"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/cosign"))
        tasks_db_path = _env_path(_k("TASKS_DB_PATH"), data_dir / "tasks.sqlite3")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            tasks_db_path=tasks_db_path,
            scan_interval_seconds=_env_float(_k("SCAN_INTERVAL_SECONDS"), 60.0),
            scan_batch_limit=_env_int(_k("SCAN_BATCH_LIMIT"), 500),
            scan_workers=_env_int(_k("SCAN_WORKERS"), 1),
            drain_timeout_seconds=_env_float(_k("DRAIN_TIMEOUT_SECONDS"), 10.0),
            fanout_workers=_env_int(_k("FANOUT_WORKERS"), 4),
            registry_stripes=_env_int(_k("REGISTRY_STRIPES"), 64),
            console_enabled=_env_bool(_k("CONSOLE_ENABLED"), True),
            websocket_enabled=_env_bool(_k("WEBSOCKET_ENABLED"), True),
            websocket_host=_env(_k("WEBSOCKET_HOST"), "127.0.0.1"),
            websocket_port=_env_int(_k("WEBSOCKET_PORT"), 8080),
            websocket_queue_size=_env_int(_k("WEBSOCKET_QUEUE_SIZE"), 256),
        )


def _apply_local_overrides(settings: Settings) -> Settings:
    """
    Optional local overrides (never committed).

    Prefer .env; use config_local.py only for safe overrides of selected names.
    """
    try:
        import config_local as _config_local  # type: ignore
    except ImportError:
        return settings

    overrides = {}
    for name in ("CONSOLE_ENABLED", "WEBSOCKET_ENABLED"):
        if hasattr(_config_local, name):
            overrides[name.lower()] = bool(getattr(_config_local, name))
    if hasattr(_config_local, "SCAN_INTERVAL_SECONDS"):
        overrides["scan_interval_seconds"] = float(_config_local.SCAN_INTERVAL_SECONDS)
    if hasattr(_config_local, "WEBSOCKET_PORT"):
        overrides["websocket_port"] = int(_config_local.WEBSOCKET_PORT)

    if overrides:
        logger.debug("config_local overrides: %s", sorted(overrides))
        return replace(settings, **overrides)
    return settings


SETTINGS = _apply_local_overrides(Settings.from_env())


def get_settings() -> Settings:
    return SETTINGS
