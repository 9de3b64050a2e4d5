"""
Runtime settings and per-platform storage locations.
"""

import logging
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path

from .core import LIVE_WINDOW_SIZE, WHEEL_CIRCUMFERENCE_M

logger = logging.getLogger(__name__)

APP_NAME = "fitrecord"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _platform_dir(xdg_var: str, unix_default: Path, mac_folder: str) -> Path:
    """Resolve an application directory, honouring XDG variables first."""
    base = os.environ.get(xdg_var)
    if base:
        return Path(base) / APP_NAME

    system = platform.system()
    if system == "Darwin":  # macOS
        return Path.home() / "Library" / mac_folder / APP_NAME
    if system == "Windows":
        # Use LOCALAPPDATA if available, otherwise APPDATA
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / APP_NAME
        appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        return Path(appdata) / APP_NAME
    return unix_default / APP_NAME


def get_cache_dir() -> Path:
    """Directory for disposable state such as cached device addresses."""
    return _platform_dir("XDG_CACHE_HOME", Path.home() / ".cache", "Caches")


def get_data_dir() -> Path:
    """Directory for recorded sessions."""
    override = os.environ.get("FITRECORD_DATA_DIR")
    if override:
        return Path(override)
    return _platform_dir(
        "XDG_DATA_HOME", Path.home() / ".local" / "share", "Application Support"
    )


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number")
        return default
    if value <= 0:
        logger.warning(f"Ignoring {name}={raw!r}: must be positive")
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not an integer")
        return default
    if value <= 0:
        logger.warning(f"Ignoring {name}={raw!r}: must be positive")
        return default
    return value


def _env_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    level = raw.strip().upper()
    if level not in LOG_LEVELS:
        logger.warning(f"Ignoring {name}={raw!r}: expected one of {', '.join(LOG_LEVELS)}")
        return default
    return level


@dataclass
class Settings:
    """Tunable values, normally read from ``FITRECORD_*`` environment variables."""

    data_dir: Path = field(default_factory=get_data_dir)
    cache_dir: Path = field(default_factory=get_cache_dir)
    wheel_circumference_m: float = WHEEL_CIRCUMFERENCE_M
    live_window_size: int = LIVE_WINDOW_SIZE
    scan_timeout: float = 10.0
    connect_timeout: float = 5.0
    user: str = "default"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=get_data_dir(),
            cache_dir=get_cache_dir(),
            wheel_circumference_m=_env_float(
                "FITRECORD_WHEEL_CIRCUMFERENCE_M", WHEEL_CIRCUMFERENCE_M
            ),
            live_window_size=_env_int("FITRECORD_LIVE_WINDOW", LIVE_WINDOW_SIZE),
            scan_timeout=_env_float("FITRECORD_SCAN_TIMEOUT", 10.0),
            connect_timeout=_env_float("FITRECORD_CONNECT_TIMEOUT", 5.0),
            user=os.environ.get("FITRECORD_USER", "default"),
            log_level=_env_log_level("FITRECORD_LOG_LEVEL", "INFO"),
        )

    @property
    def address_cache_file(self) -> Path:
        return self.cache_dir / "device_addresses.json"

    @property
    def sessions_file(self) -> Path:
        return self.data_dir / "sessions.json"
