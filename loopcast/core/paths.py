"""Centralized path constants for loopcast."""

from __future__ import annotations

import os
from pathlib import Path

# Project/package roots
PROJECT_ROOT = Path(__file__).resolve().parents[2]
PACKAGE_ROOT = PROJECT_ROOT / "loopcast"

# Configuration
_CONFIG_ENV = os.environ.get("LOOPCAST_CONFIG")
CONFIG_PATH = Path(_CONFIG_ENV).expanduser() if _CONFIG_ENV else PROJECT_ROOT / "config.txt"

# User-specific state (allows running from read-only project directories)
_USER_STATE_ENV = os.environ.get("LOOPCAST_STATE_DIR")
USER_STATE_DIR = Path(_USER_STATE_ENV).expanduser() if _USER_STATE_ENV else (Path.home() / ".loopcast")
USER_CONFIG_OVERRIDE = USER_STATE_DIR / "config.txt"

# Logging
LOGS_DIR = USER_STATE_DIR / "logs"
DEFAULT_LOG_FILE = LOGS_DIR / "loopcast.log"

# External tool locations
DEFAULT_ANDROID_SDK_PATH = Path.home() / "Android" / "Sdk"
DEFAULT_AVD_HOME = Path.home() / ".android" / "avd"


def ensure_directories() -> None:
    """Create necessary directories if they don't exist."""

    USER_STATE_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


__all__ = [
    'PROJECT_ROOT',
    'PACKAGE_ROOT',
    'CONFIG_PATH',
    'USER_STATE_DIR',
    'USER_CONFIG_OVERRIDE',
    'LOGS_DIR',
    'DEFAULT_LOG_FILE',
    'DEFAULT_ANDROID_SDK_PATH',
    'DEFAULT_AVD_HOME',
    'ensure_directories',
]
