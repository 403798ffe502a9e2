"""Shared app directory helpers based on platformdirs."""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import PlatformDirs

APP_NAME = "sshtokenlogin"
CONFIG_FILE_NAME = f"{APP_NAME}.yaml"
CONFIG_ENV_VAR = "SSHTOKENLOGIN_CONFIG"


def _platform_dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def config_dir() -> Path:
    return Path(_platform_dirs().user_config_path)


def log_dir() -> Path:
    return ensure_dir(Path(_platform_dirs().user_log_path))


def default_config_path() -> Path:
    """Config path from the environment, falling back to the platform config dir."""
    override = os.getenv(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return config_dir() / CONFIG_FILE_NAME
