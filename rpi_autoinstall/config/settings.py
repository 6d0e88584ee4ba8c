"""Settings storage for mirror endpoints and tool defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_AUTOINSTALL_SETTINGS_PATH",
        Path.home() / ".config" / "rpi-autoinstall" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DAILY_URL = "https://cdimage.ubuntu.com/ubuntu-server/jammy/daily-preinstalled/current/"
DEFAULT_DAILY_IMAGE = "jammy-preinstalled-server-arm64+raspi.img.xz"
DEFAULT_RELEASE_URL = "https://cdimage.ubuntu.com/releases/22.04/release/"
DEFAULT_RELEASE_IMAGE_PATTERN = (
    r"ubuntu-22\.04(?:\.\d+)?-preinstalled-server-arm64\+raspi\.img\.xz"
)
DEFAULT_SIGNING_KEY_ID = "843938DF228D22F7B3742BC0D94AA3F0EFE21092"
DEFAULT_KEYSERVER = "hkp://keyserver.ubuntu.com"
DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 3600
DEFAULT_BLOCK_BACKEND = "udisks"

BLOCK_BACKENDS = ("udisks", "losetup")

DEFAULT_SETTINGS: dict[str, Any] = {
    "daily_url": DEFAULT_DAILY_URL,
    "daily_image": DEFAULT_DAILY_IMAGE,
    "release_url": DEFAULT_RELEASE_URL,
    "release_image_pattern": DEFAULT_RELEASE_IMAGE_PATTERN,
    "signing_key_id": DEFAULT_SIGNING_KEY_ID,
    "keyserver": DEFAULT_KEYSERVER,
    "download_timeout_seconds": DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
    "block_backend": DEFAULT_BLOCK_BACKEND,
    "work_dir": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


@dataclass(frozen=True)
class MirrorConfig:
    """Snapshot of the remote endpoints a run talks to."""

    daily_url: str = DEFAULT_DAILY_URL
    daily_image: str = DEFAULT_DAILY_IMAGE
    release_url: str = DEFAULT_RELEASE_URL
    release_image_pattern: str = DEFAULT_RELEASE_IMAGE_PATTERN
    signing_key_id: str = DEFAULT_SIGNING_KEY_ID
    keyserver: str = DEFAULT_KEYSERVER
    download_timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_download_timeout() -> float:
    """Download timeout in seconds, falling back to the default on bad values."""
    value = get_setting("download_timeout_seconds")
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return float(DEFAULT_DOWNLOAD_TIMEOUT_SECONDS)
    if timeout <= 0:
        return float(DEFAULT_DOWNLOAD_TIMEOUT_SECONDS)
    return timeout


def mirror_config() -> MirrorConfig:
    """Freeze the current mirror settings for one pipeline run."""
    return MirrorConfig(
        daily_url=str(get_setting("daily_url", DEFAULT_DAILY_URL)),
        daily_image=str(get_setting("daily_image", DEFAULT_DAILY_IMAGE)),
        release_url=str(get_setting("release_url", DEFAULT_RELEASE_URL)),
        release_image_pattern=str(
            get_setting("release_image_pattern", DEFAULT_RELEASE_IMAGE_PATTERN)
        ),
        signing_key_id=str(get_setting("signing_key_id", DEFAULT_SIGNING_KEY_ID)),
        keyserver=str(get_setting("keyserver", DEFAULT_KEYSERVER)),
        download_timeout_seconds=get_download_timeout(),
    )


load_settings()
