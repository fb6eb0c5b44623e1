"""Host paths the installer reads from and writes to.

Every path has a built-in default matching a stock Armbian image for Amlogic
boxes. A JSON object in ``EMMC_INSTALLER_SETTINGS_PATH`` (default
``/etc/emmc-installer/settings.json``) overrides individual keys, which is how
test rigs and non-standard images relocate the registry, u-boot directory or
mount point.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from emmc_installer.logging import LoggerFactory

log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "EMMC_INSTALLER_SETTINGS_PATH",
        "/etc/emmc-installer/settings.json",
    )
)

DEFAULT_BACKUP_PATH = "/root/BackupOldBootloader.img"
DEFAULT_INSTALL_DIR = "/mnt/emmc-install"

DEFAULT_SETTINGS: dict[str, str] = {
    "model_database": "/etc/model_database.conf",
    "release_file": "/etc/ophub-release",
    "uboot_dir": "/usr/lib/u-boot",
    "boot_dir": "/boot",
    "kernel_image": "/boot/zImage",
    "boot_config": "/boot/uEnv.txt",
    "backup_path": DEFAULT_BACKUP_PATH,
    "install_dir": DEFAULT_INSTALL_DIR,
    "source_root": "/",
    "kernel_uuid_source": "/proc/sys/kernel/random/uuid",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))
    # File the overrides came from, None when running on defaults only
    source: Optional[Path] = None


settings_store = SettingsStore()


def read_overrides(path: Path) -> dict[str, Any]:
    """Return the JSON object stored at ``path``.

    A missing file means no overrides; an unreadable or malformed one is
    logged and treated the same.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring settings file {path}: {error}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return {}
    return data


def load_settings(path: Optional[Path] = None) -> None:
    path = path or SETTINGS_PATH
    values: dict[str, Any] = dict(DEFAULT_SETTINGS)
    overrides = read_overrides(path)
    for key, value in overrides.items():
        if key not in DEFAULT_SETTINGS:
            log.warning(f"Unknown setting {key!r} in {path}")
            continue
        if not isinstance(value, str) or not value:
            log.warning(f"Setting {key!r} in {path} must be a non-empty path")
            continue
        values[key] = value
    settings_store.values = values
    settings_store.source = path if overrides else None


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_path(key: str) -> Path:
    value = get_setting(key)
    if value is None:
        raise KeyError(f"No path configured for setting: {key}")
    return Path(value)


load_settings()
