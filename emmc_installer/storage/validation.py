"""Safety validation run before the target device is touched.

All validation functions raise exceptions from the exceptions module rather
than returning booleans.
"""

import os
import shutil
from typing import Iterable

from .devices import collect_mountpoints, get_device_by_name
from .exceptions import NoStorageFoundError, NotPrivilegedError, PreconditionFailure


REQUIRED_TOOLS = ("lsblk", "parted", "dd", "mkfs.vfat", "mount", "umount", "cp")
FILESYSTEM_TOOLS = {"ext4": "mkfs.ext4", "btrfs": "mkfs.btrfs"}


def validate_root_privileges() -> None:
    euid = os.geteuid()
    if euid != 0:
        raise NotPrivilegedError(euid)


def validate_required_tools(filesystem: str, tools: Iterable[str] = REQUIRED_TOOLS) -> None:
    missing = [tool for tool in (*tools, FILESYSTEM_TOOLS[filesystem]) if not shutil.which(tool)]
    if missing:
        raise PreconditionFailure(f"Missing required tools: {', '.join(missing)}")


def validate_target(target_device: str, root_device_name: str, devices=None) -> dict:
    """Check the target exists and is not the disk the system runs from.

    Returns:
        The lsblk entry of the target disk
    """
    name = target_device.rsplit("/", 1)[-1]
    if root_device_name and name == root_device_name:
        raise PreconditionFailure(f"Refusing to install onto the running root device {name}")
    device = get_device_by_name(name, devices)
    if device is None:
        raise NoStorageFoundError(root_device_name)
    if "/" in collect_mountpoints(device):
        raise PreconditionFailure(f"{target_device} holds the running root filesystem")
    return device
