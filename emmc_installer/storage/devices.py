"""Block device inventory and command execution using lsblk.

The installer never guesses device nodes: every decision about the root
device, the eMMC candidates and their partitions is made from one lsblk JSON
snapshot.

Device naming:
    - eMMC user area:  mmcblkN, partitions mmcblkNpM
    - eMMC hardware boot areas: mmcblkNboot0 / mmcblkNboot1
    - USB/SATA disks: sdX, partitions sdXM

Operations:
    - run_command(): Run an external tool with logged output
    - get_block_devices(): lsblk snapshot (disks with nested partitions)
    - list_device_names(): Flat list of every disk and partition name
    - find_root_partition(): Name of the node mounted at /
    - base_device_name(): Strip the partition suffix from a node name
    - unmount_device(): Force-unmount every mountpoint of a disk
"""
from __future__ import annotations

import json
import re
import subprocess
from typing import Iterable, Optional

from emmc_installer.logging import LoggerFactory


log = LoggerFactory.for_storage()
command_log = LoggerFactory.for_command()

ROOT_MOUNTPOINT = "/"
_NUMBERED_DISK = re.compile(r"^(?P<disk>(?:mmcblk|nvme\d+n|loop)\d+)(?:p\d+)?$")
_LETTERED_DISK = re.compile(r"^(?P<disk>[a-z]+)\d*$")


def run_command(command, check=True, log_output=True, log_command=True, input_text=None):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, input=input_text
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            command_log.trace(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        command_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        command_log.trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def get_block_devices() -> list[dict]:
    """Return block device data from lsblk.

    Returns an empty list when lsblk fails or prints invalid JSON.
    """
    try:
        result = run_command(
            [
                "lsblk",
                "-J",
                "-b",
                "-o",
                "NAME,TYPE,SIZE,MOUNTPOINT,FSTYPE,LABEL",
            ],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, FileNotFoundError, json.JSONDecodeError) as error:
        log.warning(f"lsblk failed: {error}")
        return []
    return data.get("blockdevices", []) or []


def get_children(device):
    return device.get("children", []) or []


def iter_devices(devices: Iterable[dict]) -> Iterable[dict]:
    """Yield every disk and, depth first, each of its partitions."""
    for device in devices:
        yield device
        yield from iter_devices(get_children(device))


def list_device_names(devices: Iterable[dict]) -> list[str]:
    return [device["name"] for device in iter_devices(devices) if device.get("name")]


def get_device_by_name(name, devices: Optional[Iterable[dict]] = None):
    if not name:
        return None
    if devices is None:
        devices = get_block_devices()
    for device in iter_devices(devices):
        if device.get("name") == name:
            return device
    return None


def find_root_partition(devices: Iterable[dict]) -> Optional[str]:
    for device in iter_devices(devices):
        if device.get("mountpoint") == ROOT_MOUNTPOINT:
            return device.get("name")
    return None


def base_device_name(name: str) -> str:
    """Strip a partition number from a node name.

    >>> base_device_name("mmcblk1p2")
    'mmcblk1'
    >>> base_device_name("sda2")
    'sda'
    """
    for pattern in (_NUMBERED_DISK, _LETTERED_DISK):
        match = pattern.match(name)
        if match:
            return match.group("disk")
    return name


def collect_mountpoints(device: dict) -> list[str]:
    mountpoints: list[str] = []
    for child in get_children(device):
        mountpoints.extend(collect_mountpoints(child))
    mountpoint = device.get("mountpoint")
    if mountpoint:
        mountpoints.append(mountpoint)
    return mountpoints


def list_partition_numbers(device: dict) -> list[int]:
    """Partition numbers of a disk in ascending order."""
    base = device.get("name", "")
    numbers = []
    for child in get_children(device):
        if child.get("type") != "part":
            continue
        suffix = child.get("name", "")[len(base):].lstrip("p")
        if suffix.isdigit():
            numbers.append(int(suffix))
    return sorted(numbers)


def unmount_device(device: dict) -> bool:
    """Force-unmount every mountpoint of a disk and its partitions.

    Returns:
        True when nothing is left mounted, False otherwise
    """
    mountpoints = collect_mountpoints(device)
    if not mountpoints:
        log.debug(f"No mounted partitions on {device.get('name')}")
        return True

    run_command(["sync"], check=False)
    all_unmounted = True
    for mountpoint in mountpoints:
        try:
            run_command(["umount", "-f", mountpoint])
            log.debug(f"Unmounted {mountpoint}")
        except subprocess.CalledProcessError as error:
            log.warning(f"Failed to unmount {mountpoint}: {error}")
            all_unmounted = False
    return all_unmounted
