"""Partition table creation and filesystem formatting for the eMMC.

Partitioning:
    - MBR (msdos) label, exactly two primary partitions
    - p1: FAT32 boot partition at [blank1, blank1 + boot - 1] MiB
    - p2: ext4 or btrfs root from blank1 + boot + blank2 MiB to the end

Filesystems:
    vfat:   mkfs.vfat -F 32, label BOOT_EMMC
    ext4:   4 KiB blocks, no reserved blocks, fixed UUID, label ROOTFS_EMMC
    btrfs:  single data/metadata profile, fixed UUID, label ROOTFS_EMMC

Every failure raises; the caller decides nothing is retried past this point
except the label creation, which is retried while the kernel lets go of the
old partitions.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import time

from emmc_installer.domain import FilesystemType, PartitionPlan
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.devices import run_command
from emmc_installer.storage.exceptions import FormatFailedError, PartitionFailedError


log = LoggerFactory.for_storage()

BOOT_LABEL = "BOOT_EMMC"
ROOTFS_LABEL = "ROOTFS_EMMC"


def _settle(device_path: str) -> None:
    """Notify the kernel of partition changes and wait for udev."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(subprocess.CalledProcessError, OSError):
                run_command(cmd, log_command=False)


def remove_partitions(device_path: str, numbers) -> None:
    """Remove the given partitions in ascending order.

    Raises:
        PartitionFailedError: On the first removal that fails
    """
    for number in sorted(numbers):
        try:
            run_command(["parted", "-s", device_path, "rm", str(number)])
        except subprocess.CalledProcessError as error:
            raise PartitionFailedError(
                f"Failed to remove partition {number} of {device_path}: "
                f"{(error.stderr or '').strip() or error}",
                device=device_path,
            ) from error
        log.debug(f"Removed partition {number} of {device_path}")
    _settle(device_path)


def create_partition_table(device_path: str) -> None:
    """Create an MBR partition table, retrying while the device is busy."""
    max_retries = 3
    retry_delays = [2, 4, 6]

    for attempt in range(max_retries):
        log.debug(
            f"Creating MBR partition table on {device_path} (attempt {attempt + 1}/{max_retries})"
        )
        result = run_command(
            ["parted", "-s", device_path, "mklabel", "msdos"],
            check=False,
            log_command=False,
        )
        if result.returncode == 0:
            return

        stderr_msg = result.stderr.strip() if result.stderr else "no error message"
        log.error(
            f"parted failed (attempt {attempt + 1}/{max_retries}): stderr='{stderr_msg}' rc={result.returncode}"
        )
        if attempt < max_retries - 1:
            _settle(device_path)
            time.sleep(retry_delays[attempt])

    raise PartitionFailedError(
        f"All {max_retries} attempts failed to create partition table on {device_path}",
        device=device_path,
    )


def partition_commands(device_path: str, plan: PartitionPlan) -> list[list[str]]:
    return [
        [
            "parted", "-s", device_path, "mkpart", "primary", "fat32",
            f"{plan.boot_start_mib}MiB", f"{plan.boot_end_mib}MiB",
        ],
        [
            "parted", "-s", device_path, "mkpart", "primary", plan.filesystem_type.value,
            f"{plan.root_start_mib}MiB", "100%",
        ],
    ]


def partition_node(device_path: str, number: int) -> str:
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def wait_for_partition_node(partition_path: str, attempts: int = 10) -> bool:
    for _ in range(attempts):
        if os.path.exists(partition_path):  # noqa: PTH110
            return True
        time.sleep(0.5)
    return False


def create_partitions(device_path: str, plan: PartitionPlan) -> None:
    """Write a fresh MBR with the boot and root partitions of ``plan``.

    Raises:
        PartitionFailedError: If parted fails or the nodes never appear
    """
    log.info(
        f"Partitioning {device_path}: boot {plan.boot_start_mib}-{plan.boot_end_mib} MiB, "
        f"root {plan.root_start_mib} MiB-end ({plan.filesystem_type.value}, rule {plan.rule})"
    )
    create_partition_table(device_path)
    for command in partition_commands(device_path, plan):
        try:
            run_command(command)
        except subprocess.CalledProcessError as error:
            raise PartitionFailedError(
                f"parted mkpart failed on {device_path}: {(error.stderr or '').strip() or error}",
                device=device_path,
            ) from error
    _settle(device_path)

    for number in (1, 2):
        node = partition_node(device_path, number)
        if not wait_for_partition_node(node):
            raise PartitionFailedError(
                f"Partition node {node} did not appear after creation", device=device_path
            )


def mkfs_command(
    partition_path: str,
    filesystem: str,
    uuid: str = "",
    label: str = "",
) -> list[str]:
    """Build the mkfs command line for one partition."""
    if filesystem == "vfat":
        command = ["mkfs.vfat", "-F", "32"]
        if label:
            command.extend(["-n", label])
    elif filesystem == FilesystemType.EXT4.value:
        command = ["mkfs.ext4", "-F", "-q", "-b", "4096", "-m", "0"]
        if uuid:
            command.extend(["-U", uuid])
        if label:
            command.extend(["-L", label])
    elif filesystem == FilesystemType.BTRFS.value:
        command = ["mkfs.btrfs", "-f", "-d", "single", "-m", "single"]
        if uuid:
            command.extend(["-U", uuid])
        if label:
            command.extend(["-L", label])
    else:
        raise ValueError(f"Unsupported filesystem type: {filesystem}")
    command.append(partition_path)
    return command


def format_partition(
    partition_path: str,
    filesystem: str,
    uuid: str = "",
    label: str = "",
) -> None:
    """Create a filesystem on ``partition_path``.

    Raises:
        FormatFailedError: If the mkfs tool fails
    """
    command = mkfs_command(partition_path, filesystem, uuid=uuid, label=label)
    log.info(f"Formatting {partition_path} as {filesystem}")
    try:
        run_command(command)
    except (subprocess.CalledProcessError, FileNotFoundError) as error:
        stderr = getattr(error, "stderr", "") or ""
        raise FormatFailedError(
            f"Failed to format {partition_path} as {filesystem}: {stderr.strip() or error}",
            device=partition_path,
        ) from error


def format_boot(partition_path: str) -> None:
    format_partition(partition_path, "vfat", label=BOOT_LABEL)


def format_root(partition_path: str, filesystem_type: FilesystemType, uuid: str) -> None:
    format_partition(partition_path, filesystem_type.value, uuid=uuid, label=ROOTFS_LABEL)
