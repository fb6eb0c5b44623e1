"""Mount helpers for the partitions being populated.

Every mount made by the installer goes through mounted(), which pairs the
mount with an unmount on success and on failure. A partition of the target
device must never stay mounted once the routine that mounted it returns.

Functions:
    - validate_device_node(): Reject paths outside /dev/ or with shell metacharacters
      (FormatFailedError)
    - is_mounted(): Check /proc/mounts for an active mountpoint
    - mount_partition(): Mount a partition (FormatFailedError on failure)
    - unmount_path(): Unmount a mountpoint, forcing if requested
    - mounted(): Context manager wrapping mount/unmount
"""

import os
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.exceptions import FormatFailedError


log = LoggerFactory.for_storage()

_FORBIDDEN_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")


def validate_device_node(partition: str) -> None:
    if not isinstance(partition, str) or not partition.startswith("/dev/"):
        raise FormatFailedError(f"Invalid partition path: {partition}", device=partition)
    if any(char in partition for char in _FORBIDDEN_CHARS):
        raise FormatFailedError(
            f"Partition path contains invalid characters: {partition}", device=partition
        )


def is_mounted(mountpoint) -> bool:
    mountpoint = str(mountpoint)
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def mount_partition(
    partition: str,
    mountpoint: Path,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
) -> None:
    """Mount a partition, creating the mountpoint directory first.

    Raises:
        FormatFailedError: If the partition path is invalid, the mountpoint
            cannot be created or the mount command fails
    """
    validate_device_node(partition)
    mountpoint = Path(mountpoint)
    try:
        mountpoint.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FormatFailedError(
            f"Cannot create mountpoint {mountpoint}: {e}", device=partition
        ) from e

    command = ["mount"]
    if fstype:
        command.extend(["-t", fstype])
    if options:
        command.extend(["-o", options])
    command.extend([partition, str(mountpoint)])
    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        raise FormatFailedError(
            f"Failed to mount {partition} to {mountpoint}: {e.stderr.strip()}",
            device=partition,
        ) from e
    log.debug(f"Mounted {partition} at {mountpoint}")


def unmount_path(mountpoint: Path, force: bool = False, lazy: bool = False) -> None:
    """Unmount a mountpoint.

    Raises:
        RuntimeError: If unmount fails
    """
    command = ["umount"]
    if force:
        command.append("-f")
    if lazy:
        command.append("-l")
    command.append(str(mountpoint))
    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to unmount {mountpoint}: {e.stderr.strip()}") from e
    log.debug(f"Unmounted {mountpoint}")


@contextmanager
def mounted(
    partition: str,
    mountpoint: Path,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
) -> Iterator[Path]:
    """Mount ``partition`` at ``mountpoint`` for the duration of the block.

    A stale mount left at ``mountpoint`` by an earlier run is force-unmounted
    first; if that fails FormatFailedError is raised before anything is
    mounted. The unmount on exit runs on every path and falls back to a lazy
    unmount; if the block raised, an unmount failure is logged and the
    original exception propagates.

    Example:
        with mounted("/dev/mmcblk2p1", Path("/mnt/emmc-install"), "vfat") as root:
            shutil.copy2("/boot/uEnv.txt", root / "uEnv.txt")
    """
    mountpoint = Path(mountpoint)
    if is_mounted(mountpoint):
        log.warning(f"{mountpoint} already mounted, forcing unmount")
        try:
            unmount_path(mountpoint, force=True)
        except RuntimeError as error:
            raise FormatFailedError(str(error), device=partition) from error

    subprocess.run(["sync"], check=False, capture_output=True)
    mount_partition(partition, mountpoint, fstype=fstype, options=options)
    failed = False
    try:
        yield mountpoint
    except BaseException:
        failed = True
        raise
    finally:
        subprocess.run(["sync"], check=False, capture_output=True)
        try:
            unmount_path(mountpoint)
        except RuntimeError as error:
            log.warning(f"{error}, retrying with lazy unmount")
            try:
                unmount_path(mountpoint, lazy=True)
            except RuntimeError as lazy_error:
                if not failed:
                    raise FormatFailedError(str(lazy_error), device=partition) from lazy_error
                log.error(f"Cleanup unmount failed: {lazy_error}")
