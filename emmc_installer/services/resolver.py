"""Resolve the install target and session facts from the live system.

Nothing in this module writes to any device.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import uuid
from pathlib import Path
from typing import Iterable, Optional

from emmc_installer.domain import FilesystemType, InstallContext
from emmc_installer.logging import LoggerFactory
from emmc_installer.services.release import read_release
from emmc_installer.storage import devices
from emmc_installer.storage.exceptions import (
    AlreadyInstalledError,
    InvalidUUIDError,
    MissingReleaseFileError,
    NoStorageFoundError,
)


log = LoggerFactory.for_system()

_BOOT0 = re.compile(r"^(?P<base>mmcblk\d+)boot0$")
_MMC_DISK = re.compile(r"^mmcblk\d+$")

# The arm64 Image header carries text_offset at byte 8. A kernel patched to
# load at 0x01080000 has 0x0108 in the upper half of its low word.
KERNEL_HEADER_READ_BYTES = 15
KERNEL_OFFSET_MARKER_AT = 10
KERNEL_OFFSET_PATCH_MARKER = 0x0108


def find_root_device_name(block_devices: Iterable[dict]) -> str:
    """Base name of the disk backing ``/`` (e.g. ``sda`` or ``mmcblk1``)."""
    root_partition = devices.find_root_partition(block_devices)
    if not root_partition:
        return ""
    return devices.base_device_name(root_partition)


def is_running_from_emmc(root_device_name: str, names: Iterable[str]) -> bool:
    """True iff the root disk has a boot0 hardware partition."""
    if not root_device_name:
        return False
    return f"{root_device_name}boot0" in set(names)


def find_emmc_candidates(names: Iterable[str], root_device_name: str) -> list[str]:
    """eMMC candidates, most specific search first.

    Disks exposing a ``boot0`` companion are real eMMC. Without one, any
    other mmcblk disk that is not the root disk is offered.
    """
    names = list(names)
    with_boot0 = sorted(
        {match.group("base") for match in map(_BOOT0.match, names) if match}
    )
    with_boot0 = [name for name in with_boot0 if name != root_device_name]
    if with_boot0:
        return with_boot0
    return sorted(
        {name for name in names if _MMC_DISK.match(name) and name != root_device_name}
    )


def generate_rootfs_uuid(kernel_source: Path) -> str:
    """Fresh rootfs UUID: kernel random source first, uuidgen second.

    Raises:
        InvalidUUIDError: If neither source produced a value
    """
    value = ""
    try:
        value = Path(kernel_source).read_text(encoding="ascii").strip()
    except OSError as error:
        log.debug(f"Kernel UUID source unavailable: {error}")
    if not value:
        value = _uuidgen()
    if not value:
        raise InvalidUUIDError()
    return value


def _uuidgen() -> str:
    uuidgen = shutil.which("uuidgen")
    if uuidgen:
        try:
            return devices.run_command([uuidgen], log_output=False).stdout.strip()
        except subprocess.CalledProcessError as error:
            log.debug(f"uuidgen failed: {error}")
            return ""
    return str(uuid.uuid4())


def kernel_needs_bootloader_overload(kernel_image: Path) -> bool:
    """Inspect the kernel header for the load-offset patch.

    Returns False only when the marker word equals the patched value; an
    unreadable or short image needs the overload bootloader.
    """
    try:
        with open(kernel_image, "rb") as image:
            header = image.read(KERNEL_HEADER_READ_BYTES)
    except OSError as error:
        log.warning(f"Cannot read kernel image {kernel_image}: {error}")
        return True
    if len(header) < KERNEL_OFFSET_MARKER_AT + 2:
        return True
    marker = int.from_bytes(
        header[KERNEL_OFFSET_MARKER_AT:KERNEL_OFFSET_MARKER_AT + 2], "little"
    )
    return marker != KERNEL_OFFSET_PATCH_MARKER


def resolve(
    *,
    release_file: Path,
    kernel_image: Path,
    kernel_uuid_source: Path,
    filesystem_type: FilesystemType = FilesystemType.EXT4,
    show_all: bool = False,
    mainline_uboot_requested: bool = False,
    ampart_requested: bool = False,
    block_devices: Optional[list[dict]] = None,
) -> InstallContext:
    """Build the InstallContext for this run.

    Raises:
        AlreadyInstalledError: The system already runs from eMMC
        NoStorageFoundError: No eMMC candidate exists
        MissingReleaseFileError: No release file and the full list was not requested
        InvalidUUIDError: No rootfs UUID could be generated
    """
    if block_devices is None:
        block_devices = devices.get_block_devices()
    names = devices.list_device_names(block_devices)

    root_device_name = find_root_device_name(block_devices)
    log.debug(f"Root device: {root_device_name or 'unknown'}")
    if is_running_from_emmc(root_device_name, names):
        raise AlreadyInstalledError(root_device_name)

    candidates = find_emmc_candidates(names, root_device_name)
    if not candidates:
        raise NoStorageFoundError(root_device_name)
    if len(candidates) > 1:
        log.warning(f"Several eMMC candidates found: {', '.join(candidates)}")
    target_device = f"/dev/{candidates[0]}"
    log.info(f"Target eMMC: {target_device}")

    release: dict[str, str] = {}
    try:
        release = read_release(release_file)
    except MissingReleaseFileError:
        if not show_all:
            raise
        log.warning(f"{release_file} missing, showing the full board list")

    rootfs_uuid = generate_rootfs_uuid(kernel_uuid_source)
    need_overload = kernel_needs_bootloader_overload(kernel_image)
    log.debug(f"rootfs UUID {rootfs_uuid}, bootloader overload needed: {need_overload}")

    return InstallContext(
        target_device=target_device,
        root_device_name=root_device_name,
        rootfs_uuid=rootfs_uuid,
        filesystem_type=filesystem_type,
        need_bootloader_overload=need_overload,
        family=release.get("FAMILY", ""),
        platform=release.get("PLATFORM", ""),
        show_all=show_all,
        mainline_uboot_requested=mainline_uboot_requested,
        ampart_requested=ampart_requested,
    )
