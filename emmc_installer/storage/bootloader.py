"""Bootloader backup, source selection and raw writes.

The Amlogic boot ROM loads the bootloader from the start of the eMMC user
area, so it shares the first sector with the MBR partition table. Each image
is written in passes described by its byte ranges; the default ranges keep
bytes 444-511 (disk signature and partition table) intact.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from emmc_installer.domain import BoardRecord, BootloaderSource, ByteRange
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.devices import run_command
from emmc_installer.storage.exceptions import BackupFailedError, BootloaderWriteError


log = LoggerFactory.for_storage()

BACKUP_SIZE_MIB = 4


def _dd_path() -> str:
    dd_path = shutil.which("dd")
    if not dd_path:
        raise FileNotFoundError("dd not found")
    return dd_path


def backup_bootloader(device_path: str, backup_path: Path) -> Path:
    """Copy the first 4 MiB of the device to ``backup_path``.

    Raises:
        BackupFailedError: If dd fails or the backup is incomplete
    """
    backup_path = Path(backup_path)
    try:
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        run_command(
            [
                _dd_path(),
                f"if={device_path}",
                f"of={backup_path}",
                "bs=1M",
                f"count={BACKUP_SIZE_MIB}",
                "conv=fsync",
            ]
        )
    except (subprocess.CalledProcessError, OSError) as error:
        raise BackupFailedError(
            f"Failed to back up bootloader of {device_path}: {error}", device=device_path
        ) from error
    expected = BACKUP_SIZE_MIB * 1024 * 1024
    try:
        size = backup_path.stat().st_size
    except OSError as error:
        raise BackupFailedError(f"Backup missing: {backup_path}", device=device_path) from error
    if size != expected:
        raise BackupFailedError(
            f"Backup {backup_path} is {size} bytes, expected {expected}",
            device=device_path,
        )
    log.info(f"Bootloader backed up to {backup_path}")
    return backup_path


def bootloader_candidates(
    board: BoardRecord,
    uboot_dir: Path,
    backup_path: Path,
    mainline_requested: bool,
) -> list[BootloaderSource]:
    """Every bootloader source in priority order, existing or not."""
    uboot_dir = Path(uboot_dir)
    candidates = []
    if mainline_requested and board.mainline_uboot_file:
        candidates.append(BootloaderSource("mainline", uboot_dir / board.mainline_uboot_file))
    if board.bootloader_img_file:
        candidates.append(BootloaderSource("vendor", uboot_dir / board.bootloader_img_file))
    candidates.append(BootloaderSource("backup", Path(backup_path)))
    return candidates


def select_bootloader_source(
    board: BoardRecord,
    uboot_dir: Path,
    backup_path: Path,
    mainline_requested: bool = False,
) -> Optional[BootloaderSource]:
    """First candidate whose image exists: mainline > vendor > backup."""
    for candidate in bootloader_candidates(board, uboot_dir, backup_path, mainline_requested):
        if candidate.path.is_file():
            return candidate
        log.debug(f"Bootloader {candidate.name} not available: {candidate.path}")
    return None


def dd_command(dd_path: str, source: Path, device_path: str, byte_range: ByteRange) -> list:
    command = [
        dd_path,
        f"if={source}",
        f"of={device_path}",
        f"bs={byte_range.block_size}",
    ]
    if byte_range.skip:
        command.append(f"skip={byte_range.skip}")
    if byte_range.seek:
        command.append(f"seek={byte_range.seek}")
    if byte_range.count is not None:
        command.append(f"count={byte_range.count}")
    command.append("conv=fsync")
    return command


def write_bootloader(source: BootloaderSource, device_path: str) -> None:
    """Write ``source`` to the device, one dd pass per byte range.

    Raises:
        BootloaderWriteError: If any pass fails
    """
    log.info(f"Writing {source.name} bootloader {source.path} to {device_path}")
    try:
        dd_path = _dd_path()
        for byte_range in source.byte_ranges:
            run_command(dd_command(dd_path, source.path, device_path, byte_range))
    except (subprocess.CalledProcessError, OSError) as error:
        raise BootloaderWriteError(
            f"Failed to write {source.name} bootloader to {device_path}: {error}",
            device=device_path,
        ) from error
