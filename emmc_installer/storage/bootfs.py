"""Populate the FAT32 boot partition of the new eMMC install."""

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

from emmc_installer.domain import BoardRecord, FilesystemType, InstallContext
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.devices import run_command
from emmc_installer.storage.exceptions import CopyFailedError


log = LoggerFactory.for_storage()

# Left behind by Windows or by the USB/TF first-boot scripts
LEFTOVER_PATTERNS = ("System Volume Information", "s905_autoscript*", "aml_autoscript*")
BOOT_CONFIG_FILES = ("uEnv.txt", "extlinux/extlinux.conf", "armbianEnv.txt")
OVERLOAD_ALIASES = ("u-boot.ext", "u-boot.emmc")

BOOT_ROOTFLAGS = {
    FilesystemType.EXT4: "data=writeback",
    FilesystemType.BTRFS: "compress=zstd:6",
}

_EMMC_VARIANT = re.compile(r"^(?P<stem>.+)-emmc(?P<ext>\.[^.]+)$")
_ROOT_ARG = re.compile(r"\b(?P<key>root|rootdev)=\S+")
_ROOTFSTYPE_ARG = re.compile(r"\brootfstype=\S+")
_ROOTFLAGS_ARG = re.compile(r"\brootflags=\S+")
_DTB_REF = re.compile(r"(?P<prefix>(?:/dtb/|\bfdtfile=)(?:[^\s/]+/)*)[^\s/=]+\.dtb")


def copy_boot_content(source_dir: Path, target_dir: Path) -> None:
    """Copy the running /boot onto the new boot partition.

    Symlinks are dereferenced since FAT32 cannot hold them.
    """
    try:
        run_command(["cp", "-rfL", f"{Path(source_dir)}/.", f"{Path(target_dir)}/"])
    except subprocess.CalledProcessError as error:
        raise CopyFailedError(
            f"Failed to copy {source_dir} to boot partition: {(error.stderr or '').strip() or error}"
        ) from error


def remove_leftovers(target_dir: Path) -> list[Path]:
    removed = []
    for pattern in LEFTOVER_PATTERNS:
        for path in Path(target_dir).glob(pattern):
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            removed.append(path)
    for path in removed:
        log.debug(f"Removed {path.name} from boot partition")
    return removed


def rename_emmc_variants(target_dir: Path) -> list[Path]:
    """Rename ``name-emmc.ext`` boot scripts to ``name.ext``."""
    renamed = []
    for path in sorted(Path(target_dir).iterdir()):
        match = _EMMC_VARIANT.match(path.name)
        if not match or not path.is_file():
            continue
        canonical = path.with_name(f"{match.group('stem')}{match.group('ext')}")
        path.replace(canonical)
        log.debug(f"Renamed {path.name} -> {canonical.name}")
        renamed.append(canonical)
    return renamed


def rewrite_boot_config(
    text: str,
    rootfs_uuid: str,
    filesystem_type: FilesystemType,
    device_tree_file: str = "",
) -> str:
    """Point a boot config at the new root filesystem and device tree."""
    text = _ROOT_ARG.sub(lambda m: f"{m.group('key')}=UUID={rootfs_uuid}", text)
    text = _ROOTFSTYPE_ARG.sub(f"rootfstype={filesystem_type.value}", text)
    text = _ROOTFLAGS_ARG.sub(f"rootflags={BOOT_ROOTFLAGS[filesystem_type]}", text)
    if device_tree_file:
        text = _DTB_REF.sub(lambda m: f"{m.group('prefix')}{device_tree_file}", text)
    return text


def rewrite_boot_configs(
    target_dir: Path,
    rootfs_uuid: str,
    filesystem_type: FilesystemType,
    device_tree_file: str,
) -> list[Path]:
    rewritten = []
    for relative in BOOT_CONFIG_FILES:
        path = Path(target_dir) / relative
        if not path.is_file():
            continue
        original = path.read_text(encoding="utf-8", errors="replace")
        updated = rewrite_boot_config(original, rootfs_uuid, filesystem_type, device_tree_file)
        if updated != original:
            path.write_text(updated, encoding="utf-8")
        rewritten.append(path)
        log.debug(f"Boot config updated: {relative}")
    if not rewritten:
        log.warning(f"No boot config found in {target_dir}")
    return rewritten


def stage_bootloader_overload(target_dir: Path, board: BoardRecord, uboot_dir: Path) -> list[Path]:
    """Copy the overload u-boot under the names the vendor bootloader chains to.

    Raises:
        CopyFailedError: If the board names an overload file that is missing
    """
    if not board.uboot_overload_file:
        log.warning(f"Board {board.id} has no overload bootloader; kernel may not boot")
        return []
    source = Path(uboot_dir) / board.uboot_overload_file
    if not source.is_file():
        raise CopyFailedError(f"Overload bootloader not found: {source}")
    staged = []
    for alias in OVERLOAD_ALIASES:
        destination = Path(target_dir) / alias
        shutil.copyfile(source, destination)
        staged.append(destination)
    log.info(f"Staged {source.name} as {', '.join(OVERLOAD_ALIASES)}")
    return staged


def populate_boot(
    target_dir: Path,
    *,
    source_dir: Path,
    context: InstallContext,
    board: BoardRecord,
    uboot_dir: Path,
) -> None:
    """Fill a mounted boot partition from the running system."""
    copy_boot_content(source_dir, target_dir)
    try:
        remove_leftovers(target_dir)
        rename_emmc_variants(target_dir)
        rewrite_boot_configs(
            target_dir, context.rootfs_uuid, context.filesystem_type, board.device_tree_file
        )
        if context.need_bootloader_overload:
            stage_bootloader_overload(target_dir, board, uboot_dir)
    except OSError as error:
        raise CopyFailedError(f"Failed to prepare boot partition: {error}") from error
