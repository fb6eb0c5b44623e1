"""Populate the root partition of the new eMMC install."""

from __future__ import annotations

import re
import secrets
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

from emmc_installer.domain import InstallContext, PartitionPlan
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.devices import run_command
from emmc_installer.storage.exceptions import CopyFailedError
from emmc_installer.storage.format import BOOT_LABEL


log = LoggerFactory.for_storage()

COPY_DIRS = ("etc", "home", "lib64", "opt", "root", "selinux", "srv", "usr", "var")
EMPTY_DIRS = ("boot", "dev", "media", "mnt", "proc", "run", "sys", "tmp")
COMPAT_SYMLINKS = (("bin", "usr/bin"), ("lib", "usr/lib"), ("sbin", "usr/sbin"))
FIRMWARE_DIR = Path("usr/lib/firmware")
INSTALLER_ARTIFACTS = ("usr/sbin/armbian-tf",)

# 0x9E has the locally administered bit set and the multicast bit clear
MAC_PREFIX = "9E:61"
_MACADDR_LINE = re.compile(r"^macaddr=[^\r\n]*", re.MULTILINE)


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str
    dump: int = 0
    passno: int = 0

    def render(self) -> str:
        return f"{self.spec}\t{self.mountpoint}\t{self.fstype}\t{self.options}\t{self.dump} {self.passno}"


def fstab_entries(context: InstallContext, plan: PartitionPlan) -> list[FstabEntry]:
    return [
        FstabEntry(
            spec=f"UUID={context.rootfs_uuid}",
            mountpoint="/",
            fstype=context.filesystem_type.value,
            options=plan.root_mount_options,
            passno=1,
        ),
        FstabEntry(
            spec=f"LABEL={BOOT_LABEL}",
            mountpoint="/boot",
            fstype="vfat",
            options="defaults",
            passno=2,
        ),
        FstabEntry(spec="tmpfs", mountpoint="/tmp", fstype="tmpfs", options="defaults,nosuid"),
    ]


def render_fstab(entries: Iterable[FstabEntry]) -> str:
    return "\n".join(entry.render() for entry in entries) + "\n"


def copy_system_dirs(source_root: Path, target_dir: Path, names: Sequence[str] = COPY_DIRS) -> list[str]:
    """``cp -a`` each allow-listed top-level directory that exists.

    Raises:
        CopyFailedError: If any copy fails
    """
    copied = []
    for name in names:
        source = Path(source_root) / name
        if not source.is_dir() or source.is_symlink():
            log.debug(f"Skipping missing directory {source}")
            continue
        log.info(f"Copying /{name}")
        try:
            run_command(["cp", "-a", str(source), f"{Path(target_dir)}/"], log_output=False)
        except subprocess.CalledProcessError as error:
            raise CopyFailedError(
                f"Failed to copy {source}: {(error.stderr or '').strip() or error}"
            ) from error
        copied.append(name)
    return copied


def create_layout(target_dir: Path) -> None:
    target_dir = Path(target_dir)
    for name in EMPTY_DIRS:
        (target_dir / name).mkdir(exist_ok=True)
    (target_dir / "tmp").chmod(0o1777)
    for link, destination in COMPAT_SYMLINKS:
        path = target_dir / link
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        path.symlink_to(destination)


def write_fstab(target_dir: Path, context: InstallContext, plan: PartitionPlan) -> Path:
    path = Path(target_dir) / "etc" / "fstab"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_fstab(fstab_entries(context, plan)), encoding="utf-8")
    return path


def random_mac(prefix: str = MAC_PREFIX) -> str:
    tail = ":".join(f"{secrets.randbelow(256):02X}" for _ in range(4))
    return f"{prefix}:{tail}"


def regenerate_wireless_mac(target_dir: Path, mac: Optional[str] = None) -> list[Path]:
    """Give every firmware descriptor with a ``macaddr=`` line a new address.

    Symlinked descriptors share their target and are left alone.
    """
    firmware = Path(target_dir) / FIRMWARE_DIR
    if not firmware.is_dir():
        return []
    mac = mac or random_mac()
    updated = []
    for path in sorted(firmware.rglob("*.txt")):
        if path.is_symlink() or not path.is_file():
            continue
        # Line endings and undecodable bytes are written back unchanged
        with open(path, encoding="utf-8", errors="surrogateescape", newline="") as handle:
            text = handle.read()
        if not _MACADDR_LINE.search(text):
            continue
        with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            handle.write(_MACADDR_LINE.sub(f"macaddr={mac}", text))
        updated.append(path)
    if updated:
        log.info(f"Wireless MAC set to {mac} in {len(updated)} firmware file(s)")
    return updated


def remove_installer_artifacts(target_dir: Path, extra: Iterable[str] = ()) -> list[Path]:
    removed = []
    for relative in (*INSTALLER_ARTIFACTS, *extra):
        path = Path(target_dir) / str(relative).lstrip("/")
        if path.is_symlink() or path.is_file():
            path.unlink()
            removed.append(path)
    return removed


def populate_root(
    target_dir: Path,
    *,
    source_root: Path,
    context: InstallContext,
    plan: PartitionPlan,
    backup_path: Optional[Path] = None,
) -> None:
    """Fill a mounted root partition from the running system."""
    copy_system_dirs(source_root, target_dir)
    try:
        create_layout(target_dir)
        write_fstab(target_dir, context, plan)
        regenerate_wireless_mac(target_dir)
        extra = (str(backup_path),) if backup_path else ()
        remove_installer_artifacts(target_dir, extra)
    except OSError as error:
        raise CopyFailedError(f"Failed to prepare root filesystem: {error}") from error
