"""Domain model for eMMC installation.

These types replace the loose shell variables of a board install with
immutable objects that can be passed between resolver, planner and writer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping


# ==============================================================================
# Board Domain
# ==============================================================================


CUSTOM_BOARD_ID = 0


@dataclass(frozen=True)
class BoardRecord:
    """One row of the board registry.

    Absent registry fields (``NA``/``NULL`` placeholders) are empty strings.
    """

    id: int
    model: str
    soc: str
    device_tree_file: str = ""
    uboot_overload_file: str = ""
    mainline_uboot_file: str = ""
    bootloader_img_file: str = ""
    description: str = ""
    kernel_tags: str = ""
    platform: str = ""
    family: str = ""
    boot_conf: str = ""
    contributors: str = ""
    board: str = ""
    build: str = ""

    @property
    def is_custom(self) -> bool:
        return self.id == CUSTOM_BOARD_ID

    def format_label(self) -> str:
        """e.g. ``213  T95Z-Plus  s912``"""
        return f"{self.id:<4} {self.model:<30} {self.soc}"


# ==============================================================================
# Filesystem Domain
# ==============================================================================


class FilesystemType(Enum):
    """Root filesystem type."""

    EXT4 = "ext4"
    BTRFS = "btrfs"

    @classmethod
    def parse(cls, value: str | None) -> FilesystemType:
        if not value:
            return cls.EXT4
        return cls(value.strip().lower())


ROOT_MOUNT_OPTIONS: Mapping[FilesystemType, str] = {
    FilesystemType.EXT4: "defaults,noatime,errors=remount-ro",
    FilesystemType.BTRFS: "defaults,noatime,compress=zstd:6",
}


# ==============================================================================
# Install Session
# ==============================================================================


@dataclass
class InstallContext:
    """Transient state of one installation run. Never persisted."""

    target_device: str  # e.g., "/dev/mmcblk2"
    root_device_name: str  # e.g., "sda" or "mmcblk1"
    rootfs_uuid: str
    filesystem_type: FilesystemType = FilesystemType.EXT4
    need_bootloader_overload: bool = True
    external_repartition_used: bool = False
    family: str = ""
    platform: str = ""
    show_all: bool = False
    mainline_uboot_requested: bool = False
    ampart_requested: bool = False

    @property
    def target_name(self) -> str:
        return Path(self.target_device).name

    def partition_path(self, number: int) -> str:
        """Partition node of the target (mmcblk devices use a ``p`` suffix)."""
        suffix = "p" if self.target_device[-1].isdigit() else ""
        return f"{self.target_device}{suffix}{number}"


# ==============================================================================
# Partition Plan
# ==============================================================================


@dataclass(frozen=True)
class PartitionPlan:
    """Offsets and sizes of the two partitions written to the eMMC (MiB)."""

    blank1_mib: int
    boot_size_mib: int
    blank2_mib: int
    filesystem_type: FilesystemType = FilesystemType.EXT4
    mount_options: Mapping[FilesystemType, str] = field(
        default_factory=lambda: dict(ROOT_MOUNT_OPTIONS)
    )
    rule: str = "default"

    def __post_init__(self) -> None:
        if min(self.blank1_mib, self.boot_size_mib, self.blank2_mib) < 0:
            raise ValueError(
                f"Partition offsets must be non-negative: "
                f"({self.blank1_mib}, {self.boot_size_mib}, {self.blank2_mib})"
            )

    @property
    def offsets(self) -> tuple[int, int, int]:
        return (self.blank1_mib, self.boot_size_mib, self.blank2_mib)

    @property
    def boot_start_mib(self) -> int:
        return self.blank1_mib

    @property
    def boot_end_mib(self) -> int:
        """Last MiB of the boot partition (parted end is inclusive)."""
        return self.blank1_mib + self.boot_size_mib - 1

    @property
    def root_start_mib(self) -> int:
        return self.blank1_mib + self.boot_size_mib + self.blank2_mib

    @property
    def root_mount_options(self) -> str:
        return self.mount_options[self.filesystem_type]


class RepartitionResult(Enum):
    """Outcome of the external repartition tool."""

    SUCCESS = "success"
    MISMATCH = "mismatch"  # tool ran but the layout differs from the request
    UNAVAILABLE = "unavailable"  # tool missing or not requested


# ==============================================================================
# Release Descriptor
# ==============================================================================


# Where the image ships its u-boot binaries
DEFAULT_UBOOT_DIR = Path("/usr/lib/u-boot")

RELEASE_KEYS = (
    "MODEL_ID",
    "MODEL_NAME",
    "SOC",
    "FDTFILE",
    "MAINLINE_UBOOT",
    "BOOTLOADER_IMG",
    "UBOOT_OVERLOAD",
    "ROOTFS_TYPE",
    "BOOT_CONF",
    "DISK_TYPE",
    "MLUBOOT_STATUS",
    "AMPART_STATUS",
)


@dataclass(frozen=True)
class ReleaseDescriptor:
    """Board and layout facts persisted into the installed system."""

    model_id: str
    model_name: str
    soc: str
    fdtfile: str
    mainline_uboot: str
    bootloader_img: str
    uboot_overload: str
    rootfs_type: str
    boot_conf: str
    disk_type: str = "emmc"
    mluboot_status: str = "no"
    ampart_status: str = "no"

    def to_mapping(self) -> dict[str, str]:
        values = (
            self.model_id,
            self.model_name,
            self.soc,
            self.fdtfile,
            self.mainline_uboot,
            self.bootloader_img,
            self.uboot_overload,
            self.rootfs_type,
            self.boot_conf,
            self.disk_type,
            self.mluboot_status,
            self.ampart_status,
        )
        return dict(zip(RELEASE_KEYS, (str(value) for value in values)))

    @classmethod
    def from_install(
        cls,
        board: BoardRecord,
        context: InstallContext,
        *,
        mainline_uboot_used: bool,
        uboot_dir: Path = DEFAULT_UBOOT_DIR,
    ) -> ReleaseDescriptor:
        """Bootloader fields are recorded as absolute paths under ``uboot_dir``."""

        def uboot_path(name: str) -> str:
            return str(Path(uboot_dir) / name) if name else ""

        return cls(
            model_id=str(board.id),
            model_name=board.model,
            soc=board.soc,
            fdtfile=board.device_tree_file,
            mainline_uboot=uboot_path(board.mainline_uboot_file),
            bootloader_img=uboot_path(board.bootloader_img_file),
            uboot_overload=uboot_path(board.uboot_overload_file),
            rootfs_type=context.filesystem_type.value,
            boot_conf=board.boot_conf or "uEnv.txt",
            disk_type="emmc",
            mluboot_status="yes" if mainline_uboot_used else "no",
            ampart_status="yes" if context.external_repartition_used else "no",
        )


# ==============================================================================
# Bootloader Domain
# ==============================================================================


@dataclass(frozen=True)
class ByteRange:
    """One dd pass: ``count`` blocks of ``block_size`` bytes.

    ``skip`` and ``seek`` are in blocks; ``count=None`` copies to the end.
    """

    block_size: int
    skip: int = 0
    seek: int = 0
    count: int | None = None


# Boot code area of the MBR is the first 444 bytes; the partition table that
# follows must survive, so the rest of the image starts at sector 1.
BOOTLOADER_BYTE_RANGES: tuple[ByteRange, ...] = (
    ByteRange(block_size=1, count=444),
    ByteRange(block_size=512, skip=1, seek=1),
)


@dataclass(frozen=True)
class BootloaderSource:
    """A bootloader image and the byte ranges written from it."""

    name: str  # "mainline", "vendor" or "backup"
    path: Path
    byte_ranges: tuple[ByteRange, ...] = BOOTLOADER_BYTE_RANGES
