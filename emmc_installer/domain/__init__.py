"""Domain models for eMMC installation."""

from __future__ import annotations

from .models import (
    BOOTLOADER_BYTE_RANGES,
    CUSTOM_BOARD_ID,
    RELEASE_KEYS,
    ROOT_MOUNT_OPTIONS,
    BoardRecord,
    BootloaderSource,
    ByteRange,
    FilesystemType,
    InstallContext,
    PartitionPlan,
    ReleaseDescriptor,
    RepartitionResult,
)


__all__ = [
    "BOOTLOADER_BYTE_RANGES",
    "CUSTOM_BOARD_ID",
    "RELEASE_KEYS",
    "ROOT_MOUNT_OPTIONS",
    "BoardRecord",
    "BootloaderSource",
    "ByteRange",
    "FilesystemType",
    "InstallContext",
    "PartitionPlan",
    "ReleaseDescriptor",
    "RepartitionResult",
]
