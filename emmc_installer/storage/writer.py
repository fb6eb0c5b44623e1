"""Storage Writer: apply a partition plan to the eMMC.

The sequence is strictly ordered and not resumable. Each step raises on
failure and nothing is rolled back; from the wipe onwards the only way back
is the bootloader backup taken in the first step.

    prepare_device():  backup -> wipe -> optional ampart
    execute():         partition -> bootloader -> boot partition -> root partition
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from emmc_installer.domain import (
    BoardRecord,
    BootloaderSource,
    InstallContext,
    PartitionPlan,
    RepartitionResult,
)
from emmc_installer.logging import install_step
from emmc_installer.storage import ampart, bootfs, devices, rootfs
from emmc_installer.storage import format as formatting
from emmc_installer.storage.bootloader import (
    backup_bootloader,
    select_bootloader_source,
    write_bootloader,
)
from emmc_installer.storage.exceptions import BootloaderWriteError, PartitionFailedError
from emmc_installer.storage.mount import mounted


@dataclass(frozen=True)
class WriterPaths:
    """Host paths the writer reads from or writes to."""

    backup_path: Path
    uboot_dir: Path
    boot_dir: Path
    source_root: Path
    install_dir: Path


@dataclass
class WriteResult:
    bootloader: Optional[BootloaderSource] = None
    repartition: RepartitionResult = RepartitionResult.UNAVAILABLE


class EmmcWriter:
    def __init__(
        self,
        paths: WriterPaths,
        block_devices: Optional[Callable[[], list]] = None,
    ):
        self.paths = paths
        self._block_devices = block_devices or devices.get_block_devices
        self.result = WriteResult()

    def _target_entry(self, context: InstallContext) -> dict:
        device = devices.get_device_by_name(context.target_name, self._block_devices())
        if device is None:
            raise PartitionFailedError(
                f"Target {context.target_device} disappeared", device=context.target_device
            )
        return device

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def backup(self, context: InstallContext) -> Path:
        with install_step("backup", device=context.target_device):
            return backup_bootloader(context.target_device, self.paths.backup_path)

    def wipe(self, context: InstallContext) -> None:
        with install_step("wipe", device=context.target_device) as log:
            device = self._target_entry(context)
            if not devices.unmount_device(device):
                raise PartitionFailedError(
                    f"Partitions of {context.target_device} are still mounted",
                    device=context.target_device,
                )
            numbers = devices.list_partition_numbers(device)
            log.debug(f"Removing partitions {numbers} of {context.target_device}")
            formatting.remove_partitions(context.target_device, numbers)

    def repartition(self, context: InstallContext) -> RepartitionResult:
        if not context.ampart_requested:
            return RepartitionResult.UNAVAILABLE
        with install_step("ampart", device=context.target_device):
            return ampart.repartition(context.target_device)

    def prepare_device(self, context: InstallContext) -> RepartitionResult:
        """Back up, wipe and optionally repartition the target.

        Sets ``context.external_repartition_used`` from the ampart outcome.
        """
        self.backup(context)
        self.wipe(context)
        result = self.repartition(context)
        context.external_repartition_used = result is RepartitionResult.SUCCESS
        self.result.repartition = result
        return result

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def partition(self, plan: PartitionPlan, context: InstallContext) -> None:
        with install_step("partition", device=context.target_device):
            formatting.create_partitions(context.target_device, plan)

    def write_bootloader(self, context: InstallContext, board: BoardRecord) -> BootloaderSource:
        with install_step("bootloader", device=context.target_device) as log:
            source = select_bootloader_source(
                board,
                self.paths.uboot_dir,
                self.paths.backup_path,
                mainline_requested=context.mainline_uboot_requested,
            )
            if source is None:
                raise BootloaderWriteError(
                    "No bootloader image available, not even the backup",
                    device=context.target_device,
                )
            log.info(f"Using {source.name} bootloader")
            write_bootloader(source, context.target_device)
            self.result.bootloader = source
            return source

    def populate_boot(self, context: InstallContext, board: BoardRecord) -> None:
        partition = context.partition_path(1)
        with install_step("boot", partition=partition):
            formatting.format_boot(partition)
            with mounted(partition, self.paths.install_dir, "vfat") as target:
                bootfs.populate_boot(
                    target,
                    source_dir=self.paths.boot_dir,
                    context=context,
                    board=board,
                    uboot_dir=self.paths.uboot_dir,
                )

    def populate_root(
        self,
        plan: PartitionPlan,
        context: InstallContext,
        finalize: Optional[Callable[[Path], None]] = None,
    ) -> None:
        """Format, mount and fill the root partition.

        ``finalize`` runs against the mounted root before it is released.
        """
        partition = context.partition_path(2)
        fstype = context.filesystem_type.value
        options = "compress=zstd:6" if fstype == "btrfs" else None
        with install_step("rootfs", partition=partition, fstype=fstype):
            formatting.format_root(partition, context.filesystem_type, context.rootfs_uuid)
            with mounted(partition, self.paths.install_dir, fstype, options) as target:
                rootfs.populate_root(
                    target,
                    source_root=self.paths.source_root,
                    context=context,
                    plan=plan,
                    backup_path=self.paths.backup_path,
                )
                if finalize is not None:
                    finalize(target)

    def execute(
        self,
        plan: PartitionPlan,
        context: InstallContext,
        board: BoardRecord,
        finalize: Optional[Callable[[Path], None]] = None,
    ) -> WriteResult:
        self.partition(plan, context)
        self.write_bootloader(context, board)
        self.populate_boot(context, board)
        self.populate_root(plan, context, finalize=finalize)
        return self.result
