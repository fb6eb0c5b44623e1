"""Installation workflow: resolve, select, plan, write, record."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from emmc_installer.config import settings
from emmc_installer.domain import (
    BoardRecord,
    FilesystemType,
    InstallContext,
    PartitionPlan,
    ReleaseDescriptor,
)
from emmc_installer.logging import LoggerFactory, install_run
from emmc_installer.services import registry, release, resolver
from emmc_installer.storage import devices, layout, validation
from emmc_installer.storage.exceptions import InstallCancelledError
from emmc_installer.storage.writer import EmmcWriter, WriteResult, WriterPaths


# (board id, manual fields for id 0 or None)
BoardChooser = Callable[[Sequence[BoardRecord]], "tuple[int, Optional[Mapping[str, str]]]"]
Confirmer = Callable[[InstallContext, BoardRecord], bool]


@dataclass(frozen=True)
class InstallOptions:
    filesystem_type: FilesystemType = FilesystemType.EXT4
    mainline_uboot: bool = False
    ampart: bool = False
    show_all: bool = False


@dataclass
class InstallReport:
    context: InstallContext
    board: BoardRecord
    plan: PartitionPlan
    result: WriteResult


def writer_paths() -> WriterPaths:
    return WriterPaths(
        backup_path=settings.get_path("backup_path"),
        uboot_dir=settings.get_path("uboot_dir"),
        boot_dir=settings.get_path("boot_dir"),
        source_root=settings.get_path("source_root"),
        install_dir=settings.get_path("install_dir"),
    )


def choose_board(
    context: InstallContext,
    chooser: BoardChooser,
    model_database: Path,
    boot_config: Path,
) -> BoardRecord:
    records = registry.load_registry(model_database)
    offered = registry.list_boards(records, family=context.family, show_all=context.show_all)
    board_id, manual = chooser(offered)
    board = registry.select_board(offered, board_id, manual=manual, family=context.family)
    if not board.is_custom:
        device_tree_file = layout.resolve_device_tree_file(board, boot_config)
        if device_tree_file != board.device_tree_file:
            LoggerFactory.for_registry().warning(
                f"Boot config names {device_tree_file}, registry has {board.device_tree_file}; "
                f"using the boot config"
            )
            board = replace(board, device_tree_file=device_tree_file)
    return board


def run_install(
    options: InstallOptions,
    chooser: BoardChooser,
    confirm: Confirmer,
    writer: Optional[EmmcWriter] = None,
) -> InstallReport:
    """Run one installation from privilege check to release file.

    Everything up to the confirmation is read-only; everything after it
    mutates the eMMC and is fatal on failure.
    """
    with install_run() as log:
        validation.validate_root_privileges()

        block_devices = devices.get_block_devices()
        context = resolver.resolve(
            release_file=settings.get_path("release_file"),
            kernel_image=settings.get_path("kernel_image"),
            kernel_uuid_source=settings.get_path("kernel_uuid_source"),
            filesystem_type=options.filesystem_type,
            show_all=options.show_all,
            mainline_uboot_requested=options.mainline_uboot,
            ampart_requested=options.ampart,
            block_devices=block_devices,
        )
        validation.validate_required_tools(context.filesystem_type.value)
        validation.validate_target(context.target_device, context.root_device_name, block_devices)

        board = choose_board(
            context,
            chooser,
            settings.get_path("model_database"),
            settings.get_path("boot_config"),
        )
        if not confirm(context, board):
            raise InstallCancelledError()

        log.info(
            f"Installing to {context.target_device}: board {board.id} {board.model}, "
            f"soc {board.soc}, dtb {board.device_tree_file}, rootfs {context.filesystem_type.value}"
        )
        writer = writer or EmmcWriter(writer_paths())
        writer.prepare_device(context)
        plan = layout.plan_layout(board, context.external_repartition_used, context.filesystem_type)
        log.info(f"Partition plan {plan.offsets} MiB from rule {plan.rule}")

        def record_release(mount_root: Path) -> None:
            source = writer.result.bootloader
            descriptor = ReleaseDescriptor.from_install(
                board,
                context,
                mainline_uboot_used=source is not None and source.name == "mainline",
                uboot_dir=settings.get_path("uboot_dir"),
            )
            release.write_release(descriptor, mount_root)

        result = writer.execute(plan, context, board, finalize=record_release)
        log.success(f"Installation to {context.target_device} complete")
    return InstallReport(context=context, board=board, plan=plan, result=result)
