"""Partition layout planning for Amlogic eMMC installs.

The vendor bootloader and the Android reserved areas occupy regions of the
eMMC that differ between boards and even between production batches. The
offsets below were measured by users on real hardware; a box whose reserved
area overlaps the boot partition will not boot.

Rules are evaluated top to bottom and the first match wins, so a specific
rule must come before the general rule it refines. The last rule always
matches.

This module is pure: no I/O except resolve_device_tree_file(), which reads
the live boot config.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from emmc_installer.domain import BoardRecord, FilesystemType, PartitionPlan


BOOT_SIZE_MIB = 512


@dataclass(frozen=True)
class LayoutInputs:
    soc: str
    board_id: int
    device_tree_file: str
    external_repartition_used: bool

    @classmethod
    def from_board(cls, board: BoardRecord, external_repartition_used: bool) -> LayoutInputs:
        return cls(
            soc=board.soc.lower(),
            board_id=board.id,
            device_tree_file=board.device_tree_file,
            external_repartition_used=external_repartition_used,
        )


@dataclass(frozen=True)
class LayoutRule:
    name: str
    matches: Callable[[LayoutInputs], bool]
    blank1_mib: int
    boot_size_mib: int
    blank2_mib: int

    @property
    def offsets(self) -> tuple[int, int, int]:
        return (self.blank1_mib, self.boot_size_mib, self.blank2_mib)


def _soc_and_id(soc: str, board_id: int) -> Callable[[LayoutInputs], bool]:
    return lambda inputs: inputs.soc == soc and inputs.board_id == board_id


def _soc_in(*socs: str) -> Callable[[LayoutInputs], bool]:
    return lambda inputs: inputs.soc in socs


def _device_tree(name: str) -> Callable[[LayoutInputs], bool]:
    return lambda inputs: inputs.device_tree_file == name


LAYOUT_RULES: tuple[LayoutRule, ...] = (
    # ampart leaves a single data partition starting right after the
    # relocated reserved area
    LayoutRule(
        "external-repartition",
        lambda inputs: inputs.external_repartition_used,
        117, BOOT_SIZE_MIB, 0,
    ),
    LayoutRule(
        "skyworth-lb2004-a4091",
        _device_tree("meson-sm1-skyworth-lb2004-a4091.dtb"),
        108, BOOT_SIZE_MIB, 562,
    ),
    LayoutRule("s905l3a-305", _soc_and_id("s905l3a", 305), 108, BOOT_SIZE_MIB, 778),
    # the one board family whose reserved area needs a 513 MiB boot partition
    LayoutRule("s905l3a", _soc_in("s905l3a"), 128, 513, 720),
    LayoutRule("s912-213", _soc_and_id("s912", 213), 700, BOOT_SIZE_MIB, 220),
    LayoutRule("s912-s905d", _soc_in("s912", "s905d"), 68, BOOT_SIZE_MIB, 220),
    LayoutRule("default", lambda inputs: True, 68, BOOT_SIZE_MIB, 770),
)


def match_rule(inputs: LayoutInputs, rules=LAYOUT_RULES) -> LayoutRule:
    for rule in rules:
        if rule.matches(inputs):
            return rule
    raise LookupError(f"No layout rule matched {inputs}")


def plan_layout(
    board: BoardRecord,
    external_repartition_used: bool = False,
    filesystem_type: FilesystemType = FilesystemType.EXT4,
) -> PartitionPlan:
    """Compute the partition plan for ``board``.

    The same (soc, id, device tree, external repartition) inputs always give
    the same plan; the filesystem type only selects mount options.
    """
    rule = match_rule(LayoutInputs.from_board(board, external_repartition_used))
    return PartitionPlan(
        blank1_mib=rule.blank1_mib,
        boot_size_mib=rule.boot_size_mib,
        blank2_mib=rule.blank2_mib,
        filesystem_type=filesystem_type,
        rule=rule.name,
    )


_FDT_LINE = re.compile(r"^\s*(?:FDT|fdt|FDTFILE|fdtfile)\s*=\s*(?P<path>\S+\.dtb)\s*$")


def live_device_tree_file(boot_config: Path) -> Optional[str]:
    """Device tree named by the running system's boot config, if any."""
    try:
        text = Path(boot_config).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    for line in text.splitlines():
        match = _FDT_LINE.match(line)
        if match:
            return Path(match.group("path")).name
    return None


def resolve_device_tree_file(board: BoardRecord, boot_config: Path) -> str:
    """The live boot config wins over the registry default."""
    return live_device_tree_file(boot_config) or board.device_tree_file
