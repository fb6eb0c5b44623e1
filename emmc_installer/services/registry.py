"""Board registry: the model database of supported TV boxes.

The registry file has one colon-delimited row per board with 15 fields::

    id:model:soc:fdt:uboot_overload:mainline_uboot:bootloader_img:description:
    kernel_tags:platform:family:boot_conf:contributors:board:build

``NA`` and ``NULL`` are placeholders for an absent field. Lines starting with
``#`` and blank lines are ignored. Id 0 is never a row: it selects the manual
entry path where the caller supplies every field itself.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

from emmc_installer.domain import CUSTOM_BOARD_ID, BoardRecord
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.exceptions import (
    BoardNotFoundError,
    EmptyRegistryError,
    PreconditionFailure,
)


log = LoggerFactory.for_registry()

REGISTRY_FIELDS = (
    "id",
    "model",
    "soc",
    "device_tree_file",
    "uboot_overload_file",
    "mainline_uboot_file",
    "bootloader_img_file",
    "description",
    "kernel_tags",
    "platform",
    "family",
    "boot_conf",
    "contributors",
    "board",
    "build",
)
PLACEHOLDER_TOKENS = ("NULL", "NA")
MANUAL_FIELDS = (
    "soc",
    "device_tree_file",
    "uboot_overload_file",
    "mainline_uboot_file",
    "bootloader_img_file",
)


def normalize_field(value: str) -> str:
    """Drop every whitespace character; a placeholder token becomes empty."""
    value = "".join(value.split())
    if value in PLACEHOLDER_TOKENS:
        return ""
    return value


def parse_row(line: str) -> Optional[BoardRecord]:
    """Parse one registry row; return None for comments, blanks and bad ids."""
    if not line.strip() or line.lstrip().startswith("#"):
        return None
    fields = [normalize_field(value) for value in line.rstrip("\n").split(":")]
    fields = (fields + [""] * len(REGISTRY_FIELDS))[: len(REGISTRY_FIELDS)]
    if not fields[0].isdigit() or int(fields[0]) == CUSTOM_BOARD_ID:
        log.debug(f"Skipping registry row with invalid id: {line.strip()!r}")
        return None
    values = dict(zip(REGISTRY_FIELDS, fields))
    values["id"] = int(values["id"])
    return BoardRecord(**values)


def parse_registry(text: str) -> list[BoardRecord]:
    """Parse registry text into records, keeping file order."""
    records = []
    for line in text.splitlines():
        record = parse_row(line)
        if record is not None:
            records.append(record)
    return records


def load_registry(path: Path) -> list[BoardRecord]:
    path = Path(path)
    if not path.is_file():
        raise PreconditionFailure(f"Board registry not found: {path}")
    records = parse_registry(path.read_text(encoding="utf-8", errors="replace"))
    log.debug(f"Loaded {len(records)} boards from {path}")
    return records


def list_boards(
    records: Iterable[BoardRecord],
    family: Optional[str] = None,
    show_all: bool = False,
) -> list[BoardRecord]:
    """Boards offered for selection, ordered by id.

    Unless ``show_all`` is set, only boards whose family equals ``family``
    are returned. An empty result raises EmptyRegistryError; the unfiltered
    table is never used as a fallback.
    """
    records = list(records)
    if show_all:
        selected = records
    else:
        selected = [record for record in records if record.family == (family or "")]
    if not selected:
        raise EmptyRegistryError(None if show_all else family)
    # sorted() is stable, so equal ids keep their file order
    return sorted(selected, key=lambda record: record.id)


def lookup(records: Iterable[BoardRecord], board_id: int) -> BoardRecord:
    """Return the single record with ``board_id``.

    Raises:
        BoardNotFoundError: If no row (or more than one row) has that id
    """
    matches = [record for record in records if record.id == board_id]
    if len(matches) != 1:
        if len(matches) > 1:
            log.error(f"Registry has {len(matches)} rows for id {board_id}")
        raise BoardNotFoundError(board_id)
    return matches[0]


def manual_board(values: Mapping[str, str], family: str = "") -> BoardRecord:
    """Build the record for id 0 from manually entered fields."""
    fields = {key: normalize_field(values.get(key, "") or "") for key in MANUAL_FIELDS}
    if not fields["soc"] or not fields["device_tree_file"]:
        raise BoardNotFoundError(CUSTOM_BOARD_ID)
    return BoardRecord(
        id=CUSTOM_BOARD_ID,
        model="Customize",
        family=family,
        **fields,
    )


def select_board(
    records: Sequence[BoardRecord],
    board_id: int,
    manual: Optional[Mapping[str, str]] = None,
    family: str = "",
) -> BoardRecord:
    """Resolve a user selection: id 0 uses ``manual``, anything else the table."""
    if board_id == CUSTOM_BOARD_ID:
        if manual is None:
            raise BoardNotFoundError(board_id)
        board = manual_board(manual, family=family)
    else:
        board = lookup(records, board_id)
    log.info(f"Selected board {board.id}: {board.model} ({board.soc})")
    return board
