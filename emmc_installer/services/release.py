"""Release descriptor reading and targeted rewriting.

The descriptor is a shell-sourceable file of ``KEY='value'`` lines. The
installer only replaces the lines of the keys it owns; every other line of
the template copied from the running system is kept byte for byte.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Mapping

from emmc_installer.domain import RELEASE_KEYS, ReleaseDescriptor
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.exceptions import MissingReleaseFileError, WriteFailedError


log = LoggerFactory.for_registry()

RELEASE_RELATIVE_PATH = Path("etc/ophub-release")
_LINE = re.compile(r"^\s*(?P<key>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*?)\s*$")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def format_line(key: str, value: str) -> str:
    return f"{key}='{value}'"


def parse_release(text: str) -> dict[str, str]:
    """Parse ``KEY='value'`` lines; the last assignment of a key wins."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        match = _LINE.match(line)
        if match:
            values[match.group("key")] = _unquote(match.group("value"))
    return values


def read_release(path: Path) -> dict[str, str]:
    path = Path(path)
    if not path.is_file():
        raise MissingReleaseFileError(str(path))
    return parse_release(path.read_text(encoding="utf-8", errors="replace"))


def render_release(template: str, values: Mapping[str, str]) -> str:
    """Replace the lines of ``values`` keys in ``template``.

    Known keys absent from the template are appended in their canonical
    order so that a later read returns every value written.
    """
    lines = template.splitlines()
    seen = set()
    for index, line in enumerate(lines):
        match = _LINE.match(line)
        if match and match.group("key") in values:
            key = match.group("key")
            lines[index] = format_line(key, values[key])
            seen.add(key)
    for key in RELEASE_KEYS:
        if key in values and key not in seen:
            lines.append(format_line(key, values[key]))
    for key, value in values.items():
        if key not in RELEASE_KEYS and key not in seen:
            lines.append(format_line(key, value))
    return "\n".join(lines) + "\n"


def write_release(
    descriptor: ReleaseDescriptor,
    mount_root: Path,
    relative_path: Path = RELEASE_RELATIVE_PATH,
) -> Path:
    """Write ``descriptor`` into the release file below ``mount_root``.

    Raises:
        WriteFailedError: If the file cannot be read or written
    """
    path = Path(mount_root) / relative_path
    try:
        template = path.read_text(encoding="utf-8") if path.exists() else ""
        content = render_release(template, descriptor.to_mapping())
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as error:
        raise WriteFailedError(str(path), str(error)) from error
    log.info(f"Release file updated: {path}")
    return path
