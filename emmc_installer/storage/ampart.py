"""External eMMC repartitioning with ampart.

ampart rewrites the Amlogic reserved partition table so that everything after
the bootloader becomes one data partition. The installer asks for that layout
once, reads the resulting snapshot back and only trusts the tool when the
snapshot equals the request. Any disagreement falls back to the measured
offsets of the layout rules; it never aborts the install.
"""

import shutil
import subprocess

from emmc_installer.domain import RepartitionResult
from emmc_installer.logging import LoggerFactory
from emmc_installer.storage.devices import run_command
from emmc_installer.storage.exceptions import ExternalToolError


log = LoggerFactory.for_storage()

AMPART_BINARY = "ampart"
REQUESTED_LAYOUT = "data::-1:4"


def read_snapshot(ampart_path: str, device_path: str) -> str:
    """First line of ampart's decimal snapshot.

    Raises:
        ExternalToolError: If ampart fails
    """
    try:
        result = run_command([ampart_path, device_path, "--mode", "dsnapshot"])
    except subprocess.CalledProcessError as error:
        raise ExternalToolError(AMPART_BINARY, f"snapshot failed: {error}") from error
    lines = result.stdout.splitlines()
    return lines[0] if lines else ""


def clone_layout(ampart_path: str, device_path: str, layout: str) -> None:
    """Apply ``layout`` and verify it through a fresh snapshot.

    Raises:
        ExternalToolError: If ampart fails or the snapshot differs from ``layout``
    """
    try:
        run_command([ampart_path, device_path, "--mode", "dclone", layout])
    except subprocess.CalledProcessError as error:
        raise ExternalToolError(AMPART_BINARY, f"dclone failed: {error}") from error

    snapshot = read_snapshot(ampart_path, device_path)
    if snapshot != layout:
        raise ExternalToolError(
            AMPART_BINARY, f"layout mismatch: requested {layout!r}, got {snapshot!r}"
        )


def repartition(device_path: str, layout: str = REQUESTED_LAYOUT) -> RepartitionResult:
    """Run ampart once and report whether the device now has ``layout``."""
    ampart_path = shutil.which(AMPART_BINARY)
    if not ampart_path:
        log.warning("ampart not installed, using measured partition offsets")
        return RepartitionResult.UNAVAILABLE

    log.info(f"Requesting ampart layout {layout} on {device_path}")
    try:
        clone_layout(ampart_path, device_path, layout)
    except ExternalToolError as error:
        log.warning(f"{error}; using measured partition offsets")
        return RepartitionResult.MISMATCH

    log.info("ampart layout verified")
    return RepartitionResult.SUCCESS
