"""Custom exceptions for eMMC installation.

Exception Hierarchy:
    InstallerError (base)
        ├── PreconditionFailure
        │   ├── NotPrivilegedError
        │   ├── MissingReleaseFileError
        │   ├── InvalidUUIDError
        │   └── InstallCancelledError
        ├── AlreadyInstalledError
        ├── NoStorageFoundError
        ├── RegistryLookupError
        │   ├── BoardNotFoundError
        │   └── EmptyRegistryError
        ├── ExternalToolError
        ├── DestructiveStepError
        │   ├── BackupFailedError
        │   ├── PartitionFailedError
        │   ├── BootloaderWriteError
        │   ├── FormatFailedError
        │   └── CopyFailedError
        └── WriteFailedError

Precondition and registry errors are raised before the target device is
touched. Anything derived from DestructiveStepError means the device may be
left in an inconsistent state and the bootloader backup is the only way back.

Usage:
    from emmc_installer.storage.exceptions import AlreadyInstalledError

    if f"{root_base}boot0" in names:
        raise AlreadyInstalledError(root_base)
"""

from typing import Optional


class InstallerError(Exception):
    """Base exception for all installer failures."""

    operation = "install"


class PreconditionFailure(InstallerError):
    """The host is not in a state where installation may start."""

    operation = "precondition"


class NotPrivilegedError(PreconditionFailure):
    """The installer was not started with root privileges."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"Root privileges are required (running as uid {euid})")


class MissingReleaseFileError(PreconditionFailure):
    """The release descriptor of the running system is missing."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Release file not found: {path}")


class InvalidUUIDError(PreconditionFailure):
    """No UUID source produced a usable rootfs UUID."""

    def __init__(self):
        super().__init__("Invalid uuid generator: no rootfs UUID could be created")


class InstallCancelledError(PreconditionFailure):
    """The operator declined the confirmation prompt."""

    def __init__(self):
        super().__init__("Installation cancelled, eMMC left untouched")


class AlreadyInstalledError(InstallerError):
    """The running system already boots from internal storage."""

    operation = "resolve"

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(
            f"System is running from eMMC ({device_name}); "
            f"boot from USB or TF card to install"
        )


class NoStorageFoundError(InstallerError):
    """No eMMC candidate was found on the system."""

    operation = "resolve"

    def __init__(self, root_device_name: str = ""):
        self.root_device_name = root_device_name
        msg = "Unable to locate eMMC storage"
        if root_device_name:
            msg += f" (excluding root device {root_device_name})"
        super().__init__(msg)


class RegistryLookupError(InstallerError):
    """Base exception for board registry failures."""

    operation = "registry"


class BoardNotFoundError(RegistryLookupError):
    """The requested board id is not in the registry."""

    def __init__(self, board_id):
        self.board_id = board_id
        super().__init__(f"Board id not found in registry: {board_id}")


class EmptyRegistryError(RegistryLookupError):
    """Filtering the registry left no boards to choose from."""

    def __init__(self, family: Optional[str] = None):
        self.family = family
        if family:
            super().__init__(f"No boards in registry for family: {family}")
        else:
            super().__init__("Board registry is empty")


class ExternalToolError(InstallerError):
    """An optional external tool failed or disagreed with the request."""

    operation = "external-tool"

    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(f"{tool}: {message}")


class DestructiveStepError(InstallerError):
    """A step that mutates the target device failed."""

    operation = "storage"

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)


class BackupFailedError(DestructiveStepError):
    """The original bootloader could not be backed up."""

    operation = "backup"


class PartitionFailedError(DestructiveStepError):
    """Removing or creating partitions failed."""

    operation = "partition"


class BootloaderWriteError(DestructiveStepError):
    """Writing bootloader bytes to the device failed."""

    operation = "bootloader"


class FormatFailedError(DestructiveStepError):
    """Creating a filesystem or mounting it failed."""

    operation = "format"


class CopyFailedError(DestructiveStepError):
    """Copying system content onto the new partitions failed."""

    operation = "copy"


class WriteFailedError(InstallerError):
    """The release descriptor could not be written."""

    operation = "release"

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        self.reason = reason
        msg = f"Failed to write release file {path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
