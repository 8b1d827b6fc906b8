"""Custom exceptions for nido."""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotFoundError(ManagerError):
    """A disk, template, image, version or state record does not exist."""


class AlreadyExistsError(ManagerError):
    """Refusing to overwrite an existing VM disk."""


class DiskCreationError(ManagerError):
    """qemu-img could not materialize a disk."""


class LaunchError(ManagerError):
    """The hypervisor process failed to start."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class ExhaustedError(ManagerError):
    """No free TCP port left in the requested range."""


class ChecksumMismatchError(ManagerError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class UnsupportedAlgorithmError(ManagerError):
    """Checksum algorithm other than sha256/sha512."""


class SchemaVersionError(ManagerError):
    """Catalog payload carries an unknown schema version."""


class UnreachableError(ManagerError):
    """Catalog could not be fetched and no cached copy exists."""


class DownloadError(ManagerError):
    """HTTP transfer failed or produced a truncated file."""


class QMPNotReadyError(ManagerError):
    """The hypervisor control socket is not accepting connections yet."""
