"""
Error taxonomy for the patch core

Backends and the filesystem helpers raise these; the download coordinator
contains them per operation and the patcher decides which ones end a session.
"""

import errno
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Category of a patch failure."""
    UNREACHABLE = "unreachable"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    PERMISSION_DENIED = "permission_denied"
    DISK_FULL = "disk_full"
    LOCAL_IO = "local_io"
    SESSION_ALREADY_ACTIVE = "session_already_active"
    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"


class PatchError(Exception):
    """Base exception for every failure raised by the patch core."""
    kind = ErrorKind.LOCAL_IO
    retryable = False

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class UnreachableError(PatchError):
    """Transport-level failure (connection refused, timeout, server error)."""
    kind = ErrorKind.UNREACHABLE
    retryable = True


class NotFoundError(PatchError):
    """The remote resource does not exist."""
    kind = ErrorKind.NOT_FOUND


class MalformedError(PatchError):
    """A manifest or version string could not be parsed."""
    kind = ErrorKind.MALFORMED


class ChecksumMismatchError(PatchError):
    """Downloaded bytes do not match the expected digest or size."""
    kind = ErrorKind.CHECKSUM_MISMATCH
    retryable = True


class LocalStorageError(PatchError):
    """The local installation cannot be written."""
    kind = ErrorKind.LOCAL_IO


class PermissionDeniedError(LocalStorageError):
    """Access to a local or remote resource was refused."""
    kind = ErrorKind.PERMISSION_DENIED


class DiskFullError(LocalStorageError):
    """No space left on the device holding the installation."""
    kind = ErrorKind.DISK_FULL


class SessionAlreadyActiveError(PatchError):
    """Another patch session owns the installation root."""
    kind = ErrorKind.SESSION_ALREADY_ACTIVE


class PatchCancelledError(PatchError):
    """The caller cancelled the running session."""
    kind = ErrorKind.CANCELLED


class ConfigurationError(PatchError):
    """The launcher configuration is unusable."""
    kind = ErrorKind.CONFIGURATION


class InvalidTransitionError(RuntimeError):
    """The patch state machine was asked to move backwards."""
    pass


_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}
_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


def storage_error(exc: OSError, path: Optional[str] = None) -> LocalStorageError:
    """
    Convert an OSError raised while touching the installation into a patch error.

    Args:
        exc: OSError raised by the filesystem call
        path: Path that was being written or removed

    Returns:
        DiskFullError, PermissionDeniedError or a generic LocalStorageError
    """
    message = f"{exc.strerror or exc}" + (f": {path}" if path else "")
    if exc.errno in _DISK_FULL_ERRNOS:
        return DiskFullError(message, path)
    if exc.errno in _PERMISSION_ERRNOS or isinstance(exc, PermissionError):
        return PermissionDeniedError(message, path)
    return LocalStorageError(message, path)
