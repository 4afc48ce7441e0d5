"""Error taxonomy for conflict detection and resolution.

Filesystem failures are sorted into a small set of classes so callers can
decide between retrying, surfacing, or blocking without inspecting errno
values themselves.
"""

from __future__ import annotations

import errno
from enum import Enum


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMISSION = "permission"
    MISSING = "missing"


_TRANSIENT_ERRNOS = frozenset(
    code
    for code in (
        getattr(errno, "EAGAIN", None),
        getattr(errno, "EBUSY", None),
        getattr(errno, "EINTR", None),
        getattr(errno, "EIO", None),
        getattr(errno, "ETIMEDOUT", None),
        getattr(errno, "ESTALE", None),
        getattr(errno, "EHOSTDOWN", None),
        getattr(errno, "ENETUNREACH", None),
    )
    if code is not None
)


def classify_os_error(exc: BaseException) -> ErrorClass:
    """Map an OS-level exception onto the error taxonomy.

    Unknown errors are treated as transient: they get a retry window before
    anything is surfaced to the user.
    """
    if isinstance(exc, FileNotFoundError):
        return ErrorClass.MISSING
    if isinstance(exc, PermissionError):
        return ErrorClass.PERMISSION
    if isinstance(exc, OSError) and exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return ErrorClass.PERMISSION
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return ErrorClass.TRANSIENT
    return ErrorClass.TRANSIENT


class DocguardError(Exception):
    """Base class for errors raised by docguard itself."""


class CycleError(DocguardError):
    """Raised when an include edge set would close a cycle."""

    def __init__(self, cycle: list) -> None:
        self.cycle = list(cycle)
        members = " -> ".join(str(path) for path in self.cycle)
        super().__init__(f"include cycle: {members}")


class ActionNotOffered(DocguardError):
    """A resolution named an action that its conflict kind does not offer."""


class MissingBufferError(DocguardError):
    """A write action needs in-memory content that the host never supplied."""


class MissingTargetError(DocguardError):
    """An action that needs a target path was chosen without one."""


class UnsavedChangesError(DocguardError):
    """A plain reload was chosen while the host holds unsaved edits."""


__all__ = [
    "ActionNotOffered",
    "CycleError",
    "DocguardError",
    "ErrorClass",
    "MissingBufferError",
    "MissingTargetError",
    "UnsavedChangesError",
    "classify_os_error",
]
