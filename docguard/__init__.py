"""Public package surface for docguard.

Exports the coordinator and the datatypes hosts exchange with it, plus
``main`` for programmatic CLI invocation. Most implementation lives in
submodules under ``docguard``.
"""

from __future__ import annotations

from .config import DocguardConfig, load_docguard_config
from .conflicts import Conflict, ConflictKind, ConflictSource, Severity
from .coordinator import ConflictCoordinator, DocumentHandle, SystemStatus
from .errors import (
    ActionNotOffered,
    CycleError,
    DocguardError,
    MissingBufferError,
    MissingTargetError,
    UnsavedChangesError,
)
from .recovery import EmergencyBackup
from .resolution import Action, ActionOutcome, Preference, Resolution


def main(*args, **kwargs):
    """Lazily import CLI entrypoint to keep package imports lightweight."""
    from .cli import main as _main

    return _main(*args, **kwargs)


__all__ = [
    "Action",
    "ActionNotOffered",
    "ActionOutcome",
    "Conflict",
    "ConflictCoordinator",
    "ConflictKind",
    "ConflictSource",
    "CycleError",
    "DocguardConfig",
    "DocguardError",
    "DocumentHandle",
    "EmergencyBackup",
    "MissingBufferError",
    "MissingTargetError",
    "Preference",
    "Resolution",
    "Severity",
    "SystemStatus",
    "UnsavedChangesError",
    "load_docguard_config",
    "main",
]
