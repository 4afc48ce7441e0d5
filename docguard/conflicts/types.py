"""Conflict datatypes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..graph import DependencyEdge


class ConflictKind(str, Enum):
    EXTERNAL_MODIFIED = "external-modified"
    EXTERNAL_DELETED = "external-deleted"
    EXTERNAL_CREATED_COLLISION = "external-created-collision"
    INTERNAL_UNSAVED_VS_EXTERNAL = "internal-unsaved-vs-external"
    PERMISSION_DENIED = "permission-denied"
    WATCH_FAILURE = "watch-failure"
    CIRCULAR_DEPENDENCY = "circular-dependency"


class Severity(int, Enum):
    INFO = 1
    WARNING = 2
    BLOCKING = 3

    @property
    def label(self) -> str:
        return self.name.lower()


class ConflictSource(str, Enum):
    MEMORY = "memory"
    BACKUP = "backup"


@dataclass(frozen=True)
class Conflict:
    """One detected divergence for one path. Immutable; consumed once."""

    path: Path
    kind: ConflictKind
    severity: Severity
    detected_at: float
    related_edges: tuple[DependencyEdge, ...] = ()
    source: ConflictSource = ConflictSource.MEMORY
    cycle: tuple[Path, ...] = ()
    collides_with: Path | None = None
    detail: str = ""

    def describe(self) -> str:
        text = f"{self.kind.value} ({self.severity.label}): {self.path}"
        if self.cycle:
            text += " [cycle: " + " -> ".join(p.name for p in (*self.cycle, self.cycle[0])) + "]"
        if self.collides_with is not None:
            text += f" [same file as {self.collides_with}]"
        if self.source == ConflictSource.BACKUP:
            text += " [from emergency backup]"
        if self.detail:
            text += f": {self.detail}"
        return text


@dataclass
class PendingQueueEntry:
    conflict: Conflict
    debounce_deadline: float
    coalesce_count: int = 1
    queued_at: float = 0.0


__all__ = ["Conflict", "ConflictKind", "ConflictSource", "PendingQueueEntry", "Severity"]
