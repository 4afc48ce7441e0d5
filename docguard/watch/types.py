"""Datatypes flowing out of ``WatchSource``."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..file_state.types import WatchState


class WatchEventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class WatchEvent:
    path: Path
    kind: WatchEventKind
    observed_at: float
    native: bool = False


@dataclass(frozen=True)
class HealthChange:
    path: Path
    previous: WatchState
    current: WatchState
    reason: str = ""


@dataclass(frozen=True)
class WatchHandle:
    """Opaque token returned by ``WatchSource.start``."""

    handle_id: int
    path: Path


def transition_kind(previous_state: str, current_state: str) -> WatchEventKind:
    """Event kind for a change between two ``path_signature`` states."""
    if previous_state == "missing" and current_state != "missing":
        return WatchEventKind.CREATED
    if previous_state != "missing" and current_state == "missing":
        return WatchEventKind.DELETED
    return WatchEventKind.MODIFIED


__all__ = ["HealthChange", "WatchEvent", "WatchEventKind", "WatchHandle", "WatchState", "transition_kind"]
