"""Domain datatypes for tracked files and observed disk state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class WatchState(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    POLLING = "polling"


class ProbeStatus(str, Enum):
    OK = "ok"
    MISSING = "missing"
    PERMISSION = "permission"
    ERROR = "error"


@dataclass(frozen=True)
class FileRecord:
    """Last-known-good state of one tracked file.

    ``content_hash is None`` marks a placeholder: the file was referenced but
    missing when it was first discovered.
    """

    path: Path
    content_hash: str | None
    modified_at: int | None
    cached_content: str | None
    watch_state: WatchState = WatchState.ACTIVE
    size: int | None = None
    identity: tuple[int, int] | None = None

    @property
    def is_placeholder(self) -> bool:
        return self.content_hash is None


@dataclass(frozen=True)
class DiskProbe:
    """Result of looking at a path on disk.

    ``content`` is only populated when the file had to be read, i.e. when the
    mtime/size pre-filter could not prove it unchanged.
    """

    path: Path
    status: ProbeStatus
    content_hash: str | None = None
    modified_at: int | None = None
    size: int | None = None
    identity: tuple[int, int] | None = None
    content: str | None = None
    error: str | None = None

    @property
    def exists(self) -> bool:
        return self.status in (ProbeStatus.OK, ProbeStatus.PERMISSION, ProbeStatus.ERROR)


__all__ = ["DiskProbe", "FileRecord", "ProbeStatus", "WatchState"]
