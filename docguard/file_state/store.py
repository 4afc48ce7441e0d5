"""In-memory cache of last-known-good file state."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from ..channels import EventChannel
from .types import FileRecord, WatchState


class FileStateStore:
    """One ``FileRecord`` per canonical path.

    ``commit`` overwrites unconditionally and announces the path on
    ``commits`` so any pending conflict for it can be dropped.
    """

    def __init__(self) -> None:
        self._records: dict[Path, FileRecord] = {}
        self.commits: EventChannel[Path] = EventChannel("file-state-commits")

    def observe(self, path: Path) -> FileRecord | None:
        return self._records.get(path)

    def commit(
        self,
        path: Path,
        content: str | None,
        content_hash: str | None,
        modified_at: int | None,
        *,
        size: int | None = None,
        identity: tuple[int, int] | None = None,
    ) -> FileRecord:
        previous = self._records.get(path)
        watch_state = previous.watch_state if previous is not None else WatchState.ACTIVE
        record = FileRecord(
            path=path,
            content_hash=content_hash,
            modified_at=modified_at,
            cached_content=content,
            watch_state=watch_state,
            size=size,
            identity=identity if identity is not None else (previous.identity if previous else None),
        )
        self._records[path] = record
        self.commits.publish(path)
        return record

    def placeholder(self, path: Path) -> FileRecord:
        """Track a referenced file that does not exist (yet)."""
        existing = self._records.get(path)
        if existing is not None:
            return existing
        record = FileRecord(path=path, content_hash=None, modified_at=None, cached_content=None)
        self._records[path] = record
        return record

    def refresh_metadata(
        self,
        path: Path,
        modified_at: int | None,
        size: int | None,
        identity: tuple[int, int] | None,
    ) -> None:
        """Update stat metadata after a touch that left the content hash alone."""
        record = self._records.get(path)
        if record is None:
            return
        self._records[path] = replace(record, modified_at=modified_at, size=size, identity=identity or record.identity)

    def forget(self, path: Path) -> None:
        self._records.pop(path, None)

    def set_watch_state(self, path: Path, watch_state: WatchState) -> None:
        record = self._records.get(path)
        if record is None or record.watch_state == watch_state:
            return
        self._records[path] = replace(record, watch_state=watch_state)

    def find_alias(self, path: Path, identity: tuple[int, int] | None) -> Path | None:
        """Return another tracked path that refers to the same file on disk."""
        if identity is None:
            return None
        for other_path, record in self._records.items():
            if other_path != path and record.identity == identity:
                return other_path
        return None

    def paths(self) -> list[Path]:
        return list(self._records)

    def __contains__(self, path: object) -> bool:
        return path in self._records

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["FileStateStore"]
