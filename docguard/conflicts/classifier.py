"""Turn observed disk state into at most one ``Conflict``.

Rules, first match wins:

1. missing on disk, tracked, unsaved edits     -> external-deleted, blocking
2. missing on disk, no unsaved edits            -> external-deleted, warning
3. read denied                                  -> permission-denied, blocking
4. hash differs, unsaved edits                  -> internal-unsaved-vs-external, blocking
5. hash differs, no unsaved edits               -> external-modified, info
6. new include target aliasing a tracked file   -> external-created-collision, warning
7. first detection after falling back to polling -> watch-failure, info

The content hash is authoritative for "changed"; mtime only lets the probe
skip rehashing.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from ..errors import ErrorClass, classify_os_error
from ..file_state.types import DiskProbe, FileRecord, ProbeStatus
from ..graph import CycleRejection
from .types import Conflict, ConflictKind, ConflictSource, Severity


class ConflictClassifier:
    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic

    def _now(self, now: float | None) -> float:
        return self._monotonic() if now is None else now

    def classify(
        self,
        path: Path,
        record: FileRecord | None,
        probe: DiskProbe,
        *,
        has_unsaved_changes: bool = False,
        polling_advisory_due: bool = False,
        collides_with: Path | None = None,
        now: float | None = None,
    ) -> Conflict | None:
        detected_at = self._now(now)

        if probe.status == ProbeStatus.MISSING:
            if record is not None and has_unsaved_changes:
                return Conflict(path, ConflictKind.EXTERNAL_DELETED, Severity.BLOCKING, detected_at)
            return Conflict(path, ConflictKind.EXTERNAL_DELETED, Severity.WARNING, detected_at)

        if probe.status == ProbeStatus.PERMISSION:
            return Conflict(
                path, ConflictKind.PERMISSION_DENIED, Severity.BLOCKING, detected_at, detail=probe.error or ""
            )

        if probe.status == ProbeStatus.ERROR:
            # Transient; the caller escalates it if it persists.
            return None

        if record is not None and record.content_hash != probe.content_hash:
            if has_unsaved_changes:
                return Conflict(path, ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL, Severity.BLOCKING, detected_at)
            return Conflict(path, ConflictKind.EXTERNAL_MODIFIED, Severity.INFO, detected_at)

        if collides_with is not None:
            return Conflict(
                path,
                ConflictKind.EXTERNAL_CREATED_COLLISION,
                Severity.WARNING,
                detected_at,
                collides_with=collides_with,
            )

        if polling_advisory_due:
            return Conflict(
                path,
                ConflictKind.WATCH_FAILURE,
                Severity.INFO,
                detected_at,
                detail="native change notification failed; polling instead",
            )
        return None

    def classify_save_failure(self, path: Path, error: BaseException, now: float | None = None) -> Conflict | None:
        """Conflict for a host save that raised; transient errors yield ``None``."""
        error_class = classify_os_error(error)
        if error_class is ErrorClass.TRANSIENT:
            return None
        detail = f"save failed: {error}"
        return Conflict(path, ConflictKind.PERMISSION_DENIED, Severity.BLOCKING, self._now(now), detail=detail)

    def escalated_transient(self, path: Path, probe: DiskProbe, now: float | None = None) -> Conflict:
        """A transient failure that outlived its retry window."""
        detail = f"still failing: {probe.error}" if probe.error else "still failing"
        return Conflict(path, ConflictKind.PERMISSION_DENIED, Severity.BLOCKING, self._now(now), detail=detail)

    def escalated_save(self, path: Path, error: BaseException, now: float | None = None) -> Conflict:
        return Conflict(
            path,
            ConflictKind.PERMISSION_DENIED,
            Severity.BLOCKING,
            self._now(now),
            detail=f"save still failing: {error}",
        )

    def cycle_conflict(self, rejection: CycleRejection, now: float | None = None) -> Conflict:
        return Conflict(
            rejection.from_path,
            ConflictKind.CIRCULAR_DEPENDENCY,
            Severity.BLOCKING,
            self._now(now),
            related_edges=rejection.rejected_edges,
            cycle=rejection.cycle,
        )

    def recovered_backup(self, path: Path, now: float | None = None) -> Conflict:
        return Conflict(
            path,
            ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL,
            Severity.BLOCKING,
            self._now(now),
            source=ConflictSource.BACKUP,
            detail="unsaved changes recovered after an abnormal shutdown",
        )


__all__ = ["ConflictClassifier"]
