"""Debounced, coalescing, capacity-bounded conflict queue."""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from .types import Conflict, ConflictKind, PendingQueueEntry, Severity


class ConflictQueue:
    """Holds detected conflicts until the presentation layer is ready.

    - A push for a path that already has a pending entry coalesces into it;
      while the burst stays inside ``debounce_delay`` the deadline moves out.
    - Severity is upgraded on coalesce, never downgraded unless the caller
      says the path was explicitly re-classified.
    - At most ``max_concurrent`` conflicts are presented at once and never two
      for the same path. The rest wait in arrival order.
    """

    def __init__(
        self,
        debounce_delay: float,
        max_concurrent: int,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._debounce_delay = max(0.0, debounce_delay)
        self._max_concurrent = max(1, max_concurrent)
        self._monotonic = monotonic
        self._pending: dict[Path, PendingQueueEntry] = {}
        self._presented: dict[Path, Conflict] = {}

    def push(self, conflict: Conflict, now: float | None = None, *, reclassified: bool = False) -> PendingQueueEntry:
        now = self._monotonic() if now is None else now
        entry = self._pending.get(conflict.path)
        if entry is None:
            entry = PendingQueueEntry(
                conflict=conflict,
                debounce_deadline=now + self._debounce_delay,
                queued_at=now,
            )
            self._pending[conflict.path] = entry
            return entry

        entry.coalesce_count += 1
        if now < entry.debounce_deadline:
            entry.debounce_deadline = now + self._debounce_delay
        if reclassified or conflict.severity > entry.conflict.severity:
            entry.conflict = conflict
        return entry

    def drain(self, now: float | None = None) -> list[Conflict]:
        """Present ready conflicts, up to the free presentation slots."""
        now = self._monotonic() if now is None else now
        slots = self._max_concurrent - len(self._presented)
        out: list[Conflict] = []
        if slots <= 0:
            return out
        for path, entry in list(self._pending.items()):
            if len(out) >= slots:
                break
            if entry.debounce_deadline > now or path in self._presented:
                continue
            del self._pending[path]
            self._presented[path] = entry.conflict
            out.append(entry.conflict)
        return out

    def is_presented(self, conflict: Conflict) -> bool:
        return self._presented.get(conflict.path) is conflict

    def resolved(self, conflict: Conflict) -> bool:
        """Release the presentation slot held by ``conflict``."""
        if self._presented.get(conflict.path) is not conflict:
            return False
        del self._presented[conflict.path]
        return True

    def invalidate(self, path: Path) -> bool:
        """Drop a pending (not yet presented) entry for ``path``."""
        return self._pending.pop(path, None) is not None

    def discard_path(self, path: Path) -> None:
        self._pending.pop(path, None)
        self._presented.pop(path, None)

    def expire_advisories(self, now: float | None, ttl: float) -> list[Conflict]:
        """Auto-resolve informational watch-failure entries nobody drained."""
        now = self._monotonic() if now is None else now
        expired: list[Conflict] = []
        for path, entry in list(self._pending.items()):
            conflict = entry.conflict
            if conflict.kind != ConflictKind.WATCH_FAILURE or conflict.severity != Severity.INFO:
                continue
            if (now - entry.queued_at) >= ttl:
                del self._pending[path]
                expired.append(conflict)
        return expired

    def entry(self, path: Path) -> PendingQueueEntry | None:
        return self._pending.get(path)

    def pending_paths(self) -> list[Path]:
        return list(self._pending)

    def presented(self) -> list[Conflict]:
        return list(self._presented.values())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def presented_count(self) -> int:
        return len(self._presented)


__all__ = ["ConflictQueue"]
