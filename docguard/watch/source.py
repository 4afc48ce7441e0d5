"""Uniform change stream over native notification with a polling fallback.

Every watched path carries a health state:

- ``ACTIVE``: native events are trusted; a heartbeat stats the path every
  ``heartbeat_interval`` to verify that nothing slipped past the watcher.
- ``DEGRADED``: ``degrade_after_missed`` consecutive heartbeats found changes
  that no native event reported.
- ``POLLING``: degraded for longer than ``polling_after_degraded`` (or the
  native watcher could not be set up); the native schedule is released and
  the path is stat-polled every ``polling_interval``.
"""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from ..channels import EventChannel
from ..config import DocguardConfig
from ..file_state.fs import path_signature
from ..file_state.types import WatchState
from .native import NativeWatcher
from .types import HealthChange, WatchEvent, WatchEventKind, WatchHandle, transition_kind


@dataclass
class _WatchEntry:
    path: Path
    state: WatchState
    signature: tuple[str, int, int, int]
    last_heartbeat: float
    last_poll: float
    handles: set[int] = field(default_factory=set)
    missed: int = 0
    degraded_since: float | None = None
    native_scheduled: bool = False


class WatchSource:
    def __init__(
        self,
        config: DocguardConfig,
        *,
        native: NativeWatcher | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        signature_for: Callable[[Path], tuple[str, int, int, int]] = path_signature,
    ) -> None:
        self._config = config
        self._native = native if native is not None else (NativeWatcher() if config.native_watch else None)
        self._monotonic = monotonic
        self._signature_for = signature_for
        self._entries: dict[Path, _WatchEntry] = {}
        self._handles: dict[int, Path] = {}
        self._ids = itertools.count(1)
        self.changes: EventChannel[WatchEvent] = EventChannel("watch-changes")
        self.health_changes: EventChannel[HealthChange] = EventChannel("watch-health")

    def start(self, path: Path, now: float | None = None) -> WatchHandle:
        """Watch ``path``; a second start on the same path shares the entry."""
        now = self._monotonic() if now is None else now
        handle = WatchHandle(handle_id=next(self._ids), path=path)
        self._handles[handle.handle_id] = path

        entry = self._entries.get(path)
        if entry is not None:
            entry.handles.add(handle.handle_id)
            return handle

        entry = _WatchEntry(
            path=path,
            state=WatchState.POLLING,
            signature=self._signature_for(path),
            last_heartbeat=now,
            last_poll=now,
            handles={handle.handle_id},
        )
        self._entries[path] = entry
        if self._native is None:
            logger.debug("polling {} (native watching disabled)", path)
            return handle
        if self._schedule_native(entry):
            entry.state = WatchState.ACTIVE
        else:
            self._publish_health(entry, WatchState.ACTIVE, "native watcher unavailable")
        return handle

    def stop(self, handle: WatchHandle) -> None:
        """Release ``handle``. Idempotent; the last handle frees the OS watch."""
        path = self._handles.pop(handle.handle_id, None)
        if path is None:
            return
        entry = self._entries.get(path)
        if entry is None:
            return
        entry.handles.discard(handle.handle_id)
        if entry.handles:
            return
        self._release_native(entry)
        del self._entries[path]

    def close(self) -> None:
        for handle_id, path in list(self._handles.items()):
            self.stop(WatchHandle(handle_id=handle_id, path=path))
        if self._native is not None:
            self._native.close()

    def health(self, handle: WatchHandle) -> WatchState | None:
        entry = self._entries.get(handle.path)
        return entry.state if entry is not None and handle.handle_id in entry.handles else None

    def health_by_path(self) -> dict[Path, WatchState]:
        return {path: entry.state for path, entry in self._entries.items()}

    def watched_paths(self) -> list[Path]:
        return list(self._entries)

    def _schedule_native(self, entry: _WatchEntry) -> bool:
        assert self._native is not None
        try:
            self._native.schedule(entry.path.parent)
        except OSError as exc:
            logger.warning("native watch failed for {}: {}", entry.path, exc)
            return False
        entry.native_scheduled = True
        return True

    def _release_native(self, entry: _WatchEntry) -> None:
        if entry.native_scheduled and self._native is not None:
            self._native.unschedule(entry.path.parent)
        entry.native_scheduled = False

    def _publish_health(self, entry: _WatchEntry, previous: WatchState, reason: str) -> None:
        logger.info("watch health for {}: {} -> {} ({})", entry.path, previous.value, entry.state.value, reason)
        self.health_changes.publish(
            HealthChange(path=entry.path, previous=previous, current=entry.state, reason=reason)
        )

    def _switch_to_polling(self, entry: _WatchEntry, now: float, reason: str) -> None:
        if entry.state == WatchState.POLLING:
            return
        previous = entry.state
        # Close the native handle before polling starts so one change is not reported twice.
        self._release_native(entry)
        entry.state = WatchState.POLLING
        entry.degraded_since = None
        entry.missed = 0
        entry.last_poll = now
        entry.signature = self._signature_for(entry.path)
        self._publish_health(entry, previous, reason)

    def force_polling(self, handle: WatchHandle, now: float | None = None) -> None:
        entry = self._entries.get(handle.path)
        if entry is None:
            return
        self._switch_to_polling(entry, self._monotonic() if now is None else now, "switched by user")

    def retry_native(self, handle: WatchHandle, now: float | None = None) -> bool:
        """Try to move a polling path back onto native notification."""
        entry = self._entries.get(handle.path)
        if entry is None or self._native is None:
            return False
        if entry.state != WatchState.POLLING:
            return True
        if not self._schedule_native(entry):
            return False
        now = self._monotonic() if now is None else now
        entry.state = WatchState.ACTIVE
        entry.missed = 0
        entry.last_heartbeat = now
        entry.signature = self._signature_for(entry.path)
        self._publish_health(entry, WatchState.POLLING, "native watch restored")
        return True

    def _emit(self, entry: _WatchEntry, kind: WatchEventKind, now: float, native: bool) -> None:
        self.changes.publish(WatchEvent(path=entry.path, kind=kind, observed_at=now, native=native))

    def _drain_native(self, now: float) -> None:
        if self._native is None:
            return
        for path, kind in self._native.drain():
            entry = self._entries.get(path)
            if entry is None or entry.state == WatchState.POLLING:
                continue
            entry.signature = self._signature_for(path)
            entry.missed = 0
            if entry.state == WatchState.DEGRADED:
                entry.state = WatchState.ACTIVE
                entry.degraded_since = None
                self._publish_health(entry, WatchState.DEGRADED, "native events resumed")
            self._emit(entry, kind, now, native=True)

    def _heartbeat(self, entry: _WatchEntry, now: float) -> None:
        if (now - entry.last_heartbeat) < self._config.heartbeat_interval:
            return
        entry.last_heartbeat = now
        signature = self._signature_for(entry.path)
        if signature == entry.signature:
            entry.missed = 0
            return

        previous = entry.signature
        entry.signature = signature
        entry.missed += 1
        logger.debug("heartbeat caught an unreported change on {} ({} missed)", entry.path, entry.missed)
        self._emit(entry, transition_kind(previous[0], signature[0]), now, native=False)
        if entry.state == WatchState.ACTIVE and entry.missed >= self._config.degrade_after_missed:
            entry.state = WatchState.DEGRADED
            entry.degraded_since = now
            self._publish_health(entry, WatchState.ACTIVE, f"{entry.missed} missed heartbeats")

    def _poll_entry(self, entry: _WatchEntry, now: float) -> None:
        if (now - entry.last_poll) < self._config.polling_interval:
            return
        entry.last_poll = now
        signature = self._signature_for(entry.path)
        if signature == entry.signature:
            return
        previous = entry.signature
        entry.signature = signature
        self._emit(entry, transition_kind(previous[0], signature[0]), now, native=False)

    def poll(self, now: float | None = None) -> None:
        """Drain native events, then run heartbeats and polling that are due."""
        now = self._monotonic() if now is None else now
        self._drain_native(now)
        for entry in list(self._entries.values()):
            if entry.state == WatchState.POLLING:
                self._poll_entry(entry, now)
                continue
            self._heartbeat(entry, now)
            if (
                entry.state == WatchState.DEGRADED
                and entry.degraded_since is not None
                and (now - entry.degraded_since) >= self._config.polling_after_degraded
            ):
                self._switch_to_polling(entry, now, "degraded past threshold")


__all__ = ["WatchSource"]
