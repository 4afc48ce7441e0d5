"""Native change notification backed by ``watchdog``.

The observer runs on its own thread. Its handler only puts ``(path, kind)``
tuples on a thread-safe queue; the event loop drains them in
``WatchSource.poll`` so no core state is touched off-loop.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from queue import Empty, Queue

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .types import WatchEventKind

_KIND_BY_EVENT_TYPE = {
    "created": WatchEventKind.CREATED,
    "modified": WatchEventKind.MODIFIED,
    "deleted": WatchEventKind.DELETED,
    "closed": WatchEventKind.MODIFIED,
}


def _event_path(raw: str | bytes) -> Path:
    return Path(os.path.abspath(os.fsdecode(raw)))


class _NativeEventHandler(FileSystemEventHandler):
    def __init__(self, events: Queue[tuple[Path, WatchEventKind]]) -> None:
        super().__init__()
        self._events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if event.event_type == "moved":
            # Atomic saves rename a temp file over the target.
            self._events.put((_event_path(event.src_path), WatchEventKind.DELETED))
            dest_path = getattr(event, "dest_path", "")
            if dest_path:
                self._events.put((_event_path(dest_path), WatchEventKind.CREATED))
            return
        kind = _KIND_BY_EVENT_TYPE.get(event.event_type)
        if kind is None:
            return
        self._events.put((_event_path(event.src_path), kind))


class NativeWatcher:
    """Ref-counted directory schedules on one shared observer."""

    def __init__(self, observer_factory: Callable[[], object] = Observer) -> None:
        self._observer_factory = observer_factory
        self._observer = None
        self._events: Queue[tuple[Path, WatchEventKind]] = Queue()
        self._handler = _NativeEventHandler(self._events)
        self._schedules: dict[Path, tuple[object, int]] = {}

    @property
    def handler(self) -> _NativeEventHandler:
        return self._handler

    def _ensure_observer(self):
        if self._observer is None:
            observer = self._observer_factory()
            observer.daemon = True
            observer.start()
            self._observer = observer
        return self._observer

    def schedule(self, directory: Path) -> None:
        """Start (or share) a non-recursive watch on ``directory``.

        Raises ``OSError`` when the platform watcher cannot be set up.
        """
        existing = self._schedules.get(directory)
        if existing is not None:
            watch, refs = existing
            self._schedules[directory] = (watch, refs + 1)
            return
        observer = self._ensure_observer()
        try:
            watch = observer.schedule(self._handler, str(directory), recursive=False)
        except OSError:
            raise
        except Exception as exc:
            raise OSError(f"cannot watch {directory}: {exc}") from exc
        self._schedules[directory] = (watch, 1)
        logger.debug("native watch scheduled on {}", directory)

    def unschedule(self, directory: Path) -> None:
        existing = self._schedules.get(directory)
        if existing is None:
            return
        watch, refs = existing
        if refs > 1:
            self._schedules[directory] = (watch, refs - 1)
            return
        del self._schedules[directory]
        if self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as exc:
                logger.warning("failed to release native watch on {}: {}", directory, exc)
        logger.debug("native watch released on {}", directory)

    def drain(self) -> list[tuple[Path, WatchEventKind]]:
        out: list[tuple[Path, WatchEventKind]] = []
        while True:
            try:
                out.append(self._events.get_nowait())
            except Empty:
                break
        return out

    def close(self) -> None:
        for directory in list(self._schedules):
            self._schedules[directory] = (self._schedules[directory][0], 1)
            self.unschedule(directory)
        observer = self._observer
        self._observer = None
        if observer is not None:
            observer.stop()
            observer.join(timeout=1.0)


__all__ = ["NativeWatcher"]
