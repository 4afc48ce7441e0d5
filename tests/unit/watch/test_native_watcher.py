from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from watchdog.events import DirModifiedEvent, FileDeletedEvent, FileModifiedEvent, FileMovedEvent

from docguard.watch import NativeWatcher, WatchEventKind


class FakeObserver:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.daemon = False
        self.started = False
        self.stopped = False
        self.scheduled: list[str] = []
        self.unscheduled: list[object] = []

    def start(self) -> None:
        self.started = True

    def schedule(self, handler, path: str, recursive: bool = False):
        if self.fail:
            raise OSError("inotify watch limit reached")
        self.scheduled.append(path)
        return ("watch", path)

    def unschedule(self, watch) -> None:
        self.unscheduled.append(watch)

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        return None


class NativeWatcherTests(unittest.TestCase):
    def test_schedules_are_shared_per_directory(self) -> None:
        observer = FakeObserver()
        watcher = NativeWatcher(observer_factory=lambda: observer)
        directory = Path("/docs")

        watcher.schedule(directory)
        watcher.schedule(directory)
        watcher.unschedule(directory)

        self.assertTrue(observer.started)
        self.assertTrue(observer.daemon)
        self.assertEqual(observer.scheduled, ["/docs"])
        self.assertEqual(observer.unscheduled, [])

        watcher.unschedule(directory)
        self.assertEqual(observer.unscheduled, [("watch", "/docs")])

    def test_schedule_failure_raises_os_error(self) -> None:
        watcher = NativeWatcher(observer_factory=lambda: FakeObserver(fail=True))

        with self.assertRaises(OSError):
            watcher.schedule(Path("/docs"))

    def test_handler_queues_file_events_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            watcher = NativeWatcher(observer_factory=FakeObserver)
            handler = watcher.handler

            handler.dispatch(FileModifiedEvent(str(root / "a.md")))
            handler.dispatch(DirModifiedEvent(str(root)))
            handler.dispatch(FileDeletedEvent(str(root / "b.md")))
            handler.dispatch(FileMovedEvent(str(root / ".a.md.tmp"), str(root / "a.md")))

            self.assertEqual(
                watcher.drain(),
                [
                    (root / "a.md", WatchEventKind.MODIFIED),
                    (root / "b.md", WatchEventKind.DELETED),
                    (root / ".a.md.tmp", WatchEventKind.DELETED),
                    (root / "a.md", WatchEventKind.CREATED),
                ],
            )
            self.assertEqual(watcher.drain(), [])

    def test_close_stops_observer(self) -> None:
        observer = FakeObserver()
        watcher = NativeWatcher(observer_factory=lambda: observer)
        watcher.schedule(Path("/docs"))
        watcher.schedule(Path("/docs"))

        watcher.close()

        self.assertTrue(observer.stopped)
        self.assertEqual(observer.unscheduled, [("watch", "/docs")])


if __name__ == "__main__":
    unittest.main()
