from __future__ import annotations

import json
import os
import tempfile
import time
import unittest
from pathlib import Path

from docguard.recovery import CrashRecoveryManager, backup_key


class Clock:
    def __init__(self, value: float) -> None:
        self.value = value

    def __call__(self) -> float:
        return self.value


class SnapshotTests(unittest.TestCase):
    def test_snapshot_writes_json_backup_keyed_by_path(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            manager = CrashRecoveryManager(root / "backups", clock=Clock(1000.0), monotonic=Clock(0.0))

            backup = manager.snapshot(doc, "draft", now=0.0)

            self.assertIsNotNone(backup)
            self.assertEqual(backup.backup_path, root / "backups" / f"{backup_key(doc)}.json")
            payload = json.loads(backup.backup_path.read_text(encoding="utf-8"))
            self.assertEqual(payload["original_path"], str(doc))
            self.assertEqual(payload["content"], "draft")
            self.assertEqual(payload["snapshot_at"], 1000.0)
            self.assertTrue(manager.has_backup(doc))

    def test_unchanged_content_is_not_rewritten(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            manager = CrashRecoveryManager(root / "backups")

            self.assertIsNotNone(manager.snapshot(doc, "draft", now=0.0))
            self.assertIsNone(manager.snapshot(doc, "draft", now=900.0))
            self.assertIsNotNone(manager.snapshot(doc, "draft 2", now=1800.0))

    def test_due_follows_snapshot_interval(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            manager = CrashRecoveryManager(root / "backups", snapshot_interval=900.0)

            self.assertTrue(manager.due(doc, 0.0))
            manager.snapshot(doc, "draft", now=0.0)
            self.assertFalse(manager.due(doc, 899.0))
            self.assertTrue(manager.due(doc, 900.0))

    def test_failed_write_is_swallowed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            blocker = root / "not-a-dir"
            blocker.write_text("", encoding="utf-8")
            manager = CrashRecoveryManager(blocker / "backups")

            self.assertIsNone(manager.snapshot(root / "a.md", "draft", now=0.0))


class RecoverTests(unittest.TestCase):
    def test_recover_returns_backups_newer_than_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            doc.write_text("saved", encoding="utf-8")
            future = time.time() + 60
            manager = CrashRecoveryManager(root / "backups", clock=Clock(future))
            manager.snapshot(doc, "unsaved draft", now=0.0)

            backups = manager.recover()

            self.assertEqual(len(backups), 1)
            self.assertEqual(backups[0].original_path, doc)
            self.assertEqual(backups[0].snapshot_content, "unsaved draft")

    def test_backup_older_than_file_is_not_offered(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            doc.write_text("saved", encoding="utf-8")
            manager = CrashRecoveryManager(root / "backups", clock=Clock(1.0))
            manager.snapshot(doc, "old draft", now=0.0)

            self.assertEqual(manager.recover(), [])

    def test_backup_matching_disk_is_discarded(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            doc.write_text("same", encoding="utf-8")
            manager = CrashRecoveryManager(root / "backups", clock=Clock(time.time() + 60))
            manager.snapshot(doc, "same", now=0.0)

            self.assertEqual(manager.recover(), [])
            self.assertFalse(manager.has_backup(doc))

    def test_backup_for_missing_file_is_offered(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            manager = CrashRecoveryManager(root / "backups", clock=Clock(5.0))
            manager.snapshot(root / "gone.md", "only copy", now=0.0)

            self.assertEqual([b.snapshot_content for b in manager.recover()], ["only copy"])

    def test_malformed_backups_are_skipped_and_results_sorted(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            backups_dir = root / "backups"
            backups_dir.mkdir()
            (backups_dir / "broken.json").write_text("{not json", encoding="utf-8")
            (backups_dir / "wrong.json").write_text(json.dumps({"content": 3}), encoding="utf-8")
            clock = Clock(20.0)
            manager = CrashRecoveryManager(backups_dir, clock=clock)
            manager.snapshot(root / "late.md", "late", now=0.0)
            clock.value = 10.0
            manager.snapshot(root / "early.md", "early", now=0.0)

            recovered = manager.recover()

            self.assertEqual([b.snapshot_content for b in recovered], ["early", "late"])

    def test_discard_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp).resolve()
            doc = root / "a.md"
            manager = CrashRecoveryManager(root / "backups")
            manager.snapshot(doc, "draft", now=0.0)

            manager.discard(doc)
            manager.discard(doc)

            self.assertFalse(manager.has_backup(doc))
            self.assertEqual(os.listdir(root / "backups"), [])


if __name__ == "__main__":
    unittest.main()
