from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from docguard.conflicts import ConflictClassifier, ConflictKind, ConflictSource, Severity
from docguard.file_state import DiskProbe, FileRecord, ProbeStatus, content_hash, probe_disk
from docguard.graph import DependencyGraph

DOC = Path("/docs/a.md")


def _record(text: str = "mine") -> FileRecord:
    return FileRecord(path=DOC, content_hash=content_hash(text), modified_at=1, cached_content=text, size=len(text))


def _ok(text: str) -> DiskProbe:
    return DiskProbe(path=DOC, status=ProbeStatus.OK, content_hash=content_hash(text), modified_at=2, content=text)


class ClassifyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = ConflictClassifier(monotonic=lambda: 42.0)

    def test_commit_then_classify_same_disk_content_is_clean(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp).resolve() / "a.md"
            path.write_text("same\n", encoding="utf-8")
            first = probe_disk(path)
            record = FileRecord(
                path=path,
                content_hash=content_hash("same\n"),
                modified_at=first.modified_at,
                cached_content="same\n",
                size=first.size,
            )

            self.assertIsNone(self.classifier.classify(path, record, probe_disk(path, record)))

    def test_deleted_with_unsaved_changes_is_blocking(self) -> None:
        conflict = self.classifier.classify(
            DOC, _record(), DiskProbe(path=DOC, status=ProbeStatus.MISSING), has_unsaved_changes=True
        )

        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_DELETED)
        self.assertEqual(conflict.severity, Severity.BLOCKING)
        self.assertEqual(conflict.detected_at, 42.0)

    def test_deleted_without_unsaved_changes_is_warning(self) -> None:
        conflict = self.classifier.classify(DOC, _record(), DiskProbe(path=DOC, status=ProbeStatus.MISSING))

        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_DELETED)
        self.assertEqual(conflict.severity, Severity.WARNING)

    def test_changed_with_unsaved_changes_is_blocking_internal_conflict(self) -> None:
        conflict = self.classifier.classify(DOC, _record(), _ok("theirs"), has_unsaved_changes=True)

        self.assertEqual(conflict.kind, ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL)
        self.assertEqual(conflict.severity, Severity.BLOCKING)

    def test_changed_without_unsaved_changes_is_info(self) -> None:
        conflict = self.classifier.classify(DOC, _record(), _ok("theirs"), now=7.0)

        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_MODIFIED)
        self.assertEqual(conflict.severity, Severity.INFO)
        self.assertEqual(conflict.detected_at, 7.0)

    def test_permission_denied_is_blocking(self) -> None:
        probe = DiskProbe(path=DOC, status=ProbeStatus.PERMISSION, error="denied")

        conflict = self.classifier.classify(DOC, _record(), probe)

        self.assertEqual(conflict.kind, ConflictKind.PERMISSION_DENIED)
        self.assertEqual(conflict.severity, Severity.BLOCKING)
        self.assertEqual(conflict.detail, "denied")

    def test_transient_error_yields_nothing(self) -> None:
        probe = DiskProbe(path=DOC, status=ProbeStatus.ERROR, error="EIO")

        self.assertIsNone(self.classifier.classify(DOC, _record(), probe))

    def test_collision_for_untracked_alias(self) -> None:
        existing = Path("/docs/original.md")

        conflict = self.classifier.classify(DOC, None, _ok("x"), collides_with=existing)

        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_CREATED_COLLISION)
        self.assertEqual(conflict.severity, Severity.WARNING)
        self.assertEqual(conflict.collides_with, existing)

    def test_polling_advisory_only_when_nothing_else_applies(self) -> None:
        clean = self.classifier.classify(DOC, _record("x"), _ok("x"), polling_advisory_due=True)
        changed = self.classifier.classify(DOC, _record("x"), _ok("y"), polling_advisory_due=True)

        self.assertEqual(clean.kind, ConflictKind.WATCH_FAILURE)
        self.assertEqual(clean.severity, Severity.INFO)
        self.assertEqual(changed.kind, ConflictKind.EXTERNAL_MODIFIED)

    def test_placeholder_that_appears_is_external_modified(self) -> None:
        placeholder = FileRecord(path=DOC, content_hash=None, modified_at=None, cached_content=None)

        conflict = self.classifier.classify(DOC, placeholder, _ok("new"))

        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_MODIFIED)


class SpecialConflictTests(unittest.TestCase):
    def setUp(self) -> None:
        self.classifier = ConflictClassifier(monotonic=lambda: 1.0)

    def test_save_failure_classification(self) -> None:
        denied = self.classifier.classify_save_failure(DOC, PermissionError(13, "Permission denied"))
        transient = self.classifier.classify_save_failure(DOC, OSError(5, "Input/output error"))

        self.assertEqual(denied.kind, ConflictKind.PERMISSION_DENIED)
        self.assertIn("save failed", denied.detail)
        self.assertIsNone(transient)

    def test_cycle_conflict_carries_cycle_and_rejected_edges(self) -> None:
        a, b = Path("/docs/a.md"), Path("/docs/b.md")
        graph = DependencyGraph()
        graph.set_edges(a, [b])
        rejection = graph.set_edges(b, [a])

        conflict = self.classifier.cycle_conflict(rejection)

        self.assertEqual(conflict.kind, ConflictKind.CIRCULAR_DEPENDENCY)
        self.assertEqual(conflict.severity, Severity.BLOCKING)
        self.assertEqual(conflict.path, b)
        self.assertEqual(conflict.cycle, (a, b))
        self.assertEqual([edge.to_path for edge in conflict.related_edges], [a])
        self.assertIn("cycle: a.md -> b.md -> a.md", conflict.describe())

    def test_recovered_backup_is_backup_sourced(self) -> None:
        conflict = self.classifier.recovered_backup(DOC)

        self.assertEqual(conflict.kind, ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL)
        self.assertEqual(conflict.source, ConflictSource.BACKUP)


if __name__ == "__main__":
    unittest.main()
