"""Include-graph scenarios: deleted targets, cycles and aliased files."""

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from docguard.config import DocguardConfig
from docguard.conflicts import ConflictKind, Severity
from docguard.coordinator import ConflictCoordinator
from docguard.resolution import Action, Resolution


class IncludeScenarioTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()
        self.now = 0.0
        config = DocguardConfig(
            native_watch=False,
            polling_interval=0.25,
            debounce_delay=1.0,
            backup_dir=self.root / "backups",
        )
        self.coordinator = ConflictCoordinator(config, monotonic=lambda: self.now)

    def tearDown(self) -> None:
        self.coordinator.close()
        self._tmp.cleanup()

    def _write(self, name: str, text: str) -> Path:
        path = self.root / name
        path.write_text(text, encoding="utf-8")
        return path

    def _tick(self, now: float) -> list:
        self.now = now
        return self.coordinator.tick(now)

    def _resolve(self, conflict, action: Action, **kwargs):
        return self.coordinator.apply_resolutions([Resolution(conflict=conflict, action=action, **kwargs)], self.now)

    def test_deleted_include_and_remove_reference(self) -> None:
        main = self._write("a.md", "intro\n!!!include(b.md)!!!\n")
        included = self._write("b.md", "chapter\n")
        self.coordinator.register_document(main, now=0.0)
        self.assertEqual(self.coordinator.get_system_status().graph_edge_count, 1)

        included.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)

        self.assertEqual(conflict.path, included)
        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_DELETED)
        self.assertEqual(conflict.severity, Severity.WARNING)

        (outcome,) = self._resolve(conflict, Action.REMOVE_REFERENCE)

        self.assertTrue(outcome.applied)
        self.assertIn("a.md", outcome.detail)
        status = self.coordinator.get_system_status()
        self.assertEqual(status.graph_edge_count, 0)
        self.assertEqual(status.tracked_files, 1)
        self.assertIsNone(self.coordinator.store.observe(included))

    def test_deleted_include_with_unsaved_edits_is_blocking_and_recreatable(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n")
        included = self._write("b.md", "chapter\n")
        self.coordinator.register_document(main, now=0.0)
        self.coordinator.notify_local_edit(included, True, "chapter, revised\n", now=0.1)

        included.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)
        self.assertEqual(conflict.severity, Severity.BLOCKING)

        (outcome,) = self._resolve(conflict, Action.RECREATE_FROM_MEMORY)

        self.assertTrue(outcome.applied)
        self.assertEqual(included.read_text(encoding="utf-8"), "chapter, revised\n")

    def test_find_alternative_points_references_elsewhere(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n")
        included = self._write("b.md", "chapter\n")
        replacement = self._write("b2.md", "renamed chapter\n")
        self.coordinator.register_document(main, now=0.0)
        included.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)

        (outcome,) = self._resolve(conflict, Action.FIND_ALTERNATIVE, target=replacement)

        self.assertTrue(outcome.applied)
        self.assertEqual([edge.to_path for edge in self.coordinator.graph.edges_from(main)], [replacement])
        self.assertIn(replacement, self.coordinator.store)
        self.assertNotIn(included, self.coordinator.store)

    def test_find_alternative_reparses_inner_includers_first(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n!!!include(d.md)!!!\n")
        middle = self._write("b.md", "!!!include(d.md)!!!\n")
        shared = self._write("d.md", "shared\n")
        replacement = self._write("d2.md", "moved\n")
        self.coordinator.register_document(main, now=0.0)
        shared.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)

        with mock.patch.object(
            self.coordinator, "_parse_includes", wraps=self.coordinator._parse_includes
        ) as parse:
            (outcome,) = self._resolve(conflict, Action.FIND_ALTERNATIVE, target=replacement)

        self.assertTrue(outcome.applied)
        self.assertEqual([call.args[0] for call in parse.call_args_list[:2]], [middle, main])
        self.assertEqual(
            sorted(edge.from_path.name for edge in self.coordinator.graph.edges_to(replacement)), ["a.md", "b.md"]
        )

    def test_find_alternative_without_target_fails_and_asks_again(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n")
        included = self._write("b.md", "chapter\n")
        self.coordinator.register_document(main, now=0.0)
        included.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)

        (outcome,) = self._resolve(conflict, Action.FIND_ALTERNATIVE)

        self.assertFalse(outcome.applied)
        self.assertIsNotNone(self.coordinator.queue.entry(included))

    def test_cycle_on_register_is_rejected_and_edge_broken(self) -> None:
        first = self._write("a.md", "!!!include(b.md)!!!\n")
        second = self._write("b.md", "!!!include(c.md)!!!\n")
        third = self._write("c.md", "!!!include(a.md)!!!\n")

        self.coordinator.register_document(first, now=0.0)

        entry = self.coordinator.queue.entry(third)
        self.assertIsNotNone(entry)
        self.assertEqual(entry.conflict.kind, ConflictKind.CIRCULAR_DEPENDENCY)
        self.assertEqual(entry.conflict.cycle, (first, second, third))
        self.assertEqual(self.coordinator.get_system_status().graph_edge_count, 2)

        (conflict,) = self._tick(1.0)
        (viewed,) = self._resolve(conflict, Action.VIEW_GRAPH)
        self.assertIn("cycle: ", viewed.content)
        (conflict,) = self._tick(2.0)

        (outcome,) = self._resolve(conflict, Action.BREAK_EDGE, target=first)

        self.assertTrue(outcome.applied)
        self.assertEqual(self.coordinator.graph.edges_from(third), [])
        self.assertEqual(self.coordinator.get_system_status().graph_edge_count, 2)
        self.assertEqual(self.coordinator.get_system_status().pending_conflicts, 0)

    def test_break_edge_that_leaves_a_cycle_asks_again(self) -> None:
        first = self._write("a.md", "!!!include(b.md)!!!\n")
        second = self._write("b.md", "!!!include(c.md)!!!\n")
        third = self._write("c.md", "!!!include(a.md)!!!\n!!!include(b.md)!!!\n")
        self.coordinator.register_document(first, now=0.0)
        (conflict,) = self._tick(1.0)
        self.assertEqual(conflict.path, third)

        (outcome,) = self._resolve(conflict, Action.BREAK_EDGE, target=first)

        self.assertFalse(outcome.applied)
        self.assertIn("include cycle", outcome.detail)
        self.assertEqual(self.coordinator.graph.edges_from(third), [])
        entry = self.coordinator.queue.entry(third)
        self.assertEqual(entry.conflict.kind, ConflictKind.CIRCULAR_DEPENDENCY)
        self.assertEqual(entry.conflict.cycle, (second, third))

        (again,) = self._tick(2.0)
        (outcome,) = self._resolve(again, Action.BREAK_EDGE, target=second)

        self.assertTrue(outcome.applied)
        self.assertEqual(self.coordinator.graph.edges_from(third), [])
        self.assertEqual(self.coordinator.get_system_status().pending_conflicts, 0)

    def test_include_conflicts_carry_incoming_edges(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n")
        included = self._write("b.md", "chapter\n")
        self.coordinator.register_document(main, now=0.0)

        included.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)

        self.assertEqual([(edge.from_path, edge.to_path) for edge in conflict.related_edges], [(main, included)])

    def test_scoped_subscribers_follow_nested_includes(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n")
        self._write("b.md", "!!!include(c.md)!!!\n")
        leaf = self._write("c.md", "leaf\n")
        other = self._write("x.md", "plain\n")
        handle = self.coordinator.register_document(main, now=0.0)
        other_handle = self.coordinator.register_document(other, now=0.0)
        conflicts_seen: list = []
        outcomes_seen: list = []
        other_outcomes: list = []
        self.coordinator.on_conflicts_ready(conflicts_seen.append, handle)
        self.coordinator.on_action_applied(outcomes_seen.append, handle)
        self.coordinator.on_action_applied(other_outcomes.append, other_handle)

        leaf.unlink()
        self._tick(0.25)
        (conflict,) = self._tick(1.25)
        self.assertEqual(conflicts_seen, [[conflict]])

        (outcome,) = self._resolve(conflict, Action.REMOVE_REFERENCE)

        # Delivered even though the reference is gone once the action ran.
        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.documents, frozenset({handle.document_id}))
        self.assertEqual(outcomes_seen, [outcome])
        self.assertEqual(other_outcomes, [])

    def test_saving_the_same_cycle_again_reports_it_again(self) -> None:
        first = self._write("a.md", "!!!include(b.md)!!!\n")
        second = self._write("b.md", "!!!include(a.md)!!!\n")
        self.coordinator.register_document(first, now=0.0)
        self._tick(1.0)

        self.coordinator.notify_local_save(second, "!!!include(a.md)!!!\n", now=1.5)

        self.assertEqual(self.coordinator.get_system_status().presented_conflicts, 0)
        self.assertEqual(self.coordinator.queue.entry(second).conflict.kind, ConflictKind.CIRCULAR_DEPENDENCY)
        (conflict,) = self._tick(2.5)
        self._resolve(conflict, Action.CANCEL_PARSE)
        self.assertIsNone(self.coordinator.queue.entry(second))

        self.coordinator.notify_local_save(second, "!!!include(a.md)!!!\n", now=3.0)
        self.assertIsNotNone(self.coordinator.queue.entry(second))

    @unittest.skipUnless(hasattr(os, "link"), "hard links not supported")
    def test_hard_link_collision_keeps_existing_reference(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n!!!include(c.md)!!!\n")
        existing = self._write("b.md", "shared\n")
        alias = self.root / "c.md"
        os.link(existing, alias)

        self.coordinator.register_document(main, now=0.0)

        self.assertNotIn(alias, self.coordinator.store)
        (conflict,) = self._tick(1.0)
        self.assertEqual(conflict.kind, ConflictKind.EXTERNAL_CREATED_COLLISION)
        self.assertEqual(conflict.collides_with, existing)

        (outcome,) = self._resolve(conflict, Action.KEEP_EXISTING_REFERENCE)

        self.assertEqual(outcome.target, existing)
        status = self.coordinator.get_system_status()
        self.assertEqual(status.graph_edge_count, 1)
        self.assertEqual(status.tracked_files, 2)
        self.assertNotIn(alias, self.coordinator.store)

    @unittest.skipUnless(hasattr(os, "link"), "hard links not supported")
    def test_hard_link_collision_use_new_file_tracks_both(self) -> None:
        main = self._write("a.md", "!!!include(b.md)!!!\n!!!include(c.md)!!!\n")
        existing = self._write("b.md", "shared\n")
        alias = self.root / "c.md"
        os.link(existing, alias)
        self.coordinator.register_document(main, now=0.0)
        (conflict,) = self._tick(1.0)

        self._resolve(conflict, Action.USE_NEW_FILE)

        self.assertIn(alias, self.coordinator.store)
        self.assertEqual(self.coordinator.get_system_status().tracked_files, 3)


if __name__ == "__main__":
    unittest.main()
