"""Orchestrates watching, classification, presentation and resolution.

A ``ConflictCoordinator`` owns one ``FileStateStore``, one
``DependencyGraph`` and one ``ConflictQueue``. All of their mutation happens
on the host's loop thread, inside ``tick()`` or a public method; the native
watcher thread only enqueues raw events.

Typical host wiring::

    coordinator = ConflictCoordinator(load_docguard_config())
    coordinator.run_crash_recovery()
    handle = coordinator.register_document(path)
    coordinator.on_conflicts_ready(ask_user, handle)
    while running:
        coordinator.tick()
"""

from __future__ import annotations

import itertools
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path

from loguru import logger

from .channels import EventChannel, Subscription
from .config import DocguardConfig
from .conflicts import Conflict, ConflictClassifier, ConflictKind, ConflictQueue, ConflictSource
from .errors import CycleError, DocguardError, MissingBufferError, MissingTargetError, UnsavedChangesError
from .file_state import (
    DiskProbe,
    FileStateStore,
    ProbeStatus,
    WatchState,
    canonical_path,
    probe_disk,
    write_text_atomic,
)
from .file_state.fs import content_hash as hash_text
from .graph import DependencyEdge, DependencyGraph
from .includes import extract_include_edges
from .recovery import CrashRecoveryManager, EmergencyBackup
from .resolution import Action, ActionOutcome, Resolution, ResolutionPolicy, RetryBackoff
from .watch import HealthChange, WatchEvent, WatchEventKind, WatchHandle, WatchSource


# Kinds whose classification depends on the host's unsaved state.
_UNSAVED_SENSITIVE_KINDS = frozenset({ConflictKind.EXTERNAL_MODIFIED, ConflictKind.EXTERNAL_DELETED})

# Kinds derived purely from comparing disk with the store; a clean re-check retires them.
_DISK_KINDS = frozenset(
    {
        ConflictKind.EXTERNAL_MODIFIED,
        ConflictKind.EXTERNAL_DELETED,
        ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL,
    }
)


@dataclass(frozen=True)
class DocumentHandle:
    document_id: int
    path: Path


@dataclass(frozen=True)
class SystemStatus:
    tracked_files: int
    pending_conflicts: int
    watch_health: dict[Path, WatchState]
    graph_edge_count: int
    presented_conflicts: int = 0
    awaiting_paths: tuple[Path, ...] = ()
    read_only_paths: tuple[Path, ...] = ()
    documents: int = 0


@dataclass
class _Document:
    handle: DocumentHandle
    subscriptions: list[Subscription] = field(default_factory=list)


class ConflictCoordinator:
    def __init__(
        self,
        config: DocguardConfig | None = None,
        *,
        watch: WatchSource | None = None,
        recovery: CrashRecoveryManager | None = None,
        policy: ResolutionPolicy | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], float] = time.time,
        probe: Callable[..., DiskProbe] = probe_disk,
    ) -> None:
        self.config = config if config is not None else DocguardConfig()
        self._monotonic = monotonic
        self._clock = clock
        self._probe = probe

        self.store = FileStateStore()
        self.graph = DependencyGraph()
        self.classifier = ConflictClassifier(monotonic)
        self.queue = ConflictQueue(
            self.config.debounce_delay,
            self.config.max_concurrent_conflicts,
            monotonic=monotonic,
        )
        self.policy = policy if policy is not None else ResolutionPolicy()
        self.recovery = (
            recovery
            if recovery is not None
            else CrashRecoveryManager(
                self.config.resolved_backup_dir(),
                snapshot_interval=self.config.snapshot_interval,
                clock=clock,
                monotonic=monotonic,
            )
        )
        self.watch = watch if watch is not None else WatchSource(self.config, monotonic=monotonic)
        self.backoff = RetryBackoff(self.config.retry_backoff_base, self.config.retry_backoff_cap)

        self.conflicts_ready: EventChannel[list[Conflict]] = EventChannel("conflicts-ready")
        self.actions_applied: EventChannel[ActionOutcome] = EventChannel("actions-applied")

        self._documents: dict[int, _Document] = {}
        self._document_ids = itertools.count(1)
        self._owners: dict[Path, set[int]] = {}
        self._watch_handles: dict[Path, WatchHandle] = {}

        # Host-side editing state.
        self._unsaved: dict[Path, bool] = {}
        self._buffers: dict[Path, str] = {}
        self._failed_saves: dict[Path, str] = {}
        self._read_only: set[Path] = set()

        # Presentation and suspension.
        self._awaiting: dict[Path, Conflict] = {}
        self._inbox: deque[WatchEvent] = deque()
        self._deferred: dict[Path, WatchEvent] = {}

        # Retries and escalation.
        self._transient_since: dict[Path, float] = {}
        self._save_failed_since: dict[Path, float] = {}
        self._save_retry_at: dict[Path, float] = {}
        self._resurface_at: dict[Path, tuple[float, Conflict]] = {}
        self._advisory_due: set[Path] = set()
        self._user_polling: set[Path] = set()

        # Include bookkeeping.
        self._pending_parse: dict[Path, tuple[DependencyEdge, ...]] = {}
        self._aliases: dict[Path, Path] = {}
        self._collisions: dict[Path, Path] = {}
        self._distinct: set[Path] = set()

        self._recovered: dict[Path, EmergencyBackup] = {}

        self._subscriptions = [
            self.store.commits.subscribe(self.queue.invalidate),
            self.watch.changes.subscribe(self._on_watch_event),
            self.watch.health_changes.subscribe(self._on_health_change),
        ]

    def _now(self, now: float | None) -> float:
        return self._monotonic() if now is None else now

    # Documents and ownership

    def register_document(self, path: Path | str, now: float | None = None) -> DocumentHandle:
        """Start tracking ``path`` and, transitively, everything it includes."""
        now = self._now(now)
        path = canonical_path(path)
        handle = DocumentHandle(document_id=next(self._document_ids), path=path)
        self._documents[handle.document_id] = _Document(handle=handle)
        logger.info("registered document {} as #{}", path, handle.document_id)
        self._sync_ownership(now)
        return handle

    def unregister_document(self, handle: DocumentHandle, now: float | None = None) -> None:
        """Stop tracking paths only this document owned. Idempotent."""
        document = self._documents.pop(handle.document_id, None)
        if document is None:
            return
        for subscription in document.subscriptions:
            subscription.unsubscribe()
        self._sync_ownership(self._now(now))
        logger.info("unregistered document {} (#{})", handle.path, handle.document_id)

    def _desired_owners(self) -> dict[Path, set[int]]:
        owners: dict[Path, set[int]] = {}
        for document_id, document in self._documents.items():
            for path in self.graph.reachable_from(document.handle.path):
                owners.setdefault(path, set()).add(document_id)
        return owners

    def _sync_ownership(self, now: float) -> None:
        # Tracking a file parses its includes, which can make more files reachable.
        while True:
            self._owners = self._desired_owners()
            added = [path for path in self._owners if path not in self._watch_handles]
            if not added:
                break
            for path in added:
                self._track(path, now)
        for path in [path for path in self._watch_handles if path not in self._owners]:
            self._untrack(path)

    def _track(self, path: Path, now: float) -> None:
        probe = self._probe(path)
        collides = None
        if probe.status == ProbeStatus.OK and path not in self._distinct:
            collides = self.store.find_alias(path, probe.identity)

        if collides is not None:
            # Not adopted until the user picks a side.
            self._collisions[path] = collides
            logger.info("{} is the same file as tracked {}", path, collides)
        else:
            self._adopt(path, probe, now)

        handle = self.watch.start(path, now)
        self._watch_handles[path] = handle
        state = self.watch.health(handle)
        if state is not None:
            self.store.set_watch_state(path, state)
        logger.debug("tracking {}", path)

        if collides is not None:
            self._check(path, now, probe=probe)

    def _adopt(self, path: Path, probe: DiskProbe, now: float) -> None:
        if probe.status == ProbeStatus.OK and probe.content is not None:
            self.store.commit(
                path,
                probe.content,
                probe.content_hash,
                probe.modified_at,
                size=probe.size,
                identity=probe.identity,
            )
            self._parse_includes(path, probe.content, now)
        else:
            self.store.placeholder(path)
            self._check(path, now, probe=probe)
        if path in self._recovered:
            self._enqueue(self.classifier.recovered_backup(path, now), now)

    def _untrack(self, path: Path) -> None:
        handle = self._watch_handles.pop(path, None)
        if handle is not None:
            self.watch.stop(handle)
        self.graph.remove_all_for(path)
        self.store.forget(path)
        self.queue.discard_path(path)
        for table in (
            self._unsaved,
            self._buffers,
            self._failed_saves,
            self._awaiting,
            self._deferred,
            self._transient_since,
            self._save_failed_since,
            self._save_retry_at,
            self._resurface_at,
            self._pending_parse,
            self._collisions,
        ):
            table.pop(path, None)
        self._read_only.discard(path)
        self._advisory_due.discard(path)
        self._user_polling.discard(path)
        self.backoff.reset(path)
        self.policy.preferences.clear_session([str(path)])
        logger.debug("stopped tracking {}", path)

    # Includes

    def _aliased(self, edge: DependencyEdge) -> DependencyEdge:
        target = self._aliases.get(edge.to_path)
        if target is None:
            return edge
        return DependencyEdge(edge.from_path, target, edge.kind)

    def _parse_includes(self, path: Path, content: str, now: float) -> bool:
        """Replace ``path``'s include edges; a cycle is queued, not applied."""
        edges = [self._aliased(edge) for edge in extract_include_edges(path, content)]
        rejection = self.graph.set_edges(path, edges)
        if rejection is None:
            self._pending_parse.pop(path, None)
            return True
        if self._pending_parse.get(path) == rejection.proposed and self._cycle_outstanding(path):
            return False
        self._pending_parse[path] = rejection.proposed
        logger.warning("include cycle rejected: {}", " -> ".join(str(p) for p in rejection.cycle))
        self._enqueue(self.classifier.cycle_conflict(rejection, now), now)
        return False

    def _cycle_outstanding(self, path: Path) -> bool:
        presented = self._awaiting.get(path)
        if presented is not None and presented.kind == ConflictKind.CIRCULAR_DEPENDENCY:
            return True
        entry = self.queue.entry(path)
        return entry is not None and entry.conflict.kind == ConflictKind.CIRCULAR_DEPENDENCY

    def _reparse_sources(self, path: Path, now: float) -> None:
        sources = {edge.from_path for edge in self.graph.edges_to(path)}
        if not sources:
            return
        # Inner includers first, so outer ones see settled edges.
        for source in [node for node in self.graph.topological_order() if node in sources]:
            record = self.store.observe(source)
            if record is not None and record.cached_content is not None:
                self._parse_includes(source, record.cached_content, now)

    # Host notifications

    def notify_local_edit(
        self,
        path: Path | str,
        has_unsaved_changes: bool,
        content: str | None = None,
        now: float | None = None,
    ) -> None:
        path = canonical_path(path)
        if path not in self._watch_handles:
            logger.debug("edit on untracked {} ignored", path)
            return
        was_unsaved = self._unsaved.get(path, False)
        if has_unsaved_changes:
            self._unsaved[path] = True
            if content is not None:
                self._buffers[path] = content
        else:
            self._unsaved.pop(path, None)
            self._buffers.pop(path, None)
        if was_unsaved == has_unsaved_changes:
            return
        presented = self._awaiting.get(path)
        if has_unsaved_changes and presented is not None and presented.kind in _UNSAVED_SENSITIVE_KINDS:
            # The prompt on screen was chosen for a clean buffer; ask again.
            self._awaiting.pop(path)
            self.queue.resolved(presented)
            logger.info("withdrew {}: {} now has unsaved edits", presented.kind.value, path)
            self._check(path, self._now(now), reclassified=True)
            self._replay_deferred(path)
        elif self.queue.entry(path) is not None:
            self._check(path, self._now(now), reclassified=True)

    def notify_local_save(
        self,
        path: Path | str,
        content: str,
        content_hash: str | None = None,
        now: float | None = None,
    ) -> None:
        """Record a successful host save; the saved text becomes last-known-good."""
        now = self._now(now)
        path = canonical_path(path)
        if path not in self._watch_handles:
            logger.debug("save of untracked {} ignored", path)
            return
        digest = content_hash if content_hash is not None else hash_text(content)
        try:
            st = path.stat()
        except OSError:
            st = None
        self.store.commit(
            path,
            content,
            digest,
            int(st.st_mtime_ns) if st is not None else None,
            size=int(st.st_size) if st is not None else None,
            identity=(int(st.st_dev), int(st.st_ino)) if st is not None else None,
        )
        self._clear_save_state(path)
        if path not in self._recovered:
            self.recovery.discard(path)
        presented = self._awaiting.pop(path, None)
        if presented is not None:
            self.queue.resolved(presented)
            self._replay_deferred(path)
        self._parse_includes(path, content, now)
        self._sync_ownership(now)
        logger.debug("saved {}", path)

    def notify_save_failed(
        self,
        path: Path | str,
        error: BaseException,
        content: str | None = None,
        now: float | None = None,
    ) -> Conflict | None:
        """Report a host save that raised.

        Permission and missing-directory failures are queued as
        permission-denied right away. Transient ones are retried with backoff
        and only surface once they outlive ``transient_retry_window``.
        """
        now = self._now(now)
        path = canonical_path(path)
        if path not in self._watch_handles:
            logger.debug("save failure on untracked {} ignored", path)
            return None
        pending = content if content is not None else self._buffers.get(path)
        if pending is not None:
            self._failed_saves[path] = pending

        conflict = self.classifier.classify_save_failure(path, error, now)
        if conflict is not None:
            logger.warning("save of {} failed: {}", path, error)
            return self._enqueue(conflict, now)
        if pending is None:
            logger.warning("save of {} failed transiently and no content was given to retry", path)
            return None
        self._save_failed_since.setdefault(path, now)
        self._save_retry_at[path] = now + self.backoff.next_delay(path)
        logger.info("save of {} failed transiently ({}); retrying", path, error)
        return None

    # Subscriptions

    def on_conflicts_ready(
        self,
        callback: Callable[[list[Conflict]], Iterable[Resolution] | None],
        handle: DocumentHandle | None = None,
    ) -> Subscription:
        """Receive batches of conflicts that need a decision.

        Whatever resolutions the callback returns are applied immediately.
        With ``handle`` only that document's conflicts are delivered.
        """
        if handle is None:
            return self.conflicts_ready.subscribe(callback)
        document = self._document(handle)
        document_id = handle.document_id

        def deliver(conflicts: list[Conflict]):
            mine = [conflict for conflict in conflicts if document_id in self._impacted_documents(conflict.path)]
            return callback(mine) if mine else None

        subscription = self.conflicts_ready.subscribe(deliver)
        document.subscriptions.append(subscription)
        return subscription

    def on_action_applied(
        self,
        callback: Callable[[ActionOutcome], object],
        handle: DocumentHandle | None = None,
    ) -> Subscription:
        if handle is None:
            return self.actions_applied.subscribe(callback)
        document = self._document(handle)
        document_id = handle.document_id

        def deliver(outcome: ActionOutcome):
            if document_id in outcome.documents:
                return callback(outcome)
            return None

        subscription = self.actions_applied.subscribe(deliver)
        document.subscriptions.append(subscription)
        return subscription

    def _impacted_documents(self, path: Path) -> frozenset[int]:
        """Registered documents whose main file is ``path`` or includes it."""
        impacted = {path, *self.graph.impacted_by(path)}
        return frozenset(
            document_id for document_id, document in self._documents.items() if document.handle.path in impacted
        )

    def _document(self, handle: DocumentHandle) -> _Document:
        document = self._documents.get(handle.document_id)
        if document is None:
            raise DocguardError(f"document #{handle.document_id} is not registered")
        return document

    # Event intake

    def _on_watch_event(self, event: WatchEvent) -> None:
        if event.path in self._watch_handles:
            self._inbox.append(event)

    def _on_health_change(self, change: HealthChange) -> None:
        self.store.set_watch_state(change.path, change.current)
        if change.current == WatchState.ACTIVE:
            self._advisory_due.discard(change.path)
            return
        if change.current != WatchState.POLLING or change.path in self._user_polling:
            return
        self._advisory_due.add(change.path)
        # The advisory goes out with the first detection after the switch.
        self._inbox.append(
            WatchEvent(path=change.path, kind=WatchEventKind.MODIFIED, observed_at=self._monotonic())
        )

    def _process_inbox(self, now: float) -> None:
        checked: set[Path] = set()
        while self._inbox:
            event = self._inbox.popleft()
            path = event.path
            if path not in self._watch_handles:
                continue
            if path in self._awaiting:
                # One re-check after the decision covers any number of raw events.
                self._deferred[path] = event
                continue
            if path in checked:
                continue
            checked.add(path)
            self._check(path, now)

    def _replay_deferred(self, path: Path) -> None:
        event = self._deferred.pop(path, None)
        if event is not None:
            logger.debug("replaying deferred {} event for {}", event.kind.value, path)
            self._inbox.append(event)

    # Classification

    def _check(
        self,
        path: Path,
        now: float,
        *,
        probe: DiskProbe | None = None,
        reclassified: bool = False,
    ) -> Conflict | None:
        record = self.store.observe(path)
        if probe is None:
            probe = self._probe(path, record)

        if probe.status == ProbeStatus.ERROR:
            since = self._transient_since.setdefault(path, now)
            if (now - since) < self.config.transient_retry_window:
                logger.debug("transient error on {}: {}", path, probe.error)
                return None
            del self._transient_since[path]
            return self._enqueue(self.classifier.escalated_transient(path, probe, now), now, reclassified=reclassified)
        self._transient_since.pop(path, None)

        if (
            record is not None
            and probe.status == ProbeStatus.OK
            and probe.content_hash == record.content_hash
            and probe.modified_at != record.modified_at
        ):
            self.store.refresh_metadata(path, probe.modified_at, probe.size, probe.identity)

        conflict = self.classifier.classify(
            path,
            record,
            probe,
            has_unsaved_changes=self._unsaved.get(path, False),
            polling_advisory_due=path in self._advisory_due,
            collides_with=self._collisions.get(path),
            now=now,
        )
        if conflict is None and path in self._recovered:
            conflict = self.classifier.recovered_backup(path, now)
        if conflict is None:
            entry = self.queue.entry(path)
            stale = entry is not None and entry.conflict.kind in _DISK_KINDS
            if stale and entry.conflict.source == ConflictSource.MEMORY:
                self.queue.invalidate(path)
                logger.debug("{} settled before presentation; dropped {}", path, entry.conflict.kind.value)
            return None
        if not conflict.related_edges:
            incoming = tuple(self.graph.edges_to(path))
            if incoming:
                conflict = replace(conflict, related_edges=incoming)
        if conflict.kind == ConflictKind.WATCH_FAILURE:
            self._advisory_due.discard(path)
        return self._enqueue(conflict, now, reclassified=reclassified)

    def _enqueue(self, conflict: Conflict, now: float, *, reclassified: bool = False) -> Conflict:
        entry = self.queue.push(conflict, now, reclassified=reclassified)
        if entry.coalesce_count > 1:
            logger.debug("coalesced into pending conflict ({}x): {}", entry.coalesce_count, entry.conflict.describe())
        else:
            logger.debug("queued {}", conflict.describe())
        return entry.conflict

    def force_check(self, path: Path | str, now: float | None = None) -> Conflict | None:
        """Classify ``path`` now; the result replaces any pending conflict for it."""
        path = canonical_path(path)
        if path not in self._watch_handles or path in self._awaiting:
            return None
        return self._check(path, self._now(now), reclassified=True)

    # Driving

    def tick(self, now: float | None = None) -> list[Conflict]:
        """Run one loop iteration and return the conflicts presented by it."""
        now = self._now(now)
        self.watch.poll(now)
        self._process_inbox(now)
        for path in list(self._transient_since):
            if path in self._watch_handles and path not in self._awaiting:
                self._check(path, now)
        self._retry_saves(now)
        self._resurface_due(now)
        for conflict in self.queue.expire_advisories(now, self.config.advisory_ttl):
            logger.debug("advisory expired unseen: {}", conflict.describe())
        self._snapshot_unsaved(now)
        return self._present(now)

    def _present(self, now: float) -> list[Conflict]:
        ready = self.queue.drain(now)
        if not ready:
            return []
        automatic: list[Resolution] = []
        prompts: list[Conflict] = []
        for conflict in ready:
            self._awaiting[conflict.path] = conflict
            action = self.policy.resolve(conflict)
            if action is not None:
                automatic.append(Resolution(conflict=conflict, action=action))
            else:
                prompts.append(conflict)
        if automatic:
            self.apply_resolutions(automatic, now)
        if prompts:
            for result in self.conflicts_ready.publish(prompts):
                if result:
                    self.apply_resolutions(list(result), now)
        return ready

    def _retry_saves(self, now: float) -> None:
        for path, due in list(self._save_retry_at.items()):
            if due > now or path in self._awaiting:
                continue
            del self._save_retry_at[path]
            if path not in self._failed_saves:
                self._save_failed_since.pop(path, None)
                continue
            error = self._retry_save(path, now)
            if error is None:
                self.actions_applied.publish(
                    ActionOutcome(
                        path,
                        Action.RETRY,
                        applied=True,
                        detail="saved after a transient failure",
                        documents=self._impacted_documents(path),
                    )
                )
                continue
            since = self._save_failed_since.get(path, now)
            conflict = self.classifier.classify_save_failure(path, error, now)
            if conflict is None and (now - since) >= self.config.transient_retry_window:
                conflict = self.classifier.escalated_save(path, error, now)
            if conflict is not None:
                self._save_failed_since.pop(path, None)
                self._enqueue(conflict, now)
                continue
            self._save_retry_at[path] = now + self.backoff.next_delay(path)

    def _resurface_due(self, now: float) -> None:
        for path, (due, conflict) in list(self._resurface_at.items()):
            if due > now or path in self._awaiting:
                continue
            del self._resurface_at[path]
            if conflict.kind == ConflictKind.PERMISSION_DENIED and path not in self._failed_saves:
                self._check(path, now, reclassified=True)
            else:
                self._enqueue(replace(conflict, detected_at=now), now, reclassified=True)

    def _snapshot_unsaved(self, now: float) -> None:
        for path, unsaved in list(self._unsaved.items()):
            content = self._buffers.get(path)
            if unsaved and content is not None and self.recovery.due(path, now):
                self.recovery.snapshot(path, content, now)

    # Resolution

    def apply_resolutions(
        self,
        resolutions: Iterable[Resolution],
        now: float | None = None,
    ) -> list[ActionOutcome]:
        """Apply chosen actions to presented conflicts.

        Every resolution is validated before any is applied, so an action
        that is not offered raises ``ActionNotOffered`` with nothing changed.
        Resolutions for conflicts that are no longer presented are skipped.
        """
        now = self._now(now)
        resolutions = list(resolutions)
        for resolution in resolutions:
            self.policy.validate(resolution)

        outcomes: list[ActionOutcome] = []
        for resolution in resolutions:
            conflict = resolution.conflict
            if not self.queue.resolved(conflict):
                logger.debug("skipping resolution for a conflict no longer presented: {}", conflict.describe())
                continue
            self._awaiting.pop(conflict.path, None)
            self.policy.record_choice(resolution)
            # Taken before applying; removing a reference changes who includes the file.
            audience = self._impacted_documents(conflict.path)
            try:
                outcome = self._apply(resolution, now)
            except (OSError, DocguardError) as exc:
                logger.warning("{} failed for {}: {}", resolution.action.value, conflict.path, exc)
                outcome = ActionOutcome(conflict.path, resolution.action, applied=False, detail=str(exc))
                self._enqueue(replace(conflict, detected_at=now), now)
            else:
                logger.info("{} applied to {}", resolution.action.value, conflict.path)
            self._replay_deferred(conflict.path)
            outcome = replace(outcome, documents=audience)
            outcomes.append(outcome)
            self.actions_applied.publish(outcome)
        return outcomes

    def _apply(self, resolution: Resolution, now: float) -> ActionOutcome:
        handlers: dict[Action, Callable[[Resolution, float], ActionOutcome]] = {
            Action.RELOAD: self._do_reload,
            Action.RELOAD_AND_DISCARD_MINE: self._do_reload,
            Action.KEEP_MINE_AND_OVERWRITE: self._do_keep_mine,
            Action.IGNORE_ONCE: self._do_ignore_once,
            Action.SAVE_COPY_ELSEWHERE: self._do_save_copy,
            Action.RECREATE_FROM_MEMORY: self._do_recreate,
            Action.FIND_ALTERNATIVE: self._do_find_alternative,
            Action.REMOVE_REFERENCE: self._do_remove_reference,
            Action.USE_NEW_FILE: self._do_use_new_file,
            Action.KEEP_EXISTING_REFERENCE: self._do_keep_existing,
            Action.BREAK_EDGE: self._do_break_edge,
            Action.VIEW_GRAPH: self._do_view_graph,
            Action.CANCEL_PARSE: self._do_cancel_parse,
            Action.RETRY: self._do_retry,
            Action.CONTINUE_READ_ONLY: self._do_continue_read_only,
            Action.RETRY_NATIVE_WATCH: self._do_retry_native_watch,
            Action.SWITCH_TO_POLLING: self._do_switch_to_polling,
            Action.DISMISS: self._do_dismiss,
        }
        return handlers[resolution.action](resolution, now)

    def _memory_content(self, path: Path) -> str:
        content = self._buffers.get(path)
        if content is None and not self._unsaved.get(path, False):
            record = self.store.observe(path)
            content = record.cached_content if record is not None else None
        if content is None:
            raise MissingBufferError(f"no in-memory content for {path}")
        return content

    def _backup_content(self, path: Path) -> str:
        backup = self._recovered.get(path)
        if backup is None:
            raise MissingBufferError(f"no emergency backup for {path}")
        return backup.snapshot_content

    def _discard_backup(self, path: Path) -> None:
        self.recovery.discard(path)
        self._recovered.pop(path, None)

    def _clear_save_state(self, path: Path) -> None:
        self._unsaved.pop(path, None)
        self._buffers.pop(path, None)
        self._failed_saves.pop(path, None)
        self._save_retry_at.pop(path, None)
        self._save_failed_since.pop(path, None)
        self._transient_since.pop(path, None)
        self._read_only.discard(path)
        self.backoff.reset(path)

    def _reload(self, path: Path, now: float) -> str:
        probe = self._probe(path)
        if probe.status != ProbeStatus.OK or probe.content is None:
            raise OSError(f"cannot read {path}: {probe.error or probe.status.value}")
        self.store.commit(
            path,
            probe.content,
            probe.content_hash,
            probe.modified_at,
            size=probe.size,
            identity=probe.identity,
        )
        self._unsaved.pop(path, None)
        self._buffers.pop(path, None)
        self._transient_since.pop(path, None)
        self._parse_includes(path, probe.content, now)
        self._sync_ownership(now)
        return probe.content

    def _write(self, path: Path, content: str, now: float) -> None:
        write_text_atomic(path, content)
        probe = self._probe(path)
        self.store.commit(
            path,
            content,
            hash_text(content),
            probe.modified_at,
            size=probe.size,
            identity=probe.identity,
        )
        self._clear_save_state(path)
        if path not in self._recovered:
            self.recovery.discard(path)
        self._parse_includes(path, content, now)
        self._sync_ownership(now)

    def _retry_save(self, path: Path, now: float) -> OSError | None:
        try:
            self._write(path, self._failed_saves[path], now)
        except OSError as exc:
            logger.warning("save retry for {} failed: {}", path, exc)
            return exc
        logger.info("saved {} on retry", path)
        return None

    def _copy_destination(self, path: Path) -> Path:
        stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(self._clock()))
        return path.with_name(f"{path.stem}.conflict-{stamp}{path.suffix}")

    def _do_reload(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        if conflict.source == ConflictSource.BACKUP:
            self._discard_backup(conflict.path)
        if resolution.action == Action.RELOAD and self._unsaved.get(conflict.path, False):
            # Only reload-and-discard-mine may drop unsaved edits.
            self._check(conflict.path, now, reclassified=True)
            raise UnsavedChangesError(f"{conflict.path} has unsaved edits; reload would discard them")
        content = self._reload(conflict.path, now)
        return ActionOutcome(conflict.path, resolution.action, applied=True, content=content, detail="reloaded from disk")

    def _do_keep_mine(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        from_backup = conflict.source == ConflictSource.BACKUP
        content = self._backup_content(conflict.path) if from_backup else self._memory_content(conflict.path)
        self._write(conflict.path, content, now)
        if from_backup:
            self._discard_backup(conflict.path)
        return ActionOutcome(conflict.path, resolution.action, applied=True, content=content, detail="disk overwritten")

    def _do_ignore_once(self, resolution: Resolution, now: float) -> ActionOutcome:
        # The disk version becomes the baseline while the host keeps showing
        # its own text, which from now on counts as unsaved.
        path = resolution.conflict.path
        shown = self._buffers.get(path)
        if shown is None:
            record = self.store.observe(path)
            shown = record.cached_content if record is not None else None
        probe = self._probe(path)
        if probe.status != ProbeStatus.OK or probe.content is None:
            raise OSError(f"cannot read {path}: {probe.error or probe.status.value}")
        self.store.commit(
            path,
            probe.content,
            probe.content_hash,
            probe.modified_at,
            size=probe.size,
            identity=probe.identity,
        )
        if shown is not None and shown != probe.content:
            self._buffers[path] = shown
            self._unsaved[path] = True
        return ActionOutcome(path, resolution.action, applied=True, detail="external change ignored")

    def _do_save_copy(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        path = conflict.path
        if conflict.source == ConflictSource.BACKUP:
            content = self._backup_content(path)
        elif conflict.kind == ConflictKind.PERMISSION_DENIED and path in self._failed_saves:
            content = self._failed_saves[path]
        else:
            content = self._memory_content(path)
        destination = canonical_path(resolution.target) if resolution.target is not None else self._copy_destination(path)
        write_text_atomic(destination, content)
        logger.info("saved a copy of {} to {}", path, destination)

        reloaded = None
        if conflict.source == ConflictSource.BACKUP:
            self._discard_backup(path)
        elif conflict.kind == ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL:
            reloaded = self._reload(path, now)
        else:
            self._failed_saves.pop(path, None)
        return ActionOutcome(
            path,
            resolution.action,
            applied=True,
            content=reloaded,
            target=destination,
            detail=f"copy written to {destination}",
        )

    def _do_recreate(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        content = self._buffers.get(path)
        if content is None:
            record = self.store.observe(path)
            content = record.cached_content if record is not None else None
        if content is None:
            raise MissingBufferError(f"nothing in memory to recreate {path} from")
        self._write(path, content, now)
        return ActionOutcome(path, resolution.action, applied=True, content=content, detail="recreated from memory")

    def _do_find_alternative(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        if resolution.target is None:
            raise MissingTargetError("find-alternative needs a replacement path")
        replacement = canonical_path(resolution.target)
        self._aliases[path] = replacement
        self._reparse_sources(path, now)
        self._sync_ownership(now)
        return ActionOutcome(
            path,
            resolution.action,
            applied=True,
            target=replacement,
            detail=f"references to {path.name} now resolve to {replacement}",
        )

    def _do_remove_reference(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        removed = self.graph.remove_edges_to(path)
        self.store.forget(path)
        self._sync_ownership(now)
        sources = sorted({edge.from_path.name for edge in removed})
        detail = f"reference removed from {', '.join(sources)}" if sources else "no references left"
        return ActionOutcome(path, resolution.action, applied=True, detail=detail)

    def _do_use_new_file(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        self._distinct.add(path)
        self._collisions.pop(path, None)
        self._adopt(path, self._probe(path), now)
        self._sync_ownership(now)
        return ActionOutcome(path, resolution.action, applied=True, detail="tracked as a separate file")

    def _do_keep_existing(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        existing = conflict.collides_with or self._collisions.get(conflict.path)
        if existing is None:
            raise MissingTargetError(f"no existing reference known for {conflict.path}")
        self._collisions.pop(conflict.path, None)
        self._aliases[conflict.path] = existing
        self._reparse_sources(conflict.path, now)
        self._sync_ownership(now)
        return ActionOutcome(conflict.path, resolution.action, applied=True, target=existing, detail=f"using {existing}")

    def _do_break_edge(self, resolution: Resolution, now: float) -> ActionOutcome:
        source = resolution.conflict.path
        if resolution.target is None:
            raise MissingTargetError("break-edge needs the include to drop")
        target = canonical_path(resolution.target)
        proposal = self._pending_parse.pop(source, None)
        if proposal is None:
            return ActionOutcome(source, resolution.action, applied=False, target=target, detail="no include change pending")
        remaining = [edge for edge in proposal if edge.to_path != target]
        rejection = self.graph.set_edges(source, remaining)
        if rejection is not None:
            self._pending_parse[source] = rejection.proposed
            self._enqueue(self.classifier.cycle_conflict(rejection, now), now)
            raise CycleError(list(rejection.cycle))
        self._sync_ownership(now)
        return ActionOutcome(source, resolution.action, applied=True, target=target, detail=f"dropped include of {target.name}")

    def _do_view_graph(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        text = self.graph.describe()
        if conflict.cycle:
            text += "\ncycle: " + " -> ".join(str(p) for p in (*conflict.cycle, conflict.cycle[0]))
        # Viewing decides nothing; ask again.
        self._enqueue(replace(conflict, detected_at=now), now)
        return ActionOutcome(conflict.path, resolution.action, applied=True, content=text, detail="cycle still unresolved")

    def _do_cancel_parse(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        self._pending_parse.pop(path, None)
        return ActionOutcome(path, resolution.action, applied=True, detail="kept the previous includes")

    def _do_retry(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        path = conflict.path
        if path in self._failed_saves:
            ok = self._retry_save(path, now) is None
        else:
            record = self.store.observe(path)
            probe = self._probe(path, record)
            ok = probe.status not in (ProbeStatus.PERMISSION, ProbeStatus.ERROR)
            if ok and (record is None or record.is_placeholder) and probe.status == ProbeStatus.OK:
                self._reload(path, now)
            elif ok:
                self._check(path, now, probe=probe, reclassified=True)
        if ok:
            self.backoff.reset(path)
            return ActionOutcome(path, resolution.action, applied=True, detail="access restored")
        delay = self.backoff.next_delay(path)
        self._resurface_at[path] = (now + delay, conflict)
        return ActionOutcome(path, resolution.action, applied=False, detail=f"still failing; asking again in {delay:g}s")

    def _do_continue_read_only(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        self._read_only.add(path)
        self._failed_saves.pop(path, None)
        return ActionOutcome(path, resolution.action, applied=True, detail="read-only until the next successful save")

    def _do_retry_native_watch(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        path = conflict.path
        handle = self._watch_handles.get(path)
        if handle is not None and self.watch.retry_native(handle, now):
            self._advisory_due.discard(path)
            self._user_polling.discard(path)
            self.backoff.reset(path)
            return ActionOutcome(path, resolution.action, applied=True, detail="native watching restored")
        delay = self.backoff.next_delay(path)
        self._resurface_at[path] = (now + delay, conflict)
        return ActionOutcome(path, resolution.action, applied=False, detail=f"still polling; asking again in {delay:g}s")

    def _do_switch_to_polling(self, resolution: Resolution, now: float) -> ActionOutcome:
        path = resolution.conflict.path
        self._advisory_due.discard(path)
        self._user_polling.add(path)
        handle = self._watch_handles.get(path)
        if handle is not None:
            self.watch.force_polling(handle, now)
        return ActionOutcome(path, resolution.action, applied=True, detail="polling")

    def _do_dismiss(self, resolution: Resolution, now: float) -> ActionOutcome:
        conflict = resolution.conflict
        if conflict.kind == ConflictKind.CIRCULAR_DEPENDENCY:
            # Lets the next parse report the same cycle again.
            self._pending_parse.pop(conflict.path, None)
        return ActionOutcome(conflict.path, resolution.action, applied=True, detail="dismissed")

    # Recovery and lifecycle

    def run_crash_recovery(self) -> list[EmergencyBackup]:
        """Find backups left by an abnormal shutdown and offer them.

        Call once at startup, before registering documents.
        """
        backups = self.recovery.recover()
        self.offer_recovered(backups)
        return backups

    def offer_recovered(self, backups: Iterable[EmergencyBackup], now: float | None = None) -> None:
        now = self._now(now)
        for backup in backups:
            path = canonical_path(backup.original_path)
            self._recovered[path] = backup
            if path in self._watch_handles and path not in self._awaiting:
                self._enqueue(self.classifier.recovered_backup(path, now), now)

    def emergency_flush(self) -> int:
        """Snapshot every unsaved buffer right now; returns how many were written."""
        written = 0
        for path, unsaved in list(self._unsaved.items()):
            content = self._buffers.get(path)
            if unsaved and content is not None and self.recovery.snapshot(path, content) is not None:
                written += 1
        logger.info("emergency flush wrote {} backup(s)", written)
        return written

    def get_system_status(self) -> SystemStatus:
        return SystemStatus(
            tracked_files=len(self.store),
            pending_conflicts=self.queue.pending_count,
            watch_health=self.watch.health_by_path(),
            graph_edge_count=self.graph.edge_count(),
            presented_conflicts=self.queue.presented_count,
            awaiting_paths=tuple(self._awaiting),
            read_only_paths=tuple(sorted(self._read_only, key=str)),
            documents=len(self._documents),
        )

    def close(self) -> None:
        for document in self._documents.values():
            for subscription in document.subscriptions:
                subscription.unsubscribe()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self.watch.close()
        self._watch_handles.clear()


__all__ = ["ConflictCoordinator", "DocumentHandle", "SystemStatus"]
