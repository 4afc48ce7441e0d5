"""Include dependency graph with cycle rejection.

Edges point from the including file to the included file. The graph is kept
acyclic at all times: an outgoing edge set that would close a cycle is
rejected as a whole and reported, never partially applied.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from graphlib import TopologicalSorter
from pathlib import Path


class IncludeKind(str, Enum):
    DOCUMENT = "document-include"
    SECTION = "section-include"
    ITEM = "item-include"


@dataclass(frozen=True)
class DependencyEdge:
    from_path: Path
    to_path: Path
    kind: IncludeKind = IncludeKind.DOCUMENT


@dataclass(frozen=True)
class CycleRejection:
    """Outcome of a ``set_edges`` call that would have closed a cycle."""

    from_path: Path
    proposed: tuple[DependencyEdge, ...]
    rejected_edges: tuple[DependencyEdge, ...]
    cycle: tuple[Path, ...]


_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    def __init__(self) -> None:
        self._out: dict[Path, dict[Path, DependencyEdge]] = {}
        self._in: dict[Path, set[Path]] = {}
        self._rejected: set[tuple[Path, Path]] = set()

    @staticmethod
    def _normalize(from_path: Path, edges: Iterable[DependencyEdge | Path]) -> dict[Path, DependencyEdge]:
        normalized: dict[Path, DependencyEdge] = {}
        for item in edges:
            if isinstance(item, DependencyEdge):
                edge = item if item.from_path == from_path else DependencyEdge(from_path, item.to_path, item.kind)
            else:
                edge = DependencyEdge(from_path=from_path, to_path=Path(item))
            normalized.setdefault(edge.to_path, edge)
        return normalized

    def _successors(self, node: Path, override_from: Path | None, override: dict[Path, DependencyEdge] | None) -> list[Path]:
        if override is not None and node == override_from:
            return list(override)
        return list(self._out.get(node, {}))

    def detect_cycle(
        self,
        from_path: Path,
        proposed: Iterable[DependencyEdge | Path] | None = None,
    ) -> list[Path] | None:
        """Return cycle members reachable from ``from_path``, or ``None``.

        ``proposed`` replaces ``from_path``'s outgoing edges for the check
        only. When the cycle passes through ``from_path`` it is rotated to
        start at the target of the closing edge and end at ``from_path``.
        """
        override = self._normalize(from_path, proposed) if proposed is not None else None
        color: dict[Path, int] = {}
        stack: list[Path] = []
        on_stack: set[Path] = set()

        # Iterative DFS; include chains can be deeper than the recursion limit.
        color[from_path] = _GRAY
        stack.append(from_path)
        on_stack.add(from_path)
        iterators = [iter(self._successors(from_path, from_path, override))]
        while iterators:
            try:
                nxt = next(iterators[-1])
            except StopIteration:
                iterators.pop()
                done = stack.pop()
                on_stack.discard(done)
                color[done] = _BLACK
                continue
            state = color.get(nxt, _WHITE)
            if state == _GRAY and nxt in on_stack:
                cycle = stack[stack.index(nxt):]
                if from_path in cycle:
                    pivot = cycle.index(from_path)
                    cycle = cycle[pivot + 1:] + cycle[: pivot + 1]
                return cycle
            if state == _WHITE:
                color[nxt] = _GRAY
                stack.append(nxt)
                on_stack.add(nxt)
                iterators.append(iter(self._successors(nxt, from_path, override)))
        return None

    def _reaches(self, start: Path, goal: Path, skip_out_of: Path) -> bool:
        if start == goal:
            return True
        seen = {start}
        pending = deque([start])
        while pending:
            node = pending.popleft()
            if node == skip_out_of:
                continue
            for nxt in self._out.get(node, {}):
                if nxt == goal:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    pending.append(nxt)
        return False

    def set_edges(self, from_path: Path, edges: Iterable[DependencyEdge | Path]) -> CycleRejection | None:
        """Replace all outgoing edges of ``from_path``.

        Returns ``None`` when applied. When any proposed edge would close a
        cycle nothing changes and a ``CycleRejection`` is returned.
        """
        proposed = self._normalize(from_path, edges)
        current = self._out.get(from_path, {})
        if proposed == current:
            return None

        cycle = self.detect_cycle(from_path, proposed.values())
        if cycle is not None:
            rejected = tuple(
                edge for target, edge in proposed.items() if self._reaches(target, from_path, from_path)
            )
            for edge in rejected:
                self._rejected.add((edge.from_path, edge.to_path))
            return CycleRejection(
                from_path=from_path,
                proposed=tuple(proposed.values()),
                rejected_edges=rejected,
                cycle=tuple(cycle),
            )

        for target in current:
            if target not in proposed:
                self._unlink_in(from_path, target)
        if proposed:
            self._out[from_path] = proposed
        else:
            self._out.pop(from_path, None)
        for target in proposed:
            self._in.setdefault(target, set()).add(from_path)
        return None

    def _unlink_in(self, from_path: Path, target: Path) -> None:
        sources = self._in.get(target)
        if sources is None:
            return
        sources.discard(from_path)
        if not sources:
            del self._in[target]

    def remove_edges_to(self, path: Path) -> list[DependencyEdge]:
        """Drop every edge pointing at ``path`` and return what was removed."""
        removed: list[DependencyEdge] = []
        for source in sorted(self._in.get(path, set()), key=str):
            outgoing = self._out.get(source, {})
            edge = outgoing.pop(path, None)
            if edge is not None:
                removed.append(edge)
            if not outgoing:
                self._out.pop(source, None)
        self._in.pop(path, None)
        return removed

    def remove_all_for(self, path: Path) -> None:
        """Forget ``path`` entirely: its outgoing and incoming edges."""
        for target in list(self._out.get(path, {})):
            self._unlink_in(path, target)
        self._out.pop(path, None)
        self.remove_edges_to(path)

    def impacted_by(self, path: Path) -> list[Path]:
        """Documents that transitively include ``path`` (nearest first)."""
        seen: set[Path] = {path}
        out: list[Path] = []
        pending = deque([path])
        while pending:
            node = pending.popleft()
            for source in sorted(self._in.get(node, set()), key=str):
                if source in seen:
                    continue
                seen.add(source)
                out.append(source)
                pending.append(source)
        return out

    def reachable_from(self, path: Path) -> list[Path]:
        """``path`` plus everything it transitively includes."""
        seen: set[Path] = {path}
        out: list[Path] = [path]
        pending = deque([path])
        while pending:
            node = pending.popleft()
            for target in self._out.get(node, {}):
                if target not in seen:
                    seen.add(target)
                    out.append(target)
                    pending.append(target)
        return out

    def edges_from(self, path: Path) -> list[DependencyEdge]:
        return list(self._out.get(path, {}).values())

    def edges_to(self, path: Path) -> list[DependencyEdge]:
        return [self._out[source][path] for source in sorted(self._in.get(path, set()), key=str)]

    def edges(self) -> list[DependencyEdge]:
        return [edge for outgoing in self._out.values() for edge in outgoing.values()]

    def edge_count(self) -> int:
        return sum(len(outgoing) for outgoing in self._out.values())

    def was_rejected(self, from_path: Path, to_path: Path) -> bool:
        return (from_path, to_path) in self._rejected

    def topological_order(self) -> list[Path]:
        """Every node, included files before the files that include them."""
        sorter: TopologicalSorter[Path] = TopologicalSorter()
        for source, outgoing in self._out.items():
            sorter.add(source, *outgoing)
        return list(sorter.static_order())

    def describe(self) -> str:
        lines = [
            f"{edge.from_path} -> {edge.to_path} [{edge.kind.value}]"
            for edge in sorted(self.edges(), key=lambda e: (str(e.from_path), str(e.to_path)))
        ]
        return "\n".join(lines)


__all__ = ["CycleRejection", "DependencyEdge", "DependencyGraph", "IncludeKind"]
