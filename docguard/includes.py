"""Include-reference extraction.

Only the include markers are understood; the rest of a document is opaque.
Supported markers::

    !!!include(path)!!!         whole-document include
    !!!columninclude(path)!!!   section include
    !!!taskinclude(path)!!!     item include
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .file_state.fs import canonical_path
from .graph import DependencyEdge, IncludeKind

_INCLUDE_PATTERNS: tuple[tuple[IncludeKind, re.Pattern[str]], ...] = (
    (IncludeKind.DOCUMENT, re.compile(r"!!!include\(([^)]+)\)!!!", re.IGNORECASE)),
    (IncludeKind.SECTION, re.compile(r"!!!columninclude\(([^)]+)\)!!!", re.IGNORECASE)),
    (IncludeKind.ITEM, re.compile(r"!!!taskinclude\(([^)]+)\)!!!", re.IGNORECASE)),
)


@dataclass(frozen=True)
class IncludeReference:
    kind: IncludeKind
    raw: str
    offset: int


def find_include_references(content: str) -> list[IncludeReference]:
    """Return include markers in document order."""
    references: list[IncludeReference] = []
    for kind, pattern in _INCLUDE_PATTERNS:
        for match in pattern.finditer(content):
            raw = match.group(1).strip()
            if raw:
                references.append(IncludeReference(kind=kind, raw=raw, offset=match.start()))
    references.sort(key=lambda ref: ref.offset)
    return references


def resolve_include_target(including_file: Path, raw: str) -> Path:
    """Resolve a marker argument relative to the including file's directory."""
    candidate = Path(raw.strip().strip("\"'")).expanduser()
    if not candidate.is_absolute():
        candidate = including_file.parent / candidate
    return canonical_path(candidate)


def extract_include_edges(including_file: Path, content: str) -> list[DependencyEdge]:
    """Build de-duplicated outgoing edges for ``including_file``.

    When one target is included several times, the first marker's kind wins.
    """
    edges: list[DependencyEdge] = []
    seen: set[Path] = set()
    for reference in find_include_references(content):
        target = resolve_include_target(including_file, reference.raw)
        if target in seen:
            continue
        seen.add(target)
        edges.append(DependencyEdge(from_path=including_file, to_path=target, kind=reference.kind))
    return edges


__all__ = [
    "IncludeReference",
    "extract_include_edges",
    "find_include_references",
    "resolve_include_target",
]
