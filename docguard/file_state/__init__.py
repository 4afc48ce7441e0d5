"""Tracked-file state: records, disk probing and the last-known-good store.

This package contains non-UI file primitives:
- record/probe datatypes
- hashing, probing and atomic write helpers
- the ``FileStateStore`` cache
"""

from __future__ import annotations

from .fs import (
    canonical_path,
    content_hash,
    decode_bytes,
    path_signature,
    probe_disk,
    read_text,
    write_text_atomic,
)
from .store import FileStateStore
from .types import DiskProbe, FileRecord, ProbeStatus, WatchState

__all__ = [
    "DiskProbe",
    "FileRecord",
    "FileStateStore",
    "ProbeStatus",
    "WatchState",
    "canonical_path",
    "content_hash",
    "decode_bytes",
    "path_signature",
    "probe_disk",
    "read_text",
    "write_text_atomic",
]
