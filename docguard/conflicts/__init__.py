"""Conflict model, classification and queueing."""

from __future__ import annotations

from .classifier import ConflictClassifier
from .queue import ConflictQueue
from .types import Conflict, ConflictKind, ConflictSource, PendingQueueEntry, Severity

__all__ = [
    "Conflict",
    "ConflictClassifier",
    "ConflictKind",
    "ConflictQueue",
    "ConflictSource",
    "PendingQueueEntry",
    "Severity",
]
