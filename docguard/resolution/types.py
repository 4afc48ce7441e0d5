"""Resolution actions, remembered preferences and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..conflicts.types import Conflict

GLOBAL_SCOPE = "global"


class Action(str, Enum):
    RELOAD = "reload"
    KEEP_MINE_AND_OVERWRITE = "keep-mine-and-overwrite"
    IGNORE_ONCE = "ignore-once"
    RELOAD_AND_DISCARD_MINE = "reload-and-discard-mine"
    SAVE_COPY_ELSEWHERE = "save-copy-elsewhere"
    RECREATE_FROM_MEMORY = "recreate-from-memory"
    FIND_ALTERNATIVE = "find-alternative"
    REMOVE_REFERENCE = "remove-reference"
    USE_NEW_FILE = "use-new-file"
    KEEP_EXISTING_REFERENCE = "keep-existing-reference"
    BREAK_EDGE = "break-edge"
    VIEW_GRAPH = "view-graph"
    CANCEL_PARSE = "cancel-parse"
    RETRY = "retry"
    CONTINUE_READ_ONLY = "continue-read-only"
    RETRY_NATIVE_WATCH = "retry-native-watch"
    SWITCH_TO_POLLING = "switch-to-polling"
    DISMISS = "dismiss"


@dataclass(frozen=True)
class Preference:
    """A remembered choice. ``scope_key`` is a canonical path or ``"global"``."""

    scope_key: str
    chosen_action: Action
    remember_across_session: bool = False


@dataclass(frozen=True)
class Resolution:
    """What the presentation layer chose for one presented conflict.

    ``target`` parameterizes actions that need a path: the destination of
    save-copy-elsewhere, the replacement for find-alternative, or the edge
    target to drop for break-edge.
    """

    conflict: Conflict
    action: Action
    target: Path | None = None
    remember: bool = False
    durable: bool = False


@dataclass(frozen=True)
class ActionOutcome:
    path: Path
    action: Action
    applied: bool
    content: str | None = None
    target: Path | None = None
    detail: str = ""
    # Registered documents that depended on the file when the action ran.
    documents: frozenset[int] = frozenset()


__all__ = ["Action", "ActionOutcome", "GLOBAL_SCOPE", "Preference", "Resolution"]
