"""Change notification for tracked files.

Native ``watchdog`` notification is preferred; stat heartbeats detect when it
silently fails and the source falls back to polling.
"""

from __future__ import annotations

from .native import NativeWatcher
from .source import WatchSource
from .types import HealthChange, WatchEvent, WatchEventKind, WatchHandle, transition_kind

__all__ = [
    "HealthChange",
    "NativeWatcher",
    "WatchEvent",
    "WatchEventKind",
    "WatchHandle",
    "WatchSource",
    "transition_kind",
]
