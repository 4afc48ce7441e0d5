"""Resolution actions, remembered preferences and retry backoff."""

from __future__ import annotations

from .backoff import RetryBackoff
from .policy import DESTRUCTIVE_ACTIONS, OFFERED_ACTIONS, PreferenceStore, ResolutionPolicy
from .types import GLOBAL_SCOPE, Action, ActionOutcome, Preference, Resolution

__all__ = [
    "Action",
    "ActionOutcome",
    "DESTRUCTIVE_ACTIONS",
    "GLOBAL_SCOPE",
    "OFFERED_ACTIONS",
    "Preference",
    "PreferenceStore",
    "Resolution",
    "ResolutionPolicy",
    "RetryBackoff",
]
