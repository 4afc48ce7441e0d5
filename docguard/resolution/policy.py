"""Map conflicts to actions: remembered preferences first, otherwise ask."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from loguru import logger

from ..conflicts.types import Conflict, ConflictKind, ConflictSource
from ..errors import ActionNotOffered
from .types import GLOBAL_SCOPE, Action, Preference, Resolution

OFFERED_ACTIONS: dict[ConflictKind, tuple[Action, ...]] = {
    ConflictKind.EXTERNAL_MODIFIED: (Action.RELOAD, Action.KEEP_MINE_AND_OVERWRITE, Action.IGNORE_ONCE),
    ConflictKind.INTERNAL_UNSAVED_VS_EXTERNAL: (
        Action.KEEP_MINE_AND_OVERWRITE,
        Action.RELOAD_AND_DISCARD_MINE,
        Action.SAVE_COPY_ELSEWHERE,
    ),
    ConflictKind.EXTERNAL_DELETED: (Action.RECREATE_FROM_MEMORY, Action.FIND_ALTERNATIVE, Action.REMOVE_REFERENCE),
    ConflictKind.EXTERNAL_CREATED_COLLISION: (Action.USE_NEW_FILE, Action.KEEP_EXISTING_REFERENCE),
    ConflictKind.CIRCULAR_DEPENDENCY: (Action.BREAK_EDGE, Action.VIEW_GRAPH, Action.CANCEL_PARSE),
    ConflictKind.PERMISSION_DENIED: (Action.RETRY, Action.SAVE_COPY_ELSEWHERE, Action.CONTINUE_READ_ONLY),
    ConflictKind.WATCH_FAILURE: (Action.RETRY_NATIVE_WATCH, Action.SWITCH_TO_POLLING, Action.DISMISS),
}

# Only a user choice or a durable preference may trigger these.
DESTRUCTIVE_ACTIONS = frozenset(
    {
        Action.KEEP_MINE_AND_OVERWRITE,
        Action.RELOAD_AND_DISCARD_MINE,
        Action.REMOVE_REFERENCE,
        Action.USE_NEW_FILE,
    }
)

# Need a user-supplied target, so they can never be replayed from memory.
_TARGETED_ACTIONS = frozenset({Action.BREAK_EDGE, Action.FIND_ALTERNATIVE})


class PreferenceStore:
    """Remembered choices keyed by scope.

    Durable preferences are handed to ``save_durable`` whenever they change;
    session preferences live only in memory.
    """

    def __init__(
        self,
        durable: Iterable[Preference] = (),
        *,
        save_durable: Callable[[list[Preference]], None] | None = None,
    ) -> None:
        self._preferences: dict[str, Preference] = {}
        self._save_durable = save_durable
        for preference in durable:
            self._preferences[preference.scope_key] = preference

    def lookup(self, scope_key: str) -> Preference | None:
        return self._preferences.get(scope_key)

    def remember(self, preference: Preference) -> None:
        previous = self._preferences.get(preference.scope_key)
        self._preferences[preference.scope_key] = preference
        if preference.remember_across_session or (previous is not None and previous.remember_across_session):
            self._persist()

    def forget(self, scope_key: str) -> None:
        previous = self._preferences.pop(scope_key, None)
        if previous is not None and previous.remember_across_session:
            self._persist()

    def clear_session(self, scope_keys: Iterable[str]) -> None:
        for scope_key in scope_keys:
            preference = self._preferences.get(scope_key)
            if preference is not None and not preference.remember_across_session:
                del self._preferences[scope_key]

    def all(self) -> list[Preference]:
        return list(self._preferences.values())

    def _persist(self) -> None:
        if self._save_durable is None:
            return
        self._save_durable([p for p in self._preferences.values() if p.remember_across_session])


class ResolutionPolicy:
    def __init__(self, preferences: PreferenceStore | None = None) -> None:
        self.preferences = preferences if preferences is not None else PreferenceStore()

    @staticmethod
    def offered_actions(kind: ConflictKind) -> tuple[Action, ...]:
        return OFFERED_ACTIONS[kind]

    @staticmethod
    def is_offered(kind: ConflictKind, action: Action) -> bool:
        # Closing the prompt without a choice is always possible.
        return action == Action.DISMISS or action in OFFERED_ACTIONS[kind]

    def resolve(self, conflict: Conflict) -> Action | None:
        """Return a remembered action, or ``None`` when the user must decide."""
        if conflict.source == ConflictSource.BACKUP:
            return None
        offered = OFFERED_ACTIONS[conflict.kind]
        for scope_key in (str(conflict.path), GLOBAL_SCOPE):
            preference = self.preferences.lookup(scope_key)
            if preference is None:
                continue
            action = preference.chosen_action
            if action not in offered or action in _TARGETED_ACTIONS:
                continue
            if action in DESTRUCTIVE_ACTIONS and not preference.remember_across_session:
                continue
            logger.debug("resolving {} for {} from {} preference", action.value, conflict.path, scope_key)
            return action
        return None

    def validate(self, resolution: Resolution) -> None:
        if not self.is_offered(resolution.conflict.kind, resolution.action):
            raise ActionNotOffered(
                f"{resolution.action.value} is not offered for {resolution.conflict.kind.value}"
            )

    def record_choice(self, resolution: Resolution) -> None:
        """Remember a user's choice when they asked for it."""
        if not resolution.remember or resolution.action == Action.DISMISS:
            return
        self.preferences.remember(
            Preference(
                scope_key=str(resolution.conflict.path),
                chosen_action=resolution.action,
                remember_across_session=resolution.durable,
            )
        )


__all__ = ["DESTRUCTIVE_ACTIONS", "OFFERED_ACTIONS", "PreferenceStore", "ResolutionPolicy"]
