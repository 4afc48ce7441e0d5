"""Persistent JSON config helpers.

Stores tuning values for watching, queueing and crash recovery, plus
durable "remember my choice" preferences. All access is defensive:
malformed or missing config falls back to defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path

from platformdirs import user_config_dir, user_state_dir

from .resolution.types import Action, Preference

APP_NAME = "docguard"
CONFIG_FILENAME = "config.json"
DEFAULT_CONFIG_PATH = Path(user_config_dir(APP_NAME, appauthor=False)) / CONFIG_FILENAME
CONFIG_PATH = DEFAULT_CONFIG_PATH
DEFAULT_BACKUP_DIR = Path(user_state_dir(APP_NAME, appauthor=False)) / "emergency"


@dataclass(frozen=True)
class DocguardConfig:
    """Tuning knobs. Durations are seconds on the monotonic clock."""

    debounce_delay: float = 0.5
    max_concurrent_conflicts: int = 3
    polling_interval: float = 10.0
    heartbeat_interval: float = 30.0
    degrade_after_missed: int = 2
    polling_after_degraded: float = 60.0
    snapshot_interval: float = 900.0
    transient_retry_window: float = 5.0
    retry_backoff_base: float = 1.0
    retry_backoff_cap: float = 60.0
    advisory_ttl: float = 30.0
    native_watch: bool = True
    backup_dir: Path | None = None

    def resolved_backup_dir(self) -> Path:
        return self.backup_dir if self.backup_dir is not None else DEFAULT_BACKUP_DIR


_POSITIVE_INT_KEYS = ("max_concurrent_conflicts", "degrade_after_missed")


def load_config() -> dict[str, object]:
    """Load the persisted JSON config object.

    Returns an empty dict when the file is missing, unreadable, malformed, or
    does not decode to a top-level JSON object.
    """
    try:
        data = json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def save_config(data: dict[str, object]) -> None:
    """Persist config data as pretty-printed JSON.

    Any filesystem/serialization error is ignored to keep runtime behavior
    non-fatal when config cannot be written.
    """
    try:
        CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        CONFIG_PATH.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    except Exception:
        pass


def _coerce_positive_float(value: object) -> float | None:
    """Accept positive ints/floats; booleans and everything else are invalid."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value <= 0:
        return None
    return float(value)


def _coerce_positive_int(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def load_docguard_config(overrides: dict[str, object] | None = None) -> DocguardConfig:
    """Build a ``DocguardConfig`` from the persisted ``"docguard"`` section.

    Invalid values are dropped one by one so a single typo does not discard
    the rest of the section. ``overrides`` (e.g. from CLI flags) go through
    the same validation and win over the file.
    """
    section = load_config().get("docguard")
    raw: dict[str, object] = dict(section) if isinstance(section, dict) else {}
    if overrides:
        raw.update(overrides)

    config = DocguardConfig()
    known = {field.name for field in fields(DocguardConfig)}
    updates: dict[str, object] = {}
    for key, value in raw.items():
        if key not in known:
            continue
        if key == "native_watch":
            if isinstance(value, bool):
                updates[key] = value
        elif key == "backup_dir":
            if isinstance(value, str) and value.strip():
                updates[key] = Path(value).expanduser()
            elif isinstance(value, Path):
                updates[key] = value
        elif key in _POSITIVE_INT_KEYS:
            coerced_int = _coerce_positive_int(value)
            if coerced_int is not None:
                updates[key] = coerced_int
        else:
            coerced = _coerce_positive_float(value)
            if coerced is not None:
                updates[key] = coerced
    return replace(config, **updates)


def load_durable_preferences() -> list[Preference]:
    """Load remembered resolution choices with strict validation.

    Entries with unknown actions or empty scope keys are dropped.
    """
    value = load_config().get("preferences")
    if not isinstance(value, dict):
        return []

    preferences: list[Preference] = []
    for scope_key, raw_action in value.items():
        if not isinstance(scope_key, str) or not scope_key.strip():
            continue
        if not isinstance(raw_action, str):
            continue
        try:
            action = Action(raw_action)
        except ValueError:
            continue
        preferences.append(
            Preference(scope_key=scope_key, chosen_action=action, remember_across_session=True)
        )
    return preferences


def save_durable_preferences(preferences: list[Preference]) -> None:
    """Persist durable preferences keyed by scope; session ones are skipped."""
    serialized: dict[str, str] = {}
    for preference in preferences:
        if not isinstance(preference, Preference) or not preference.remember_across_session:
            continue
        serialized[preference.scope_key] = preference.chosen_action.value

    config = load_config()
    config["preferences"] = serialized
    save_config(config)


__all__ = [
    "APP_NAME",
    "CONFIG_PATH",
    "DEFAULT_BACKUP_DIR",
    "DocguardConfig",
    "load_config",
    "load_docguard_config",
    "load_durable_preferences",
    "save_config",
    "save_durable_preferences",
]
