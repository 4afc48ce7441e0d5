"""Emergency backups of unsaved content and crash recovery.

Each tracked path has at most one backup file in the scratch directory,
named after a stable hash of the canonical path. Backups are JSON objects::

    {"original_path": "...", "snapshot_at": 1700000000.0,
     "content_hash": "...", "content": "..."}

Recovery only reports backups; restoring one always goes through an explicit
user decision.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .file_state.fs import content_hash, write_text_atomic


@dataclass(frozen=True)
class EmergencyBackup:
    original_path: Path
    snapshot_content: str
    snapshot_at: float
    content_hash: str
    backup_path: Path


def backup_key(path: Path) -> str:
    digest = hashlib.blake2b(digest_size=16)
    digest.update(str(path).encode("utf-8", errors="surrogateescape"))
    return digest.hexdigest()


class CrashRecoveryManager:
    def __init__(
        self,
        backup_dir: Path,
        *,
        snapshot_interval: float = 900.0,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backup_dir = backup_dir
        self._snapshot_interval = snapshot_interval
        self._clock = clock
        self._monotonic = monotonic
        self._last_snapshot_at: dict[Path, float] = {}
        self._last_hash: dict[Path, str] = {}

    def backup_path_for(self, path: Path) -> Path:
        return self.backup_dir / f"{backup_key(path)}.json"

    def due(self, path: Path, now: float | None = None) -> bool:
        """Whether the periodic snapshot interval for ``path`` has elapsed."""
        now = self._monotonic() if now is None else now
        last = self._last_snapshot_at.get(path)
        return last is None or (now - last) >= self._snapshot_interval

    def snapshot(self, path: Path, content: str, now: float | None = None) -> EmergencyBackup | None:
        """Write a backup of ``content``; unchanged content is not rewritten.

        Returns ``None`` when skipped or when the write failed; a failed
        snapshot is logged rather than raised so it never interrupts editing.
        """
        self._last_snapshot_at[path] = self._monotonic() if now is None else now
        digest = content_hash(content)
        if self._last_hash.get(path) == digest:
            return None

        backup_path = self.backup_path_for(path)
        snapshot_at = self._clock()
        payload = {
            "original_path": str(path),
            "snapshot_at": snapshot_at,
            "content_hash": digest,
            "content": content,
        }
        try:
            write_text_atomic(backup_path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            logger.warning("emergency backup of {} failed: {}", path, exc)
            return None
        self._last_hash[path] = digest
        logger.debug("emergency backup of {} written to {}", path, backup_path)
        return EmergencyBackup(
            original_path=path,
            snapshot_content=content,
            snapshot_at=snapshot_at,
            content_hash=digest,
            backup_path=backup_path,
        )

    def _load(self, backup_path: Path) -> EmergencyBackup | None:
        try:
            data = json.loads(backup_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("skipping unreadable emergency backup {}: {}", backup_path, exc)
            return None
        if not isinstance(data, dict):
            return None
        original = data.get("original_path")
        content = data.get("content")
        snapshot_at = data.get("snapshot_at")
        if not isinstance(original, str) or not original or not isinstance(content, str):
            return None
        if isinstance(snapshot_at, bool) or not isinstance(snapshot_at, (int, float)):
            return None
        digest = data.get("content_hash")
        if not isinstance(digest, str) or not digest:
            digest = content_hash(content)
        return EmergencyBackup(
            original_path=Path(original),
            snapshot_content=content,
            snapshot_at=float(snapshot_at),
            content_hash=digest,
            backup_path=backup_path,
        )

    def recover(self) -> list[EmergencyBackup]:
        """Backups newer than their saved file, oldest first.

        A backup whose content already matches the file on disk is stale and
        gets deleted.
        """
        try:
            candidates = sorted(self.backup_dir.glob("*.json"))
        except OSError as exc:
            logger.warning("cannot scan emergency backups in {}: {}", self.backup_dir, exc)
            return []

        out: list[EmergencyBackup] = []
        for backup_path in candidates:
            backup = self._load(backup_path)
            if backup is None:
                continue
            try:
                st = backup.original_path.stat()
            except OSError:
                # Gone or unreadable; the backup may be the only copy left.
                out.append(backup)
                continue
            if backup.snapshot_at <= st.st_mtime:
                continue
            try:
                on_disk = backup.original_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                on_disk = None
            if on_disk is not None and content_hash(on_disk) == backup.content_hash:
                self.discard(backup.original_path)
                continue
            out.append(backup)
        out.sort(key=lambda backup: backup.snapshot_at)
        if out:
            logger.info("found {} emergency backup(s) to offer", len(out))
        return out

    def discard(self, path: Path) -> None:
        """Delete the backup for ``path`` once the user decided. Idempotent."""
        self._last_hash.pop(path, None)
        self._last_snapshot_at.pop(path, None)
        try:
            self.backup_path_for(path).unlink()
        except FileNotFoundError:
            pass

    def has_backup(self, path: Path) -> bool:
        return self.backup_path_for(path).exists()


__all__ = ["CrashRecoveryManager", "EmergencyBackup", "backup_key"]
