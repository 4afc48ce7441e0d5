"""Filesystem access for tracked files: hashing, probing, atomic writes.

Nothing in here raises for ordinary filesystem failures during probing;
errors are folded into ``DiskProbe.status`` so the classifier can decide
what they mean.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path

from ..errors import ErrorClass, classify_os_error
from .types import DiskProbe, FileRecord, ProbeStatus

ENCODINGS = ("utf-8", "utf-8-sig", "latin-1")


def canonical_path(path: Path | str) -> Path:
    """Absolute, symlink-resolved form used as the identity key everywhere."""
    return Path(os.path.abspath(Path(path).expanduser())).resolve()


def content_hash(content: str) -> str:
    """Stable digest of text content."""
    digest = hashlib.blake2b(digest_size=20)
    digest.update(content.encode("utf-8", errors="surrogateescape"))
    return digest.hexdigest()


def decode_bytes(raw: bytes) -> str:
    for encoding in ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def read_text(path: Path) -> str:
    """Read ``path`` trying the usual encodings; OS errors propagate."""
    return decode_bytes(path.read_bytes())


def path_signature(path: Path) -> tuple[str, int, int, int]:
    """Return a stable stat tuple describing ``path`` existence and metadata."""
    try:
        st = path.stat()
    except FileNotFoundError:
        return ("missing", 0, 0, 0)
    except OSError:
        return ("error", 0, 0, 0)
    return ("ok", st.st_mtime_ns, st.st_size, st.st_ino)


def _failed_probe(path: Path, exc: OSError) -> DiskProbe:
    error_class = classify_os_error(exc)
    if error_class is ErrorClass.MISSING:
        return DiskProbe(path=path, status=ProbeStatus.MISSING)
    if error_class is ErrorClass.PERMISSION:
        return DiskProbe(path=path, status=ProbeStatus.PERMISSION, error=str(exc))
    return DiskProbe(path=path, status=ProbeStatus.ERROR, error=str(exc))


def probe_disk(path: Path, known: FileRecord | None = None) -> DiskProbe:
    """Stat and, when needed, read and hash ``path``.

    When ``known`` carries the same mtime and size as the disk, the file is
    assumed unchanged and its stored hash is reused without reading.
    """
    try:
        st = path.stat()
    except OSError as exc:
        return _failed_probe(path, exc)

    identity = (int(st.st_dev), int(st.st_ino))
    modified_at = int(st.st_mtime_ns)
    size = int(st.st_size)
    if (
        known is not None
        and known.content_hash is not None
        and known.modified_at == modified_at
        and known.size == size
    ):
        return DiskProbe(
            path=path,
            status=ProbeStatus.OK,
            content_hash=known.content_hash,
            modified_at=modified_at,
            size=size,
            identity=identity,
        )

    try:
        content = read_text(path)
    except OSError as exc:
        return _failed_probe(path, exc)
    return DiskProbe(
        path=path,
        status=ProbeStatus.OK,
        content_hash=content_hash(content),
        modified_at=modified_at,
        size=size,
        identity=identity,
        content=content,
    )


def write_text_atomic(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and rename it into place.

    OS errors propagate; a half-written temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


__all__ = [
    "canonical_path",
    "content_hash",
    "decode_bytes",
    "path_signature",
    "probe_disk",
    "read_text",
    "write_text_atomic",
]
