"""Exponential, capped retry delays keyed by path."""

from __future__ import annotations

from pathlib import Path


class RetryBackoff:
    def __init__(self, base: float, cap: float) -> None:
        self._base = max(0.0, base)
        self._cap = max(self._base, cap)
        self._attempts: dict[Path, int] = {}

    def next_delay(self, path: Path) -> float:
        """Delay before the next automatic retry; each call doubles it."""
        attempt = self._attempts.get(path, 0)
        self._attempts[path] = attempt + 1
        return min(self._cap, self._base * (2 ** attempt))

    def attempts(self, path: Path) -> int:
        return self._attempts.get(path, 0)

    def reset(self, path: Path) -> None:
        self._attempts.pop(path, None)


__all__ = ["RetryBackoff"]
