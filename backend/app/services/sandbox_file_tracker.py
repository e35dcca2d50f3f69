from __future__ import annotations

import threading
from typing import Iterable


def normalize_tracked_path(path: str) -> str:
    cleaned = str(path or "").strip().replace("\\", "/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned.lstrip("/")


class FileStateTracker:
    """Advisory record of paths believed to exist in the current sandbox.

    It is a hint, never a source of truth: the sandbox filesystem wins.
    """

    def __init__(self, paths: Iterable[str] | None = None):
        self._lock = threading.Lock()
        self._paths: set[str] = set()
        for path in paths or ():
            self.add(path)

    def add(self, path: str) -> None:
        normalized = normalize_tracked_path(path)
        if not normalized:
            return
        with self._lock:
            self._paths.add(normalized)

    def contains(self, path: str) -> bool:
        with self._lock:
            return normalize_tracked_path(path) in self._paths

    def clear(self) -> None:
        with self._lock:
            self._paths.clear()

    def snapshot(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._paths))

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.contains(path)
