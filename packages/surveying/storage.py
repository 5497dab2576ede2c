"""Blob storage for raw uploads, converted files, viewer copies and plans.

Paths are forward-slash keys such as ``scans/<id>/raw.e57``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from packages.core.errors import DownloadFailure, UploadFailure

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def get(self, path: str) -> bytes: ...

    def put(self, path: str, data: bytes) -> None: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...


class InMemoryObjectStore:
    """Dict-backed store for tests and single-process runs."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[path]
            except KeyError:
                raise DownloadFailure(f"no object at {path!r}") from None

    def put(self, path: str, data: bytes) -> None:
        with self._lock:
            self._blobs[path] = bytes(data)

    def delete(self, path: str) -> None:
        with self._lock:
            self._blobs.pop(path, None)

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._blobs


class LocalObjectStore:
    """Objects as files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"object path {path!r} escapes the storage root")
        return target

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except (OSError, ValueError) as e:
            raise DownloadFailure(f"cannot read {path!r}: {e}") from e

    def put(self, path: str, data: bytes) -> None:
        try:
            target = self._resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(target)
        except (OSError, ValueError) as e:
            raise UploadFailure(f"cannot write {path!r}: {e}") from e
        logger.debug("Stored %d bytes at %s", len(data), path)

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()
