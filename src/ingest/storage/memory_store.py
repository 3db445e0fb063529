"""
In-memory object store for tests and ephemeral runs.
"""

import threading
from typing import Dict, List

from ..core.exceptions import NotFoundError, ObjectExistsError
from ..core.object_store import ObjectStore
from ..core.utils import compute_bytes_checksum


class InMemoryObjectStore(ObjectStore):
    """Dictionary-backed object store with the same create-only semantics as the lake."""

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.get_calls = 0
        self.get_log: List[str] = []

    def put(self, key: str, data: bytes, overwrite: bool = False) -> str:
        with self._lock:
            if not overwrite and key in self._objects:
                raise ObjectExistsError(f"Object already exists: {key}")
            self._objects[key] = bytes(data)
        return compute_bytes_checksum(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            self.get_calls += 1
            self.get_log.append(key)
            try:
                return self._objects[key]
            except KeyError:
                raise NotFoundError(f"Object not found: {key}") from None

    def list(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def get_name(self) -> str:
        return "memory"
