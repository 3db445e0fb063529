"""
Object store interface for immutable pipeline artifacts.
"""

from abc import ABC, abstractmethod
from typing import List


class ObjectStore(ABC):
    """
    Abstract base class for object stores.

    Objects are written once and never modified. Keys follow the partition
    convention ``stage/YYYY/MM/DD/shard-NNNNN``.
    """

    @abstractmethod
    def put(self, key: str, data: bytes, overwrite: bool = False) -> str:
        """
        Store an object atomically.

        Args:
            key: Object key
            data: Object bytes
            overwrite: Whether an existing object may be replaced

        Returns:
            ETag (SHA256 of the bytes)

        Raises:
            ObjectExistsError: If the key exists and overwrite is False
            TransientIOError: On storage failure (nothing becomes visible)
        """
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """
        Fetch an object.

        Raises:
            NotFoundError: If the key does not exist
            TransientIOError: On storage failure
        """
        pass

    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """
        List committed keys under a prefix.

        Returns:
            Keys in ascending lexical order
        """
        pass

    def exists(self, key: str) -> bool:
        """Return True if the key is committed."""
        return key in self.list(key)

    def get_name(self) -> str:
        """Return the object store name/identifier."""
        return self.__class__.__name__

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
