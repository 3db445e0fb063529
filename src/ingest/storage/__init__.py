"""
Storage implementations for persisting pipeline records.
"""

from .file_lake import FileObjectStore
from .memory_store import InMemoryObjectStore
from .record_store import CanonicalRecordStore, WrittenObject

__all__ = ["FileObjectStore", "InMemoryObjectStore", "CanonicalRecordStore", "WrittenObject"]
