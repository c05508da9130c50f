"""
Адаптеры хранилища для authcore.
"""

from .storage_adapter import StorageAdapter
from .memory_adapter import MemoryAdapter
from .sqlite_adapter import SQLiteAdapter

__all__ = [
    "StorageAdapter",
    "MemoryAdapter",
    "SQLiteAdapter",
]
