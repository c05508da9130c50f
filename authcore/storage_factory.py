"""
Фабрика Storage по конфигурации.
"""

from adapters.memory_adapter import MemoryAdapter
from adapters.sqlite_adapter import SQLiteAdapter

from .config import AuthConfig
from .storage import Storage


async def create_storage(config: AuthConfig) -> Storage:
    """
    Создать Storage согласно config.storage_type.

    Для SQLite схема инициализируется здесь же.

    Raises:
        ValueError: неизвестный storage_type
    """
    if config.storage_type == "memory":
        return Storage(MemoryAdapter())
    if config.storage_type == "sqlite":
        adapter = SQLiteAdapter(config.db_path)
        await adapter.initialize_schema()
        return Storage(adapter)
    raise ValueError(f"Unsupported storage_type: {config.storage_type!r}")
