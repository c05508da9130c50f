"""
In-memory адаптер для Storage API.

Для тестов и для процессов без персистентности. Данные живут до close().
"""

import copy
from typing import Any, Optional

from .storage_adapter import StorageAdapter


class MemoryAdapter(StorageAdapter):
    """Хранилище namespace -> key -> dict в памяти процесса.

    Значения копируются на входе и выходе, чтобы вызывающий код не мог
    изменить сохранённое состояние по ссылке.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.closed = False

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        value = self._data.get(namespace, {}).get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        self._data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    async def set_if_absent(self, namespace: str, key: str, value: dict[str, Any]) -> bool:
        # Без await между проверкой и записью: в рамках event loop это атомарно
        ns = self._data.setdefault(namespace, {})
        if key in ns:
            return False
        ns[key] = copy.deepcopy(value)
        return True

    async def delete(self, namespace: str, key: str) -> bool:
        ns = self._data.get(namespace, {})
        if key in ns:
            del ns[key]
            return True
        return False

    async def list_keys(self, namespace: str) -> list[str]:
        return list(self._data.get(namespace, {}).keys())

    async def clear_namespace(self, namespace: str) -> None:
        self._data.pop(namespace, None)

    async def close(self) -> None:
        self._data.clear()
        self.closed = True
