"""
Storage API - единый интерфейс к хранилищу для сервисов authcore.

UserService, SessionStore и KeyManager работают ТОЛЬКО через этот API.
Никакого прямого доступа к БД.
"""

from typing import Any, Optional

from adapters.storage_adapter import StorageAdapter


def _check_namespace(namespace: Any) -> None:
    if not isinstance(namespace, str) or not namespace:
        raise ValueError(
            f"namespace must be non-empty string, got {type(namespace).__name__}: {namespace!r}"
        )


def _check_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError(
            f"key must be non-empty string, got {type(key).__name__}: {key!r}"
        )


class Storage:
    """
    Простой интерфейс: namespace + key + JSON value.
    Без моделей, без ORM, без схемы.
    """

    def __init__(self, adapter: StorageAdapter):
        self._adapter = adapter

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """
        Получить значение.

        Returns:
            Значение или None если не найдено

        Raises:
            ValueError: если namespace или key пустые или не строки

        Пример:
            session = await storage.get("auth_sessions", session_id)
        """
        _check_namespace(namespace)
        _check_key(key)
        return await self._adapter.get(namespace, key)

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        """
        Сохранить значение.

        Raises:
            TypeError: если value не является dict
            ValueError: если namespace или key пустые или не строки
        """
        if not isinstance(value, dict):
            raise TypeError(f"value must be dict, got {type(value).__name__}: {value}")
        _check_namespace(namespace)
        _check_key(key)
        await self._adapter.set(namespace, key, value)

    async def set_if_absent(self, namespace: str, key: str, value: dict[str, Any]) -> bool:
        """
        Атомарно создать запись, если ключа ещё нет.

        Returns:
            True если запись создана этим вызовом
        """
        if not isinstance(value, dict):
            raise TypeError(f"value must be dict, got {type(value).__name__}: {value}")
        _check_namespace(namespace)
        _check_key(key)
        return await self._adapter.set_if_absent(namespace, key, value)

    async def delete(self, namespace: str, key: str) -> bool:
        """Удалить значение. True если запись существовала."""
        _check_namespace(namespace)
        _check_key(key)
        return await self._adapter.delete(namespace, key)

    async def list_keys(self, namespace: str) -> list[str]:
        _check_namespace(namespace)
        return await self._adapter.list_keys(namespace)

    async def clear_namespace(self, namespace: str) -> None:
        """Очистить все записи в namespace."""
        _check_namespace(namespace)
        await self._adapter.clear_namespace(namespace)

    async def close(self) -> None:
        """Закрыть соединение."""
        await self._adapter.close()

