"""
Абстрактный интерфейс для storage адаптеров authcore.

Хранилище работает по принципу namespace + key + JSON value.
Пользователи, сессии, ключи подписи и использованные nonce лежат
в отдельных namespace; схема на уровне адаптера не навязывается.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class StorageAdapter(ABC):
    """Абстрактный адаптер для хранения данных."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """
        Получить значение по ключу из namespace.

        Args:
            namespace: пространство имён (например, "auth_sessions")
            key: ключ записи

        Returns:
            JSON-данные или None, если не найдено
        """

    @abstractmethod
    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        """Сохранить (перезаписать) значение по ключу в namespace."""

    @abstractmethod
    async def set_if_absent(self, namespace: str, key: str, value: dict[str, Any]) -> bool:
        """
        Атомарно сохранить значение, только если ключа ещё нет.

        Используется для одноразовых nonce: из двух конкурентных вызовов
        с одним ключом ровно один получает True.

        Returns:
            True если запись создана, False если ключ уже существовал
        """

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> bool:
        """
        Удалить значение по ключу из namespace.

        Returns:
            True если запись была удалена, False если не существовала
        """

    @abstractmethod
    async def list_keys(self, namespace: str) -> list[str]:
        """Получить список всех ключей в namespace."""

    @abstractmethod
    async def clear_namespace(self, namespace: str) -> None:
        """Очистить все записи в namespace."""

    @abstractmethod
    async def close(self) -> None:
        """Закрыть соединение с хранилищем."""

