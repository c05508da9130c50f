"""
Базовый класс и интерфейс для auth плагинов.

Плагин — набор провайдеров и hook'ов, регистрируемый единицей.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .engine import AuthEngine
    from .providers import AuthProvider

# hook(event_name, payload)
HookCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class PluginMetadata:
    """Метаданные плагина."""

    name: str
    version: str
    description: str = ""
    author: str = ""
    dependencies: list[str] | None = field(default_factory=list)  # Имена плагинов-зависимостей


class BasePlugin(ABC):
    """
    Базовый класс для всех auth плагинов.

    Порядок вызовов:
    1. __init__() - конструктор (опции из манифеста передаются kwargs)
    2. on_load(engine) - при регистрации в PluginRegistry
    3. get_providers() / get_hooks() - сразу после on_load
    4. cleanup() - при остановке движка или выгрузке
    """

    def __init__(self, **options: Any) -> None:
        self.options = options
        self._engine: Optional["AuthEngine"] = None

    @property
    def engine(self) -> "AuthEngine":
        # Гарантирован PluginRegistry после on_load
        assert self._engine is not None
        return self._engine

    @property
    @abstractmethod
    def metadata(self) -> PluginMetadata:
        """Метаданные плагина."""

    def get_providers(self) -> list["AuthProvider"]:
        """Провайдеры, которые вносит плагин."""
        return []

    def get_hooks(self) -> dict[str, list[HookCallback]]:
        """Hook'и по именам событий ("login.success", ...)."""
        return {}

    async def on_load(self, engine: Optional["AuthEngine"]) -> None:
        """Вызывается при регистрации. Ошибка отменяет регистрацию."""
        self._engine = engine

    async def cleanup(self) -> None:
        """Освобождение ресурсов (HTTP-сессии, фоновые задачи)."""

    def get_env_config(self, key: str, default: Optional[str] = None, prefix: Optional[str] = None) -> Optional[str]:
        """
        Значение из опций плагина или переменных окружения.

        Порядок поиска:
        1. options[key.lower()]
        2. {prefix}_{key} (prefix по умолчанию - имя плагина в UPPER_CASE)
        3. {key}

        Пример:
            # options["client_id"], затем OAUTH_CLIENT_ID, затем CLIENT_ID
            client_id = self.get_env_config("CLIENT_ID")
        """
        option = self.options.get(key.lower())
        if option is not None:
            return str(option)

        if prefix is None:
            prefix = self.metadata.name.upper().replace("-", "_")

        for env_key in (f"{prefix}_{key}", key):
            value = os.getenv(env_key)
            if value is not None:
                return value
        return default

    def get_env_config_bool(self, key: str, default: bool = False, prefix: Optional[str] = None) -> bool:
        value = self.get_env_config(key, default=None, prefix=prefix)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    def get_env_config_int(self, key: str, default: Optional[int] = None, prefix: Optional[str] = None) -> Optional[int]:
        value = self.get_env_config(key, default=None, prefix=prefix)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default
