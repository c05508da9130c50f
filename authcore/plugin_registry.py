"""
PluginRegistry - реестр auth плагинов, их провайдеров и hook'ов.

ПРАВИЛА:
- Имена плагинов уникальны; повторная регистрация отклоняется
- Регистрация "всё или ничего": при любой ошибке существующие
  регистрации не меняются
- Имя провайдера принадлежит ровно одному плагину; коллизия -
  ошибка конфигурации при регистрации
- hooks(event) возвращает callback'и в порядке регистрации плагинов
- cleanup() вызывает teardown всех плагинов, не останавливаясь на
  первой ошибке, и агрегирует ошибки

Реестр - разделяемое состояние процесса: писатели сериализуются через
asyncio.Lock, читатели видят согласованный снимок (словари подменяются
целиком после построения).
"""

import asyncio
import importlib
import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .base_plugin import BasePlugin, HookCallback
from .errors import (
    AuthError,
    ConfigurationError,
    DuplicatePluginError,
    PluginCleanupError,
    ProviderConflictError,
    ProviderNotFound,
)
from .logger_helper import error, info, warning
from .providers import AuthProvider, ProviderKind

if TYPE_CHECKING:
    from .engine import AuthEngine


class PluginState(Enum):
    """Состояния плагина."""
    LOADED = "loaded"
    CLEANED_UP = "cleaned_up"


class PluginRegistry:
    """
    Реестр плагинов.

    Args:
        engine: AuthEngine, передаётся плагинам в on_load (может быть None в тестах)
        logger: AuthLogger или None
    """

    def __init__(self, engine: Optional["AuthEngine"] = None, logger: Optional[Any] = None):
        self._engine = engine
        self._logger = logger
        self._lock = asyncio.Lock()
        # plugin_name -> plugin (в порядке регистрации)
        self._plugins: dict[str, BasePlugin] = {}
        self._states: dict[str, PluginState] = {}
        # provider_name -> (plugin_name, provider)
        self._providers: dict[str, tuple[str, AuthProvider]] = {}
        # event -> [(plugin_name, hook)]
        self._hooks: dict[str, list[tuple[str, HookCallback]]] = {}

    async def register(self, plugin: BasePlugin) -> None:
        """
        Зарегистрировать плагин.

        Raises:
            DuplicatePluginError: плагин с таким именем уже зарегистрирован
            ProviderConflictError: имя провайдера уже занято другим плагином
            ConfigurationError: отсутствует зависимость, невалидный провайдер/hook,
                ошибка on_load
        """
        if not isinstance(plugin, BasePlugin):
            raise ConfigurationError(f"Plugin must subclass BasePlugin, got {type(plugin).__name__}")

        async with self._lock:
            metadata = plugin.metadata
            plugin_name = metadata.name
            if not plugin_name:
                raise ConfigurationError("Plugin name must be non-empty")
            if plugin_name in self._plugins:
                raise DuplicatePluginError(f"Plugin '{plugin_name}' is already registered")

            for dep_name in metadata.dependencies or []:
                if dep_name not in self._plugins:
                    raise ConfigurationError(
                        f"Plugin '{plugin_name}' requires plugin '{dep_name}', which is not registered"
                    )

            try:
                await plugin.on_load(self._engine)
            except AuthError:
                raise
            except Exception as e:
                raise ConfigurationError(f"Plugin '{plugin_name}' failed to load: {e}") from e

            try:
                providers = self._collect_providers(plugin_name, plugin)
                hooks = self._collect_hooks(plugin_name, plugin)
            except ConfigurationError:
                await self._cleanup_quietly(plugin_name, plugin)
                raise

            new_providers = dict(self._providers)
            for provider in providers:
                new_providers[provider.provider_name] = (plugin_name, provider)
            new_hooks = {event: list(entries) for event, entries in self._hooks.items()}
            for event, callbacks in hooks.items():
                new_hooks.setdefault(event, []).extend((plugin_name, cb) for cb in callbacks)
            new_plugins = dict(self._plugins)
            new_plugins[plugin_name] = plugin

            self._providers = new_providers
            self._hooks = new_hooks
            self._plugins = new_plugins
            self._states[plugin_name] = PluginState.LOADED

        await info(
            self._logger,
            f"Plugin '{plugin_name}' registered",
            component="plugin_registry",
            version=metadata.version,
            providers=",".join(p.provider_name for p in providers),
        )

    def _collect_providers(self, plugin_name: str, plugin: BasePlugin) -> list[AuthProvider]:
        providers = list(plugin.get_providers() or [])
        seen: set[str] = set()
        for provider in providers:
            if not isinstance(provider, AuthProvider):
                raise ConfigurationError(
                    f"Plugin '{plugin_name}' returned a non-provider object: {type(provider).__name__}"
                )
            name = provider.provider_name
            if name in seen:
                raise ProviderConflictError(f"Plugin '{plugin_name}' declares provider '{name}' twice")
            owner = self._providers.get(name)
            if owner is not None:
                raise ProviderConflictError(
                    f"Provider '{name}' from plugin '{plugin_name}' collides with plugin '{owner[0]}'"
                )
            seen.add(name)
        return providers

    def _collect_hooks(self, plugin_name: str, plugin: BasePlugin) -> dict[str, list[HookCallback]]:
        hooks = plugin.get_hooks() or {}
        if not isinstance(hooks, dict):
            raise ConfigurationError(f"Plugin '{plugin_name}' get_hooks() must return dict")
        result: dict[str, list[HookCallback]] = {}
        for event, callbacks in hooks.items():
            if callable(callbacks):
                callbacks = [callbacks]
            for cb in callbacks:
                if not callable(cb):
                    raise ConfigurationError(f"Plugin '{plugin_name}' hook for '{event}' is not callable")
            result[event] = list(callbacks)
        return result

    async def _cleanup_quietly(self, plugin_name: str, plugin: BasePlugin) -> None:
        try:
            await plugin.cleanup()
        except Exception as e:
            await error(
                self._logger,
                f"Cleanup of rejected plugin '{plugin_name}' failed: {e}",
                component="plugin_registry",
            )

    async def unregister(self, plugin_name: str) -> None:
        """
        Удалить плагин вместе с его провайдерами и hook'ами.

        Raises:
            ConfigurationError: плагин не найден или от него зависят другие
            PluginCleanupError: teardown плагина упал (плагин уже удалён)
        """
        async with self._lock:
            plugin = self._plugins.get(plugin_name)
            if plugin is None:
                raise ConfigurationError(f"Plugin '{plugin_name}' is not registered")
            dependents = [
                name for name, other in self._plugins.items()
                if plugin_name in (other.metadata.dependencies or [])
            ]
            if dependents:
                raise ConfigurationError(f"Plugin '{plugin_name}' is required by {dependents}")

            self._providers = {k: v for k, v in self._providers.items() if v[0] != plugin_name}
            self._hooks = {
                event: [entry for entry in entries if entry[0] != plugin_name]
                for event, entries in self._hooks.items()
            }
            self._plugins = {k: v for k, v in self._plugins.items() if k != plugin_name}
            self._states.pop(plugin_name, None)

        try:
            await plugin.cleanup()
        except Exception as e:
            raise PluginCleanupError([(plugin_name, e)]) from e

    def get_plugin(self, plugin_name: str) -> Optional[BasePlugin]:
        return self._plugins.get(plugin_name)

    def get_plugin_state(self, plugin_name: str) -> Optional[PluginState]:
        return self._states.get(plugin_name)

    def list_plugins(self) -> list[str]:
        """Имена плагинов в порядке регистрации."""
        return list(self._plugins.keys())

    def get_provider(self, provider_name: str) -> Optional[AuthProvider]:
        entry = self._providers.get(provider_name)
        return entry[1] if entry else None

    def require_provider(self, provider_name: str) -> AuthProvider:
        """
        Raises:
            ProviderNotFound: провайдер не зарегистрирован
        """
        provider = self.get_provider(provider_name)
        if provider is None:
            raise ProviderNotFound(provider_name)
        return provider

    def provider_owner(self, provider_name: str) -> Optional[str]:
        entry = self._providers.get(provider_name)
        return entry[0] if entry else None

    def all_providers(self) -> dict[str, AuthProvider]:
        """Объединённая карта провайдеров всех плагинов."""
        return {name: entry[1] for name, entry in self._providers.items()}

    def providers_of_kind(self, kind: ProviderKind) -> list[AuthProvider]:
        return [p for _, p in self._providers.values() if p.kind == kind]

    def hooks(self, event: str) -> list[HookCallback]:
        """Hook'и события в порядке регистрации плагинов."""
        return [cb for _, cb in self._hooks.get(event, [])]

    def hook_entries(self, event: str) -> list[tuple[str, HookCallback]]:
        """То же, что hooks(), но с именем плагина-владельца."""
        return list(self._hooks.get(event, []))

    async def cleanup(self) -> None:
        """
        Вызвать cleanup() всех плагинов (в обратном порядке регистрации).

        Raises:
            PluginCleanupError: если хотя бы один cleanup упал; остальные
                плагины при этом всё равно очищены
        """
        failures: list[tuple[str, BaseException]] = []
        for plugin_name, plugin in reversed(list(self._plugins.items())):
            try:
                await plugin.cleanup()
                self._states[plugin_name] = PluginState.CLEANED_UP
            except Exception as e:
                failures.append((plugin_name, e))
                await error(
                    self._logger,
                    f"Plugin '{plugin_name}' cleanup failed: {e}",
                    component="plugin_registry",
                    error_type=type(e).__name__,
                )
        if failures:
            raise PluginCleanupError(failures)

    # --- Загрузка из манифестов ---

    @staticmethod
    def _load_manifest(plugin_dir: Path) -> Optional[Dict[str, Any]]:
        """Прочитать plugin.json или manifest.json из директории плагина."""
        for manifest_file in ("plugin.json", "manifest.json"):
            manifest_path = plugin_dir / manifest_file
            if manifest_path.is_file():
                try:
                    with open(manifest_path, "r", encoding="utf-8") as f:
                        data = json.load(f)
                except (json.JSONDecodeError, OSError):
                    continue
                if isinstance(data, dict):
                    return data
        return None

    @staticmethod
    def topological_order(manifests: Dict[str, Dict[str, Any]]) -> List[str]:
        """
        Порядок загрузки по зависимостям (алгоритм Кана).

        Raises:
            ConfigurationError: циклическая зависимость
        """
        graph: Dict[str, List[str]] = {}
        for plugin_name, manifest in manifests.items():
            deps = manifest.get("dependencies", [])
            graph[plugin_name] = deps if isinstance(deps, list) else []

        in_degree: Dict[str, int] = {name: 0 for name in manifests}
        for plugin_name, deps in graph.items():
            for dep in deps:
                if dep in in_degree:
                    in_degree[plugin_name] += 1

        queue: List[str] = sorted(name for name, degree in in_degree.items() if degree == 0)
        result: List[str] = []
        while queue:
            plugin_name = queue.pop(0)
            result.append(plugin_name)
            for other_name, deps in graph.items():
                if plugin_name in deps:
                    in_degree[other_name] -= 1
                    if in_degree[other_name] == 0:
                        queue.append(other_name)

        remaining = sorted(name for name, degree in in_degree.items() if degree > 0)
        if remaining:
            raise ConfigurationError(f"Cyclic plugin dependencies: {remaining}")
        return result

    async def load_from_manifests(
        self,
        plugins_dir: Optional[Path] = None,
        options: Optional[Dict[str, Dict[str, Any]]] = None,
        strict: bool = True,
    ) -> List[str]:
        """
        Загрузить плагины из поддиректорий `plugins_dir` по манифестам.

        Манифест: {"name", "class_path", "dependencies", "options", "_disabled"}.
        Плагины без манифеста и с "_disabled": true пропускаются.

        Args:
            plugins_dir: каталог плагинов (по умолчанию plugins/ в корне проекта)
            options: дополнительные опции по имени плагина (перекрывают опции манифеста)
            strict: True - ошибка загрузки любого плагина фатальна,
                False - плагин пропускается с записью в лог

        Returns:
            Имена загруженных плагинов в порядке загрузки
        """
        if plugins_dir is None:
            plugins_dir = Path(__file__).resolve().parent.parent / "plugins"
        if not plugins_dir.is_dir():
            return []

        manifests: Dict[str, Dict[str, Any]] = {}
        for item in sorted(plugins_dir.iterdir()):
            if not item.is_dir():
                continue
            manifest = self._load_manifest(item)
            if not manifest or manifest.get("_disabled", False):
                continue
            plugin_name = manifest.get("name")
            if plugin_name:
                manifests[plugin_name] = manifest

        try:
            load_order = self.topological_order(manifests)
        except ConfigurationError as e:
            if strict:
                raise
            await warning(self._logger, str(e), component="plugin_registry")
            return []

        loaded: List[str] = []
        for plugin_name in load_order:
            manifest = manifests[plugin_name]
            missing = [dep for dep in manifest.get("dependencies", []) if dep not in self._plugins]
            try:
                if missing:
                    raise ConfigurationError(f"Plugin '{plugin_name}' is missing dependencies {missing}")
                plugin = self._instantiate(manifest, (options or {}).get(plugin_name, {}))
                await self.register(plugin)
                loaded.append(plugin_name)
            except ConfigurationError as e:
                if strict:
                    raise
                await warning(
                    self._logger,
                    f"Skipped plugin from manifest: {e.message}",
                    component="plugin_registry",
                )
        return loaded

    @staticmethod
    def _instantiate(manifest: Dict[str, Any], extra_options: Dict[str, Any]) -> BasePlugin:
        plugin_name = manifest.get("name", "unknown")
        class_path = manifest.get("class_path")
        if not class_path or "." not in class_path:
            raise ConfigurationError(f"Manifest of plugin '{plugin_name}' has no valid 'class_path'")

        module_path, class_name = class_path.rsplit(".", 1)
        try:
            module = importlib.import_module(module_path)
            plugin_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot import '{class_path}' for plugin '{plugin_name}': {e}") from e

        if not isinstance(plugin_class, type) or not issubclass(plugin_class, BasePlugin):
            raise ConfigurationError(f"'{class_path}' is not a BasePlugin subclass")

        plugin_options = dict(manifest.get("options") or {})
        plugin_options.update(extra_options)
        try:
            plugin = plugin_class(**plugin_options)
        except TypeError as e:
            raise ConfigurationError(f"Cannot construct plugin '{plugin_name}': {e}") from e

        if plugin.metadata.name != plugin_name:
            raise ConfigurationError(
                f"Manifest name '{plugin_name}' does not match plugin metadata name '{plugin.metadata.name}'"
            )
        return plugin
