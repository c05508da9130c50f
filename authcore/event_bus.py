"""
EventBus - pub/sub для внешних подписчиков на auth события.

Подписчики получают тот же payload, что и hook'и плагинов:
    handler(event_name, payload)

Ошибки обработчиков не пробрасываются, а возвращаются списком HookFailure.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Awaitable, Optional

from .errors import HookFailure
from .logger_helper import error

# Тип для обработчика событий
EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class EventBus:
    """
    Шина событий authcore.

    - движок публикует событие после фиксации состояния
    - внешний код подписывается на имена событий ("login.success", ...)
    - "*" подписывает обработчик на все события
    """

    WILDCARD = "*"

    def __init__(self, logger: Optional[Any] = None):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._logger = logger

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Подписаться на событие.

        Пример:
            async def on_login(event: str, payload: dict):
                print(payload["principal_id"])

            bus.subscribe("login.success", on_login)
        """
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

    async def publish(self, event_type: str, data: dict[str, Any]) -> list[HookFailure]:
        """
        Опубликовать событие.

        Обработчики запускаются параллельно.

        Returns:
            Список ошибок обработчиков (пустой, если все отработали)
        """
        handlers = list(self._handlers.get(event_type, []))
        if event_type != self.WILDCARD:
            handlers += self._handlers.get(self.WILDCARD, [])
        if not handlers:
            return []

        results = await asyncio.gather(
            *(handler(event_type, data) for handler in handlers),
            return_exceptions=True,
        )
        failures: list[HookFailure] = []
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                source = f"subscriber:{getattr(handler, '__qualname__', repr(handler))}"
                failures.append(HookFailure(event=event_type, source=source, error=result))
                await error(
                    self._logger,
                    f"Event subscriber failed: {result}",
                    component="event_bus",
                    event=event_type,
                    source=source,
                )
        return failures

    def get_subscribers_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    def clear(self) -> None:
        """Очистить все подписки."""
        self._handlers.clear()
