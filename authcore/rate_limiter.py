"""
RateLimiter — fixed-window throttling по (policy_key, identifier).

Состояние принадлежит экземпляру: тесты и движок создают свой RateLimiter
и управляют фоновой очисткой через start()/stop().

Атомарность: consume() не содержит точек приостановки между чтением и
записью записи, поэтому в рамках event loop один вызов никогда не
наблюдает промежуточное состояние другого. Фоновая очистка не берёт
общих блокировок с consume().
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .errors import ConfigurationError
from .logger_helper import debug, error


@dataclass(frozen=True)
class RateLimitPolicy:
    """Политика: `points` попыток за `window_seconds`, блок на `block_seconds`."""

    points: int
    window_seconds: int
    block_seconds: Optional[int] = None

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: если значения не целые положительные
        """
        for name in ("points", "window_seconds"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be positive integer, got: {value!r}")
        if self.block_seconds is not None:
            value = self.block_seconds
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"block_seconds must be positive integer, got: {value!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitPolicy":
        """Принимает snake_case и camelCase ключи (windowSeconds, blockSeconds)."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"rate limit policy must be dict, got {type(data).__name__}")
        try:
            policy = cls(
                points=data["points"],
                window_seconds=data.get("window_seconds", data.get("windowSeconds")),
                block_seconds=data.get("block_seconds", data.get("blockSeconds")),
            )
        except KeyError as e:
            raise ConfigurationError(f"rate limit policy is missing {e.args[0]!r}") from e
        policy.validate()
        return policy


@dataclass
class RateLimitEntry:
    remaining: int
    reset_at: float
    blocked: bool = False


@dataclass(frozen=True)
class RateLimitResult:
    remaining: int
    reset_at: float
    blocked: bool

    @property
    def allowed(self) -> bool:
        return not self.blocked


class RateLimiter:
    """
    Ограничитель частоты запросов.

    Args:
        cleanup_interval: период фоновой очистки (секунды)
        clock: источник времени (unix seconds), по умолчанию time.time
        logger: AuthLogger или None

    Пример:
        limiter = RateLimiter()
        limiter.configure("login", {"points": 5, "window_seconds": 900})
        result = await limiter.consume("login", "password:1.2.3.4")
        if result.blocked:
            ...
    """

    def __init__(
        self,
        cleanup_interval: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[Any] = None,
    ):
        if cleanup_interval <= 0:
            raise ConfigurationError("cleanup_interval must be positive")
        self._cleanup_interval = cleanup_interval
        self._clock = clock or time.time
        self._logger = logger
        self._policies: dict[str, RateLimitPolicy] = {}
        # policy_key -> identifier -> entry
        self._entries: dict[str, dict[str, RateLimitEntry]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def configure(self, policy_key: str, policy: Union[RateLimitPolicy, dict[str, Any]]) -> None:
        """
        Установить или заменить политику.

        Raises:
            ConfigurationError: невалидная политика или пустой ключ
        """
        if not isinstance(policy_key, str) or not policy_key:
            raise ConfigurationError("policy_key must be non-empty string")
        if isinstance(policy, dict):
            policy = RateLimitPolicy.from_dict(policy)
        else:
            policy.validate()
        self._policies[policy_key] = policy

    def is_configured(self, policy_key: str) -> bool:
        return policy_key in self._policies

    def get_policy(self, policy_key: str) -> Optional[RateLimitPolicy]:
        return self._policies.get(policy_key)

    async def consume(self, policy_key: str, identifier: str) -> RateLimitResult:
        """
        Списать одну попытку.

        Returns:
            RateLimitResult; blocked=True означает отказ

        Raises:
            ConfigurationError: политика не сконфигурирована (это не отказ по лимиту)
        """
        policy = self._policies.get(policy_key)
        if policy is None:
            raise ConfigurationError(f"Rate limit policy {policy_key!r} is not configured")

        now = self._clock()
        bucket = self._entries.setdefault(policy_key, {})
        entry = bucket.get(identifier)

        if entry is None:
            entry = RateLimitEntry(remaining=policy.points, reset_at=now + policy.window_seconds)
            bucket[identifier] = entry

        if entry.blocked and now < entry.reset_at:
            return RateLimitResult(entry.remaining, entry.reset_at, True)

        if now >= entry.reset_at:
            entry.remaining = policy.points
            entry.reset_at = now + policy.window_seconds
            entry.blocked = False

        if entry.remaining <= 0:
            entry.blocked = True
            entry.reset_at = now + (policy.block_seconds or policy.window_seconds)
            return RateLimitResult(0, entry.reset_at, True)

        entry.remaining -= 1
        return RateLimitResult(entry.remaining, entry.reset_at, False)

    def peek(self, policy_key: str, identifier: str) -> Optional[RateLimitResult]:
        """Текущее состояние без списания."""
        entry = self._entries.get(policy_key, {}).get(identifier)
        if entry is None:
            return None
        return RateLimitResult(entry.remaining, entry.reset_at, entry.blocked)

    def reset(self, policy_key: str, identifier: Optional[str] = None) -> None:
        """Сбросить счётчик идентификатора (или всей политики)."""
        if identifier is None:
            self._entries.pop(policy_key, None)
        else:
            self._entries.get(policy_key, {}).pop(identifier, None)

    def entry_count(self) -> int:
        return sum(len(bucket) for bucket in self._entries.values())

    def sweep(self) -> int:
        """
        Удалить записи с истёкшим окном.

        Блок, чей reset_at уже прошёл, блоком не считается.

        Returns:
            Количество удалённых записей
        """
        now = self._clock()
        removed = 0
        for policy_key in list(self._entries.keys()):
            bucket = self._entries.get(policy_key)
            if bucket is None:
                continue
            for identifier, entry in list(bucket.items()):
                if now >= entry.reset_at:
                    del bucket[identifier]
                    removed += 1
            if not bucket:
                del self._entries[policy_key]
        return removed

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Запустить фоновую очистку. Повторный вызов ничего не делает."""
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limiter-sweep")

    async def stop(self) -> None:
        """Остановить фоновую очистку и дождаться завершения задачи."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            try:
                removed = self.sweep()
            except Exception as e:
                await error(self._logger, f"Rate limiter sweep failed: {e}", component="rate_limiter")
                continue
            if removed:
                await debug(
                    self._logger,
                    "Rate limiter sweep",
                    component="rate_limiter",
                    removed=removed,
                    active=self.entry_count(),
                )
