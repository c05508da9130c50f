"""
Конфигурация authcore.

Dataclass с дефолтами, validate() и сборкой из переменных окружения AUTH_*.
Невалидная конфигурация фатальна на старте.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from .duration import duration_seconds, Duration
from .errors import ValidationError


def default_rate_limits() -> dict[str, dict[str, int]]:
    return {
        "login": {"points": 5, "window_seconds": 15 * 60},
        "register": {"points": 5, "window_seconds": 60 * 60},
        "verify": {"points": 10, "window_seconds": 10 * 60},
        "mfa": {"points": 3, "window_seconds": 5 * 60},
        "provider_lookup": {"points": 20, "window_seconds": 60},
    }


@dataclass
class AuthConfig:
    """Конфигурация движка аутентификации."""

    # "development" | "production"
    env: str = "development"

    # Тип хранилища: "memory" или "sqlite"
    storage_type: str = "memory"
    db_path: str = "data/auth.db"

    # Подпись токенов: "ES256" | "RS256"
    signing_algorithm: str = "ES256"

    # Времена жизни токенов (выражения длительности)
    access_token_ttl: Duration = "15m"
    refresh_token_ttl: Duration = "7d"
    verification_token_ttl: Duration = "1d"
    password_reset_token_ttl: Duration = "1h"
    magic_link_ttl: Duration = "15m"
    mfa_challenge_ttl: Duration = "5m"

    # Ротация ключей. Grace period должен перекрывать самый длинный TTL
    key_rotation_interval: Duration = "90d"
    key_grace_period: Duration = "8d"

    # Rate limiting: policy_key -> {points, window_seconds, block_seconds?}
    rate_limits: dict[str, dict[str, int]] = field(default_factory=default_rate_limits)
    # Отключить rate limiting для разработки (НЕ использовать в production!)
    rate_limiting_enabled: bool = True
    rate_limit_cleanup_interval: float = 60.0

    # Тайм-аут вызова провайдера (секунды)
    provider_timeout: float = 10.0

    # Refresh: окно, в котором устаревший токен прошлого поколения
    # считается проигравшим гонку, а не replay
    refresh_race_window: float = 2.0
    revoke_on_refresh_replay: bool = True

    email_verification_required: bool = False

    # Кэш проверенных access-токенов
    verification_cache_ttl: float = 30.0
    verification_cache_size: int = 1024

    # Logging: "text" | "json"
    log_format: str = "text"
    log_level: Optional[str] = None

    def token_ttls(self) -> dict[str, int]:
        """TTL всех видов токенов в секундах."""
        return {
            "access": duration_seconds(self.access_token_ttl),
            "refresh": duration_seconds(self.refresh_token_ttl),
            "verification": duration_seconds(self.verification_token_ttl),
            "password_reset": duration_seconds(self.password_reset_token_ttl),
            "magic_link": duration_seconds(self.magic_link_ttl),
            "mfa_challenge": duration_seconds(self.mfa_challenge_ttl),
        }

    def validate(self) -> None:
        """
        Валидировать конфигурацию.

        Raises:
            ValueError: если конфигурация невалидна
        """
        if self.env not in ("development", "production"):
            raise ValueError(f"env must be 'development' or 'production', got: {self.env!r}")

        if self.storage_type not in ("memory", "sqlite"):
            raise ValueError(
                f"storage_type must be 'memory' or 'sqlite', got: {self.storage_type!r}"
            )
        if self.storage_type == "sqlite" and (not isinstance(self.db_path, str) or not self.db_path):
            raise ValueError("db_path must be non-empty string for SQLite storage")

        if self.signing_algorithm not in ("ES256", "RS256"):
            raise ValueError(
                f"signing_algorithm must be 'ES256' or 'RS256', got: {self.signing_algorithm!r}"
            )

        try:
            ttls = self.token_ttls()
            rotation = duration_seconds(self.key_rotation_interval)
            grace = duration_seconds(self.key_grace_period)
        except ValidationError as e:
            raise ValueError(f"invalid duration in config: {e.message}") from e

        for kind, seconds in ttls.items():
            if seconds <= 0:
                raise ValueError(f"{kind} token ttl must be positive, got: {seconds}s")
        if rotation <= 0:
            raise ValueError("key_rotation_interval must be positive")
        longest = max(ttls.values())
        if grace < longest:
            raise ValueError(
                f"key_grace_period ({grace}s) must be >= the longest token ttl ({longest}s)"
            )

        if not isinstance(self.rate_limits, dict):
            raise ValueError("rate_limits must be dict[str, dict]")
        for policy_key, policy in self.rate_limits.items():
            if not isinstance(policy_key, str) or not policy_key:
                raise ValueError("rate limit policy key must be non-empty string")
            if not isinstance(policy, dict):
                raise ValueError(f"rate limit policy {policy_key!r} must be dict")

        if self.rate_limit_cleanup_interval <= 0:
            raise ValueError("rate_limit_cleanup_interval must be positive")
        if self.provider_timeout <= 0:
            raise ValueError(f"provider_timeout must be positive, got: {self.provider_timeout}")
        if self.refresh_race_window < 0:
            raise ValueError("refresh_race_window must be >= 0")
        if self.verification_cache_ttl < 0:
            raise ValueError("verification_cache_ttl must be >= 0")
        if not isinstance(self.verification_cache_size, int) or self.verification_cache_size < 0:
            raise ValueError("verification_cache_size must be non-negative integer")

        if self.log_format not in ("text", "json"):
            raise ValueError("log_format must be 'text' or 'json'")

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """
        Создать конфигурацию из переменных окружения.

        AUTH_RATE_LIMITS принимает JSON: {"login": {"points": 5, "window_seconds": 900}}.
        Указанные политики накладываются поверх дефолтных.

        Raises:
            ValueError: если конфигурация невалидна
        """
        rate_limits = default_rate_limits()
        raw_limits = os.getenv("AUTH_RATE_LIMITS")
        if raw_limits:
            try:
                parsed: Any = json.loads(raw_limits)
            except json.JSONDecodeError as e:
                raise ValueError(f"AUTH_RATE_LIMITS must be valid JSON: {e}") from e
            if not isinstance(parsed, dict):
                raise ValueError("AUTH_RATE_LIMITS must be a JSON object")
            rate_limits.update(parsed)

        config = cls(
            env=os.getenv("AUTH_ENV", "development").lower(),
            storage_type=os.getenv("AUTH_STORAGE_TYPE", "memory").lower(),
            db_path=os.getenv("AUTH_DB_PATH", "data/auth.db"),
            signing_algorithm=os.getenv("AUTH_SIGNING_ALGORITHM", "ES256").upper(),
            access_token_ttl=os.getenv("AUTH_ACCESS_TOKEN_TTL", "15m"),
            refresh_token_ttl=os.getenv("AUTH_REFRESH_TOKEN_TTL", "7d"),
            verification_token_ttl=os.getenv("AUTH_VERIFICATION_TOKEN_TTL", "1d"),
            password_reset_token_ttl=os.getenv("AUTH_PASSWORD_RESET_TOKEN_TTL", "1h"),
            magic_link_ttl=os.getenv("AUTH_MAGIC_LINK_TTL", "15m"),
            mfa_challenge_ttl=os.getenv("AUTH_MFA_CHALLENGE_TTL", "5m"),
            key_rotation_interval=os.getenv("AUTH_KEY_ROTATION_INTERVAL", "90d"),
            key_grace_period=os.getenv("AUTH_KEY_GRACE_PERIOD", "8d"),
            rate_limits=rate_limits,
            rate_limiting_enabled=os.getenv("AUTH_RATE_LIMITING_ENABLED", "true").lower() == "true",
            rate_limit_cleanup_interval=float(os.getenv("AUTH_RATE_LIMIT_CLEANUP_INTERVAL", "60")),
            provider_timeout=float(os.getenv("AUTH_PROVIDER_TIMEOUT", "10")),
            refresh_race_window=float(os.getenv("AUTH_REFRESH_RACE_WINDOW", "2")),
            revoke_on_refresh_replay=os.getenv("AUTH_REVOKE_ON_REFRESH_REPLAY", "true").lower() == "true",
            email_verification_required=os.getenv("AUTH_EMAIL_VERIFICATION_REQUIRED", "false").lower() == "true",
            verification_cache_ttl=float(os.getenv("AUTH_VERIFICATION_CACHE_TTL", "30")),
            verification_cache_size=int(os.getenv("AUTH_VERIFICATION_CACHE_SIZE", "1024")),
            log_format=os.getenv("AUTH_LOG_FORMAT", "text").lower(),
            log_level=os.getenv("LOG_LEVEL"),
        )
        config.validate()
        return config
