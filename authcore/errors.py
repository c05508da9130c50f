"""
Иерархия ошибок authcore.

Каждая ошибка несёт машинный `code`; транспортный слой (HTTP и т.п.)
сериализует её через `to_dict()`. Ошибки конфигурации фатальны и
всплывают сразу, остальные сообщаются вызывающему коду.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
import time


class AuthError(Exception):
    """Базовая ошибка authcore."""

    code = "auth_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


# --- Конфигурация ---

class ConfigurationError(AuthError):
    """Отсутствующая политика, неверно сконфигурированный плагин и т.п."""

    code = "configuration_error"


class DuplicatePluginError(ConfigurationError):
    code = "duplicate_plugin"


class ProviderConflictError(ConfigurationError):
    """Два плагина объявили провайдера с одним и тем же именем."""

    code = "provider_conflict"


class PluginCleanupError(ConfigurationError):
    """
    Агрегированная ошибка cleanup().

    Attributes:
        failures: список (plugin_name, exception)
    """

    code = "plugin_cleanup_failed"

    def __init__(self, failures: list[tuple[str, BaseException]]):
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"Cleanup failed for plugins: {names}")
        self.failures = failures


# --- Валидация ---

class ValidationError(AuthError):
    """Некорректные учётные данные или payload."""

    code = "validation_error"


class DurationFormatError(ValidationError):
    code = "invalid_duration_format"


class UnsupportedDurationUnit(ValidationError):
    code = "unsupported_duration_unit"


class DurationOverflowError(DurationFormatError):
    code = "duration_overflow"


# --- Throttling / провайдеры ---

class RateLimited(AuthError):
    """Превышен лимит. `reset_at`: unix-время, после которого можно повторить."""

    code = "rate_limited"

    def __init__(self, policy_key: str, reset_at: float):
        super().__init__(
            f"Too many attempts for '{policy_key}', retry after {reset_at:.0f}",
            policy=policy_key,
            reset_at=reset_at,
        )
        self.policy_key = policy_key
        self.reset_at = reset_at

    @property
    def retry_after(self) -> float:
        return max(0.0, self.reset_at - time.time())


class ProviderNotFound(AuthError):
    code = "provider_not_found"

    def __init__(self, provider_name: str):
        super().__init__(f"Unknown authentication provider: {provider_name!r}")
        self.provider_name = provider_name


class ProviderRejected(AuthError):
    """
    Провайдер отклонил учётные данные.

    Сообщение одинаковое для "нет такого пользователя" и "неверный пароль",
    чтобы не раскрывать существование идентификатора.
    """

    code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **details: Any):
        super().__init__(message, **details)


class ProviderTimeout(AuthError):
    code = "provider_timeout"

    def __init__(self, provider_name: str, timeout: float):
        super().__init__(
            f"Provider {provider_name!r} did not respond within {timeout}s",
            provider=provider_name,
            timeout=timeout,
        )
        self.provider_name = provider_name
        self.timeout = timeout


class MfaRequired(AuthError):
    code = "mfa_required"


class VerificationRequired(AuthError):
    """Вход запрещён до подтверждения идентификатора (email)."""

    code = "verification_required"


# --- Токены ---

class TokenError(AuthError):
    code = "invalid_token"


class MalformedToken(TokenError):
    code = "token_malformed"


class UnknownKeyError(TokenError):
    code = "token_unknown_key"

    def __init__(self, kid: Optional[str]):
        super().__init__(f"Unknown signing key: {kid!r}", kid=kid)
        self.kid = kid


class BadSignature(TokenError):
    code = "token_bad_signature"


class TokenExpired(TokenError):
    code = "token_expired"


class TokenKindMismatch(TokenError):
    code = "token_kind_mismatch"

    def __init__(self, expected: str, actual: Any):
        super().__init__(f"Expected {expected!r} token, got {actual!r}", expected=expected, actual=actual)
        self.expected = expected
        self.actual = actual


class TokenAlreadyConsumed(TokenError):
    code = "token_already_consumed"


class StaleRefreshToken(TokenError):
    """Refresh-токен уже ротирован (проигравший гонку или replay)."""

    code = "token_stale"

    def __init__(self, message: str = "Refresh token is no longer valid", session_revoked: bool = False):
        super().__init__(message, session_revoked=session_revoked)
        self.session_revoked = session_revoked


class SessionRevoked(TokenError):
    code = "session_revoked"


@dataclass
class HookFailure:
    """Запись об упавшем hook'е (side channel, не пробрасывается)."""

    event: str
    source: str
    error: BaseException
    occurred_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "source": self.source,
            "error_type": type(self.error).__name__,
            "error": str(self.error),
            "occurred_at": self.occurred_at,
        }
