"""
Контракт провайдера аутентификации.

Провайдер - один способ аутентификации (пароль, OAuth, magic link,
passwordless, голос, MFA-шаг). Движок знает о провайдере только этот
закрытый интерфейс: authenticate, register, verify_token,
update_credentials, mfa_step.

Провайдер возвращает AuthOutcome (принципал или незавершённый шаг) либо
бросает ProviderRejected. Принципалов он меняет только через
ctx.user_service, который выдаёт движок.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

from .errors import ValidationError

if TYPE_CHECKING:
    from .config import AuthConfig
    from .token_service import TokenService
    from .user_service import Principal, UserService


class ProviderKind(str, Enum):
    PASSWORD = "password"
    OAUTH = "oauth"
    MAGIC_LINK = "magic_link"
    PASSWORDLESS = "passwordless"
    VOICE = "voice"
    MFA = "mfa"


@dataclass
class ProviderContext:
    """Что движок передаёт провайдеру на время одного вызова."""

    user_service: "UserService"
    token_service: "TokenService"
    config: "AuthConfig"
    client_id: str = "anonymous"
    logger: Optional[Any] = None


@dataclass
class AuthOutcome:
    """
    Результат authenticate().

    Либо principal (аутентификация завершена), либо pending - имя
    незавершённого шага ("magic_link_sent", "code_sent", ...) с деталями.
    """

    principal: Optional["Principal"] = None
    pending: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, principal: "Principal", **details: Any) -> "AuthOutcome":
        return cls(principal=principal, details=details)

    @classmethod
    def pending_step(cls, step: str, **details: Any) -> "AuthOutcome":
        return cls(pending=step, details=details)

    @property
    def is_pending(self) -> bool:
        return self.principal is None


class AuthProvider(ABC):
    """
    Базовый класс провайдера.

    Атрибуты класса:
        kind: вариант провайдера (ProviderKind)
        name: имя для диспетчеризации; по умолчанию kind.value
        supports_registration: поддерживает ли register()
        supports_mfa: является ли MFA-шагом
    """

    kind: ProviderKind
    name: str = ""
    supports_registration: bool = False
    supports_mfa: bool = False

    @property
    def provider_name(self) -> str:
        return self.name or self.kind.value

    @abstractmethod
    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        """
        Проверить учётные данные.

        Raises:
            ProviderRejected: учётные данные неверны
            ValidationError: payload некорректен
        """

    async def register(self, payload: dict[str, Any], ctx: ProviderContext) -> "Principal":
        """Зарегистрировать принципала. По умолчанию не поддерживается."""
        raise ValidationError(f"Provider {self.provider_name!r} does not support registration")

    async def verify_token(self, token: str, ctx: ProviderContext) -> "Principal":
        """Завершить flow по ссылке/коду. По умолчанию не поддерживается."""
        raise ValidationError(f"Provider {self.provider_name!r} does not support token verification")

    async def update_credentials(
        self, principal: "Principal", payload: dict[str, Any], ctx: ProviderContext
    ) -> "Principal":
        """Заменить учётные данные (сброс пароля). По умолчанию не поддерживается."""
        raise ValidationError(f"Provider {self.provider_name!r} does not manage credentials")

    async def mfa_step(self, principal: "Principal", code: str, ctx: ProviderContext) -> bool:
        """Проверить второй фактор. По умолчанию не поддерживается."""
        raise ValidationError(f"Provider {self.provider_name!r} is not an MFA provider")
