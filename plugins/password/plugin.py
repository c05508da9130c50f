"""
Плагин `password` — аутентификация по идентификатору и паролю.

- register: проверка политики пароля, bcrypt-хеш, создание принципала
- authenticate: сравнение с хешем; для неизвестного идентификатора
  выполняется сравнение с фиктивным хешем, ответ одинаковый
- update_credentials: смена пароля (сброс по токену)

Опции (options или переменные окружения PASSWORD_*):
    bcrypt_rounds, min_length, require_special_char
"""

import asyncio
from typing import Any, Optional

from pydantic import AliasChoices, Field

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.errors import ProviderRejected, ValidationError
from authcore.logger_helper import info
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.user_service import Principal
from authcore.validation import CredentialsModel, parse_payload

from .passwords import (
    DEFAULT_BCRYPT_ROUNDS,
    MIN_PASSWORD_LENGTH,
    PasswordPolicy,
    dummy_hash,
    hash_password,
    validate_password_strength,
    verify_password,
)

_IDENTIFIER_ALIASES = AliasChoices("identifier", "email", "username")


class PasswordCredentials(CredentialsModel):
    identifier: str = Field(min_length=1, validation_alias=_IDENTIFIER_ALIASES)
    password: str = Field(min_length=1)


class PasswordRegistration(CredentialsModel):
    identifier: str = Field(min_length=1, validation_alias=_IDENTIFIER_ALIASES)
    password: str = Field(min_length=1)
    role: Optional[str] = None


class PasswordChange(CredentialsModel):
    password: str = Field(min_length=1)


class PasswordProvider(AuthProvider):
    kind = ProviderKind.PASSWORD
    supports_registration = True

    def __init__(self, policy: Optional[PasswordPolicy] = None, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self.policy = policy or PasswordPolicy()
        self.rounds = rounds

    def _check_strength(self, password: str) -> None:
        is_valid, error_message = validate_password_strength(password, self.policy)
        if not is_valid:
            raise ValidationError(error_message or "Password does not satisfy policy")

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(hash_password, password, self.rounds)

    async def _verify(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(verify_password, password, password_hash)

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        creds = parse_payload(PasswordCredentials, credentials)
        principal = await ctx.user_service.find_by_identifier(creds.identifier)
        if principal is None or not principal.password_hash:
            # выравнивание времени ответа
            await self._verify(creds.password, dummy_hash(self.rounds))
            raise ProviderRejected()
        if not await self._verify(creds.password, principal.password_hash):
            raise ProviderRejected()
        return AuthOutcome.success(principal)

    async def register(self, payload: dict[str, Any], ctx: ProviderContext) -> Principal:
        data = parse_payload(PasswordRegistration, payload)
        self._check_strength(data.password)
        fields: dict[str, Any] = {"password_hash": await self._hash(data.password)}
        if data.role:
            fields["role"] = data.role
        principal = await ctx.user_service.create(data.identifier, **fields)
        await info(ctx.logger, "Principal registered", component="password", principal_id=principal.id)
        return principal

    async def update_credentials(
        self, principal: Principal, payload: dict[str, Any], ctx: ProviderContext
    ) -> Principal:
        data = parse_payload(PasswordChange, payload)
        self._check_strength(data.password)
        if principal.password_hash and await self._verify(data.password, principal.password_hash):
            raise ValidationError("New password must be different from old password")

        attributes = dict(principal.attributes)
        attributes["password_changed_at"] = ctx.token_service.now()
        return await ctx.user_service.update(
            principal.id,
            password_hash=await self._hash(data.password),
            attributes=attributes,
        )


class PasswordPlugin(BasePlugin):
    """Провайдер `password`."""

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name="password",
            version="0.1.0",
            description="Аутентификация по идентификатору и паролю (bcrypt)",
            author="authcore",
        )

    def __init__(self, **options: Any) -> None:
        super().__init__(**options)
        policy = PasswordPolicy(
            min_length=self.get_env_config_int("MIN_LENGTH", MIN_PASSWORD_LENGTH) or MIN_PASSWORD_LENGTH,
            require_special_char=self.get_env_config_bool("REQUIRE_SPECIAL_CHAR", False),
        )
        rounds = self.get_env_config_int("BCRYPT_ROUNDS", DEFAULT_BCRYPT_ROUNDS) or DEFAULT_BCRYPT_ROUNDS
        self.provider = PasswordProvider(policy=policy, rounds=rounds)

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]
