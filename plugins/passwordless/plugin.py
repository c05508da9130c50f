"""
Плагин `passwordless` — вход по одноразовому коду (email/SMS).

Два шага одного провайдера:
1. authenticate({"identifier"}) -> pending "code_sent", код уходит через sender
2. authenticate({"identifier", "code"}) -> принципал

Код хранится только как sha256, живёт code_ttl, одноразовый; после
max_attempts неверных попыток код аннулируется.
"""

import asyncio
import hashlib
import hmac
import secrets
from typing import Any, Awaitable, Callable, Optional

from pydantic import AliasChoices, Field

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.duration import duration_seconds
from authcore.errors import ConfigurationError, ProviderRejected, ValidationError
from authcore.logger_helper import info, warning
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.user_service import Principal, normalize_identifier
from authcore.validation import CredentialsModel, parse_payload

AUTH_PASSWORDLESS_CODES_NAMESPACE = "auth_passwordless_codes"
CODE_DIGITS = 6
DEFAULT_CODE_TTL = "10m"
DEFAULT_MAX_ATTEMPTS = 5

# sender(recipient, code)
CodeSender = Callable[[str, str], Awaitable[None]]


def _code_hash(identifier: str, code: str) -> str:
    return hashlib.sha256(f"{identifier}:{code}".encode("utf-8")).hexdigest()


def _record_key(identifier: str) -> str:
    return hashlib.sha256(identifier.encode("utf-8")).hexdigest()


class PasswordlessRequest(CredentialsModel):
    identifier: str = Field(min_length=1, validation_alias=AliasChoices("identifier", "email", "phone"))
    code: Optional[str] = None


class PasswordlessProvider(AuthProvider):
    kind = ProviderKind.PASSWORDLESS

    def __init__(
        self,
        sender: Optional[CodeSender] = None,
        code_ttl: int = 600,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        auto_register: bool = True,
        store: Optional[Any] = None,
    ):
        self.sender = sender
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.auto_register = auto_register
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def _require_store(self) -> Any:
        if self.store is None:
            raise ConfigurationError("Passwordless provider has no code store")
        return self.store

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        request = parse_payload(PasswordlessRequest, credentials)
        identifier = normalize_identifier(request.identifier)
        if request.code is None:
            return await self._send_code(identifier, ctx)
        return AuthOutcome.success(await self._check_code(identifier, request.code.strip(), ctx))

    async def _send_code(self, identifier: str, ctx: ProviderContext) -> AuthOutcome:
        if self.sender is None:
            raise ConfigurationError("Passwordless sender is not configured")
        code = f"{secrets.randbelow(10 ** CODE_DIGITS):0{CODE_DIGITS}d}"
        await self._require_store().set(
            AUTH_PASSWORDLESS_CODES_NAMESPACE,
            _record_key(identifier),
            {
                "code_hash": _code_hash(identifier, code),
                "expires_at": ctx.token_service.now() + self.code_ttl,
                "attempts": 0,
            },
        )
        await self.sender(identifier, code)
        await info(ctx.logger, "Passwordless code sent", component="passwordless")
        return AuthOutcome.pending_step("code_sent", expires_in=self.code_ttl)

    async def _check_code(self, identifier: str, code: str, ctx: ProviderContext) -> Principal:
        key = _record_key(identifier)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            await self._consume_code(key, identifier, code, ctx)

        principal = await ctx.user_service.find_by_identifier(identifier)
        if principal is None:
            if not self.auto_register:
                raise ProviderRejected()
            return await ctx.user_service.create(identifier, verified=True)
        if not principal.verified:
            principal = await ctx.user_service.update(principal.id, verified=True)
        return principal

    async def _consume_code(self, key: str, identifier: str, code: str, ctx: ProviderContext) -> None:
        store = self._require_store()
        record = await store.get(AUTH_PASSWORDLESS_CODES_NAMESPACE, key)
        if record is None:
            raise ProviderRejected("Invalid or expired code")
        if float(record.get("expires_at", 0)) <= ctx.token_service.now():
            await store.delete(AUTH_PASSWORDLESS_CODES_NAMESPACE, key)
            raise ProviderRejected("Invalid or expired code")

        if not hmac.compare_digest(str(record.get("code_hash", "")), _code_hash(identifier, code)):
            attempts = int(record.get("attempts", 0)) + 1
            if attempts >= self.max_attempts:
                await store.delete(AUTH_PASSWORDLESS_CODES_NAMESPACE, key)
                await warning(
                    ctx.logger,
                    "Passwordless code invalidated after too many attempts",
                    component="passwordless",
                )
            else:
                await store.set(AUTH_PASSWORDLESS_CODES_NAMESPACE, key, {**record, "attempts": attempts})
            raise ProviderRejected("Invalid or expired code")

        await store.delete(AUTH_PASSWORDLESS_CODES_NAMESPACE, key)


class PasswordlessPlugin(BasePlugin):
    """
    Провайдер `passwordless`.

    Args:
        sender: async callable(recipient, code)
        code_ttl / max_attempts / auto_register: опции или PASSWORDLESS_*
    """

    def __init__(self, sender: Optional[CodeSender] = None, **options: Any) -> None:
        super().__init__(**options)
        raw_ttl = self.get_env_config("CODE_TTL", DEFAULT_CODE_TTL) or DEFAULT_CODE_TTL
        try:
            # голое число в опциях или окружении - секунды
            code_ttl = duration_seconds(int(raw_ttl) if raw_ttl.isdigit() else raw_ttl)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid passwordless code_ttl: {e.message}") from e
        self.provider = PasswordlessProvider(
            sender=sender,
            code_ttl=code_ttl,
            max_attempts=self.get_env_config_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS) or DEFAULT_MAX_ATTEMPTS,
            auto_register=self.get_env_config_bool("AUTO_REGISTER", True),
        )

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name="passwordless",
            version="0.1.0",
            description="Вход по одноразовому коду",
            author="authcore",
        )

    async def on_load(self, engine: Optional[Any]) -> None:
        await super().on_load(engine)
        if engine is not None:
            self.provider.store = engine.storage

    def set_sender(self, sender: CodeSender) -> None:
        self.provider.sender = sender

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]
