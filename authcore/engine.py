"""
AuthEngine - оркестратор аутентификации.

Маршрут запроса:
    Received -> RateLimitCheck -> ProviderDispatch -> Success -> SessionIssued
                                                   -> Failure -> Reported

- неизвестный провайдер: ProviderNotFound, очко списывается только из
  политики provider_lookup по клиенту (защита от перебора имён)
- перед вызовом провайдера списывается очко из политики провайдера
  (или "login") по ключу "provider:client"; отказ - RateLimited, провайдер
  не вызывается
- провайдер ограничен тайм-аутом; тайм-аут - ProviderTimeout, сессия не
  создаётся
- hook'и вызываются только после фиксации состояния; их ошибки
  собираются в hook_failures и логируются, но не пробрасываются
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from adapters.memory_adapter import MemoryAdapter

from .audit import audit_log_auth_event
from .base_plugin import BasePlugin
from .config import AuthConfig
from .errors import (
    AuthError,
    BadSignature,
    ConfigurationError,
    HookFailure,
    ProviderNotFound,
    ProviderRejected,
    ProviderTimeout,
    RateLimited,
    StaleRefreshToken,
    TokenAlreadyConsumed,
    TokenError,
    ValidationError,
    VerificationRequired,
)
from .event_bus import EventBus, EventHandler
from .key_manager import KeyManager, SigningKey
from .logger import AuthLogger
from .logger_helper import debug, error, info, warning
from .plugin_registry import PluginRegistry
from .providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from .rate_limiter import RateLimiter
from .session_manager import Session, SessionManager, SessionStore, SessionTokens, StorageSessionStore
from .storage import Storage
from .storage_factory import create_storage
from .token_service import TokenKind, TokenService
from .user_service import Principal, StorageUserService, UserService

T = TypeVar("T")

ANONYMOUS_CLIENT = "anonymous"


class HookEvent(str, Enum):
    """Фиксированный словарь событий для hook'ов и внешних подписчиков."""

    LOGIN_SUCCESS = "login.success"
    LOGIN_FAILURE = "login.failure"
    LOGIN_MFA_REQUIRED = "login.mfa_required"
    REGISTER_SUCCESS = "register.success"
    REGISTER_FAILURE = "register.failure"
    SESSION_CREATED = "session.created"
    SESSION_REFRESHED = "session.refreshed"
    SESSION_REVOKED = "session.revoked"
    TOKEN_VERIFIED = "token.verified"
    PASSWORD_RESET = "password.reset"
    KEYS_ROTATED = "keys.rotated"


class RequestState(str, Enum):
    RECEIVED = "received"
    RATE_LIMIT_CHECK = "rate_limit_check"
    PROVIDER_DISPATCH = "provider_dispatch"
    SESSION_ISSUED = "session_issued"
    REPORTED = "reported"


@dataclass
class LoginResult:
    """
    Результат login()/verify_mfa().

    authenticated=True - выпущена сессия (session, access_token, refresh_token).
    pending - провайдер ждёт следующего шага (ссылка/код отправлены).
    mfa_required - нужен второй фактор, challenge_token передаётся в verify_mfa().
    """

    principal: Optional[Principal] = None
    session: Optional[Session] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    pending: Optional[str] = None
    mfa_required: bool = False
    challenge_token: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def authenticated(self) -> bool:
        return self.session is not None


@dataclass
class VerifyResult:
    kind: TokenKind
    principal_id: str
    claims: dict[str, Any] = field(default_factory=dict)
    principal: Optional[Principal] = None
    login: Optional[LoginResult] = None


class AuthEngine:
    """
    Движок аутентификации.

    Все коллабораторы инжектируемы; по умолчанию строятся из config
    поверх одного Storage.

    Пример:
        engine = AuthEngine(AuthConfig())
        await engine.register_plugin(PasswordPlugin())
        async with engine:
            result = await engine.login("password", {"email": "...", "password": "..."},
                                        client_id="1.2.3.4")
    """

    def __init__(
        self,
        config: Optional[AuthConfig] = None,
        storage: Optional[Storage] = None,
        user_service: Optional[UserService] = None,
        session_store: Optional[SessionStore] = None,
        key_manager: Optional[KeyManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        logger: Optional[Any] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._config = config or AuthConfig()
        self._config.validate()
        self._clock = clock or time.time
        self._logger = logger if logger is not None else AuthLogger(
            level=self._config.log_level, log_format=self._config.log_format
        )

        self._owns_storage = storage is None
        self._storage = storage if storage is not None else Storage(MemoryAdapter())
        self._user_service = user_service or StorageUserService(self._storage, clock=self._clock)

        self._key_manager = key_manager or KeyManager(
            algorithm=self._config.signing_algorithm,
            rotation_interval=self._config.key_rotation_interval,
            grace_period=self._config.key_grace_period,
            storage=self._storage,
            clock=self._clock,
            logger=self._logger,
        )
        self._tokens = TokenService(
            self._key_manager,
            user_service=self._user_service,
            ttls=self._config.token_ttls(),
            clock=self._clock,
            logger=self._logger,
            cache_ttl=self._config.verification_cache_ttl,
            cache_size=self._config.verification_cache_size,
        )
        self._sessions = SessionManager(
            self._tokens,
            session_store or StorageSessionStore(self._storage),
            refresh_ttl=self._config.refresh_token_ttl,
            race_window=self._config.refresh_race_window,
            revoke_on_replay=self._config.revoke_on_refresh_replay,
            clock=self._clock,
            logger=self._logger,
        )

        self._rate_limiter = rate_limiter or RateLimiter(
            cleanup_interval=self._config.rate_limit_cleanup_interval,
            clock=self._clock,
            logger=self._logger,
        )
        for policy_key, policy in self._config.rate_limits.items():
            if not self._rate_limiter.is_configured(policy_key):
                self._rate_limiter.configure(policy_key, policy)

        self._registry = PluginRegistry(engine=self, logger=self._logger)
        self._event_bus = EventBus(logger=self._logger)
        self._hook_failures: deque[HookFailure] = deque(maxlen=100)
        self._started = False

    @classmethod
    async def from_config(cls, config: Optional[AuthConfig] = None, **kwargs: Any) -> "AuthEngine":
        """Собрать движок с хранилищем из config.storage_type (memory/sqlite)."""
        config = config or AuthConfig.from_env()
        config.validate()
        storage = await create_storage(config)
        engine = cls(config, storage=storage, **kwargs)
        engine._owns_storage = True
        return engine

    # --- Доступ к компонентам ---

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def user_service(self) -> UserService:
        return self._user_service

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    @property
    def tokens(self) -> TokenService:
        return self._tokens

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def registry(self) -> PluginRegistry:
        return self._registry

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def logger(self) -> Any:
        return self._logger

    @property
    def hook_failures(self) -> list[HookFailure]:
        return list(self._hook_failures)

    @property
    def started(self) -> bool:
        return self._started

    # --- Lifecycle ---

    async def start(self) -> None:
        """Инициализировать ключи и запустить фоновую очистку rate limiter."""
        if self._started:
            return
        await self._key_manager.initialize()
        await self._rate_limiter.start()
        self._started = True
        await info(
            self._logger,
            "Auth engine started",
            component="engine",
            plugins=",".join(self._registry.list_plugins()),
            kid=self._key_manager.current_key().kid,
        )

    async def stop(self) -> None:
        """
        Остановить фоновые задачи, очистить плагины, закрыть своё хранилище.

        Raises:
            PluginCleanupError: если teardown каких-то плагинов упал
        """
        await self._rate_limiter.stop()
        try:
            await self._registry.cleanup()
        finally:
            if self._owns_storage:
                await self._storage.close()
            self._started = False
            await info(self._logger, "Auth engine stopped", component="engine")

    async def __aenter__(self) -> "AuthEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def maintenance(self) -> None:
        """Периодическое обслуживание: ротация по возрасту, очистка ключей и nonce."""
        rotated = await self._key_manager.rotate_if_due()
        if rotated is not None:
            await self.fire_hooks(HookEvent.KEYS_ROTATED, {"kid": rotated.kid})
        await self._key_manager.prune()
        purge = getattr(self._user_service, "purge_consumed_tokens", None)
        if purge is not None:
            await purge()

    # --- Плагины и hook'и ---

    async def register_plugin(self, plugin: BasePlugin) -> None:
        await self._registry.register(plugin)

    def subscribe(self, event: Union[HookEvent, str], handler: EventHandler) -> None:
        """Подписать внешний обработчик на событие движка."""
        self._event_bus.subscribe(event.value if isinstance(event, HookEvent) else event, handler)

    def unsubscribe(self, event: Union[HookEvent, str], handler: EventHandler) -> None:
        self._event_bus.unsubscribe(event.value if isinstance(event, HookEvent) else event, handler)

    async def fire_hooks(self, event: Union[HookEvent, str], payload: dict[str, Any]) -> list[HookFailure]:
        """
        Вызвать hook'и плагинов (в порядке регистрации), затем внешних подписчиков.

        Ошибки не пробрасываются: они возвращаются, логируются и
        попадают в hook_failures.
        """
        event_name = event.value if isinstance(event, HookEvent) else event
        data = {"event": event_name, "timestamp": self._clock(), **payload}
        failures: list[HookFailure] = []
        for plugin_name, hook in self._registry.hook_entries(event_name):
            try:
                await hook(event_name, dict(data))
            except Exception as e:
                failures.append(HookFailure(event=event_name, source=f"plugin:{plugin_name}", error=e))
                await error(
                    self._logger,
                    f"Hook failed: {e}",
                    component="engine",
                    hook_event=event_name,
                    plugin=plugin_name,
                    error_type=type(e).__name__,
                )
        failures.extend(await self._event_bus.publish(event_name, dict(data)))
        self._hook_failures.extend(failures)
        return failures

    # --- Внутренние шаги ---

    def _context(self, client_id: str) -> ProviderContext:
        return ProviderContext(
            user_service=self._user_service,
            token_service=self._tokens,
            config=self._config,
            client_id=client_id,
            logger=self._logger,
        )

    async def _trace(self, state: RequestState, **context: Any) -> None:
        await debug(self._logger, f"request {state.value}", component="engine", **context)

    async def _audit(self, event_type: str, subject: Optional[str], details: dict[str, Any], success: bool) -> None:
        await audit_log_auth_event(self._storage, event_type, subject, details, success, logger=self._logger)

    def _policy_for(self, name: str, default: str) -> str:
        return name if self._rate_limiter.is_configured(name) else default

    async def _throttle(self, policy_key: str, identifier: str) -> None:
        """
        Raises:
            RateLimited: лимит исчерпан
            ConfigurationError: политика не сконфигурирована
        """
        if not self._config.rate_limiting_enabled:
            return
        result = await self._rate_limiter.consume(policy_key, identifier)
        if result.blocked:
            await warning(
                self._logger,
                "Rate limit exceeded",
                component="engine",
                policy=policy_key,
                identifier=identifier,
                reset_at=result.reset_at,
            )
            await self._audit("rate_limited", identifier, {"policy": policy_key}, success=False)
            raise RateLimited(policy_key, result.reset_at)

    async def _resolve_provider(self, provider_name: str, client_id: str) -> AuthProvider:
        provider = self._registry.get_provider(provider_name)
        if provider is None:
            await self._throttle("provider_lookup", client_id)
            await warning(
                self._logger,
                "Unknown provider requested",
                component="engine",
                provider=provider_name,
                client_id=client_id,
            )
            raise ProviderNotFound(provider_name)
        return provider

    async def _call_provider(
        self,
        provider: AuthProvider,
        call: Callable[[], Awaitable[T]],
        timeout: Optional[float],
    ) -> T:
        """
        Вызвать провайдера с тайм-аутом.

        Ошибки провайдера, не входящие в таксономию AuthError, превращаются
        в ProviderRejected с единым сообщением.
        """
        limit = self._config.provider_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(call(), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(provider.provider_name, limit) from e
        except AuthError:
            raise
        except Exception as e:
            await error(
                self._logger,
                f"Provider raised unexpected error: {e}",
                component="engine",
                provider=provider.provider_name,
                error_type=type(e).__name__,
            )
            raise ProviderRejected() from e

    async def _report_login_failure(
        self, provider_name: str, client_id: str, exc: AuthError, identifier: Optional[str] = None
    ) -> None:
        await self._trace(RequestState.REPORTED, provider=provider_name, reason=exc.code)
        details = {"provider": provider_name, "client_id": client_id, "reason": exc.code}
        await self._audit("login_failure", identifier or client_id, details, success=False)
        await self.fire_hooks(HookEvent.LOGIN_FAILURE, details)

    # --- Операции ---

    async def login(
        self,
        provider_name: str,
        credentials: dict[str, Any],
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        """
        Аутентифицировать через провайдера.

        Raises:
            ProviderNotFound: провайдер не зарегистрирован
            RateLimited: лимит попыток исчерпан
            ProviderRejected: учётные данные отклонены
            ProviderTimeout: провайдер не ответил вовремя
            ValidationError: некорректный payload
            VerificationRequired: идентификатор не подтверждён (если требуется)
        """
        client = client_id or ANONYMOUS_CLIENT
        await self._trace(RequestState.RECEIVED, provider=provider_name, client_id=client)
        provider = await self._resolve_provider(provider_name, client)

        await self._trace(RequestState.RATE_LIMIT_CHECK, provider=provider_name)
        await self._throttle(self._policy_for(provider_name, "login"), f"{provider_name}:{client}")

        await self._trace(RequestState.PROVIDER_DISPATCH, provider=provider_name)
        ctx = self._context(client)
        try:
            outcome = await self._call_provider(
                provider, lambda: provider.authenticate(credentials, ctx), timeout
            )
        except (ProviderRejected, ProviderTimeout, ValidationError) as e:
            await self._report_login_failure(provider_name, client, e)
            raise

        if not isinstance(outcome, AuthOutcome):
            raise ConfigurationError(
                f"Provider {provider_name!r} returned {type(outcome).__name__}, expected AuthOutcome"
            )
        if outcome.is_pending:
            await info(
                self._logger,
                "Login pending next step",
                component="engine",
                provider=provider_name,
                step=outcome.pending,
            )
            return LoginResult(pending=outcome.pending, details=dict(outcome.details))

        return await self._complete_login(outcome.principal, provider, client, outcome.details)

    async def _complete_login(
        self,
        principal: Principal,
        provider: AuthProvider,
        client_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> LoginResult:
        if self._config.email_verification_required and not principal.verified:
            exc = VerificationRequired("Identifier is not verified")
            await self._report_login_failure(provider.provider_name, client_id, exc, principal.id)
            raise exc

        if principal.mfa_enabled and provider.kind != ProviderKind.MFA:
            if not self._registry.providers_of_kind(ProviderKind.MFA):
                # без MFA-провайдера второй фактор проверить нечем: сессия не выдаётся
                exc = ConfigurationError("Principal has MFA enabled but no MFA provider is registered")
                await error(
                    self._logger,
                    "MFA provider missing for enrolled principal",
                    component="engine",
                    principal_id=principal.id,
                )
                await self._report_login_failure(provider.provider_name, client_id, exc, principal.id)
                raise exc
            challenge = await self._tokens.issue(
                TokenKind.MFA_CHALLENGE, principal.id, claims={"amr": [provider.provider_name]}
            )
            payload = {"principal_id": principal.id, "provider": provider.provider_name, "client_id": client_id}
            await self._audit("login_mfa_required", principal.id, payload, success=True)
            await self.fire_hooks(HookEvent.LOGIN_MFA_REQUIRED, payload)
            return LoginResult(
                principal=principal,
                mfa_required=True,
                challenge_token=challenge,
                details=dict(details or {}),
            )

        return await self._issue_session(principal, [provider.provider_name], client_id, details)

    async def _issue_session(
        self,
        principal: Principal,
        methods: list[str],
        client_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> LoginResult:
        principal = await self._user_service.update(principal.id, last_login_at=self._clock())
        issued = await self._sessions.create(principal.id, claims={"role": principal.role, "amr": methods})
        await self._trace(RequestState.SESSION_ISSUED, session_id=issued.session.id)

        payload = {
            "principal_id": principal.id,
            "session_id": issued.session.id,
            "provider": methods[0],
            "methods": methods,
            "client_id": client_id,
        }
        await self._audit("login_success", principal.id, payload, success=True)
        await self.fire_hooks(HookEvent.SESSION_CREATED, payload)
        await self.fire_hooks(HookEvent.LOGIN_SUCCESS, payload)
        return LoginResult(
            principal=principal,
            session=issued.session,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            details=dict(details or {}),
        )

    async def verify_mfa(
        self,
        challenge_token: str,
        code: str,
        provider_name: Optional[str] = None,
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LoginResult:
        """
        Завершить вход вторым фактором.

        Challenge-токен одноразовый: после успешного шага повторно не принимается.

        Raises:
            TokenError: challenge невалиден или уже использован
            RateLimited: исчерпан лимит попыток MFA
            ProviderRejected: неверный код
        """
        client = client_id or ANONYMOUS_CLIENT
        claims = await self._tokens.verify(challenge_token, TokenKind.MFA_CHALLENGE)
        principal_id = claims["sub"]

        if provider_name is not None:
            provider = await self._resolve_provider(provider_name, client)
            if provider.kind != ProviderKind.MFA:
                raise ValidationError(f"Provider {provider_name!r} is not an MFA provider")
        else:
            mfa_providers = self._registry.providers_of_kind(ProviderKind.MFA)
            if not mfa_providers:
                raise ProviderNotFound("mfa")
            provider = mfa_providers[0]

        await self._throttle(self._policy_for(provider.provider_name, "mfa"), f"mfa:{principal_id}")

        principal = await self._user_service.find_by_id(principal_id)
        if principal is None:
            raise ProviderRejected()

        ctx = self._context(client)
        try:
            ok = await self._call_provider(provider, lambda: provider.mfa_step(principal, code, ctx), timeout)
            if not ok:
                raise ProviderRejected("Invalid verification code")
        except (ProviderRejected, ProviderTimeout, ValidationError) as e:
            await self._report_login_failure(provider.provider_name, client, e, principal_id)
            raise

        consumed = await self._user_service.mark_token_consumed(f"mfa:{claims['jti']}", float(claims["exp"]))
        if not consumed:
            await self._audit("token_anomaly", principal_id, {"kind": "mfa_challenge"}, success=False)
            raise TokenAlreadyConsumed("MFA challenge has already been used")

        methods = list(claims.get("amr") or []) + [provider.provider_name]
        return await self._issue_session(principal, methods, client)

    async def register(
        self,
        provider_name: str,
        payload: dict[str, Any],
        client_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Principal:
        """
        Зарегистрировать принципала через провайдера.

        Raises:
            ProviderNotFound, RateLimited, ValidationError, ProviderTimeout
        """
        client = client_id or ANONYMOUS_CLIENT
        provider = await self._resolve_provider(provider_name, client)
        await self._throttle(self._policy_for(f"register:{provider_name}", "register"), f"{provider_name}:{client}")

        if not provider.supports_registration:
            raise ValidationError(f"Provider {provider_name!r} does not support registration")

        ctx = self._context(client)
        try:
            principal = await self._call_provider(provider, lambda: provider.register(payload, ctx), timeout)
        except AuthError as e:
            details = {"provider": provider_name, "client_id": client, "reason": e.code}
            await self._audit("register_failure", client, details, success=False)
            await self.fire_hooks(HookEvent.REGISTER_FAILURE, details)
            raise

        details = {"principal_id": principal.id, "provider": provider_name, "client_id": client}
        await self._audit("register_success", principal.id, details, success=True)
        await self.fire_hooks(HookEvent.REGISTER_SUCCESS, details)
        return principal

    async def verify(
        self,
        kind: Union[TokenKind, str],
        token: str,
        client_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> VerifyResult:
        """
        Проверить токен указанного вида.

        - access: claims и principal id (с проверкой активности сессии)
        - refresh: ротация, VerifyResult.login содержит новую пару токенов
        - verification: помечает принципала подтверждённым
        - password_reset: payload={"new_password": ...}, меняет пароль
        - magic_link: провайдер завершает вход, VerifyResult.login - результат входа

        Raises:
            TokenError варианты, RateLimited, ValidationError
        """
        try:
            token_kind = TokenKind(kind)
        except ValueError as e:
            raise ValidationError(f"Unknown token kind: {kind!r}") from e
        client = client_id or ANONYMOUS_CLIENT

        try:
            if token_kind == TokenKind.ACCESS:
                claims = await self._sessions.authenticate(token)
                return VerifyResult(token_kind, claims["sub"], claims)

            if token_kind == TokenKind.REFRESH:
                issued = await self.refresh(token)
                principal = await self._user_service.find_by_id(issued.session.principal_id)
                login = LoginResult(
                    principal=principal,
                    session=issued.session,
                    access_token=issued.access_token,
                    refresh_token=issued.refresh_token,
                )
                return VerifyResult(token_kind, issued.session.principal_id, principal=principal, login=login)

            if token_kind == TokenKind.MFA_CHALLENGE:
                raise ValidationError("Use verify_mfa() to complete an MFA challenge")

            await self._throttle(self._policy_for(f"verify:{token_kind.value}", "verify"), client)

            if token_kind == TokenKind.VERIFICATION:
                claims = await self._tokens.verify(token, TokenKind.VERIFICATION)
                principal = await self._user_service.update(claims["sub"], verified=True)
                details = {"principal_id": principal.id, "kind": token_kind.value}
                await self._audit("identifier_verified", principal.id, details, success=True)
                await self.fire_hooks(HookEvent.TOKEN_VERIFIED, details)
                return VerifyResult(token_kind, principal.id, claims, principal=principal)

            if token_kind == TokenKind.PASSWORD_RESET:
                new_password = (payload or {}).get("new_password")
                if not new_password:
                    raise ValidationError("new_password is required to complete a password reset")
                principal = await self.reset_password(token, new_password, client_id=client)
                return VerifyResult(token_kind, principal.id, principal=principal)

            return await self._verify_link(token_kind, token, client)
        except (BadSignature, TokenAlreadyConsumed) as e:
            await self._audit(
                "token_anomaly", client, {"kind": token_kind.value, "reason": e.code}, success=False
            )
            raise

    async def _verify_link(self, token_kind: TokenKind, token: str, client_id: str) -> VerifyResult:
        unverified = self._tokens.decode_unverified(token)
        provider_name = unverified.get("provider")
        provider: Optional[AuthProvider] = None
        if isinstance(provider_name, str):
            provider = self._registry.get_provider(provider_name)
        if provider is None:
            candidates = self._registry.providers_of_kind(ProviderKind(token_kind.value))
            if not candidates:
                raise ProviderNotFound(str(provider_name or token_kind.value))
            provider = candidates[0]

        ctx = self._context(client_id)
        try:
            principal = await self._call_provider(provider, lambda: provider.verify_token(token, ctx), None)
        except (ProviderRejected, ProviderTimeout, ValidationError) as e:
            await self._report_login_failure(provider.provider_name, client_id, e)
            raise
        login = await self._complete_login(principal, provider, client_id)
        await self.fire_hooks(
            HookEvent.TOKEN_VERIFIED, {"principal_id": principal.id, "kind": token_kind.value}
        )
        return VerifyResult(token_kind, principal.id, principal=login.principal or principal, login=login)

    async def refresh(self, refresh_token: str) -> SessionTokens:
        """
        Ротация refresh-токена.

        Raises:
            TokenError варианты; StaleRefreshToken (session_revoked=True при replay)
        """
        try:
            issued = await self._sessions.refresh(refresh_token)
        except StaleRefreshToken as e:
            if e.session_revoked:
                claims = self._tokens.decode_unverified(refresh_token)
                details = {
                    "principal_id": claims.get("sub"),
                    "session_id": claims.get("sid"),
                    "reason": "refresh_replay",
                }
                await self._audit("refresh_replay", claims.get("sub"), details, success=False)
                await self.fire_hooks(HookEvent.SESSION_REVOKED, details)
            raise
        await self.fire_hooks(
            HookEvent.SESSION_REFRESHED,
            {
                "principal_id": issued.session.principal_id,
                "session_id": issued.session.id,
                "generation": issued.session.generation,
            },
        )
        return issued

    async def logout(self, session_id: str, reason: str = "logout") -> bool:
        """Отозвать сессию. False если сессии нет."""
        session = await self._sessions.revoke(session_id, reason)
        if session is None:
            return False
        details = {"principal_id": session.principal_id, "session_id": session_id, "reason": reason}
        await self._audit("session_revoked", session.principal_id, details, success=True)
        await self.fire_hooks(HookEvent.SESSION_REVOKED, details)
        return True

    async def logout_all(self, principal_id: str, reason: str = "logout_all") -> int:
        count = await self._sessions.revoke_all(principal_id, reason)
        if count:
            details = {"principal_id": principal_id, "sessions": count, "reason": reason}
            await self._audit("sessions_revoked", principal_id, details, success=True)
            await self.fire_hooks(HookEvent.SESSION_REVOKED, details)
        return count

    async def issue_verification_token(self, principal_id: str) -> str:
        """
        Одноразовый токен подтверждения идентификатора.

        Raises:
            ValidationError: принципал не найден
        """
        principal = await self._user_service.find_by_id(principal_id)
        if principal is None:
            raise ValidationError(f"Principal {principal_id} not found")
        return await self._tokens.issue(TokenKind.VERIFICATION, principal.id)

    async def request_password_reset(self, identifier: str, client_id: Optional[str] = None) -> Optional[str]:
        """
        Токен сброса пароля или None, если идентификатор неизвестен.

        Вызывающий код отправляет токен по каналу связи и отвечает клиенту
        одинаково в обоих случаях.
        """
        await self._throttle(
            self._policy_for("password_reset", "verify"), f"password_reset:{client_id or ANONYMOUS_CLIENT}"
        )
        principal = await self._user_service.find_by_identifier(identifier)
        if principal is None:
            await self._audit("password_reset_requested", identifier, {"known": False}, success=False)
            return None
        await self._audit("password_reset_requested", principal.id, {"known": True}, success=True)
        return await self._tokens.issue(TokenKind.PASSWORD_RESET, principal.id)

    async def reset_password(
        self,
        token: str,
        new_password: str,
        provider_name: str = "password",
        client_id: Optional[str] = None,
    ) -> Principal:
        """
        Сменить пароль по одноразовому токену и отозвать все сессии.

        Raises:
            ProviderNotFound: провайдер паролей не зарегистрирован
            TokenError: токен невалиден или уже использован
            ValidationError: пароль не проходит политику
        """
        client = client_id or ANONYMOUS_CLIENT
        provider = await self._resolve_provider(provider_name, client)
        claims = await self._tokens.verify(token, TokenKind.PASSWORD_RESET)
        principal = await self._user_service.find_by_id(claims["sub"])
        if principal is None:
            raise ProviderRejected()

        ctx = self._context(client)
        principal = await self._call_provider(
            provider, lambda: provider.update_credentials(principal, {"password": new_password}, ctx), None
        )
        revoked = await self._sessions.revoke_all(principal.id, "password_reset")
        details = {"principal_id": principal.id, "revoked_sessions": revoked}
        await self._audit("password_reset", principal.id, details, success=True)
        await self.fire_hooks(HookEvent.PASSWORD_RESET, details)
        return principal

    # --- Ключи ---

    async def rotate_keys(self) -> SigningKey:
        key = await self._key_manager.rotate()
        await self.fire_hooks(HookEvent.KEYS_ROTATED, {"kid": key.kid})
        return key

    def public_key_set(self) -> list[dict[str, Any]]:
        return self._key_manager.public_key_set()

    def jwks(self) -> dict[str, Any]:
        return self._key_manager.jwks()
