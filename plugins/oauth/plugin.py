"""
Плагин `oauth` — вход через внешнего OAuth 2.0 провайдера (authorization code).

Flow:
1. authorization_url() - строит URL авторизации и сохраняет одноразовый state
2. пользователь возвращается с code и state
3. engine.login("google", {"code": ..., "state": ...}):
   - state проверяется и удаляется (повтор отклоняется)
   - code обменивается на access_token (POST token_url)
   - профиль запрашивается с userinfo_url
   - принципал находится по email или создаётся

Опции (options или переменные окружения {NAME}_*):
    provider_name, client_id, client_secret, redirect_uri, scope,
    authorization_url, token_url, userinfo_url, preset ("google" | "github")
"""

import secrets
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import aiohttp
from pydantic import Field

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.errors import ConfigurationError, ProviderRejected, ValidationError
from authcore.logger_helper import info, warning
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.user_service import Principal
from authcore.validation import CredentialsModel, parse_payload

AUTH_OAUTH_STATES_NAMESPACE = "auth_oauth_states"
STATE_TTL_SECONDS = 10 * 60

PRESETS: Dict[str, Dict[str, Any]] = {
    "google": {
        "authorization_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": ["openid", "email", "profile"],
        "id_field": "sub",
    },
    "github": {
        "authorization_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": ["read:user", "user:email"],
        "id_field": "id",
    },
}


class OAuthConfig(CredentialsModel):
    """Конфигурация OAuth клиента."""

    provider_name: str = Field(default="oauth", min_length=1)
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    authorization_url: str = Field(min_length=1)
    token_url: str = Field(min_length=1)
    userinfo_url: str = Field(min_length=1)
    scope: list[str] = Field(default_factory=list)
    id_field: str = "sub"
    email_field: str = "email"


class OAuthCallback(CredentialsModel):
    code: str = Field(min_length=1)
    state: str = Field(min_length=1)


SessionFactory = Callable[[], Any]


class OAuthProvider(AuthProvider):
    """
    Провайдер authorization code flow.

    Args:
        config: OAuthConfig
        session_factory: фабрика aiohttp.ClientSession (подменяется в тестах)
        state_store: Storage для одноразовых state (выставляется плагином в on_load)
    """

    kind = ProviderKind.OAUTH

    def __init__(
        self,
        config: OAuthConfig,
        session_factory: Optional[SessionFactory] = None,
        state_store: Optional[Any] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self.name = config.provider_name
        self._session_factory = session_factory or aiohttp.ClientSession
        self._session: Optional[Any] = None
        self.state_store = state_store
        self.clock = clock or time.time

    def _require_store(self) -> Any:
        if self.state_store is None:
            raise ConfigurationError(f"OAuth provider {self.name!r} has no state store")
        return self.state_store

    def _get_session(self) -> Any:
        if self._session is None:
            self._session = self._session_factory()
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def authorization_url(self, state: Optional[str] = None) -> str:
        """
        Построить URL авторизации и запомнить state.

        Returns:
            URL для редиректа пользователя
        """
        state = state or secrets.token_urlsafe(24)
        await self._require_store().set(
            AUTH_OAUTH_STATES_NAMESPACE,
            state,
            {"provider": self.name, "expires_at": self.clock() + STATE_TTL_SECONDS},
        )
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "state": state,
        }
        if self.config.scope:
            params["scope"] = " ".join(self.config.scope)
        return f"{self.config.authorization_url}?{urlencode(params)}"

    async def _consume_state(self, state: str) -> None:
        store = self._require_store()
        record = await store.get(AUTH_OAUTH_STATES_NAMESPACE, state)
        if record is None or not await store.delete(AUTH_OAUTH_STATES_NAMESPACE, state):
            raise ProviderRejected("Invalid OAuth state")
        if record.get("provider") != self.name or float(record.get("expires_at", 0)) <= self.clock():
            raise ProviderRejected("Invalid OAuth state")

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Обменять authorization code на токены.

        Raises:
            ProviderRejected: провайдер отклонил code или ответ некорректен
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "redirect_uri": self.config.redirect_uri,
        }
        session = self._get_session()
        try:
            async with session.post(
                self.config.token_url, data=data, headers={"Accept": "application/json"}
            ) as resp:
                if resp.status != 200:
                    raise ProviderRejected(f"OAuth token exchange failed: HTTP {resp.status}")
                payload = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ProviderRejected("OAuth provider is unavailable") from e
        except ValueError as e:
            raise ProviderRejected("OAuth token response is not valid JSON") from e

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ProviderRejected("OAuth token response has no access_token")
        return payload

    async def fetch_profile(self, access_token: str) -> Dict[str, Any]:
        """Запросить профиль пользователя у провайдера."""
        session = self._get_session()
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            async with session.get(self.config.userinfo_url, headers=headers) as resp:
                if resp.status != 200:
                    raise ProviderRejected("Failed to fetch user profile")
                profile = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ProviderRejected("OAuth provider is unavailable") from e
        except ValueError as e:
            raise ProviderRejected("OAuth profile response is not valid JSON") from e

        if not isinstance(profile, dict) or profile.get(self.config.id_field) in (None, ""):
            raise ProviderRejected("OAuth profile has no subject id")
        return profile

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        callback = parse_payload(OAuthCallback, credentials)
        await self._consume_state(callback.state)
        tokens = await self.exchange_code(callback.code)
        profile = await self.fetch_profile(tokens["access_token"])
        principal = await self._find_or_create(profile, ctx)
        return AuthOutcome.success(principal, provider=self.name)

    async def _find_or_create(self, profile: Dict[str, Any], ctx: ProviderContext) -> Principal:
        external_id = str(profile[self.config.id_field])
        email = profile.get(self.config.email_field)
        identifier = email if isinstance(email, str) and email else f"{self.name}:{external_id}"

        principal = await ctx.user_service.find_by_identifier(identifier)
        if principal is None:
            try:
                principal = await ctx.user_service.create(
                    identifier,
                    verified=bool(email),
                    attributes={"oauth": {self.name: external_id}},
                )
            except ValidationError:
                # параллельный вход тем же аккаунтом успел создать принципала
                principal = await ctx.user_service.find_by_identifier(identifier)
                if principal is None:
                    raise
            else:
                await info(
                    ctx.logger,
                    "Principal created from OAuth profile",
                    component="oauth",
                    provider=self.name,
                    principal_id=principal.id,
                )
                return principal

        linked = dict(principal.attributes.get("oauth") or {})
        if linked.get(self.name) not in (None, external_id):
            await warning(
                ctx.logger,
                "OAuth account does not match linked account",
                component="oauth",
                provider=self.name,
                principal_id=principal.id,
            )
            raise ProviderRejected()
        if linked.get(self.name) is None:
            linked[self.name] = external_id
            principal = await ctx.user_service.update(
                principal.id, attributes={**principal.attributes, "oauth": linked}
            )
        return principal


class OAuthPlugin(BasePlugin):
    """Один OAuth провайдер на экземпляр плагина."""

    def __init__(self, session_factory: Optional[SessionFactory] = None, **options: Any) -> None:
        super().__init__(**options)
        preset = PRESETS.get(str(options.get("preset", "")).lower(), {})
        values: Dict[str, Any] = dict(preset)
        values["provider_name"] = options.get("provider_name") or options.get("preset") or "oauth"
        for key in ("client_id", "client_secret", "redirect_uri", "authorization_url", "token_url", "userinfo_url"):
            value = self.get_env_config(key.upper(), default=preset.get(key), prefix=values["provider_name"].upper())
            if value is not None:
                values[key] = value
        scope = options.get("scope", preset.get("scope"))
        if isinstance(scope, str):
            scope = scope.split()
        if scope is not None:
            values["scope"] = scope
        for key in ("id_field", "email_field"):
            if key in options:
                values[key] = options[key]

        try:
            config = parse_payload(OAuthConfig, values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid OAuth configuration: {e.message}") from e
        self.provider = OAuthProvider(config, session_factory=session_factory)

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name=str(self.options.get("plugin_name", "oauth")),
            version="0.1.0",
            description="Вход через OAuth 2.0 (authorization code)",
            author="authcore",
        )

    async def on_load(self, engine: Optional[Any]) -> None:
        await super().on_load(engine)
        if engine is not None:
            self.provider.state_store = engine.storage
            self.provider.clock = engine.tokens.now

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]

    async def cleanup(self) -> None:
        await self.provider.close()
