"""
Плагин `magic_link` — вход по одноразовой ссылке из письма.

- authenticate({"email"}): выпускает одноразовый magic_link токен и
  отправляет ссылку через sender; ответ одинаковый для известных и
  неизвестных адресов
- authenticate({"token"}) / verify_token(token): проверяет токен
  (подпись, срок, одноразовость) и возвращает принципала

Прямая регистрация не поддерживается: принципал создаётся другим
провайдером (или auto_register=True).
"""

from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

from pydantic import AliasChoices, Field

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.errors import ConfigurationError, ProviderRejected, ValidationError
from authcore.logger_helper import debug, info
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.token_service import TokenKind
from authcore.user_service import Principal
from authcore.validation import CredentialsModel, parse_payload

# sender(recipient, link)
LinkSender = Callable[[str, str], Awaitable[None]]

DEFAULT_VERIFY_PATH = "/auth/verify-magic-link"


class MagicLinkRequest(CredentialsModel):
    identifier: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("identifier", "email")
    )
    token: Optional[str] = None


class MagicLinkProvider(AuthProvider):
    kind = ProviderKind.MAGIC_LINK

    def __init__(
        self,
        base_url: str,
        sender: Optional[LinkSender] = None,
        auto_register: bool = False,
        verify_path: str = DEFAULT_VERIFY_PATH,
    ):
        self.base_url = base_url.rstrip("/")
        self.verify_path = verify_path
        self.sender = sender
        self.auto_register = auto_register

    def build_link(self, token: str) -> str:
        return f"{self.base_url}{self.verify_path}?{urlencode({'token': token})}"

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        request = parse_payload(MagicLinkRequest, credentials)
        if request.token:
            return AuthOutcome.success(await self.verify_token(request.token, ctx))
        if not request.identifier:
            raise ValidationError("email or token is required")
        if self.sender is None:
            raise ConfigurationError("Magic link sender is not configured")

        principal = await ctx.user_service.find_by_identifier(request.identifier)
        if principal is None and self.auto_register:
            principal = await ctx.user_service.create(request.identifier)
        if principal is None:
            await debug(ctx.logger, "Magic link requested for unknown identifier", component="magic_link")
            return AuthOutcome.pending_step("magic_link_sent")

        token = await ctx.token_service.issue(
            TokenKind.MAGIC_LINK, principal.id, claims={"provider": self.provider_name}
        )
        await self.sender(principal.identifier, self.build_link(token))
        await info(ctx.logger, "Magic link sent", component="magic_link", principal_id=principal.id)
        return AuthOutcome.pending_step("magic_link_sent")

    async def verify_token(self, token: str, ctx: ProviderContext) -> Principal:
        claims = await ctx.token_service.verify(token, TokenKind.MAGIC_LINK)
        principal = await ctx.user_service.find_by_id(claims["sub"])
        if principal is None:
            raise ProviderRejected()
        # переход по ссылке подтверждает владение адресом
        if not principal.verified:
            principal = await ctx.user_service.update(principal.id, verified=True)
        return principal


class MagicLinkPlugin(BasePlugin):
    """
    Провайдер `magic_link`.

    Args:
        sender: async callable(recipient, link), отправка письма
        base_url / auto_register: опции или MAGIC_LINK_BASE_URL / MAGIC_LINK_AUTO_REGISTER
    """

    def __init__(self, sender: Optional[LinkSender] = None, **options: Any) -> None:
        super().__init__(**options)
        base_url = self.get_env_config("BASE_URL")
        if not base_url:
            raise ConfigurationError("magic_link plugin requires base_url")
        self.provider = MagicLinkProvider(
            base_url=base_url,
            sender=sender,
            auto_register=self.get_env_config_bool("AUTO_REGISTER", False),
            verify_path=self.get_env_config("VERIFY_PATH", DEFAULT_VERIFY_PATH) or DEFAULT_VERIFY_PATH,
        )

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name="magic_link",
            version="0.1.0",
            description="Вход по одноразовой ссылке",
            author="authcore",
        )

    def set_sender(self, sender: LinkSender) -> None:
        self.provider.sender = sender

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]
