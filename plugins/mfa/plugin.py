"""
Плагин `mfa` — второй фактор TOTP (RFC 6238) и коды восстановления.

Совместим с Google Authenticator, Authy и другими TOTP-приложениями.

- begin_enrollment: новый секрет + provisioning URI (MFA ещё не включена)
- confirm_enrollment: проверка кода, включение MFA, выдача кодов восстановления
- mfa_step: проверка TOTP или одноразового кода восстановления при входе
- disable: выключение MFA по действующему коду

Секрет шифруется Fernet, если задан encryption_key (MFA_ENCRYPTION_KEY).
Коды восстановления хранятся только как sha256.
Один и тот же TOTP-код дважды не принимается.
"""

import hashlib
import hmac
import secrets
from typing import Any, Optional

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.errors import ConfigurationError, ProviderRejected, ValidationError
from authcore.logger_helper import info, warning
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.user_service import Principal, UserService

RECOVERY_CODE_COUNT = 8
DEFAULT_ISSUER = "authcore"
VALID_WINDOW = 1
TOTP_DIGITS = 6
TOTP_INTERVAL = 30
# использованный код восстановления помнится дольше, чем живёт сам список
RECOVERY_CLAIM_TTL = 365 * 24 * 60 * 60


def hash_recovery_code(code: str) -> str:
    normalized = code.replace("-", "").replace(" ", "").upper()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class TotpProvider(AuthProvider):
    """
    TOTP-провайдер второго фактора.

    Args:
        issuer: имя сервиса в приложении-аутентификаторе
        fernet: шифр для секрета (None - секрет хранится как есть)
    """

    kind = ProviderKind.MFA
    name = "totp"
    supports_mfa = True

    def __init__(self, issuer: str = DEFAULT_ISSUER, fernet: Optional[Fernet] = None):
        self.issuer = issuer
        self._fernet = fernet

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def _seal(self, secret: str) -> str:
        if self._fernet is None:
            return secret
        return self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")

    def _unseal(self, stored: Optional[str]) -> Optional[str]:
        if not stored:
            return None
        if self._fernet is None:
            return stored
        try:
            return self._fernet.decrypt(stored.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None

    def _matching_step(self, secret: str, code: str, now: float) -> Optional[int]:
        """Номер временного шага, которому соответствует код, или None."""
        if not code.isascii():
            return None
        totp = pyotp.TOTP(secret, interval=TOTP_INTERVAL)
        current = int(now) // totp.interval
        for offset in range(-VALID_WINDOW, VALID_WINDOW + 1):
            step = current + offset
            if hmac.compare_digest(totp.at(step * totp.interval), code):
                return step
        return None

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        raise ValidationError("TOTP is a second factor; use verify_mfa() with a challenge token")

    async def mfa_step(self, principal: Principal, code: str, ctx: ProviderContext) -> bool:
        if not principal.mfa_enabled:
            return False
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("code is required")
        code = code.strip().replace(" ", "")

        secret = self._unseal(principal.mfa_secret)
        if code.isdigit() and len(code) == TOTP_DIGITS and secret is not None:
            step = self._matching_step(secret, code, ctx.token_service.now())
            last_step = principal.attributes.get("mfa_last_step")
            if step is None or (isinstance(last_step, int) and step <= last_step):
                return False
            # шаг занимается атомарно: параллельный вход тем же кодом проигрывает
            claimed = await ctx.user_service.mark_token_consumed(
                f"totp:{principal.id}:{step}", float((step + VALID_WINDOW + 1) * TOTP_INTERVAL)
            )
            if not claimed:
                return False
            await ctx.user_service.update(
                principal.id, attributes={**principal.attributes, "mfa_last_step": step}
            )
            return True

        return await self._consume_recovery_code(principal, code, ctx)

    async def _consume_recovery_code(self, principal: Principal, code: str, ctx: ProviderContext) -> bool:
        code_hash = hash_recovery_code(code)
        if not any(hmac.compare_digest(h, code_hash) for h in principal.mfa_recovery_codes):
            return False
        claimed = await ctx.user_service.mark_token_consumed(
            f"recovery:{principal.id}:{code_hash}", ctx.token_service.now() + RECOVERY_CLAIM_TTL
        )
        if not claimed:
            return False

        # список перечитывается: снимок principal мог устареть
        current = await ctx.user_service.find_by_id(principal.id)
        codes = current.mfa_recovery_codes if current is not None else principal.mfa_recovery_codes
        remaining = [h for h in codes if not hmac.compare_digest(h, code_hash)]
        await ctx.user_service.update(principal.id, mfa_recovery_codes=remaining)
        await warning(
            ctx.logger,
            "Recovery code used",
            component="mfa",
            principal_id=principal.id,
            remaining=len(remaining),
        )
        return True

    async def begin_enrollment(self, user_service: UserService, principal_id: str) -> dict[str, str]:
        """
        Начать подключение MFA: сгенерировать секрет.

        Returns:
            {"secret": ..., "provisioning_uri": ...} для ручного ввода или QR-кода

        Raises:
            ValidationError: принципал не найден или MFA уже включена
        """
        principal = await user_service.find_by_id(principal_id)
        if principal is None:
            raise ValidationError(f"Principal {principal_id} not found")
        if principal.mfa_enabled:
            raise ValidationError("MFA is already enabled")

        secret = pyotp.random_base32()
        await user_service.update(principal_id, mfa_secret=self._seal(secret), mfa_recovery_codes=[])
        uri = pyotp.TOTP(secret, interval=TOTP_INTERVAL).provisioning_uri(name=principal.identifier, issuer_name=self.issuer)
        return {"secret": secret, "provisioning_uri": uri}

    async def confirm_enrollment(
        self, user_service: UserService, principal_id: str, code: str, now: float
    ) -> list[str]:
        """
        Подтвердить подключение MFA кодом из приложения.

        Returns:
            Коды восстановления (показываются пользователю один раз)

        Raises:
            ValidationError: подключение не начато или MFA уже включена
            ProviderRejected: неверный код
        """
        principal = await user_service.find_by_id(principal_id)
        if principal is None:
            raise ValidationError(f"Principal {principal_id} not found")
        if principal.mfa_enabled:
            raise ValidationError("MFA is already enabled")
        secret = self._unseal(principal.mfa_secret)
        if secret is None:
            raise ValidationError("MFA enrollment has not been started")

        step = self._matching_step(secret, str(code).strip(), now)
        if step is None:
            raise ProviderRejected("Invalid verification code")

        recovery_codes = [secrets.token_hex(8).upper() for _ in range(RECOVERY_CODE_COUNT)]
        await user_service.update(
            principal_id,
            mfa_enabled=True,
            mfa_recovery_codes=[hash_recovery_code(c) for c in recovery_codes],
            attributes={**principal.attributes, "mfa_last_step": step},
        )
        return recovery_codes

    async def disable(self, user_service: UserService, principal_id: str, code: str, now: float) -> None:
        """
        Выключить MFA. Требует действующий TOTP-код.

        Raises:
            ProviderRejected: неверный код
        """
        principal = await user_service.find_by_id(principal_id)
        if principal is None or not principal.mfa_enabled:
            raise ValidationError("MFA is not enabled")
        secret = self._unseal(principal.mfa_secret)
        if secret is None or self._matching_step(secret, str(code).strip(), now) is None:
            raise ProviderRejected("Invalid verification code")

        attributes = dict(principal.attributes)
        attributes.pop("mfa_last_step", None)
        await user_service.update(
            principal_id,
            mfa_enabled=False,
            mfa_secret=None,
            mfa_recovery_codes=[],
            attributes=attributes,
        )


class MfaPlugin(BasePlugin):
    """Провайдер `totp`; операции подключения MFA доступны через методы плагина."""

    def __init__(self, **options: Any) -> None:
        super().__init__(**options)
        key = self.get_env_config("ENCRYPTION_KEY")
        fernet = None
        if key:
            try:
                fernet = Fernet(key.encode("utf-8"))
            except ValueError as e:
                raise ConfigurationError("MFA encryption key is not a valid Fernet key") from e
        issuer = self.get_env_config("ISSUER_NAME", DEFAULT_ISSUER) or DEFAULT_ISSUER
        self.provider = TotpProvider(issuer=issuer, fernet=fernet)

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name="mfa",
            version="0.1.0",
            description="TOTP второй фактор и коды восстановления",
            author="authcore",
        )

    async def on_load(self, engine: Optional[Any]) -> None:
        await super().on_load(engine)
        if not self.provider.encrypted:
            await warning(
                engine.logger if engine is not None else None,
                "MFA_ENCRYPTION_KEY not set, TOTP secrets are stored unencrypted",
                component="mfa",
            )

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]

    async def begin_enrollment(self, principal_id: str) -> dict[str, str]:
        return await self.provider.begin_enrollment(self.engine.user_service, principal_id)

    async def confirm_enrollment(self, principal_id: str, code: str) -> list[str]:
        codes = await self.provider.confirm_enrollment(
            self.engine.user_service, principal_id, code, self.engine.tokens.now()
        )
        await info(self.engine.logger, "MFA enabled", component="mfa", principal_id=principal_id)
        return codes

    async def disable(self, principal_id: str, code: str) -> None:
        await self.provider.disable(self.engine.user_service, principal_id, code, self.engine.tokens.now())
        await info(self.engine.logger, "MFA disabled", component="mfa", principal_id=principal_id)
