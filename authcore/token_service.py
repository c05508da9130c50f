"""
TokenService — выпуск и проверка подписанных токенов (JWT).

Виды токенов: access, refresh, verification, password_reset, magic_link,
mfa_challenge. Одноразовые виды несут nonce, который при первой успешной
проверке атомарно помечается использованным через UserService.

Порядок проверки и соответствующие ошибки:
    структура        -> MalformedToken
    ключ (kid)       -> UnknownKeyError
    подпись          -> BadSignature
    срок действия    -> TokenExpired
    вид токена       -> TokenKindMismatch
    одноразовость    -> TokenAlreadyConsumed
"""

import binascii
import hashlib
import secrets
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Optional, Union

import jwt
from jwt.utils import base64url_decode

from .duration import duration_seconds, Duration
from .errors import (
    BadSignature,
    ConfigurationError,
    MalformedToken,
    TokenAlreadyConsumed,
    TokenExpired,
    TokenKindMismatch,
    UnknownKeyError,
    ValidationError,
)
from .key_manager import KeyManager
from .logger_helper import warning


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    MAGIC_LINK = "magic_link"
    MFA_CHALLENGE = "mfa_challenge"


SINGLE_USE_KINDS = frozenset({TokenKind.VERIFICATION, TokenKind.PASSWORD_RESET, TokenKind.MAGIC_LINK})
CACHEABLE_KINDS = frozenset({TokenKind.ACCESS})

RESERVED_CLAIMS = frozenset({"sub", "typ", "iat", "exp", "jti", "nonce"})

DEFAULT_TTLS: dict[TokenKind, Duration] = {
    TokenKind.ACCESS: "15m",
    TokenKind.REFRESH: "7d",
    TokenKind.VERIFICATION: "1d",
    TokenKind.PASSWORD_RESET: "1h",
    TokenKind.MAGIC_LINK: "15m",
    TokenKind.MFA_CHALLENGE: "5m",
}

_DECODE_OPTIONS = {
    "verify_signature": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


def _coerce_kind(kind: Union[TokenKind, str]) -> TokenKind:
    try:
        return TokenKind(kind)
    except ValueError as e:
        raise ValidationError(f"Unknown token kind: {kind!r}") from e


class TokenService:
    """
    Args:
        key_manager: инициализированный KeyManager
        user_service: UserService для пометки одноразовых nonce
        ttls: TTL по видам токенов (переопределяют DEFAULT_TTLS)
        clock: источник времени, по умолчанию time.time
        logger: AuthLogger или None
        cache_ttl: сколько секунд кэшировать результат проверки access-токена (0 - без кэша)
        cache_size: максимум записей в кэше
    """

    def __init__(
        self,
        key_manager: KeyManager,
        user_service: Optional[Any] = None,
        ttls: Optional[dict[Any, Duration]] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[Any] = None,
        cache_ttl: float = 30.0,
        cache_size: int = 1024,
    ):
        self._key_manager = key_manager
        self._user_service = user_service
        self._ttls: dict[TokenKind, int] = {
            kind: duration_seconds(value) for kind, value in DEFAULT_TTLS.items()
        }
        for kind, value in (ttls or {}).items():
            self._ttls[_coerce_kind(kind)] = duration_seconds(value)
        too_long = sorted(k.value for k, v in self._ttls.items() if v > key_manager.grace_period)
        if too_long:
            raise ConfigurationError(
                f"Token TTL exceeds key grace period ({key_manager.grace_period}s): {too_long}"
            )
        self._clock = clock or time.time
        self._logger = logger
        self._cache_ttl = cache_ttl
        self._cache_size = cache_size
        # sha256(token) -> (claims, kid, cached_until)
        self._cache: "OrderedDict[str, tuple[dict[str, Any], str, float]]" = OrderedDict()
        key_manager.add_prune_listener(self._on_keys_pruned)

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    def now(self) -> float:
        """Текущее время по часам сервиса (для провайдеров)."""
        return self._clock()

    def ttl_for(self, kind: Union[TokenKind, str]) -> int:
        return self._ttls[_coerce_kind(kind)]

    async def issue(
        self,
        kind: Union[TokenKind, str],
        subject: str,
        ttl: Optional[Duration] = None,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Выпустить токен.

        Args:
            kind: вид токена
            subject: principal id (claim "sub")
            ttl: выражение длительности ("15m") или секунды; по умолчанию TTL вида
            claims: дополнительные claims (зарезервированные имена запрещены)

        Raises:
            ValidationError: пустой subject, зарезервированный claim, неверный ttl
                или ttl длиннее grace period ключей
        """
        token_kind = _coerce_kind(kind)
        if not isinstance(subject, str) or not subject:
            raise ValidationError("subject must be non-empty string")
        extra = dict(claims or {})
        clash = RESERVED_CLAIMS & set(extra)
        if clash:
            raise ValidationError(f"Reserved claims cannot be overridden: {sorted(clash)}")

        ttl_seconds = self._ttls[token_kind] if ttl is None else duration_seconds(ttl)
        # токен не должен пережить ретированный ключ своей подписи
        if ttl_seconds > self._key_manager.grace_period:
            raise ValidationError(
                f"Token TTL {ttl_seconds}s exceeds key grace period {self._key_manager.grace_period}s"
            )
        issued_at = int(self._clock())
        payload: dict[str, Any] = {
            **extra,
            "sub": subject,
            "typ": token_kind.value,
            "iat": issued_at,
            "exp": issued_at + ttl_seconds,
            "jti": secrets.token_hex(16),
        }
        if token_kind in SINGLE_USE_KINDS:
            payload["nonce"] = secrets.token_urlsafe(24)
        return self._key_manager.sign(payload)

    def decode_unverified(self, token: str) -> dict[str, Any]:
        """Claims без проверки подписи (для диагностики)."""
        try:
            return jwt.decode(token, options=_DECODE_OPTIONS)
        except jwt.PyJWTError as e:
            raise MalformedToken(f"Malformed token: {e}") from e

    async def verify(self, token: str, expected_kind: Union[TokenKind, str]) -> dict[str, Any]:
        """
        Проверить токен и вернуть его claims.

        Raises:
            MalformedToken, UnknownKeyError, BadSignature, TokenExpired,
            TokenKindMismatch, TokenAlreadyConsumed
        """
        kind = _coerce_kind(expected_kind)
        if not isinstance(token, str):
            raise MalformedToken("Token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("Token must have three dot-separated segments")

        now = self._clock()
        cache_key = hashlib.sha256(token.encode("utf-8")).hexdigest()
        cached = self._cache_get(cache_key, now)
        if cached is not None:
            return self._check_claims(cached, kind, now)

        try:
            header = jwt.get_unverified_header(token)
            signature = base64url_decode(parts[2].encode("ascii"))
            signing_input = f"{parts[0]}.{parts[1]}".encode("ascii")
        except (jwt.PyJWTError, binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise MalformedToken(f"Malformed token: {e}") from e

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise MalformedToken("Token header has no key id")

        try:
            key = self._key_manager.get_key(kid)
        except UnknownKeyError:
            await warning(self._logger, "Token signed with unknown key", component="token_service", kid=kid)
            raise

        if header.get("alg") != key.algorithm or not self._key_manager.verify_with(kid, signing_input, signature):
            await warning(
                self._logger,
                "Token signature verification failed",
                component="token_service",
                kid=kid,
                alg=header.get("alg"),
            )
            raise BadSignature("Token signature is invalid")

        claims = self.decode_unverified(token)
        claims = self._check_claims(claims, kind, now)

        if kind in SINGLE_USE_KINDS:
            await self._consume(claims)
        elif kind in CACHEABLE_KINDS and self._cache_ttl > 0 and self._cache_size > 0:
            self._cache_put(cache_key, claims, kid, min(now + self._cache_ttl, float(claims["exp"])))
        return claims

    def _check_claims(self, claims: dict[str, Any], kind: TokenKind, now: float) -> dict[str, Any]:
        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedToken("Token has no valid 'exp' claim")
        if not isinstance(claims.get("sub"), str):
            raise MalformedToken("Token has no valid 'sub' claim")
        if now >= exp:
            raise TokenExpired("Token has expired")
        if claims.get("typ") != kind.value:
            raise TokenKindMismatch(kind.value, claims.get("typ"))
        return dict(claims)

    async def _consume(self, claims: dict[str, Any]) -> None:
        nonce = claims.get("nonce")
        if not isinstance(nonce, str) or not nonce:
            raise MalformedToken("Single-use token has no nonce")
        if self._user_service is None:
            raise ConfigurationError("Single-use tokens require a UserService")
        consumed = await self._user_service.mark_token_consumed(nonce, float(claims["exp"]))
        if not consumed:
            await warning(
                self._logger,
                "Replay of consumed single-use token",
                component="token_service",
                kind=claims.get("typ"),
                subject=claims.get("sub"),
            )
            raise TokenAlreadyConsumed("Token has already been used")

    # --- кэш проверок ---

    def _cache_get(self, cache_key: str, now: float) -> Optional[dict[str, Any]]:
        item = self._cache.get(cache_key)
        if item is None:
            return None
        claims, kid, cached_until = item
        if now >= cached_until or kid not in self._key_manager.ring.keys:
            self._cache.pop(cache_key, None)
            return None
        self._cache.move_to_end(cache_key)
        return claims

    def _cache_put(self, cache_key: str, claims: dict[str, Any], kid: str, cached_until: float) -> None:
        self._cache[cache_key] = (dict(claims), kid, cached_until)
        self._cache.move_to_end(cache_key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def _on_keys_pruned(self, kids: list[str]) -> None:
        pruned = set(kids)
        for cache_key in [k for k, (_, kid, _) in self._cache.items() if kid in pruned]:
            del self._cache[cache_key]

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
