"""
KeyManager — асимметричные ключи подписи токенов и их ротация.

Набор ключей хранится как неизменяемый снимок KeyRing: словарь kid -> ключ
и kid текущего ключа. Ротация и очистка строят новый снимок и подменяют
ссылку одним присваиванием, поэтому читатель всегда видит ровно один
текущий ключ. Писатели (rotate/prune) сериализуются через asyncio.Lock.

Ретированные ключи остаются пригодными для проверки подписи в течение
grace period, который должен перекрывать максимальный TTL токенов.
"""

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, replace, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import jwt
from jwt.algorithms import get_default_algorithms
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .duration import duration_seconds, Duration
from .errors import ConfigurationError, UnknownKeyError
from .logger_helper import info

AUTH_SIGNING_KEYS_NAMESPACE = "auth_signing_keys"
KEYRING_STORAGE_KEY = "keyring"

SUPPORTED_ALGORITHMS = ("ES256", "RS256")


@dataclass(frozen=True)
class SigningKey:
    """Пара ключей с версией и идентификатором (kid)."""

    kid: str
    version: int
    algorithm: str
    private_key: Any = field(repr=False)
    public_key: Any = field(repr=False)
    created_at: float
    retired_at: Optional[float] = None

    @property
    def is_current(self) -> bool:
        return self.retired_at is None

    def public_pem(self) -> str:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def public_jwk(self) -> dict[str, Any]:
        algorithm = get_default_algorithms()[self.algorithm]
        jwk = json.loads(algorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.kid, "alg": self.algorithm, "use": "sig"})
        return jwk

    def to_record(self) -> dict[str, Any]:
        """Сериализация для хранилища (приватный ключ в PKCS8 PEM)."""
        private_pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        return {
            "kid": self.kid,
            "version": self.version,
            "algorithm": self.algorithm,
            "private_key": private_pem,
            "created_at": self.created_at,
            "retired_at": self.retired_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "SigningKey":
        private_key = serialization.load_pem_private_key(
            record["private_key"].encode("ascii"), password=None
        )
        return cls(
            kid=record["kid"],
            version=int(record["version"]),
            algorithm=record["algorithm"],
            private_key=private_key,
            public_key=private_key.public_key(),
            created_at=float(record["created_at"]),
            retired_at=record.get("retired_at"),
        )


@dataclass(frozen=True)
class KeyRing:
    """
    Неизменяемый снимок набора ключей.

    Инвариант: если current_kid задан, ключ с этим kid присутствует в keys
    и только он не ретирован.
    """

    keys: Mapping[str, SigningKey] = field(default_factory=lambda: MappingProxyType({}))
    current_kid: Optional[str] = None
    last_version: int = 0

    def current(self) -> SigningKey:
        if self.current_kid is None:
            raise ConfigurationError("KeyManager is not initialized: no current signing key")
        return self.keys[self.current_kid]

    def rotated(self, new_key: SigningKey, now: float) -> "KeyRing":
        """Новый снимок, где new_key текущий, а прежний текущий ретирован."""
        if new_key.kid in self.keys:
            raise ConfigurationError(f"Signing key id {new_key.kid!r} is already used")
        keys = dict(self.keys)
        if self.current_kid is not None:
            keys[self.current_kid] = replace(keys[self.current_kid], retired_at=now)
        keys[new_key.kid] = new_key
        return KeyRing(
            keys=MappingProxyType(keys),
            current_kid=new_key.kid,
            last_version=max(self.last_version, new_key.version),
        )

    def pruned(self, now: float, grace_seconds: float) -> tuple["KeyRing", list[str]]:
        """Снимок без ретированных ключей, чей grace period истёк."""
        expired = [
            kid for kid, key in self.keys.items()
            if key.retired_at is not None and key.retired_at + grace_seconds <= now
        ]
        if not expired:
            return self, []
        keys = {kid: key for kid, key in self.keys.items() if kid not in expired}
        return (
            KeyRing(MappingProxyType(keys), self.current_kid, self.last_version),
            expired,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "current_kid": self.current_kid,
            "last_version": self.last_version,
            "keys": [key.to_record() for key in self.keys.values()],
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "KeyRing":
        keys = {item["kid"]: SigningKey.from_record(item) for item in record.get("keys", [])}
        current_kid = record.get("current_kid")
        if current_kid is not None and current_kid not in keys:
            raise ConfigurationError(f"Persisted keyring references missing key {current_kid!r}")
        return cls(MappingProxyType(keys), current_kid, int(record.get("last_version", 0)))


def generate_signing_key(algorithm: str, version: int, now: float, rsa_key_size: int = 2048) -> SigningKey:
    """Сгенерировать новую пару ключей (CPU-bound, вызывать вне event loop)."""
    if algorithm == "ES256":
        private_key = ec.generate_private_key(ec.SECP256R1())
    elif algorithm == "RS256":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=rsa_key_size)
    else:
        raise ConfigurationError(f"Unsupported signing algorithm: {algorithm!r}")
    return SigningKey(
        kid=f"v{version}-{secrets.token_hex(8)}",
        version=version,
        algorithm=algorithm,
        private_key=private_key,
        public_key=private_key.public_key(),
        created_at=now,
    )


PruneListener = Callable[[list[str]], None]


class KeyManager:
    """
    Менеджер ключей подписи.

    Args:
        algorithm: "ES256" (по умолчанию) или "RS256"
        rotation_interval: возраст текущего ключа, после которого initialize()
            и rotate_if_due() выполняют ротацию
        grace_period: сколько ретированный ключ остаётся пригодным для проверки
        storage: Storage для персистентности (None - ключи только в памяти)
        clock: источник времени, по умолчанию time.time
        logger: AuthLogger или None
    """

    def __init__(
        self,
        algorithm: str = "ES256",
        rotation_interval: Duration = "90d",
        grace_period: Duration = "8d",
        storage: Optional[Any] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[Any] = None,
        rsa_key_size: int = 2048,
    ):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"Unsupported signing algorithm: {algorithm!r}")
        self._algorithm = algorithm
        self._rotation_interval = duration_seconds(rotation_interval)
        self._grace_period = duration_seconds(grace_period)
        self._storage = storage
        self._clock = clock or time.time
        self._logger = logger
        self._rsa_key_size = rsa_key_size
        self._ring = KeyRing()
        self._write_lock = asyncio.Lock()
        self._prune_listeners: list[PruneListener] = []

    @property
    def ring(self) -> KeyRing:
        """Текущий снимок набора ключей."""
        return self._ring

    @property
    def grace_period(self) -> int:
        return self._grace_period

    @property
    def initialized(self) -> bool:
        return self._ring.current_kid is not None

    def add_prune_listener(self, listener: PruneListener) -> None:
        """Подписаться на удаление ключей (например, для сброса кэша проверок)."""
        self._prune_listeners.append(listener)

    async def initialize(self) -> None:
        """
        Загрузить ключи из хранилища или создать первый ключ.

        Если текущий ключ старше rotation_interval, выполняется ротация.
        """
        async with self._write_lock:
            if self._storage is not None:
                record = await self._storage.get(AUTH_SIGNING_KEYS_NAMESPACE, KEYRING_STORAGE_KEY)
                if record:
                    self._ring = KeyRing.from_record(record)
            if self._ring.current_kid is None:
                await self._rotate_locked()
                await info(
                    self._logger,
                    "Generated initial signing key",
                    component="key_manager",
                    kid=self._ring.current_kid,
                    algorithm=self._algorithm,
                )
        await self.rotate_if_due()
        await self.prune()

    def current_key(self) -> SigningKey:
        """
        Raises:
            ConfigurationError: если initialize() ещё не вызывался
        """
        return self._ring.current()

    async def rotate(self) -> SigningKey:
        """
        Сгенерировать новый ключ, сделать его текущим, ретировать прежний.

        Returns:
            Новый текущий ключ
        """
        async with self._write_lock:
            previous = self._ring.current_kid
            key = await self._rotate_locked()
        await info(
            self._logger,
            "Signing key rotated",
            component="key_manager",
            kid=key.kid,
            previous_kid=previous,
        )
        await self.prune()
        return key

    async def rotate_if_due(self) -> Optional[SigningKey]:
        """Ротация, если текущий ключ старше rotation_interval."""
        ring = self._ring
        if ring.current_kid is None:
            return None
        if self._clock() - ring.current().created_at < self._rotation_interval:
            return None
        return await self.rotate()

    async def _rotate_locked(self) -> SigningKey:
        version = self._ring.last_version + 1
        now = self._clock()
        key = await asyncio.to_thread(
            generate_signing_key, self._algorithm, version, now, self._rsa_key_size
        )
        ring = self._ring.rotated(key, now)
        # Сначала фиксируем в хранилище, затем публикуем снимок
        await self._persist(ring)
        self._ring = ring
        return key

    async def prune(self) -> list[str]:
        """
        Удалить ретированные ключи с истёкшим grace period.

        Returns:
            Список удалённых kid
        """
        async with self._write_lock:
            ring, removed = self._ring.pruned(self._clock(), self._grace_period)
            if not removed:
                return []
            await self._persist(ring)
            self._ring = ring
        for listener in self._prune_listeners:
            listener(removed)
        await info(self._logger, "Pruned retired signing keys", component="key_manager", kids=",".join(removed))
        return removed

    async def _persist(self, ring: KeyRing) -> None:
        if self._storage is None:
            return
        await self._storage.set(AUTH_SIGNING_KEYS_NAMESPACE, KEYRING_STORAGE_KEY, ring.to_record())

    def _is_verifiable(self, key: SigningKey, now: float) -> bool:
        return key.retired_at is None or key.retired_at + self._grace_period > now

    def get_key(self, kid: Optional[str]) -> SigningKey:
        """
        Ключ, пригодный для проверки подписи.

        Raises:
            UnknownKeyError: kid неизвестен или его grace period истёк
        """
        key = self._ring.keys.get(kid) if kid else None
        if key is None or not self._is_verifiable(key, self._clock()):
            raise UnknownKeyError(kid)
        return key

    def public_key_set(self) -> list[dict[str, Any]]:
        """
        Публичные ключи для внешней проверки токенов.

        Returns:
            [{"kid", "publicKey" (PEM), "algorithm"}, ...] - текущий ключ
            и ретированные ключи в пределах grace period
        """
        now = self._clock()
        keys = sorted(self._ring.keys.values(), key=lambda k: k.version, reverse=True)
        return [
            {"kid": key.kid, "publicKey": key.public_pem(), "algorithm": key.algorithm}
            for key in keys
            if self._is_verifiable(key, now)
        ]

    def jwks(self) -> dict[str, Any]:
        """Тот же набор ключей в формате JWKS."""
        now = self._clock()
        keys = sorted(self._ring.keys.values(), key=lambda k: k.version, reverse=True)
        return {"keys": [key.public_jwk() for key in keys if self._is_verifiable(key, now)]}

    def verify_with(self, kid: Optional[str], signing_input: bytes, signature: bytes) -> bool:
        """
        Проверить подпись ключом kid.

        Returns:
            True если подпись верна

        Raises:
            UnknownKeyError: если ключ неизвестен (отдельно от неверной подписи)
        """
        key = self.get_key(kid)
        algorithm = get_default_algorithms()[key.algorithm]
        return bool(algorithm.verify(signing_input, key.public_key, signature))

    def sign(self, payload: dict[str, Any], headers: Optional[dict[str, Any]] = None) -> str:
        """
        Подписать claims текущим ключом.

        Снимок берётся один раз: ротация во время подписи не влияет
        на выбранный ключ.
        """
        key = self._ring.current()
        all_headers = dict(headers or {})
        all_headers["kid"] = key.kid
        return jwt.encode(payload, key.private_key, algorithm=key.algorithm, headers=all_headers)
