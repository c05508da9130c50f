"""
UserService — контракт доступа к принципалам и реализация поверх Storage.

Движок и провайдеры не обращаются к хранилищу напрямую: только через
этот контракт (find_by_id, find_by_identifier, create, update,
mark_token_consumed).
"""

import hashlib
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Optional

from .errors import ValidationError

AUTH_USERS_NAMESPACE = "auth_users"
AUTH_USER_IDENTIFIERS_NAMESPACE = "auth_user_identifiers"
AUTH_CONSUMED_TOKENS_NAMESPACE = "auth_consumed_tokens"

# Поля, которые нельзя менять через update()
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
_SET_FIELDS = ("labels", "teams", "permissions")


def normalize_identifier(identifier: str) -> str:
    """Идентификаторы (email/username) сравниваются без учёта регистра и пробелов."""
    if not isinstance(identifier, str) or not identifier.strip():
        raise ValidationError("identifier must be non-empty string")
    return identifier.strip().lower()


@dataclass
class Principal:
    """Аутентифицируемая сущность (пользователь/админ)."""

    id: str
    identifier: str
    password_hash: Optional[str] = None
    verified: bool = False
    role: str = "user"
    labels: set[str] = field(default_factory=set)
    teams: set[str] = field(default_factory=set)
    permissions: set[str] = field(default_factory=set)
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    mfa_recovery_codes: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_login_at: Optional[float] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _SET_FIELDS:
            data[name] = sorted(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Principal":
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        for name in _SET_FIELDS:
            values[name] = set(values.get(name) or ())
        values["mfa_recovery_codes"] = list(values.get("mfa_recovery_codes") or ())
        values["attributes"] = dict(values.get("attributes") or {})
        return cls(**values)

    def public_view(self) -> dict[str, Any]:
        """Представление без учётных данных (хеши, MFA-секреты)."""
        data = self.to_dict()
        for secret_field in ("password_hash", "mfa_secret", "mfa_recovery_codes"):
            data.pop(secret_field, None)
        return data


class UserService(ABC):
    """Контракт коллаборатора хранения принципалов."""

    @abstractmethod
    async def find_by_id(self, principal_id: str) -> Optional[Principal]:
        ...

    @abstractmethod
    async def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        ...

    @abstractmethod
    async def create(self, identifier: str, **fields: Any) -> Principal:
        """
        Создать принципала.

        Raises:
            ValidationError: если идентификатор уже занят
        """

    @abstractmethod
    async def update(self, principal_id: str, **changes: Any) -> Principal:
        """
        Изменить поля принципала.

        Raises:
            ValidationError: если принципал не найден или поле неизменяемое
        """

    @abstractmethod
    async def mark_token_consumed(self, nonce: str, expires_at: float) -> bool:
        """
        Атомарно отметить одноразовый nonce использованным.

        Returns:
            True если nonce отмечен этим вызовом, False если уже был использован
        """


class StorageUserService(UserService):
    """
    UserService поверх Storage API.

    Уникальность идентификатора и одноразовость nonce обеспечиваются
    атомарным Storage.set_if_absent().
    """

    def __init__(self, storage: Any, clock: Any = None):
        self._storage = storage
        self._clock = clock or time.time

    async def find_by_id(self, principal_id: str) -> Optional[Principal]:
        if not principal_id:
            return None
        data = await self._storage.get(AUTH_USERS_NAMESPACE, principal_id)
        return Principal.from_dict(data) if data else None

    async def find_by_identifier(self, identifier: str) -> Optional[Principal]:
        try:
            key = normalize_identifier(identifier)
        except ValidationError:
            return None
        index = await self._storage.get(AUTH_USER_IDENTIFIERS_NAMESPACE, key)
        if not index:
            return None
        return await self.find_by_id(index.get("user_id"))

    async def create(self, identifier: str, **fields: Any) -> Principal:
        key = normalize_identifier(identifier)
        unknown = set(fields) - set(Principal.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Unknown principal fields: {sorted(unknown)}")
        now = self._clock()
        fields.pop("identifier", None)
        principal_id = fields.pop("id", None) or secrets.token_hex(16)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        principal = Principal(id=principal_id, identifier=key, **fields)

        claimed = await self._storage.set_if_absent(
            AUTH_USER_IDENTIFIERS_NAMESPACE, key, {"user_id": principal_id}
        )
        if not claimed:
            raise ValidationError("Identifier is already registered")
        try:
            await self._storage.set(AUTH_USERS_NAMESPACE, principal_id, principal.to_dict())
        except Exception:
            await self._storage.delete(AUTH_USER_IDENTIFIERS_NAMESPACE, key)
            raise
        return principal

    async def update(self, principal_id: str, **changes: Any) -> Principal:
        bad = set(changes) & _IMMUTABLE_FIELDS
        if bad:
            raise ValidationError(f"Fields cannot be changed: {sorted(bad)}")
        unknown = set(changes) - set(Principal.__dataclass_fields__)
        if unknown:
            raise ValidationError(f"Unknown principal fields: {sorted(unknown)}")

        principal = await self.find_by_id(principal_id)
        if principal is None:
            raise ValidationError(f"Principal {principal_id} not found")

        new_identifier = changes.get("identifier")
        if new_identifier is not None:
            new_key = normalize_identifier(new_identifier)
            changes["identifier"] = new_key
            if new_key != principal.identifier:
                claimed = await self._storage.set_if_absent(
                    AUTH_USER_IDENTIFIERS_NAMESPACE, new_key, {"user_id": principal_id}
                )
                if not claimed:
                    raise ValidationError("Identifier is already registered")
                await self._storage.delete(AUTH_USER_IDENTIFIERS_NAMESPACE, principal.identifier)

        for name, value in changes.items():
            if name in _SET_FIELDS:
                value = set(value)
            setattr(principal, name, value)
        principal.updated_at = self._clock()
        await self._storage.set(AUTH_USERS_NAMESPACE, principal_id, principal.to_dict())
        return principal

    async def mark_token_consumed(self, nonce: str, expires_at: float) -> bool:
        if not nonce:
            raise ValidationError("nonce must be non-empty")
        key = hashlib.sha256(nonce.encode("utf-8")).hexdigest()
        return await self._storage.set_if_absent(
            AUTH_CONSUMED_TOKENS_NAMESPACE,
            key,
            {"expires_at": expires_at, "consumed_at": self._clock()},
        )

    async def purge_consumed_tokens(self) -> int:
        """
        Удалить отметки nonce, чьи токены уже истекли.

        Такие токены отклоняются по exp раньше проверки nonce, поэтому
        отметка больше не нужна.
        """
        now = self._clock()
        removed = 0
        for key in await self._storage.list_keys(AUTH_CONSUMED_TOKENS_NAMESPACE):
            record = await self._storage.get(AUTH_CONSUMED_TOKENS_NAMESPACE, key)
            if record is None or float(record.get("expires_at", 0)) <= now:
                if await self._storage.delete(AUTH_CONSUMED_TOKENS_NAMESPACE, key):
                    removed += 1
        return removed

    async def list_principals(self) -> list[Principal]:
        result = []
        for key in await self._storage.list_keys(AUTH_USERS_NAMESPACE):
            data = await self._storage.get(AUTH_USERS_NAMESPACE, key)
            if data:
                result.append(Principal.from_dict(data))
        return result
