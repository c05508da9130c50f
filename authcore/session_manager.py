"""
Session management — создание, ротация refresh-токенов и отзыв сессий.

Сессия: Active -> Active (refresh, меняется refresh-токен) -> Revoked.

Ротация refresh-токена линеаризуема: хранилище сравнивает хеш
предъявленного токена с текущим и подменяет его новым в одной операции
(compare-and-swap). Из двух конкурентных refresh с одним токеном
побеждает ровно один.

Политика устаревших refresh-токенов:
- токен предыдущего поколения в пределах race window после ротации -
  проигравший гонку: отказ, сессия сохраняется;
- любой другой устаревший токен: replay: сессия отзывается целиком
  (если revoke_on_replay=True).
"""

import asyncio
import hashlib
import hmac
import secrets
import time
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, NoReturn, Optional

from .duration import duration_seconds, Duration
from .errors import MalformedToken, SessionRevoked, StaleRefreshToken, TokenExpired
from .logger_helper import info, warning
from .token_service import TokenKind, TokenService

AUTH_SESSIONS_NAMESPACE = "auth_sessions"
AUTH_PRINCIPAL_SESSIONS_NAMESPACE = "auth_principal_sessions"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class Session:
    """Один аутентифицированный клиентский контекст."""

    id: str
    principal_id: str
    refresh_token_hash: str
    created_at: float
    expires_at: float
    generation: int = 0
    rotated_at: Optional[float] = None
    revoked: bool = False
    revoked_at: Optional[float] = None
    revoked_reason: Optional[str] = None
    claims: dict[str, Any] = field(default_factory=dict)

    def is_active(self, now: float) -> bool:
        return not self.revoked and now < self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})

    def public_view(self) -> dict[str, Any]:
        data = self.to_dict()
        data.pop("refresh_token_hash", None)
        return data


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    session: Session


class SessionStore(ABC):
    """Хранилище сессий. compare_and_swap_refresh обязан быть атомарным."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def insert(self, session: Session) -> None:
        ...

    @abstractmethod
    async def compare_and_swap_refresh(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        rotated_at: float,
        expires_at: float,
    ) -> Optional[Session]:
        """
        Заменить хеш refresh-токена, если текущий равен expected_hash.

        Returns:
            Обновлённая сессия или None, если хеш не совпал / сессия отозвана
        """

    @abstractmethod
    async def revoke(self, session_id: str, reason: str, revoked_at: float) -> Optional[Session]:
        """Пометить сессию отозванной. None если сессии нет."""

    @abstractmethod
    async def list_for_principal(self, principal_id: str) -> list[Session]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...


class StorageSessionStore(SessionStore):
    """
    SessionStore поверх Storage API.

    Атомарность CAS обеспечивается блокировкой на сессию; сессии разных
    идентификаторов не конкурируют между собой. Блокировка живёт, пока её
    кто-то держит или ждёт.
    """

    def __init__(self, storage: Any):
        self._storage = storage
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._index_lock = asyncio.Lock()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        data = await self._storage.get(AUTH_SESSIONS_NAMESPACE, session_id)
        return Session.from_dict(data) if data else None

    async def insert(self, session: Session) -> None:
        await self._storage.set(AUTH_SESSIONS_NAMESPACE, session.id, session.to_dict())
        async with self._index_lock:
            index = await self._storage.get(AUTH_PRINCIPAL_SESSIONS_NAMESPACE, session.principal_id) or {}
            session_ids = list(index.get("session_ids", []))
            if session.id not in session_ids:
                session_ids.append(session.id)
            await self._storage.set(
                AUTH_PRINCIPAL_SESSIONS_NAMESPACE, session.principal_id, {"session_ids": session_ids}
            )

    async def compare_and_swap_refresh(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        rotated_at: float,
        expires_at: float,
    ) -> Optional[Session]:
        async with self._lock_for(session_id):
            session = await self.get(session_id)
            if session is None or session.revoked:
                return None
            if not hmac.compare_digest(session.refresh_token_hash, expected_hash):
                return None
            session.refresh_token_hash = new_hash
            session.generation += 1
            session.rotated_at = rotated_at
            session.expires_at = expires_at
            await self._storage.set(AUTH_SESSIONS_NAMESPACE, session_id, session.to_dict())
            return session

    async def revoke(self, session_id: str, reason: str, revoked_at: float) -> Optional[Session]:
        async with self._lock_for(session_id):
            session = await self.get(session_id)
            if session is None:
                return None
            if not session.revoked:
                session.revoked = True
                session.revoked_at = revoked_at
                session.revoked_reason = reason
                await self._storage.set(AUTH_SESSIONS_NAMESPACE, session_id, session.to_dict())
            return session

    async def list_for_principal(self, principal_id: str) -> list[Session]:
        index = await self._storage.get(AUTH_PRINCIPAL_SESSIONS_NAMESPACE, principal_id) or {}
        sessions = []
        for session_id in index.get("session_ids", []):
            session = await self.get(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def delete(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            session = await self.get(session_id)
            if session is None:
                return False
            await self._storage.delete(AUTH_SESSIONS_NAMESPACE, session_id)
        async with self._index_lock:
            index = await self._storage.get(AUTH_PRINCIPAL_SESSIONS_NAMESPACE, session.principal_id) or {}
            session_ids = [sid for sid in index.get("session_ids", []) if sid != session_id]
            if session_ids:
                await self._storage.set(
                    AUTH_PRINCIPAL_SESSIONS_NAMESPACE, session.principal_id, {"session_ids": session_ids}
                )
            else:
                await self._storage.delete(AUTH_PRINCIPAL_SESSIONS_NAMESPACE, session.principal_id)
        return True


class SessionManager:
    """
    Жизненный цикл сессий.

    Args:
        token_service: TokenService для выпуска access/refresh токенов
        store: SessionStore
        refresh_ttl: время жизни сессии/refresh-токена (по умолчанию TTL refresh из TokenService)
        race_window: секунды после ротации, в течение которых токен прошлого
            поколения считается проигравшим гонку, а не replay
        revoke_on_replay: отзывать сессию при replay устаревшего токена
    """

    def __init__(
        self,
        token_service: TokenService,
        store: SessionStore,
        refresh_ttl: Optional[Duration] = None,
        race_window: float = 2.0,
        revoke_on_replay: bool = True,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[Any] = None,
    ):
        self._tokens = token_service
        self._store = store
        self._refresh_ttl = (
            duration_seconds(refresh_ttl) if refresh_ttl is not None
            else token_service.ttl_for(TokenKind.REFRESH)
        )
        self._race_window = race_window
        self._revoke_on_replay = revoke_on_replay
        self._clock = clock or time.time
        self._logger = logger

    @property
    def store(self) -> SessionStore:
        return self._store

    async def _issue_pair(self, session: Session) -> tuple[str, str]:
        access_token = await self._tokens.issue(
            TokenKind.ACCESS, session.principal_id, claims={**session.claims, "sid": session.id}
        )
        refresh_token = await self._tokens.issue(
            TokenKind.REFRESH,
            session.principal_id,
            ttl=self._refresh_ttl,
            claims={"sid": session.id, "gen": session.generation},
        )
        return access_token, refresh_token

    async def create(self, principal_id: str, claims: Optional[dict[str, Any]] = None) -> SessionTokens:
        """
        Создать сессию и выпустить пару токенов.

        Args:
            principal_id: ID принципала
            claims: дополнительные claims access-токена (role и т.п.)
        """
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(24),
            principal_id=principal_id,
            refresh_token_hash="",
            created_at=now,
            expires_at=now + self._refresh_ttl,
            claims=dict(claims or {}),
        )
        access_token, refresh_token = await self._issue_pair(session)
        session.refresh_token_hash = hash_token(refresh_token)
        await self._store.insert(session)
        await info(
            self._logger,
            "Session created",
            component="session_manager",
            session_id=session.id,
            principal_id=principal_id,
        )
        return SessionTokens(access_token, refresh_token, session)

    async def refresh(self, refresh_token: str) -> SessionTokens:
        """
        Обменять refresh-токен на новую пару (ротация).

        Raises:
            TokenError: невалидный refresh-токен (Expired, BadSignature, ...)
            SessionRevoked: сессия отозвана или не существует
            StaleRefreshToken: токен уже ротирован (session_revoked=True при replay)
        """
        claims = await self._tokens.verify(refresh_token, TokenKind.REFRESH)
        session_id = claims.get("sid")
        if not isinstance(session_id, str) or not session_id:
            raise MalformedToken("Refresh token is not bound to a session")

        session = await self._store.get(session_id)
        now = self._clock()
        if session is None or session.revoked:
            raise SessionRevoked("Session is revoked or does not exist")
        if now >= session.expires_at:
            raise TokenExpired("Session has expired")

        next_session = Session.from_dict(session.to_dict())
        next_session.generation = session.generation + 1
        access_token, new_refresh_token = await self._issue_pair(next_session)

        updated = await self._store.compare_and_swap_refresh(
            session_id,
            expected_hash=hash_token(refresh_token),
            new_hash=hash_token(new_refresh_token),
            rotated_at=now,
            expires_at=now + self._refresh_ttl,
        )
        if updated is None:
            await self._handle_stale(session_id, claims, now)

        await info(
            self._logger,
            "Session refreshed",
            component="session_manager",
            session_id=session_id,
            generation=updated.generation,
        )
        return SessionTokens(access_token, new_refresh_token, updated)

    async def _handle_stale(self, session_id: str, claims: dict[str, Any], now: float) -> NoReturn:
        current = await self._store.get(session_id)
        if current is None or current.revoked:
            raise SessionRevoked("Session is revoked or does not exist")

        presented_generation = claims.get("gen")
        lost_race = (
            presented_generation == current.generation - 1
            and current.rotated_at is not None
            and now - current.rotated_at <= self._race_window
        )
        if lost_race or not self._revoke_on_replay:
            raise StaleRefreshToken()

        await self._store.revoke(session_id, "refresh_replay", now)
        await warning(
            self._logger,
            "Refresh token replay detected, session revoked",
            component="session_manager",
            session_id=session_id,
            presented_generation=presented_generation,
            current_generation=current.generation,
        )
        raise StaleRefreshToken("Refresh token replay detected; session revoked", session_revoked=True)

    async def revoke(self, session_id: str, reason: str = "logout") -> Optional[Session]:
        """Отозвать сессию. Возвращает сессию или None, если её нет."""
        session = await self._store.revoke(session_id, reason, self._clock())
        if session is not None:
            await info(
                self._logger,
                "Session revoked",
                component="session_manager",
                session_id=session_id,
                reason=reason,
            )
        return session

    async def revoke_all(self, principal_id: str, reason: str = "revoke_all") -> int:
        """Отозвать все активные сессии принципала. Возвращает их количество."""
        count = 0
        now = self._clock()
        for session in await self._store.list_for_principal(principal_id):
            if session.revoked:
                continue
            if await self._store.revoke(session.id, reason, now) is not None:
                count += 1
        return count

    async def authenticate(self, access_token: str) -> dict[str, Any]:
        """
        Проверить access-токен и активность его сессии.

        Returns:
            claims токена

        Raises:
            TokenError: невалидный токен
            SessionRevoked: сессия отозвана или истекла
        """
        claims = await self._tokens.verify(access_token, TokenKind.ACCESS)
        session_id = claims.get("sid")
        if session_id is not None:
            session = await self._store.get(session_id)
            if session is None or not session.is_active(self._clock()):
                raise SessionRevoked("Session is no longer active")
        return claims

    async def validate_access_token(self, access_token: str) -> str:
        """Проверить access-токен и вернуть principal id."""
        claims = await self.authenticate(access_token)
        return claims["sub"]

    async def get(self, session_id: str) -> Optional[Session]:
        return await self._store.get(session_id)

    async def list_sessions(self, principal_id: str, include_inactive: bool = False) -> list[Session]:
        now = self._clock()
        sessions = await self._store.list_for_principal(principal_id)
        if include_inactive:
            return sessions
        return [s for s in sessions if s.is_active(now)]

    async def purge_expired(self, principal_id: str) -> int:
        """Удалить истёкшие и отозванные сессии принципала."""
        now = self._clock()
        removed = 0
        for session in await self._store.list_for_principal(principal_id):
            if not session.is_active(now) and await self._store.delete(session.id):
                removed += 1
        return removed
