import asyncio

import pytest
import pytest_asyncio

from authcore.errors import (
    SessionRevoked,
    StaleRefreshToken,
    TokenExpired,
    TokenKindMismatch,
)
from authcore.key_manager import KeyManager
from authcore.session_manager import SessionManager, StorageSessionStore, hash_token
from authcore.token_service import TokenService


@pytest_asyncio.fixture
async def sessions(storage, clock):
    km = KeyManager(clock=clock)
    await km.initialize()
    tokens = TokenService(km, clock=clock, cache_ttl=0)
    return SessionManager(tokens, StorageSessionStore(storage), race_window=2.0, clock=clock)


@pytest.mark.asyncio
async def test_create_session(sessions, clock):
    issued = await sessions.create('p1', claims={'role': 'admin'})

    session = issued.session
    assert session.principal_id == 'p1'
    assert session.generation == 0
    assert session.expires_at == clock.now + 7 * 86400
    assert session.refresh_token_hash == hash_token(issued.refresh_token)
    assert 'refresh_token_hash' not in session.public_view()

    claims = await sessions.authenticate(issued.access_token)
    assert claims['sub'] == 'p1'
    assert claims['sid'] == session.id
    assert claims['role'] == 'admin'
    assert await sessions.validate_access_token(issued.access_token) == 'p1'


@pytest.mark.asyncio
async def test_refresh_rotates_token(sessions):
    issued = await sessions.create('p1')
    rotated = await sessions.refresh(issued.refresh_token)

    assert rotated.refresh_token != issued.refresh_token
    assert rotated.session.generation == 1
    assert rotated.session.id == issued.session.id
    await sessions.authenticate(rotated.access_token)


@pytest.mark.asyncio
async def test_concurrent_refresh_single_winner(sessions):
    """Тест: из двух параллельных refresh одним токеном побеждает ровно один."""
    issued = await sessions.create('p1')

    results = await asyncio.gather(
        sessions.refresh(issued.refresh_token),
        sessions.refresh(issued.refresh_token),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, StaleRefreshToken)]
    assert len(winners) == 1
    assert len(losers) == 1
    # проигравший гонку не отзывает сессию
    assert losers[0].session_revoked is False

    session = await sessions.get(issued.session.id)
    assert session.revoked is False
    assert session.generation == 1
    await sessions.refresh(winners[0].refresh_token)


@pytest.mark.asyncio
async def test_replay_revokes_session(sessions, clock):
    issued = await sessions.create('p1')
    rotated = await sessions.refresh(issued.refresh_token)

    clock.advance(10)
    with pytest.raises(StaleRefreshToken) as exc_info:
        await sessions.refresh(issued.refresh_token)
    assert exc_info.value.session_revoked is True

    session = await sessions.get(issued.session.id)
    assert session.revoked is True
    assert session.revoked_reason == 'refresh_replay'

    with pytest.raises(SessionRevoked):
        await sessions.refresh(rotated.refresh_token)
    with pytest.raises(SessionRevoked):
        await sessions.authenticate(rotated.access_token)


@pytest.mark.asyncio
async def test_replay_of_older_generation_inside_window_revokes(sessions):
    issued = await sessions.create('p1')
    second = await sessions.refresh(issued.refresh_token)
    await sessions.refresh(second.refresh_token)

    # поколение 0 при текущем 2 - не гонка
    with pytest.raises(StaleRefreshToken) as exc_info:
        await sessions.refresh(issued.refresh_token)
    assert exc_info.value.session_revoked is True


@pytest.mark.asyncio
async def test_replay_without_revocation(storage, clock):
    km = KeyManager(clock=clock)
    await km.initialize()
    tokens = TokenService(km, clock=clock, cache_ttl=0)
    sessions = SessionManager(tokens, StorageSessionStore(storage), revoke_on_replay=False, clock=clock)

    issued = await sessions.create('p1')
    await sessions.refresh(issued.refresh_token)
    clock.advance(60)
    with pytest.raises(StaleRefreshToken) as exc_info:
        await sessions.refresh(issued.refresh_token)
    assert exc_info.value.session_revoked is False
    assert (await sessions.get(issued.session.id)).revoked is False


@pytest.mark.asyncio
async def test_access_token_is_not_a_refresh_token(sessions):
    issued = await sessions.create('p1')
    with pytest.raises(TokenKindMismatch):
        await sessions.refresh(issued.access_token)


@pytest.mark.asyncio
async def test_expired_session(sessions, clock):
    issued = await sessions.create('p1')
    clock.advance(7 * 86400)
    with pytest.raises(TokenExpired):
        await sessions.refresh(issued.refresh_token)


@pytest.mark.asyncio
async def test_revoke_and_revoke_all(sessions):
    first = await sessions.create('p1')
    second = await sessions.create('p1')
    await sessions.create('p2')

    revoked = await sessions.revoke(first.session.id)
    assert revoked.revoked_reason == 'logout'
    assert await sessions.revoke('missing') is None
    with pytest.raises(SessionRevoked):
        await sessions.authenticate(first.access_token)

    assert await sessions.revoke_all('p1', 'password_reset') == 1
    assert (await sessions.get(second.session.id)).revoked_reason == 'password_reset'
    assert await sessions.list_sessions('p1') == []
    assert len(await sessions.list_sessions('p1', include_inactive=True)) == 2
    assert len(await sessions.list_sessions('p2')) == 1

    assert await sessions.purge_expired('p1') == 2
    assert await sessions.list_sessions('p1', include_inactive=True) == []


@pytest.mark.asyncio
async def test_session_locks_do_not_accumulate(sessions):
    """Тест: блокировки сессий не копятся после refresh и revoke."""
    for _ in range(5):
        issued = await sessions.create('p1')
        await sessions.refresh(issued.refresh_token)
    await sessions.revoke_all('p1')

    assert len(sessions.store._locks) == 0

    # пока блокировка занята, она остаётся общей для всех ждущих
    lock = sessions.store._lock_for('sid')
    async with lock:
        assert sessions.store._lock_for('sid') is lock
    del lock
    assert len(sessions.store._locks) == 0
