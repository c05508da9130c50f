import asyncio

import jwt
import pytest

from authcore.errors import ConfigurationError, UnknownKeyError
from authcore.key_manager import AUTH_SIGNING_KEYS_NAMESPACE, KEYRING_STORAGE_KEY, KeyManager


@pytest.mark.asyncio
async def test_initialize_creates_current_key(clock):
    km = KeyManager(clock=clock)
    assert not km.initialized
    with pytest.raises(ConfigurationError):
        km.current_key()

    await km.initialize()
    key = km.current_key()
    assert key.is_current
    assert key.version == 1
    assert key.algorithm == 'ES256'


@pytest.mark.asyncio
async def test_rotation_keeps_previous_key_in_grace(clock):
    km = KeyManager(clock=clock, grace_period='8d')
    await km.initialize()
    old = km.current_key()

    clock.advance(10)
    new = await km.rotate()

    assert new.version == old.version + 1
    assert km.current_key().kid == new.kid
    retired = km.get_key(old.kid)
    assert retired.retired_at == clock.now
    assert [k['kid'] for k in km.public_key_set()] == [new.kid, old.kid]

    # ровно один текущий ключ
    assert sum(1 for k in km.ring.keys.values() if k.is_current) == 1


@pytest.mark.asyncio
async def test_retired_key_unusable_after_grace(clock):
    km = KeyManager(clock=clock, grace_period='1h')
    await km.initialize()
    old = km.current_key()
    await km.rotate()

    clock.advance(3600)
    # grace истёк: ключ непригоден даже до prune()
    with pytest.raises(UnknownKeyError):
        km.get_key(old.kid)

    pruned = []
    km.add_prune_listener(pruned.extend)
    assert await km.prune() == [old.kid]
    assert pruned == [old.kid]
    assert old.kid not in km.ring.keys
    assert len(km.public_key_set()) == 1


@pytest.mark.asyncio
async def test_unknown_kid(clock):
    km = KeyManager(clock=clock)
    await km.initialize()
    with pytest.raises(UnknownKeyError):
        km.get_key('v99-deadbeef')
    with pytest.raises(UnknownKeyError):
        km.get_key(None)


@pytest.mark.asyncio
async def test_sign_and_verify_with_jwks(clock):
    km = KeyManager(clock=clock)
    await km.initialize()
    token = km.sign({'sub': 'p1'})

    header = jwt.get_unverified_header(token)
    assert header['kid'] == km.current_key().kid
    assert header['alg'] == 'ES256'

    jwks = km.jwks()
    assert jwks['keys'][0]['kid'] == header['kid']
    assert jwks['keys'][0]['kty'] == 'EC'
    public_key = jwt.PyJWK(jwks['keys'][0]).key
    assert jwt.decode(token, public_key, algorithms=['ES256'])['sub'] == 'p1'


@pytest.mark.asyncio
async def test_rs256(clock):
    km = KeyManager(algorithm='RS256', clock=clock)
    await km.initialize()
    token = km.sign({'sub': 'p1'})
    pem = km.public_key_set()[0]['publicKey']
    assert pem.startswith('-----BEGIN PUBLIC KEY-----')
    assert jwt.decode(token, pem, algorithms=['RS256'])['sub'] == 'p1'


def test_unsupported_algorithm():
    with pytest.raises(ConfigurationError):
        KeyManager(algorithm='HS256')


@pytest.mark.asyncio
async def test_keyring_persisted_and_reloaded(storage, clock):
    km = KeyManager(storage=storage, clock=clock)
    await km.initialize()
    await km.rotate()
    token = km.sign({'sub': 'p1'})

    record = await storage.get(AUTH_SIGNING_KEYS_NAMESPACE, KEYRING_STORAGE_KEY)
    assert len(record['keys']) == 2

    reloaded = KeyManager(storage=storage, clock=clock)
    await reloaded.initialize()
    assert reloaded.current_key().kid == km.current_key().kid
    kid = jwt.get_unverified_header(token)['kid']
    assert reloaded.get_key(kid).version == 2


@pytest.mark.asyncio
async def test_rotate_if_due(clock):
    km = KeyManager(clock=clock, rotation_interval='90d')
    await km.initialize()
    assert await km.rotate_if_due() is None

    clock.advance(90 * 86400)
    rotated = await km.rotate_if_due()
    assert rotated is not None
    assert km.current_key().kid == rotated.kid


@pytest.mark.asyncio
async def test_concurrent_rotations_keep_single_current(clock):
    km = KeyManager(clock=clock)
    await km.initialize()
    await asyncio.gather(*(km.rotate() for _ in range(5)))

    current = [k for k in km.ring.keys.values() if k.is_current]
    assert len(current) == 1
    assert current[0].version == 6
