import asyncio

import pytest

from authcore.errors import ValidationError
from authcore.user_service import Principal, StorageUserService, normalize_identifier


@pytest.fixture
def users(storage, clock):
    return StorageUserService(storage, clock=clock)


@pytest.mark.asyncio
async def test_create_and_find(users, clock):
    principal = await users.create('  Alice@Example.COM ', password_hash='h', labels={'beta'})

    assert principal.identifier == 'alice@example.com'
    assert principal.created_at == clock.now

    by_id = await users.find_by_id(principal.id)
    assert by_id.identifier == 'alice@example.com'
    assert by_id.labels == {'beta'}
    assert (await users.find_by_identifier('ALICE@example.com')).id == principal.id
    assert await users.find_by_identifier('bob@example.com') is None
    assert await users.find_by_identifier('') is None
    assert await users.find_by_id('') is None


@pytest.mark.asyncio
async def test_duplicate_identifier(users):
    await users.create('alice@example.com')
    with pytest.raises(ValidationError):
        await users.create('ALICE@example.com')


@pytest.mark.asyncio
async def test_concurrent_create_single_winner(users):
    results = await asyncio.gather(
        *(users.create('race@example.com') for _ in range(5)), return_exceptions=True
    )
    assert sum(1 for r in results if isinstance(r, Principal)) == 1
    assert sum(1 for r in results if isinstance(r, ValidationError)) == 4


@pytest.mark.asyncio
async def test_update(users, clock):
    principal = await users.create('alice@example.com')
    clock.advance(5)

    updated = await users.update(principal.id, verified=True, teams=['ops'], identifier='Alice2@example.com')
    assert updated.verified is True
    assert updated.teams == {'ops'}
    assert updated.updated_at == clock.now
    assert await users.find_by_identifier('alice@example.com') is None
    assert (await users.find_by_identifier('alice2@example.com')).id == principal.id


@pytest.mark.asyncio
async def test_update_rejections(users):
    principal = await users.create('alice@example.com')
    await users.create('bob@example.com')

    with pytest.raises(ValidationError):
        await users.update(principal.id, id='other')
    with pytest.raises(ValidationError):
        await users.update(principal.id, shoe_size=42)
    with pytest.raises(ValidationError):
        await users.update('missing', verified=True)
    with pytest.raises(ValidationError):
        await users.update(principal.id, identifier='bob@example.com')


@pytest.mark.asyncio
async def test_create_rejects_unknown_fields(users):
    with pytest.raises(ValidationError):
        await users.create('alice@example.com', favourite_colour='blue')


@pytest.mark.asyncio
async def test_mark_token_consumed(users, clock):
    assert await users.mark_token_consumed('nonce-1', clock.now + 60) is True
    assert await users.mark_token_consumed('nonce-1', clock.now + 60) is False

    await users.mark_token_consumed('nonce-2', clock.now + 3600)
    clock.advance(61)
    assert await users.purge_consumed_tokens() == 1
    assert await users.mark_token_consumed('nonce-2', clock.now + 3600) is False


def test_public_view_hides_credentials():
    principal = Principal(id='p1', identifier='a@example.com', password_hash='h', mfa_secret='s',
                          mfa_recovery_codes=['c'])
    view = principal.public_view()
    assert 'password_hash' not in view
    assert 'mfa_secret' not in view
    assert 'mfa_recovery_codes' not in view
    assert view['identifier'] == 'a@example.com'


def test_normalize_identifier():
    assert normalize_identifier(' Bob ') == 'bob'
    with pytest.raises(ValidationError):
        normalize_identifier('   ')
