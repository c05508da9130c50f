import asyncio

import pyotp
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from authcore.errors import (
    ConfigurationError,
    ProviderRejected,
    RateLimited,
    TokenAlreadyConsumed,
    ValidationError,
)
from plugins.mfa.plugin import MfaPlugin, RECOVERY_CODE_COUNT, hash_recovery_code

PASSWORD = 'Correct-Horse-9'
CREDENTIALS = {'email': 'alice@example.com', 'password': PASSWORD}


@pytest_asyncio.fixture
async def mfa(engine):
    plugin = MfaPlugin(encryption_key=Fernet.generate_key().decode())
    await engine.register_plugin(plugin)
    return plugin


@pytest_asyncio.fixture
async def enrolled(engine, alice, mfa, clock):
    """Включённая MFA: (secret, recovery_codes)."""
    enrollment = await mfa.begin_enrollment(alice.id)
    secret = enrollment['secret']
    codes = await mfa.confirm_enrollment(alice.id, pyotp.TOTP(secret).at(clock.now))
    # следующий шаг, чтобы код подтверждения не совпадал с кодом входа
    clock.advance(30)
    return secret, codes


def current_code(secret, clock):
    return pyotp.TOTP(secret).at(clock.now)


def wrong_code(secret, clock):
    return '000000' if current_code(secret, clock) != '000000' else '111111'


@pytest.mark.asyncio
async def test_enrollment(engine, alice, mfa, clock):
    enrollment = await mfa.begin_enrollment(alice.id)
    assert enrollment['provisioning_uri'].startswith('otpauth://totp/')
    assert 'alice%40example.com' in enrollment['provisioning_uri']

    stored = await engine.user_service.find_by_id(alice.id)
    assert stored.mfa_enabled is False
    # секрет хранится зашифрованным
    assert stored.mfa_secret and stored.mfa_secret != enrollment['secret']

    with pytest.raises(ProviderRejected):
        await mfa.confirm_enrollment(alice.id, wrong_code(enrollment['secret'], clock))

    codes = await mfa.confirm_enrollment(alice.id, current_code(enrollment['secret'], clock))
    assert len(codes) == RECOVERY_CODE_COUNT
    assert len(set(codes)) == RECOVERY_CODE_COUNT

    stored = await engine.user_service.find_by_id(alice.id)
    assert stored.mfa_enabled is True
    assert stored.mfa_recovery_codes == [hash_recovery_code(c) for c in codes]

    with pytest.raises(ValidationError):
        await mfa.begin_enrollment(alice.id)


@pytest.mark.asyncio
async def test_login_requires_second_factor(engine, alice, enrolled, clock):
    secret, _ = enrolled
    events = []

    async def handler(event, payload):
        events.append(event)

    engine.subscribe('*', handler)

    result = await engine.login('password', CREDENTIALS)
    assert result.mfa_required is True
    assert result.authenticated is False
    assert result.challenge_token
    assert events == ['login.mfa_required']

    final = await engine.verify_mfa(result.challenge_token, current_code(secret, clock))
    assert final.authenticated
    claims = await engine.sessions.authenticate(final.access_token)
    assert claims['amr'] == ['password', 'totp']
    assert events[-2:] == ['session.created', 'login.success']


@pytest.mark.asyncio
async def test_totp_code_not_accepted_twice(engine, alice, enrolled, clock):
    secret, _ = enrolled
    code = current_code(secret, clock)

    first = await engine.login('password', CREDENTIALS)
    await engine.verify_mfa(first.challenge_token, code)

    second = await engine.login('password', CREDENTIALS)
    with pytest.raises(ProviderRejected):
        await engine.verify_mfa(second.challenge_token, code)


@pytest.mark.asyncio
async def test_enrollment_code_not_reusable_for_login(engine, alice, mfa, clock):
    enrollment = await mfa.begin_enrollment(alice.id)
    code = current_code(enrollment['secret'], clock)
    await mfa.confirm_enrollment(alice.id, code)

    result = await engine.login('password', CREDENTIALS)
    with pytest.raises(ProviderRejected):
        await engine.verify_mfa(result.challenge_token, code)


@pytest.mark.asyncio
async def test_recovery_code_single_use(engine, alice, enrolled):
    _, codes = enrolled

    result = await engine.login('password', CREDENTIALS)
    # формат ввода не важен
    final = await engine.verify_mfa(result.challenge_token, codes[0].lower())
    assert final.authenticated

    stored = await engine.user_service.find_by_id(alice.id)
    assert len(stored.mfa_recovery_codes) == RECOVERY_CODE_COUNT - 1

    result = await engine.login('password', CREDENTIALS)
    with pytest.raises(ProviderRejected):
        await engine.verify_mfa(result.challenge_token, codes[0])


@pytest.mark.asyncio
async def test_challenge_single_use(engine, alice, enrolled):
    _, codes = enrolled
    result = await engine.login('password', CREDENTIALS)
    await engine.verify_mfa(result.challenge_token, codes[0])

    with pytest.raises(TokenAlreadyConsumed):
        await engine.verify_mfa(result.challenge_token, codes[1])


@pytest.mark.asyncio
async def test_mfa_attempts_throttled(engine, alice, enrolled, clock):
    secret, _ = enrolled
    result = await engine.login('password', CREDENTIALS)
    wrong = wrong_code(secret, clock)

    for _ in range(3):
        with pytest.raises(ProviderRejected):
            await engine.verify_mfa(result.challenge_token, wrong)
    with pytest.raises(RateLimited):
        await engine.verify_mfa(result.challenge_token, current_code(secret, clock))


@pytest.mark.asyncio
async def test_disable(engine, alice, mfa, enrolled, clock):
    secret, _ = enrolled
    with pytest.raises(ProviderRejected):
        await mfa.disable(alice.id, 'nope')

    await mfa.disable(alice.id, current_code(secret, clock))
    stored = await engine.user_service.find_by_id(alice.id)
    assert stored.mfa_enabled is False
    assert stored.mfa_secret is None

    assert (await engine.login('password', CREDENTIALS)).authenticated


@pytest.mark.asyncio
async def test_totp_is_not_a_first_factor(engine, mfa):
    with pytest.raises(ValidationError):
        await engine.login('totp', {'code': '123456'})


@pytest.mark.asyncio
async def test_unencrypted_secret_warns(engine, logger, log_stream, alice):
    plugin = MfaPlugin()
    await engine.register_plugin(plugin)
    assert 'stored unencrypted' in log_stream.getvalue()

    enrollment = await plugin.begin_enrollment(alice.id)
    stored = await engine.user_service.find_by_id(alice.id)
    assert stored.mfa_secret == enrollment['secret']


def test_invalid_encryption_key():
    with pytest.raises(ConfigurationError):
        MfaPlugin(encryption_key='not-a-fernet-key')


def test_hash_recovery_code_normalizes():
    assert hash_recovery_code('ab12-cd34 ef56') == hash_recovery_code('AB12CD34EF56')


async def verify_concurrently(engine, code):
    first = await engine.login('password', CREDENTIALS)
    second = await engine.login('password', CREDENTIALS)
    return await asyncio.gather(
        engine.verify_mfa(first.challenge_token, code),
        engine.verify_mfa(second.challenge_token, code),
        return_exceptions=True,
    )


@pytest.mark.asyncio
async def test_concurrent_totp_code_accepted_once(engine, alice, enrolled, clock):
    secret, _ = enrolled
    results = await verify_concurrently(engine, current_code(secret, clock))

    assert len([r for r in results if not isinstance(r, Exception) and r.authenticated]) == 1
    assert len([r for r in results if isinstance(r, ProviderRejected)]) == 1
    assert len(await engine.sessions.list_sessions(alice.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_recovery_code_accepted_once(engine, alice, enrolled):
    _, codes = enrolled
    results = await verify_concurrently(engine, codes[0])

    assert len([r for r in results if not isinstance(r, Exception) and r.authenticated]) == 1
    assert len([r for r in results if isinstance(r, ProviderRejected)]) == 1

    stored = await engine.user_service.find_by_id(alice.id)
    assert len(stored.mfa_recovery_codes) == RECOVERY_CODE_COUNT - 1
