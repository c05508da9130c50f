import asyncio

import pytest

from authcore.audit import list_audit_events
from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.config import AuthConfig
from authcore.engine import AuthEngine, HookEvent
from authcore.errors import (
    ConfigurationError,
    ProviderNotFound,
    ProviderRejected,
    ProviderTimeout,
    RateLimited,
    SessionRevoked,
    StaleRefreshToken,
    TokenAlreadyConsumed,
    ValidationError,
    VerificationRequired,
)
from authcore.providers import AuthOutcome, AuthProvider, ProviderKind
from plugins.password.plugin import PasswordPlugin

PASSWORD = 'Correct-Horse-9'


class SpyProvider(AuthProvider):
    kind = ProviderKind.PASSWORD
    name = 'spy'

    def __init__(self, delay=0.0, error=None, outcome=None):
        self.delay = delay
        self.error = error
        self.outcome = outcome
        self.calls = 0

    async def authenticate(self, credentials, ctx):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.outcome is not None:
            return self.outcome
        principal = await ctx.user_service.find_by_identifier(credentials['identifier'])
        if principal is None:
            raise ProviderRejected()
        return AuthOutcome.success(principal)


class SpyPlugin(BasePlugin):
    def __init__(self, provider=None, hooks=None):
        super().__init__()
        self.provider = provider or SpyProvider()
        self._hooks = hooks or {}

    @property
    def metadata(self):
        return PluginMetadata(name='spy', version='0.1')

    def get_providers(self):
        return [self.provider]

    def get_hooks(self):
        return self._hooks


def record_events(engine):
    events = []

    async def handler(event, payload):
        events.append((event, payload))

    engine.subscribe('*', handler)
    return events


@pytest.mark.asyncio
async def test_register_and_login(engine, alice, clock):
    events = record_events(engine)

    result = await engine.login('password', {'email': 'Alice@example.com', 'password': PASSWORD},
                                client_id='10.0.0.1')

    assert result.authenticated
    assert result.principal.id == alice.id
    assert result.principal.last_login_at == clock.now
    assert result.session.principal_id == alice.id

    verified = await engine.verify('access', result.access_token)
    assert verified.principal_id == alice.id
    assert verified.claims['role'] == 'user'
    assert verified.claims['amr'] == ['password']

    names = [name for name, _ in events]
    assert names == ['session.created', 'login.success']
    payload = events[1][1]
    assert payload['event'] == 'login.success'
    assert payload['timestamp'] == clock.now
    assert payload['principal_id'] == alice.id
    assert payload['session_id'] == result.session.id

    audit = await list_audit_events(engine.storage, event_type='login_success')
    assert audit[0]['subject'] == alice.id
    assert (await list_audit_events(engine.storage, event_type='register_success'))[0]['success'] is True


@pytest.mark.asyncio
async def test_wrong_password(engine, alice):
    events = record_events(engine)

    with pytest.raises(ProviderRejected) as exc_info:
        await engine.login('password', {'email': 'alice@example.com', 'password': 'Wrong-Pass-1'})
    with pytest.raises(ProviderRejected) as unknown_info:
        await engine.login('password', {'email': 'nobody@example.com', 'password': 'Wrong-Pass-1'})

    # одинаковый ответ для неизвестного идентификатора
    assert str(exc_info.value) == str(unknown_info.value)
    assert [name for name, _ in events] == ['login.failure', 'login.failure']
    assert events[0][1]['reason'] == 'invalid_credentials'
    assert len(await list_audit_events(engine.storage, event_type='login_failure')) == 2


@pytest.mark.asyncio
async def test_invalid_payload(engine):
    with pytest.raises(ValidationError):
        await engine.login('password', {'email': 'alice@example.com'})
    with pytest.raises(ValidationError):
        await engine.login('password', 'not a dict')


@pytest.mark.asyncio
async def test_unknown_provider_throttles_lookup(engine):
    engine.rate_limiter.configure('provider_lookup', {'points': 2, 'window_seconds': 60})

    for _ in range(2):
        with pytest.raises(ProviderNotFound):
            await engine.login('nope', {}, client_id='1.2.3.4')
    with pytest.raises(RateLimited) as exc_info:
        await engine.login('nope', {}, client_id='1.2.3.4')
    assert exc_info.value.policy_key == 'provider_lookup'

    # другой клиент не затронут
    with pytest.raises(ProviderNotFound):
        await engine.login('nope', {}, client_id='5.6.7.8')


@pytest.mark.asyncio
async def test_rate_limited_before_provider_call(engine, alice):
    spy = SpyProvider()
    await engine.register_plugin(SpyPlugin(spy))
    engine.rate_limiter.configure('spy', {'points': 2, 'window_seconds': 60})

    for _ in range(2):
        await engine.login('spy', {'identifier': 'alice@example.com'}, client_id='c1')
    with pytest.raises(RateLimited):
        await engine.login('spy', {'identifier': 'alice@example.com'}, client_id='c1')

    assert spy.calls == 2
    assert (await list_audit_events(engine.storage, event_type='rate_limited'))[0]['subject'] == 'spy:c1'


@pytest.mark.asyncio
async def test_login_policy_counts_failures(engine, alice):
    for _ in range(5):
        with pytest.raises(ProviderRejected):
            await engine.login('password', {'email': 'alice@example.com', 'password': 'Wrong-Pass-1'},
                               client_id='attacker')
    with pytest.raises(RateLimited):
        await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD},
                           client_id='attacker')


@pytest.mark.asyncio
async def test_provider_timeout(engine, alice):
    spy = SpyProvider(delay=1.0)
    await engine.register_plugin(SpyPlugin(spy))
    events = record_events(engine)

    with pytest.raises(ProviderTimeout):
        await engine.login('spy', {'identifier': 'alice@example.com'}, timeout=0.05)

    assert [name for name, _ in events] == ['login.failure']
    assert await engine.sessions.list_sessions(alice.id) == []


@pytest.mark.asyncio
async def test_unexpected_provider_error_becomes_rejection(engine, alice):
    await engine.register_plugin(SpyPlugin(SpyProvider(error=KeyError('internal'))))
    with pytest.raises(ProviderRejected) as exc_info:
        await engine.login('spy', {'identifier': 'alice@example.com'})
    assert 'internal' not in str(exc_info.value)


@pytest.mark.asyncio
async def test_pending_outcome(engine):
    outcome = AuthOutcome.pending_step('code_sent', expires_in=600)
    await engine.register_plugin(SpyPlugin(SpyProvider(outcome=outcome)))

    result = await engine.login('spy', {})
    assert not result.authenticated
    assert result.pending == 'code_sent'
    assert result.details == {'expires_in': 600}


@pytest.mark.asyncio
async def test_provider_returning_garbage(engine):
    await engine.register_plugin(SpyPlugin(SpyProvider(outcome={'ok': True})))
    with pytest.raises(ConfigurationError):
        await engine.login('spy', {})


@pytest.mark.asyncio
async def test_hook_failures_are_isolated(engine, alice):
    """Тест: упавшие hook'и не ломают вход и попадают в hook_failures."""
    called = []

    async def broken_hook(event, payload):
        raise RuntimeError('hook boom')

    async def broken_subscriber(event, payload):
        raise ValueError('subscriber boom')

    async def healthy_subscriber(event, payload):
        called.append(event)

    await engine.register_plugin(SpyPlugin(hooks={HookEvent.LOGIN_SUCCESS.value: [broken_hook]}))
    engine.subscribe(HookEvent.LOGIN_SUCCESS, broken_subscriber)
    engine.subscribe(HookEvent.LOGIN_SUCCESS, healthy_subscriber)

    result = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})

    assert result.authenticated
    assert called == ['login.success']
    sources = [failure.source for failure in engine.hook_failures]
    assert sources[0] == 'plugin:spy'
    assert sources[1].startswith('subscriber:')
    assert all(failure.event == 'login.success' for failure in engine.hook_failures)


@pytest.mark.asyncio
async def test_register_failures(engine, alice):
    events = record_events(engine)
    with pytest.raises(ValidationError):
        await engine.register('password', {'email': 'alice@example.com', 'password': PASSWORD})
    with pytest.raises(ValidationError):
        await engine.register('password', {'email': 'weak@example.com', 'password': 'short'})
    assert [name for name, _ in events] == ['register.failure', 'register.failure']

    await engine.register_plugin(SpyPlugin())
    with pytest.raises(ValidationError):
        await engine.register('spy', {'identifier': 'x@example.com'})


@pytest.mark.asyncio
async def test_refresh_and_replay(engine, alice, clock):
    login = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})
    events = record_events(engine)

    refreshed = await engine.verify('refresh', login.refresh_token)
    assert refreshed.principal_id == alice.id
    assert refreshed.login.refresh_token != login.refresh_token
    assert refreshed.login.session.generation == 1

    clock.advance(30)
    with pytest.raises(StaleRefreshToken) as exc_info:
        await engine.refresh(login.refresh_token)
    assert exc_info.value.session_revoked is True

    assert [name for name, _ in events] == ['session.refreshed', 'session.revoked']
    assert events[1][1]['reason'] == 'refresh_replay'
    assert len(await list_audit_events(engine.storage, event_type='refresh_replay')) == 1
    with pytest.raises(SessionRevoked):
        await engine.verify('access', refreshed.login.access_token)


@pytest.mark.asyncio
async def test_logout(engine, alice):
    first = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})
    second = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})

    assert await engine.logout(first.session.id) is True
    assert await engine.logout('missing') is False
    with pytest.raises(SessionRevoked):
        await engine.verify('access', first.access_token)
    await engine.verify('access', second.access_token)

    assert await engine.logout_all(alice.id) == 1
    with pytest.raises(SessionRevoked):
        await engine.verify('access', second.access_token)


@pytest.mark.asyncio
async def test_verification_token(engine, alice):
    events = record_events(engine)
    token = await engine.issue_verification_token(alice.id)

    result = await engine.verify('verification', token)
    assert result.principal.verified is True
    assert [name for name, _ in events] == ['token.verified']

    with pytest.raises(TokenAlreadyConsumed):
        await engine.verify('verification', token)
    anomalies = await list_audit_events(engine.storage, event_type='token_anomaly')
    assert anomalies[0]['details']['reason'] == 'token_already_consumed'

    with pytest.raises(ValidationError):
        await engine.issue_verification_token('missing')


@pytest.mark.asyncio
async def test_password_reset(engine, alice):
    login = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})
    events = record_events(engine)

    assert await engine.request_password_reset('nobody@example.com') is None
    token = await engine.request_password_reset('alice@example.com')

    await engine.reset_password(token, 'Brand-New-Pass-2')
    assert [name for name, _ in events] == ['password.reset']
    assert events[0][1]['revoked_sessions'] == 1
    with pytest.raises(SessionRevoked):
        await engine.verify('access', login.access_token)

    with pytest.raises(ProviderRejected):
        await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})
    assert (await engine.login('password', {'email': 'alice@example.com', 'password': 'Brand-New-Pass-2'})).authenticated

    # токен сброса одноразовый
    with pytest.raises(TokenAlreadyConsumed):
        await engine.reset_password(token, 'Another-Pass-3')


@pytest.mark.asyncio
async def test_password_reset_through_verify(engine, alice):
    token = await engine.request_password_reset('alice@example.com')
    with pytest.raises(ValidationError):
        await engine.verify('password_reset', token)

    token = await engine.request_password_reset('alice@example.com')
    result = await engine.verify('password_reset', token, payload={'new_password': 'Brand-New-Pass-2'})
    assert result.principal_id == alice.id
    assert 'password_changed_at' in result.principal.attributes


@pytest.mark.asyncio
async def test_reset_rejects_same_password(engine, alice):
    token = await engine.request_password_reset('alice@example.com')
    with pytest.raises(ValidationError):
        await engine.reset_password(token, PASSWORD)


@pytest.mark.asyncio
async def test_verify_rejects_unknown_and_challenge_kinds(engine):
    with pytest.raises(ValidationError):
        await engine.verify('bogus', 'x.y.z')
    with pytest.raises(ValidationError):
        await engine.verify('mfa_challenge', 'x.y.z')


@pytest.mark.asyncio
async def test_email_verification_required(storage, clock, logger):
    config = AuthConfig(email_verification_required=True, verification_cache_ttl=0)
    engine = AuthEngine(config, storage=storage, logger=logger, clock=clock)
    await engine.register_plugin(PasswordPlugin(bcrypt_rounds=4))
    async with engine:
        bob = await engine.register('password', {'email': 'bob@example.com', 'password': PASSWORD})
        with pytest.raises(VerificationRequired):
            await engine.login('password', {'email': 'bob@example.com', 'password': PASSWORD})

        await engine.verify('verification', await engine.issue_verification_token(bob.id))
        assert (await engine.login('password', {'email': 'bob@example.com', 'password': PASSWORD})).authenticated


@pytest.mark.asyncio
async def test_mfa_enrolled_without_mfa_provider_fails_closed(engine, alice):
    """Тест: включённая MFA без MFA-провайдера не даёт сессию."""
    await engine.user_service.update(alice.id, mfa_enabled=True)
    events = record_events(engine)

    with pytest.raises(ConfigurationError):
        await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})

    assert [name for name, _ in events] == ['login.failure']
    assert events[0][1]['reason'] == 'configuration_error'
    assert await engine.sessions.list_sessions(alice.id) == []


@pytest.mark.asyncio
async def test_rotate_keys(engine, alice):
    login = await engine.login('password', {'email': 'alice@example.com', 'password': PASSWORD})
    events = record_events(engine)
    old_kid = engine.key_manager.current_key().kid

    key = await engine.rotate_keys()
    assert [name for name, _ in events] == ['keys.rotated']
    assert events[0][1]['kid'] == key.kid
    assert [k['kid'] for k in engine.public_key_set()] == [key.kid, old_kid]
    assert len(engine.jwks()['keys']) == 2

    # токен, подписанный ретированным ключом, ещё проверяется
    await engine.verify('access', login.access_token)


@pytest.mark.asyncio
async def test_maintenance_purges_and_rotates(engine, clock):
    events = record_events(engine)
    clock.advance(90 * 86400)
    await engine.maintenance()
    assert [name for name, _ in events] == ['keys.rotated']


@pytest.mark.asyncio
async def test_from_config_sqlite_persists_keys(tmp_path, clock, logger):
    config = AuthConfig(storage_type='sqlite', db_path=str(tmp_path / 'auth.db'))

    engine = await AuthEngine.from_config(config, logger=logger, clock=clock)
    await engine.register_plugin(PasswordPlugin(bcrypt_rounds=4))
    async with engine:
        kid = engine.key_manager.current_key().kid
        await engine.register('password', {'email': 'carol@example.com', 'password': PASSWORD})

    engine = await AuthEngine.from_config(config, logger=logger, clock=clock)
    await engine.register_plugin(PasswordPlugin(bcrypt_rounds=4))
    async with engine:
        assert engine.key_manager.current_key().kid == kid
        result = await engine.login('password', {'email': 'carol@example.com', 'password': PASSWORD})
        assert result.authenticated


@pytest.mark.asyncio
async def test_stop_surfaces_plugin_cleanup_errors(storage, clock, logger):
    class FailingPlugin(SpyPlugin):
        async def cleanup(self):
            raise RuntimeError('teardown failed')

    engine = AuthEngine(AuthConfig(), storage=storage, logger=logger, clock=clock)
    await engine.register_plugin(FailingPlugin())
    await engine.start()
    with pytest.raises(Exception) as exc_info:
        await engine.stop()
    assert exc_info.value.code == 'plugin_cleanup_failed'
    assert engine.started is False
