import pytest

from authcore.config import AuthConfig, default_rate_limits


def test_defaults_are_valid():
    config = AuthConfig()
    config.validate()
    assert config.token_ttls()['access'] == 900
    assert config.token_ttls()['refresh'] == 7 * 86400
    assert set(default_rate_limits()) >= {'login', 'register', 'verify', 'mfa', 'provider_lookup'}


@pytest.mark.parametrize('changes', [
    {'env': 'staging'},
    {'storage_type': 'postgres'},
    {'storage_type': 'sqlite', 'db_path': ''},
    {'signing_algorithm': 'HS256'},
    {'access_token_ttl': '15x'},
    {'access_token_ttl': '0s'},
    {'key_grace_period': '1d'},
    {'provider_timeout': 0},
    {'refresh_race_window': -1},
    {'log_format': 'xml'},
    {'rate_limits': {'': {'points': 1, 'window_seconds': 1}}},
])
def test_invalid_config_rejected(changes):
    config = AuthConfig(**changes)
    with pytest.raises(ValueError):
        config.validate()


def test_grace_period_must_cover_longest_ttl():
    """Тест: grace period короче TTL refresh-токена - ошибка конфигурации."""
    with pytest.raises(ValueError, match='key_grace_period'):
        AuthConfig(refresh_token_ttl='30d', key_grace_period='8d').validate()
    AuthConfig(refresh_token_ttl='30d', key_grace_period='31d').validate()


def test_from_env(monkeypatch):
    monkeypatch.setenv('AUTH_ENV', 'PRODUCTION')
    monkeypatch.setenv('AUTH_SIGNING_ALGORITHM', 'rs256')
    monkeypatch.setenv('AUTH_ACCESS_TOKEN_TTL', '5m')
    monkeypatch.setenv('AUTH_RATE_LIMITS', '{"login": {"points": 3, "window_seconds": 60}}')
    monkeypatch.setenv('AUTH_EMAIL_VERIFICATION_REQUIRED', 'true')

    config = AuthConfig.from_env()
    assert config.env == 'production'
    assert config.signing_algorithm == 'RS256'
    assert config.token_ttls()['access'] == 300
    assert config.rate_limits['login'] == {'points': 3, 'window_seconds': 60}
    # остальные политики остаются по умолчанию
    assert 'register' in config.rate_limits
    assert config.email_verification_required is True


def test_from_env_bad_rate_limits(monkeypatch):
    monkeypatch.setenv('AUTH_RATE_LIMITS', 'not-json')
    with pytest.raises(ValueError):
        AuthConfig.from_env()
