from datetime import timedelta

import pytest

from config import Config, TestingConfig, ProductionConfig, get_config, parse_duration


@pytest.mark.parametrize('value, expected', [
    ('20m', timedelta(minutes=20)),
    ('7d', timedelta(days=7)),
    ('1h', timedelta(hours=1)),
    ('30d', timedelta(days=30)),
    ('2w', timedelta(weeks=2)),
    (' 45S ', timedelta(seconds=45)),
    ('90', timedelta(seconds=90)),
    (120, timedelta(seconds=120)),
    (timedelta(minutes=5), timedelta(minutes=5)),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize('value', ['', 'soon', '10 minutes', '1.5h', '-5m'])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def settings_from(config_class, **overrides):
    settings = {key: getattr(config_class, key) for key in dir(config_class) if key.isupper()}
    settings.update(overrides)
    return settings


def test_validate_accepts_testing_config():
    Config.validate(settings_from(TestingConfig))


def test_validate_rejects_shared_jwt_secret():
    settings = settings_from(TestingConfig, JWT_REFRESH_SECRET_KEY=TestingConfig.JWT_ACCESS_SECRET_KEY)
    with pytest.raises(ValueError, match='must differ'):
        Config.validate(settings)


def test_validate_rejects_bad_expiry():
    with pytest.raises(ValueError):
        Config.validate(settings_from(TestingConfig, JWT_OAUTH_ACCESS_EXPIRES='forever'))


def test_production_requires_environment(monkeypatch):
    for key in ('SECRET_KEY', 'JWT_ACCESS_SECRET_KEY', 'JWT_REFRESH_SECRET_KEY', 'DATABASE_URL'):
        monkeypatch.delenv(key, raising=False)

    with pytest.raises(ValueError, match='Missing required environment variables'):
        Config.validate(settings_from(ProductionConfig))


def test_get_config_follows_flask_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'testing')
    assert get_config() is TestingConfig

    monkeypatch.setenv('FLASK_ENV', 'staging')
    assert get_config().DEBUG is True
