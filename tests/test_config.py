import os.path

import pytest
from pydantic import ValidationError

from pggateway.context import BrokerOptions
from pggateway.core.config import DevSettings, ProdSettings, get_settings


def test_defaults():
    settings = DevSettings()
    assert settings.is_dev
    assert settings.schema_names == ["public"]
    assert settings.jwt_algorithms == ["HS256"]
    assert settings.jwt_audiences == []
    assert settings.jwt_role_path == ["role"]
    assert settings.async_db_url.startswith("sqlite+aiosqlite://")


def test_unset_secret_is_random():
    assert DevSettings().JWT_SECRET != DevSettings().JWT_SECRET


def test_comma_separated_lists():
    settings = DevSettings(SCHEMA_NAMES="app_public, app_private,", JWT_AUDIENCES="a,b", JWT_ROLE_CLAIM="https://example.com.role")
    assert settings.schema_names == ["app_public", "app_private"]
    assert settings.jwt_audiences == ["a", "b"]
    assert settings.jwt_role_path == ["https://example", "com", "role"]


def test_pg_settings_from_environment(monkeypatch):
    monkeypatch.setenv("PG_SETTINGS", '{"statement_timeout": "5s"}')
    monkeypatch.setenv("SCHEMA_NAMES", "app")
    settings = DevSettings()
    assert settings.PG_SETTINGS == {"statement_timeout": "5s"}
    assert settings.schema_names == ["app"]


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgres://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("postgresql://u:p@db:5432/app", "postgresql+asyncpg://u:p@db:5432/app"),
        ("postgresql+asyncpg://u:p@db/app", "postgresql+asyncpg://u:p@db/app"),
    ],
)
def test_prod_async_url(url, expected):
    assert ProdSettings(DATABASE_URL=url).async_db_url == expected


def test_prod_requires_database_url():
    with pytest.raises(ValueError, match="DATABASE_URL"):
        ProdSettings(DATABASE_URL="").async_db_url


def test_get_settings(monkeypatch):
    assert isinstance(get_settings("prod"), ProdSettings)
    assert isinstance(get_settings("dev"), DevSettings)
    monkeypatch.setenv("APP_MODE", "prod")
    assert isinstance(get_settings(), ProdSettings)


def test_settings_hook_is_imported():
    assert DevSettings(PG_SETTINGS_HOOK="os.path:basename").PG_SETTINGS_HOOK is os.path.basename


def test_settings_hook_must_be_importable():
    with pytest.raises(ValidationError):
        DevSettings(PG_SETTINGS_HOOK="no_such_module:settings")


def test_broker_options_from_settings():
    settings = DevSettings(JWT_SECRET="s", JWT_AUDIENCES="api", DEFAULT_ROLE="anonymous")
    options = BrokerOptions.from_settings(settings)
    assert options.jwt_secret == "s"
    assert options.jwt_audiences == ["api"]
    assert options.default_role == "anonymous"
