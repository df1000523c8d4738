"""Settings — environment overrides and database URL normalization."""

from keel.config import Settings


def test_postgres_url_uses_asyncpg():
    settings = Settings(database_url="postgresql://keel:keel@db:5432/keel")
    assert settings.database_url == "postgresql+asyncpg://keel:keel@db:5432/keel"


def test_other_urls_untouched():
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:")
    assert settings.database_url == "sqlite+aiosqlite:///:memory:"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SESSION_ENABLED", "true")
    monkeypatch.setenv("API_PREFIX", "/v1")
    settings = Settings()
    assert settings.session_enabled is True
    assert settings.api_prefix == "/v1"
