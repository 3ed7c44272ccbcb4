"""Tests for conjure/config.py."""

import pytest
from pydantic import ValidationError

from conjure.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CONJURE_RECURSION_LIMIT", "CONJURE_PROVIDER", "CONJURE_DATABASE_URL", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.provider == "anthropic"
        assert settings.recursion_limit == 50
        assert settings.checkpoint_namespace == ""
        assert settings.is_sqlite is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("CONJURE_RECURSION_LIMIT", "7")
        monkeypatch.setenv("CONJURE_PROVIDER", "openai")
        settings = Settings(_env_file=None)
        assert settings.recursion_limit == 7
        assert settings.provider == "openai"

    def test_provider_key_alias(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        assert Settings(_env_file=None).anthropic_api_key == "sk-test"

    def test_postgres_is_not_sqlite(self):
        settings = Settings(_env_file=None, database_url="postgresql+asyncpg://u:p@localhost/conjure")
        assert settings.is_sqlite is False

    @pytest.mark.parametrize("field", ["recursion_limit", "event_queue_size"])
    def test_rejects_non_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 0})

    def test_unknown_provider(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, provider="cohere")
