"""Settings via pydantic-settings with CONJURE_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, OPENAI_API_KEY) the provider SDKs use, so an
existing shell environment works without renaming anything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONJURE_", env_file=".env")

    # Storage
    database_url: str = "sqlite+aiosqlite:///conjure.db"
    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # LLM
    provider: Literal["anthropic", "openai"] = "anthropic"
    model: str = ""  # empty -> provider default
    max_tokens: int = 4096
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Engine
    recursion_limit: int = 50  # Max orchestrator visits per run
    checkpoint_namespace: str = ""
    event_queue_size: int = 1000

    @model_validator(mode="after")
    def _validate_engine(self) -> "Settings":
        if self.recursion_limit < 1:
            raise ValueError("recursion_limit must be >= 1")
        if self.event_queue_size < 1:
            raise ValueError("event_queue_size must be >= 1")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")
