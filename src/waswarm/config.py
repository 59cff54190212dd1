"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override them using
``__`` as the nested delimiter (e.g. ``SESSIONS__MAX_RETRIES=3``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from waswarm.config import get_settings

    s = get_settings()
    print(s.bot.prefix)
    print(s.sessions.max_retries)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected."""

    model_config = {"extra": "forbid"}


class BotConfig(_StrictModel):
    name: str = "waswarm"
    prefix: str = "."
    owner: str | None = None  # None → first sudo entry
    sudo: list[str] = []
    number: str | None = None  # paired automatically at boot when no session exists
    failure_reply: str = "★ An error occurred while running the command."

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or v != v.strip():
            raise ValueError("prefix must be a non-empty string without surrounding spaces")
        return v


class SessionsConfig(_StrictModel):
    dir: str = "sessions"
    max_retries: int = 5
    retry_delay: float = 5.0  # seconds
    pairing_wait: float = 30.0  # seconds to leave the pairing connection up
    purge_credentials_on_logout: bool = False

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("retry_delay", "pairing_wait")
    @classmethod
    def clamp_non_negative(cls, v: float) -> float:
        return max(0.0, v)


class ServerConfig(_StrictModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str | None = None  # None → bundled page


class StorageConfig(_StrictModel):
    db_path: str = "data/waswarm.db"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class BehaviorsConfig(_StrictModel):
    status_emoji: str = "❤️"
    welcome_text: str = "Hello! This number is managed by waswarm."
    mention_reply: str = "You called? Send .menu to see what I can do."
    antidelete_cache_size: int = 500
    welcome_cache_size: int = 5000  # senders remembered as greeted
    group_cache_size: int = 256  # group subjects cached for log lines
    group_subject_ttl: float = 3600.0  # seconds before a subject is looked up again


class PluginConfig(_StrictModel):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    bot: BotConfig = BotConfig()
    sessions: SessionsConfig = SessionsConfig()
    server: ServerConfig = ServerConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()
    behaviors: BehaviorsConfig = BehaviorsConfig()
    plugins: dict[str, PluginConfig] = {}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def sessions_dir(self) -> Path:
        p = Path(self.sessions.dir)
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def db_path(self) -> Path:
        p = Path(self.storage.db_path)
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def static_dir(self) -> Path:
        if self.server.static_dir:
            return Path(self.server.static_dir).resolve()
        return Path(__file__).parent / "static"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
