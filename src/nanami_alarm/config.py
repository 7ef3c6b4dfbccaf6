"""Environment-driven settings for the alarm bot.

Every knob is read from the process environment (or a local ``.env``) once
at startup and validated by pydantic before any loop is scheduled.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal
from urllib.parse import urlsplit

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nanami_alarm.llm.summarizer import DEFAULT_MODEL
from nanami_alarm.sources.cve import NVD_CVE_API_URL, NVD_HISTORY_API_URL
from nanami_alarm.sources.hackernews import HN_FRONT_PAGE_URL
from nanami_alarm.sources.threat_intel import THREAT_INTEL_FEED_URL


def _group_config(env_prefix: str = "") -> SettingsConfigDict:
    return SettingsConfigDict(
        env_prefix=env_prefix,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v


class DiscordSettings(BaseSettings):
    """Discord bot settings."""

    model_config = _group_config("DISCORD_")

    token: SecretStr | None = Field(
        default=None,
        alias="DISCORD_TOKEN",
        description="Discord bot token",
    )
    cve_channel_id: str = Field(
        default="",
        alias="DISCORD_CVE_ALARM_ID",
        description="Channel that receives CVE alarms",
    )
    news_channel_id: str = Field(
        default="",
        alias="DISCORD_CHANNEL_ID",
        description="Channel that receives Hacker News and threat-intel alarms",
    )
    client_id: str | None = Field(
        default=None,
        alias="DISCORD_CLIENT_ID",
        description="Application id used for command registration",
    )
    guild_id: str | None = Field(
        default=None,
        alias="DISCORD_GUILD_ID",
        description="Guild for slash command sync (global when unset)",
    )

    @property
    def enabled(self) -> bool:
        """Check if a bot token is configured."""
        return self.token is not None and bool(self.token.get_secret_value())


class OpenAISettings(BaseSettings):
    """Summarization service settings."""

    model_config = _group_config("OPENAI_")

    api_key: SecretStr | None = Field(
        default=None,
        alias="OPENAI_API_KEY",
        description="OpenAI API key (summaries fall back to plain text when unset)",
    )
    model: str = Field(
        default=DEFAULT_MODEL,
        alias="OPENAI_MODEL",
        description="Chat model used for summaries",
    )
    timeout: float = Field(
        default=60.0,
        alias="OPENAI_TIMEOUT",
        description="Request timeout in seconds",
        gt=0,
    )

    @property
    def enabled(self) -> bool:
        return self.api_key is not None and bool(self.api_key.get_secret_value())


class DatabaseSettings(BaseSettings):
    """Where last-seen markers are stored."""

    model_config = _group_config()

    url: str = Field(
        default="sqlite+aiosqlite:///./cve_state.db",
        alias="DATABASE_URL",
        description="Async SQLAlchemy URL for the last-seen marker store",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
            raise ValueError(
                "DATABASE_URL must be a sqlite+aiosqlite:// or postgresql+asyncpg:// URL"
            )
        return v


class RedisSettings(BaseSettings):
    """Optional Redis used for delivery history."""

    model_config = _group_config("REDIS_")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; delivery history is off when unset",
    )
    dedup_ttl_hours: int = Field(
        default=72,
        alias="REDIS_DEDUP_TTL_HOURS",
        description="Hours a delivered item is remembered",
        ge=1,
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class NvdSettings(BaseSettings):
    """NVD CVE source settings."""

    model_config = _group_config("NVD_")

    api_url: str = Field(default=NVD_CVE_API_URL, alias="NVD_API_URL")
    history_url: str = Field(default=NVD_HISTORY_API_URL, alias="NVD_HISTORY_URL")
    api_key: SecretStr | None = Field(
        default=None,
        alias="NVD_API_KEY",
        description="Optional NVD API key (higher rate limits)",
    )
    poll_interval_minutes: float = Field(
        default=10,
        alias="CVE_POLL_INTERVAL_MINUTES",
        gt=0,
    )

    @field_validator("api_url", "history_url")
    @classmethod
    def validate_urls(cls, v: str) -> str:
        """Validate endpoint URL format."""
        return _validate_http_url(v)


class HackerNewsSettings(BaseSettings):
    """Hacker News source settings."""

    model_config = _group_config("HN_")

    api_url: str = Field(default=HN_FRONT_PAGE_URL, alias="HN_API_URL")
    poll_interval_minutes: float = Field(
        default=5,
        alias="HN_POLL_INTERVAL_MINUTES",
        gt=0,
    )

    @field_validator("api_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate endpoint URL format."""
        return _validate_http_url(v)


class ThreatIntelSettings(BaseSettings):
    """Threat-intelligence RSS source settings."""

    model_config = _group_config("THREAT_INTEL_")

    feed_url: str = Field(default=THREAT_INTEL_FEED_URL, alias="THREAT_INTEL_FEED_URL")
    poll_interval_minutes: float = Field(
        default=30,
        alias="THREAT_INTEL_POLL_INTERVAL_MINUTES",
        gt=0,
    )
    timezone: str = Field(
        default="UTC",
        alias="THREAT_INTEL_TIMEZONE",
        description="Timezone used for feed dates without an offset",
    )

    @field_validator("feed_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate feed URL format."""
        return _validate_http_url(v)


class CweSettings(BaseSettings):
    """CWE catalog settings."""

    model_config = _group_config("CWE_")

    xml_path: str | None = Field(
        default=None,
        alias="CWE_XML_PATH",
        description="Path to the MITRE CWE XML export",
    )


class Settings(BaseSettings):
    """Top-level settings composed of one group per integration.

    Group fields keep their own environment names (``DISCORD_TOKEN``,
    ``NVD_API_KEY`` and so on) so existing deployments keep working.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    discord: DiscordSettings = Field(default_factory=DiscordSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    nvd: NvdSettings = Field(default_factory=NvdSettings)
    hackernews: HackerNewsSettings = Field(default_factory=HackerNewsSettings)
    threat_intel: ThreatIntelSettings = Field(default_factory=ThreatIntelSettings)
    cwe: CweSettings = Field(default_factory=CweSettings)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    health_port: int = Field(
        default=3000,
        validation_alias=AliasChoices("HEALTH_PORT", "PORT"),
        description="Port serving /health and /metrics",
        ge=1,
        le=65535,
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log alarms instead of sending them",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        alias="HTTP_TIMEOUT_SECONDS",
        description="Timeout for feed requests",
        gt=0,
    )

    def get_logging_level(self) -> int:
        """Return ``log_level`` as a ``logging`` constant."""
        return int(logging.getLevelName(self.log_level))

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Describe the settings for display, masking tokens and passwords."""
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "discord": {
                "token": "(set)" if self.discord.enabled else "(not set)",
                "cve_channel_id": self.discord.cve_channel_id or "(not set)",
                "news_channel_id": self.discord.news_channel_id or "(not set)",
                "guild_id": self.discord.guild_id or "(global)",
            },
            "openai": {
                "api_key": "(set)" if self.openai.enabled else "(not set)",
                "model": self.openai.model,
            },
            "nvd": {
                "api_url": self.nvd.api_url,
                "api_key": "(set)" if self.nvd.api_key else "(not set)",
                "poll_interval_minutes": str(self.nvd.poll_interval_minutes),
            },
            "hackernews_poll_interval_minutes": str(self.hackernews.poll_interval_minutes),
            "threat_intel_poll_interval_minutes": str(self.threat_intel.poll_interval_minutes),
            "cwe_xml_path": self.cwe.xml_path or "(not set)",
            "log_level": self.log_level,
            "health_port": str(self.health_port),
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        parts = urlsplit(url)
        if parts.password is None:
            return url
        host = parts.netloc.rsplit("@", 1)[1]
        return parts._replace(netloc=f"{parts.username}:***@{host}").geturl()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, parsing the environment on first use.

    Raises:
        ValidationError: If an environment variable fails validation.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
