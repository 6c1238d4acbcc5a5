"""Typed configuration — single source of truth for all waypoint runtime settings.

Loading priority (highest to lowest):
  1. Explicit init kwargs (programmatic overrides, tests)
  2. Environment variables: WAYPOINT_<SECTION>__<KEY>  (double-underscore separator)
  3. Config file: WAYPOINT_CONFIG_FILE env var, or conf/settings.toml at project root
  4. Model field defaults

Example env overrides:
  WAYPOINT_BACKEND__URL=http://influx:8086/api/v2
  WAYPOINT_BACKEND__TOKEN=s3cret
  WAYPOINT_WRITER__BATCH_SIZE=1000
  WAYPOINT_WRITER__BACKPRESSURE_POLICY=block
  WAYPOINT_LOGGING__LEVEL=DEBUG
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# Derive project root from this file's location: src/waypoint/config.py → ../../..
_PROJECT_ROOT = Path(__file__).parent.parent.parent
_DEFAULT_CONFIG = _PROJECT_ROOT / "conf" / "settings.toml"

Precision = Literal["s", "ms", "us", "ns"]
BackpressurePolicy = Literal["block", "reject"]


def _config_file() -> Path:
    """Resolve the config file path.

    Returns WAYPOINT_CONFIG_FILE if set (raises FileNotFoundError if missing),
    otherwise returns the bundled default at conf/settings.toml.
    """
    if env_val := os.environ.get("WAYPOINT_CONFIG_FILE"):
        p = Path(env_val)
        if not p.is_file():
            raise FileNotFoundError(f"WAYPOINT_CONFIG_FILE not found: {p}")
        return p
    return _DEFAULT_CONFIG


# ---------------------------------------------------------------------------
# Section models — each maps to a [section] in conf/settings.toml
# ---------------------------------------------------------------------------


class BackendSettings(BaseModel):
    """Time-series backend write endpoint and credentials."""

    # Writes go to <url>/write.
    url: str = "http://localhost:8086/api/v2"
    token: SecretStr = SecretStr("")
    org: str = ""
    bucket: str = "customer_journey"
    measurement: str = "events"
    precision: Precision = "s"
    # Per-request network timeout, independent of ingestion request deadlines.
    timeout: float = Field(default=10.0, gt=0)

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"url must start with http:// or https://, got {v!r}")
        return v.rstrip("/")

    @property
    def write_url(self) -> str:
        return f"{self.url}/write"


class WriterSettings(BaseModel):
    """Batching, retry and backpressure behaviour of the background writer."""

    batch_size: int = Field(default=500, gt=0)
    # Seconds since the oldest queued record before a partial batch is flushed.
    flush_interval: float = Field(default=1.0, gt=0)
    queue_capacity: int = Field(default=10_000, gt=0)
    # Total attempts per batch, including the first.
    max_retry_attempts: int = Field(default=5, ge=1)
    backoff_base_delay: float = Field(default=0.5, ge=0)
    backoff_max_delay: float = Field(default=30.0, ge=0)
    backpressure_policy: BackpressurePolicy = "reject"
    # Dropped batches are appended here; None disables the spool.
    dead_letter_dir: Path | None = Path("var/dead_letter")


class ServerSettings(BaseModel):
    """HTTP ingestion surface."""

    host: str = "0.0.0.0"
    port: int = Field(default=8080, gt=0, lt=65536)
    # Bound on validate + encode + enqueue for one request.
    request_deadline: float = Field(default=2.0, gt=0)
    max_batch_events: int = Field(default=500, gt=0)
    # Bodies larger than this are refused before JSON decoding.
    max_body_bytes: int = Field(default=1_048_576, gt=0)


class LoggingSettings(BaseModel):
    """Logging verbosity and output format."""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"

    @field_validator("level", mode="before")
    @classmethod
    def _normalise_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"level must be one of {sorted(valid)}, got {v!r}")
        return v.upper()


# ---------------------------------------------------------------------------
# Root settings class
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """All waypoint runtime settings, fully resolved and validated."""

    backend: BackendSettings = BackendSettings()
    writer: WriterSettings = WriterSettings()
    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()

    model_config = SettingsConfigDict(
        env_prefix="WAYPOINT_",
        env_nested_delimiter="__",  # WAYPOINT_WRITER__BATCH_SIZE → writer.batch_size
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Exclude dotenv and file-secret sources; waypoint uses TOML + env only.
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=_config_file()),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings instance (loaded once, cached thereafter).

    Tests should call ``get_settings.cache_clear()`` before each test that
    patches environment variables or the config file.
    """
    return Settings()
