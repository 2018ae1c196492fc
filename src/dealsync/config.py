"""Application configuration via Pydantic BaseSettings.

Two layers:
- Settings: raw environment (credentials, bucket names, SYNC_* overrides)
- SyncConfig: the validated knobs the sync engine consumes. Every margin,
  batch size, concurrency cap and cost estimate lives here with a default.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# HubSpot rejects batch/read and batch/create payloads above 100 inputs.
HUBSPOT_MAX_BATCH_SIZE = 100


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class SyncConfig(BaseModel):
    """Engine configuration consumed by the orchestrator and its components.

    Durations are in milliseconds unless the name says otherwise. Defaults
    target a 300s platform kill time with a comfortable safety margin.
    """

    total_budget_ms: int = Field(default=240_000, gt=0)
    safety_margin_ms: int = Field(default=20_000, ge=0)

    upload_batch_size: int = Field(default=100, ge=1, le=HUBSPOT_MAX_BATCH_SIZE)
    contact_batch_size: int = Field(default=100, ge=1, le=HUBSPOT_MAX_BATCH_SIZE)
    max_concurrent_lookups: int = Field(default=3, ge=1, le=10)

    large_file_threshold: int = Field(default=5_000, ge=1)
    chunk_size: int = Field(default=2_500, ge=1)

    resolution_budget_fraction: float = Field(default=0.6, gt=0.0, le=1.0)
    resolution_budget_cap_ms: int = Field(default=90_000, gt=0)

    # Empirical: one 100-record create batch plus its pause costs ~1s.
    per_record_cost_ms: float = Field(default=10.0, gt=0.0)
    affordability_safety_factor: float = Field(default=0.85, gt=0.0, lt=1.0)

    lookup_wave_pause_ms: int = Field(default=250, ge=0)
    upload_batch_pause_ms: int = Field(default=500, ge=0)
    checkpoint_every_batches: int = Field(default=5, ge=1)
    request_timeout_seconds: float = Field(default=20.0, gt=0.0)

    source_prefix: str = "delta_negocio_"
    source_suffix: str = ".csv"
    csv_delimiter: str = ";"

    lease_enabled: bool = False
    lease_ttl_ms: int | None = None

    @model_validator(mode="after")
    def _margin_fits_budget(self) -> SyncConfig:
        if self.safety_margin_ms >= self.total_budget_ms:
            msg = (
                f"safety_margin_ms ({self.safety_margin_ms}) must be smaller than "
                f"total_budget_ms ({self.total_budget_ms})"
            )
            raise ValueError(msg)
        return self

    @property
    def effective_lease_ttl_ms(self) -> int:
        """Lease lifetime; defaults to one full invocation budget."""
        return self.lease_ttl_ms or self.total_budget_ms + self.safety_margin_ms


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Monitoring
    SENTRY_DSN: str = ""

    # Source bucket (CSV drops)
    AWS1_REGION: str = "eu-west-1"
    AWS1_ACCESS_KEY_ID: str = ""
    AWS1_SECRET_ACCESS_KEY: str = ""
    AWS1_BUCKET: str = ""

    # State bucket (history, checkpoints, reports)
    AWS2_REGION: str = "eu-west-1"
    AWS2_ACCESS_KEY_ID: str = ""
    AWS2_SECRET_ACCESS_KEY: str = ""
    AWS2_BUCKET: str = ""
    PROCESSED_KEY: str = "processed_files.json"

    # HubSpot
    HUBSPOT_API_KEY: str = ""
    HUBSPOT_BASE_URL: str = "https://api.hubapi.com"
    HUBSPOT_CONTACT_ID_PROPERTY: str = "contact_id"

    # Sync engine overrides
    SYNC_TOTAL_BUDGET_MS: int = 240_000
    SYNC_SAFETY_MARGIN_MS: int = 20_000
    SYNC_UPLOAD_BATCH_SIZE: int = 100
    SYNC_CONTACT_BATCH_SIZE: int = 100
    SYNC_MAX_CONCURRENT_LOOKUPS: int = 3
    SYNC_LARGE_FILE_THRESHOLD: int = 5_000
    SYNC_CHUNK_SIZE: int = 2_500
    SYNC_RESOLUTION_BUDGET_FRACTION: float = 0.6
    SYNC_RESOLUTION_BUDGET_CAP_MS: int = 90_000
    SYNC_PER_RECORD_COST_MS: float = 10.0
    SYNC_AFFORDABILITY_SAFETY_FACTOR: float = 0.85
    SYNC_LOOKUP_WAVE_PAUSE_MS: int = 250
    SYNC_UPLOAD_BATCH_PAUSE_MS: int = 500
    SYNC_CHECKPOINT_EVERY_BATCHES: int = 5
    SYNC_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SYNC_SOURCE_PREFIX: str = "delta_negocio_"
    SYNC_LEASE_ENABLED: bool = False

    def to_sync_config(self) -> SyncConfig:
        """Build the validated engine configuration from SYNC_* overrides."""
        return SyncConfig(
            total_budget_ms=self.SYNC_TOTAL_BUDGET_MS,
            safety_margin_ms=self.SYNC_SAFETY_MARGIN_MS,
            upload_batch_size=self.SYNC_UPLOAD_BATCH_SIZE,
            contact_batch_size=self.SYNC_CONTACT_BATCH_SIZE,
            max_concurrent_lookups=self.SYNC_MAX_CONCURRENT_LOOKUPS,
            large_file_threshold=self.SYNC_LARGE_FILE_THRESHOLD,
            chunk_size=self.SYNC_CHUNK_SIZE,
            resolution_budget_fraction=self.SYNC_RESOLUTION_BUDGET_FRACTION,
            resolution_budget_cap_ms=self.SYNC_RESOLUTION_BUDGET_CAP_MS,
            per_record_cost_ms=self.SYNC_PER_RECORD_COST_MS,
            affordability_safety_factor=self.SYNC_AFFORDABILITY_SAFETY_FACTOR,
            lookup_wave_pause_ms=self.SYNC_LOOKUP_WAVE_PAUSE_MS,
            upload_batch_pause_ms=self.SYNC_UPLOAD_BATCH_PAUSE_MS,
            checkpoint_every_batches=self.SYNC_CHECKPOINT_EVERY_BATCHES,
            request_timeout_seconds=self.SYNC_REQUEST_TIMEOUT_SECONDS,
            source_prefix=self.SYNC_SOURCE_PREFIX,
            lease_enabled=self.SYNC_LEASE_ENABLED,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
