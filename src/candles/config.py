"""Configuration system using pydantic-settings with environment variable loading."""

from datetime import timedelta

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from candles.models import DEFAULT_INTERVALS, IntervalType


class AggregationSettings(BaseSettings):
    """Watermark, finalization and eviction parameters.

    allowed_lateness covers transport delay and clock skew: trades up to this
    far behind the newest event time are folded before a bucket closes.
    grace_window extends past close; late trades inside it reopen and
    republish the bucket. All fields configurable via AGG_ prefix.
    """

    model_config = SettingsConfigDict(env_prefix="AGG_")

    intervals: list[IntervalType] = list(DEFAULT_INTERVALS)
    allowed_lateness_seconds: float = 60.0
    grace_window_seconds: float = 3600.0  # must exceed allowed lateness
    retain_closed_buckets: bool = False  # keep flushed buckets in memory until grace expiry
    retention_days: int | None = None  # raw trade retention; None = unlimited
    finalize_interval_seconds: float = 1.0  # idle drain cadence per shard

    @model_validator(mode="after")
    def _check_windows(self) -> "AggregationSettings":
        if self.allowed_lateness_seconds < 0:
            raise ValueError("allowed_lateness_seconds must be >= 0")
        if self.grace_window_seconds <= self.allowed_lateness_seconds:
            raise ValueError("grace_window_seconds must be greater than allowed_lateness_seconds")
        if not self.intervals:
            raise ValueError("at least one interval must be configured")
        return self

    @property
    def allowed_lateness(self) -> timedelta:
        return timedelta(seconds=self.allowed_lateness_seconds)

    @property
    def grace_window(self) -> timedelta:
        return timedelta(seconds=self.grace_window_seconds)

    @property
    def retention(self) -> timedelta | None:
        if self.retention_days is None:
            return None
        return timedelta(days=self.retention_days)


class ShardSettings(BaseSettings):
    """Ingestion sharding. Trades are routed by a hash of account_id."""

    model_config = SettingsConfigDict(env_prefix="SHARD_")

    count: int = 4
    queue_size: int = 10_000


class SinkSettings(BaseSettings):
    """Storage write retry policy."""

    model_config = SettingsConfigDict(env_prefix="SINK_")

    max_retries: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    write_timeout_seconds: float = 5.0


class StorageSettings(BaseSettings):
    """Durable store location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/candles.db"


class IngestSettings(BaseSettings):
    """Trade source. "-" reads newline-delimited JSON from stdin."""

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    source_path: str = "-"


class ApiSettings(BaseSettings):
    """Read-only query API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


class RetentionSettings(BaseSettings):
    """Periodic purge job. Raw trade retention itself is AGG_RETENTION_DAYS."""

    model_config = SettingsConfigDict(env_prefix="RETENTION_")

    purge_interval_seconds: float = 3600.0
    candle_retention_days: int | None = None


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    aggregation: AggregationSettings = AggregationSettings()
    shards: ShardSettings = ShardSettings()
    sink: SinkSettings = SinkSettings()
    storage: StorageSettings = StorageSettings()
    ingest: IngestSettings = IngestSettings()
    api: ApiSettings = ApiSettings()
    retention: RetentionSettings = RetentionSettings()
