"""Configuration schema models using Pydantic."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


class StorageBackend(str, Enum):
    """Where computed scores and task records live."""

    MEMORY = "memory"
    SQL = "sql"


class WorkerConfig(BaseModel):
    """Worker pool sizing and per-task budget."""

    count: int = Field(4, ge=1, le=64, description="Number of concurrent workers")
    task_timeout: str = Field("30s", description="Wall-clock budget per task attempt")
    poll_interval: float = Field(
        0.5, gt=0, le=10, description="Seconds a worker waits for work before re-checking"
    )

    # Computed field
    task_timeout_seconds: Optional[float] = None

    @model_validator(mode="after")
    def compute_timeout(self):
        """Parse task_timeout into seconds."""
        try:
            seconds = parse_duration(self.task_timeout)
            validate_duration_range(seconds, min_seconds=0.01, max_seconds=3600, label="task_timeout")
        except DurationParseError as e:
            raise ValueError(str(e)) from e
        self.task_timeout_seconds = seconds
        return self


class QueueCapacity(BaseModel):
    """Maximum number of PENDING tasks per priority bucket."""

    high: int = Field(1000, ge=1, description="Capacity of the HIGH bucket")
    normal: int = Field(5000, ge=1, description="Capacity of the NORMAL bucket")
    low: int = Field(10000, ge=1, description="Capacity of the LOW bucket")


class QueueConfig(BaseModel):
    """Recomputation queue settings."""

    capacity: QueueCapacity = Field(default_factory=QueueCapacity)


class RetryConfig(BaseModel):
    """Retry budget and exponential backoff for transient task failures."""

    max_attempts: int = Field(3, ge=1, le=10, description="Attempts before a task is dead-lettered")
    initial_delay: float = Field(1.0, ge=0, le=300, description="Delay before the first retry (seconds)")
    backoff_multiplier: float = Field(2.0, ge=1.0, le=10.0, description="Growth factor between retries")
    max_delay: float = Field(60.0, ge=0, le=3600, description="Upper bound on a single retry delay")

    def delay_for(self, attempts: int) -> float:
        """Backoff delay after `attempts` failed attempts (1-based)."""
        exponent = max(attempts - 1, 0)
        return min(self.initial_delay * (self.backoff_multiplier ** exponent), self.max_delay)


class SweepConfig(BaseModel):
    """Periodic batch sweep and ledger cleanup."""

    enabled: bool = Field(True, description="Run the periodic batch sweep")
    interval: str = Field("24h", description="Time between batch sweeps")
    cleanup_after_days: int = Field(
        7, ge=1, le=365, description="Terminal task records older than this are purged"
    )

    # Computed field
    interval_seconds: Optional[float] = None

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        """Validate the sweep interval (1 minute to 7 days)."""
        try:
            seconds = parse_duration(v)
            validate_duration_range(seconds, min_seconds=60, max_seconds=7 * 86400, label="Sweep interval")
        except DurationParseError as e:
            raise ValueError(str(e)) from e
        return v

    @model_validator(mode="after")
    def compute_interval(self):
        """Compute interval_seconds from interval."""
        self.interval_seconds = parse_duration(self.interval)
        return self


class ScoringConfig(BaseModel):
    """Tunables of the score computer that are not product weights."""

    experience_target_months: float = Field(
        12.0, gt=0, le=120, description="Months of relevant experience that count as a full score"
    )


class StorageConfig(BaseModel):
    """Score store selection."""

    backend: StorageBackend = Field(StorageBackend.MEMORY, description="memory or sql")

    model_config = {"use_enum_values": True, "validate_default": True}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(LogFormat.KEY_VALUE, description="Log output format (json or key-value)")

    model_config = {"use_enum_values": True, "validate_default": True}


class EngineConfig(BaseModel):
    """Root configuration object for the match engine."""

    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    seed_file: Optional[Path] = Field(
        None, description="YAML file with candidate and opportunity records for the in-memory source"
    )

    @field_validator("seed_file")
    @classmethod
    def validate_seed_file(cls, v: Optional[Path]) -> Optional[Path]:
        """Treat an empty seed_file as unset."""
        if v is not None and str(v).strip() in ("", "."):
            return None
        return v
