"""
Configuration validation with Pydantic.

One model per service plus the aggregate AppConfig. Durations that the
services compare against millisecond timestamps are kept in milliseconds.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SharedMemoryConfig(BaseModel):
    """Shared memory configuration."""
    default_namespace: str = Field(default="default", min_length=1)
    max_history_length: int = Field(ge=1, le=100_000, default=100)
    persistence_enabled: bool = False
    snapshot_dir: Optional[str] = None

    # Key locks
    lock_max_attempts: int = Field(ge=1, le=1000, default=10)
    lock_initial_backoff_ms: float = Field(gt=0, default=10.0)
    lock_max_backoff_ms: float = Field(gt=0, default=200.0)
    lock_jitter_ms: float = Field(ge=0, default=10.0)
    lock_timeout_seconds: float = Field(gt=0, default=5.0)

    # Atomic update
    atomic_max_retries: int = Field(ge=1, le=100, default=5)
    atomic_retry_delay_ms: float = Field(gt=0, default=10.0)
    atomic_max_retry_delay_ms: float = Field(gt=0, default=200.0)

    # Conflict detection
    concurrent_write_window_ms: float = Field(gt=0, default=1000.0)
    stale_read_threshold_ms: float = Field(gt=0, default=30_000.0)

    @field_validator("lock_max_backoff_ms")
    @classmethod
    def max_backoff_not_below_initial(cls, v, info):
        initial = info.data.get("lock_initial_backoff_ms")
        if initial is not None and v < initial:
            raise ValueError("lock_max_backoff_ms must be >= lock_initial_backoff_ms")
        return v

    @field_validator("default_namespace")
    @classmethod
    def namespace_has_no_separator(cls, v):
        if ":" in v:
            raise ValueError("default_namespace must not contain ':'")
        return v


class StateRepositoryConfig(BaseModel):
    """State repository configuration."""
    max_history_length: int = Field(ge=1, le=100_000, default=100)
    persistence_enabled: bool = False
    state_dir: Optional[str] = None


class CommunicationConfig(BaseModel):
    """Communication service configuration."""
    delivery_timeout_ms: float = Field(gt=0, default=30_000.0)
    retain_message_history: bool = True
    max_message_history: int = Field(ge=1, default=1000)
    expiry_check_interval_seconds: float = Field(gt=0, default=5.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="json", pattern="^(json|structured)$")
    log_dir: Optional[str] = None
    log_file: str = "meeting_coord.log"
    console_output: bool = True
    max_file_size_mb: int = Field(ge=1, le=1000, default=100)
    backup_count: int = Field(ge=0, le=100, default=5)


class AppConfig(BaseModel):
    """Main application configuration."""
    model_config = ConfigDict(extra="allow")

    environment: str = Field(default="development", pattern="^(development|test|staging|production)$")
    memory: SharedMemoryConfig = Field(default_factory=SharedMemoryConfig)
    state: StateRepositoryConfig = Field(default_factory=StateRepositoryConfig)
    communication: CommunicationConfig = Field(default_factory=CommunicationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def validate_config(data: Dict[str, Any]) -> tuple[bool, List[str]]:
    """Validate configuration data without loading."""
    try:
        AppConfig(**data)
        return True, []
    except Exception as e:
        return False, [str(e)]
