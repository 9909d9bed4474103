"""Configuration models for the sync engine."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.models.records import ResolutionStrategy


class EngineConfig(BaseModel):
    """Configuration for batch execution."""

    max_concurrency: int = Field(
        default=10, ge=1, le=100, description="Maximum operations applied concurrently"
    )
    operation_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Deadline for a single operation apply"
    )
    batch_size: int = Field(default=100, ge=1, description="Batch size hint reported to clients")
    max_batch_operations: int = Field(
        default=10000, ge=1, description="Largest batch accepted in one call"
    )
    verify_external_dependencies: bool = Field(
        default=False,
        description="If True, dependency ids outside the batch must name stored entities",
    )
    commit_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Re-applies after a concurrent commit to the same entity",
    )


class ConflictConfig(BaseModel):
    """Configuration for conflict resolution."""

    default_strategy: ResolutionStrategy = Field(
        default=ResolutionStrategy.LAST_WRITE_WINS,
        description="Strategy used for entity types without an override",
    )
    strategies: dict[str, ResolutionStrategy] = Field(
        default_factory=dict, description="Per-entity-type strategy overrides"
    )

    def strategy_for(self, entity_type: str) -> ResolutionStrategy:
        """Get the resolution strategy configured for an entity type."""
        return self.strategies.get(entity_type, self.default_strategy)


class TombstoneConfig(BaseModel):
    """Configuration for deletion tombstone retention."""

    retention_days: int | None = Field(
        default=None, ge=1, description="Days to keep tombstones. None keeps them forever."
    )


class CacheConfig(BaseModel):
    """Configuration for the optional cache layer."""

    enabled: bool = Field(default=True, description="Enable the in-process cache")
    default_ttl_seconds: float = Field(default=3600.0, gt=0.0, description="Default entry TTL")
    device_ttl_seconds: float = Field(default=300.0, gt=0.0, description="TTL for device lookups")


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the SYNC_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    conflicts: ConflictConfig = Field(default_factory=ConflictConfig)
    tombstones: TombstoneConfig = Field(default_factory=TombstoneConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
