"""Configuration management for the HomePulse engine."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseModel):
    """Per-user engine settings (persisted as the ``settings`` record)."""

    min_training_days: int = Field(default=7, ge=1)
    retrain_interval_hours: float = Field(default=1.0, gt=0)
    auto_train: bool = True

    # Tariff (currency per kWh, R2.50 by default)
    price_per_kwh: float = Field(default=2.50, ge=0)
    off_peak_factor: float = Field(default=0.8, gt=0, le=1)

    # Snapshot store caps; overflow keeps the newest half
    max_snapshots: int = Field(default=10_000, ge=2)
    max_actions: int = Field(default=5_000, ge=2)


class LockConfig(BaseModel):
    """Spin-wait settings for the named operation locks."""

    poll_interval_seconds: float = Field(default=0.1, gt=0)
    default_timeout_seconds: float = Field(default=30.0, gt=0)
    simulation_timeout_seconds: float = Field(default=10.0, gt=0)


class CollectionConfig(BaseModel):
    """Background snapshot collection."""

    enabled: bool = True
    interval_seconds: float = Field(default=300.0, gt=0)


class StorageConfig(BaseModel):
    """Local and remote record stores."""

    local_path: str | None = None
    remote_url: str | None = None
    remote_api_key: str = ""
    remote_timeout_seconds: float = 10.0


class HomePulseSettings(BaseSettings):
    """Main configuration for the HomePulse engine coordinator."""

    model_config = SettingsConfigDict(env_prefix="HOMEPULSE_", env_nested_delimiter="__")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    locks: LockConfig = Field(default_factory=LockConfig)
    collection: CollectionConfig = Field(default_factory=CollectionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "HomePulseSettings":
        """Load configuration from YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)
