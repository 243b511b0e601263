"""
Configuration models for the ledger reconciliation pipeline.

Uses Pydantic for validation and type safety.
"""
import os
import re
from decimal import Decimal
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tradeledger.config.dotenv_loader import load_dotenv_files


class VenueConfig(BaseSettings):
    """Venue REST API configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # Used when a portfolio's credentials carry no base URL of their own
    base_url: str = "https://api.asterdex.com"
    request_timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    # Fill/order history pages are the most expensive calls
    history_timeout_seconds: float = Field(default=60.0, ge=1.0, le=300.0)


class SyncConfig(BaseSettings):
    """History synchronization configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    page_size: int = Field(default=300, ge=1, le=1000)
    fills_interval_seconds: int = Field(default=120, ge=10, le=3600, description="Fill/order sync cadence (2 min)")
    snapshot_interval_seconds: int = Field(default=300, ge=10, le=3600, description="Valuation cadence (5 min)")
    lease_ttl_seconds: int = Field(default=600, ge=30, le=7200, description="Sync lease expiry for crashed cycles")
    max_concurrency: int = Field(default=16, ge=1, le=256, description="Concurrent (portfolio, symbol) sync tasks")


class LedgerConfig(BaseSettings):
    """Aggregation and lot matching configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    fill_window: int = Field(default=5000, ge=1, le=100000)
    pnl_epsilon: Decimal = Field(default=Decimal("1e-12"), ge=0)
    max_completed_positions: int = Field(default=100, ge=1, le=10000)
    decimal_places: int = Field(default=8, ge=0, le=18)


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    venue: VenueConfig = Field(default_factory=VenueConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "test", "prod"] = "prod"

    @model_validator(mode="after")
    def _check_intervals(self) -> "Config":
        if self.sync.lease_ttl_seconds < self.sync.fills_interval_seconds:
            raise ValueError("sync.lease_ttl_seconds must cover at least one fills interval")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        raw_content = yaml_path.read_text()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Keep original if not set

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})
            config_dict["data"]["database_url"] = db_url

        return cls(**config_dict)


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses tradeledger/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
