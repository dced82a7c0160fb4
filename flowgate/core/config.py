"""
Flowgate Configuration Management

Centralized configuration for the orchestration engine with:
- Environment-based configuration
- Type-safe settings with Pydantic
- JSON file round-trip
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
import json
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for Flowgate."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EngineConfig(BaseModel):
    """Configuration for the step executor."""
    max_workers: int = Field(default=16, ge=1)  # Concurrent runs


class RetryConfig(BaseModel):
    """Defaults and bounds applied to every retry policy."""
    default_backoff_multiplier: float = Field(default=1.0, gt=0)
    min_delay_seconds: float = Field(default=0.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)


class TriggerSettings(BaseModel):
    """Configuration for the trigger subsystem."""
    schedule_poll_interval_seconds: float = Field(default=30.0, gt=0)
    state_path: Optional[Path] = None  # Schedule state persisted across restarts
    event_dedupe_window: int = Field(default=1024, ge=0)


class ServerConfig(BaseModel):
    """Configuration for the admin HTTP surface."""
    host: str = "127.0.0.1"
    port: int = 8400
    api_url: str = "http://127.0.0.1:8400"
    request_timeout: float = 30.0


class FlowgateConfig(BaseSettings):
    """
    Main Flowgate Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with FLOWGATE_
    (e.g., FLOWGATE_ENGINE__MAX_WORKERS=4).
    """

    instance_id: str = Field(default="flowgate-primary")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)
    server: ServerConfig = Field(default_factory=ServerConfig)

    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = True

    model_config = {
        "env_prefix": "FLOWGATE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept lower-case level names."""
        if isinstance(v, str):
            return v.upper()
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "FlowgateConfig":
        """Load configuration from a JSON file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[FlowgateConfig] = None


def get_config() -> FlowgateConfig:
    """Get the global Flowgate configuration instance."""
    global _config
    if _config is None:
        _config = FlowgateConfig()
    return _config


def set_config(config: FlowgateConfig) -> None:
    """Set the global Flowgate configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
