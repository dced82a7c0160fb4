"""
Flowgate Core

Configuration and logging shared across the engine.
"""

from flowgate.core.config import (
    EngineConfig,
    FlowgateConfig,
    LogLevel,
    RetryConfig,
    ServerConfig,
    TriggerSettings,
    get_config,
    reset_config,
    set_config,
)
from flowgate.core.logging import setup_logging

__all__ = [
    "EngineConfig",
    "FlowgateConfig",
    "LogLevel",
    "RetryConfig",
    "ServerConfig",
    "TriggerSettings",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
