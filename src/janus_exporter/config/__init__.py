"""Configuration for the Janus events exporter."""

from .settings import (
    ConfigError,
    ExporterConfig,
    LoggingConfig,
    MetricsConfig,
    ReconciliationConfig,
    ServerConfig,
    load_config,
)

__all__ = [
    "ConfigError",
    "ExporterConfig",
    "LoggingConfig",
    "MetricsConfig",
    "ReconciliationConfig",
    "ServerConfig",
    "load_config",
]
