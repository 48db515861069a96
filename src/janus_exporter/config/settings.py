"""Configuration settings for the Janus events exporter."""

import os
import yaml
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional


class ConfigError(ValueError):
    """Raised when the configuration file or a value in it is invalid."""


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    event_path: str = "/event"
    metrics_path: str = "/metrics"


@dataclass
class MetricsConfig:
    """Prometheus instrument configuration."""
    histogram_cap_minutes: int = 60  # Longer user sessions land in the top bucket
    histogram_bucket_width_minutes: int = 10
    collect_process_metrics: bool = True
    process_metrics_namespace: str = "janus"


@dataclass
class ReconciliationConfig:
    """Event reconciliation behaviour."""
    reap_on_session_end: bool = True
    log_ignored_events: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"
    output: str = "stdout"


@dataclass
class ExporterConfig:
    """Main configuration for the exporter service."""
    server: ServerConfig = field(default_factory=ServerConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        if self.metrics.histogram_cap_minutes <= 0:
            raise ConfigError("metrics.histogram_cap_minutes must be positive")
        if self.metrics.histogram_bucket_width_minutes <= 0:
            raise ConfigError("metrics.histogram_bucket_width_minutes must be positive")
        if self.logging.format.lower() not in ("json", "text"):
            raise ConfigError("logging.format must be 'json' or 'text'")


_SECTIONS = {
    "server": ServerConfig,
    "metrics": MetricsConfig,
    "reconciliation": ReconciliationConfig,
    "logging": LoggingConfig,
}


def load_config(config_file: Optional[str] = None) -> ExporterConfig:
    """Load configuration from YAML file, falling back to defaults."""
    
    if config_file is None:
        return ExporterConfig()
    
    # Load YAML file
    try:
        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_file}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {e}")
    
    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file {config_file} must contain a mapping")
    
    # Environment variable substitution
    config_data = _substitute_env_vars(config_data)
    
    return build_config(config_data)


def build_config(config_data: Dict[str, Any]) -> ExporterConfig:
    """Create configuration objects from a plain mapping."""
    unknown = set(config_data) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")
    
    sections = {
        name: _build_section(section_cls, name, config_data.get(name) or {})
        for name, section_cls in _SECTIONS.items()
    }
    return ExporterConfig(**sections)


def _build_section(section_cls, name: str, data: Dict[str, Any]):
    if not isinstance(data, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(sorted(unknown))}")
    
    values = {}
    for key, value in data.items():
        if value is None:
            continue  # Unset env var without default keeps the built-in default
        values[key] = _coerce(known[key].type, value, f"{name}.{key}")
    return section_cls(**values)


def _coerce(target_type, value, path: str):
    """Coerce substituted (string) values to the field type."""
    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
            return True
        if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off", ""):
            return False
        raise ConfigError(f"{path}: expected a boolean, got {value!r}")
    if target_type is int:
        if isinstance(value, bool):
            raise ConfigError(f"{path}: expected an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{path}: expected an integer, got {value!r}")
    if target_type is str:
        return str(value)
    return value


def _substitute_env_vars(data):
    """Recursively substitute environment variables in configuration."""
    if isinstance(data, dict):
        return {key: _substitute_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    elif isinstance(data, str) and data.startswith('${') and data.endswith('}'):
        # Extract environment variable name and default value
        env_spec = data[2:-1]  # Remove ${ and }
        
        if ':' in env_spec:
            env_name, default_value = env_spec.split(':', 1)
        else:
            env_name, default_value = env_spec, None
        
        return os.getenv(env_name, default_value)
    else:
        return data
