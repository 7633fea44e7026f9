"""
Configuration management for the Raspberry Pi weather exporter.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/raspi-weather/config.yml or --config path)
3. Environment variables (RASPI_WEATHER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

The well-known GOOGLE_CLOUD_PROJECT and YAHOO_APP_ID variables fill the
matching fields when no other layer set them. Environment values are passed
through as strings and converted by the model fields.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from raspi_weather.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/raspi-weather/config.yml")
DEFAULT_ENV_PREFIX = "RASPI_WEATHER_"

# (section, field) filled from conventional variables when still unset
WELL_KNOWN_ENV = {
    "GOOGLE_CLOUD_PROJECT": ("metrics", "project_id"),
    "YAHOO_APP_ID": ("weather", "app_id"),
}


# =============================================================================
# Sensor Configuration
# =============================================================================


class SensorConfig(BaseModel):
    """BMP280 sensor configuration.

    Attributes:
        bus: I2C bus number (e.g., 1 for /dev/i2c-1).
        address: I2C address of the sensor (0x76 or 0x77).
        oversampling: Oversampling ratio for temperature and pressure.
    """

    bus: int = Field(
        default=1,
        description="I2C bus number",
        ge=0,
        le=10,
    )
    address: int = Field(
        default=0x77,
        description="I2C address of the BMP280 (0x76 or 0x77)",
    )
    oversampling: int = Field(
        default=4,
        description="Oversampling ratio for temperature and pressure: 1, 2, 4, 8, 16",
    )

    @field_validator("address", mode="before")
    @classmethod
    def parse_address(cls, v: Any) -> Any:
        """Accept hex strings such as "0x76" for the sensor address."""
        if isinstance(v, str):
            try:
                return int(v, 0)
            except ValueError:
                return v
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: int) -> int:
        """Validate the sensor address."""
        if v not in (0x76, 0x77):
            raise ValueError(f"Invalid BMP280 address: {v:#04x}. Must be 0x76 or 0x77")
        return v

    @field_validator("oversampling")
    @classmethod
    def validate_oversampling(cls, v: int) -> int:
        """Validate the oversampling ratio."""
        if v not in (1, 2, 4, 8, 16):
            raise ValueError(f"Invalid oversampling: {v}. Must be one of: 1, 2, 4, 8, 16")
        return v


# =============================================================================
# Weather API Configuration
# =============================================================================


class WeatherConfig(BaseModel):
    """Rainfall lookup configuration.

    Attributes:
        endpoint: Weather-by-coordinate endpoint URL.
        app_id: API credential (Yahoo! Japan application ID).
        longitude: Longitude of the queried location.
        latitude: Latitude of the queried location.
        timeout_seconds: Upper bound for a single lookup request.
    """

    endpoint: str = Field(
        default="https://map.yahooapis.jp/weather/V1/place",
        description="Weather-by-coordinate endpoint URL",
    )
    app_id: str | None = Field(
        default=None,
        description="Weather API credential (falls back to YAHOO_APP_ID)",
    )
    longitude: float = Field(
        default=139.7041,
        description="Longitude of the queried location",
        ge=-180.0,
        le=180.0,
    )
    latitude: float = Field(
        default=35.6618,
        description="Latitude of the queried location",
        ge=-90.0,
        le=90.0,
    )
    timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single lookup request in seconds",
        gt=0.0,
        le=60.0,
    )


# =============================================================================
# Metrics Configuration
# =============================================================================


class MetricsConfig(BaseModel):
    """Metrics backend configuration.

    Attributes:
        backend: Sink implementation ('cloud_monitoring' or 'log').
        project_id: Cloud project identifier.
        endpoint: Cloud Monitoring API base URL.
        metric_prefix: Prefix for custom metric types.
        location: Location label of the monitored resource.
        namespace: Namespace label of the monitored resource.
        node_id: Node label override (defaults to the hostname).
        reporting_interval_seconds: Cadence at which buffered points are published.
        timeout_seconds: Timeout for monitoring API requests.
    """

    backend: str = Field(
        default="cloud_monitoring",
        description="Metrics sink: 'cloud_monitoring' or 'log'",
    )
    project_id: str | None = Field(
        default=None,
        description="Cloud project identifier (falls back to GOOGLE_CLOUD_PROJECT)",
    )
    endpoint: str = Field(
        default="https://monitoring.googleapis.com/v3",
        description="Cloud Monitoring API base URL",
    )
    metric_prefix: str = Field(
        default="custom.googleapis.com",
        description="Prefix for custom metric types",
    )
    location: str = Field(
        default="asia-northeast1-a",
        description="Location label of the monitored resource",
    )
    namespace: str = Field(
        default="raspi-weather",
        description="Namespace label of the monitored resource",
    )
    node_id: str | None = Field(
        default=None,
        description="Node identifier label (defaults to the hostname)",
    )
    reporting_interval_seconds: int = Field(
        default=60,
        description="Interval between exports to the backend in seconds",
        ge=10,
        le=3600,
    )
    timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for monitoring API requests in seconds",
        gt=0.0,
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate the sink backend name."""
        valid_backends = {"cloud_monitoring", "log"}
        v_lower = v.lower()
        if v_lower not in valid_backends:
            raise ValueError(
                f"Invalid metrics backend: {v}. Must be one of: {', '.join(sorted(valid_backends))}"
            )
        return v_lower

    @field_validator("metric_prefix")
    @classmethod
    def strip_prefix(cls, v: str) -> str:
        """Drop a trailing slash so types are always '<prefix>/<name>'."""
        return v.rstrip("/")


# =============================================================================
# Sampling Configuration
# =============================================================================


class SamplingConfig(BaseModel):
    """Sampling scheduler configuration.

    Attributes:
        interval_seconds: Time between sensor ticks.
    """

    interval_seconds: float = Field(
        default=5.0,
        description="Sampling interval in seconds",
        ge=1.0,
        le=3600.0,
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON records instead of plain text.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    json_format: bool = Field(
        default=True,
        description="Whether to format log records as JSON",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        sensor: BMP280 sensor settings.
        weather: Rainfall lookup settings.
        metrics: Metrics backend settings.
        sampling: Scheduler settings.
        logging: Logging configuration.
    """

    sensor: SensorConfig = Field(
        default_factory=SensorConfig,
        description="Sensor settings",
    )
    weather: WeatherConfig = Field(
        default_factory=WeatherConfig,
        description="Rainfall lookup settings",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Metrics backend settings",
    )
    sampling: SamplingConfig = Field(
        default_factory=SamplingConfig,
        description="Sampling scheduler settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        ConfigurationError: If the file is missing or is not valid YAML.
    """
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            details={"path": str(config_path)},
        )

    try:
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file: {config_path}",
            details={"path": str(config_path), "error": str(e)},
        ) from e


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    RASPI_WEATHER_SAMPLING__INTERVAL_SECONDS=10.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = value

    return result


def _apply_well_known_env(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Fill unset credential fields from their conventional variables."""
    result = config_dict
    for env_name, (section, field_name) in WELL_KNOWN_ENV.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        if result.get(section, {}).get(field_name):
            continue
        result = _deep_merge(result, {section: {field_name: value}})
    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="raspi-weather",
        description="Export BMP280 readings tagged with rainfall to Cloud Monitoring",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging in plain-text format",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Write measurements to the log instead of the metrics backend",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result["logging"] = {"level": "debug", "json_format": False}

    if parsed.dry_run:
        result["metrics"] = {"backend": "log"}

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        ConfigurationError: If the config file is missing or unreadable.
        ValidationError: If configuration values are invalid.

    Example:
        >>> config = load_config(cli_args=["--dry-run"])
        >>> config.metrics.backend
        'log'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)
    config_dict = _apply_well_known_env(config_dict)

    return AppConfig(**config_dict)
