"""
Error types for the Raspberry Pi weather exporter.

This module defines the WeatherStationError base class and subclasses for the
failure categories of the sampling pipeline. Errors are split into two groups:

Fatal (the process exits with a non-zero status after best-effort release):
- ConfigurationError: missing credential, project id or invalid config file
- SensorInitError: sensor/bus initialization failure
- RegistrationError: metric series could not be registered with the backend
- HostIdentityError: local host identifier could not be resolved

Recoverable (handled inside the scheduler tick, never escape the loop):
- SensorError: a single sensor read failed
- RainfallLookupError: the weather API request or decode failed
- MetricsExportError: a batch could not be published
"""

from __future__ import annotations

from typing import Any


class WeatherStationError(Exception):
    """
    Base exception class for weather exporter errors.

    Attributes:
        error_code: Internal error code string (e.g., "sensor_unavailable",
            "configuration", "registration_failed").
        message: Human-readable error message.
        details: Optional structured details (e.g., addresses, URLs, status codes).

    Example:
        >>> raise WeatherStationError(
        ...     error_code="sensor_unavailable",
        ...     message="BMP280 did not answer on bus 1",
        ...     details={"bus": 1, "address": 0x77},
        ... )
    """

    fatal: bool = False

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a WeatherStationError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for structured logging.

        Returns:
            Dictionary with error_code, message, details and fatal flag.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "fatal": self.fatal,
        }

    def log_extra(self) -> dict[str, Any]:
        """
        Return fields for the `extra` argument of a logging call.

        "message" is reserved on LogRecord, so the text goes under "error".
        """
        return {
            "error_code": self.error_code,
            "error": self.message,
            "details": self.details,
        }


# =============================================================================
# Fatal errors
# =============================================================================


class ConfigurationError(WeatherStationError):
    """
    Error raised when required configuration is missing or invalid.

    Raised at startup, before any sensor read or network call.
    """

    fatal = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ConfigurationError."""
        super().__init__(error_code="configuration", message=message, details=details)


class SensorInitError(WeatherStationError):
    """Error raised when the sensor or its bus cannot be initialized."""

    fatal = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SensorInitError."""
        super().__init__(
            error_code="sensor_init_failed", message=message, details=details
        )


class RegistrationError(WeatherStationError):
    """Error raised when metric series cannot be registered with the backend."""

    fatal = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RegistrationError."""
        super().__init__(
            error_code="registration_failed", message=message, details=details
        )


class HostIdentityError(WeatherStationError):
    """Error raised when the local host identifier cannot be resolved."""

    fatal = True

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a HostIdentityError."""
        super().__init__(error_code="host_identity", message=message, details=details)


# =============================================================================
# Recoverable errors
# =============================================================================


class SensorError(WeatherStationError):
    """
    Error raised when a single sensor read fails.

    The scheduler logs it and skips the export for that tick.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SensorError."""
        super().__init__(
            error_code="sensor_unavailable", message=message, details=details
        )


class RainfallLookupError(WeatherStationError):
    """
    Error raised when the rainfall lookup request or decode fails.

    The scheduler exports the tick with the "unknown" rainfall tag instead.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RainfallLookupError."""
        super().__init__(
            error_code="rainfall_lookup_failed", message=message, details=details
        )


class MetricsExportError(WeatherStationError):
    """Error raised when a batch of points cannot be published."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MetricsExportError."""
        super().__init__(error_code="export_failed", message=message, details=details)


class SchedulerStateError(WeatherStationError):
    """Error raised when the scheduler is driven from an invalid state."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SchedulerStateError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )
