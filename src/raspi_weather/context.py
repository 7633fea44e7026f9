"""
Runtime context for the weather exporter.

The RuntimeContext carries everything that is static for the process
lifetime (project, monitored resource, series definitions, coordinates). It is
built once at startup and passed explicitly to the scheduler and the sink.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from raspi_weather.errors import HostIdentityError
from raspi_weather.metrics.base import (
    MetricDefinition,
    MonitoredResource,
    build_metric_definitions,
    generic_node_resource,
)

if TYPE_CHECKING:
    from raspi_weather.config import AppConfig


def resolve_node_id(override: str | None = None) -> str:
    """
    Return the node identifier for the monitored resource.

    Args:
        override: Configured node id; the hostname is used when unset.

    Raises:
        HostIdentityError: If the hostname cannot be resolved.
    """
    if override:
        return override
    try:
        hostname = socket.gethostname()
    except OSError as e:
        raise HostIdentityError(f"Failed to get hostname: {e}") from e
    if not hostname:
        raise HostIdentityError("Hostname is empty")
    return hostname


@dataclass(frozen=True)
class RuntimeContext:
    """
    Process-wide static settings of the sampling pipeline.

    Attributes:
        project_id: Cloud project identifier (None in dry-run mode).
        resource: Monitored resource attached to every series.
        definitions: Exported series definitions.
        longitude: Longitude used for the rainfall lookup.
        latitude: Latitude used for the rainfall lookup.
        interval_seconds: Sampling interval.
    """

    project_id: str | None
    resource: MonitoredResource
    definitions: tuple[MetricDefinition, ...]
    longitude: float
    latitude: float
    interval_seconds: float

    @classmethod
    def from_config(cls, config: AppConfig) -> RuntimeContext:
        """
        Build the context from configuration.

        Raises:
            HostIdentityError: If the node id has to come from the hostname
                and it cannot be resolved.
        """
        metrics = config.metrics
        return cls(
            project_id=metrics.project_id,
            resource=generic_node_resource(
                location=metrics.location,
                namespace=metrics.namespace,
                node_id=resolve_node_id(metrics.node_id),
            ),
            definitions=build_metric_definitions(metrics.metric_prefix),
            longitude=config.weather.longitude,
            latitude=config.weather.latitude,
            interval_seconds=config.sampling.interval_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "project_id": self.project_id,
            "resource": self.resource.to_dict(),
            "metric_types": [d.metric_type for d in self.definitions],
            "longitude": self.longitude,
            "latitude": self.latitude,
            "interval_seconds": self.interval_seconds,
        }
