"""
Metrics sink abstraction.

This module defines the static series description (MetricDefinition), the
monitored resource a process reports as, and the MetricsSink base class that:
- Registers series definitions with the backend once at startup
- Buffers tagged points, keeping the last value per series and tag set
- Publishes the buffer on its own reporting interval, independent of sampling
- Drains the buffer on flush() at shutdown
"""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from raspi_weather.errors import (
    MetricsExportError,
    RegistrationError,
    SchedulerStateError,
)
from raspi_weather.logging import get_logger
from raspi_weather.measurement import Measurement, TaggedMeasurement

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_METRIC_PREFIX = "custom.googleapis.com"
DEFAULT_REPORTING_INTERVAL = 60  # seconds

AGGREGATION_LAST_VALUE = "last_value"
RAINFALL_TAG_KEY = "rainfall"

METRIC_TEMPERATURE = "temperature"
METRIC_PRESSURE = "pressure"

TEMPERATURE_UNIT = "C"
PRESSURE_UNIT = "hPa"

GENERIC_NODE = "generic_node"


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class MetricDefinition:
    """
    Static description of one exported series.

    Attributes:
        name: Short name, also the Measurement field the series reads.
        metric_type: Fully qualified metric type (prefix/name).
        description: Human-readable description.
        unit: Unit of the values.
        aggregation: Aggregation applied within a reporting window.
        tag_keys: Tag keys every point of the series carries.
    """

    name: str
    metric_type: str
    description: str
    unit: str
    aggregation: str = AGGREGATION_LAST_VALUE
    tag_keys: tuple[str, ...] = (RAINFALL_TAG_KEY,)

    def value_of(self, measurement: Measurement) -> float:
        """Return the value of this series in a measurement."""
        return float(getattr(measurement, self.name))


@dataclass(frozen=True)
class MonitoredResource:
    """
    Describes what produced the metrics, attached once per exported series.

    Attributes:
        resource_type: Backend resource type (e.g., "generic_node").
        labels: Static labels identifying the producer.
    """

    resource_type: str
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the monitoring API representation."""
        return {"type": self.resource_type, "labels": dict(self.labels)}


@dataclass(frozen=True)
class ExportPoint:
    """A single value of one series, ready to publish."""

    definition: MetricDefinition
    value: float
    tags: dict[str, str]
    end_time: datetime


def build_metric_definitions(
    prefix: str = DEFAULT_METRIC_PREFIX,
) -> tuple[MetricDefinition, ...]:
    """
    Build the temperature and pressure series definitions.

    Args:
        prefix: Metric type prefix, without trailing slash.

    Returns:
        Tuple of MetricDefinition, temperature first.
    """
    prefix = prefix.rstrip("/")
    return (
        MetricDefinition(
            name=METRIC_TEMPERATURE,
            metric_type=f"{prefix}/{METRIC_TEMPERATURE}",
            description="air temperature",
            unit=TEMPERATURE_UNIT,
        ),
        MetricDefinition(
            name=METRIC_PRESSURE,
            metric_type=f"{prefix}/{METRIC_PRESSURE}",
            description="barometric pressure",
            unit=PRESSURE_UNIT,
        ),
    )


def generic_node_resource(location: str, namespace: str, node_id: str) -> MonitoredResource:
    """Build the generic_node monitored resource for this host."""
    return MonitoredResource(
        resource_type=GENERIC_NODE,
        labels={
            "location": location,
            "namespace": namespace,
            "node_id": node_id,
        },
    )


# =============================================================================
# MetricsSink Base Class
# =============================================================================


class MetricsSink(ABC):
    """
    Abstract base class for metrics sinks.

    Subclasses implement _register() and _export(); buffering and the
    reporting cadence live here.

    Example:
        >>> sink = LoggingSink(resource)
        >>> await sink.register_series(definitions)
        >>> await sink.start()
        >>> sink.record(tagged)
        >>> await sink.flush()
    """

    def __init__(
        self,
        resource: MonitoredResource,
        *,
        reporting_interval_seconds: float = DEFAULT_REPORTING_INTERVAL,
    ) -> None:
        """
        Initialize the sink.

        Args:
            resource: Monitored resource attached to every exported series.
            reporting_interval_seconds: Interval between exports.
        """
        self._resource = resource
        self._interval = reporting_interval_seconds
        self._definitions: tuple[MetricDefinition, ...] = ()
        self._pending: dict[tuple[str, tuple[tuple[str, str], ...]], ExportPoint] = {}
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self.export_count = 0
        self.error_count = 0

    @property
    def resource(self) -> MonitoredResource:
        """Return the monitored resource."""
        return self._resource

    @property
    def definitions(self) -> tuple[MetricDefinition, ...]:
        """Return the registered series definitions."""
        return self._definitions

    @property
    def pending_count(self) -> int:
        """Return the number of buffered points."""
        return len(self._pending)

    @property
    def is_reporting(self) -> bool:
        """Check if the reporter task is active."""
        return self._task is not None and not self._task.done()

    async def register_series(self, definitions: Iterable[MetricDefinition]) -> None:
        """
        Register series definitions with the backend.

        Raises:
            RegistrationError: If no definitions are given or the backend
                rejects them.
        """
        definitions = tuple(definitions)
        if not definitions:
            raise RegistrationError("No metric definitions to register")

        await self._register(definitions)
        self._definitions = definitions

        logger.info(
            "Metric series registered",
            extra={"metric_types": [d.metric_type for d in definitions]},
        )

    def record(self, tagged: TaggedMeasurement) -> None:
        """
        Buffer a tagged measurement for the next export.

        Within a reporting window the last value per series and tag set wins.

        Raises:
            SchedulerStateError: If no series have been registered yet.
        """
        if not self._definitions:
            raise SchedulerStateError(
                "No metric series registered, call register_series() before record()",
                details={"observed_at": tagged.observed_at.isoformat()},
            )
        tags = tagged.tags
        tag_key = tuple(sorted(tags.items()))
        for definition in self._definitions:
            self._pending[(definition.metric_type, tag_key)] = ExportPoint(
                definition=definition,
                value=definition.value_of(tagged.measurement),
                tags=dict(tags),
                end_time=tagged.observed_at,
            )

    async def start(self) -> None:
        """Start the background reporter task."""
        if self.is_reporting:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._reporting_loop())
        logger.debug(
            "Metrics reporter started",
            extra={"reporting_interval_seconds": self._interval},
        )

    async def flush(self) -> None:
        """
        Stop the reporter and publish everything still buffered.

        Raises:
            MetricsExportError: If the final export fails.
        """
        self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10.0)
            except TimeoutError:
                logger.warning("Metrics reporter did not stop gracefully, cancelling")
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        await self._export_pending()

    async def _export_pending(self) -> None:
        if not self._pending:
            return
        batch = list(self._pending.values())
        self._pending.clear()
        await self._export(batch)
        self.export_count += len(batch)

    async def _reporting_loop(self) -> None:
        """Publish the buffer every reporting interval until flush() is called."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass

            try:
                await self._export_pending()
            except MetricsExportError as e:
                self.error_count += 1
                logger.error("Failed to export metrics", extra=e.log_extra())
            except Exception as e:
                self.error_count += 1
                logger.exception(
                    "Unexpected error exporting metrics",
                    extra={"error": str(e)},
                )

    @abstractmethod
    async def _register(self, definitions: tuple[MetricDefinition, ...]) -> None:
        """
        Create the series on the backend.

        Raises:
            RegistrationError: If the backend rejects the definitions.
        """

    @abstractmethod
    async def _export(self, points: list[ExportPoint]) -> None:
        """
        Publish a batch of points.

        Raises:
            MetricsExportError: If the batch cannot be published.
        """
