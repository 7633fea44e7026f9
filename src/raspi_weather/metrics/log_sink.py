"""
Sink that writes points to the structured log instead of a backend.

Used with --dry-run to check the sensor and the rainfall lookup on a device
without a cloud project.
"""

from __future__ import annotations

from raspi_weather.logging import get_logger
from raspi_weather.metrics.base import ExportPoint, MetricDefinition, MetricsSink

logger = get_logger(__name__)


class LoggingSink(MetricsSink):
    """Logs every exported point at INFO level."""

    async def _register(self, definitions: tuple[MetricDefinition, ...]) -> None:
        for definition in definitions:
            logger.info(
                "Metric series defined",
                extra={
                    "metric_type": definition.metric_type,
                    "unit": definition.unit,
                    "aggregation": definition.aggregation,
                },
            )

    async def _export(self, points: list[ExportPoint]) -> None:
        for point in points:
            logger.info(
                "Metric point",
                extra={
                    "metric_type": point.definition.metric_type,
                    "value": point.value,
                    "unit": point.definition.unit,
                    "tags": point.tags,
                    "resource": self._resource.to_dict(),
                    "end_time": point.end_time.isoformat(),
                },
            )
