"""
Metrics export for the weather exporter.

Components:
- base: series definitions, monitored resource and the MetricsSink base class
- cloud_monitoring: Google Cloud Monitoring REST sink
- log_sink: sink writing points to the structured log
"""

from raspi_weather.metrics.base import (
    MetricDefinition,
    MetricsSink,
    MonitoredResource,
    build_metric_definitions,
    generic_node_resource,
)
from raspi_weather.metrics.cloud_monitoring import CloudMonitoringSink
from raspi_weather.metrics.log_sink import LoggingSink

__all__ = [
    "MetricDefinition",
    "MetricsSink",
    "MonitoredResource",
    "build_metric_definitions",
    "generic_node_resource",
    "CloudMonitoringSink",
    "LoggingSink",
]
