"""
Pytest configuration and shared fakes for the weather exporter tests.

The fakes are exposed through fixtures; test modules do not import them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator

import pytest

from raspi_weather.context import RuntimeContext
from raspi_weather.measurement import RawEnvironment, TaggedMeasurement
from raspi_weather.metrics.base import (
    ExportPoint,
    MetricDefinition,
    MetricsSink,
    build_metric_definitions,
    generic_node_resource,
)
from raspi_weather.sensors.base import SensorSource
from raspi_weather.weather import RainfallObservation

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fakes
# =============================================================================


class FakeSensor(SensorSource):
    """Sensor returning scripted readings; an exception in the script is raised."""

    def __init__(self, script: list[RawEnvironment | Exception] | None = None) -> None:
        self.script = list(script or [])
        self.default = RawEnvironment(temperature_kelvin=295.15, pressure_pa=101325.0)
        self.sample_count = 0
        self.close_count = 0

    def sample(self) -> RawEnvironment:
        self.sample_count += 1
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.close_count += 1


class FakeLookup:
    """Rainfall lookup returning scripted observations, optionally after a delay."""

    def __init__(
        self, script: list[RainfallObservation | Exception] | None = None
    ) -> None:
        self.script = list(script or [])
        self.calls: list[tuple[float, float]] = []
        self.delay = 0.0

    async def fetch(self, longitude: float, latitude: float) -> RainfallObservation:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls.append((longitude, latitude))
        item = self.script.pop(0) if self.script else RainfallObservation(millimeters=0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeSink(MetricsSink):
    """Sink keeping recorded measurements and exported batches in memory."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(
            generic_node_resource("test-zone", "test", "test-node"),
            **kwargs,  # type: ignore[arg-type]
        )
        self.recorded: list[TaggedMeasurement] = []
        self.exported: list[list[ExportPoint]] = []
        self.registered: tuple[MetricDefinition, ...] = ()
        self.flush_count = 0
        self.on_record = None

    def record(self, tagged: TaggedMeasurement) -> None:
        super().record(tagged)
        self.recorded.append(tagged)
        if self.on_record is not None:
            self.on_record(tagged)

    async def flush(self) -> None:
        self.flush_count += 1
        await super().flush()

    async def _register(self, definitions: tuple[MetricDefinition, ...]) -> None:
        self.registered = definitions

    async def _export(self, points: list[ExportPoint]) -> None:
        self.exported.append(points)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def runtime_context() -> RuntimeContext:
    """A context with a short interval for scheduler tests."""
    return RuntimeContext(
        project_id="test-project",
        resource=generic_node_resource("test-zone", "test", "test-node"),
        definitions=build_metric_definitions(),
        longitude=139.7041,
        latitude=35.6618,
        interval_seconds=0.01,
    )


@pytest.fixture
def fake_sensor() -> FakeSensor:
    return FakeSensor()


@pytest.fixture
def fake_lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink(reporting_interval_seconds=3600)


@pytest.fixture
def fast_sink() -> FakeSink:
    """A sink whose reporter exports every 10 ms."""
    return FakeSink(reporting_interval_seconds=0.01)


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Remove handlers installed by setup_logging() between tests."""
    yield
    logger = logging.getLogger("raspi_weather")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
