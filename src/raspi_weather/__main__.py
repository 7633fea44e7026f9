"""
Command-line entry point for the weather exporter.

Startup order:
1. Load configuration and set up logging
2. Build the rainfall lookup (fails fast without an app id)
3. Build the runtime context (resolves the hostname)
4. Build the metrics sink and register the series
5. Open the sensor
6. Run the scheduler until a termination signal arrives

Any fatal error exits with status 1 after releasing what was acquired.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from pydantic import ValidationError

from raspi_weather.config import AppConfig, load_config
from raspi_weather.context import RuntimeContext
from raspi_weather.errors import WeatherStationError
from raspi_weather.logging import get_logger, setup_logging
from raspi_weather.metrics.base import MetricsSink
from raspi_weather.metrics.cloud_monitoring import CloudMonitoringSink
from raspi_weather.metrics.log_sink import LoggingSink
from raspi_weather.scheduler import (
    SensingScheduler,
    ShutdownToken,
    install_signal_handlers,
    remove_signal_handlers,
)
from raspi_weather.sensors.bmp280 import BMP280Sensor
from raspi_weather.weather import RainfallLookup

logger = get_logger(__name__)


def build_sink(config: AppConfig, context: RuntimeContext) -> MetricsSink:
    """
    Create the configured metrics sink.

    Raises:
        ConfigurationError: If the cloud backend has no project id or no
            application default credentials.
    """
    if config.metrics.backend == "log":
        return LoggingSink(
            context.resource,
            reporting_interval_seconds=config.metrics.reporting_interval_seconds,
        )
    return CloudMonitoringSink.from_config(config.metrics, context.resource)


async def run(config: AppConfig) -> int:
    """
    Wire the pipeline together and run it until shutdown.

    Returns:
        Process exit status (0 on clean shutdown).

    Raises:
        WeatherStationError: On any fatal startup error.
    """
    lookup = RainfallLookup.from_config(config.weather)
    context = RuntimeContext.from_config(config)
    sink = build_sink(config, context)
    await sink.register_series(context.definitions)

    sensor = BMP280Sensor.from_config(config.sensor)
    sensor.open()

    token = ShutdownToken()
    signals: list[signal.Signals] = []
    try:
        signals = install_signal_handlers(token)
        await sink.start()
        scheduler = SensingScheduler(context, sensor, lookup, sink, token=token)
        state = await scheduler.run()
    except BaseException:
        # The scheduler releases the sensor itself once it has run
        sensor.close()
        raise
    finally:
        remove_signal_handlers(signals)

    logger.info("Exporter exited", extra=state.to_dict())
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    Run the exporter.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit status.
    """
    try:
        config = load_config(cli_args=argv)
    except WeatherStationError as e:
        setup_logging()
        logger.critical("Failed to load configuration", extra=e.log_extra())
        return 1
    except ValidationError as e:
        setup_logging()
        logger.critical("Invalid configuration", extra={"error": str(e)})
        return 1

    setup_logging(config.logging)

    try:
        return asyncio.run(run(config))
    except WeatherStationError as e:
        logger.critical("Fatal error, exiting", extra=e.log_extra())
        return 1


if __name__ == "__main__":
    sys.exit(main())
