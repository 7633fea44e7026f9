"""
Periodic sensing scheduler.

The SensingScheduler is the state machine of the pipeline:

    idle -> running -> draining -> stopped

While running it multiplexes two event sources on one asyncio loop: a
fixed-rate timer and a ShutdownToken. Each tick samples the sensor, converts
units, looks up rainfall and records the tagged point; the tick always runs to
completion before the token is checked again. Cancelling the token (from a
signal handler or a test) moves the scheduler to draining, where the sink is
flushed once and the sensor released.

Failure policy per tick:
- Sensor read failure: logged, no export for the tick, loop continues.
- Rainfall lookup failure: logged, the point is exported with the
  "unknown" rainfall tag.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from raspi_weather.errors import (
    MetricsExportError,
    RainfallLookupError,
    SchedulerStateError,
    SensorError,
)
from raspi_weather.logging import get_logger
from raspi_weather.measurement import TaggedMeasurement, normalize
from raspi_weather.weather import RainfallObservation

if TYPE_CHECKING:
    from raspi_weather.context import RuntimeContext
    from raspi_weather.metrics.base import MetricsSink
    from raspi_weather.sensors.base import SensorSource
    from raspi_weather.weather import RainfallLookup

logger = get_logger(__name__)

# Signals that all trigger the same graceful shutdown
SHUTDOWN_SIGNALS = (
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGTERM,
    signal.SIGQUIT,
)


# =============================================================================
# Enums and Data Models
# =============================================================================


class SchedulerStatus(str, Enum):
    """Status of the sensing scheduler."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class SchedulerState:
    """
    Current state of the sensing scheduler.

    Attributes:
        status: Current scheduler status.
        started_at: When the timer started.
        stopped_at: When draining finished.
        last_tick_at: When the last tick ran.
        tick_count: Ticks processed.
        export_count: Ticks that recorded a point.
        skipped_count: Ticks skipped because the sensor read failed.
        degraded_count: Ticks exported with the unknown rainfall tag after a
            lookup failure.
        error_count: Errors of any kind raised during ticks.
        last_error: Last error message if any.
        stop_reason: What cancelled the scheduler (e.g., "SIGTERM").
    """

    status: SchedulerStatus = SchedulerStatus.IDLE
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_tick_at: datetime | None = None
    tick_count: int = 0
    export_count: int = 0
    skipped_count: int = 0
    degraded_count: int = 0
    error_count: int = 0
    last_error: str | None = None
    stop_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "tick_count": self.tick_count,
            "export_count": self.export_count,
            "skipped_count": self.skipped_count,
            "degraded_count": self.degraded_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "stop_reason": self.stop_reason,
        }


class ShutdownToken:
    """
    Cooperative cancellation token checked by the scheduler between ticks.

    Example:
        >>> token = ShutdownToken()
        >>> token.cancel("SIGTERM")
        >>> token.cancelled
        True
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Check if shutdown was requested."""
        return self._event.is_set()

    def cancel(self, reason: str = "requested") -> None:
        """Request shutdown. Only the first reason is kept."""
        if self._event.is_set():
            return
        self.reason = reason
        logger.info("Shutdown requested", extra={"reason": reason})
        self._event.set()

    async def wait(self) -> None:
        """Wait until shutdown is requested."""
        await self._event.wait()


def install_signal_handlers(
    token: ShutdownToken,
    loop: asyncio.AbstractEventLoop | None = None,
) -> list[signal.Signals]:
    """
    Route the termination signals to a shutdown token.

    Args:
        token: Token cancelled by any of SHUTDOWN_SIGNALS.
        loop: Event loop to install on (defaults to the running loop).

    Returns:
        The signals that were installed.
    """
    loop = loop or asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, token.cancel, sig.name)
        except (ValueError, NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.warning("Cannot install signal handler", extra={"signal": sig.name})
            continue
        installed.append(sig)
    return installed


def remove_signal_handlers(
    signals: list[signal.Signals],
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    """Remove handlers installed by install_signal_handlers()."""
    loop = loop or asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


# =============================================================================
# SensingScheduler Class
# =============================================================================


class SensingScheduler:
    """
    Runs the sample, lookup and record pipeline at a fixed rate.

    The timer fires at start + n * interval. A tick that overruns its slot
    pushes the next tick to the following free slot; missed slots are not
    replayed.

    Example:
        >>> token = ShutdownToken()
        >>> scheduler = SensingScheduler(context, sensor, lookup, sink, token=token)
        >>> install_signal_handlers(token)
        >>> state = await scheduler.run()
    """

    def __init__(
        self,
        context: RuntimeContext,
        sensor: SensorSource,
        lookup: RainfallLookup,
        sink: MetricsSink,
        *,
        token: ShutdownToken | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            context: Static runtime context (coordinates, interval).
            sensor: Sensor source, owned by the scheduler until stopped.
            lookup: Rainfall lookup.
            sink: Metrics sink with its series already registered.
            token: Shutdown token; a fresh one is created when omitted.
        """
        self._context = context
        self._sensor = sensor
        self._lookup = lookup
        self._sink = sink
        self._token = token or ShutdownToken()
        self._state = SchedulerState()

    @property
    def token(self) -> ShutdownToken:
        """Return the shutdown token."""
        return self._token

    @property
    def status(self) -> SchedulerStatus:
        """Return the current status."""
        return self._state.status

    def get_status(self) -> SchedulerState:
        """
        Get the current scheduler state.

        Returns:
            Copy of the current SchedulerState.
        """
        return SchedulerState(**vars(self._state))

    def stop(self, reason: str = "requested") -> None:
        """Request a graceful shutdown."""
        self._token.cancel(reason)

    async def run(self) -> SchedulerState:
        """
        Run ticks until the token is cancelled, then drain.

        Returns:
            The final SchedulerState.

        Raises:
            SchedulerStateError: If the scheduler has already been run.
        """
        if self._state.status != SchedulerStatus.IDLE:
            raise SchedulerStateError(
                "Scheduler can only be run once",
                details={"status": self._state.status.value},
            )

        loop = asyncio.get_running_loop()
        interval = float(self._context.interval_seconds)

        self._state.status = SchedulerStatus.RUNNING
        self._state.started_at = datetime.now(UTC)
        logger.info("Sensing scheduler started", extra=self._context.to_dict())

        next_tick = loop.time() + interval
        try:
            while not self._token.cancelled:
                delay = next_tick - loop.time()
                if delay > 0:
                    try:
                        await asyncio.wait_for(self._token.wait(), timeout=delay)
                        # Token was cancelled
                        break
                    except TimeoutError:
                        pass

                await self._run_tick()

                next_tick += interval
                now = loop.time()
                if next_tick <= now:
                    missed = int((now - next_tick) // interval) + 1
                    next_tick += missed * interval
                    logger.warning(
                        "Tick overran the sampling interval",
                        extra={"missed_ticks": missed},
                    )
        finally:
            await self._drain()

        return self.get_status()

    async def _run_tick(self) -> None:
        self._state.tick_count += 1
        self._state.last_tick_at = datetime.now(UTC)
        try:
            await self._tick()
        except Exception as e:
            self._record_error(e)
            logger.exception(
                "Unexpected error during tick",
                extra={"tick": self._state.tick_count, "error": str(e)},
            )

    async def _tick(self) -> None:
        """Sample, enrich and record one point."""
        tick = self._state.tick_count
        loop = asyncio.get_running_loop()

        try:
            raw = await loop.run_in_executor(None, self._sensor.sample)
        except SensorError as e:
            self._state.skipped_count += 1
            self._record_error(e)
            logger.warning(
                "Error on sensing, skipping export",
                extra={"tick": tick, **e.log_extra()},
            )
            return

        observed_at = datetime.now(UTC)
        measurement = normalize(raw)

        try:
            observation = await self._lookup.fetch(
                self._context.longitude, self._context.latitude
            )
        except RainfallLookupError as e:
            self._state.degraded_count += 1
            self._record_error(e)
            logger.warning(
                "Rainfall lookup failed, exporting with unknown rainfall",
                extra={"tick": tick, **e.log_extra()},
            )
            observation = RainfallObservation.UNKNOWN

        tagged = TaggedMeasurement.tag(measurement, observation, observed_at)
        self._sink.record(tagged)
        self._state.export_count += 1

        logger.debug("Measurement recorded", extra={"tick": tick, **tagged.to_dict()})

    def _record_error(self, error: Exception) -> None:
        self._state.error_count += 1
        self._state.last_error = str(error)

    async def _drain(self) -> None:
        """Flush the sink once and release the sensor."""
        self._state.status = SchedulerStatus.DRAINING
        self._state.stop_reason = self._token.reason
        logger.info(
            "Sensing scheduler draining",
            extra={"reason": self._token.reason, "tick_count": self._state.tick_count},
        )

        try:
            await self._sink.flush()
        except MetricsExportError as e:
            self._record_error(e)
            logger.error("Final metrics flush failed", extra=e.log_extra())
        finally:
            self._sensor.close()
            self._state.status = SchedulerStatus.STOPPED
            self._state.stopped_at = datetime.now(UTC)

        logger.info("Sensing scheduler stopped", extra=self._state.to_dict())
