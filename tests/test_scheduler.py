"""
Tests for the sensing scheduler.

This test module validates:
- The per-tick pipeline (sample, convert, look up, record)
- Sensor failures skipping one export without stopping the loop
- Lookup failures exporting with the unknown rainfall tag
- Shutdown: a single flush, sensor release and state progression
- Signal handler installation
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import signal
from typing import Any

import pytest
import pytest_asyncio

from raspi_weather.context import RuntimeContext
from raspi_weather.errors import (
    MetricsExportError,
    RainfallLookupError,
    SchedulerStateError,
    SensorError,
)
from raspi_weather.measurement import RawEnvironment
from raspi_weather.metrics.base import ExportPoint
from raspi_weather.scheduler import (
    SHUTDOWN_SIGNALS,
    SchedulerState,
    SchedulerStatus,
    SensingScheduler,
    ShutdownToken,
    install_signal_handlers,
    remove_signal_handlers,
)
from raspi_weather.weather import RainfallObservation

# =============================================================================
# Helpers
# =============================================================================


async def _run(scheduler: SensingScheduler, timeout: float = 5.0) -> SchedulerState:
    return await asyncio.wait_for(scheduler.run(), timeout=timeout)


def _stop_after(sink: Any, scheduler: SensingScheduler, records: int) -> None:
    def on_record(_tagged: object) -> None:
        if len(sink.recorded) >= records:
            scheduler.stop("test")

    sink.on_record = on_record


@pytest_asyncio.fixture
async def registered_sink(fake_sink: Any, runtime_context: RuntimeContext) -> Any:
    await fake_sink.register_series(runtime_context.definitions)
    return fake_sink


# =============================================================================
# Tests for ShutdownToken
# =============================================================================


class TestShutdownToken:
    """Tests for ShutdownToken."""

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        """Test that cancel() wakes waiters."""
        token = ShutdownToken()
        assert not token.cancelled

        waiter = asyncio.create_task(token.wait())
        token.cancel("SIGTERM")
        await asyncio.wait_for(waiter, timeout=1.0)

        assert token.cancelled
        assert token.reason == "SIGTERM"

    @pytest.mark.asyncio
    async def test_first_reason_wins(self) -> None:
        """Test that repeated signals do not overwrite the reason."""
        token = ShutdownToken()
        token.cancel("SIGINT")
        token.cancel("SIGTERM")
        assert token.reason == "SIGINT"


# =============================================================================
# Tests for the tick pipeline
# =============================================================================


class TestSchedulerTicks:
    """Tests for what each tick records."""

    @pytest.mark.asyncio
    async def test_tick_records_converted_measurement(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test the sample, convert, look up and record pipeline."""
        fake_sensor.script = [RawEnvironment(temperature_kelvin=298.15, pressure_pa=100650.0)]
        fake_lookup.script = [RainfallObservation(millimeters=3)]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        state = await _run(scheduler)

        [tagged] = registered_sink.recorded
        assert tagged.measurement.temperature == pytest.approx(25.0)
        assert tagged.measurement.pressure == pytest.approx(1006.5)
        assert tagged.tags == {"rainfall": "3"}
        assert fake_lookup.calls == [(139.7041, 35.6618)]
        assert state.tick_count == 1
        assert state.export_count == 1

    @pytest.mark.asyncio
    async def test_sensor_failure_skips_one_tick(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """A failed read exports nothing for that tick; the next tick is normal."""
        fake_sensor.script = [SensorError("I2C read failed")]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        state = await _run(scheduler)

        assert fake_sensor.sample_count == 2
        assert len(registered_sink.recorded) == 1
        # No lookup for the skipped tick
        assert len(fake_lookup.calls) == 1
        assert state.tick_count == 2
        assert state.skipped_count == 1
        assert state.export_count == 1
        assert state.last_error == "I2C read failed"

    @pytest.mark.asyncio
    async def test_lookup_failure_exports_unknown(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """A failed lookup still exports the point, tagged unknown."""
        fake_lookup.script = [RainfallLookupError("service unavailable")]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 2)

        state = await _run(scheduler)

        first, second = registered_sink.recorded
        assert first.rainfall == "unknown"
        assert second.rainfall == "0"
        assert state.degraded_count == 1
        assert state.export_count == 2

    @pytest.mark.asyncio
    async def test_no_observation_exports_unknown(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """A response without observation is not counted as degraded."""
        fake_lookup.script = [RainfallObservation.UNKNOWN]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        state = await _run(scheduler)

        assert registered_sink.recorded[0].rainfall == "unknown"
        assert state.degraded_count == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_loop(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test that an unexpected exception is counted and the loop continues."""
        fake_lookup.script = [RuntimeError("boom")]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        state = await _run(scheduler)

        assert state.tick_count == 2
        assert state.error_count == 1
        assert len(registered_sink.recorded) == 1

    @pytest.mark.asyncio
    async def test_overrun_skips_missed_slots(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that a slow tick is not followed by a burst of catch-up ticks."""
        fake_lookup.delay = 0.05
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 2)

        with caplog.at_level(logging.WARNING, logger="raspi_weather"):
            state = await _run(scheduler)

        assert state.tick_count == 2
        assert any(r.getMessage() == "Tick overran the sampling interval" for r in caplog.records)


# =============================================================================
# Tests for shutdown
# =============================================================================


class TestSchedulerShutdown:
    """Tests for draining and the state machine."""

    @pytest.mark.asyncio
    async def test_cancel_mid_interval(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Cancelling while waiting flushes once and runs no further ticks."""
        context = dataclasses.replace(runtime_context, interval_seconds=3600)
        token = ShutdownToken()
        scheduler = SensingScheduler(
            context, fake_sensor, fake_lookup, registered_sink, token=token
        )

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        assert scheduler.status == SchedulerStatus.RUNNING

        token.cancel("SIGTERM")
        state = await asyncio.wait_for(task, timeout=1.0)

        assert state.tick_count == 0
        assert fake_sensor.sample_count == 0
        assert registered_sink.flush_count == 1
        assert fake_sensor.close_count == 1
        assert state.status == SchedulerStatus.STOPPED
        assert state.stop_reason == "SIGTERM"

    @pytest.mark.asyncio
    async def test_drain_flushes_buffered_points(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test that points recorded before shutdown reach the backend."""
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        await _run(scheduler)

        assert registered_sink.flush_count == 1
        [batch] = registered_sink.exported
        assert {p.definition.name for p in batch} == {"temperature", "pressure"}
        assert registered_sink.pending_count == 0

    @pytest.mark.asyncio
    async def test_state_progression(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test idle -> running -> stopped."""
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        seen: list[SchedulerStatus] = []

        def on_record(_tagged: object) -> None:
            seen.append(scheduler.status)
            scheduler.stop()

        registered_sink.on_record = on_record
        assert scheduler.status == SchedulerStatus.IDLE

        state = await _run(scheduler)

        assert seen == [SchedulerStatus.RUNNING]
        assert state.status == SchedulerStatus.STOPPED
        assert state.started_at is not None
        assert state.stopped_at is not None
        assert state.stopped_at >= state.started_at
        assert state.stop_reason == "requested"

    @pytest.mark.asyncio
    async def test_run_twice_fails(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test that a stopped scheduler cannot be restarted."""
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        scheduler.stop()
        await _run(scheduler)

        with pytest.raises(SchedulerStateError) as exc_info:
            await scheduler.run()

        assert exc_info.value.details == {"status": "stopped"}
        assert registered_sink.flush_count == 1

    @pytest.mark.asyncio
    async def test_failed_flush_still_releases_sensor(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test that an export error during drain is logged, not raised."""

        async def failing_export(points: list[ExportPoint]) -> None:
            raise MetricsExportError("backend down")

        registered_sink._export = failing_export  # type: ignore[method-assign]
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, registered_sink)
        _stop_after(registered_sink, scheduler, 1)

        state = await _run(scheduler)

        assert state.status == SchedulerStatus.STOPPED
        assert state.last_error == "backend down"
        assert fake_sensor.close_count == 1

    def test_get_status_returns_copy(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        fake_sink: Any,
    ) -> None:
        """Test that callers cannot mutate the scheduler state."""
        scheduler = SensingScheduler(runtime_context, fake_sensor, fake_lookup, fake_sink)
        status = scheduler.get_status()
        status.tick_count = 99
        assert scheduler.get_status().tick_count == 0
        assert status.to_dict()["status"] == "idle"


# =============================================================================
# Tests for signal handling
# =============================================================================


class TestSignalHandlers:
    """Tests for install_signal_handlers()."""

    def test_all_termination_signals(self) -> None:
        """Test the set of signals that trigger shutdown."""
        assert set(SHUTDOWN_SIGNALS) == {
            signal.SIGINT,
            signal.SIGHUP,
            signal.SIGTERM,
            signal.SIGQUIT,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sig", [signal.SIGHUP, signal.SIGTERM])
    async def test_signal_cancels_token(self, sig: signal.Signals) -> None:
        """Test that a delivered signal cancels the token with its name."""
        token = ShutdownToken()
        installed = install_signal_handlers(token)
        try:
            assert set(installed) == set(SHUTDOWN_SIGNALS)
            os.kill(os.getpid(), sig)
            await asyncio.wait_for(token.wait(), timeout=1.0)
        finally:
            remove_signal_handlers(installed)

        assert token.reason == sig.name

    @pytest.mark.asyncio
    async def test_signal_stops_scheduler(
        self,
        runtime_context: RuntimeContext,
        fake_sensor: Any,
        fake_lookup: Any,
        registered_sink: Any,
    ) -> None:
        """Test a SIGTERM arriving while the scheduler waits for the next tick."""
        context = dataclasses.replace(runtime_context, interval_seconds=3600)
        token = ShutdownToken()
        scheduler = SensingScheduler(
            context, fake_sensor, fake_lookup, registered_sink, token=token
        )
        installed = install_signal_handlers(token)
        try:
            task = asyncio.create_task(scheduler.run())
            await asyncio.sleep(0.05)
            os.kill(os.getpid(), signal.SIGTERM)
            state = await asyncio.wait_for(task, timeout=1.0)
        finally:
            remove_signal_handlers(installed)

        assert state.stop_reason == "SIGTERM"
        assert registered_sink.flush_count == 1
        assert fake_sensor.close_count == 1
