"""
Sensor source abstraction.

A SensorSource owns a hardware handle for the lifetime of the scheduler and
produces one RawEnvironment per call to sample().
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from raspi_weather.measurement import RawEnvironment


class SensorSource(ABC):
    """
    Abstract base class for sensor sources.

    Implementations must:
    - Raise SensorInitError from open() when the device cannot be initialized
    - Raise SensorError from sample() when a single read fails
    - Make close() safe to call more than once
    """

    def open(self) -> None:  # noqa: B027
        """Acquire the hardware handle. Sources without setup keep the default."""

    @abstractmethod
    def sample(self) -> RawEnvironment:
        """
        Read the sensor once.

        Returns:
            The reading in instrument units.

        Raises:
            SensorError: If the read fails.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the hardware handle."""

    def __enter__(self) -> SensorSource:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
