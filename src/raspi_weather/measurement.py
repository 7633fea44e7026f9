"""
Measurement data model and unit conversion.

The sensor hands out readings in instrument units (kelvin, pascal); the
exported series are in degrees Celsius and hectopascals. normalize() is the
only place that conversion happens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from raspi_weather.weather import RainfallObservation

ZERO_CELSIUS_KELVIN = 273.15
PASCALS_PER_HECTOPASCAL = 100.0

# Tag value exported when no rainfall observation is available
UNKNOWN_RAINFALL = "unknown"


@dataclass(frozen=True)
class RawEnvironment:
    """
    A sensor reading in instrument units.

    Attributes:
        temperature_kelvin: Air temperature in kelvin.
        pressure_pa: Barometric pressure in pascal.
    """

    temperature_kelvin: float
    pressure_pa: float


@dataclass(frozen=True)
class Measurement:
    """
    A reading in exported units.

    Attributes:
        temperature: Air temperature in degrees Celsius.
        pressure: Barometric pressure in hectopascals.
    """

    temperature: float
    pressure: float


@dataclass(frozen=True)
class TaggedMeasurement:
    """
    A measurement decorated with the rainfall tag; the unit that gets exported.

    Attributes:
        measurement: Temperature and pressure of the tick.
        rainfall: Rainfall in millimeters as a string, or UNKNOWN_RAINFALL.
        observed_at: When the tick sampled the sensor (UTC).
    """

    measurement: Measurement
    rainfall: str = UNKNOWN_RAINFALL
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def tag(
        cls,
        measurement: Measurement,
        observation: RainfallObservation | None,
        observed_at: datetime | None = None,
    ) -> TaggedMeasurement:
        """
        Attach a rainfall observation to a measurement.

        A missing observation (None or an unknown one) yields the sentinel tag,
        never an absent tag.
        """
        return cls(
            measurement=measurement,
            rainfall=observation.tag_value if observation is not None else UNKNOWN_RAINFALL,
            observed_at=observed_at or datetime.now(UTC),
        )

    @property
    def tags(self) -> dict[str, str]:
        """Return the tag map exported with every series of this point."""
        return {"rainfall": self.rainfall}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "temperature": self.measurement.temperature,
            "pressure": self.measurement.pressure,
            "rainfall": self.rainfall,
            "observed_at": self.observed_at.isoformat(),
        }


def normalize(raw: RawEnvironment) -> Measurement:
    """
    Convert a raw reading into Celsius and hectopascals.

    Args:
        raw: Reading in kelvin and pascal.

    Returns:
        Measurement in degrees Celsius and hectopascals.
    """
    return Measurement(
        temperature=raw.temperature_kelvin - ZERO_CELSIUS_KELVIN,
        pressure=raw.pressure_pa / PASCALS_PER_HECTOPASCAL,
    )
