"""
Bosch BMP280 temperature/pressure sensor over I2C.

Ref: https://ae-bst.resource.bosch.com/media/_tech/media/datasheets/BST-BMP280-DS001.pdf

The sensor runs in normal mode so that every sample() is a single burst read
of the latest conversion; compensation uses the floating-point formulas of
datasheet §8.1.
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import smbus2

from raspi_weather.errors import SensorError, SensorInitError
from raspi_weather.logging import get_logger
from raspi_weather.measurement import ZERO_CELSIUS_KELVIN, RawEnvironment
from raspi_weather.sensors.base import SensorSource

if TYPE_CHECKING:
    from raspi_weather.config import SensorConfig

logger = get_logger(__name__)

# =============================================================================
# Registers
# =============================================================================

REG_CALIB = 0x88  # 24 bytes, T1..P9
CALIB_LENGTH = 24
REG_ID = 0xD0
CHIP_ID_BMP280 = 0x58
REG_CTRL_MEAS = 0xF4
REG_CONFIG = 0xF5
REG_DATA = 0xF7  # press_msb .. temp_xlsb
DATA_LENGTH = 6

MODE_NORMAL = 0b11
# Standby 62.5 ms, IIR filter off
CONFIG_DEFAULT = 0b001_000_00

# Value reported by a channel whose conversion was skipped
SKIPPED_READING = 0x80000

OVERSAMPLING_BITS = {
    1: 0b001,
    2: 0b010,
    4: 0b011,
    8: 0b100,
    16: 0b101,
}

DEFAULT_BUS = 1
DEFAULT_ADDRESS = 0x77


@dataclass(frozen=True)
class Calibration:
    """Factory trimming parameters stored in the sensor NVM."""

    t1: int
    t2: int
    t3: int
    p1: int
    p2: int
    p3: int
    p4: int
    p5: int
    p6: int
    p7: int
    p8: int
    p9: int

    @classmethod
    def from_bytes(cls, data: bytes) -> Calibration:
        """Decode the little-endian calibration block (T1 and P1 unsigned)."""
        return cls(*struct.unpack("<HhhHhhhhhhhh", data))


def compensate(calibration: Calibration, raw_temp: int, raw_press: int) -> RawEnvironment:
    """
    Turn raw ADC values into temperature and pressure.

    Args:
        calibration: Calibration read from the device.
        raw_temp: 20-bit temperature ADC value.
        raw_press: 20-bit pressure ADC value.

    Returns:
        Reading in kelvin and pascal.
    """
    c = calibration

    x1 = (raw_temp / 16384.0 - c.t1 / 1024.0) * c.t2
    x2 = (raw_temp / 131072.0 - c.t1 / 8192.0) ** 2 * c.t3
    t_fine = x1 + x2
    celsius = t_fine / 5120.0

    x1 = t_fine / 2.0 - 64000.0
    x2 = x1 * x1 * c.p6 / 32768.0
    x2 = x2 + x1 * c.p5 * 2.0
    x2 = x2 / 4.0 + c.p4 * 65536.0
    x1 = (c.p3 * x1 * x1 / 524288.0 + c.p2 * x1) / 524288.0
    x1 = (1.0 + x1 / 32768.0) * c.p1
    if x1 == 0:
        # Avoid division by zero on an uninitialized sensor
        pressure = 0.0
    else:
        p = 1048576.0 - raw_press
        p = (p - x2 / 4096.0) * 6250.0 / x1
        x1 = c.p9 * p * p / 2147483648.0
        x2 = p * c.p8 / 32768.0
        pressure = p + (x1 + x2 + c.p7) / 16.0

    return RawEnvironment(
        temperature_kelvin=celsius + ZERO_CELSIUS_KELVIN,
        pressure_pa=pressure,
    )


class BMP280Sensor(SensorSource):
    """
    BMP280 driver on a Linux I2C bus.

    Example:
        >>> sensor = BMP280Sensor(bus=1, address=0x77)
        >>> with sensor:
        ...     raw = sensor.sample()
    """

    def __init__(
        self,
        bus: int = DEFAULT_BUS,
        address: int = DEFAULT_ADDRESS,
        *,
        oversampling: int = 4,
        bus_factory: Callable[[int], Any] = smbus2.SMBus,
    ) -> None:
        """
        Initialize the driver. No bus access happens until open().

        Args:
            bus: I2C bus number.
            address: Sensor address (0x76 or 0x77).
            oversampling: Oversampling ratio for temperature and pressure.
            bus_factory: Callable returning an SMBus-compatible handle.
        """
        self._bus_number = bus
        self._address = address
        self._oversampling = oversampling
        self._bus_factory = bus_factory
        self._bus: Any = None
        self._calibration: Calibration | None = None

    @classmethod
    def from_config(cls, config: SensorConfig) -> BMP280Sensor:
        """Create a BMP280Sensor from configuration."""
        return cls(
            bus=config.bus,
            address=config.address,
            oversampling=config.oversampling,
        )

    @property
    def is_open(self) -> bool:
        """Check if the bus handle is held."""
        return self._bus is not None

    def open(self) -> None:
        """
        Open the bus, verify the chip and start continuous conversion.

        Raises:
            SensorInitError: If the bus cannot be opened or the chip does not answer
                as a BMP280.
        """
        if self._bus is not None:
            return

        details = {"bus": self._bus_number, "address": f"{self._address:#04x}"}
        try:
            self._bus = self._bus_factory(self._bus_number)
            chip_id = self._bus.read_byte_data(self._address, REG_ID)
            if chip_id != CHIP_ID_BMP280:
                raise SensorInitError(
                    f"Unexpected chip id {chip_id:#04x}, expected BMP280",
                    details={**details, "chip_id": chip_id},
                )
            calib = self._bus.read_i2c_block_data(self._address, REG_CALIB, CALIB_LENGTH)
            self._calibration = Calibration.from_bytes(bytes(calib))

            osrs = OVERSAMPLING_BITS[self._oversampling]
            self._bus.write_byte_data(self._address, REG_CONFIG, CONFIG_DEFAULT)
            self._bus.write_byte_data(
                self._address, REG_CTRL_MEAS, (osrs << 5) | (osrs << 2) | MODE_NORMAL
            )
        except SensorInitError:
            self.close()
            raise
        except OSError as e:
            self.close()
            raise SensorInitError(
                f"Failed to initialize BMP280: {e}", details=details
            ) from e

        logger.info("BMP280 initialized", extra=details)

    def sample(self) -> RawEnvironment:
        """
        Read the latest conversion.

        Raises:
            SensorError: If the sensor is not open, the read fails or a channel
                reports a skipped conversion.
        """
        if self._bus is None or self._calibration is None:
            raise SensorError("BMP280 is not open")

        try:
            data = self._bus.read_i2c_block_data(self._address, REG_DATA, DATA_LENGTH)
        except OSError as e:
            raise SensorError(
                f"Failed to read BMP280: {e}",
                details={"bus": self._bus_number, "address": f"{self._address:#04x}"},
            ) from e

        raw_press = (data[0] << 12) | (data[1] << 4) | (data[2] >> 4)
        raw_temp = (data[3] << 12) | (data[4] << 4) | (data[5] >> 4)
        if raw_press == SKIPPED_READING or raw_temp == SKIPPED_READING:
            raise SensorError(
                "BMP280 returned a skipped conversion",
                details={"raw_temp": raw_temp, "raw_press": raw_press},
            )

        return compensate(self._calibration, raw_temp, raw_press)

    def close(self) -> None:
        """Release the bus handle."""
        if self._bus is None:
            return
        try:
            self._bus.close()
        except OSError as e:
            logger.warning("Error closing I2C bus", extra={"error": str(e)})
        finally:
            self._bus = None
