"""
Sensor sources for the weather exporter.

Components:
- base: SensorSource abstract base class
- bmp280: Bosch BMP280 temperature/pressure driver over I2C (smbus2)
"""

from raspi_weather.sensors.base import SensorSource
from raspi_weather.sensors.bmp280 import BMP280Sensor

__all__ = [
    "SensorSource",
    "BMP280Sensor",
]
