"""
Raspberry Pi weather exporter.

This package samples a BMP280 temperature/pressure sensor on a fixed
interval, tags each reading with the current rainfall from the Yahoo! Japan
weather API and publishes it to Google Cloud Monitoring.
"""

__version__ = "0.1.0"
