"""
Rainfall lookup against the Yahoo! Japan weather-by-coordinate API.

One request is made per call; results are never cached or retried. The
response nests a list of weather entries per queried location:

    {"Feature": [{"Property": {"WeatherList": {"Weather": [
        {"Type": "observation", "Date": "201907011200", "Rainfall": 0.0},
        {"Type": "forecast", "Date": "201907011210", "Rainfall": 0.35}
    ]}}}]}

The first "observation" entry of the first feature is the current rainfall.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from raspi_weather.errors import ConfigurationError, RainfallLookupError
from raspi_weather.logging import get_logger
from raspi_weather.measurement import UNKNOWN_RAINFALL

if TYPE_CHECKING:
    from raspi_weather.config import WeatherConfig

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "https://map.yahooapis.jp/weather/V1/place"
DEFAULT_TIMEOUT_SECONDS = 5.0
OBSERVATION_TYPE = "observation"
APP_ID_HELP_URL = "https://e.developer.yahoo.co.jp/dashboard/"


@dataclass(frozen=True)
class RainfallObservation:
    """
    Current rainfall at the queried location.

    Attributes:
        millimeters: Rainfall truncated to whole millimeters, or None when
            the service had no observation entry.
    """

    millimeters: int | None

    UNKNOWN: ClassVar[RainfallObservation]

    @property
    def is_known(self) -> bool:
        """Check if the observation carries a value."""
        return self.millimeters is not None

    @property
    def tag_value(self) -> str:
        """Return the value used for the rainfall tag."""
        if self.millimeters is None:
            return UNKNOWN_RAINFALL
        return str(self.millimeters)


RainfallObservation.UNKNOWN = RainfallObservation(millimeters=None)


def parse_rainfall(payload: Any) -> RainfallObservation:
    """
    Extract the observed rainfall from a decoded API response.

    Args:
        payload: Decoded JSON body.

    Returns:
        The observation, or RainfallObservation.UNKNOWN if the response holds
        no feature or no "observation" entry.

    Raises:
        RainfallLookupError: If the body does not have the expected structure.
    """
    try:
        features = payload["Feature"]
        if not features:
            return RainfallObservation.UNKNOWN
        weathers = features[0]["Property"]["WeatherList"]["Weather"]
        for weather in weathers:
            if weather.get("Type") == OBSERVATION_TYPE:
                return RainfallObservation(millimeters=int(weather["Rainfall"]))
    except (
        KeyError,
        IndexError,
        TypeError,
        ValueError,
        AttributeError,
        OverflowError,
    ) as e:
        raise RainfallLookupError(
            f"Unexpected weather response structure: {e!r}",
            details={"error": str(e)},
        ) from e

    return RainfallObservation.UNKNOWN


class RainfallLookup:
    """
    Fetches the current rainfall for a coordinate.

    The credential is checked when the lookup is built, so a missing app id
    stops the program before any request is attempted.

    Example:
        >>> lookup = RainfallLookup(app_id="dj00aiZpPW...")
        >>> observation = await lookup.fetch(139.7041, 35.6618)
        >>> observation.tag_value
        '0'
    """

    def __init__(
        self,
        app_id: str | None,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the lookup.

        Args:
            app_id: Yahoo! Japan application ID.
            endpoint: Weather-by-coordinate endpoint URL.
            timeout_seconds: Upper bound for a whole request, body included.
            transport: Optional httpx transport (e.g., for testing).

        Raises:
            ConfigurationError: If app_id is missing or blank.
        """
        if not app_id or not app_id.strip():
            raise ConfigurationError(
                f"Set Yahoo! Japan App ID from developers dashboard: {APP_ID_HELP_URL}",
                details={"env": "YAHOO_APP_ID"},
            )
        self._app_id = app_id.strip()
        self._endpoint = endpoint
        self._timeout = timeout_seconds
        self._transport = transport

    @classmethod
    def from_config(cls, config: WeatherConfig) -> RainfallLookup:
        """Create a RainfallLookup from configuration."""
        return cls(
            config.app_id,
            endpoint=config.endpoint,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        """Return the endpoint URL."""
        return self._endpoint

    @property
    def timeout_seconds(self) -> float:
        """Return the request timeout in seconds."""
        return self._timeout

    async def fetch(self, longitude: float, latitude: float) -> RainfallObservation:
        """
        Fetch the current rainfall observation.

        Args:
            longitude: Longitude of the location.
            latitude: Latitude of the location.

        Returns:
            The observation, or RainfallObservation.UNKNOWN if none was reported.

        Raises:
            RainfallLookupError: On transport failure, error status, bad body or
                when the whole request exceeds the timeout.
        """
        params = {
            "coordinates": f"{longitude:f},{latitude:f}",
            "appid": self._app_id,
            "output": "json",
        }

        # httpx timeouts apply per connect/read/write step; the deadline covers the call
        try:
            async with asyncio.timeout(self._timeout):
                async with httpx.AsyncClient(
                    timeout=self._timeout, transport=self._transport
                ) as client:
                    response = await client.get(self._endpoint, params=params)
                    response.raise_for_status()
                    payload = response.json()
        except TimeoutError as e:
            raise RainfallLookupError(
                f"Weather API did not answer within {self._timeout}s",
                details={"timeout_seconds": self._timeout},
            ) from e
        except httpx.HTTPStatusError as e:
            raise RainfallLookupError(
                f"Weather API returned status {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise RainfallLookupError(
                f"Failed to fetch rainfall: {e}",
                details={"error": type(e).__name__},
            ) from e
        except ValueError as e:
            raise RainfallLookupError(
                f"Invalid weather response: {e}",
                details={"error": str(e)},
            ) from e

        observation = parse_rainfall(payload)
        logger.debug(
            "Rainfall fetched",
            extra={"rainfall": observation.tag_value},
        )
        return observation
