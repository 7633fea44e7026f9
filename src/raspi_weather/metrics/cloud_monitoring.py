"""
Google Cloud Monitoring sink.

Series are created as custom GAUGE/DOUBLE metric descriptors and points are
written with projects.timeSeries.create. The monitored resource (generic_node)
and its labels are attached to every time series in the request body.

Requests are authorized with Application Default Credentials, which are
refreshed whenever the current access token has expired.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import google.auth
import google.auth.exceptions
import google.auth.transport.requests
import httpx

from raspi_weather.errors import (
    ConfigurationError,
    MetricsExportError,
    RegistrationError,
)
from raspi_weather.logging import get_logger
from raspi_weather.metrics.base import (
    DEFAULT_REPORTING_INTERVAL,
    ExportPoint,
    MetricDefinition,
    MetricsSink,
    MonitoredResource,
)

if TYPE_CHECKING:
    from google.auth.credentials import Credentials

    from raspi_weather.config import MetricsConfig

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "https://monitoring.googleapis.com/v3"
DEFAULT_TIMEOUT_SECONDS = 10.0
MONITORING_WRITE_SCOPE = "https://www.googleapis.com/auth/monitoring.write"
# timeSeries.create accepts at most 200 series per call
MAX_SERIES_PER_REQUEST = 200


def default_credentials() -> Credentials:
    """
    Resolve Application Default Credentials scoped for metric writes.

    Raises:
        ConfigurationError: If no credentials can be found on this host.
    """
    try:
        credentials, _ = google.auth.default(scopes=[MONITORING_WRITE_SCOPE])
    except google.auth.exceptions.DefaultCredentialsError as e:
        raise ConfigurationError(
            "No Google application default credentials found. Set "
            "GOOGLE_APPLICATION_CREDENTIALS or run `gcloud auth application-default login`",
            details={"env": "GOOGLE_APPLICATION_CREDENTIALS", "error": str(e)},
        ) from e
    return credentials


def descriptor_body(definition: MetricDefinition) -> dict[str, Any]:
    """Build the metricDescriptors.create request body for a series."""
    return {
        "type": definition.metric_type,
        "displayName": definition.name,
        "description": definition.description,
        "metricKind": "GAUGE",
        "valueType": "DOUBLE",
        "unit": definition.unit,
        "labels": [
            {"key": key, "valueType": "STRING", "description": f"{key} tag"}
            for key in definition.tag_keys
        ],
    }


def time_series_body(point: ExportPoint, resource: MonitoredResource) -> dict[str, Any]:
    """Build one TimeSeries entry for timeSeries.create."""
    return {
        "metric": {
            "type": point.definition.metric_type,
            "labels": dict(point.tags),
        },
        "resource": resource.to_dict(),
        "metricKind": "GAUGE",
        "valueType": "DOUBLE",
        "points": [
            {
                "interval": {"endTime": point.end_time.isoformat()},
                "value": {"doubleValue": point.value},
            }
        ],
    }


class CloudMonitoringSink(MetricsSink):
    """
    Publishes points to Cloud Monitoring over its REST API.

    Example:
        >>> sink = CloudMonitoringSink("my-project", resource)
        >>> await sink.register_series(build_metric_definitions())
    """

    def __init__(
        self,
        project_id: str | None,
        resource: MonitoredResource,
        *,
        credentials: Credentials | None = None,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        reporting_interval_seconds: float = DEFAULT_REPORTING_INTERVAL,
    ) -> None:
        """
        Initialize the sink.

        Args:
            project_id: Cloud project the series belong to.
            resource: Monitored resource attached to every series.
            credentials: google-auth credentials. Application Default
                Credentials are used when omitted.
            endpoint: Monitoring API base URL.
            timeout_seconds: Timeout for each API request.
            reporting_interval_seconds: Interval between exports.

        Raises:
            ConfigurationError: If project_id is missing or no credentials
                can be found.
        """
        if not project_id:
            raise ConfigurationError(
                "Set the cloud project with GOOGLE_CLOUD_PROJECT or metrics.project_id",
                details={"env": "GOOGLE_CLOUD_PROJECT"},
            )
        super().__init__(resource, reporting_interval_seconds=reporting_interval_seconds)
        self._project_id = project_id
        self._credentials = credentials if credentials is not None else default_credentials()
        self._auth_request = google.auth.transport.requests.Request()
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout_seconds

    @classmethod
    def from_config(
        cls,
        config: MetricsConfig,
        resource: MonitoredResource,
        credentials: Credentials | None = None,
    ) -> CloudMonitoringSink:
        """Create a CloudMonitoringSink from configuration."""
        return cls(
            config.project_id,
            resource,
            credentials=credentials,
            endpoint=config.endpoint,
            timeout_seconds=config.timeout_seconds,
            reporting_interval_seconds=config.reporting_interval_seconds,
        )

    @property
    def project_id(self) -> str:
        """Return the project identifier."""
        return self._project_id

    @property
    def _project_url(self) -> str:
        return f"{self._endpoint}/projects/{self._project_id}"

    async def _authorization_headers(self) -> dict[str, str]:
        """Return request headers, refreshing the access token when it has expired."""
        if not self._credentials.valid:
            logger.debug("Refreshing monitoring access token")
            loop = asyncio.get_running_loop()
            # Token refresh does blocking HTTP through the requests transport
            await loop.run_in_executor(
                None, self._credentials.refresh, self._auth_request
            )
        headers = {"Content-Type": "application/json"}
        self._credentials.apply(headers)
        return headers

    async def _register(self, definitions: tuple[MetricDefinition, ...]) -> None:
        url = f"{self._project_url}/metricDescriptors"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                for definition in definitions:
                    headers = await self._authorization_headers()
                    response = await client.post(
                        url, json=descriptor_body(definition), headers=headers
                    )
                    response.raise_for_status()
        except google.auth.exceptions.GoogleAuthError as e:
            raise RegistrationError(
                f"Failed to obtain monitoring credentials: {e}",
                details={"error": type(e).__name__},
            ) from e
        except httpx.HTTPStatusError as e:
            raise RegistrationError(
                f"Monitoring API rejected metric descriptor: {e.response.status_code}",
                details={"status_code": e.response.status_code, "body": e.response.text},
            ) from e
        except httpx.HTTPError as e:
            raise RegistrationError(
                f"Failed to register metric descriptors: {e}",
                details={"error": type(e).__name__},
            ) from e

    async def _export(self, points: list[ExportPoint]) -> None:
        url = f"{self._project_url}/timeSeries"
        series = [time_series_body(point, self._resource) for point in points]
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                for start in range(0, len(series), MAX_SERIES_PER_REQUEST):
                    chunk = series[start : start + MAX_SERIES_PER_REQUEST]
                    headers = await self._authorization_headers()
                    response = await client.post(
                        url, json={"timeSeries": chunk}, headers=headers
                    )
                    response.raise_for_status()
        except google.auth.exceptions.GoogleAuthError as e:
            raise MetricsExportError(
                f"Failed to refresh monitoring credentials: {e}",
                details={"error": type(e).__name__, "series_count": len(series)},
            ) from e
        except httpx.HTTPStatusError as e:
            raise MetricsExportError(
                f"Monitoring API rejected time series: {e.response.status_code}",
                details={
                    "status_code": e.response.status_code,
                    "series_count": len(series),
                },
            ) from e
        except httpx.HTTPError as e:
            raise MetricsExportError(
                f"Failed to export time series: {e}",
                details={"error": type(e).__name__, "series_count": len(series)},
            ) from e

        logger.debug("Time series exported", extra={"series_count": len(series)})
