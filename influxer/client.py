"""Transport to the time-series database.

The metric types only depend on the ``Transport`` protocol;
``InfluxerClient`` implements it against the InfluxDB 0.8 HTTP API.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

import httpx

from .config import InfluxerSettings, settings as default_settings
from .errors import ClientError

logger = logging.getLogger(__name__)

_PRECISION_FACTORS = {"s": 1, "ms": 1_000, "u": 1_000_000}


@runtime_checkable
class Transport(Protocol):
    """Point-write and query operations a metric registry is bound to."""

    def write_point(self, series: str, data: Mapping[str, Any]) -> None:
        """Write one point with ``data`` columns to the bare ``series`` name."""
        ...

    def query(self, query: str) -> Dict[str, List[Dict[str, Any]]]:
        """Run ``query`` and return points grouped by series name."""
        ...


class InfluxerClient:
    """Synchronous InfluxDB HTTP client built on ``httpx.Client``."""

    def __init__(
        self,
        settings: Optional[InfluxerSettings] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._http = http_client or httpx.Client(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout_seconds,
        )

    @property
    def series_path(self) -> str:
        return f"/db/{self.settings.database}/series"

    def _params(self, **extra: str) -> Dict[str, str]:
        params = {
            "u": self.settings.username,
            "p": self.settings.password,
            "time_precision": self.settings.time_precision,
        }
        params.update(extra)
        return params

    def _encode(self, value: Any) -> Any:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return int(value.timestamp() * _PRECISION_FACTORS[self.settings.time_precision])
        if isinstance(value, date):
            return self._encode(datetime(value.year, value.month, value.day))
        return value

    def _request(self, method: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, self.series_path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ClientError(
                f"InfluxDB responded {exc.response.status_code}: {exc.response.text}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ClientError(f"InfluxDB request failed: {exc}") from exc
        return response

    def write_point(self, series: str, data: Mapping[str, Any]) -> None:
        columns = list(data.keys())
        payload = [
            {
                "name": series,
                "columns": columns,
                "points": [[self._encode(data[column]) for column in columns]],
            }
        ]
        logger.debug("POST %s point to %s", self.settings.database, series)
        self._request("POST", params=self._params(), json=payload)

    def query(self, query: str) -> Dict[str, List[Dict[str, Any]]]:
        logger.debug("GET %s q=%s", self.settings.database, query)
        response = self._request("GET", params=self._params(q=query))
        if not response.content:
            return {}
        result: Dict[str, List[Dict[str, Any]]] = {}
        for series in response.json():
            columns = series.get("columns", [])
            result[series["name"]] = [
                dict(zip(columns, point)) for point in series.get("points", [])
            ]
        return result

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "InfluxerClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
