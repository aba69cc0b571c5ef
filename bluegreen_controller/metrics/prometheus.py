"""
Blue/Green Deployment Controller - Prometheus Metric Source.

============================================================
PURPOSE
============================================================
Resolve alarm rule queries with Prometheus instant queries
(`GET /api/v1/query`).

QUERY TEMPLATE:
- `{window}` in a rule's metric_query is replaced with the
  rule's evaluation window as a Prometheus duration, e.g.
  `rate(http_requests_total[{window}])` -> `rate(http_requests_total[300s])`

FAILURE MAPPING (never raises):
- HTTP error / network error / timeout -> ok=False
- status != success                    -> ok=False
- empty result / NaN / Inf             -> ok=False

============================================================
"""

import asyncio
import logging
import math
from typing import Any, Dict, Optional

import aiohttp

from .base import MetricReading, MetricSource


logger = logging.getLogger(__name__)


WINDOW_PLACEHOLDER = "{window}"


# ============================================================
# PURE HELPERS
# ============================================================

def format_duration(window_seconds: float) -> str:
    """Render a window as a Prometheus duration (whole seconds, minimum 1s)."""
    return f"{max(1, int(round(window_seconds)))}s"


def render_query(metric_query: str, window_seconds: float) -> str:
    """Substitute the window placeholder of a query template."""
    return metric_query.replace(WINDOW_PLACEHOLDER, format_duration(window_seconds))


def _to_float(raw: Any) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_query_response(payload: Dict[str, Any]) -> MetricReading:
    """
    Convert an instant-query response body into a reading.

    Vector results with several series read as the largest value.
    """
    if payload.get("status") != "success":
        return MetricReading.unavailable(
            f"prometheus error: {payload.get('errorType', '')} {payload.get('error', '')}".strip()
        )

    data = payload.get("data") or {}
    result_type = data.get("resultType")
    result = data.get("result")

    if result_type == "scalar":
        value = _to_float(result[1]) if result and len(result) == 2 else None
        if value is None:
            return MetricReading.unavailable("scalar result is not a number")
        return MetricReading(value=value, ok=True)

    if result_type == "vector":
        values = []
        for series in result or []:
            sample = series.get("value") or []
            if len(sample) == 2:
                value = _to_float(sample[1])
                if value is not None:
                    values.append(value)
        if not values:
            return MetricReading.unavailable("empty result")
        return MetricReading(value=max(values), ok=True)

    return MetricReading.unavailable(f"unsupported result type: {result_type}")


# ============================================================
# SOURCE
# ============================================================

class PrometheusMetricSource(MetricSource):
    """
    Metric source backed by the Prometheus HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            base_url: Prometheus URL, e.g. http://prometheus:9090
            timeout_seconds: Total timeout of one query
            headers: Extra request headers (auth)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._headers = dict(headers or {})
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
                headers=self._headers,
            )
        return self._session

    async def query(self, metric_query: str, window_seconds: float) -> MetricReading:
        promql = render_query(metric_query, window_seconds)
        url = f"{self._base_url}/api/v1/query"

        try:
            session = await self._get_session()
            async with session.get(url, params={"query": promql}) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.warning(
                        f"Prometheus query failed ({response.status}): {promql} | {body[:200]}"
                    )
                    return MetricReading.unavailable(f"HTTP {response.status}")

                payload = await response.json()

        except aiohttp.ClientError as e:
            logger.warning(f"Prometheus unreachable for {promql}: {e}")
            return MetricReading.unavailable(f"network error: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"Prometheus query timed out: {promql}")
            return MetricReading.unavailable("timeout")

        reading = parse_query_response(payload)
        if not reading.ok:
            logger.debug(f"Prometheus query gave no value: {promql} ({reading.error})")
        return reading

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
