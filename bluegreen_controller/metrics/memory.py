"""
In-memory metric source.

Values are set directly (local development, tests, demos).
"""

import logging
from typing import Callable, Dict, Optional, Union

from .base import MetricReading, MetricSource


logger = logging.getLogger(__name__)


ValueProvider = Callable[[], Optional[float]]


class InMemoryMetricSource(MetricSource):
    """
    Metric source backed by a dictionary.

    A query maps either to a fixed float or to a callable returning
    the current value. Unknown queries and None values read as
    unavailable.
    """

    def __init__(self, values: Optional[Dict[str, Union[float, ValueProvider]]] = None):
        self._values: Dict[str, Union[float, ValueProvider]] = dict(values or {})
        self.query_count = 0

    def set_value(self, metric_query: str, value: Union[float, ValueProvider, None]) -> None:
        """Set (or with None, remove) the value of a query."""
        if value is None:
            self._values.pop(metric_query, None)
        else:
            self._values[metric_query] = value

    async def query(self, metric_query: str, window_seconds: float) -> MetricReading:
        self.query_count += 1

        source = self._values.get(metric_query)
        if source is None:
            return MetricReading.unavailable(f"no value for {metric_query!r}")

        value = source() if callable(source) else source
        if value is None:
            return MetricReading.unavailable(f"no value for {metric_query!r}")

        return MetricReading(value=float(value), ok=True)
