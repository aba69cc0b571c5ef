"""
Blue/Green Deployment Controller - Metric Source Interface.

============================================================
PURPOSE
============================================================
One narrow interface between the Health Evaluator and any
metrics backend.

A source NEVER raises for an unanswerable query; it returns
MetricReading(ok=False) and lets the evaluator decide
(fail-closed after the evaluation timeout).

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class MetricReading:
    """Value of one metric query over one window."""

    value: Optional[float]
    ok: bool
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, error: str) -> "MetricReading":
        return cls(value=None, ok=False, error=error)


class MetricSource(ABC):
    """
    Abstract metric backend.
    """

    @abstractmethod
    async def query(self, metric_query: str, window_seconds: float) -> MetricReading:
        """
        Resolve a query over the trailing window.

        Args:
            metric_query: Opaque query string from the alarm rule
            window_seconds: Aggregation window

        Returns:
            MetricReading; ok=False when no answer could be obtained
        """
        pass

    async def close(self) -> None:
        """Release network resources, if any."""
        return None
