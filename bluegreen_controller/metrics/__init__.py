"""
Metric Source Adapters.

Resolve an alarm rule's opaque query into a number.
"""

from .base import MetricReading, MetricSource
from .memory import InMemoryMetricSource
from .prometheus import PrometheusMetricSource

__all__ = [
    "MetricReading",
    "MetricSource",
    "InMemoryMetricSource",
    "PrometheusMetricSource",
]
