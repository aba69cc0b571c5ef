"""
Routing backends.

Apply and read the blue/green traffic split of a service.
"""

from .base import RoutingBackend
from .http import HttpRoutingBackend
from .memory import InMemoryRoutingBackend

__all__ = [
    "RoutingBackend",
    "HttpRoutingBackend",
    "InMemoryRoutingBackend",
]
