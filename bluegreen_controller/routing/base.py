"""
Blue/Green Deployment Controller - Routing Backend Interface.

============================================================
PURPOSE
============================================================
The controller's only view of the load balancer / service
mesh. Implementations raise RoutingBackendError on any
rejected or failed request; the Traffic Shifter owns retries.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..types import TrafficSplit


class RoutingBackend(ABC):
    """Abstract routing layer."""

    @abstractmethod
    async def get_split(self, service_name: str) -> TrafficSplit:
        """
        Read the live split of a service.

        A service the backend has never seen reads as 100% blue.
        """
        pass

    @abstractmethod
    async def set_split(
        self,
        service_name: str,
        blue_revision: Optional[str],
        green_revision: str,
        split: TrafficSplit,
    ) -> None:
        """Request a new split. Success does not imply it took effect."""
        pass

    @abstractmethod
    async def is_reachable(self, service_name: str, revision: str) -> bool:
        """Check whether a revision's destination can receive traffic."""
        pass

    @abstractmethod
    async def get_active_revision(self, service_name: str) -> Optional[str]:
        """Revision currently serving as blue, if the backend knows it."""
        pass

    async def promote(self, service_name: str, revision: str) -> None:
        """Make `revision` the service's blue destination. Optional."""
        return None

    async def close(self) -> None:
        return None
