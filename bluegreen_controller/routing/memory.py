"""
In-memory routing backend.

Keeps the split in process memory. Used for local development and
tests; supports injecting failures to exercise retry paths.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from ..types import RoutingBackendError, TrafficSplit
from .base import RoutingBackend


logger = logging.getLogger(__name__)


SplitHook = Callable[[str, TrafficSplit], Union[None, Awaitable[None]]]


@dataclass
class _ServiceRoute:
    active_revision: Optional[str] = None
    green_revision: Optional[str] = None
    split: TrafficSplit = field(default_factory=lambda: TrafficSplit.for_green(0))


class InMemoryRoutingBackend(RoutingBackend):
    """
    Routing backend held in a dictionary.

    Failure injection:
        fail_next_sets: the next N set_split calls raise RoutingBackendError
        drop_next_sets: the next N set_split calls succeed but are not applied
        unreachable: revisions reported as not reachable
        on_set_split: hook called after every applied split
    """

    def __init__(self, active_revisions: Optional[Dict[str, str]] = None):
        self._routes: Dict[str, _ServiceRoute] = {}
        for service_name, revision in (active_revisions or {}).items():
            self._routes[service_name] = _ServiceRoute(active_revision=revision)

        self.fail_next_sets = 0
        self.drop_next_sets = 0
        self.unreachable: Set[str] = set()
        self.on_set_split: Optional[SplitHook] = None

        self.set_calls: List[TrafficSplit] = []
        self.applied: Dict[str, List[int]] = {}

    def _route(self, service_name: str) -> _ServiceRoute:
        return self._routes.setdefault(service_name, _ServiceRoute())

    async def get_split(self, service_name: str) -> TrafficSplit:
        return self._route(service_name).split

    async def set_split(
        self,
        service_name: str,
        blue_revision: Optional[str],
        green_revision: str,
        split: TrafficSplit,
    ) -> None:
        self.set_calls.append(split)

        if self.fail_next_sets > 0:
            self.fail_next_sets -= 1
            raise RoutingBackendError(f"injected failure setting {split.to_dict()}")

        if self.drop_next_sets > 0:
            self.drop_next_sets -= 1
            logger.debug(f"Dropping split {split.to_dict()} for {service_name}")
            return

        route = self._route(service_name)
        route.green_revision = green_revision
        if blue_revision is not None:
            route.active_revision = blue_revision
        route.split = split
        self.applied.setdefault(service_name, []).append(split.green_percent)

        if self.on_set_split is not None:
            result = self.on_set_split(service_name, split)
            if inspect.isawaitable(result):
                await result

    async def is_reachable(self, service_name: str, revision: str) -> bool:
        return revision not in self.unreachable

    async def get_active_revision(self, service_name: str) -> Optional[str]:
        route = self._routes.get(service_name)
        return route.active_revision if route else None

    async def promote(self, service_name: str, revision: str) -> None:
        route = self._route(service_name)
        route.active_revision = revision
        route.green_revision = None
        route.split = TrafficSplit.for_green(0)
