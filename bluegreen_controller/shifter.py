"""
Blue/Green Deployment Controller - Traffic Shifter.

============================================================
PURPOSE
============================================================
Apply a traffic split and confirm it against the routing
layer before anyone records it.

CONFIRM-THEN-COMMIT:
1. Read the live split; if it already matches, done (no write)
2. Write the new split
3. Read it back; only a matching read-back counts as applied

RETRY:
- Mismatch, backend error or timeout -> retry with exponential
  backoff, up to ShifterConfig.max_attempts
- Budget exhausted -> restore the last confirmed split from the
  registry (best effort) and raise ShiftApplyError

The shifter never writes the registry.

============================================================
"""

import asyncio
import logging
from typing import Optional, Tuple

from .clock import Clock
from .config import ShifterConfig
from .repository import DeploymentRegistry
from .routing.base import RoutingBackend
from .types import (
    Deployment,
    RoutingBackendError,
    ShiftApplyError,
    TrafficSplit,
)


logger = logging.getLogger(__name__)


class TrafficShifter:
    """
    Applies confirmed traffic splits with bounded retries.
    """

    def __init__(
        self,
        routing: RoutingBackend,
        registry: DeploymentRegistry,
        clock: Clock,
        config: Optional[ShifterConfig] = None,
    ):
        self._routing = routing
        self._registry = registry
        self._clock = clock
        self._config = config or ShifterConfig()

    # =========================================================
    # PUBLIC API
    # =========================================================

    async def apply_split(self, deployment_id: str, green_percent: int) -> TrafficSplit:
        """
        Apply and confirm `green_percent` for a deployment.

        Args:
            deployment_id: Deployment whose service is shifted
            green_percent: Target green share (0..100)

        Returns:
            The confirmed split

        Raises:
            ShiftApplyError: Split could not be confirmed within the retry budget
        """
        deployment = self._registry.get(deployment_id)
        target = TrafficSplit.for_green(green_percent)

        delay = self._config.initial_delay_seconds
        last_error = ""

        for attempt in range(1, self._config.max_attempts + 1):
            confirmed, last_error = await self.try_apply(deployment, target)
            if confirmed:
                if attempt > 1:
                    logger.info(
                        f"Split {green_percent}% confirmed for {deployment.service_name} "
                        f"on attempt {attempt}"
                    )
                return target

            logger.warning(
                f"Split {green_percent}% not confirmed for {deployment.service_name} "
                f"(attempt {attempt}/{self._config.max_attempts}): {last_error}"
            )

            if attempt < self._config.max_attempts:
                await self._clock.sleep(delay)
                delay = min(
                    delay * self._config.backoff_multiplier,
                    self._config.max_delay_seconds,
                )

        await self._restore_last_confirmed(deployment, target)

        raise ShiftApplyError(
            deployment_id=deployment_id,
            green_percent=green_percent,
            attempts=self._config.max_attempts,
            last_error=last_error,
        )

    async def try_apply(self, deployment: Deployment, target: TrafficSplit) -> Tuple[bool, str]:
        """
        One apply-and-confirm attempt.

        Returns:
            (confirmed, error description)
        """
        service = deployment.service_name

        try:
            live = await self._call(self._routing.get_split(service))
            if live == target:
                logger.debug(f"Split already at {target.green_percent}% for {service}")
                return True, ""

            await self._call(
                self._routing.set_split(
                    service,
                    deployment.blue_revision,
                    deployment.green_revision,
                    target,
                )
            )

            confirmed = await self._call(self._routing.get_split(service))
            if confirmed == target:
                return True, ""

            return False, (
                f"read-back shows {confirmed.green_percent}% green, "
                f"expected {target.green_percent}%"
            )

        except RoutingBackendError as e:
            return False, str(e)
        except asyncio.TimeoutError:
            return False, f"routing backend timed out after {self._config.request_timeout_seconds}s"

    # =========================================================
    # INTERNALS
    # =========================================================

    async def _call(self, coro):
        return await asyncio.wait_for(coro, timeout=self._config.request_timeout_seconds)

    async def _restore_last_confirmed(self, deployment: Deployment, target: TrafficSplit) -> None:
        """Put the routing layer back on the split the registry last recorded."""
        previous = TrafficSplit.for_green(deployment.traffic_percent_green)
        if previous == target:
            return

        confirmed, error = await self.try_apply(deployment, previous)
        if confirmed:
            logger.info(
                f"Restored {previous.green_percent}% green for {deployment.service_name} "
                f"after failed shift to {target.green_percent}%"
            )
        else:
            logger.error(
                f"Could not restore {previous.green_percent}% green for "
                f"{deployment.service_name}: {error}"
            )
