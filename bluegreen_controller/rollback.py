"""
Blue/Green Deployment Controller - Rollback Manager.

============================================================
PURPOSE
============================================================
Drive traffic back to 100% blue, no matter how long it takes.

RULES:
- Reversal goes through the Traffic Shifter (confirm discipline)
- No attempt ceiling; only the retry interval is capped
- Past the grace period, ONE critical alert is sent and
  retrying continues

The caller commits RolledBack / Aborted once revert() returns.

============================================================
"""

import logging
from typing import Optional

from .alerting import AlertingService, DeploymentEvent
from .clock import Clock
from .config import RollbackConfig
from .repository import DeploymentRegistry
from .shifter import TrafficShifter
from .types import TrafficSplit


logger = logging.getLogger(__name__)


class RollbackManager:
    """
    Reverts a deployment's traffic to blue.
    """

    def __init__(
        self,
        shifter: TrafficShifter,
        registry: DeploymentRegistry,
        clock: Clock,
        alerting: Optional[AlertingService] = None,
        config: Optional[RollbackConfig] = None,
    ):
        self._shifter = shifter
        self._registry = registry
        self._clock = clock
        self._alerting = alerting
        self._config = config or RollbackConfig()

    async def revert(self, deployment_id: str) -> TrafficSplit:
        """
        Apply and confirm 0% green, retrying until it succeeds.

        Args:
            deployment_id: Deployment to revert

        Returns:
            The confirmed all-blue split
        """
        deployment = self._registry.get(deployment_id)
        target = TrafficSplit.for_green(0)

        started_at = self._clock.now()
        delay = self._config.initial_delay_seconds
        attempt = 0
        grace_alert_sent = False

        while True:
            attempt += 1
            try:
                confirmed, error = await self._shifter.try_apply(deployment, target)
            except Exception as e:
                logger.error(
                    f"Unexpected error reverting {deployment.service_name}: {e}",
                    exc_info=True,
                )
                confirmed, error = False, str(e)

            if confirmed:
                logger.warning(
                    f"Traffic for {deployment.service_name} reverted to blue "
                    f"(deployment {deployment_id}, attempt {attempt})"
                )
                return target

            elapsed = self._clock.elapsed_since(started_at)
            logger.warning(
                f"Rollback attempt {attempt} for {deployment.service_name} failed "
                f"after {elapsed:.1f}s: {error}"
            )

            if not grace_alert_sent and elapsed >= self._config.grace_period_seconds:
                grace_alert_sent = True
                logger.critical(
                    f"Rollback of {deployment.service_name} (deployment {deployment_id}) "
                    f"not confirmed after {elapsed:.0f}s; still retrying"
                )
                if self._alerting is not None:
                    self._alerting.emit(
                        DeploymentEvent(
                            deployment_id=deployment_id,
                            service_name=deployment.service_name,
                            state=deployment.state,
                            cause=(
                                f"rollback not confirmed after {elapsed:.0f}s "
                                f"({attempt} attempts): {error}"
                            ),
                            green_revision=deployment.green_revision,
                            critical=True,
                            timestamp=self._clock.now(),
                        )
                    )

            await self._clock.sleep(delay)
            delay = min(
                delay * self._config.backoff_multiplier,
                self._config.max_interval_seconds,
            )
