"""
Blue/Green Deployment Controller - Health Evaluator.

============================================================
PURPOSE
============================================================
Turn alarm rules and metric readings into one verdict.

PER RULE:
- violating   : reading breaches the threshold
- firing      : violating continuously for >= sustained_for
- pending     : violating but not yet sustained, or
                unanswerable but not yet past the timeout
- timed out   : unanswerable for > evaluation_timeout

Debounce and timeouts are measured on the clock from the first
observation of the condition, never by counting polls.

COMPOSITE:
- ANY : unhealthy if any rule fires
- ALL : unhealthy only if every rule fires at once

FAIL-CLOSED:
- Any timed-out rule makes the verdict unhealthy with cause
  "evaluation_timeout: <rules>", whatever the composite.

One evaluator instance per supervised deployment; it is the
only owner of its trackers.

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .clock import Clock
from .config import HealthConfig
from .metrics.base import MetricReading, MetricSource
from .types import (
    AlarmRule,
    CompositeOperator,
    HealthVerdict,
    RuleObservation,
)


logger = logging.getLogger(__name__)


class HealthEvaluator:
    """
    Stateful evaluator of alarm rules.
    """

    def __init__(
        self,
        metric_source: MetricSource,
        clock: Clock,
        config: Optional[HealthConfig] = None,
    ):
        self._source = metric_source
        self._clock = clock
        self._config = config or HealthConfig()

        self._violating_since: Dict[str, datetime] = {}
        self._unavailable_since: Dict[str, datetime] = {}

    def reset(self) -> None:
        """Forget all debounce and unavailability trackers."""
        self._violating_since.clear()
        self._unavailable_since.clear()

    # =========================================================
    # EVALUATION
    # =========================================================

    async def evaluate(
        self,
        alarm_rules: Sequence[AlarmRule],
        composite: CompositeOperator = CompositeOperator.ANY,
        evaluation_timeout_seconds: Optional[float] = None,
    ) -> HealthVerdict:
        """
        Evaluate every rule once and combine the results.

        Args:
            alarm_rules: Rules to evaluate
            composite: ANY or ALL
            evaluation_timeout_seconds: Fail-closed timeout (None = configured default)

        Returns:
            HealthVerdict
        """
        timeout = (
            evaluation_timeout_seconds
            if evaluation_timeout_seconds is not None
            else self._config.evaluation_timeout_seconds
        )

        readings = await asyncio.gather(
            *(self._query(rule) for rule in alarm_rules)
        )
        now = self._clock.now()

        observations: List[RuleObservation] = []
        firing: List[str] = []
        pending: List[str] = []
        unavailable: List[str] = []
        timed_out: List[str] = []

        for rule, reading in zip(alarm_rules, readings):
            observation = self._observe(rule, reading, now)
            observations.append(observation)

            if not observation.available:
                unavailable.append(rule.name)
                if observation.unavailable_for_seconds > timeout:
                    timed_out.append(rule.name)
                else:
                    pending.append(rule.name)
            elif observation.firing:
                firing.append(rule.name)
            elif observation.violating:
                pending.append(rule.name)

        firing.sort()
        pending.sort()
        unavailable.sort()
        timed_out.sort()

        if timed_out:
            logger.warning(
                f"Metrics unavailable for more than {timeout}s: {', '.join(timed_out)}"
            )
            return HealthVerdict(
                healthy=False,
                evaluated_at=now,
                firing_rules=[],
                pending_rules=pending,
                unavailable_rules=unavailable,
                cause=f"evaluation_timeout: {','.join(timed_out)}",
                observations=observations,
            )

        names = [rule.name for rule in alarm_rules]

        if composite == CompositeOperator.ALL:
            unhealthy = bool(names) and len(firing) == len(names)
            could_fire = bool(pending) and len(firing) + len(pending) == len(names)
            pending = pending if could_fire else []
        else:
            unhealthy = bool(firing)

        if unhealthy:
            cause = ",".join(firing)
            logger.warning(f"Unhealthy verdict ({composite.value}): {cause}")
            return HealthVerdict(
                healthy=False,
                evaluated_at=now,
                firing_rules=firing,
                pending_rules=pending,
                unavailable_rules=unavailable,
                cause=cause,
                observations=observations,
            )

        return HealthVerdict(
            healthy=True,
            evaluated_at=now,
            firing_rules=firing,
            pending_rules=pending,
            unavailable_rules=unavailable,
            observations=observations,
        )

    # =========================================================
    # INTERNALS
    # =========================================================

    async def _query(self, rule: AlarmRule) -> MetricReading:
        try:
            return await asyncio.wait_for(
                self._source.query(rule.metric_query, rule.evaluation_window_seconds),
                timeout=self._config.query_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return MetricReading.unavailable("query timeout")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Metric query for rule {rule.name} raised: {e}", exc_info=True)
            return MetricReading.unavailable(str(e))

    def _observe(self, rule: AlarmRule, reading: MetricReading, now: datetime) -> RuleObservation:
        if not reading.ok or reading.value is None:
            # A gap breaks continuity; violation restarts at the next reading
            self._violating_since.pop(rule.name, None)
            since = self._unavailable_since.setdefault(rule.name, now)
            return RuleObservation(
                rule_name=rule.name,
                value=None,
                available=False,
                violating=False,
                firing=False,
                unavailable_for_seconds=(now - since).total_seconds(),
            )

        self._unavailable_since.pop(rule.name, None)

        if not rule.is_violated_by(reading.value):
            self._violating_since.pop(rule.name, None)
            return RuleObservation(
                rule_name=rule.name,
                value=reading.value,
                available=True,
                violating=False,
                firing=False,
            )

        since = self._violating_since.setdefault(rule.name, now)
        violating_for = (now - since).total_seconds()

        return RuleObservation(
            rule_name=rule.name,
            value=reading.value,
            available=True,
            violating=True,
            firing=violating_for >= rule.sustained_for_seconds,
            violating_for_seconds=violating_for,
        )
