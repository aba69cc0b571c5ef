"""
Tests for the health evaluator.

============================================================
TEST SCENARIOS
============================================================
1. Debounce measured on the clock (sustained_for boundary)
2. A recovering metric resets the debounce tracker
3. ANY / ALL composition
4. Fail-closed on an unanswerable metric source
5. A raising metric source never crashes the evaluation

============================================================
"""

import asyncio

import pytest

from bluegreen_controller.config import HealthConfig
from bluegreen_controller.evaluator import HealthEvaluator
from bluegreen_controller.metrics.base import MetricReading, MetricSource
from bluegreen_controller.metrics.memory import InMemoryMetricSource
from bluegreen_controller.types import AlarmRule, Comparator, CompositeOperator

from tests.bluegreen_controller.factories import error_rate_rule


LATENCY_RULE = AlarmRule(
    name="latency_p95",
    metric_query="latency_p95",
    comparator=Comparator.GT,
    threshold=2.0,
    sustained_for_seconds=60.0,
)


class RaisingMetricSource(MetricSource):

    async def query(self, metric_query, window_seconds):
        raise RuntimeError("metric backend exploded")


class HangingMetricSource(MetricSource):

    async def query(self, metric_query, window_seconds):
        await asyncio.sleep(10)
        return MetricReading(value=0.0, ok=True)


@pytest.fixture
def source():
    return InMemoryMetricSource({"error_rate": 0.01, "latency_p95": 0.5})


@pytest.fixture
def evaluator(source, clock, config):
    return HealthEvaluator(source, clock, config.health)


# ============================================================
# TEST: DEBOUNCE
# ============================================================

class TestDebounce:

    @pytest.mark.asyncio
    async def test_healthy_metric(self, evaluator):
        verdict = await evaluator.evaluate([error_rate_rule()])

        assert verdict.healthy
        assert verdict.pending_rules == []
        assert verdict.firing_rules == []

    @pytest.mark.asyncio
    async def test_fires_only_once_sustained(self, evaluator, source, clock):
        rule = error_rate_rule(sustained_for=60)
        source.set_value("error_rate", 0.08)

        first = await evaluator.evaluate([rule])
        assert first.healthy
        assert first.pending_rules == ["error_rate"]

        clock.advance(59, milliseconds=999)
        just_before = await evaluator.evaluate([rule])
        assert just_before.healthy
        assert just_before.is_pending

        clock.advance(milliseconds=2)
        just_after = await evaluator.evaluate([rule])
        assert not just_after.healthy
        assert just_after.firing_rules == ["error_rate"]
        assert just_after.cause == "error_rate"

    @pytest.mark.asyncio
    async def test_recovery_resets_tracker(self, evaluator, source, clock):
        rule = error_rate_rule(sustained_for=60)
        source.set_value("error_rate", 0.08)
        await evaluator.evaluate([rule])

        clock.advance(50)
        source.set_value("error_rate", 0.01)
        recovered = await evaluator.evaluate([rule])
        assert recovered.healthy
        assert recovered.pending_rules == []

        clock.advance(10)
        source.set_value("error_rate", 0.08)
        again = await evaluator.evaluate([rule])
        assert again.healthy

        clock.advance(59)
        assert (await evaluator.evaluate([rule])).healthy

    @pytest.mark.asyncio
    async def test_unavailable_gap_restarts_violation(self, evaluator, source, clock):
        rule = error_rate_rule(sustained_for=60)
        source.set_value("error_rate", 0.08)
        await evaluator.evaluate([rule])

        clock.advance(30)
        source.set_value("error_rate", None)
        gap = await evaluator.evaluate([rule])
        assert gap.observations[0].violating is False

        clock.advance(30)
        source.set_value("error_rate", 0.08)
        after_gap = await evaluator.evaluate([rule])
        assert after_gap.healthy
        assert after_gap.pending_rules == ["error_rate"]

        clock.advance(60)
        assert not (await evaluator.evaluate([rule])).healthy

    @pytest.mark.asyncio
    async def test_zero_sustain_fires_at_once(self, evaluator, source):
        source.set_value("error_rate", 0.08)

        verdict = await evaluator.evaluate([error_rate_rule(sustained_for=0)])

        assert not verdict.healthy
        assert verdict.cause == "error_rate"

    @pytest.mark.asyncio
    async def test_reset_forgets_violations(self, evaluator, source, clock):
        rule = error_rate_rule(sustained_for=60)
        source.set_value("error_rate", 0.08)
        await evaluator.evaluate([rule])
        clock.advance(59)

        evaluator.reset()
        clock.advance(1)

        assert (await evaluator.evaluate([rule])).healthy


# ============================================================
# TEST: COMPOSITION
# ============================================================

class TestComposite:

    @pytest.mark.asyncio
    async def test_any_fires_on_one_rule(self, evaluator, source):
        rules = [error_rate_rule(sustained_for=0), LATENCY_RULE]
        source.set_value("error_rate", 0.08)

        verdict = await evaluator.evaluate(rules, CompositeOperator.ANY)

        assert not verdict.healthy
        assert verdict.firing_rules == ["error_rate"]

    @pytest.mark.asyncio
    async def test_cause_lists_every_firing_rule(self, evaluator, source):
        latency = AlarmRule("latency_p95", "latency_p95", Comparator.GT, 2.0)
        source.set_value("error_rate", 0.08)
        source.set_value("latency_p95", 3.0)

        verdict = await evaluator.evaluate([latency, error_rate_rule(sustained_for=0)])

        assert verdict.cause == "error_rate,latency_p95"

    @pytest.mark.asyncio
    async def test_all_needs_every_rule(self, evaluator, source):
        latency = AlarmRule("latency_p95", "latency_p95", Comparator.GT, 2.0)
        rules = [error_rate_rule(sustained_for=0), latency]
        source.set_value("error_rate", 0.08)

        one_firing = await evaluator.evaluate(rules, CompositeOperator.ALL)
        assert one_firing.healthy
        assert one_firing.pending_rules == []

        source.set_value("latency_p95", 3.0)
        both = await evaluator.evaluate(rules, CompositeOperator.ALL)
        assert not both.healthy
        assert both.cause == "error_rate,latency_p95"

    @pytest.mark.asyncio
    async def test_all_pending_while_remaining_rules_debounce(self, evaluator, source, clock):
        rules = [error_rate_rule(sustained_for=0), LATENCY_RULE]
        source.set_value("error_rate", 0.08)
        source.set_value("latency_p95", 3.0)

        verdict = await evaluator.evaluate(rules, CompositeOperator.ALL)
        assert verdict.healthy
        assert verdict.pending_rules == ["latency_p95"]

        clock.advance(60)
        verdict = await evaluator.evaluate(rules, CompositeOperator.ALL)
        assert not verdict.healthy


# ============================================================
# TEST: FAIL-CLOSED
# ============================================================

class TestFailClosed:

    @pytest.mark.asyncio
    async def test_unavailable_is_pending_until_timeout(self, evaluator, source, clock):
        source.set_value("error_rate", None)
        rule = error_rate_rule()

        first = await evaluator.evaluate([rule])
        assert first.healthy
        assert first.pending_rules == ["error_rate"]
        assert first.unavailable_rules == ["error_rate"]

        clock.advance(120)
        at_timeout = await evaluator.evaluate([rule])
        assert at_timeout.healthy

        clock.advance(milliseconds=1)
        past_timeout = await evaluator.evaluate([rule])
        assert not past_timeout.healthy
        assert past_timeout.cause == "evaluation_timeout: error_rate"
        assert past_timeout.firing_rules == []

    @pytest.mark.asyncio
    async def test_fail_closed_ignores_composite(self, evaluator, source, clock):
        source.set_value("error_rate", None)
        rules = [error_rate_rule(), LATENCY_RULE]

        await evaluator.evaluate(rules, CompositeOperator.ALL)
        clock.advance(121)
        verdict = await evaluator.evaluate(rules, CompositeOperator.ALL)

        assert not verdict.healthy
        assert verdict.cause == "evaluation_timeout: error_rate"

    @pytest.mark.asyncio
    async def test_policy_timeout_overrides_default(self, evaluator, source, clock):
        source.set_value("error_rate", None)
        rule = error_rate_rule()

        await evaluator.evaluate([rule], evaluation_timeout_seconds=30)
        clock.advance(31)
        verdict = await evaluator.evaluate([rule], evaluation_timeout_seconds=30)

        assert not verdict.healthy

    @pytest.mark.asyncio
    async def test_recovered_source_clears_unavailability(self, evaluator, source, clock):
        rule = error_rate_rule()
        source.set_value("error_rate", None)
        await evaluator.evaluate([rule])

        clock.advance(100)
        source.set_value("error_rate", 0.01)
        assert (await evaluator.evaluate([rule])).healthy

        source.set_value("error_rate", None)
        clock.advance(100)
        verdict = await evaluator.evaluate([rule])
        assert verdict.healthy
        assert verdict.pending_rules == ["error_rate"]

    @pytest.mark.asyncio
    async def test_raising_source_counts_as_unavailable(self, clock):
        evaluator = HealthEvaluator(RaisingMetricSource(), clock, HealthConfig())

        verdict = await evaluator.evaluate([error_rate_rule()])

        assert verdict.healthy
        assert verdict.unavailable_rules == ["error_rate"]

    @pytest.mark.asyncio
    async def test_hanging_source_times_out(self, clock):
        config = HealthConfig(query_timeout_seconds=0.05)
        evaluator = HealthEvaluator(HangingMetricSource(), clock, config)

        verdict = await evaluator.evaluate([error_rate_rule()])

        assert verdict.unavailable_rules == ["error_rate"]
        assert verdict.observations[0].available is False
