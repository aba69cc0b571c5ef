"""
Tests for the traffic shifter.

============================================================
TEST SCENARIOS
============================================================
1. Apply-then-confirm
2. Idempotent re-apply (no write when live split matches)
3. Retry with backoff on backend errors
4. Budget exhausted -> ShiftApplyError, last split restored
5. Hung backend calls time out

============================================================
"""

import asyncio

import pytest

from bluegreen_controller.config import ShifterConfig
from bluegreen_controller.routing.memory import InMemoryRoutingBackend
from bluegreen_controller.shifter import TrafficShifter
from bluegreen_controller.types import (
    DeploymentState,
    RoutingBackendError,
    ShiftApplyError,
    TrafficSplit,
)

from tests.bluegreen_controller.factories import make_policy


class PartialApplyRoutingBackend(InMemoryRoutingBackend):
    """Stores 50% green as 40%, like a mesh rounding weights."""

    async def set_split(self, service_name, blue_revision, green_revision, split):
        if split.green_percent == 50:
            split = TrafficSplit.for_green(40)
        await super().set_split(service_name, blue_revision, green_revision, split)


class SlowRoutingBackend(InMemoryRoutingBackend):

    async def set_split(self, service_name, blue_revision, green_revision, split):
        await asyncio.sleep(1.0)
        await super().set_split(service_name, blue_revision, green_revision, split)


def _shifting_deployment(registry, percent=0):
    deployment = registry.reserve("api", "api:v1", "api:v2", make_policy())
    deployment = registry.transition(
        deployment.id, DeploymentState.PENDING, DeploymentState.PROVISIONING,
        "start", expected_version=deployment.version,
    )
    deployment = registry.transition(
        deployment.id, DeploymentState.PROVISIONING, DeploymentState.SHIFTING,
        "reachable", expected_version=deployment.version,
    )
    if percent:
        deployment = registry.transition(
            deployment.id, DeploymentState.SHIFTING, DeploymentState.SHIFTING,
            "step", expected_version=deployment.version, green_percent=percent,
        )
    return deployment


@pytest.fixture
def shifter(routing, registry, clock, config):
    return TrafficShifter(routing, registry, clock, config.shifter)


class TestApplySplit:

    @pytest.mark.asyncio
    async def test_applies_and_confirms(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)

        split = await shifter.apply_split(deployment.id, 25)

        assert split == TrafficSplit(blue_percent=75, green_percent=25)
        assert await routing.get_split("api") == split
        assert routing.applied["api"] == [25]

    @pytest.mark.asyncio
    async def test_reapply_is_a_no_op(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)

        await shifter.apply_split(deployment.id, 25)
        await shifter.apply_split(deployment.id, 25)

        assert len(routing.set_calls) == 1

    @pytest.mark.asyncio
    async def test_does_not_touch_registry(self, shifter, registry):
        deployment = _shifting_deployment(registry)

        await shifter.apply_split(deployment.id, 25)

        current = registry.get(deployment.id)
        assert current.traffic_percent_green == 0
        assert current.version == deployment.version

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, shifter, routing, registry, clock):
        deployment = _shifting_deployment(registry)
        routing.fail_next_sets = 2

        split = await shifter.apply_split(deployment.id, 25)

        assert split.green_percent == 25
        assert len(routing.set_calls) == 3
        # 0.01 then 0.02 with the testing preset
        assert clock.total_slept == pytest.approx(0.03)

    @pytest.mark.asyncio
    async def test_dropped_write_is_detected_by_read_back(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)
        routing.drop_next_sets = 1

        await shifter.apply_split(deployment.id, 25)

        assert len(routing.set_calls) == 2
        assert routing.applied["api"] == [25]

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)
        routing.fail_next_sets = 3

        with pytest.raises(ShiftApplyError) as exc_info:
            await shifter.apply_split(deployment.id, 25)

        assert exc_info.value.attempts == 3
        assert exc_info.value.green_percent == 25
        assert "injected failure" in exc_info.value.last_error
        assert (await routing.get_split("api")).green_percent == 0

    @pytest.mark.asyncio
    async def test_restores_last_confirmed_split(self, registry, clock, config):
        routing = PartialApplyRoutingBackend({"api": "api:v1"})
        shifter = TrafficShifter(routing, registry, clock, config.shifter)
        deployment = _shifting_deployment(registry, percent=25)
        await routing.set_split("api", "api:v1", "api:v2", TrafficSplit.for_green(25))

        with pytest.raises(ShiftApplyError) as exc_info:
            await shifter.apply_split(deployment.id, 50)

        assert "40%" in exc_info.value.last_error
        assert (await routing.get_split("api")).green_percent == 25
        assert routing.applied["api"][-1] == 25

    @pytest.mark.asyncio
    async def test_hung_backend_times_out(self, registry, clock):
        routing = SlowRoutingBackend({"api": "api:v1"})
        config = ShifterConfig(
            max_attempts=2,
            initial_delay_seconds=0.01,
            max_delay_seconds=0.01,
            request_timeout_seconds=0.05,
        )
        shifter = TrafficShifter(routing, registry, clock, config)
        deployment = _shifting_deployment(registry)

        with pytest.raises(ShiftApplyError) as exc_info:
            await shifter.apply_split(deployment.id, 25)

        assert "timed out" in exc_info.value.last_error


class TestTryApply:

    @pytest.mark.asyncio
    async def test_backend_error_is_reported_not_raised(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)
        routing.fail_next_sets = 1

        confirmed, error = await shifter.try_apply(deployment, TrafficSplit.for_green(25))

        assert confirmed is False
        assert "injected failure" in error

    @pytest.mark.asyncio
    async def test_read_error_is_reported(self, shifter, routing, registry):
        deployment = _shifting_deployment(registry)

        async def broken_get_split(service_name):
            raise RoutingBackendError("control plane down")

        routing.get_split = broken_get_split

        confirmed, error = await shifter.try_apply(deployment, TrafficSplit.for_green(25))

        assert confirmed is False
        assert error == "control plane down"
