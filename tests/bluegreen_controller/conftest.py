"""
Shared fixtures for the deployment controller tests.

Everything runs in-process: in-memory SQLite registry, in-memory
routing and metrics, and a MockClock so minutes of rollout take
milliseconds.
"""

import pytest

from bluegreen_controller.alerting import AlertingService
from bluegreen_controller.clock import MockClock
from bluegreen_controller.config import AlertingConfig, get_testing_config
from bluegreen_controller.database import Database
from bluegreen_controller.engine import DeploymentController
from bluegreen_controller.metrics.memory import InMemoryMetricSource
from bluegreen_controller.repository import DeploymentRegistry
from bluegreen_controller.routing.memory import InMemoryRoutingBackend

from tests.bluegreen_controller.factories import START_TIME, RecordingAlertSender


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Virtual clock starting at a fixed instant."""
    return MockClock(START_TIME)


@pytest.fixture
def config():
    """Testing configuration (10s health polls, tiny retry delays)."""
    return get_testing_config()


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all_tables()
    yield db
    db.dispose()


@pytest.fixture
def registry(database, clock):
    return DeploymentRegistry(database, clock)


@pytest.fixture
def routing():
    """Routing backend where service `api` currently runs `api:v1`."""
    return InMemoryRoutingBackend(active_revisions={"api": "api:v1"})


@pytest.fixture
def metrics():
    """Metric source reporting a healthy error rate."""
    return InMemoryMetricSource({"error_rate": 0.01})


@pytest.fixture
def sender():
    return RecordingAlertSender()


@pytest.fixture
def alerting(sender, clock):
    return AlertingService(AlertingConfig(enabled=True), [sender], clock)


@pytest.fixture
def controller(registry, routing, metrics, config, clock, alerting):
    return DeploymentController(
        registry=registry,
        routing=routing,
        metric_source=metrics,
        config=config,
        clock=clock,
        alerting=alerting,
    )
