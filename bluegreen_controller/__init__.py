"""
Blue/Green Deployment Controller - Package.

============================================================
                    CRITICAL PRINCIPLE
============================================================

    "Absence of evidence of health is not evidence
     of health."

    Every traffic change is confirmed before it is recorded.
    Every failure ends in a terminal state with a cause.

============================================================
                     DEPLOYMENT STATES
============================================================

PENDING:
    Service reserved. Nothing touched yet.

PROVISIONING:
    Waiting for the green destination to be reachable.

SHIFTING:
    Moving traffic to green in confirmed steps,
    observing health after each step.

BAKING:
    Green holds 100% of traffic. Health must hold
    for the whole bake duration.

ROLLING_BACK:
    Reverting all traffic to blue. Never gives up.

PROMOTED / ROLLED_BACK / FAILED / ABORTED:
    Terminal. Never change again.

============================================================
                        USAGE
============================================================

```python
from bluegreen_controller import (
    AlarmRule,
    Comparator,
    DeploymentPolicy,
    get_testing_config,
    create_controller,
)

controller = create_controller(get_testing_config())
await controller.start()

policy = DeploymentPolicy(
    step_size=25,
    step_interval_seconds=30,
    bake_duration_seconds=300,
    alarm_rules=[
        AlarmRule("error_rate", "error_rate", Comparator.GT, 0.05,
                  sustained_for_seconds=60),
    ],
)
deployment_id = await controller.start_deployment("api", "api:v2", policy)

# Operator abort
await controller.abort(deployment_id)

await controller.stop()
```

============================================================
"""

__version__ = "1.0.0"

from .clock import Clock, MockClock, SystemClock
from .config import (
    AlertingConfig,
    ApiConfig,
    ControllerConfig,
    DatabaseConfig,
    HealthConfig,
    MetricsConfig,
    ProvisioningConfig,
    RollbackConfig,
    RoutingConfig,
    ShifterConfig,
    default_alarm_rules,
    get_default_config,
    get_testing_config,
    load_config_from_env,
)
from .engine import (
    DeploymentController,
    create_controller,
    get_controller,
    init_controller,
)
from .evaluator import HealthEvaluator
from .repository import DeploymentRegistry
from .rollback import RollbackManager
from .shifter import TrafficShifter
from .types import (
    AlarmRule,
    BlueGreenControllerError,
    Comparator,
    CompositeOperator,
    ConcurrentModificationError,
    ConflictError,
    DatabasePersistenceError,
    Deployment,
    DeploymentPolicy,
    DeploymentState,
    HealthVerdict,
    HistoryEntry,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningTimeout,
    RoutingBackendError,
    ShiftApplyError,
    TrafficSplit,
    UnhealthyVerdict,
    ValidationError,
)


__all__ = [
    "__version__",
    # Clock
    "Clock",
    "MockClock",
    "SystemClock",
    # Config
    "AlertingConfig",
    "ApiConfig",
    "ControllerConfig",
    "DatabaseConfig",
    "HealthConfig",
    "MetricsConfig",
    "ProvisioningConfig",
    "RollbackConfig",
    "RoutingConfig",
    "ShifterConfig",
    "default_alarm_rules",
    "get_default_config",
    "get_testing_config",
    "load_config_from_env",
    # Components
    "DeploymentController",
    "DeploymentRegistry",
    "HealthEvaluator",
    "RollbackManager",
    "TrafficShifter",
    "create_controller",
    "get_controller",
    "init_controller",
    # Types
    "AlarmRule",
    "Comparator",
    "CompositeOperator",
    "Deployment",
    "DeploymentPolicy",
    "DeploymentState",
    "HealthVerdict",
    "HistoryEntry",
    "TrafficSplit",
    # Errors
    "BlueGreenControllerError",
    "ConcurrentModificationError",
    "ConflictError",
    "DatabasePersistenceError",
    "InvalidStateError",
    "InvalidTransitionError",
    "NotFoundError",
    "ProvisioningTimeout",
    "RoutingBackendError",
    "ShiftApplyError",
    "UnhealthyVerdict",
    "ValidationError",
]
