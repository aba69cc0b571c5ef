"""
Blue/Green Deployment Controller - Type Definitions.

============================================================
PURPOSE
============================================================
Domain types shared by every component of the controller:

- Deployment states and composite operators
- Alarm rules and deployment policy
- Traffic split value object
- Deployment record and its append-only history
- Health verdicts
- Error taxonomy

============================================================
CORE PRINCIPLE
============================================================
Absence of evidence of health is not evidence of health.
Every failure ends in a terminal state with a cause.

============================================================
"""

import operator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


# ============================================================
# DEPLOYMENT STATES
# ============================================================

class DeploymentState(str, Enum):
    """
    Lifecycle states of a deployment.

    PROMOTED, ROLLED_BACK, FAILED and ABORTED are terminal.
    """

    PENDING = "Pending"
    """Reserved in the registry, nothing touched yet."""

    PROVISIONING = "Provisioning"
    """Waiting for the green destination to become reachable."""

    SHIFTING = "Shifting"
    """Stepping traffic from blue to green."""

    BAKING = "Baking"
    """Green holds 100% of traffic; waiting for sustained health."""

    ROLLING_BACK = "RollingBack"
    """Reverting all traffic to blue."""

    PROMOTED = "Promoted"
    """Green became the new blue."""

    ROLLED_BACK = "RolledBack"
    """Automatic rollback completed."""

    FAILED = "Failed"
    """Deployment could not start shifting."""

    ABORTED = "Aborted"
    """Operator abort completed."""

    def is_terminal(self) -> bool:
        """Check if no further transition is possible."""
        return self in (
            DeploymentState.PROMOTED,
            DeploymentState.ROLLED_BACK,
            DeploymentState.FAILED,
            DeploymentState.ABORTED,
        )

    def routes_traffic_to_green(self) -> bool:
        """Check if green may be serving traffic in this state."""
        return self in (
            DeploymentState.SHIFTING,
            DeploymentState.BAKING,
            DeploymentState.ROLLING_BACK,
        )


# ============================================================
# ALARM RULES
# ============================================================

class Comparator(str, Enum):
    """Comparison applied between a metric value and a rule threshold."""

    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="

    def compare(self, value: float, threshold: float) -> bool:
        """Return True when `value <comparator> threshold` holds."""
        return _COMPARATORS[self](value, threshold)


_COMPARATORS: Dict[Comparator, Callable[[float, float], bool]] = {
    Comparator.GT: operator.gt,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.LE: operator.le,
}


class CompositeOperator(str, Enum):
    """How multiple alarm rules combine into one verdict."""

    ANY = "ANY"
    """Unhealthy if at least one rule fires."""

    ALL = "ALL"
    """Unhealthy only if every rule fires at the same time."""


@dataclass(frozen=True)
class AlarmRule:
    """
    A named health condition.

    The rule is "violating" while `value <comparator> threshold` holds,
    and "firing" once it has been violating continuously for at least
    `sustained_for_seconds`.
    """

    name: str
    """Rule name, reported as the rollback cause."""

    metric_query: str
    """Opaque query resolved by the metric source."""

    comparator: Comparator
    """Comparison operator."""

    threshold: float
    """Threshold the metric is compared against."""

    evaluation_window_seconds: float = 60.0
    """Window the metric source aggregates over."""

    sustained_for_seconds: float = 0.0
    """Debounce: minimum continuous violation before firing."""

    def is_violated_by(self, value: float) -> bool:
        """Check a single reading against the threshold."""
        return self.comparator.compare(value, self.threshold)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "metric_query": self.metric_query,
            "comparator": self.comparator.value,
            "threshold": self.threshold,
            "evaluation_window_seconds": self.evaluation_window_seconds,
            "sustained_for_seconds": self.sustained_for_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlarmRule":
        """Build from a dictionary produced by `to_dict`."""
        try:
            comparator = Comparator(data["comparator"])
        except ValueError as e:
            raise ValidationError(f"Unknown comparator: {data.get('comparator')!r}") from e

        return cls(
            name=data["name"],
            metric_query=data["metric_query"],
            comparator=comparator,
            threshold=float(data["threshold"]),
            evaluation_window_seconds=float(data.get("evaluation_window_seconds", 60.0)),
            sustained_for_seconds=float(data.get("sustained_for_seconds", 0.0)),
        )


# ============================================================
# DEPLOYMENT POLICY
# ============================================================

@dataclass(frozen=True)
class DeploymentPolicy:
    """
    Rollout policy of a single deployment.
    """

    step_size: int
    """Percent of traffic moved to green per step. Must divide 100."""

    step_interval_seconds: float
    """Observation time after each step."""

    bake_duration_seconds: float
    """Time green must hold 100% of traffic, healthy, before promotion."""

    alarm_rules: List[AlarmRule] = field(default_factory=list)
    """Health conditions evaluated during the rollout."""

    composite: CompositeOperator = CompositeOperator.ANY
    """How alarm rules combine."""

    evaluation_timeout_seconds: Optional[float] = None
    """
    Fail-closed timeout for an unanswerable metric source.
    None means the controller's configured default.
    """

    def validate(self) -> None:
        """
        Validate the policy.

        Raises:
            ValidationError: If any parameter is out of range
        """
        if isinstance(self.step_size, bool) or not isinstance(self.step_size, int):
            raise ValidationError(f"step_size must be an integer, got {self.step_size!r}")
        if not 1 <= self.step_size <= 100:
            raise ValidationError(f"step_size must be within 1..100, got {self.step_size}")
        if 100 % self.step_size != 0:
            raise ValidationError(f"step_size {self.step_size} does not evenly divide 100")
        if self.step_interval_seconds < 0:
            raise ValidationError("step_interval must not be negative")
        if self.bake_duration_seconds <= 0:
            raise ValidationError("bake_duration must be positive")
        if (
            self.evaluation_timeout_seconds is not None
            and self.evaluation_timeout_seconds <= 0
        ):
            raise ValidationError("evaluation_timeout must be positive")

        names = set()
        for rule in self.alarm_rules:
            if not rule.name:
                raise ValidationError("alarm rule name must not be empty")
            if rule.name in names:
                raise ValidationError(f"duplicate alarm rule name: {rule.name}")
            if not rule.metric_query:
                raise ValidationError(f"alarm rule {rule.name} has an empty metric_query")
            if rule.sustained_for_seconds < 0:
                raise ValidationError(f"alarm rule {rule.name} has a negative sustained_for")
            if rule.evaluation_window_seconds <= 0:
                raise ValidationError(f"alarm rule {rule.name} needs a positive evaluation_window")
            names.add(rule.name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (JSON-safe)."""
        return {
            "step_size": self.step_size,
            "step_interval_seconds": self.step_interval_seconds,
            "bake_duration_seconds": self.bake_duration_seconds,
            "alarm_rules": [rule.to_dict() for rule in self.alarm_rules],
            "composite": self.composite.value,
            "evaluation_timeout_seconds": self.evaluation_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentPolicy":
        """Build from a dictionary produced by `to_dict`."""
        return cls(
            step_size=data["step_size"],
            step_interval_seconds=float(data["step_interval_seconds"]),
            bake_duration_seconds=float(data["bake_duration_seconds"]),
            alarm_rules=[AlarmRule.from_dict(r) for r in data.get("alarm_rules", [])],
            composite=CompositeOperator(data.get("composite", CompositeOperator.ANY.value)),
            evaluation_timeout_seconds=data.get("evaluation_timeout_seconds"),
        )


# ============================================================
# TRAFFIC SPLIT
# ============================================================

@dataclass(frozen=True)
class TrafficSplit:
    """
    Fractional traffic split between blue and green.

    Invariant: blue_percent + green_percent == 100, both in [0, 100].
    """

    blue_percent: int
    green_percent: int

    def __post_init__(self):
        for value in (self.blue_percent, self.green_percent):
            if not 0 <= value <= 100:
                raise ValidationError(f"traffic percent out of range: {value}")
        if self.blue_percent + self.green_percent != 100:
            raise ValidationError(
                f"traffic split must sum to 100, got "
                f"{self.blue_percent}/{self.green_percent}"
            )

    @classmethod
    def for_green(cls, green_percent: int) -> "TrafficSplit":
        """Build the split that sends `green_percent` to green."""
        return cls(blue_percent=100 - green_percent, green_percent=green_percent)

    def to_dict(self) -> Dict[str, int]:
        return {"blue_percent": self.blue_percent, "green_percent": self.green_percent}


def next_traffic_percent(current_percent: int, step_size: int) -> int:
    """
    Compute the next green percentage of the step loop.

    Overshooting steps are clamped to 100.
    """
    return min(100, current_percent + step_size)


# ============================================================
# DEPLOYMENT RECORD
# ============================================================

@dataclass(frozen=True)
class HistoryEntry:
    """One append-only audit entry of a deployment."""

    timestamp: datetime
    from_state: DeploymentState
    to_state: DeploymentState
    reason: str
    green_percent: Optional[int] = None
    """Confirmed green share after the transition, when it changed."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "green_percent": self.green_percent,
        }


@dataclass
class Deployment:
    """
    A single blue/green rollout.

    Instances are snapshots read from the registry; mutate the
    deployment through the registry, never through this object.
    """

    id: str
    service_name: str
    blue_revision: Optional[str]
    green_revision: str
    state: DeploymentState
    traffic_percent_green: int
    policy: DeploymentPolicy
    created_at: datetime
    updated_at: datetime
    terminal_at: Optional[datetime] = None
    history: List[HistoryEntry] = field(default_factory=list)
    version: int = 0
    """Optimistic-concurrency counter."""
    cause: Optional[str] = None
    """Why the deployment was rolled back or failed."""
    abort_requested: bool = False
    """Persisted operator abort intent."""

    @property
    def step_size(self) -> int:
        return self.policy.step_size

    @property
    def step_interval_seconds(self) -> float:
        return self.policy.step_interval_seconds

    @property
    def bake_duration_seconds(self) -> float:
        return self.policy.bake_duration_seconds

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (JSON-safe)."""
        return {
            "id": self.id,
            "service_name": self.service_name,
            "blue_revision": self.blue_revision,
            "green_revision": self.green_revision,
            "state": self.state.value,
            "traffic_percent_green": self.traffic_percent_green,
            "step_size": self.step_size,
            "step_interval_seconds": self.step_interval_seconds,
            "bake_duration_seconds": self.bake_duration_seconds,
            "policy": self.policy.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "terminal_at": self.terminal_at.isoformat() if self.terminal_at else None,
            "cause": self.cause,
            "abort_requested": self.abort_requested,
            "version": self.version,
            "history": [entry.to_dict() for entry in self.history],
        }


# ============================================================
# HEALTH VERDICT
# ============================================================

@dataclass(frozen=True)
class RuleObservation:
    """What the evaluator saw for one rule during one evaluation."""

    rule_name: str
    value: Optional[float]
    available: bool
    violating: bool
    firing: bool
    violating_for_seconds: float = 0.0
    unavailable_for_seconds: float = 0.0


@dataclass(frozen=True)
class HealthVerdict:
    """
    Result of one Health Evaluator pass.

    `pending_rules` are rules that could still fire: violating but not
    yet sustained, or unanswerable but not yet past the fail-closed
    timeout. The controller never advances while any are pending.
    """

    healthy: bool
    evaluated_at: datetime
    firing_rules: List[str] = field(default_factory=list)
    pending_rules: List[str] = field(default_factory=list)
    unavailable_rules: List[str] = field(default_factory=list)
    cause: Optional[str] = None
    observations: List[RuleObservation] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.healthy and bool(self.pending_rules)


# ============================================================
# ERRORS
# ============================================================

class BlueGreenControllerError(Exception):
    """Base exception for the deployment controller."""
    pass


class ValidationError(BlueGreenControllerError):
    """Bad policy or request input; raised before any state change."""
    pass


class ConflictError(BlueGreenControllerError):
    """A non-terminal deployment already exists for the service."""
    pass


class ConcurrentModificationError(ConflictError):
    """A conditional registry write lost the race to another writer."""

    def __init__(self, deployment_id: str, expected_state: DeploymentState, expected_version: int):
        self.deployment_id = deployment_id
        self.expected_state = expected_state
        self.expected_version = expected_version
        super().__init__(
            f"Deployment {deployment_id} changed concurrently "
            f"(expected state={expected_state.value}, version={expected_version})"
        )


class NotFoundError(BlueGreenControllerError):
    """Unknown deployment id."""
    pass


class InvalidStateError(BlueGreenControllerError):
    """Operation not allowed in the deployment's current state."""
    pass


class InvalidTransitionError(InvalidStateError):
    """Raised when a transition is not an edge of the state machine."""

    def __init__(
        self,
        from_state: DeploymentState,
        to_state: DeploymentState,
        reason: str = "",
    ):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid transition from {from_state.value} to {to_state.value}: {reason}"
        )


class RoutingBackendError(BlueGreenControllerError):
    """The routing layer rejected or failed a request."""
    pass


class ShiftApplyError(BlueGreenControllerError):
    """A traffic split could not be confirmed within the retry budget."""

    def __init__(self, deployment_id: str, green_percent: int, attempts: int, last_error: str = ""):
        self.deployment_id = deployment_id
        self.green_percent = green_percent
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Could not confirm {green_percent}% green for deployment {deployment_id} "
            f"after {attempts} attempts: {last_error}"
        )


class UnhealthyVerdict(BlueGreenControllerError):
    """The Health Evaluator reported unhealthy; drives RollingBack."""

    def __init__(self, verdict: HealthVerdict):
        self.verdict = verdict
        super().__init__(verdict.cause or "unhealthy")


class ProvisioningTimeout(BlueGreenControllerError):
    """The green destination never became reachable; drives Failed."""
    pass


class DatabasePersistenceError(BlueGreenControllerError):
    """A registry transaction failed."""
    pass
