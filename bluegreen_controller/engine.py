"""
Blue/Green Deployment Controller - Engine.

============================================================
PURPOSE
============================================================
The self-driving deployment state machine.

One supervising asyncio task per deployment:

    Pending -> Provisioning -> Shifting (xN) -> Baking -> Promoted
                    |              |              |
                    v              +------+-------+
                  Failed                  v
                                     RollingBack -> RolledBack | Aborted

SUPERVISOR LOOP:
1. Re-read the deployment from the registry
2. Dispatch on its state (one unit of work per iteration)
3. Repeat until terminal

The registry is the source of truth; a restarted controller
resumes every non-terminal deployment it finds (start()).

FAILURE HANDLING:
- UnhealthyVerdict / ShiftApplyError -> RollingBack
- ProvisioningTimeout                -> Failed
- Any other exception                -> RollingBack or Failed
                                        with "internal error: ..."
- ConcurrentModificationError        -> another controller owns
                                        the deployment; stop quietly

============================================================
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from .alerting import AlertingService, DeploymentEvent, build_alerting_service
from .clock import Clock, SystemClock
from .config import ControllerConfig
from .database import initialize_database
from .evaluator import HealthEvaluator
from .metrics.base import MetricSource
from .metrics.memory import InMemoryMetricSource
from .metrics.prometheus import PrometheusMetricSource
from .repository import DeploymentRegistry
from .rollback import RollbackManager
from .routing.base import RoutingBackend
from .routing.http import HttpRoutingBackend
from .routing.memory import InMemoryRoutingBackend
from .shifter import TrafficShifter
from .state_machine import ABORTABLE_STATES
from .types import (
    BlueGreenControllerError,
    ConcurrentModificationError,
    DatabasePersistenceError,
    Deployment,
    DeploymentPolicy,
    DeploymentState,
    ProvisioningTimeout,
    RoutingBackendError,
    ShiftApplyError,
    UnhealthyVerdict,
    ValidationError,
    next_traffic_percent,
)


logger = logging.getLogger(__name__)


ABORT_CAUSE = "aborted by operator"


# ============================================================
# DEPLOYMENT CONTROLLER
# ============================================================

class DeploymentController:
    """
    Drives deployments from Pending to a terminal state.

    Usage:
    ```python
    controller = DeploymentController(registry, routing, metrics, config)
    await controller.start()

    deployment_id = await controller.start_deployment(
        "api", "api:v2", policy,
    )
    deployment = await controller.wait(deployment_id)
    ```
    """

    def __init__(
        self,
        registry: DeploymentRegistry,
        routing: RoutingBackend,
        metric_source: MetricSource,
        config: Optional[ControllerConfig] = None,
        clock: Optional[Clock] = None,
        alerting: Optional[AlertingService] = None,
    ):
        """
        Initialize the controller.

        Args:
            registry: Deployment registry
            routing: Routing backend the shifter drives
            metric_source: Metric source the evaluators query
            config: Controller configuration
            clock: Time source (MockClock in tests)
            alerting: Notification service
        """
        self._config = config or ControllerConfig()
        self._clock = clock or SystemClock()
        self._registry = registry
        self._routing = routing
        self._metric_source = metric_source
        self._alerting = alerting

        self._shifter = TrafficShifter(routing, registry, self._clock, self._config.shifter)
        self._rollback = RollbackManager(
            self._shifter,
            registry,
            self._clock,
            alerting,
            self._config.rollback,
        )

        self._supervisors: Dict[str, asyncio.Task] = {}
        self._abort_events: Dict[str, asyncio.Event] = {}
        # Shifting deployments resumed mid-step; their current percent is observed again first
        self._unobserved_steps: Set[str] = set()
        self._running = False

    # =========================================================
    # PROPERTIES
    # =========================================================

    @property
    def registry(self) -> DeploymentRegistry:
        return self._registry

    @property
    def routing(self) -> RoutingBackend:
        return self._routing

    @property
    def metric_source(self) -> MetricSource:
        return self._metric_source

    @property
    def alerting(self) -> Optional[AlertingService]:
        return self._alerting

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_supervisors(self) -> List[str]:
        return list(self._supervisors)

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> None:
        """Resume supervision of every non-terminal deployment."""
        if self._running:
            return
        self._running = True

        resumed = 0
        for deployment in self._registry.list(active_only=True):
            if deployment.id not in self._supervisors:
                if (
                    deployment.state == DeploymentState.SHIFTING
                    and 0 < deployment.traffic_percent_green < 100
                ):
                    self._unobserved_steps.add(deployment.id)
                self._spawn(deployment.id)
                resumed += 1

        logger.info(f"Deployment controller started ({resumed} deployments resumed)")

    async def stop(self) -> None:
        """Cancel supervisors and drain notifications."""
        self._running = False

        tasks = list(self._supervisors.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._alerting is not None:
            await self._alerting.drain()

        logger.info("Deployment controller stopped")

    # =========================================================
    # OPERATIONS
    # =========================================================

    async def start_deployment(
        self,
        service_name: str,
        green_revision: str,
        policy: DeploymentPolicy,
        blue_revision: Optional[str] = None,
    ) -> str:
        """
        Reserve the service and start rolling out `green_revision`.

        Args:
            service_name: Service to deploy
            green_revision: Candidate revision
            policy: Rollout policy
            blue_revision: Trusted revision (None = resolve)

        Returns:
            Deployment id

        Raises:
            ValidationError: Bad input; nothing was changed
            ConflictError: A non-terminal deployment holds the service
        """
        if not service_name:
            raise ValidationError("service_name must not be empty")
        if not green_revision:
            raise ValidationError("green_revision must not be empty")
        policy.validate()

        if blue_revision is None:
            blue_revision = await self._resolve_blue_revision(service_name)

        deployment = self._registry.reserve(service_name, blue_revision, green_revision, policy)

        try:
            self._registry.transition(
                deployment.id,
                DeploymentState.PENDING,
                DeploymentState.PROVISIONING,
                "deployment started",
                expected_version=deployment.version,
            )
        except DatabasePersistenceError as e:
            # Supervisor retries the transition from Pending
            logger.error(f"Could not start deployment {deployment.id}: {e}")

        self._spawn(deployment.id)

        logger.info(
            f"Deployment {deployment.id} started for {service_name}: "
            f"{blue_revision} -> {green_revision} (step {policy.step_size}%)"
        )
        return deployment.id

    async def abort(self, deployment_id: str) -> Deployment:
        """
        Request an operator abort.

        Raises:
            NotFoundError: Unknown deployment
            InvalidStateError: Deployment is terminal
        """
        deployment = self._registry.request_abort(deployment_id)

        event = self._abort_events.get(deployment_id)
        if event is not None:
            event.set()

        logger.warning(
            f"Abort requested for deployment {deployment_id} "
            f"({deployment.service_name}, state={deployment.state.value})"
        )
        return deployment

    def get_deployment(self, deployment_id: str) -> Deployment:
        return self._registry.get(deployment_id)

    def list_deployments(
        self,
        service_name: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Deployment]:
        return self._registry.list(service_name=service_name, active_only=active_only)

    async def wait(self, deployment_id: str, timeout: Optional[float] = None) -> Deployment:
        """
        Wait for the local supervisor of a deployment to finish.

        Raises:
            asyncio.TimeoutError: Supervisor still running after `timeout`
        """
        task = self._supervisors.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self._registry.get(deployment_id)

    # =========================================================
    # SUPERVISION
    # =========================================================

    def _spawn(self, deployment_id: str) -> asyncio.Task:
        self._abort_events.setdefault(deployment_id, asyncio.Event())
        task = asyncio.get_running_loop().create_task(
            self._supervise(deployment_id),
            name=f"deployment-{deployment_id}",
        )
        self._supervisors[deployment_id] = task
        return task

    async def _supervise(self, deployment_id: str) -> None:
        evaluator = HealthEvaluator(self._metric_source, self._clock, self._config.health)
        interrupt = self._abort_events[deployment_id]

        try:
            while True:
                try:
                    deployment = self._registry.get(deployment_id)
                    if deployment.is_terminal:
                        return
                    if deployment.abort_requested:
                        interrupt.set()

                    await self._advance(deployment, evaluator, interrupt)

                except ConcurrentModificationError as e:
                    logger.info(f"Supervisor for {deployment_id} stops: {e}")
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not await self._handle_internal_error(deployment_id, e):
                        return
        finally:
            self._supervisors.pop(deployment_id, None)
            self._abort_events.pop(deployment_id, None)
            self._unobserved_steps.discard(deployment_id)

    async def _advance(
        self,
        deployment: Deployment,
        evaluator: HealthEvaluator,
        interrupt: asyncio.Event,
    ) -> None:
        """Do one unit of work for the deployment's current state."""
        state = deployment.state

        if state == DeploymentState.ROLLING_BACK:
            await self._complete_rollback(deployment)
            return

        if deployment.abort_requested and state in ABORTABLE_STATES:
            self._enter_rollback(deployment, ABORT_CAUSE)
            return

        try:
            if state == DeploymentState.PENDING:
                self._registry.transition(
                    deployment.id,
                    DeploymentState.PENDING,
                    DeploymentState.PROVISIONING,
                    "deployment started",
                    expected_version=deployment.version,
                )
            elif state == DeploymentState.PROVISIONING:
                await self._provision(deployment, interrupt)
            elif state == DeploymentState.SHIFTING:
                await self._shift_step(deployment, evaluator, interrupt)
            elif state == DeploymentState.BAKING:
                await self._bake(deployment, evaluator, interrupt)

        except UnhealthyVerdict as e:
            self._enter_rollback(self._registry.get(deployment.id), e.verdict.cause or "unhealthy")
        except ShiftApplyError as e:
            self._enter_rollback(self._registry.get(deployment.id), f"shift failed: {e}")
        except ProvisioningTimeout as e:
            self._fail(self._registry.get(deployment.id), str(e))

    # ---------------------------------------------------------
    # PROVISIONING
    # ---------------------------------------------------------

    async def _provision(self, deployment: Deployment, interrupt: asyncio.Event) -> None:
        """
        Wait for the green destination.

        Raises:
            ProvisioningTimeout: Not reachable within the timeout
        """
        config = self._config.provisioning
        started_at = deployment.updated_at

        while True:
            if await self._is_green_reachable(deployment):
                self._registry.transition(
                    deployment.id,
                    DeploymentState.PROVISIONING,
                    DeploymentState.SHIFTING,
                    f"green destination {deployment.green_revision} reachable",
                    expected_version=deployment.version,
                )
                return

            elapsed = self._clock.elapsed_since(started_at)
            if elapsed >= config.timeout_seconds:
                raise ProvisioningTimeout(
                    f"green destination {deployment.green_revision} unreachable "
                    f"after {config.timeout_seconds:.0f}s"
                )

            wait = min(config.poll_interval_seconds, config.timeout_seconds - elapsed)
            if await self._clock.sleep(wait, interrupt):
                return

    async def _is_green_reachable(self, deployment: Deployment) -> bool:
        try:
            return await asyncio.wait_for(
                self._routing.is_reachable(deployment.service_name, deployment.green_revision),
                timeout=self._config.shifter.request_timeout_seconds,
            )
        except (RoutingBackendError, asyncio.TimeoutError) as e:
            logger.debug(f"Reachability check failed for {deployment.green_revision}: {e}")
            return False

    # ---------------------------------------------------------
    # SHIFTING
    # ---------------------------------------------------------

    async def _shift_step(
        self,
        deployment: Deployment,
        evaluator: HealthEvaluator,
        interrupt: asyncio.Event,
    ) -> None:
        """Apply the next step, observe it, and move on to Baking at 100%."""
        current = deployment.traffic_percent_green

        if current < 100:
            if deployment.id in self._unobserved_steps:
                self._unobserved_steps.discard(deployment.id)
                logger.info(
                    f"Deployment {deployment.id} resumed at {current}% green, "
                    f"observing before the next step"
                )
                aborted = await self._observe(
                    deployment, evaluator, deployment.step_interval_seconds, interrupt
                )
                if aborted:
                    return

            target = next_traffic_percent(current, deployment.step_size)
            await self._shifter.apply_split(deployment.id, target)
            deployment = self._registry.transition(
                deployment.id,
                DeploymentState.SHIFTING,
                DeploymentState.SHIFTING,
                f"traffic shifted to {target}% green",
                expected_version=deployment.version,
                green_percent=target,
            )
            logger.info(
                f"Deployment {deployment.id} ({deployment.service_name}) at {target}% green"
            )

        aborted = await self._observe(
            deployment, evaluator, deployment.step_interval_seconds, interrupt
        )
        if aborted:
            return

        if deployment.traffic_percent_green == 100:
            self._registry.transition(
                deployment.id,
                DeploymentState.SHIFTING,
                DeploymentState.BAKING,
                "100% green with healthy verdict",
                expected_version=deployment.version,
            )

    # ---------------------------------------------------------
    # BAKING
    # ---------------------------------------------------------

    async def _bake(
        self,
        deployment: Deployment,
        evaluator: HealthEvaluator,
        interrupt: asyncio.Event,
    ) -> None:
        """Hold 100% green for the bake duration, then promote."""
        remaining = deployment.bake_duration_seconds - self._clock.elapsed_since(
            deployment.updated_at
        )

        aborted = await self._observe(deployment, evaluator, max(0.0, remaining), interrupt)
        if aborted:
            return

        promoted = self._registry.transition(
            deployment.id,
            DeploymentState.BAKING,
            DeploymentState.PROMOTED,
            "bake completed with sustained health",
            expected_version=deployment.version,
            blue_revision=deployment.green_revision,
        )
        logger.info(
            f"Deployment {deployment.id} promoted: {deployment.service_name} "
            f"now runs {deployment.green_revision}"
        )

        try:
            await asyncio.wait_for(
                self._routing.promote(deployment.service_name, deployment.green_revision),
                timeout=self._config.shifter.request_timeout_seconds,
            )
        except (RoutingBackendError, asyncio.TimeoutError) as e:
            logger.error(
                f"Routing backend did not record promotion of {deployment.green_revision}: {e}"
            )

        self._notify(promoted)

    # ---------------------------------------------------------
    # OBSERVATION
    # ---------------------------------------------------------

    async def _observe(
        self,
        deployment: Deployment,
        evaluator: HealthEvaluator,
        duration_seconds: float,
        interrupt: asyncio.Event,
    ) -> bool:
        """
        Evaluate health now and every poll interval for `duration_seconds`.

        Past the duration, keeps polling while any rule is pending.

        Returns:
            True if an abort interrupted the observation

        Raises:
            UnhealthyVerdict: The evaluator reported unhealthy
        """
        policy = deployment.policy
        poll_interval = self._config.health.poll_interval_seconds
        started_at = self._clock.now()

        while True:
            verdict = await evaluator.evaluate(
                policy.alarm_rules,
                policy.composite,
                policy.evaluation_timeout_seconds,
            )
            if not verdict.healthy:
                raise UnhealthyVerdict(verdict)

            elapsed = self._clock.elapsed_since(started_at)
            if elapsed >= duration_seconds:
                if not verdict.pending_rules:
                    return False
                logger.debug(
                    f"Deployment {deployment.id} holding for pending rules: "
                    f"{', '.join(verdict.pending_rules)}"
                )
                wait = poll_interval
            else:
                wait = min(poll_interval, duration_seconds - elapsed)

            if await self._clock.sleep(wait, interrupt):
                return True
            if self._registry.get(deployment.id).abort_requested:
                interrupt.set()
                return True

    # ---------------------------------------------------------
    # ROLLBACK / FAILURE
    # ---------------------------------------------------------

    def _enter_rollback(self, deployment: Deployment, cause: str) -> None:
        if deployment.state not in ABORTABLE_STATES:
            return

        self._registry.transition(
            deployment.id,
            deployment.state,
            DeploymentState.ROLLING_BACK,
            cause,
            expected_version=deployment.version,
            cause=cause,
        )
        logger.warning(
            f"Rolling back deployment {deployment.id} ({deployment.service_name}) "
            f"from {deployment.traffic_percent_green}% green: {cause}"
        )

    async def _complete_rollback(self, deployment: Deployment) -> None:
        await self._rollback.revert(deployment.id)

        if deployment.cause == ABORT_CAUSE:
            final_state = DeploymentState.ABORTED
            reason = "operator abort completed, traffic on blue"
        else:
            final_state = DeploymentState.ROLLED_BACK
            reason = f"traffic reverted to blue ({deployment.cause})"

        delay = self._config.rollback.initial_delay_seconds
        while True:
            try:
                current = self._registry.get(deployment.id)
                finished = self._registry.transition(
                    deployment.id,
                    DeploymentState.ROLLING_BACK,
                    final_state,
                    reason,
                    expected_version=current.version,
                    green_percent=0,
                )
                break
            except DatabasePersistenceError as e:
                logger.error(f"Could not record {final_state.value} for {deployment.id}: {e}")
                await self._clock.sleep(delay)
                delay = min(
                    delay * self._config.rollback.backoff_multiplier,
                    self._config.rollback.max_interval_seconds,
                )

        logger.warning(
            f"Deployment {deployment.id} ({deployment.service_name}) {final_state.value}"
        )
        self._notify(finished)

    def _fail(self, deployment: Deployment, cause: str) -> None:
        failed = self._registry.transition(
            deployment.id,
            deployment.state,
            DeploymentState.FAILED,
            cause,
            expected_version=deployment.version,
            cause=cause,
        )
        logger.error(f"Deployment {deployment.id} ({deployment.service_name}) failed: {cause}")
        self._notify(failed)

    async def _handle_internal_error(self, deployment_id: str, error: Exception) -> bool:
        """
        Record an unexpected error as RollingBack or Failed; never crash.

        Returns:
            False if the supervisor must stop (deployment owned elsewhere)
        """
        logger.error(
            f"Internal error supervising deployment {deployment_id}: {error}",
            exc_info=error,
        )
        cause = f"internal error: {error}"

        try:
            deployment = self._registry.get(deployment_id)
            if deployment.state == DeploymentState.PROVISIONING:
                self._fail(deployment, cause)
                return True
            if deployment.state in ABORTABLE_STATES:
                self._enter_rollback(deployment, cause)
                return True
        except ConcurrentModificationError as e:
            logger.info(f"Supervisor for {deployment_id} stops: {e}")
            return False
        except Exception as e:
            logger.error(f"Could not record internal error for {deployment_id}: {e}")

        await self._clock.sleep(self._config.internal_error_backoff_seconds)
        return True

    def _notify(self, deployment: Deployment) -> None:
        if self._alerting is None:
            return
        self._alerting.emit(
            DeploymentEvent(
                deployment_id=deployment.id,
                service_name=deployment.service_name,
                state=deployment.state,
                cause=deployment.cause,
                green_revision=deployment.green_revision,
                timestamp=self._clock.now(),
            )
        )

    async def _resolve_blue_revision(self, service_name: str) -> Optional[str]:
        promoted = self._registry.latest_promoted(service_name)
        if promoted is not None and promoted.blue_revision:
            return promoted.blue_revision

        try:
            return await asyncio.wait_for(
                self._routing.get_active_revision(service_name),
                timeout=self._config.shifter.request_timeout_seconds,
            )
        except (RoutingBackendError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not read active revision of {service_name}: {e}")
            return None


# ============================================================
# FACTORY
# ============================================================

def build_routing_backend(config: ControllerConfig) -> RoutingBackend:
    if config.routing.backend == "http":
        if not config.routing.base_url:
            raise ValidationError("BLUEGREEN_ROUTING_URL is required for the http routing backend")
        return HttpRoutingBackend(
            config.routing.base_url,
            auth_token=config.routing.auth_token,
            timeout_seconds=config.shifter.request_timeout_seconds,
        )
    if config.routing.backend != "memory":
        raise ValidationError(f"Unknown routing backend: {config.routing.backend}")
    logger.warning("Using in-memory routing backend; traffic changes are not applied anywhere")
    return InMemoryRoutingBackend()


def build_metric_source(config: ControllerConfig) -> MetricSource:
    if config.metrics.backend == "prometheus":
        if not config.metrics.prometheus_url:
            raise ValidationError("PROMETHEUS_URL is required for the prometheus metric source")
        return PrometheusMetricSource(
            config.metrics.prometheus_url,
            timeout_seconds=config.health.query_timeout_seconds,
        )
    if config.metrics.backend != "memory":
        raise ValidationError(f"Unknown metrics backend: {config.metrics.backend}")
    logger.warning("Using in-memory metric source; alarm rules read as unavailable")
    return InMemoryMetricSource()


def create_controller(
    config: ControllerConfig,
    clock: Optional[Clock] = None,
) -> DeploymentController:
    """
    Wire a controller from configuration.

    Creates the registry tables if needed.
    """
    clock = clock or SystemClock()
    database = initialize_database(config.database.url, echo=config.database.echo)

    return DeploymentController(
        registry=DeploymentRegistry(database, clock),
        routing=build_routing_backend(config),
        metric_source=build_metric_source(config),
        config=config,
        clock=clock,
        alerting=build_alerting_service(config.alerting, clock),
    )


# ============================================================
# SINGLETON ACCESS
# ============================================================

_controller: Optional[DeploymentController] = None


def get_controller() -> DeploymentController:
    """
    Get the global DeploymentController instance.

    Raises:
        BlueGreenControllerError: If not initialized
    """
    if _controller is None:
        raise BlueGreenControllerError("DeploymentController not initialized")
    return _controller


def init_controller(
    config: ControllerConfig,
    clock: Optional[Clock] = None,
) -> DeploymentController:
    """
    Initialize the global DeploymentController instance.
    """
    global _controller

    if _controller is not None:
        logger.warning("DeploymentController already initialized, replacing")

    _controller = create_controller(config, clock)
    return _controller


def reset_controller() -> None:
    """Forget the global instance (tests, shutdown)."""
    global _controller
    _controller = None
