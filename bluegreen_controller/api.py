"""
Blue/Green Deployment Controller - HTTP API.

============================================================
RESPONSIBILITY
============================================================
REST surface of the controller.

- POST /deployments               -> 201 {deployment_id}
- POST /deployments/{id}/abort    -> 204
- GET  /deployments/{id}          -> full record with history
- GET  /deployments               -> list (service_name, active_only)
- GET  /health                    -> liveness

ERROR MAPPING:
- ValidationError          -> 400
- NotFoundError            -> 404
- ConflictError            -> 409
- InvalidStateError        -> 409
- DatabasePersistenceError -> 503
============================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import default_alarm_rules, load_config_from_env
from .engine import DeploymentController, init_controller
from .types import (
    AlarmRule,
    BlueGreenControllerError,
    Comparator,
    CompositeOperator,
    ConflictError,
    DatabasePersistenceError,
    Deployment,
    DeploymentPolicy,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# ============================================================
# Request Models
# ============================================================

class AlarmRuleRequest(BaseModel):
    name: str
    metric_query: str
    comparator: Literal[">", "<", ">=", "<="]
    threshold: float
    evaluation_window_seconds: float = 60.0
    sustained_for_seconds: float = 0.0

    def to_rule(self) -> AlarmRule:
        return AlarmRule(
            name=self.name,
            metric_query=self.metric_query,
            comparator=Comparator(self.comparator),
            threshold=self.threshold,
            evaluation_window_seconds=self.evaluation_window_seconds,
            sustained_for_seconds=self.sustained_for_seconds,
        )


class PolicyRequest(BaseModel):
    step_size: int
    step_interval_seconds: float
    bake_duration_seconds: float
    alarm_rules: Optional[List[AlarmRuleRequest]] = None
    """Omitted = the default alarm rules."""
    composite: Literal["ANY", "ALL"] = "ANY"
    evaluation_timeout_seconds: Optional[float] = None

    def to_policy(self) -> DeploymentPolicy:
        if self.alarm_rules is None:
            rules = default_alarm_rules()
        else:
            rules = [rule.to_rule() for rule in self.alarm_rules]
        return DeploymentPolicy(
            step_size=self.step_size,
            step_interval_seconds=self.step_interval_seconds,
            bake_duration_seconds=self.bake_duration_seconds,
            alarm_rules=rules,
            composite=CompositeOperator(self.composite),
            evaluation_timeout_seconds=self.evaluation_timeout_seconds,
        )


class StartDeploymentRequest(BaseModel):
    service_name: str = Field(..., min_length=1)
    green_revision: str = Field(..., min_length=1)
    blue_revision: Optional[str] = None
    policy: PolicyRequest


# ============================================================
# Response Models
# ============================================================

class StartDeploymentResponse(BaseModel):
    deployment_id: str


class HistoryEntryResponse(BaseModel):
    timestamp: datetime
    from_state: str
    to_state: str
    reason: str
    green_percent: Optional[int] = None


class DeploymentResponse(BaseModel):
    id: str
    service_name: str
    blue_revision: Optional[str] = None
    green_revision: str
    state: str
    traffic_percent_green: int
    step_size: int
    step_interval_seconds: float
    bake_duration_seconds: float
    composite: str
    alarm_rules: List[str]
    cause: Optional[str] = None
    abort_requested: bool
    created_at: datetime
    updated_at: datetime
    terminal_at: Optional[datetime] = None
    history: List[HistoryEntryResponse]

    @classmethod
    def from_deployment(cls, deployment: Deployment) -> "DeploymentResponse":
        return cls(
            id=deployment.id,
            service_name=deployment.service_name,
            blue_revision=deployment.blue_revision,
            green_revision=deployment.green_revision,
            state=deployment.state.value,
            traffic_percent_green=deployment.traffic_percent_green,
            step_size=deployment.step_size,
            step_interval_seconds=deployment.step_interval_seconds,
            bake_duration_seconds=deployment.bake_duration_seconds,
            composite=deployment.policy.composite.value,
            alarm_rules=[rule.name for rule in deployment.policy.alarm_rules],
            cause=deployment.cause,
            abort_requested=deployment.abort_requested,
            created_at=deployment.created_at,
            updated_at=deployment.updated_at,
            terminal_at=deployment.terminal_at,
            history=[
                HistoryEntryResponse(
                    timestamp=entry.timestamp,
                    from_state=entry.from_state.value,
                    to_state=entry.to_state.value,
                    reason=entry.reason,
                    green_percent=entry.green_percent,
                )
                for entry in deployment.history
            ],
        )


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str = __version__
    running: bool
    active_supervisors: int


# ============================================================
# Error Mapping
# ============================================================

def _error(status_code: int, error: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": type(error).__name__, "detail": str(error)},
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "ValidationError", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(NotFoundError)
    async def on_not_found(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ConflictError)
    async def on_conflict(request: Request, exc: ConflictError):
        return _error(409, exc)

    @app.exception_handler(InvalidStateError)
    async def on_invalid_state(request: Request, exc: InvalidStateError):
        return _error(409, exc)

    @app.exception_handler(DatabasePersistenceError)
    async def on_persistence_error(request: Request, exc: DatabasePersistenceError):
        logger.error(f"Registry unavailable: {exc}")
        return _error(503, exc)

    @app.exception_handler(BlueGreenControllerError)
    async def on_controller_error(request: Request, exc: BlueGreenControllerError):
        logger.error(f"Unhandled controller error: {exc}")
        return _error(500, exc)


# ============================================================
# FastAPI Application
# ============================================================

def create_app(controller: Optional[DeploymentController] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        controller: Controller to serve (None = build from environment on startup)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctrl = controller or init_controller(load_config_from_env())
        app.state.controller = ctrl
        await ctrl.start()
        try:
            yield
        finally:
            await ctrl.stop()
            await ctrl.routing.close()
            await ctrl.metric_source.close()

    app = FastAPI(
        title="Blue/Green Deployment Controller",
        description="Progressive traffic shifting with automatic rollback",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _install_error_handlers(app)

    def get_ctrl(request: Request) -> DeploymentController:
        return request.app.state.controller

    # ========================================================
    # Endpoints
    # ========================================================

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request):
        """Liveness endpoint."""
        ctrl = get_ctrl(request)
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            running=ctrl.is_running,
            active_supervisors=len(ctrl.active_supervisors),
        )

    @app.post(
        "/deployments",
        response_model=StartDeploymentResponse,
        status_code=201,
        tags=["Deployments"],
    )
    async def start_deployment(body: StartDeploymentRequest, request: Request):
        """Start a blue/green deployment."""
        deployment_id = await get_ctrl(request).start_deployment(
            service_name=body.service_name,
            green_revision=body.green_revision,
            policy=body.policy.to_policy(),
            blue_revision=body.blue_revision,
        )
        return StartDeploymentResponse(deployment_id=deployment_id)

    @app.post("/deployments/{deployment_id}/abort", status_code=204, tags=["Deployments"])
    async def abort_deployment(deployment_id: str, request: Request):
        """Abort a running deployment; traffic returns to blue."""
        await get_ctrl(request).abort(deployment_id)
        return Response(status_code=204)

    @app.get(
        "/deployments/{deployment_id}",
        response_model=DeploymentResponse,
        tags=["Deployments"],
    )
    async def get_deployment(deployment_id: str, request: Request):
        """Full deployment record including history."""
        return DeploymentResponse.from_deployment(get_ctrl(request).get_deployment(deployment_id))

    @app.get("/deployments", response_model=List[DeploymentResponse], tags=["Deployments"])
    async def list_deployments(
        request: Request,
        service_name: Optional[str] = Query(default=None),
        active_only: bool = Query(default=False),
    ):
        """List deployments, newest first."""
        deployments = get_ctrl(request).list_deployments(
            service_name=service_name, active_only=active_only
        )
        return [DeploymentResponse.from_deployment(d) for d in deployments]

    return app
