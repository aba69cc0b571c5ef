"""
Blue/Green Deployment Controller - Deployment Registry.

============================================================
PURPOSE
============================================================
Durable store of deployment records and the single-writer
guarantee per service.

GUARANTEES:
- reserve(): reservation row + Pending deployment in ONE
  transaction; a second reservation for the service fails
  with ConflictError
- transition(): edge and traffic checks, then a conditional
  UPDATE keyed on (id, state, version); history row appended
  in the same transaction
- Terminal transitions set terminal_at and release the
  reservation
- History rows are never updated or deleted

ALL STATE CHANGES ARE PERSISTED BEFORE THEY ARE ACTED ON.

============================================================
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from .clock import Clock, SystemClock
from .database import Database
from .models import DeploymentHistoryModel, DeploymentModel, ServiceReservationModel
from .state_machine import TERMINAL_STATES, validate_transition
from .types import (
    ConcurrentModificationError,
    ConflictError,
    Deployment,
    DeploymentPolicy,
    DeploymentState,
    HistoryEntry,
    InvalidStateError,
    NotFoundError,
)


logger = logging.getLogger(__name__)


_TERMINAL_VALUES = [state.value for state in TERMINAL_STATES]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================
# REGISTRY
# ============================================================

class DeploymentRegistry:
    """
    Repository of deployments.

    Sync SQLAlchemy; every public method is one transaction.
    """

    def __init__(self, database: Database, clock: Optional[Clock] = None):
        """
        Initialize registry.

        Args:
            database: Database owning the engine and sessions
            clock: Time source for timestamps
        """
        self._db = database
        self._clock = clock or SystemClock()

    # --------------------------------------------------------
    # RESERVATION
    # --------------------------------------------------------

    def reserve(
        self,
        service_name: str,
        blue_revision: Optional[str],
        green_revision: str,
        policy: DeploymentPolicy,
    ) -> Deployment:
        """
        Create a Pending deployment holding the service's reservation.

        Raises:
            ConflictError: A non-terminal deployment already holds the service
        """
        now = self._clock.now()
        deployment_id = str(uuid.uuid4())

        with self._db.transaction_scope() as session:
            existing = session.get(ServiceReservationModel, service_name)
            if existing is not None:
                raise ConflictError(
                    f"Service {service_name} already has deployment "
                    f"{existing.deployment_id} in flight"
                )

            model = DeploymentModel(
                id=deployment_id,
                service_name=service_name,
                blue_revision=blue_revision,
                green_revision=green_revision,
                state=DeploymentState.PENDING.value,
                traffic_percent_green=0,
                policy=policy.to_dict(),
                version=0,
                cause=None,
                abort_requested=False,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            session.flush()

            session.add(
                ServiceReservationModel(
                    service_name=service_name,
                    deployment_id=deployment_id,
                    reserved_at=now,
                )
            )
            try:
                session.flush()
            except IntegrityError as e:
                raise ConflictError(
                    f"Service {service_name} was reserved concurrently"
                ) from e

        logger.info(
            f"Reserved {service_name} for deployment {deployment_id} "
            f"({blue_revision} -> {green_revision})"
        )
        return self.get(deployment_id)

    def release(self, deployment_id: str) -> None:
        """
        Remove the reservation of a terminal deployment (idempotent).

        Raises:
            NotFoundError: Unknown deployment
            InvalidStateError: Deployment is not terminal
        """
        with self._db.transaction_scope() as session:
            model = session.get(DeploymentModel, deployment_id)
            if model is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            if DeploymentState(model.state) not in TERMINAL_STATES:
                raise InvalidStateError(
                    f"Deployment {deployment_id} is {model.state}; only terminal "
                    f"deployments release their reservation"
                )
            session.execute(
                delete(ServiceReservationModel).where(
                    ServiceReservationModel.deployment_id == deployment_id
                )
            )

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    def transition(
        self,
        deployment_id: str,
        from_state: DeploymentState,
        to_state: DeploymentState,
        reason: str,
        *,
        expected_version: int,
        green_percent: Optional[int] = None,
        blue_revision: Optional[str] = None,
        cause: Optional[str] = None,
    ) -> Deployment:
        """
        Conditionally move a deployment along one edge.

        Args:
            deployment_id: Deployment to change
            from_state: State the caller believes it is in
            to_state: Target state
            reason: History reason
            expected_version: Version the caller read
            green_percent: New confirmed green share (None = unchanged)
            blue_revision: New blue revision (promotion)
            cause: Cause to record (rollback / failure)

        Returns:
            The updated deployment

        Raises:
            NotFoundError: Unknown deployment
            InvalidTransitionError: Illegal edge or traffic change
            ConcurrentModificationError: State or version moved underneath the caller
        """
        now = self._clock.now()

        with self._db.transaction_scope() as session:
            model = session.get(DeploymentModel, deployment_id)
            if model is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")

            validate_transition(
                from_state,
                to_state,
                current_percent=model.traffic_percent_green,
                new_percent=green_percent,
            )

            values = {
                "state": to_state.value,
                "version": expected_version + 1,
                "updated_at": now,
            }
            if green_percent is not None:
                values["traffic_percent_green"] = green_percent
            if blue_revision is not None:
                values["blue_revision"] = blue_revision
            if cause is not None:
                values["cause"] = cause
            if to_state in TERMINAL_STATES:
                values["terminal_at"] = now

            result = session.execute(
                update(DeploymentModel)
                .where(
                    DeploymentModel.id == deployment_id,
                    DeploymentModel.state == from_state.value,
                    DeploymentModel.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentModificationError(deployment_id, from_state, expected_version)

            session.add(
                DeploymentHistoryModel(
                    deployment_id=deployment_id,
                    timestamp=now,
                    from_state=from_state.value,
                    to_state=to_state.value,
                    reason=reason,
                    green_percent=green_percent,
                )
            )

            if to_state in TERMINAL_STATES:
                session.execute(
                    delete(ServiceReservationModel).where(
                        ServiceReservationModel.deployment_id == deployment_id
                    )
                )

        logger.info(
            f"Deployment {deployment_id}: {from_state.value} -> {to_state.value} "
            f"({reason})"
        )
        return self.get(deployment_id)

    def request_abort(self, deployment_id: str) -> Deployment:
        """
        Persist an operator abort request.

        Does not bump the version: the supervisor's own conditional
        writes stay valid, and it picks the flag up on its next read.

        Raises:
            NotFoundError: Unknown deployment
            InvalidStateError: Deployment is terminal
        """
        with self._db.transaction_scope() as session:
            result = session.execute(
                update(DeploymentModel)
                .where(
                    DeploymentModel.id == deployment_id,
                    DeploymentModel.state.not_in(_TERMINAL_VALUES),
                )
                .values(abort_requested=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                model = session.get(DeploymentModel, deployment_id)
                if model is None:
                    raise NotFoundError(f"Deployment {deployment_id} not found")
                raise InvalidStateError(
                    f"Deployment {deployment_id} is already terminal ({model.state})"
                )

        logger.info(f"Abort requested for deployment {deployment_id}")
        return self.get(deployment_id)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get(self, deployment_id: str) -> Deployment:
        """
        Raises:
            NotFoundError: Unknown deployment
        """
        with self._db.transaction_scope() as session:
            model = session.get(DeploymentModel, deployment_id)
            if model is None:
                raise NotFoundError(f"Deployment {deployment_id} not found")
            return self._to_domain(model)

    def list(
        self,
        service_name: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Deployment]:
        """List deployments, newest first."""
        stmt = select(DeploymentModel)
        if service_name is not None:
            stmt = stmt.where(DeploymentModel.service_name == service_name)
        if active_only:
            stmt = stmt.where(DeploymentModel.state.not_in(_TERMINAL_VALUES))
        stmt = stmt.order_by(DeploymentModel.created_at.desc(), DeploymentModel.id)

        with self._db.transaction_scope() as session:
            return [self._to_domain(model) for model in session.scalars(stmt)]

    def latest_promoted(self, service_name: str) -> Optional[Deployment]:
        """Most recently promoted deployment of a service, if any."""
        stmt = (
            select(DeploymentModel)
            .where(
                DeploymentModel.service_name == service_name,
                DeploymentModel.state == DeploymentState.PROMOTED.value,
            )
            .order_by(DeploymentModel.terminal_at.desc())
            .limit(1)
        )
        with self._db.transaction_scope() as session:
            model = session.scalars(stmt).first()
            return self._to_domain(model) if model is not None else None

    # --------------------------------------------------------
    # MAPPING
    # --------------------------------------------------------

    @staticmethod
    def _to_domain(model: DeploymentModel) -> Deployment:
        return Deployment(
            id=model.id,
            service_name=model.service_name,
            blue_revision=model.blue_revision,
            green_revision=model.green_revision,
            state=DeploymentState(model.state),
            traffic_percent_green=model.traffic_percent_green,
            policy=DeploymentPolicy.from_dict(model.policy),
            created_at=_as_utc(model.created_at),
            updated_at=_as_utc(model.updated_at),
            terminal_at=_as_utc(model.terminal_at),
            history=[
                HistoryEntry(
                    timestamp=_as_utc(row.timestamp),
                    from_state=DeploymentState(row.from_state),
                    to_state=DeploymentState(row.to_state),
                    reason=row.reason,
                    green_percent=row.green_percent,
                )
                for row in model.history
            ],
            version=model.version,
            cause=model.cause,
            abort_requested=model.abort_requested,
        )
