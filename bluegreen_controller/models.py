"""
Blue/Green Deployment Controller - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for persisting:
- Deployment records
- Append-only deployment history
- Per-service reservations (one in-flight deployment)

The reservation table's primary key on service_name is what
makes "exactly one non-terminal deployment per service" hold
across controller instances.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship


Base = declarative_base()


# ============================================================
# DEPLOYMENT MODEL
# ============================================================

class DeploymentModel(Base):
    """
    Persisted deployment record.

    Updated only through conditional writes keyed on (id, state, version).
    """

    __tablename__ = "bg_deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    """UUID of the deployment."""

    service_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    blue_revision: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    """Revision trusted before this deployment (None for a first deployment)."""

    green_revision: Mapped[str] = mapped_column(String(255), nullable=False)
    """Candidate revision."""

    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    traffic_percent_green: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    """Last confirmed green share."""

    policy: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    """DeploymentPolicy as JSON."""

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    """Optimistic-concurrency counter, incremented by every write."""

    cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    abort_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    terminal_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    history: Mapped[List["DeploymentHistoryModel"]] = relationship(
        back_populates="deployment",
        order_by="DeploymentHistoryModel.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_bg_deployments_service_created", "service_name", "created_at"),
    )


# ============================================================
# HISTORY MODEL
# ============================================================

class DeploymentHistoryModel(Base):
    """
    One audit entry. Rows are inserted, never updated.
    """

    __tablename__ = "bg_deployment_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    deployment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bg_deployments.id"),
        nullable=False,
        index=True,
    )

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    from_state: Mapped[str] = mapped_column(String(20), nullable=False)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    green_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Confirmed green share after the transition, when it changed."""

    deployment: Mapped[DeploymentModel] = relationship(back_populates="history")


# ============================================================
# RESERVATION MODEL
# ============================================================

class ServiceReservationModel(Base):
    """
    Exclusive claim of a service by its non-terminal deployment.

    Inserted with the deployment, deleted on its terminal transition.
    """

    __tablename__ = "bg_service_reservations"

    service_name: Mapped[str] = mapped_column(String(255), primary_key=True)

    deployment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bg_deployments.id"),
        nullable=False,
        unique=True,
    )

    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
