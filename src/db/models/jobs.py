"""
Job bookkeeping models: stage artifact cache, saga log and structural decision traces.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LearningArtifact(Base):
    """Cache entry for a stage output, keyed by (owner, set, path, artifact_type)."""

    __tablename__ = "learning_artifacts"
    __table_args__ = (
        UniqueConstraint(
            "owner_user_id", "material_set_id", "path_id", "artifact_type", name="uq_learning_artifacts_key"
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    path_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    artifact_type: Mapped[str] = mapped_column(Text, nullable=False)
    input_hash: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, default=1)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class SagaRun(Base):
    """A saga groups compensating actions for one job run."""

    __tablename__ = "saga_runs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    root_job_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    # running | succeeded | failed | compensating | compensated
    status: Mapped[str] = mapped_column(Text, default="running")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class SagaAction(Base):
    """Append-only compensating action, ordered by seq within a saga."""

    __tablename__ = "saga_actions"
    __table_args__ = (UniqueConstraint("saga_id", "seq", name="uq_saga_actions_seq"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    saga_id: Mapped[UUID] = mapped_column(ForeignKey("saga_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    # pending | done | failed
    status: Mapped[str] = mapped_column(Text, default="pending")
    error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class StructuralDecisionTrace(Base):
    """Audit row for structural decisions, carrying the model versions that produced them."""

    __tablename__ = "structural_decision_traces"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    decision_type: Mapped[str] = mapped_column(Text, default="")
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    path_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    ids: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    graph_version: Mapped[str] = mapped_column(Text, default="")
    embedding_version: Mapped[str] = mapped_column(Text, default="")
    taxonomy_version: Mapped[str] = mapped_column(Text, default="")
    clustering_version: Mapped[str] = mapped_column(Text, default="")
    calibration_version: Mapped[str] = mapped_column(Text, default="")
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
