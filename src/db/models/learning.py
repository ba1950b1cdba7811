"""
Learning models: paths, the concept graph, path nodes and realized activities.

Concepts are scoped either to a path (scope="path", scope_id=path_id) or globally
(scope="global", scope_id NULL). Path concepts link to their global identity through
canonical_concept_id; a global concept may itself redirect to a root concept.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

# ========================================
# PATHS
# ========================================


class Path(Base):
    """The canonical learning path for an (owner, material set) pair."""

    __tablename__ = "paths"
    __table_args__ = (UniqueConstraint("owner_user_id", "material_set_id", name="uq_paths_owner_set"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    material_set_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(Text, default="draft")
    # intake, intake_md, intake_material_filter, charter, web_resources_seed, web_resources_consent
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class PathNode(Base):
    """A node of the path plan; metadata declares its activity slots."""

    __tablename__ = "path_nodes"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("paths.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_node_id: Mapped[UUID | None] = mapped_column(ForeignKey("path_nodes.id", ondelete="SET NULL"))
    index: Mapped[int] = mapped_column(Integer, default=0)
    title: Mapped[str] = mapped_column(Text, default="")
    # goal, difficulty, concept_keys[], activity_slots[{slot, kind, estimated_minutes, primary_concept_keys[]}]
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


# ========================================
# CONCEPT GRAPH
# ========================================


class Concept(Base):
    """A concept node, path-scoped or global."""

    __tablename__ = "concepts"
    __table_args__ = (
        UniqueConstraint("scope", "scope_id", "key", name="uq_concepts_scope_key"),
        Index("uq_concepts_global_key", "key", unique=True, postgresql_where=text("scope = 'global'")),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(Text, nullable=False)
    scope_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), index=True)
    parent_id: Mapped[UUID | None] = mapped_column(ForeignKey("concepts.id", ondelete="SET NULL"))
    key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, default="")
    summary: Mapped[str] = mapped_column(Text, default="")
    key_points: Mapped[list[str] | None] = mapped_column(JSONB)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    sort_index: Mapped[int] = mapped_column(Integer, default=0)
    vector_id: Mapped[str] = mapped_column(Text, default="")
    # aliases[], importance, assumed?, required_by[], merged_from[], split_from?
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    canonical_concept_id: Mapped[UUID | None] = mapped_column(ForeignKey("concepts.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ConceptEvidence(Base):
    """Grounding link between a concept and a source chunk."""

    __tablename__ = "concept_evidences"
    __table_args__ = (UniqueConstraint("concept_id", "material_chunk_id", name="uq_concept_evidence_chunk"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    concept_id: Mapped[UUID] = mapped_column(ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, index=True)
    material_chunk_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(Text, default="grounding")
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ConceptEdge(Base):
    """Typed edge between concepts: prereq, related, analogy or composes."""

    __tablename__ = "concept_edges"
    __table_args__ = (UniqueConstraint("from_concept_id", "to_concept_id", "edge_type", name="uq_concept_edges"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    from_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_concept_id: Mapped[UUID] = mapped_column(
        ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    edge_type: Mapped[str] = mapped_column(Text, nullable=False)
    strength: Mapped[float] = mapped_column(Float, default=1.0)
    # {rationale, citations[]}
    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# ========================================
# ACTIVITIES
# ========================================


class Activity(Base):
    """Canonical activity content owned by a path."""

    __tablename__ = "activities"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_type: Mapped[str] = mapped_column(Text, default="path")
    owner_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), index=True)
    kind: Mapped[str] = mapped_column(Text, default="reading")
    title: Mapped[str] = mapped_column(Text, default="")
    content_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    estimated_minutes: Mapped[int] = mapped_column(Integer, default=10)
    difficulty: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="draft")
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class ActivityVariant(Base):
    __tablename__ = "activity_variants"
    __table_args__ = (UniqueConstraint("activity_id", "variant", name="uq_activity_variants"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    activity_id: Mapped[UUID] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant: Mapped[str] = mapped_column(Text, default="default")
    content_json: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    render_spec: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class ActivityConcept(Base):
    __tablename__ = "activity_concepts"
    __table_args__ = (UniqueConstraint("activity_id", "concept_id", name="uq_activity_concepts"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    activity_id: Mapped[UUID] = mapped_column(ForeignKey("activities.id", ondelete="CASCADE"), nullable=False)
    concept_id: Mapped[UUID] = mapped_column(ForeignKey("concepts.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(Text, default="primary")
    weight: Mapped[float] = mapped_column(Float, default=1.0)


class ActivityCitation(Base):
    __tablename__ = "activity_citations"
    __table_args__ = (UniqueConstraint("activity_variant_id", "material_chunk_id", name="uq_activity_citations"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    activity_variant_id: Mapped[UUID] = mapped_column(
        ForeignKey("activity_variants.id", ondelete="CASCADE"), nullable=False
    )
    material_chunk_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    kind: Mapped[str] = mapped_column(Text, default="grounding")


class PathNodeActivity(Base):
    """Links an activity to a node; rank equals the slot index it realizes."""

    __tablename__ = "path_node_activities"
    __table_args__ = (UniqueConstraint("path_node_id", "activity_id", name="uq_path_node_activities"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    path_node_id: Mapped[UUID] = mapped_column(
        ForeignKey("path_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_id: Mapped[UUID] = mapped_column(ForeignKey("activities.id", ondelete="CASCADE"), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)


# ========================================
# LEARNER STATE
# ========================================


class UserProfile(Base):
    """Free-text learner profile consumed by activity prompts."""

    __tablename__ = "user_profiles"

    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    profile_doc: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class UserConceptState(Base):
    __tablename__ = "user_concept_states"
    __table_args__ = (UniqueConstraint("user_id", "concept_id", name="uq_user_concept_states"),)

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    concept_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    mastery: Mapped[float] = mapped_column(Float, default=0.0)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    decay_rate: Mapped[float] = mapped_column(Float, default=0.015)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_review_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class UserMisconceptionInstance(Base):
    __tablename__ = "user_misconception_instances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False, index=True)
    canonical_concept_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    signature: Mapped[str] = mapped_column(Text, default="unknown")
    polarity: Mapped[str] = mapped_column(Text, default="")
    scope: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(Text, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())


class PathStructuralUnit(Base):
    """A recurring concept grouping inside a path, candidate for compound promotion."""

    __tablename__ = "path_structural_units"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    path_id: Mapped[UUID] = mapped_column(ForeignKey("paths.id", ondelete="CASCADE"), nullable=False, index=True)
    derived_canonical_concept_ids: Mapped[list[str] | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now())
