"""
Repositories over the pipeline tables.

Each repository wraps an open Session; callers own the transaction
(``session_scope()``). Reads exclude soft-deleted rows unless stated.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, text, update
from sqlalchemy.dialects.postgresql import array, insert
from sqlalchemy.orm import Session

from src.db.models import (
    Activity,
    ActivityCitation,
    ActivityConcept,
    ActivityVariant,
    Concept,
    ConceptEdge,
    LearningArtifact,
    MaterialChunk,
    MaterialFile,
    MaterialFileSignature,
    MaterialSet,
    Path,
    PathNode,
    PathNodeActivity,
    PathStructuralUnit,
    SagaAction,
    SagaRun,
    UserConceptState,
    UserMisconceptionInstance,
    UserProfile,
)
from src.db.queries import QUERIES


# ========================================
# Paths & materials
# ========================================


class PathRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, path_id: UUID) -> Path | None:
        return self.session.get(Path, path_id)

    def get_by_owner_set(self, owner_user_id: UUID, material_set_id: UUID) -> Path | None:
        stmt = select(Path).where(Path.owner_user_id == owner_user_id, Path.material_set_id == material_set_id)
        return self.session.execute(stmt).scalars().first()

    def create(self, owner_user_id: UUID, material_set_id: UUID) -> Path:
        path = Path(owner_user_id=owner_user_id, material_set_id=material_set_id, status="draft", meta={})
        self.session.add(path)
        self.session.flush()
        return path

    def merge_meta(self, path_id: UUID, patch: dict[str, Any]) -> None:
        """Additive metadata update: keys in ``patch`` overwrite, others are kept."""
        path = self.session.get(Path, path_id)
        if path is None:
            return
        meta = dict(path.meta or {})
        meta.update(patch)
        path.meta = meta

    def nodes(self, path_id: UUID) -> list[PathNode]:
        stmt = select(PathNode).where(PathNode.path_id == path_id).order_by(PathNode.index, PathNode.id)
        return list(self.session.execute(stmt).scalars())

    def realized_slots(self, node_ids: Iterable[UUID]) -> set[tuple[UUID, int]]:
        """(node_id, rank) pairs that already have an activity."""
        ids = list(node_ids)
        if not ids:
            return set()
        stmt = select(PathNodeActivity.path_node_id, PathNodeActivity.rank).where(
            PathNodeActivity.path_node_id.in_(ids)
        )
        return {(row[0], int(row[1])) for row in self.session.execute(stmt)}

    def ids_for_owner(self, owner_user_id: UUID) -> list[UUID]:
        stmt = select(Path.id).where(Path.owner_user_id == owner_user_id)
        return list(self.session.execute(stmt).scalars())


class MaterialRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_set(self, material_set_id: UUID) -> MaterialSet | None:
        return self.session.get(MaterialSet, material_set_id)

    def files_by_set(self, material_set_id: UUID) -> list[MaterialFile]:
        stmt = select(MaterialFile).where(MaterialFile.material_set_id == material_set_id).order_by(MaterialFile.id)
        return list(self.session.execute(stmt).scalars())

    def chunks_by_files(self, file_ids: Iterable[UUID]) -> list[MaterialChunk]:
        ids = list(file_ids)
        if not ids:
            return []
        stmt = (
            select(MaterialChunk)
            .where(MaterialChunk.material_file_id.in_(ids))
            .order_by(MaterialChunk.material_file_id, MaterialChunk.index)
        )
        return list(self.session.execute(stmt).scalars())

    def signatures_by_set(self, material_set_id: UUID) -> list[MaterialFileSignature]:
        stmt = (
            select(MaterialFileSignature)
            .where(MaterialFileSignature.material_set_id == material_set_id)
            .order_by(MaterialFileSignature.material_file_id)
        )
        return list(self.session.execute(stmt).scalars())

    def merge_chunk_meta(self, chunk_id: UUID, patch: dict[str, Any]) -> bool:
        chunk = self.session.get(MaterialChunk, chunk_id)
        if chunk is None:
            return False
        meta = dict(chunk.meta or {})
        meta.update(patch)
        chunk.meta = meta
        return True


# ========================================
# Concepts
# ========================================


class ConceptRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_scope(self, scope: str, scope_id: UUID | None) -> list[Concept]:
        stmt = select(Concept).where(Concept.scope == scope, Concept.deleted_at.is_(None))
        if scope_id is None:
            stmt = stmt.where(Concept.scope_id.is_(None))
        else:
            stmt = stmt.where(Concept.scope_id == scope_id)
        return list(self.session.execute(stmt.order_by(Concept.key)).scalars())

    def get_by_ids(self, ids: Iterable[UUID]) -> list[Concept]:
        ids = list(ids)
        if not ids:
            return []
        stmt = select(Concept).where(Concept.id.in_(ids))
        return list(self.session.execute(stmt).scalars())

    def global_by_keys(self, keys: Iterable[str]) -> list[Concept]:
        keys = sorted({k for k in keys if k})
        if not keys:
            return []
        stmt = select(Concept).where(Concept.scope == "global", Concept.key.in_(keys))
        return list(self.session.execute(stmt).scalars())

    def global_by_alias_keys(self, keys: Iterable[str]) -> list[Concept]:
        """Global concepts whose ``metadata.aliases`` contains any of ``keys``."""
        keys = sorted({k for k in keys if k})
        if not keys:
            return []
        stmt = select(Concept).where(
            Concept.scope == "global",
            Concept.deleted_at.is_(None),
            Concept.meta["aliases"].has_any(array(keys)),
        )
        return list(self.session.execute(stmt).scalars())

    def insert_global_ignore(self, row: dict[str, Any]) -> None:
        self.session.execute(text(QUERIES["insert_global_concept_ignore"]), row)

    def set_canonical(self, concept_id: UUID, canonical_id: UUID) -> None:
        self.session.execute(
            update(Concept).where(Concept.id == concept_id).values(canonical_concept_id=canonical_id)
        )

    def edges_for_concepts(self, concept_ids: Iterable[UUID]) -> list[ConceptEdge]:
        ids = list(concept_ids)
        if not ids:
            return []
        stmt = select(ConceptEdge).where(
            ConceptEdge.from_concept_id.in_(ids),
            ConceptEdge.to_concept_id.in_(ids),
            ConceptEdge.deleted_at.is_(None),
        )
        stmt = stmt.order_by(ConceptEdge.from_concept_id, ConceptEdge.to_concept_id)
        return list(self.session.execute(stmt).scalars())

    def insert_evidence_ignore(self, row: dict[str, Any]) -> None:
        self.session.execute(text(QUERIES["insert_evidence_ignore"]), row)

    def upsert_edge(self, row: dict[str, Any]) -> None:
        self.session.execute(text(QUERIES["upsert_edge"]), row)

    def restore_path(self, path_id: UUID) -> int:
        """Clear ``deleted_at`` on a path's concepts, evidences and edges. Returns restored concept count."""
        restored = self.session.execute(text(QUERIES["restore_path_concepts"]), {"path_id": path_id}).rowcount or 0
        self.session.execute(text(QUERIES["restore_path_evidences"]), {"path_id": path_id})
        self.session.execute(text(QUERIES["restore_path_edges"]), {"path_id": path_id})
        return int(restored)


# ========================================
# Artifact cache
# ========================================


class ArtifactRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_key(
        self, owner_user_id: UUID, material_set_id: UUID, path_id: UUID, artifact_type: str
    ) -> LearningArtifact | None:
        stmt = select(LearningArtifact).where(
            LearningArtifact.owner_user_id == owner_user_id,
            LearningArtifact.material_set_id == material_set_id,
            LearningArtifact.path_id == path_id,
            LearningArtifact.artifact_type == artifact_type,
        )
        return self.session.execute(stmt).scalars().first()

    def upsert(
        self,
        owner_user_id: UUID,
        material_set_id: UUID,
        path_id: UUID,
        artifact_type: str,
        input_hash: str,
        version: int,
        meta: dict[str, Any] | None,
    ) -> None:
        stmt = insert(LearningArtifact.__table__).values(
            owner_user_id=owner_user_id,
            material_set_id=material_set_id,
            path_id=path_id,
            artifact_type=artifact_type,
            input_hash=input_hash,
            version=version,
            metadata=meta or {},
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_learning_artifacts_key",
            set_={
                "input_hash": stmt.excluded.input_hash,
                "version": stmt.excluded.version,
                "metadata": stmt.excluded["metadata"],
                "updated_at": text("now()"),
            },
        )
        self.session.execute(stmt)


# ========================================
# Saga log
# ========================================


class SagaRepository:
    def __init__(self, session: Session):
        self.session = session

    def create_run(self, owner_user_id: UUID, root_job_id: UUID | None = None) -> SagaRun:
        run = SagaRun(owner_user_id=owner_user_id, root_job_id=root_job_id, status="running")
        self.session.add(run)
        self.session.flush()
        return run

    def lock_run(self, saga_id: UUID) -> bool:
        row = self.session.execute(text(QUERIES["lock_saga"]), {"saga_id": saga_id}).first()
        return row is not None

    def next_seq(self, saga_id: UUID) -> int:
        return int(self.session.execute(text(QUERIES["next_saga_seq"]), {"saga_id": saga_id}).scalar() or 1)

    def add_action(self, saga_id: UUID, seq: int, kind: str, payload: dict[str, Any]) -> SagaAction:
        action = SagaAction(saga_id=saga_id, seq=seq, kind=kind, payload=payload, status="pending")
        self.session.add(action)
        self.session.flush()
        return action

    def actions_desc(self, saga_id: UUID) -> list[SagaAction]:
        stmt = select(SagaAction).where(SagaAction.saga_id == saga_id).order_by(SagaAction.seq.desc())
        return list(self.session.execute(stmt).scalars())

    def mark_action(self, action_id: UUID, status: str, error: str = "") -> None:
        self.session.execute(
            update(SagaAction).where(SagaAction.id == action_id).values(status=status, error=error[:2000])
        )

    def set_status(self, saga_id: UUID, status: str) -> None:
        self.session.execute(update(SagaRun).where(SagaRun.id == saga_id).values(status=status))


# ========================================
# Activities
# ========================================


class ActivityRepository:
    """Insert-or-keep writes for realized activities; re-runs never duplicate joins."""

    def __init__(self, session: Session):
        self.session = session

    def create_activity(self, row: dict[str, Any]) -> Activity:
        activity = Activity(**row)
        self.session.add(activity)
        self.session.flush()
        return activity

    def upsert_variant(self, activity_id: UUID, variant: str, content_json: dict[str, Any]) -> UUID:
        stmt = insert(ActivityVariant).values(activity_id=activity_id, variant=variant, content_json=content_json)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_activity_variants",
            set_={"content_json": stmt.excluded.content_json, "updated_at": text("now()")},
        ).returning(ActivityVariant.id)
        return self.session.execute(stmt).scalar_one()

    def link_concept(self, activity_id: UUID, concept_id: UUID, role: str = "primary", weight: float = 1.0) -> None:
        stmt = insert(ActivityConcept).values(activity_id=activity_id, concept_id=concept_id, role=role, weight=weight)
        self.session.execute(stmt.on_conflict_do_nothing(constraint="uq_activity_concepts"))

    def add_citation(self, variant_id: UUID, chunk_id: UUID, kind: str = "grounding") -> None:
        stmt = insert(ActivityCitation).values(activity_variant_id=variant_id, material_chunk_id=chunk_id, kind=kind)
        self.session.execute(stmt.on_conflict_do_nothing(constraint="uq_activity_citations"))

    def link_node(self, node_id: UUID, activity_id: UUID, rank: int, is_primary: bool) -> None:
        stmt = insert(PathNodeActivity).values(
            path_node_id=node_id, activity_id=activity_id, rank=rank, is_primary=is_primary
        )
        self.session.execute(stmt.on_conflict_do_nothing(constraint="uq_path_node_activities"))

    def for_path(self, path_id: UUID) -> list[Activity]:
        stmt = (
            select(Activity)
            .where(Activity.owner_type == "path", Activity.owner_id == path_id)
            .order_by(Activity.created_at, Activity.id)
        )
        return list(self.session.execute(stmt).scalars())


# ========================================
# Learner state
# ========================================


class LearnerRepository:
    def __init__(self, session: Session):
        self.session = session

    def profile_doc(self, user_id: UUID) -> str:
        profile = self.session.get(UserProfile, user_id)
        return (profile.profile_doc or "").strip() if profile is not None else ""

    def concept_states(self, user_id: UUID, concept_ids: Iterable[UUID]) -> dict[UUID, UserConceptState]:
        ids = list(concept_ids)
        if not ids:
            return {}
        stmt = select(UserConceptState).where(
            UserConceptState.user_id == user_id, UserConceptState.concept_id.in_(ids)
        )
        return {s.concept_id: s for s in self.session.execute(stmt).scalars()}

    def upsert_concept_state(
        self, user_id: UUID, concept_id: UUID, mastery: float, confidence: float, last_seen_at: datetime | None
    ) -> None:
        stmt = insert(UserConceptState).values(
            user_id=user_id,
            concept_id=concept_id,
            mastery=mastery,
            confidence=confidence,
            last_seen_at=last_seen_at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_user_concept_states",
            set_={
                "mastery": stmt.excluded.mastery,
                "confidence": stmt.excluded.confidence,
                "last_seen_at": stmt.excluded.last_seen_at,
                "updated_at": text("now()"),
            },
        )
        self.session.execute(stmt)

    def active_misconceptions(
        self, user_id: UUID, canonical_ids: Iterable[UUID]
    ) -> list[UserMisconceptionInstance]:
        ids = list(canonical_ids)
        if not ids:
            return []
        stmt = select(UserMisconceptionInstance).where(
            UserMisconceptionInstance.user_id == user_id,
            UserMisconceptionInstance.canonical_concept_id.in_(ids),
            UserMisconceptionInstance.status == "active",
        )
        return list(self.session.execute(stmt).scalars())

    def structural_units(self, path_ids: Iterable[UUID], since: datetime) -> list[PathStructuralUnit]:
        ids = list(path_ids)
        if not ids:
            return []
        stmt = (
            select(PathStructuralUnit)
            .where(PathStructuralUnit.path_id.in_(ids), PathStructuralUnit.updated_at >= since)
            .order_by(PathStructuralUnit.path_id, PathStructuralUnit.id)
        )
        return list(self.session.execute(stmt).scalars())
