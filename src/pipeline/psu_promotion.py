"""
PSU promotion stage.

Path structural units (PSUs) that recur across a learner's paths with the
same member concepts are promoted into a global ``compound_<signature>``
concept. The learner's state on the members decides whether the compound is
promoted, demoted or kept, and ``composes`` edges link it to its members.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.orm import Session

from src.db.models import Concept, PathStructuralUnit
from src.db.repositories import ConceptRepository, LearnerRepository, PathRepository
from src.pipeline.concept_graph import edge_row_id
from src.pipeline.errors import MissingInputError
from src.pipeline.primitives import (
    clamp01,
    dedupe_strings,
    dedupe_uuids,
    hash_string,
    string_from_any,
    uuids_from_strings,
)
from src.pipeline.progress import llm_timer
from src.pipeline.prompts import COMPOUND_CONCEPT_LABEL, build_prompt
from src.pipeline.stage import StageDeps, StageInput, require_deps, stage_reporter

STAGE = "psu_promotion"
COMPOUND_KEY_PREFIX = "compound_"
COMPOSES_EDGE = "composes"

PROMOTE = "promote"
DEMOTE = "demote"
KEEP = "keep"
SKIP = "skip"
NEEDS_LABEL = "needs_label"


@dataclass
class PromotionThresholds:
    promote_mastery: float = 0.80
    promote_confidence: float = 0.60
    demote_mastery: float = 0.65
    demote_confidence: float = 0.50


@dataclass
class PSUPromotionOutput:
    user_id: UUID | None = None
    candidates: int = 0
    considered: int = 0
    promoted: int = 0
    demoted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": str(self.user_id) if self.user_id else "",
            "candidates": self.candidates,
            "considered": self.considered,
            "promoted": self.promoted,
            "demoted": self.demoted,
        }


@dataclass
class SignatureGroup:
    """PSUs sharing the same member concept set."""

    signature: str
    concept_ids: list[UUID]
    psu_ids: list[UUID] = field(default_factory=list)
    path_ids: set[UUID] = field(default_factory=set)


# ========================================
# Pure helpers
# ========================================


def signature_for_concept_ids(ids: list[UUID | None]) -> str:
    """Order-independent signature of a concept set; empty for an empty set."""
    clean = sorted(str(i) for i in ids or [] if i is not None and i.int != 0)
    if not clean:
        return ""
    return hash_string("|".join(clean))


def concept_ids_from_psu(psu: PathStructuralUnit) -> list[UUID]:
    raw = psu.derived_canonical_concept_ids
    if not isinstance(raw, list):
        return []
    return dedupe_uuids(uuids_from_strings(raw))


def promotion_decision(
    active: bool,
    min_mastery: float,
    min_confidence: float,
    has_misconception: bool,
    thresholds: PromotionThresholds | None = None,
) -> str:
    """
    Decide what to do with a compound concept.

    An inactive compound is promoted only when every member clears the
    promote thresholds and no member carries an active misconception. An
    active compound is demoted on a misconception or when any member falls
    below the demote thresholds.
    """
    t = thresholds or PromotionThresholds()
    if not active:
        if has_misconception:
            return SKIP
        if min_mastery >= t.promote_mastery and min_confidence >= t.promote_confidence:
            return PROMOTE
        return SKIP
    if has_misconception:
        return DEMOTE
    if min_mastery < t.demote_mastery or min_confidence < t.demote_confidence:
        return DEMOTE
    return KEEP


def infer_misconception_signature(polarity: str, scope: str) -> str:
    """Map a structural misconception's (polarity, scope) to a signature."""
    pol = (polarity or "").strip().lower()
    sc = (scope or "").strip().lower()
    if pol == "confusion":
        return "frame_error"
    if pol == "confident_wrong":
        if sc in ("question", "attempt"):
            return "procedural_gap"
        return "frame_error"
    return "unknown"


def misconception_signature(m: Any) -> str:
    """Stored signature, or one inferred from polarity/scope when it is unset."""
    sig = string_from_any(getattr(m, "signature", "")).strip().lower()
    if sig and sig != "unknown":
        return sig
    return infer_misconception_signature(getattr(m, "polarity", ""), getattr(m, "scope", ""))


def group_structural_units(psus: list[PathStructuralUnit], min_concepts: int) -> dict[str, SignatureGroup]:
    groups: dict[str, SignatureGroup] = {}
    for psu in psus:
        if psu is None or psu.path_id is None:
            continue
        ids = concept_ids_from_psu(psu)
        if len(ids) < min_concepts:
            continue
        sig = signature_for_concept_ids(ids)
        if not sig:
            continue
        group = groups.get(sig)
        if group is None:
            group = groups[sig] = SignatureGroup(signature=sig, concept_ids=ids)
        group.psu_ids.append(psu.id)
        group.path_ids.add(psu.path_id)
    return groups


def rank_candidates(groups: dict[str, SignatureGroup], max_candidates: int) -> list[SignatureGroup]:
    """Groups seen on the most paths first; ties by signature."""
    ranked = sorted(groups.values(), key=lambda g: (-len(g.path_ids), g.signature))
    return ranked[:max_candidates] if max_candidates > 0 else ranked


def compound_label(member_names: list[str], max_members: int) -> tuple[str, str]:
    names = sorted(dedupe_strings(member_names))
    if max_members > 0:
        names = names[:max_members]
    name = " + ".join(names) if names else "Compound concept"
    return name, "Compound concept derived from: " + ", ".join(names)


def compound_metadata(group: SignatureGroup, label: str) -> dict[str, Any]:
    return {
        "kind": "compound",
        "signature": group.signature,
        "source": STAGE,
        "member_concepts": sorted(str(i) for i in group.concept_ids),
        "supporting_paths": sorted(str(p) for p in group.path_ids),
        "label": label,
    }


# ========================================
# Stage
# ========================================


class PSUPromoter:
    """Evaluate one learner's recurring structural units."""

    def __init__(self, deps: StageDeps, inp: StageInput):
        self.deps = deps
        self.inp = inp
        self.user_id = inp.owner_user_id
        self.cfg = deps.get_settings().get_psu_promotion_config()
        self.thresholds = PromotionThresholds(
            promote_mastery=self.cfg["promote_mastery"],
            promote_confidence=self.cfg["promote_confidence"],
            demote_mastery=self.cfg["demote_mastery"],
            demote_confidence=self.cfg["demote_confidence"],
        )
        self.reporter = stage_reporter(inp, STAGE)

    def _candidates(self) -> list[SignatureGroup]:
        since = datetime.now(timezone.utc) - timedelta(days=self.cfg["recency_days"])
        with self.deps.session_factory() as session:
            path_ids = PathRepository(session).ids_for_owner(self.user_id)
            psus = LearnerRepository(session).structural_units(path_ids, since)
        groups = group_structural_units(psus, self.cfg["min_concepts"])
        return rank_candidates(groups, self.cfg["max_candidates"])

    def _member_stats(self, session: Session, group: SignatureGroup) -> tuple[float, float, dict[UUID, str]]:
        """
        Aggregate the learner's state over the group's members.

        Returns:
            (min mastery, min confidence, misconception signature by member).
            A member without state counts as mastery/confidence 0.
        """
        learner = LearnerRepository(session)
        states = learner.concept_states(self.user_id, group.concept_ids)
        miscon: dict[UUID, str] = {}
        for m in learner.active_misconceptions(self.user_id, group.concept_ids):
            miscon.setdefault(m.canonical_concept_id, misconception_signature(m))
        min_mastery = min_conf = 1.0
        for cid in group.concept_ids:
            st = states.get(cid)
            if st is None:
                min_mastery = min_conf = 0.0
                continue
            min_mastery = min(min_mastery, st.mastery or 0.0)
            min_conf = min(min_conf, st.confidence or 0.0)
        return min_mastery, min_conf, miscon

    async def _label(self, group: SignatureGroup) -> tuple[str, str]:
        def names() -> list[str]:
            with self.deps.session_factory() as session:
                rows = ConceptRepository(session).get_by_ids(group.concept_ids)
            return [(c.name or "").strip() or (c.key or "").strip() for c in rows]

        member_names = await asyncio.to_thread(names)
        name, summary = compound_label(member_names, self.cfg["max_members"])
        if not self.cfg["use_llm"] or self.deps.llm is None or not member_names:
            return name, summary

        members = [n for n in name.split(" + ") if n]
        prompt = build_prompt(COMPOUND_CONCEPT_LABEL, member_concepts_csv=", ".join(members))
        try:
            with llm_timer("compound_concept_label", {"stage": STAGE, "signature": group.signature[:12]}):
                obj = await self.deps.llm.generate_json(prompt.system, prompt.user, prompt.schema_name, prompt.schema)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # Deterministic label is the fallback
            logger.warning(f"{STAGE}: compound label generation failed: {e}")
            return name, summary
        llm_name = string_from_any(obj.get("name")).strip()
        if not llm_name:
            return name, summary
        return llm_name, string_from_any(obj.get("summary")).strip()

    def _upsert_edges(
        self,
        repo: ConceptRepository,
        compound_id: UUID,
        group: SignatureGroup,
        strength: float,
        miscon: dict[UUID, str],
    ) -> None:
        paths = sorted(str(p) for p in group.path_ids)
        psu_ids = sorted(str(p) for p in group.psu_ids)
        for member in group.concept_ids:
            if member == compound_id:
                continue
            evidence = {
                "source": STAGE,
                "signature": group.signature,
                "member_id": str(member),
                "supporting_paths": paths,
                "psu_ids": psu_ids,
            }
            if member in miscon:
                evidence["misconception_signature"] = miscon[member]
            repo.upsert_edge(
                {
                    "id": edge_row_id(compound_id, member, COMPOSES_EDGE),
                    "from_id": compound_id,
                    "to_id": member,
                    "edge_type": COMPOSES_EDGE,
                    "strength": clamp01(strength),
                    "evidence": json.dumps(evidence),
                }
            )

    def _evaluate(self, group: SignatureGroup, label: tuple[str, str] | None) -> str:
        """
        Apply the promotion decision for one group in a single transaction.

        Returns the action taken, or ``NEEDS_LABEL`` when a promotion needs a
        new compound row and no ``label`` was given; nothing is written then.
        """
        key = COMPOUND_KEY_PREFIX + group.signature
        now = datetime.now(timezone.utc)
        with self.deps.session_factory() as session:
            repo = ConceptRepository(session)
            learner = LearnerRepository(session)
            min_mastery, min_conf, miscon = self._member_stats(session, group)

            existing = repo.global_by_keys([key])
            compound: Concept | None = existing[0] if existing else None
            state = None
            active = compound is not None
            if compound is not None:
                state = learner.concept_states(self.user_id, [compound.id]).get(compound.id)
                if state is not None:
                    active = (state.mastery or 0) > 0 or (state.confidence or 0) > 0

            action = promotion_decision(active, min_mastery, min_conf, bool(miscon), self.thresholds)
            if action == SKIP:
                return SKIP

            if action == PROMOTE and compound is None:
                if label is None:
                    return NEEDS_LABEL
                cid = uuid4()
                repo.insert_global_ignore(
                    {
                        "id": cid,
                        "key": key,
                        "name": label[0],
                        "summary": label[1],
                        "key_points": "[]",
                        "vector_id": f"concept:{cid}",
                        "metadata": json.dumps(compound_metadata(group, label[0])),
                        "canonical_id": None,
                    }
                )
                session.flush()
                existing = repo.global_by_keys([key])
                compound = existing[0] if existing else None
            if compound is None:
                return SKIP

            if action == PROMOTE:
                mastery = max(clamp01(min_mastery), state.mastery if state else 0.0)
                confidence = max(clamp01(min_conf), state.confidence if state else 0.0)
                learner.upsert_concept_state(self.user_id, compound.id, mastery, confidence, now)
            elif action == DEMOTE and state is not None:
                mastery = min(state.mastery or 0.0, self.thresholds.demote_mastery)
                confidence = min(state.confidence or 0.0, self.thresholds.demote_confidence)
                learner.upsert_concept_state(self.user_id, compound.id, mastery, confidence, now)

            self._upsert_edges(repo, compound.id, group, min_conf, miscon)
        return action

    async def run(self) -> PSUPromotionOutput:
        require_deps(STAGE, self.deps.session_factory)
        if self.user_id is None:
            raise MissingInputError(STAGE, "owner_user_id")

        out = PSUPromotionOutput(user_id=self.user_id)
        if not self.deps.get_settings().psu_promotion_enabled:
            return out

        candidates = await asyncio.to_thread(self._candidates)
        out.candidates = len(candidates)
        templates = self.cfg["template_signatures"]
        total = len(candidates)
        for i, group in enumerate(candidates):
            self.reporter.update_range(i, total, 5, 95, f"Evaluating structural unit {i + 1}/{total}")
            if len(group.path_ids) < self.cfg["min_paths"] and group.signature not in templates:
                continue
            out.considered += 1

            action = await asyncio.to_thread(self._evaluate, group, None)
            if action == NEEDS_LABEL:
                label = await self._label(group)
                action = await asyncio.to_thread(self._evaluate, group, label)
            if action == PROMOTE:
                out.promoted += 1
            elif action == DEMOTE:
                out.demoted += 1

        self.reporter.update(100, "Structural units evaluated")
        logger.info(
            f"{STAGE}: user {self.user_id} candidates={out.candidates} considered={out.considered} "
            f"promoted={out.promoted} demoted={out.demoted}"
        )
        return out


async def run(deps: StageDeps, inp: StageInput) -> PSUPromotionOutput:
    """Promote or demote compound concepts for ``inp.owner_user_id``."""
    return await PSUPromoter(deps, inp).run()
