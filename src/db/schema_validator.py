"""
Schema validator - fail fast if the tables a stage writes don't exist.

Each stage declares the tables it reads and writes; ``db check`` and the
stage runner validate them before any LLM work starts.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass
class SchemaRequirement:
    """A single table requirement."""

    name: str
    stage: str  # Which stage needs it
    required: bool = True  # If False, just warn instead of fail


# ============================================================================
# SCHEMA REQUIREMENTS BY STAGE
# ============================================================================

CORE_REQUIREMENTS = [
    SchemaRequirement("paths", "core"),
    SchemaRequirement("material_sets", "core"),
    SchemaRequirement("material_files", "core"),
    SchemaRequirement("material_chunks", "core"),
    SchemaRequirement("saga_runs", "core"),
    SchemaRequirement("saga_actions", "core"),
    SchemaRequirement("learning_artifacts", "core"),
]

CONCEPT_GRAPH_REQUIREMENTS = [
    SchemaRequirement("concepts", "concept_graph_build"),
    SchemaRequirement("concept_evidences", "concept_graph_build"),
    SchemaRequirement("concept_edges", "concept_graph_build"),
    SchemaRequirement("material_file_signatures", "concept_graph_build", required=False),
    SchemaRequirement("structural_decision_traces", "concept_graph_build", required=False),
]

REALIZE_ACTIVITIES_REQUIREMENTS = [
    SchemaRequirement("path_nodes", "realize_activities"),
    SchemaRequirement("activities", "realize_activities"),
    SchemaRequirement("activity_variants", "realize_activities"),
    SchemaRequirement("activity_concepts", "realize_activities"),
    SchemaRequirement("activity_citations", "realize_activities"),
    SchemaRequirement("path_node_activities", "realize_activities"),
    SchemaRequirement("user_profiles", "realize_activities"),
    SchemaRequirement("user_concept_states", "realize_activities", required=False),
]

PSU_PROMOTION_REQUIREMENTS = [
    SchemaRequirement("path_structural_units", "psu_promotion"),
    SchemaRequirement("user_concept_states", "psu_promotion"),
    SchemaRequirement("user_misconception_instances", "psu_promotion"),
]

STAGE_REQUIREMENTS: dict[str, list[SchemaRequirement]] = {
    "concept_graph_build": CONCEPT_GRAPH_REQUIREMENTS,
    "concept_graph_patch_build": CONCEPT_GRAPH_REQUIREMENTS,
    "realize_activities": REALIZE_ACTIVITIES_REQUIREMENTS,
    "psu_promotion": PSU_PROMOTION_REQUIREMENTS,
}


class SchemaValidationError(Exception):
    """Raised when required tables are missing."""


class SchemaValidator:
    """Validates the database schema against stage requirements."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._cache: dict[str, bool] = {}

    def table_exists(self, table_name: str) -> bool:
        if table_name in self._cache:
            return self._cache[table_name]
        try:
            with self.engine.connect() as conn:
                exists = bool(
                    conn.execute(
                        text("""
                            SELECT EXISTS (
                                SELECT FROM information_schema.tables
                                WHERE table_schema = 'public'
                                AND table_name = :name
                            )
                        """),
                        {"name": table_name},
                    ).scalar()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to check table {table_name}: {e}")
            return False
        self._cache[table_name] = exists
        return exists

    def validate_requirements(
        self, requirements: list[SchemaRequirement], fail_on_missing: bool = True
    ) -> tuple[list[SchemaRequirement], list[SchemaRequirement]]:
        """
        Validate a list of requirements.

        Returns: (satisfied, missing)
        """
        satisfied: list[SchemaRequirement] = []
        missing: list[SchemaRequirement] = []
        for req in requirements:
            if self.table_exists(req.name):
                satisfied.append(req)
                continue
            missing.append(req)
            if req.required:
                logger.error(f"SCHEMA MISSING: table '{req.name}' required by {req.stage}")
            else:
                logger.warning(f"SCHEMA MISSING: table '{req.name}' (optional for {req.stage})")

        required_missing = [r.name for r in missing if r.required]
        if fail_on_missing and required_missing:
            raise SchemaValidationError(f"Missing required tables: {required_missing}. Run `learnpath db init`.")
        return satisfied, missing

    def validate_stage(self, stage: str) -> None:
        self.validate_requirements(CORE_REQUIREMENTS + STAGE_REQUIREMENTS.get(stage, []))

    def status(self) -> dict[str, dict[str, bool]]:
        """Table presence grouped by stage, for display."""
        groups = {"core": CORE_REQUIREMENTS, **STAGE_REQUIREMENTS}
        return {stage: {r.name: self.table_exists(r.name) for r in reqs} for stage, reqs in groups.items()}
