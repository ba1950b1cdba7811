"""
Unit tests for the stage schema validator.
"""
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from src.db.schema_validator import (
    CORE_REQUIREMENTS,
    STAGE_REQUIREMENTS,
    SchemaRequirement,
    SchemaValidationError,
    SchemaValidator,
)


class FakeEngine:
    """Answers information_schema lookups from a fixed table set."""

    def __init__(self, tables, fail=False):
        self.tables = set(tables)
        self.fail = fail
        self.lookups = 0

    @contextmanager
    def connect(self):
        if self.fail:
            raise OperationalError("connect", {}, Exception("refused"))
        yield self

    def execute(self, clause, params):
        self.lookups += 1
        return SimpleNamespace(scalar=lambda: params["name"] in self.tables)


def all_tables():
    groups = [CORE_REQUIREMENTS, *STAGE_REQUIREMENTS.values()]
    return {r.name for reqs in groups for r in reqs}


class TestSchemaValidator:
    """Required and optional table checks."""

    def test_lookups_are_cached(self):
        engine = FakeEngine({"paths"})
        validator = SchemaValidator(engine)

        assert validator.table_exists("paths")
        assert validator.table_exists("paths")
        assert engine.lookups == 1

    def test_optional_missing_only_warns(self):
        reqs = [SchemaRequirement("paths", "core"), SchemaRequirement("traces", "build", required=False)]

        satisfied, missing = SchemaValidator(FakeEngine({"paths"})).validate_requirements(reqs)

        assert [r.name for r in satisfied] == ["paths"]
        assert [r.name for r in missing] == ["traces"]

    def test_required_missing_raises(self):
        with pytest.raises(SchemaValidationError, match="concepts"):
            SchemaValidator(FakeEngine(all_tables() - {"concepts"})).validate_stage("concept_graph_build")

    def test_required_missing_reported_without_raising(self):
        reqs = [SchemaRequirement("paths", "core")]

        _, missing = SchemaValidator(FakeEngine(set())).validate_requirements(reqs, fail_on_missing=False)

        assert [r.name for r in missing] == ["paths"]

    def test_full_schema_passes_every_stage(self):
        validator = SchemaValidator(FakeEngine(all_tables()))

        for stage in STAGE_REQUIREMENTS:
            validator.validate_stage(stage)

    def test_connection_failure_counts_as_missing(self):
        assert SchemaValidator(FakeEngine(all_tables(), fail=True)).table_exists("paths") is False

    def test_status_groups(self):
        status = SchemaValidator(FakeEngine({"paths"})).status()

        assert status["core"]["paths"] is True
        assert status["psu_promotion"]["path_structural_units"] is False
