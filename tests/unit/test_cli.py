"""
Smoke tests for the Typer CLI (no database access).
"""
from typer.testing import CliRunner

from src.cli.main import STAGES, app

runner = CliRunner()


class TestStageCommands:
    def test_list(self):
        result = runner.invoke(app, ["stage", "list"])

        assert result.exit_code == 0
        for name in STAGES:
            assert name in result.output

    def test_unknown_stage(self):
        result = runner.invoke(app, ["stage", "run", "poem", "--owner", "x"])

        assert result.exit_code == 2
        assert "Unknown stage" in result.output

    def test_invalid_owner(self):
        result = runner.invoke(
            app, ["stage", "run", "psu_promotion", "--owner", "not-a-uuid", "--skip-schema-check"]
        )

        assert result.exit_code == 2
        assert "Invalid owner" in result.output


def test_registered_stages():
    assert set(STAGES) == {"concept_graph_build", "concept_graph_patch_build", "realize_activities", "psu_promotion"}
