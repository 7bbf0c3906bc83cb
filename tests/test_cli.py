"""Tests for Optimist CLI

Uses Click's test runner for command testing.
"""

import json

import pytest
from click.testing import CliRunner

from optimist.cli import cli
from optimist.journal import SQLiteJournal
from optimist.models import ConfirmedState, Operation, OperationKind
from optimist.patches import Increment


PASSING_SCENARIO = """
config:
  base_delay_ms: 0
entities:
  counter: {state: {count: 0}, version: 0}
steps:
  - submit: {as: op1, entity: counter, patch: {count: {$inc: 1}}}
  - respond: {op: op1, outcome: confirmed}
  - expect: {entity: counter, state: {count: 1}, version: 1}
"""

FAILING_SCENARIO = """
entities:
  counter: {state: {count: 0}, version: 0}
steps:
  - submit: {as: op1, entity: counter, patch: {count: {$inc: 1}}}
  - respond: {op: op1, outcome: failed, kind: terminal}
  - expect: {entity: counter, state: {count: 1}}
"""


@pytest.fixture
def runner():
    return CliRunner()


class TestCLIGroup:
    """Tests for top-level options."""

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("config", "simulate", "journal"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_verbose_and_quiet_exclusive(self, runner):
        result = runner.invoke(cli, ["--verbose", "--quiet", "config", "show"])
        assert result.exit_code != 0
        assert "mutually exclusive" in result.output


class TestCLIConfig:
    """Tests for 'optimist config' commands."""

    def test_show_defaults(self, runner):
        result = runner.invoke(cli, ["config", "show"], env={"OPTIMIST_CONFIG": None})
        assert result.exit_code == 0
        assert "max_attempts: 5" in result.output
        assert "defaults" in result.output

    def test_show_with_config_file(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("engine:\n  max_attempts: 8\n")

        result = runner.invoke(cli, ["--config", str(path), "config", "show"])

        assert result.exit_code == 0
        assert "max_attempts: 8" in result.output

    def test_show_reads_env_var(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("conflict_visibility: frozen\n")

        result = runner.invoke(cli, ["config", "show"], env={"OPTIMIST_CONFIG": str(path)})

        assert result.exit_code == 0
        assert "conflict_visibility: frozen" in result.output

    def test_quiet_show_prints_only_yaml(self, runner):
        result = runner.invoke(cli, ["-q", "config", "show"], env={"OPTIMIST_CONFIG": None})
        assert result.exit_code == 0
        assert "Effective configuration" not in result.output
        assert result.output.startswith("engine:")

    def test_validate_ok(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("maxAttempts: 3\nbaseDelayMs: 50\n")

        result = runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 0
        assert "is valid" in result.output

    def test_validate_reports_bad_key(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("max_attempts: 0\n")

        result = runner.invoke(cli, ["config", "validate", str(path)])

        assert result.exit_code == 1
        assert "[max_attempts]" in result.output

    def test_validate_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["config", "validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestCLISimulate:
    """Tests for 'optimist simulate'."""

    def test_passing_scenario(self, runner, tmp_path):
        path = tmp_path / "ok.yaml"
        path.write_text(PASSING_SCENARIO)

        result = runner.invoke(cli, ["simulate", str(path)], env={"OPTIMIST_CONFIG": None})

        assert result.exit_code == 0, result.output
        assert "All expectations held" in result.output
        assert "{'count': 1}" in result.output

    def test_failing_scenario_exits_1(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(FAILING_SCENARIO)

        result = runner.invoke(cli, ["simulate", str(path)], env={"OPTIMIST_CONFIG": None})

        assert result.exit_code == 1
        assert "FAIL expect counter" in result.output
        assert "1 expectation(s) failed" in result.output

    def test_verbose_lists_operations(self, runner, tmp_path):
        path = tmp_path / "ok.yaml"
        path.write_text(PASSING_SCENARIO)

        result = runner.invoke(cli, ["-v", "simulate", str(path)], env={"OPTIMIST_CONFIG": None})

        assert result.exit_code == 0
        assert "op1:" in result.output

    def test_invalid_scenario(self, runner, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("steps:\n  - teleport: {}\n")

        result = runner.invoke(cli, ["simulate", str(path)], env={"OPTIMIST_CONFIG": None})

        assert result.exit_code == 1
        assert "Scenario aborted" in result.output


class TestCLIJournal:
    """Tests for 'optimist journal inspect'."""

    @pytest.fixture
    def journal_file(self, tmp_path):
        path = tmp_path / "journal.db"
        with SQLiteJournal(path) as journal:
            journal.save_entity("counter", ConfirmedState({"count": 1}, 1))
            journal.save_operation(Operation(
                op_id="abc123",
                entity_id="counter",
                kind=OperationKind.UPDATE,
                forward_patch={"count": Increment(1)},
                previous_snapshot={"count": 1},
                base_version=1,
            ))
        return path

    def test_inspect_text(self, runner, journal_file):
        result = runner.invoke(cli, ["journal", "inspect", str(journal_file)])

        assert result.exit_code == 0
        assert "counter v1" in result.output
        assert "abc123" in result.output
        assert '"$inc": 1' in result.output

    def test_inspect_json(self, runner, journal_file):
        result = runner.invoke(cli, ["journal", "inspect", str(journal_file), "--json-output"])

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["entities"]["counter"] == {"fields": {"count": 1}, "version": 1}
        assert payload["operations"][0]["op_id"] == "abc123"
        assert payload["operations"][0]["forward_patch"] == {"count": {"$inc": 1}}
        assert payload["operations"][0]["conflict"] is None
