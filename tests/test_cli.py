"""
命令行测试
"""
import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from automation_engine.cli import cli


AGE_GATE = str(Path(__file__).resolve().parent.parent / "examples" / "age_gate.yaml")


@pytest.fixture
def runner():
    return CliRunner()


def write_workflow(path: Path, **overrides) -> str:
    definition = {
        "id": "cli-test",
        "name": "CLI test",
        "status": "draft",
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "end", "type": "end", "config": {"output": {"total": "{{total}}"}}},
        ],
        "connections": [{"source": "start", "target": "end"}],
    }
    definition.update(overrides)
    path.write_text(yaml.safe_dump(definition), encoding="utf-8")
    return str(path)


class TestValidate:

    def test_valid_file(self, runner):
        result = runner.invoke(cli, ["validate", AGE_GATE])

        assert result.exit_code == 0
        assert "Workflow 'Age gate' is valid (6 nodes, 4 connections)" in result.stdout

    def test_invalid_file(self, runner, tmp_path):
        path = write_workflow(tmp_path / "broken.yaml", connections=[{"source": "start", "target": "ghost"}])

        result = runner.invoke(cli, ["validate", path])

        assert result.exit_code == 1
        assert "Connection target 'ghost' not found in nodes" in result.output


class TestRun:

    def test_run_example(self, runner):
        result = runner.invoke(cli, [
            "--log-level", "error", "run", AGE_GATE, "--trigger", '{"age": 21, "name": "Bo"}'
        ])

        assert result.exit_code == 0
        execution = json.loads(result.stdout)
        assert execution["status"] == "completed"
        assert execution["node_states"]["end"]["output"] == {"message": "Hello, Bo. Access granted."}

    def test_inactive_workflow_requires_activate(self, runner, tmp_path):
        path = write_workflow(tmp_path / "draft.yaml")

        rejected = runner.invoke(cli, ["--log-level", "error", "run", path])
        assert rejected.exit_code == 1
        assert "Workflow is not active: cli-test (status: draft)" in rejected.output

        accepted = runner.invoke(cli, ["--log-level", "error", "run", path, "--activate", "--trigger", '{"total": 5}'])
        assert accepted.exit_code == 0
        assert json.loads(accepted.stdout)["node_states"]["end"]["output"] == {"total": 5}

    def test_failed_execution_exits_non_zero(self, runner, tmp_path):
        path = write_workflow(
            tmp_path / "failing.yaml",
            status="active",
            nodes=[{"id": "start", "type": "start"}, {"id": "act", "type": "action", "action_type": "missing"}],
            connections=[{"source": "start", "target": "act"}],
        )

        result = runner.invoke(cli, ["--log-level", "error", "run", path])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_message"] == (
            "Node 'act' execution failed: Unknown action type: missing"
        )

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
    def test_bad_trigger_payload(self, runner, payload):
        result = runner.invoke(cli, ["run", AGE_GATE, "--trigger", payload])

        assert result.exit_code == 2
        assert "--trigger" in result.output


class TestOperators:

    def test_lists_operators_by_category(self, runner):
        result = runner.invoke(cli, ["operators"])

        assert result.exit_code == 0
        assert "equality:" in result.stdout
        assert "greater_than" in result.stdout
