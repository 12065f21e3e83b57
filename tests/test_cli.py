import json
import textwrap

import pytest
from click.testing import CliRunner

from sandci.cli import cli


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def write(text, name="pipeline.yml"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return write


HOST_PIPELINE = """
agents: {sandbox: none}
steps:
  - key: build
    label: ":hammer: Build"
    command: echo building > built.txt
  - wait
  - key: check
    command: test -f built.txt
"""


def test_validate(project):
    project(HOST_PIPELINE)
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 0, result.output
    assert "pipeline.yml: valid" in result.output
    assert "steps: 3 (command=2, wait=1)" in result.output
    assert "levels: 3" in result.output


def test_validate_reports_every_violation(project):
    project(
        """
        steps:
          - command: x
            bogus: 1
          - block: ok
            key: "bad key"
        """
    )
    result = CliRunner().invoke(cli, ["validate"])
    assert result.exit_code == 1
    assert "SchemaError" in result.output
    assert "bogus" in result.output
    assert "steps[1]" in result.output


def test_dump_json(project):
    project(HOST_PIPELINE)
    result = CliRunner().invoke(cli, ["dump", "--format", "json"])
    assert result.exit_code == 0, result.output
    doc = json.loads(result.output)
    assert doc["steps"][0]["label"] == "\U0001F528 Build"
    assert doc["steps"][1] == {"wait": None}


def test_plan_shows_levels_and_targets(project):
    project(
        """
        steps:
          - key: lint
            command: make lint
            agents: {platform: linux}
          - key: app
            command: xcodebuild
            agents: {platform: macos}
            depends_on: lint
        """
    )
    result = CliRunner().invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "Level 1:" in result.output
    assert "lint [command] -> linux/container@local" in result.output
    assert "app [command] -> macos/vm@local" in result.output


def test_run_on_host(project, tmp_path):
    project(HOST_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--branch", "main"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "built.txt").read_text().strip() == "building"
    assert "RESULTS" in result.output


def test_run_exit_code_reflects_failures(project):
    project("agents: {sandbox: none}\nsteps: [{key: bad, command: exit 5}]\n", name="ci.yml")
    result = CliRunner().invoke(cli, ["run", "ci.yml"])
    assert result.exit_code == 1
    assert "Exit code: 5" in result.output


def test_run_redacts_secrets(project, monkeypatch):
    monkeypatch.setenv("SANDCI_SECRET_TOKEN", "hunter2")
    project(
        """
        agents: {sandbox: none}
        steps:
          - key: leak
            command: echo "token=$SANDCI_SECRET_TOKEN"
        """
    )
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 0, result.output
    assert "hunter2" not in result.output
    assert "token=[REDACTED]" in result.output


def test_blocked_without_terminal(project):
    project(
        """
        agents: {sandbox: none}
        steps:
          - block: Ship it?
            key: gate
          - key: ship
            command: "true"
            depends_on: gate
        """
    )
    assert CliRunner().invoke(cli, ["run"]).exit_code == 1
    assert CliRunner().invoke(cli, ["run", "--auto-unblock"]).exit_code == 0


def test_missing_pipeline(project):
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "No pipeline file found" in result.output


def test_unknown_step_selection(project):
    project(HOST_PIPELINE)
    result = CliRunner().invoke(cli, ["run", "--step", "nope"])
    assert result.exit_code == 1
    assert "DependencyError" in result.output


def test_missing_config_file(project):
    project(HOST_PIPELINE)
    result = CliRunner().invoke(cli, ["--config", "nope.toml", "validate"])
    assert result.exit_code == 1
    assert "config file not found" in result.output
