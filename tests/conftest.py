"""Shared fixtures: sample pipelines, a recording command runner, a quiet console."""

from __future__ import annotations

import json
import shlex
import textwrap
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from sandci.builder.local import LocalBuilder
from sandci.conditions import BuildContext
from sandci.config import SandciConfig
from sandci.errors import ProcessError
from sandci.process import CommandOutput, ExecOptions
from sandci.sandbox.lifecycle import Commands
from sandci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    """A fresh console per test so redaction filters never leak between tests."""
    c = Console(level="info")
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("SANDCI_STEP", "SANDCI_ENV", "BUILDKITE"):
        monkeypatch.delenv(name, raising=False)


SAMPLE_PIPELINE = textwrap.dedent(
    """
    env:
      LANG: C.UTF-8
    agents:
      - "queue=default"
    notify:
      - github_check
      - slack: "#builds"
        if: build.branch == "main"
    steps:
      - label: ":rocket: Build"
        key: build
        command:
          - make build
        env:
          RETRIES: 2
        retry:
          automatic:
            exit_status: 2
            limit: 3
      - wait
      - key: tests
        label: "Test {{matrix.os}}/{{matrix.arch}}"
        command: "make test OS={{matrix.os}}"
        depends_on: build
        agents:
          platform: linux
        matrix:
          setup:
            os: [debian, alpine]
            arch: [amd64, arm64]
          adjustments:
            - with: {os: alpine, arch: arm64}
              skip: true
        soft_fail:
          - exit_status: 1
      - block: Release?
        key: gate
        fields:
          - text: Version
            key: RELEASE_VERSION
            default: "1.0"
          - select: Channel
            key: CHANNEL
            options:
              - label: Stable
                value: stable
              - label: Beta
                value: beta
      - group: Deploy
        key: deploy
        steps:
          - command: ./deploy.sh
            key: deploy-app
            branches: "main !feature/*"
          - wait: ~
            continue_on_failure: true
          - trigger: notify-pipeline
            async: true
            build:
              branch: main
    """
)


@pytest.fixture
def sample_yaml() -> str:
    return SAMPLE_PIPELINE


@pytest.fixture
def write_pipeline(tmp_path) -> Callable[..., Path]:
    def write(text: str, name: str = "pipeline.yml") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return path

    return write


class FakeProcess:
    def __init__(self) -> None:
        self.killed = False
        self.returncode: Optional[int] = None

    def poll(self) -> Optional[int]:
        return self.returncode

    def wait(self, timeout=None) -> int:
        if self.returncode is None:
            self.returncode = -9 if self.killed else 0
        return self.returncode

    def kill(self) -> None:
        self.killed = True


Response = Union[str, Callable[[List[str]], str]]


class FakeCommands(Commands):
    """
    Records every invocation instead of starting processes.

    `responses` maps an argv prefix to stdout (or a callable producing it);
    `failures` maps an argv prefix to the exit status to fail with;
    `exit_codes` is consumed by run() in order (0 once exhausted).
    """

    def __init__(
        self,
        responses: Optional[Dict[Tuple[str, ...], Response]] = None,
        failures: Optional[Dict[Tuple[str, ...], int]] = None,
        exit_codes: Optional[List[int]] = None,
    ):
        self.responses = responses or {}
        self.failures = failures or {}
        self.exit_codes = list(exit_codes or [])
        self.calls: List[List[str]] = []
        self.spawned: List[FakeProcess] = []

    @staticmethod
    def _matches(argv: List[str], prefix: Tuple[str, ...]) -> bool:
        return tuple(argv[: len(prefix)]) == prefix

    def _check(self, argv: List[str]) -> None:
        for prefix, code in self.failures.items():
            if self._matches(argv, prefix):
                raise ProcessError(shlex.join(argv), code)

    def output(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> CommandOutput:
        argv = [command, *args]
        self.calls.append(argv)
        self._check(argv)
        for prefix, response in self.responses.items():
            if self._matches(argv, prefix):
                out = response(argv) if callable(response) else response
                return CommandOutput(stdout=out, stderr="", exit_code=0)
        return CommandOutput(stdout="", stderr="", exit_code=0)

    def run(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> int:
        argv = [command, *args]
        self.calls.append(argv)
        self._check(argv)
        return self.exit_codes.pop(0) if self.exit_codes else 0

    def spawn(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> FakeProcess:
        self.calls.append([command, *args])
        proc = FakeProcess()
        self.spawned.append(proc)
        return proc

    def invoked(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if self._matches(c, prefix)]


@pytest.fixture
def fake_commands() -> FakeCommands:
    return FakeCommands()


@pytest.fixture
def config(tmp_path) -> SandciConfig:
    cfg = SandciConfig()
    cfg.runner.pipelines_dir = str(tmp_path / "pipelines")
    cfg.runner.artifacts_dir = str(tmp_path / "artifacts")
    cfg.runner.state_dir = str(tmp_path / "state")
    cfg.runner.poll_interval = 0.001
    cfg.runner.boot_timeout = 1.0
    cfg.runner.lock_timeout = 0.05
    return cfg


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def builder(config, workspace) -> LocalBuilder:
    return LocalBuilder(config.runner.artifacts_dir, config.runner.state_dir, workspace=workspace)


@pytest.fixture
def build_context() -> BuildContext:
    return BuildContext(branch="main", commit="abc123", message="test build")


@pytest.fixture
def metadata(config) -> Callable[[], dict]:
    """Reads what LocalBuilder.set_metadata wrote."""

    def read() -> dict:
        path = Path(config.runner.state_dir) / "metadata.json"
        return json.loads(path.read_text(encoding="utf-8")) if path.exists() else {}

    return read
