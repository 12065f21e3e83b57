# builder/buildkite.py
# Running inside a Buildkite job: everything goes through buildkite-agent.
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from ..errors import ProcessError, SecretNotFound, TransferError
from ..process import ExecOptions, output
from ..ui.console import get_console
from .base import Builder, Redactor

AGENT = "buildkite-agent"


class BuildkiteBuilder(Builder):
    name = "buildkite"

    def __init__(self, redactor: Optional[Redactor] = None, agent: str = AGENT):
        super().__init__(redactor)
        self.agent = agent

    def _agent(self, *args: str, input: Optional[str] = None) -> str:
        return output(self.agent, list(args), ExecOptions(input=input)).stdout

    def upload_artifact(self, path: str) -> None:
        try:
            self._agent("artifact", "upload", path)
        except ProcessError as e:
            raise TransferError("artifact upload failed", path, exit_code=e.exit_code) from e

    def download_artifact(self, pattern: str, dest_dir: str) -> List[Path]:
        try:
            self._agent("artifact", "download", pattern, dest_dir)
        except ProcessError as e:
            raise TransferError("artifact download failed", pattern, exit_code=e.exit_code) from e
        return sorted(p for p in Path(dest_dir).glob(pattern) if p.is_file())

    def get_secret(self, key: str) -> str:
        try:
            value = self._agent("secret", "get", key).rstrip("\n")
        except ProcessError:
            raise SecretNotFound(key) from None
        self.redact(value)
        return value

    def redact(self, value: str) -> None:
        super().redact(value)
        if value:
            # Fed on stdin so the value never shows up in a process list.
            self._agent("redactor", "add", input=value)

    def set_metadata(self, key: str, value: str) -> None:
        self._agent("meta-data", "set", key, input=value)

    def get_metadata(self, key: str) -> Optional[str]:
        try:
            return self._agent("meta-data", "get", key)
        except ProcessError:
            return None

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        # Buildkite log sections.
        get_console().print_info(f"--- {name}")
        yield
