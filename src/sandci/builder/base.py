# builder/base.py
# The narrow surface the core uses to talk to the CI backend.
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Set

from .. import process
from ..process import ExecListeners, ExecOptions
from ..ui.console import get_console


class Redactor:
    """Masks every registered value in text. Longest values are replaced first."""

    MASK = "[REDACTED]"

    def __init__(self) -> None:
        self._values: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, value: str) -> None:
        if not value:
            return
        with self._lock:
            self._values.add(value)

    def __call__(self, text: str) -> str:
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for v in values:
            text = text.replace(v, self.MASK)
        return text

    def __len__(self) -> int:
        return len(self._values)


class Builder(ABC):
    """
    upload/download artifacts, secrets, build metadata, redaction, log groups.

    `exec` runs a command with its output relayed through the console, which
    applies the redactor.
    """

    name = "builder"

    def __init__(self, redactor: Optional[Redactor] = None):
        self.redactor = redactor or Redactor()
        get_console().add_filter(self.redactor)

    @abstractmethod
    def upload_artifact(self, path: str) -> None: ...

    @abstractmethod
    def download_artifact(self, pattern: str, dest_dir: str) -> List[Path]: ...

    @abstractmethod
    def get_secret(self, key: str) -> str: ...

    @abstractmethod
    def set_metadata(self, key: str, value: str) -> None: ...

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[str]: ...

    def redact(self, value: str) -> None:
        self.redactor.add(value)

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        get_console().print_header(name)
        yield

    def listeners(self) -> ExecListeners:
        console = get_console()
        return ExecListeners(
            stdout=lambda chunk: console.relay(chunk),
            stderr=lambda chunk: console.relay(chunk, err=True),
            closed=console.end_relay,
        )

    def exec(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> int:
        options = options or ExecOptions()
        if options.listeners is None and not options.silent:
            options.listeners = self.listeners()
        return process.exec_command(command, args, options)
