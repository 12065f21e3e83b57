# sandbox/tart.py
# macOS VM sandbox driven by the tart CLI.
#   tart clone -> tart run (background) -> poll `tart get` -> ssh -> tart stop -> tart delete
from __future__ import annotations

import json
import shlex
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..agents import SandboxKind
from ..errors import CIError, ProcessError, ProvisionError
from ..process import ExecOptions, Process
from ..ui.console import get_console
from .context import VM_MARKER
from .lifecycle import Environment

SHARE_NAME = "sandci"
SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
]


class TartEnvironment(Environment):
    kind = SandboxKind.VM

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.vm: Optional[str] = None
        self.ip: Optional[str] = None
        self._run: Optional[Process] = None

    def _tart(self, *args: str) -> Tuple[str, List[str]]:
        # A remote mac host is driven over ssh.
        if self.target.host != "local":
            return "ssh", [*SSH_OPTIONS, self.target.host, "tart", *args]
        return "tart", list(args)

    def _tart_output(self, *args: str) -> str:
        command, argv = self._tart(*args)
        return self.commands.output(command, argv).stdout

    def vm_state(self) -> Optional[str]:
        try:
            raw = self._tart_output("get", self.vm, "--format", "json")
        except ProcessError:
            return None
        try:
            return str(json.loads(raw).get("State", "")).lower() or None
        except (ValueError, AttributeError):
            return None

    def _poll(self, wanted: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            state = self.vm_state()
            get_console().print_trace(f"{self.vm}: state={state}, waiting for {wanted}")
            if state == wanted:
                return True
            if self._run is not None and wanted == "running" and self._run.poll() is not None:
                return False  # tart run died
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.runner.poll_interval)

    def _provision(self) -> None:
        self.vm = self.name
        try:
            self._tart_output("clone", self.settings.vm, self.vm)
        except ProcessError as e:
            self.vm = None
            raise ProvisionError("tart clone failed", self.name, base=self.settings.vm, exit_code=e.exit_code) from e

        command, argv = self._tart("run", "--no-graphics", f"--dir={SHARE_NAME}:{self.workspace}", self.vm)
        self._run = self.commands.spawn(command, argv, ExecOptions(silent=True))

        if not self._poll("running", self.runner.boot_timeout):
            raise ProvisionError(
                f"VM did not reach Running within {self.runner.boot_timeout:g}s",
                self.vm,
            )
        try:
            self.ip = self._tart_output("ip", "--wait", str(int(self.runner.boot_timeout)), self.vm).strip()
        except ProcessError as e:
            raise ProvisionError("could not resolve VM address", self.vm, exit_code=e.exit_code) from e

    def _copy_in(self, workspace: Path) -> None:
        # The workspace is shared into the guest with --dir; nothing to copy.
        return None

    def _copy_out(self, workspace: Path) -> None:
        return None

    def _release(self) -> None:
        if self.vm is None:
            return
        vm = self.vm
        errors: List[str] = []
        try:
            self._tart_output("stop", vm)
        except CIError as e:
            errors.append(e.message)
        self._poll("stopped", self.runner.boot_timeout)
        if self._run is not None:
            self._run.kill()
            self._run.wait()
            self._run = None
        try:
            self._tart_output("delete", vm)
        except CIError as e:
            errors.append(e.message)
            raise ProvisionError("tart delete failed", vm, errors="; ".join(errors)) from e
        finally:
            self.vm = None
            self.ip = None

    def resources(self) -> List[str]:
        return [self.vm] if self.vm else []

    def nested_command(self, argv: Sequence[str], env: Dict[str, str]) -> Tuple[str, List[str]]:
        exports = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
        remote = f"cd {shlex.quote(str(VM_MARKER))} && {exports} {shlex.join(argv)}"
        return "sshpass", [
            "-p", self.settings.password,
            "ssh", *SSH_OPTIONS,
            f"{self.settings.user}@{self.ip}",
            remote,
        ]
