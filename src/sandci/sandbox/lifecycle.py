# sandbox/lifecycle.py
# Per (host, platform) sandbox state machine:
#   Outside -> Entering -> Inside -> Exiting -> Outside
from __future__ import annotations

import secrets
import threading
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .. import process
from ..agents import AgentTarget, Platform, SandboxKind
from ..config import RunnerConfig, SandciConfig, TargetConfig
from ..errors import CIError, ProvisionError
from ..process import CommandOutput, ExecOptions, Process
from ..ui.console import get_console
from .context import ExecutionContext


class SandboxState(str, Enum):
    OUTSIDE = "outside"
    ENTERING = "entering"
    INSIDE = "inside"
    EXITING = "exiting"


class Commands:
    """
    The Process Adapter as seen by sandboxes.

    Tests swap this for a recorder; everything else goes through process.py.
    """

    def run(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> int:
        return process.exec_command(command, args, options)

    def output(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> CommandOutput:
        return process.output(command, args, options)

    def spawn(self, command: str, args: Sequence[str] = (), options: Optional[ExecOptions] = None) -> Process:
        return process.spawn(command, args, options)


def new_token() -> str:
    return secrets.token_hex(6)


class Environment:
    """
    One ephemeral sandbox bound to (host, platform).

    Subclasses implement the four backend hooks:
      _provision / _copy_in / _copy_out / _release
    plus nested_command() describing how to re-run sandci inside.
    """

    kind: SandboxKind = SandboxKind.NONE

    def __init__(
        self,
        target: AgentTarget,
        settings: TargetConfig,
        runner: RunnerConfig,
        commands: Optional[Commands] = None,
    ):
        self.target = target
        self.settings = settings
        self.runner = runner
        self.commands = commands or Commands()
        self.state = SandboxState.OUTSIDE
        self.token: Optional[str] = None
        self.workspace: Optional[Path] = None
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.target.host}/{self.target.platform.value} {self.state.value}>"

    @property
    def name(self) -> str:
        return f"sandci-{self.token}" if self.token else "sandci"

    # -- backend hooks -------------------------------------------------

    def _provision(self) -> None:
        raise NotImplementedError

    def _copy_in(self, workspace: Path) -> None:
        raise NotImplementedError

    def _copy_out(self, workspace: Path) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def resources(self) -> List[str]:
        """Backing resources currently allocated (container ids, VM names)."""
        raise NotImplementedError

    def nested_command(self, argv: Sequence[str], env: Dict[str, str]) -> Tuple[str, List[str]]:
        raise NotImplementedError

    # -- transitions ---------------------------------------------------

    def enter(self, workspace: Path) -> None:
        if self.state is SandboxState.INSIDE:
            return
        if self.state is not SandboxState.OUTSIDE:
            raise ProvisionError(f"cannot enter from state {self.state.value}", self.name)

        console = get_console()
        self.state = SandboxState.ENTERING
        self.token = new_token()
        self.workspace = Path(workspace)
        console.print_debug(f"sandbox {self.name}: provisioning {self.kind.value} for {self.target.platform.value}")
        try:
            self._provision()
            self._copy_in(self.workspace)
        except BaseException:
            self.teardown()
            raise
        self.state = SandboxState.INSIDE
        console.print_debug(f"sandbox {self.name}: inside")

    def exit(self, copy_back: bool = True) -> None:
        if self.state is SandboxState.OUTSIDE:
            return
        console = get_console()
        self.state = SandboxState.EXITING
        try:
            if copy_back and self.workspace is not None:
                try:
                    self._copy_out(self.workspace)
                except CIError as e:
                    # The step already has its result; losing outputs is not a failure.
                    console.print_warning(f"sandbox {self.name}: copy-out failed: {e.message}")
        finally:
            try:
                self._release()
            except CIError as e:
                # The step already has its result; a sandbox left behind only warns.
                console.print_warning(f"sandbox {self.name}: release failed: {e.message}")
            finally:
                self.state = SandboxState.OUTSIDE
                console.print_debug(f"sandbox {self.name}: released")
                self.token = None

    def teardown(self) -> None:
        """Best-effort release from any state. Used on cancellation and errors."""
        if self.state is SandboxState.OUTSIDE:
            return
        try:
            self._release()
        except Exception as e:
            get_console().print_warning(f"sandbox {self.name}: teardown failed: {e}")
        finally:
            self.state = SandboxState.OUTSIDE
            self.token = None

    def run_nested(
        self,
        argv: Sequence[str],
        step_id: str,
        *,
        timeout: Optional[float] = None,
        listeners: Optional[process.ExecListeners] = None,
    ) -> int:
        """Re-run this invocation inside the sandbox, for one step."""
        if self.state is not SandboxState.INSIDE:
            raise ProvisionError("sandbox is not running", self.name, state=self.state.value)
        command, args = self.nested_command(argv, {"SANDCI_STEP": step_id})
        return self.commands.run(
            command,
            args,
            ExecOptions(timeout=timeout, ignore_return_code=True, listeners=listeners),
        )

    @contextmanager
    def session(self, workspace: Path) -> Iterator["Environment"]:
        """
        Exclusive use of this sandbox for one step attempt.

        Enter on the way in, Exit on the way out; any exception (timeouts and
        KeyboardInterrupt included) tears the sandbox down instead.
        """
        if not self.lock.acquire(timeout=self.runner.lock_timeout):
            raise ProvisionError(
                f"sandbox busy for more than {self.runner.lock_timeout:g}s",
                f"{self.target.host}/{self.target.platform.value}",
            )
        try:
            self.enter(workspace)
            try:
                yield self
            except BaseException:
                self.teardown()
                raise
            self.exit()
        finally:
            self.lock.release()


EnvironmentFactory = Callable[[AgentTarget, TargetConfig, RunnerConfig, Commands], Environment]


def _default_factory(target: AgentTarget, settings: TargetConfig, runner: RunnerConfig, commands: Commands) -> Environment:
    from .docker import DockerEnvironment
    from .tart import TartEnvironment

    if target.sandbox is SandboxKind.CONTAINER:
        return DockerEnvironment(target, settings, runner, commands)
    if target.sandbox is SandboxKind.VM:
        return TartEnvironment(target, settings, runner, commands)
    raise ProvisionError(f"no sandbox backend for {target.sandbox.value}", target.platform.value)


class LifecycleManager:
    """
    Registry of sandboxes keyed by (host, platform), plus the knowledge of
    where this process itself runs.
    """

    def __init__(
        self,
        context: ExecutionContext,
        config: SandciConfig,
        commands: Optional[Commands] = None,
        factory: Optional[EnvironmentFactory] = None,
    ):
        self.context = context
        self.config = config
        self.commands = commands or Commands()
        self.factory = factory or _default_factory
        self._envs: Dict[Tuple[str, Platform], Environment] = {}
        self._lock = threading.Lock()

    def is_nested(self, target: AgentTarget) -> bool:
        """Already inside the sandbox kind this target needs."""
        return target.sandbox is not SandboxKind.NONE and self.context.sandbox is target.sandbox

    def requires_entry(self, target: AgentTarget) -> bool:
        if target.sandbox is SandboxKind.NONE:
            return False
        return self.context.sandbox is not target.sandbox

    def environment(self, target: AgentTarget) -> Environment:
        key = target.env_key
        with self._lock:
            env = self._envs.get(key)
            if env is None:
                settings = self.config.target(target.platform.value)
                env = self.factory(target, settings, self.config.runner, self.commands)
                self._envs[key] = env
            return env

    def environments(self) -> List[Environment]:
        with self._lock:
            return list(self._envs.values())

    def shutdown(self) -> None:
        """Tear down anything still allocated (interrupts, crashes)."""
        for env in self.environments():
            env.teardown()
