# sandbox/context.py
# Where is this process running? Probed once at the CLI boundary.
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from ..agents import SandboxKind

# Host directory shared into tart VMs shows up here inside the guest.
VM_MARKER = Path("/Volumes/My Shared Files/sandci")

# Container layout created by DockerEnvironment.
CONTAINER_ROOT = Path("/sandci")
CONTAINER_WORKSPACE = Path("/workspace")
DOCKERENV = Path("/.dockerenv")

ENV_MARKER = "SANDCI_ENV"
STEP_ENV = "SANDCI_STEP"


class ExecutionContext(str, Enum):
    HOST = "host"
    INSIDE_CONTAINER = "container"
    INSIDE_VM = "vm"

    @property
    def sandbox(self) -> Optional[SandboxKind]:
        if self is ExecutionContext.INSIDE_CONTAINER:
            return SandboxKind.CONTAINER
        if self is ExecutionContext.INSIDE_VM:
            return SandboxKind.VM
        return None


def detect_context(env: Optional[Mapping[str, str]] = None, root: Path = Path("/")) -> ExecutionContext:
    """
    Marker contract:
      - VM: the shared sandci directory is mounted
      - container: (/sandci and /workspace, or /.dockerenv) and SANDCI_ENV=docker
    """
    env = os.environ if env is None else env

    def at(p: Path) -> Path:
        return root / p.relative_to("/")

    if at(VM_MARKER).is_dir():
        return ExecutionContext.INSIDE_VM

    layout = at(CONTAINER_ROOT).is_dir() and at(CONTAINER_WORKSPACE).is_dir()
    if (layout or at(DOCKERENV).exists()) and env.get(ENV_MARKER) == "docker":
        return ExecutionContext.INSIDE_CONTAINER

    return ExecutionContext.HOST
