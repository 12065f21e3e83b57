from .context import ExecutionContext, detect_context
from .docker import DockerEnvironment
from .lifecycle import Commands, Environment, LifecycleManager, SandboxState
from .tart import TartEnvironment
from .workspace import ScratchScope, SparseImageScope, WorkspaceScope, workspace_scope

__all__ = [
    "Commands",
    "DockerEnvironment",
    "Environment",
    "ExecutionContext",
    "LifecycleManager",
    "SandboxState",
    "ScratchScope",
    "SparseImageScope",
    "TartEnvironment",
    "WorkspaceScope",
    "detect_context",
    "workspace_scope",
]
