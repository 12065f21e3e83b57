# sandbox/workspace.py
# Nested side: a private copy of the workspace for the duration of one step.
from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from ..errors import CIError, ProcessError, ProvisionError, TransferError
from ..ui.console import get_console
from .context import CONTAINER_ROOT, ExecutionContext
from .lifecycle import Commands, new_token


class WorkspaceScope:
    """
    with scope as path:
        ... run the step in `path` ...

    On the way out the tree is copied back to `source` and the backing
    storage is deleted, whatever happened inside.
    """

    def __init__(self, source: Path, token: Optional[str] = None, commands: Optional[Commands] = None):
        self.source = Path(source)
        self.token = token or new_token()
        self.commands = commands or Commands()
        self.path: Optional[Path] = None

    def _create(self) -> Path:
        raise NotImplementedError

    def _populate(self, path: Path) -> None:
        raise NotImplementedError

    def _copy_back(self, path: Path) -> None:
        raise NotImplementedError

    def _destroy(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> Path:
        self.path = self._create()
        try:
            self._populate(self.path)
        except BaseException:
            self._destroy()
            self.path = None
            raise
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if self.path is not None:
                try:
                    self._copy_back(self.path)
                except CIError as e:
                    get_console().print_warning(f"workspace {self.token}: copy back failed: {e.message}")
        finally:
            self._destroy()
            self.path = None


class ScratchScope(WorkspaceScope):
    """Container flavour: a scratch directory filled by recursive copy."""

    def __init__(self, source: Path, root: Path = CONTAINER_ROOT, **kwargs):
        super().__init__(source, **kwargs)
        self.root = Path(root)

    def _create(self) -> Path:
        path = self.root / f"workspace-{self.token}"
        path.mkdir(parents=True, exist_ok=False)
        return path

    def _populate(self, path: Path) -> None:
        try:
            shutil.copytree(self.source, path, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            raise TransferError(f"copy into scratch workspace failed: {e}", str(self.source)) from e

    def _copy_back(self, path: Path) -> None:
        try:
            shutil.copytree(path, self.source, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            raise TransferError(f"copy back failed: {e}", str(self.source)) from e

    def _destroy(self) -> None:
        shutil.rmtree(self.root / f"workspace-{self.token}", ignore_errors=True)


class SparseImageScope(WorkspaceScope):
    """VM flavour: a dedicated APFS sparse image, attached and filled with ditto."""

    size = "100g"

    def __init__(self, source: Path, tmp: Path = Path("/tmp"), **kwargs):
        super().__init__(source, **kwargs)
        self.volname = f"workspace-{self.token}"
        self.image = Path(tmp) / f"{self.volname}.sparseimage"
        self.mountpoint = Path("/Volumes") / self.volname
        self.attached = False

    def _create(self) -> Path:
        try:
            self.commands.output(
                "hdiutil",
                ["create", "-type", "SPARSE", "-size", self.size, "-fs", "APFS",
                 "-volname", self.volname, str(self.image)],
            )
            self.commands.output(
                "hdiutil",
                ["attach", str(self.image), "-mountpoint", str(self.mountpoint), "-nobrowse"],
            )
        except ProcessError as e:
            self._destroy()
            raise ProvisionError("could not create workspace image", str(self.image), exit_code=e.exit_code) from e
        self.attached = True
        return self.mountpoint

    def _populate(self, path: Path) -> None:
        try:
            self.commands.output("ditto", [str(self.source), str(path)])
        except ProcessError as e:
            raise TransferError("ditto into workspace image failed", str(self.source), exit_code=e.exit_code) from e

    def _copy_back(self, path: Path) -> None:
        try:
            self.commands.output("ditto", [str(path), str(self.source)])
        except ProcessError as e:
            raise TransferError("ditto back to shared directory failed", str(self.source), exit_code=e.exit_code) from e

    def _destroy(self) -> None:
        if self.attached:
            try:
                self.commands.output("hdiutil", ["detach", str(self.mountpoint), "-force"])
            except ProcessError as e:
                get_console().print_warning(f"hdiutil detach {self.mountpoint} failed (exit={e.exit_code})")
            self.attached = False
        self.image.unlink(missing_ok=True)


def workspace_scope(context: ExecutionContext, source: Path, commands: Optional[Commands] = None) -> WorkspaceScope:
    if context is ExecutionContext.INSIDE_VM:
        return SparseImageScope(source, commands=commands)
    if context is ExecutionContext.INSIDE_CONTAINER:
        return ScratchScope(source, commands=commands)
    raise ProvisionError("workspace scopes only exist inside a sandbox", context.value)
