# sandbox/docker.py
# Container sandbox: docker run -d / docker cp / docker exec / docker rm -f
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..agents import SandboxKind
from ..errors import CIError, ProcessError, ProvisionError, TransferError
from .context import CONTAINER_ROOT, CONTAINER_WORKSPACE, ENV_MARKER
from .lifecycle import Environment


class DockerEnvironment(Environment):
    kind = SandboxKind.CONTAINER

    container_id: Optional[str] = None

    def _docker(self, *args: str) -> List[str]:
        # Remote hosts are plain docker contexts: -H tcp://... or ssh://...
        if self.target.host != "local":
            return ["-H", self.target.host, *args]
        return list(args)

    def _check_docker_available(self) -> None:
        try:
            self.commands.output("docker", self._docker("version", "--format", "{{.Server.Version}}"))
        except ProcessError as e:
            raise ProvisionError(
                "Docker is not available",
                self.name,
                hint=e.details.get("hint", "Install Docker and ensure the daemon is running."),
            ) from e

    def _provision(self) -> None:
        self._check_docker_available()
        args = self._docker(
            "run", "-d",
            "--name", self.name,
            "-e", f"{ENV_MARKER}=docker",
            "-w", str(CONTAINER_WORKSPACE),
            self.settings.image,
            "sleep", "infinity",
        )
        try:
            out = self.commands.output("docker", args)
        except ProcessError as e:
            raise ProvisionError("docker run failed", self.name, image=self.settings.image, exit_code=e.exit_code) from e
        self.container_id = out.stdout.strip() or self.name
        try:
            self.commands.output(
                "docker",
                self._docker("exec", self.container_id, "mkdir", "-p", str(CONTAINER_ROOT), str(CONTAINER_WORKSPACE)),
            )
        except ProcessError as e:
            raise ProvisionError("could not prepare container layout", self.name, exit_code=e.exit_code) from e

    def _copy_in(self, workspace: Path) -> None:
        try:
            self.commands.output("docker", self._docker("cp", f"{workspace}/.", f"{self.container_id}:{CONTAINER_WORKSPACE}"))
        except ProcessError as e:
            raise TransferError("copy into container failed", str(workspace), exit_code=e.exit_code) from e

    def _copy_out(self, workspace: Path) -> None:
        try:
            self.commands.output("docker", self._docker("cp", f"{self.container_id}:{CONTAINER_WORKSPACE}/.", str(workspace)))
        except ProcessError as e:
            raise TransferError("copy out of container failed", str(workspace), exit_code=e.exit_code) from e

    def _release(self) -> None:
        if self.container_id is None:
            return
        cid = self.container_id
        try:
            self.commands.output("docker", self._docker("rm", "-f", cid))
        except CIError as e:
            raise ProvisionError("docker rm failed", cid, error=e.message) from e
        self.container_id = None

    def resources(self) -> List[str]:
        return [self.container_id] if self.container_id else []

    def nested_command(self, argv: Sequence[str], env: Dict[str, str]) -> Tuple[str, List[str]]:
        args = ["exec", "-w", str(CONTAINER_WORKSPACE), "-e", f"{ENV_MARKER}=docker"]
        for k, v in env.items():
            args += ["-e", f"{k}={v}"]
        args += [self.container_id, *argv]
        return "docker", self._docker(*args)
