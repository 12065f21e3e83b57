from __future__ import annotations

import os
from typing import Mapping, Optional

from ..config import SandciConfig
from ..secrets import SecretsSession
from .base import Builder, Redactor
from .buildkite import BuildkiteBuilder
from .local import LocalBuilder


def select_builder(
    config: SandciConfig,
    secrets: Optional[SecretsSession] = None,
    env: Optional[Mapping[str, str]] = None,
    redactor: Optional[Redactor] = None,
) -> Builder:
    """BUILDKITE=true selects the buildkite-agent backend, anything else is local."""
    env = os.environ if env is None else env
    if env.get("BUILDKITE", "").lower() == "true":
        return BuildkiteBuilder(redactor=redactor)
    return LocalBuilder(
        artifacts_dir=config.runner.artifacts_dir,
        state_dir=config.runner.state_dir,
        secrets=secrets,
        redactor=redactor,
    )


__all__ = ["Builder", "BuildkiteBuilder", "LocalBuilder", "Redactor", "select_builder"]
