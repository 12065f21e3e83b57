# agents.py
# Agent query rules -> concrete platform + sandbox kind.
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import UnsupportedPlatformError


class Platform(str, Enum):
    LINUX = "linux"
    WINDOWS = "windows"
    MACOS = "macos"


class SandboxKind(str, Enum):
    CONTAINER = "container"
    VM = "vm"
    NONE = "none"


# linux/windows builds run in docker, macOS builds in a tart VM.
DEFAULT_SANDBOX = {
    Platform.LINUX: SandboxKind.CONTAINER,
    Platform.WINDOWS: SandboxKind.CONTAINER,
    Platform.MACOS: SandboxKind.VM,
}


def host_platform() -> Platform:
    if sys.platform == "darwin":
        return Platform.MACOS
    if sys.platform.startswith("win"):
        return Platform.WINDOWS
    if sys.platform.startswith("linux"):
        return Platform.LINUX
    raise UnsupportedPlatformError(sys.platform)


def parse_agents(query: Any) -> Dict[str, str]:
    """
    Normalize an agent query into one canonical map.

    Accepts:
      - None                       -> {}
      - ["platform=linux", ...]    (legacy list form)
      - {"platform": "linux"}      (map form)

    Both forms produce the same dict. Nothing downstream should ever see the
    legacy string form again.
    """
    if query is None:
        return {}
    if isinstance(query, Mapping):
        return {str(k): _text(v) for k, v in query.items()}
    if isinstance(query, (list, tuple)):
        out: Dict[str, str] = {}
        for rule in query:
            if not isinstance(rule, str) or "=" not in rule:
                raise ValueError(f"agent rule must look like 'key=value', got {rule!r}")
            k, _, v = rule.partition("=")
            k = k.strip()
            if not k:
                raise ValueError(f"agent rule has an empty key: {rule!r}")
            out[k] = v.strip()
        return out
    raise ValueError(f"agents must be a list of 'key=value' strings or a mapping, got {type(query).__name__}")


def _text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def merge_agents(defaults: Mapping[str, str], overrides: Mapping[str, str]) -> Dict[str, str]:
    """Pipeline-level agents are defaults; step-level rules win per key."""
    merged = dict(defaults)
    merged.update(overrides)
    return merged


def resolve_platform(agents: Mapping[str, str], *, default: Optional[Platform] = None, step: Optional[str] = None) -> Platform:
    raw = agents.get("platform")
    if raw is None:
        return default or host_platform()
    try:
        return Platform(raw.strip().lower())
    except ValueError:
        raise UnsupportedPlatformError(raw, step=step) from None


def resolve_sandbox(platform: Platform, agents: Mapping[str, str], *, step: Optional[str] = None) -> SandboxKind:
    raw = agents.get("sandbox")
    if raw is None:
        return DEFAULT_SANDBOX[platform]
    try:
        kind = SandboxKind(raw.strip().lower())
    except ValueError:
        raise UnsupportedPlatformError(f"{platform.value}/{raw}", step=step) from None
    if kind is SandboxKind.VM and platform is not Platform.MACOS:
        raise UnsupportedPlatformError(f"{platform.value}/{raw}", step=step)
    return kind


@dataclass(frozen=True)
class AgentTarget:
    """Where one step runs: platform family, sandbox kind and the host serving it."""
    platform: Platform
    sandbox: SandboxKind
    host: str = "local"
    query: Dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def env_key(self) -> tuple:
        return (self.host, self.platform)


def resolve_target(
    agents: Mapping[str, str],
    *,
    remotes: Optional[Mapping[str, str]] = None,
    default: Optional[Platform] = None,
    step: Optional[str] = None,
) -> AgentTarget:
    platform = resolve_platform(agents, default=default, step=step)
    sandbox = resolve_sandbox(platform, agents, step=step)
    host = (remotes or {}).get(platform.value) or "local"
    return AgentTarget(platform=platform, sandbox=sandbox, host=host, query=dict(agents))
