# config.py
# sandci.toml -> dataclasses, then SANDCI_* environment overrides.
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError

CONFIG_FILE = "sandci.toml"
PLATFORMS = ("linux", "windows", "macos")


@dataclass
class TargetConfig:
    """How to reach and provision one platform family."""
    remote: Optional[str] = None
    image: str = "ubuntu:24.04"
    vm: str = "ghcr.io/cirruslabs/macos-sonoma-xcode:latest"
    user: str = "admin"
    password: str = "admin"


@dataclass
class RunnerConfig:
    pipelines_dir: str = ".sandci/pipelines"
    artifacts_dir: str = ".sandci/artifacts"
    state_dir: str = ".sandci/state"
    poll_interval: float = 0.25
    boot_timeout: float = 180.0
    lock_timeout: float = 600.0
    log_level: str = "info"


def _default_targets() -> Dict[str, TargetConfig]:
    return {
        "linux": TargetConfig(),
        "windows": TargetConfig(image="mcr.microsoft.com/windows/servercore:ltsc2022"),
        "macos": TargetConfig(),
    }


@dataclass
class SandciConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    targets: Dict[str, TargetConfig] = field(default_factory=_default_targets)
    source: Optional[str] = None

    def target(self, platform: str) -> TargetConfig:
        return self.targets.get(platform) or TargetConfig()

    def remotes(self) -> Dict[str, str]:
        return {p: t.remote for p, t in self.targets.items() if t.remote}


def _pick(data: Mapping[str, Any], cls: type, where: str, path: Optional[str]) -> Dict[str, Any]:
    valid = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(valid))
    if unknown:
        raise ConfigError(f"unknown key(s) in [{where}]: {unknown}", path)
    return dict(data)


def _coerce(cls: type, name: str, raw: str) -> Any:
    kind = {f.name: f.type for f in fields(cls)}[name]
    try:
        if kind == "float":
            return float(raw)
        if kind == "int":
            return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    return raw


# SANDCI_<FIELD> for runner settings, SANDCI_<PLATFORM>_<FIELD> for targets.
def apply_env(cfg: SandciConfig, env: Mapping[str, str]) -> SandciConfig:
    for f in fields(RunnerConfig):
        raw = env.get(f"SANDCI_{f.name.upper()}")
        if raw is not None:
            setattr(cfg.runner, f.name, _coerce(RunnerConfig, f.name, raw))

    for platform in PLATFORMS:
        target = cfg.targets.setdefault(platform, TargetConfig())
        for f in fields(TargetConfig):
            raw = env.get(f"SANDCI_{platform.upper()}_{f.name.upper()}")
            if raw is not None:
                setattr(target, f.name, raw)
    return cfg


def load_config(path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> SandciConfig:
    """
    Load sandci.toml. A missing file means defaults.

    `path=None` looks for ./sandci.toml.
    """
    env = os.environ if env is None else env
    p = Path(path) if path is not None else Path(CONFIG_FILE)

    if not p.exists():
        if path is not None:
            raise ConfigError("config file not found", str(p))
        return apply_env(SandciConfig(), env)

    try:
        with open(p, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML: {e}", str(p)) from e

    unknown = sorted(set(raw) - {"runner", "targets"})
    if unknown:
        raise ConfigError(f"unknown section(s): {unknown}", str(p))

    try:
        runner = RunnerConfig(**_pick(raw.get("runner", {}), RunnerConfig, "runner", str(p)))
        targets = _default_targets()
        for name, data in (raw.get("targets") or {}).items():
            if name not in PLATFORMS:
                raise ConfigError(f"unknown target {name!r}; expected one of {list(PLATFORMS)}", str(p))
            base = targets[name]
            merged = {f.name: getattr(base, f.name) for f in fields(TargetConfig)}
            merged.update(_pick(data, TargetConfig, f"targets.{name}", str(p)))
            targets[name] = TargetConfig(**merged)
    except TypeError as e:
        raise ConfigError(str(e), str(p)) from e

    return apply_env(SandciConfig(runner=runner, targets=targets, source=str(p)), env)
