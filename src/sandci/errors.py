# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output (kind + offending identifier)
      - debugging without full tracebacks
    """
    kind: str
    message: str
    subject: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        head = f"{self.kind}: {self.message}"
        if self.subject:
            head = f"{head} [{self.subject}]"
        lines = [head]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(kind="ConfigError", message=message, subject=path)


class SchemaError(CIError):
    """A pipeline document failed validation. Carries every violation found."""

    def __init__(self, violations: List[str], source: Optional[str] = None):
        self.violations = list(violations)
        count = len(self.violations)
        super().__init__(
            kind="SchemaError",
            message=f"{count} violation{'s' if count != 1 else ''}",
            subject=source,
        )

    def __str__(self) -> str:
        lines = [super().__str__()]
        lines.extend(f"  - {v}" for v in self.violations)
        return "\n".join(lines)


class UnhandledStepType(CIError):
    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            kind="UnhandledStepType",
            message="no handler for step",
            subject=type(value).__name__,
            details={"value": repr(value)},
        )


class DependencyError(CIError):
    def __init__(self, message: str, key: str, **details):
        self.key = key
        super().__init__(kind="DependencyError", message=message, subject=key, details=details)


class UnsupportedPlatformError(CIError):
    def __init__(self, platform: Optional[str], step: Optional[str] = None):
        self.platform = platform
        details = {"step": step} if step else {}
        super().__init__(
            kind="UnsupportedPlatformError",
            message=f"unsupported platform: {platform!r}",
            subject=platform,
            details=details,
        )


class ProvisionError(CIError):
    def __init__(self, message: str, sandbox: str, **details):
        super().__init__(kind="ProvisionError", message=message, subject=sandbox, details=details)


class TransferError(CIError):
    def __init__(self, message: str, path: str, **details):
        super().__init__(kind="TransferError", message=message, subject=path, details=details)


class ProcessError(CIError):
    """A command exited non-zero."""

    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(
            kind="ProcessError",
            message=f"process exited with code {exit_code}",
            subject=command,
        )


class CommandTimeout(ProcessError):
    def __init__(self, command: str, timeout: float):
        super().__init__(command, exit_code=-9)
        self.kind = "CommandTimeout"
        self.timeout = timeout
        self.message = f"process killed after {timeout:g}s"


class SecretNotFound(CIError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(kind="SecretNotFound", message="secret is not defined", subject=key)
