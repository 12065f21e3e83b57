# model.py
from __future__ import annotations

import re
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    Tag,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

from .agents import parse_agents

KEY_PATTERN = r"^[a-zA-Z0-9_-]+$"
FIELD_KEY_PATTERN = r"^[A-Z0-9_]+$"
DIMENSION_PATTERN = r"^[a-zA-Z0-9_]+$"
TRIGGER_PATTERN = r"^[\w-]+$"

STEP_TAGS = ("command", "block", "input", "wait", "trigger", "group")

# Strict so that a YAML `true` never turns into "True" (or 1) and back.
Scalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
ExitStatus = Union[Literal["*"], StrictInt]


def _stringify_map(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {k: v if isinstance(v, str) else _scalar_text(v) for k, v in value.items()}
    return value


def _scalar_text(v: Any) -> Any:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return v


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# ---------------------------------------------------------------------
# Input fields (block / input steps)
# ---------------------------------------------------------------------

class SelectOption(_Model):
    label: str
    value: str
    hint: Optional[str] = None


class TextInput(_Model):
    text: Optional[str] = None
    key: str = Field(pattern=FIELD_KEY_PATTERN)
    hint: Optional[str] = None
    format: Optional[str] = None
    required: bool = False
    default: Optional[str] = None


class SelectInput(_Model):
    select: Optional[str] = None
    key: str = Field(pattern=FIELD_KEY_PATTERN)
    options: List[SelectOption] = Field(min_length=1)
    multiple: bool = False
    default: Union[str, List[str], None] = None
    hint: Optional[str] = None
    required: bool = False


def _field_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "select" if ("options" in value or "select" in value) else "text"
    return "select" if isinstance(value, SelectInput) else "text"


InputField = Annotated[
    Union[Annotated[TextInput, Tag("text")], Annotated[SelectInput, Tag("select")]],
    Discriminator(_field_kind),
]


# ---------------------------------------------------------------------
# Retry / soft fail / matrix
# ---------------------------------------------------------------------

def _signal_key(name: str) -> str:
    name = name.strip().upper()
    return name[3:] if name.startswith("SIG") else name


class SoftFailRule(_Model):
    exit_status: ExitStatus


SoftFail = Union[StrictBool, List[SoftFailRule]]


class AutomaticRetry(_Model):
    exit_status: Union[Literal["*"], StrictInt, List[StrictInt]] = "*"
    limit: int = Field(2, ge=1, le=10)
    signal: Optional[str] = None
    signal_reason: Optional[str] = None

    def matches(self, exit_code: int, signal: Optional[str] = None) -> bool:
        # No signal filter (or "*") matches any signal, including none.
        if self.signal is not None and self.signal != "*":
            if signal is None or _signal_key(self.signal) != _signal_key(signal):
                return False
        if self.exit_status == "*":
            return True
        if isinstance(self.exit_status, list):
            return exit_code in self.exit_status
        return exit_code == self.exit_status


class ManualRetry(_Model):
    allowed: bool = True
    permit_on_passed: bool = False
    reason: Optional[str] = None


class RetryConfig(_Model):
    """Automatic and manual retry policies. They are independent of each other."""
    automatic: List[AutomaticRetry] = Field(default_factory=list)
    manual: Optional[ManualRetry] = None

    @field_validator("automatic", mode="before")
    @classmethod
    def _normalize_automatic(cls, v: Any) -> Any:
        if v is None or v is False:
            return []
        if v is True:
            return [{}]
        if isinstance(v, dict):
            return [v]
        return v

    @field_validator("manual", mode="before")
    @classmethod
    def _normalize_manual(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return {"allowed": v}
        return v

    def rule_for(self, exit_code: int, signal: Optional[str] = None) -> Optional[AutomaticRetry]:
        for rule in self.automatic:
            if rule.matches(exit_code, signal):
                return rule
        return None


class MatrixAdjustment(_Model):
    with_: Union[Scalar, Dict[str, Scalar]] = Field(alias="with")
    skip: Union[StrictBool, str] = False
    soft_fail: SoftFail = False

    @field_validator("with_")
    @classmethod
    def _check_dimension_names(cls, v: Any) -> Any:
        if isinstance(v, dict):
            bad = [k for k in v if not re.match(DIMENSION_PATTERN, k)]
            if bad:
                raise ValueError(f"invalid matrix dimension name(s) in 'with': {bad}")
        return v


class MatrixConfig(_Model):
    """
    Either a single anonymous dimension (a list) or named dimensions.

    Examples:
        matrix: ["3.11", "3.12"]                         -> {{matrix}}
        matrix: {setup: {os: [linux, macos]}}            -> {{matrix.os}}
    """
    setup: Union[List[Scalar], Dict[str, List[Scalar]]]
    adjustments: List[MatrixAdjustment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"setup": data}
        return data

    @model_validator(mode="after")
    def _check_adjustments(self) -> "MatrixConfig":
        if isinstance(self.setup, dict):
            if not self.setup:
                raise ValueError("matrix setup must define at least one dimension")
            for name, values in self.setup.items():
                if not re.match(DIMENSION_PATTERN, name):
                    raise ValueError(f"invalid matrix dimension name: {name!r}")
                if not values:
                    raise ValueError(f"matrix dimension {name!r} has no values")
        elif not self.setup:
            raise ValueError("matrix setup must have at least one value")

        for i, adj in enumerate(self.adjustments):
            if isinstance(self.setup, dict):
                if not isinstance(adj.with_, dict):
                    raise ValueError(f"adjustments[{i}].with must map dimension names to values")
                unknown = sorted(set(adj.with_) - set(self.setup))
                if unknown:
                    raise ValueError(f"adjustments[{i}].with names unknown dimension(s): {unknown}")
                missing = sorted(set(self.setup) - set(adj.with_))
                if missing:
                    raise ValueError(f"adjustments[{i}].with is missing dimension(s): {missing}")
            elif isinstance(adj.with_, dict):
                raise ValueError(f"adjustments[{i}].with must be a single value for an anonymous matrix")
        return self

    @property
    def is_anonymous(self) -> bool:
        return isinstance(self.setup, list)


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

class Dependency(_Model):
    step: str
    allow_failure: bool = False


class BaseStep(_Model):
    kind: ClassVar[str] = ""

    key: Optional[str] = Field(None, pattern=KEY_PATTERN)
    if_: Optional[str] = Field(None, alias="if")
    depends_on: List[Dependency] = Field(default_factory=list)
    allow_dependency_failure: bool = False
    branches: List[str] = Field(default_factory=list)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalize_depends_on(cls, v: Any) -> Any:
        v = _as_list(v)
        if isinstance(v, list):
            return [{"step": d} if isinstance(d, str) else d for d in v]
        return v

    @field_validator("branches", mode="before")
    @classmethod
    def _normalize_branches(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return v.split()
        return v

    @property
    def name(self) -> str:
        """Human readable identifier for logs and errors."""
        label = getattr(self, "label", None)
        return self.key or label or self.kind

    def to_document(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude_defaults=True)
        # The variant tag may legitimately be null/default (e.g. `wait: ~`).
        data.setdefault(self.kind, getattr(self, self.kind))
        return data


class CommandStep(BaseStep):
    kind: ClassVar[str] = "command"

    command: List[str] = Field(default_factory=list)
    label: Optional[str] = None
    agents: Dict[str, str] = Field(default_factory=dict)
    artifact_paths: List[str] = Field(default_factory=list)
    timeout_in_minutes: Optional[int] = Field(None, ge=1)
    env: Dict[str, str] = Field(default_factory=dict)
    plugins: List[Union[str, Dict[str, Any]]] = Field(default_factory=list)
    parallelism: Optional[int] = Field(None, ge=1)
    concurrency: Optional[int] = Field(None, ge=1)
    concurrency_group: Optional[str] = None
    concurrency_method: Optional[Literal["ordered", "eager"]] = None
    matrix: Optional[MatrixConfig] = None
    retry: Optional[RetryConfig] = None
    skip: Union[StrictBool, str] = False
    soft_fail: SoftFail = False

    @model_validator(mode="before")
    @classmethod
    def _commands_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "commands" in data:
            data = dict(data)
            if "command" in data:
                raise ValueError("use either 'command' or 'commands', not both")
            data["command"] = data.pop("commands")
        return data

    @field_validator("command", "artifact_paths", mode="before")
    @classmethod
    def _str_or_list(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, v: Any) -> Any:
        return _stringify_map(v)

    @field_validator("agents", mode="before")
    @classmethod
    def _agents(cls, v: Any) -> Any:
        return parse_agents(v)

    @model_validator(mode="after")
    def _check_combinations(self) -> "CommandStep":
        if self.concurrency is not None and not self.concurrency_group:
            raise ValueError("'concurrency' requires 'concurrency_group'")
        if self.matrix is not None and self.parallelism is not None:
            raise ValueError("'matrix' and 'parallelism' cannot be combined")
        return self

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout_in_minutes is None:
            return None
        return self.timeout_in_minutes * 60.0


class BlockStep(BaseStep):
    kind: ClassVar[str] = "block"

    block: str
    blocked_state: Literal["passed", "failed", "running"] = "running"
    fields: List[InputField] = Field(default_factory=list)
    prompt: Optional[str] = None


class InputStep(BaseStep):
    kind: ClassVar[str] = "input"

    input: str
    fields: List[InputField] = Field(default_factory=list)
    prompt: Optional[str] = None


class WaitStep(BaseStep):
    kind: ClassVar[str] = "wait"

    wait: Optional[str] = None
    continue_on_failure: bool = False


class TriggerBuild(_Model):
    branch: Optional[str] = None
    commit: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    message: Optional[str] = None
    meta_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, v: Any) -> Any:
        return _stringify_map(v)


class TriggerStep(BaseStep):
    kind: ClassVar[str] = "trigger"

    trigger: str = Field(pattern=TRIGGER_PATTERN)
    build: Optional[TriggerBuild] = None
    async_: bool = Field(False, alias="async")
    label: Optional[str] = None


def _present_tags(value: Dict[str, Any]) -> List[str]:
    tags = [t for t in STEP_TAGS if t in value]
    if "commands" in value and "command" not in tags:
        tags.append("command")
    return tags


def _step_tag(value: Any) -> Optional[str]:
    if isinstance(value, BaseStep):
        return value.kind
    if isinstance(value, dict):
        tags = _present_tags(value)
        if len(tags) == 1:
            return tags[0]
    return None


def _check_step_shape(value: Any) -> Any:
    if value == "wait":
        return {"wait": None}
    if isinstance(value, dict):
        tags = _present_tags(value)
        if not tags:
            raise PydanticCustomError(
                "unknown_step_type",
                "step has none of the variant keys {tags}",
                {"tags": ", ".join(STEP_TAGS)},
            )
        if len(tags) > 1:
            raise PydanticCustomError(
                "ambiguous_step_type",
                "step is ambiguous: it matches {tags}",
                {"tags": ", ".join(tags)},
            )
    return value


_LEAF_VARIANTS = (
    Annotated[CommandStep, Tag("command")],
    Annotated[BlockStep, Tag("block")],
    Annotated[InputStep, Tag("input")],
    Annotated[WaitStep, Tag("wait")],
    Annotated[TriggerStep, Tag("trigger")],
)

GroupChild = Annotated[
    Union[_LEAF_VARIANTS],
    Discriminator(_step_tag),
    BeforeValidator(_check_step_shape),
]


class GroupStep(BaseStep):
    kind: ClassVar[str] = "group"

    group: Optional[str] = None
    label: Optional[str] = None
    steps: List[GroupChild] = Field(min_length=1)

    def to_document(self) -> Dict[str, Any]:
        data = super().to_document()
        data["steps"] = [s.to_document() for s in self.steps]
        return data


Step = Annotated[
    Union[_LEAF_VARIANTS + (Annotated[GroupStep, Tag("group")],)],
    Discriminator(_step_tag),
    BeforeValidator(_check_step_shape),
]

NOTIFY_SERVICES = (
    "email",
    "basecamp_campfire",
    "slack",
    "webhook",
    "pagerduty_change_event",
    "github_commit_status",
    "github_check",
)


def _check_notification(value: Any) -> Any:
    if isinstance(value, str):
        if value not in ("github_check", "github_commit_status"):
            raise ValueError(f"unknown notification {value!r}")
        return value
    if isinstance(value, dict):
        services = [k for k in value if k != "if"]
        if len(services) != 1 or services[0] not in NOTIFY_SERVICES:
            raise ValueError(f"notification must name exactly one of {', '.join(NOTIFY_SERVICES)}")
        return value
    raise ValueError("notification must be a string or a mapping")


Notification = Annotated[Union[str, Dict[str, Any]], BeforeValidator(_check_notification)]


class Pipeline(_Model):
    env: Dict[str, str] = Field(default_factory=dict)
    agents: Dict[str, str] = Field(default_factory=dict)
    notify: List[Notification] = Field(default_factory=list)
    steps: List[Step] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _env_strings(cls, v: Any) -> Any:
        return _stringify_map(v)

    @field_validator("agents", mode="before")
    @classmethod
    def _agents(cls, v: Any) -> Any:
        return parse_agents(v)

    @model_validator(mode="after")
    def _unique_keys(self) -> "Pipeline":
        seen: set[str] = set()
        dupes: List[str] = []
        for step in self.walk():
            if step.key is None:
                continue
            if step.key in seen:
                dupes.append(step.key)
            seen.add(step.key)
        if dupes:
            raise ValueError(f"duplicate step key(s): {sorted(set(dupes))}")
        return self

    def walk(self):
        """Every step, groups first then their children, in document order."""
        for step in self.steps:
            yield step
            if isinstance(step, GroupStep):
                yield from step.steps

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.env:
            data["env"] = dict(self.env)
        if self.agents:
            data["agents"] = dict(self.agents)
        if self.notify:
            data["notify"] = list(self.notify)
        data["steps"] = [s.to_document() for s in self.steps]
        return data
