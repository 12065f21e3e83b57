# runner.py
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from . import git
from .agents import AgentTarget, Platform, SandboxKind, merge_agents, resolve_target
from .builder.base import Builder
from .conditions import BuildContext, should_run
from .config import SandciConfig
from .dag import Plan, StepNode, plan_pipeline
from .dispatch import StepHandlers, match_step
from .errors import CommandTimeout, DependencyError, ProcessError, ProvisionError, SchemaError, TransferError
from .model import CommandStep, Pipeline, SelectInput, TriggerStep
from .process import ExecOptions, run_shell, signal_name
from .sandbox.context import STEP_ENV
from .sandbox.lifecycle import LifecycleManager
from .sandbox.workspace import workspace_scope
from .schema import DECODERS, parse_pipeline_file
from .ui.console import get_console

PASSED = "passed"
FAILED = "failed"
SOFT_FAILED = "soft_failed"
SKIPPED = "skipped"
BROKEN = "broken"
BLOCKED = "blocked"

# Outcomes that break dependents unless the edge tolerates failure.
FAILING = {FAILED, BROKEN, BLOCKED}

MAX_TRIGGER_DEPTH = 8

# Block/input resolution: values per field key, or None to leave it blocked.
UnblockCallback = Callable[[StepNode], Optional[Dict[str, str]]]


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    step: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


# ----------------------------------------------------------------------
# Pipeline loading
# ----------------------------------------------------------------------

def resolve_pipeline_ref(ref: str, pipelines_dir: str | Path) -> Path:
    """
    A pipeline reference is a path, or a bare name looked up as
    <pipelines_dir>/<name>.yml|.yaml|.json
    """
    p = Path(ref).expanduser()
    if p.suffix and p.exists():
        return p.resolve()
    base = Path(pipelines_dir)
    for ext in DECODERS:
        candidate = base / f"{ref}{ext}"
        if candidate.is_file():
            return candidate.resolve()
    if p.suffix:
        # Let the schema layer report the bad extension / missing file.
        return p
    raise SchemaError([f"no pipeline named {ref!r} in {base}"], source=ref)


def load_pipeline(path: str | Path) -> Pipeline:
    return parse_pipeline_file(path)


def make_build_context(
    env: Optional[Mapping[str, str]] = None,
    branch: Optional[str] = None,
    cwd: Optional[str] = None,
) -> BuildContext:
    """Build facts from the CI backend when there is one, otherwise from git."""
    env = dict(os.environ if env is None else env)
    if env.get("BUILDKITE", "").lower() == "true":
        pr = env.get("BUILDKITE_PULL_REQUEST")
        return BuildContext(
            branch=branch or env.get("BUILDKITE_BRANCH"),
            tag=env.get("BUILDKITE_TAG") or None,
            commit=env.get("BUILDKITE_COMMIT"),
            message=env.get("BUILDKITE_MESSAGE"),
            source=env.get("BUILDKITE_SOURCE", "api"),
            pull_request_id=None if pr in (None, "", "false") else pr,
            env=env,
        )
    facts = git.facts(cwd)
    return BuildContext(
        branch=branch or facts["branch"],
        tag=facts["tag"],
        commit=facts["commit"],
        message=facts["message"],
        source="local",
        env=env,
    )


def soft_fails(soft_fail, exit_code: int) -> bool:
    if soft_fail is True:
        return True
    if not soft_fail:
        return False
    return any(rule.exit_status == "*" or rule.exit_status == exit_code for rule in soft_fail)


def _skip_reason(skip) -> Optional[str]:
    if skip is True:
        return "skip"
    if isinstance(skip, str) and skip:
        return skip
    return None


def auto_unblock(node: StepNode) -> Dict[str, str]:
    """--auto-unblock: every field takes its default (empty when it has none)."""
    values: Dict[str, str] = {}
    for f in getattr(node.step, "fields", []):
        default = f.default
        if isinstance(default, list):
            default = ",".join(default)
        values[f.key] = default or ""
    return values


@dataclass
class RunOptions:
    steps: List[str] = field(default_factory=list)
    dry_run: bool = False
    # argv of this invocation, replayed inside sandboxes
    argv: List[str] = field(default_factory=lambda: ["sandci"])
    workspace: Path = field(default_factory=Path.cwd)
    unblock: Optional[UnblockCallback] = None
    trigger_stack: List[str] = field(default_factory=list)


class PipelineRunner:
    """
    Runs one pipeline on this host.

    Single control thread: the ready/indegree loop below picks the next step
    whose dependencies are all terminal, runs it to completion, then unlocks
    its dependents.
    """

    def __init__(
        self,
        config: SandciConfig,
        builder: Builder,
        manager: LifecycleManager,
        build: BuildContext,
        options: Optional[RunOptions] = None,
    ):
        self.config = config
        self.builder = builder
        self.manager = manager
        self.build = build
        self.options = options or RunOptions()
        self.pipeline: Optional[Pipeline] = None
        self.targets: Dict[str, AgentTarget] = {}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def prepare(self, pipeline: Pipeline) -> tuple[Plan, Dict[str, AgentTarget]]:
        """Everything that can fail before a single side effect happens."""
        plan = plan_pipeline(pipeline)
        targets: Dict[str, AgentTarget] = {}
        for nid, node in plan.nodes.items():
            if isinstance(node.step, CommandStep):
                agents = merge_agents(pipeline.agents, node.step.agents)
                targets[nid] = resolve_target(agents, remotes=self.config.remotes(), step=nid)
        for key in self.options.steps:
            if key not in plan.nodes and not any(n.startswith(f"{key}[") for n in plan.nodes):
                raise DependencyError(f"--step names unknown step '{key}'", key, known=sorted(plan.nodes))
        return plan, targets

    def _selected(self, node: StepNode) -> bool:
        if not self.options.steps:
            return True
        return any(node.id == k or node.id.startswith(f"{k}[") for k in self.options.steps)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, pipeline: Pipeline, name: str = "pipeline") -> Dict[str, str]:
        plan, targets = self.prepare(pipeline)
        self.pipeline = pipeline
        self.targets = targets
        console = get_console()
        console.print_run_started(name, len(plan.nodes), self.builder.name)

        position = {nid: i for i, nid in enumerate(plan.nodes)}
        indeg = dict(plan.indeg)
        ready: List[str] = sorted((n for n, d in indeg.items() if d == 0), key=position.get)
        results: Dict[str, str] = {}

        try:
            while ready:
                nid = ready.pop(0)
                node = plan.nodes[nid]
                results[nid] = self._run_node(node, results)

                unlocked = []
                for nxt in plan.adj[nid]:
                    indeg[nxt] -= 1
                    if indeg[nxt] == 0:
                        unlocked.append(nxt)
                ready = sorted(ready + unlocked, key=position.get)
        finally:
            self.manager.shutdown()

        console.print_results(results)
        return results

    def _broken_by(self, node: StepNode, results: Mapping[str, str]) -> List[str]:
        if node.allow_dependency_failure:
            return []
        return [e.source for e in node.edges if results.get(e.source) in FAILING and not e.allow_failure]

    def _run_node(self, node: StepNode, results: Mapping[str, str]) -> str:
        console = get_console()
        broken_by = self._broken_by(node, results)
        if broken_by:
            console.print_step_skipped(node.label, f"dependency failed: {', '.join(broken_by)}")
            return BROKEN
        if not self._selected(node):
            console.print_step_skipped(node.label, "not selected")
            return SKIPPED
        if not should_run(node.if_exprs, node.branch_filters, self.build, step=node.id):
            console.print_step_skipped(node.label, "condition not met")
            return SKIPPED
        if self.options.dry_run:
            where = self._where(node)
            console.print_step_skipped(node.label, f"dry run{', ' + where if where else ''}")
            return SKIPPED

        handlers = StepHandlers(
            command=lambda s: self._run_command(node, s),
            block=lambda s: self._run_block(node, s),
            input=lambda s: self._run_block(node, s),
            wait=lambda s: PASSED,
            trigger=lambda s: self._run_trigger(node, s),
        )
        return match_step(node.step, handlers)

    def _where(self, node: StepNode) -> Optional[str]:
        target = self.targets.get(node.id)
        if target is None:
            return None
        return f"{target.platform.value}/{target.sandbox.value}@{target.host}"

    # -- command steps -------------------------------------------------

    def step_env(self, node: StepNode) -> Dict[str, str]:
        env: Dict[str, str] = dict(self.pipeline.env)
        env.update(node.step.env)
        env.update({
            "CI": "true",
            "SANDCI": "true",
            "SANDCI_STEP_KEY": node.id,
            "SANDCI_BRANCH": self.build.branch or "",
            "SANDCI_COMMIT": self.build.commit or "",
        })
        return env

    def run_commands(
        self,
        node: StepNode,
        target: AgentTarget,
        cwd: Path,
        timeout: Optional[float],
    ) -> int:
        """Each command line is one process, run in order; stops at the first failure."""
        step: CommandStep = node.step
        console = get_console()
        deadline = None if timeout is None else time.monotonic() + timeout
        shell = "windows" if target.platform is Platform.WINDOWS else "posix"
        for line in step.command:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            console.print_command(line)
            code = run_shell(
                line,
                ExecOptions(
                    cwd=str(cwd),
                    env=self.step_env(node),
                    ignore_return_code=True,
                    timeout=remaining,
                    listeners=self.builder.listeners(),
                ),
                platform=shell,
            )
            if code != 0:
                return code
        return 0

    def _attempt(self, node: StepNode, target: AgentTarget) -> int:
        step: CommandStep = node.step
        workspace = self.options.workspace
        if self.manager.requires_entry(target):
            env = self.manager.environment(target)
            with env.session(workspace):
                return env.run_nested(
                    self.options.argv,
                    node.id,
                    timeout=step.timeout_seconds,
                    listeners=self.builder.listeners(),
                )
        if self.manager.is_nested(target):
            with workspace_scope(self.manager.context, workspace, self.manager.commands) as path:
                return self.run_commands(node, target, path, step.timeout_seconds)
        return self.run_commands(node, target, workspace, step.timeout_seconds)

    def _run_command(self, node: StepNode, step: CommandStep) -> str:
        console = get_console()
        reason = _skip_reason(step.skip)
        if reason:
            console.print_step_skipped(node.label, reason)
            return SKIPPED

        target = self.targets[node.id]
        console.print_step_start(node.label, self._where(node))
        attempts: Dict[int, int] = {}

        with self.builder.group(node.label):
            while True:
                try:
                    code = self._attempt(node, target)
                except CommandTimeout as e:
                    console.print_warning(f"{node.label}: timed out after {e.timeout:g}s")
                    code = e.exit_code
                except (ProvisionError, TransferError) as e:
                    # No exit status: neither retry rules nor soft_fail apply.
                    console.print_failure(node.label, str(e), hint=e.details.get("hint"))
                    return FAILED
                except ProcessError as e:
                    console.print_failure(node.label, str(e), exit_code=e.exit_code, hint=e.details.get("hint"))
                    return FAILED

                if code == 0:
                    outcome = PASSED
                    break

                rule = step.retry.rule_for(code, signal_name(code)) if step.retry else None
                if rule is not None:
                    used = attempts.get(id(rule), 0)
                    if used < rule.limit:
                        attempts[id(rule)] = used + 1
                        console.print_retry(node.label, used + 1, rule.limit, code)
                        continue

                if soft_fails(step.soft_fail, code):
                    outcome = SOFT_FAILED
                else:
                    failure = StepFailure(step=node.id, cmd="; ".join(step.command), exit_code=code)
                    console.print_failure(node.label, str(failure), exit_code=code)
                    outcome = FAILED
                break

        self._upload_artifacts(node, step)
        console.print_status(node.label, outcome)
        return outcome

    def _upload_artifacts(self, node: StepNode, step: CommandStep) -> None:
        for path in step.artifact_paths:
            try:
                self.builder.upload_artifact(path)
            except TransferError as e:
                get_console().print_warning(f"{node.label}: {e.message} [{path}]")

    # -- block / input steps -------------------------------------------

    def _run_block(self, node: StepNode, step) -> str:
        console = get_console()
        title = getattr(step, "block", None) or getattr(step, "input", None) or node.id
        console.print_step_start(title)
        unblock = self.options.unblock
        values = unblock(node) if unblock is not None else None
        if values is None:
            console.print_status(title, BLOCKED, step.prompt)
            return BLOCKED
        for f in step.fields:
            if f.key not in values:
                continue
            if f.required and not values[f.key]:
                console.print_warning(f"{title}: required field {f.key} left empty")
                return BLOCKED
            if isinstance(f, SelectInput):
                allowed = {o.value for o in f.options}
                chosen = [v for v in values[f.key].split(",") if v] if f.multiple else [values[f.key]]
                bad = [v for v in chosen if v and v not in allowed]
                if bad:
                    console.print_warning(f"{title}: {f.key} must be one of {sorted(allowed)}, got {bad}")
                    return BLOCKED
            self.builder.set_metadata(f.key, values[f.key])
        console.print_status(title, PASSED)
        return PASSED

    # -- trigger steps -------------------------------------------------

    def _run_trigger(self, node: StepNode, step: TriggerStep) -> str:
        console = get_console()
        stack = self.options.trigger_stack
        if step.trigger in stack or len(stack) >= MAX_TRIGGER_DEPTH:
            raise DependencyError("recursive trigger", step.trigger, chain=" -> ".join(stack + [step.trigger]))

        console.print_step_start(step.label or f"trigger {step.trigger}")
        path = resolve_pipeline_ref(step.trigger, self.config.runner.pipelines_dir)
        child = load_pipeline(path)

        build = self.build
        if step.build is not None:
            env = dict(build.env)
            env.update(step.build.env)
            build = replace(
                build,
                branch=step.build.branch or build.branch,
                commit=step.build.commit or build.commit,
                message=step.build.message or build.message,
                source="trigger_job",
                env=env,
            )
            child = child.model_copy(update={"env": {**child.env, **step.build.env}})
            for k, v in step.build.meta_data.items():
                self.builder.set_metadata(k, v if isinstance(v, str) else str(v))

        options = replace(self.options, steps=[], trigger_stack=stack + [step.trigger])
        runner = PipelineRunner(self.config, self.builder, self.manager, build, options)
        results = runner.run(child, name=step.trigger)

        failed = sorted(k for k, v in results.items() if v in FAILING)
        if not failed:
            return PASSED
        if step.async_:
            console.print_warning(f"triggered pipeline {step.trigger} failed: {', '.join(failed)}")
            return PASSED
        return FAILED


# ----------------------------------------------------------------------
# Nested side
# ----------------------------------------------------------------------

def run_nested_step(
    pipeline: Pipeline,
    step_id: str,
    config: SandciConfig,
    builder: Builder,
    manager: LifecycleManager,
    build: BuildContext,
    workspace: Path,
) -> int:
    """
    Inside a sandbox, SANDCI_STEP names the one step to run. Its exit code
    becomes this process's exit code; retry and soft_fail are decided outside.
    """
    runner = PipelineRunner(config, builder, manager, build, RunOptions(workspace=workspace))
    plan, targets = runner.prepare(pipeline)
    node = plan.nodes.get(step_id)
    if node is None or not isinstance(node.step, CommandStep):
        raise DependencyError(f"{STEP_ENV} names no command step", step_id)
    runner.pipeline = pipeline
    runner.targets = targets

    target = targets[step_id]
    if target.sandbox is not SandboxKind.NONE and not manager.is_nested(target):
        raise ProvisionError("nested invocation is not inside the expected sandbox", step_id, context=manager.context.value)
    with workspace_scope(manager.context, workspace, manager.commands) as path:
        return runner.run_commands(node, target, path, timeout=None)
