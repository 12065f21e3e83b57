# cli.py
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import click

from sandci.builder import Redactor, select_builder
from sandci.config import load_config
from sandci.dag import plan_pipeline
from sandci.errors import CIError, SchemaError
from sandci.model import SelectInput
from sandci.runner import (
    FAILING,
    PipelineRunner,
    RunOptions,
    auto_unblock,
    load_pipeline,
    make_build_context,
    resolve_pipeline_ref,
    run_nested_step,
)
from sandci.sandbox import ExecutionContext, LifecycleManager, detect_context
from sandci.sandbox.context import STEP_ENV
from sandci.schema import dump_pipeline
from sandci.secrets import EnvSecretProvider, SecretsSession
from sandci.ui.console import LEVELS, Console, get_console, set_console

DEFAULT_PIPELINES = ("pipeline.yml", "pipeline.yaml", ".sandci/pipeline.yml", ".sandci/pipeline.yaml")


def find_pipeline_files() -> list[Path]:
    """
    Find pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_PIPELINES if (current_dir / name).exists()]
    if found:
        return found[:1]
    return sorted(current_dir.glob("*.pipeline.yml")) + sorted(current_dir.glob("*.pipeline.yaml"))


def discover_pipeline(pipeline_arg: str | None, pipelines_dir: str) -> Path:
    """
    Pipeline file from argument, or the single default one in the current directory.

    Raises:
        SystemExit: If no pipeline (or more than one) can be found
    """
    console = get_console()

    if pipeline_arg:
        return resolve_pipeline_ref(pipeline_arg, pipelines_dir)

    pipeline_files = find_pipeline_files()

    if len(pipeline_files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_PIPELINES], "  *.pipeline.yml"],
            suggestion="Create pipeline.yml or specify a pipeline explicitly:\n  sandci run path/to/pipeline.yml",
        )
        sys.exit(1)

    if len(pipeline_files) > 1:
        file_list = "\n".join(f"  {f}" for f in pipeline_files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  sandci run release.pipeline.yml",
        )
        sys.exit(1)

    return pipeline_files[0]


def report(exc: CIError) -> None:
    console = get_console()
    details: List[str] = []
    if exc.subject:
        details.append(str(exc.subject))
    if isinstance(exc, SchemaError):
        details.extend(exc.violations)
    details.extend(f"{k}={v}" for k, v in exc.details.items() if k != "hint")
    console.print_error(exc.kind, exc.message, details=details, suggestion=exc.details.get("hint"))
    if console.debug:
        console.print_exception(exc)


def prompt_unblock(node) -> Optional[Dict[str, str]]:
    """Interactive block/input resolution. Without a terminal the step stays blocked."""
    if not sys.stdin.isatty():
        return None
    step = node.step
    title = getattr(step, "block", None) or getattr(step, "input", None) or node.id
    if step.prompt:
        click.echo(step.prompt)
    if not click.confirm(f"Unblock '{title}'?", default=True):
        return None
    values: Dict[str, str] = {}
    for f in step.fields:
        label = (f.select if isinstance(f, SelectInput) else f.text) or f.key
        default = f.default
        if isinstance(default, list):
            default = ",".join(default)
        if isinstance(f, SelectInput) and not f.multiple:
            kind = click.Choice([o.value for o in f.options])
        else:
            kind = click.STRING
        values[f.key] = click.prompt(label, default=default or ("" if not f.required else None), type=kind, show_default=True)
    return values


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--log-level",
    type=click.Choice(list(LEVELS)),
    default=None,
    help="Minimum message level (defaults to SANDCI_LOG_LEVEL or info)",
)
@click.option("--config", "config_path", default=None, help="Path to sandci.toml")
@click.pass_context
def cli(ctx, debug, log_level, config_path):
    """sandci: declarative CI pipelines in throwaway containers and VMs."""
    console = Console(debug=debug, level=log_level or os.environ.get("SANDCI_LOG_LEVEL", "info"))
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["config"] = load_config(config_path)
    except CIError as e:
        report(e)
        sys.exit(1)


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--step", "steps", multiple=True, help="Only run this step key (repeatable)")
@click.option("--branch", default=None, help="Branch used for `branches` and `if` (defaults to git)")
@click.option("--dry-run", is_flag=True, default=False, help="Resolve and print, run nothing")
@click.option("--auto-unblock", "auto", is_flag=True, default=False, help="Resolve block/input steps with field defaults")
@click.pass_context
def run(ctx, pipeline, steps, branch, dry_run, auto):
    """Run a pipeline."""
    console = get_console()
    config = ctx.obj["config"]
    context = detect_context()
    workspace = Path.cwd()

    try:
        pipeline_path = discover_pipeline(pipeline, config.runner.pipelines_dir)
        parsed = load_pipeline(pipeline_path)

        redactor = Redactor()
        with SecretsSession(EnvSecretProvider(), redactor=redactor.add) as secrets:
            secrets.load_all()
            builder = select_builder(config, secrets=secrets, redactor=redactor)
            build = make_build_context(branch=branch, cwd=str(workspace))
            manager = LifecycleManager(context, config)

            nested_step = os.environ.get(STEP_ENV)
            if nested_step and context is not ExecutionContext.HOST:
                code = run_nested_step(parsed, nested_step, config, builder, manager, build, workspace)
                sys.exit(code)

            options = RunOptions(
                steps=list(steps),
                dry_run=dry_run,
                argv=["sandci", *sys.argv[1:]],
                workspace=workspace,
                unblock=auto_unblock if auto else prompt_unblock,
            )
            runner = PipelineRunner(config, builder, manager, build, options)
            results = runner.run(parsed, name=pipeline_path.name)

        if any(v in FAILING for v in results.values()):
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        report(e)
        sys.exit(1)


@cli.command()
@click.argument("pipeline", required=False)
@click.pass_context
def validate(ctx, pipeline):
    """Validate a pipeline and print a summary."""
    console = get_console()
    config = ctx.obj["config"]
    try:
        pipeline_path = discover_pipeline(pipeline, config.runner.pipelines_dir)
        parsed = load_pipeline(pipeline_path)
        plan = plan_pipeline(parsed)
    except CIError as e:
        report(e)
        sys.exit(1)

    kinds: Dict[str, int] = {}
    for node in plan.nodes.values():
        kinds[node.kind] = kinds.get(node.kind, 0) + 1
    console.print_info(f"{pipeline_path}: valid")
    console.print_info(f"  steps: {len(plan.nodes)} ({', '.join(f'{k}={v}' for k, v in sorted(kinds.items()))})")
    console.print_info(f"  levels: {len(plan.levels)}")


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--branch", default=None, help="Branch used for `branches` and `if` (defaults to git)")
@click.pass_context
def plan(ctx, pipeline, branch):
    """Print execution levels and the platform each step resolves to."""
    console = get_console()
    config = ctx.obj["config"]
    try:
        pipeline_path = discover_pipeline(pipeline, config.runner.pipelines_dir)
        parsed = load_pipeline(pipeline_path)
        manager = LifecycleManager(detect_context(), config)
        build = make_build_context(branch=branch)
        runner = PipelineRunner(config, select_builder(config), manager, build)
        execution, targets = runner.prepare(parsed)
    except CIError as e:
        report(e)
        sys.exit(1)

    console.print_header(f"PLAN: {pipeline_path.name}")
    for i, level in enumerate(execution.levels, start=1):
        entries = []
        for nid in level:
            node = execution.nodes[nid]
            target = targets.get(nid)
            where = f" -> {target.platform.value}/{target.sandbox.value}@{target.host}" if target else ""
            entries.append(f"{nid} [{node.kind}]{where}")
        console.print_plan_level(i, entries)


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--format", "fmt", type=click.Choice(["yaml", "json"]), default="yaml", show_default=True)
@click.pass_context
def dump(ctx, pipeline, fmt):
    """Print the normalized pipeline document."""
    config = ctx.obj["config"]
    try:
        pipeline_path = discover_pipeline(pipeline, config.runner.pipelines_dir)
        parsed = load_pipeline(pipeline_path)
    except CIError as e:
        report(e)
        sys.exit(1)
    click.echo(dump_pipeline(parsed, fmt), nl=False)


if __name__ == "__main__":
    cli()
