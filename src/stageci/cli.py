# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import threading
from pathlib import Path

import click

from .artifacts import prune_expired
from .cache import CacheManager
from .conditions import EVENT_PUSH, EVENT_TAG, EVENTS, TriggerContext
from .config import EngineConfig
from .driver import ExecutionDriver
from .errors import DefinitionError
from .git_facts.git import trigger_from_checkout
from .graph import build_graph
from .loader import load_pipeline
from .observability import setup_logging
from .provision import get_provisioner
from .scheduler import Scheduler, new_run_id
from .ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("stageci_pipeline.py", "stageci_pipeline.json")


def find_pipeline_files(directory: Path = Path(".")) -> list[Path]:
    """Default pipeline files plus any *_pipeline.py / *_pipeline.json."""
    found = {directory / name for name in DEFAULT_PIPELINE_FILES if (directory / name).exists()}
    for pattern in ("*_pipeline.py", "*_pipeline.json"):
        found.update(directory.glob(pattern))
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the --pipeline option or by discovery.

    Raises:
        SystemExit: If no file, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix not in (".py", ".json"):
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify a different path:\n  stageci run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES), "  *_pipeline.py", "  *_pipeline.json"],
            suggestion="Create stageci_pipeline.py or pass --pipeline PATH",
        )
        sys.exit(1)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion="stageci run --pipeline stageci_pipeline.py",
        )
        sys.exit(1)
    return files[0]


def _load_graph(ctx: click.Context, pipeline_arg: str | None):
    """Load and validate; definition problems exit with code 2."""
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        pipeline = load_pipeline(path)
        return path, build_graph(pipeline)
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e), details=[f"file: {path}"])
        sys.exit(2)
    except (TypeError, ValueError) as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(2)


def _trigger(
    ref: str | None,
    tag: str | None,
    event: str | None,
    default_branch: str,
    use_git: bool,
    changed: tuple[str, ...],
    compare_ref: str | None,
) -> TriggerContext:
    if tag:
        return TriggerContext.for_tag(tag, default_branch=default_branch)
    if ref is None and use_git:
        try:
            found = trigger_from_checkout(default_branch=default_branch, compare_ref=compare_ref)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise click.UsageError(f"Could not read git state ({e}); pass --ref or --tag") from e
        if event is None and not changed:
            return found
        ref = found.ref
        if found.is_tag:
            return TriggerContext.for_tag(found.tag, default_branch=default_branch)
    if ref is None:
        raise click.UsageError("No trigger: pass --ref/--tag, or run inside a git checkout with --git")
    if event == EVENT_TAG:
        return TriggerContext.for_tag(ref, default_branch=default_branch)
    return TriggerContext.for_branch(
        ref,
        event=event or EVENT_PUSH,
        default_branch=default_branch,
        changed_files=list(changed) if changed else None,
    )


def trigger_options(f):
    options = [
        click.option("--ref", default=None, help="Branch the run is for (defaults to the current git branch)"),
        click.option("--tag", default=None, help="Run as a tag trigger for TAG"),
        click.option("--event", type=click.Choice(sorted(EVENTS)), default=None, help="Trigger event (default: push)"),
        click.option("--default-branch", default=None, envvar="STAGECI_DEFAULT_BRANCH", help="Name of the default branch"),
        click.option("--git/--no-git", "use_git", default=True, show_default=True, help="Derive the trigger from the local checkout"),
        click.option("--changed", multiple=True, help="Changed file (repeatable), for `changes` conditions"),
        click.option("--compare-ref", default=None, help="Git ref to diff against for changed files"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and detailed output")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    envvar="STAGECI_LOG_LEVEL",
    show_default=True,
)
@click.option("--log-json", is_flag=True, default=False, help="Emit diagnostic logs as JSON lines")
@click.pass_context
def cli(ctx, debug, log_level, log_json):
    """stageci: staged, cache-aware CI pipeline runner."""
    set_console(Console(debug=debug))
    setup_logging("DEBUG" if debug else log_level, json_format=log_json)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["config"] = EngineConfig.from_env()
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e), suggestion="Fix or unset the STAGECI_* variable.")
        sys.exit(2)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (defaults to stageci_pipeline.py if present)")
@trigger_options
@click.option("--workers", default=None, type=int, help="Max parallel jobs per stage")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Skip later stages after a failed stage (default: on)")
@click.option("--provisioner", type=click.Choice(["local", "docker"]), default=None, help="Where steps run")
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="Work, cache, artifact and log root")
@click.option("--source-dir", default=".", type=click.Path(file_okay=False, exists=True), help="Tree copied into job workspaces")
@click.option("--json-output", default=None, type=click.Path(dir_okay=False), help="Write the run result as JSON")
@click.pass_context
def run(ctx, pipeline_arg, ref, tag, event, default_branch, use_git, changed, compare_ref,
        workers, fail_fast, provisioner, state_dir, source_dir, json_output):
    """Run a pipeline."""
    console = get_console()
    config: EngineConfig = ctx.obj["config"].with_overrides(
        state_dir=state_dir,
        max_workers=workers,
        fail_fast=fail_fast,
        provisioner=provisioner,
        default_branch=default_branch,
    )

    path, graph = _load_graph(ctx, pipeline_arg)
    trigger = _trigger(ref, tag, event, config.default_branch, use_git, changed, compare_ref)

    kwargs = {"default_image": config.docker_default_image} if config.provisioner == "docker" else {}
    driver = ExecutionDriver(
        get_provisioner(config.provisioner, **kwargs),
        CacheManager(config.cache_dir),
        source_dir=source_dir,
        work_root=config.work_dir,
        log_root=config.log_dir,
        console=console,
    )
    scheduler = Scheduler(
        graph,
        driver,
        artifact_root=config.artifact_dir,
        fail_fast=config.fail_fast,
        max_workers=config.max_workers,
        console=console,
    )

    run_id = new_run_id()
    cancel_event = threading.Event()
    console.print_run_started(
        pipeline=f"{graph.pipeline.name} ({path.name})",
        run_id=run_id,
        trigger=f"{trigger.event} {trigger.ref}",
        job_count=len(graph.pipeline.jobs),
    )

    # the scheduler runs in a worker thread so Ctrl-C can cancel it
    holder: dict = {}

    def _target():
        try:
            holder["result"] = scheduler.run(trigger, run_id=run_id, cancel_event=cancel_event)
        except BaseException as e:  # re-raised on the main thread
            holder["error"] = e

    worker = threading.Thread(target=_target, name="stageci-run")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run...")
        cancel_event.set()
        worker.join()

    if "error" in holder:
        console.print_exception(holder["error"])
        sys.exit(1)

    result = holder["result"]
    console.print_results(result)
    if json_output:
        Path(json_output).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    sys.exit(result.exit_code)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file")
@click.pass_context
def validate(ctx, pipeline_arg):
    """Check a pipeline definition and list its stages."""
    console = get_console()
    path, graph = _load_graph(ctx, pipeline_arg)
    console.print_header(f"{graph.pipeline.name} ({path.name}) is valid")
    for stage, names in zip(graph.stages, graph.levels()):
        console.print_info(f"{stage.ordinal}. {stage.name}: {', '.join(names) if names else '(no jobs)'}")
        for name in names:
            if graph.job(name).no_dependencies:
                console.print_info(f"     {name} <- (none)")
            elif graph.job(name).dependencies is not None:
                console.print_info(f"     {name} <- {', '.join(graph.upstream(name))}")
            used_by = graph.dependents(name)
            if used_by:
                console.print_info(f"     {name} -> {', '.join(used_by)}")


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file")
@trigger_options
@click.pass_context
def plan(ctx, pipeline_arg, ref, tag, event, default_branch, use_git, changed, compare_ref):
    """Show which jobs a trigger would run, without running them."""
    console = get_console()
    config: EngineConfig = ctx.obj["config"].with_overrides(default_branch=default_branch)
    _, graph = _load_graph(ctx, pipeline_arg)
    trigger = _trigger(ref, tag, event, config.default_branch, use_git, changed, compare_ref)

    scheduler = Scheduler(graph, driver=None, artifact_root=config.artifact_dir, console=console)
    console.print_header(f"Plan for {trigger.event} {trigger.ref}")
    current = None
    for stage, name, decision in scheduler.plan(trigger):
        if stage != current:
            console.print_info(f"{stage}:")
            current = stage
        if decision.eligible:
            console.print_plan_job(name, decision.reason)
        else:
            console.print_plan_job_skipped(name, decision.reason)


@cli.command()
@click.option("--state-dir", default=None, type=click.Path(file_okay=False), help="Engine state root")
@click.option("--cache-max-age-days", default=30.0, show_default=True, type=float, help="Drop cache entries older than this")
@click.pass_context
def prune(ctx, state_dir, cache_max_age_days):
    """Delete expired artifacts and stale cache entries."""
    console = get_console()
    config: EngineConfig = ctx.obj["config"].with_overrides(state_dir=state_dir)
    removed_artifacts = prune_expired(config.artifact_dir)
    removed_cache = CacheManager(config.cache_dir).prune(cache_max_age_days)
    console.print_info(f"Removed {len(removed_artifacts)} expired artifact(s), {len(removed_cache)} stale cache entries")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
