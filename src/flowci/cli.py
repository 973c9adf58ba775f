# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from flowci.controller import RunController, new_run_id, resolve_environment
from flowci.errors import DefinitionError, GraphError
from flowci.git import get_current_ref, get_remote_url, head_sha, repo_root, repository_slug
from flowci.graph import build_graph
from flowci.loader import load_definition
from flowci.model import PipelineDefinition, RunStatus, Trigger, TriggerEvent
from flowci.scheduler import SchedulerConfig
from flowci.settings import default_parallelism, host_environment, load_settings
from flowci.store import EventLog, FileEventLog, SqlEventLog
from flowci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 3
EXIT_CANCELLED = 130


def _load(path: str) -> PipelineDefinition:
    console = get_console()
    try:
        return load_definition(path)
    except DefinitionError as e:
        console.print_error("Invalid workflow", e.message, details=[f"{k}: {v}" for k, v in e.details.items()])
        sys.exit(EXIT_INVALID)


def _default_repository() -> str:
    console = get_console()
    try:
        return repository_slug(get_remote_url("origin"))
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug("No git remote 'origin'")
    try:
        root = str(repo_root())
        console.print_debug(f"No git remote, using local repository {root}")
        return root
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


def _default_ref() -> tuple[str, str | None]:
    try:
        return get_current_ref(), head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return "refs/heads/main", None


def _parse_inputs(pairs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--input")
        inputs[key] = value
    return inputs


def _event_log(events_dir: str | None, events_db: str | None) -> EventLog:
    settings = load_settings()
    db = events_db or settings.events_db
    if db:
        return SqlEventLog(db)
    return FileEventLog(events_dir or settings.events_dir)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: run CI pipelines as a DAG of steps."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--trigger",
    "event",
    type=click.Choice([e.value for e in TriggerEvent]),
    default=TriggerEvent.PUSH.value,
    show_default=True,
    help="Trigger event kind",
)
@click.option("--concurrency", default=None, type=int, help="Maximum number of steps running at once")
@click.option("--fail-fast/--no-fail-fast", default=True, help="Cancel remaining steps after the first failure")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--repo", default=None, help="Repository as owner/name, URL or path (defaults to git remote origin)")
@click.option("--token", envvar="GITHUB_TOKEN", default="", help="Token passed to steps as github.token")
@click.option("--input", "inputs", multiple=True, help="Dispatch input KEY=VALUE (repeatable)")
@click.option("--timeout", default=None, type=float, help="Per-step timeout in seconds")
@click.option("--events-dir", default=None, help="Directory for JSON-lines event logs")
@click.option("--events-db", default=None, help="SQLAlchemy URL for the event log (overrides --events-dir)")
@click.option("--keep-workspace", is_flag=True, default=False, help="Do not delete the run workspace")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def run(ctx, definition, event, concurrency, fail_fast, ref, repo, token, inputs, timeout,
        events_dir, events_db, keep_workspace, quiet):
    """Run a workflow definition (.yml, .yaml or .py)."""
    console = get_console()
    console.quiet = quiet
    settings = load_settings()

    pipeline = _load(definition)
    if ref is None:
        ref, sha = _default_ref()
    else:
        sha = None
    trigger = Trigger(
        event=TriggerEvent(event),
        repository=repo or _default_repository(),
        ref=ref,
        token=token,
        sha=sha,
        inputs=_parse_inputs(inputs),
    )

    if timeout is not None:
        settings = replace(settings, step_timeout=timeout)
    controller = RunController(
        settings=settings,
        scheduler_config=SchedulerConfig(
            max_workers=concurrency or settings.max_workers or default_parallelism(),
            fail_fast=fail_fast,
            step_timeout=timeout,
        ),
        event_log=_event_log(events_dir, events_db),
        host_env=host_environment(),
        keep_workspace=keep_workspace,
    )

    run_id = new_run_id()
    console.print_run_started(
        run_id=run_id,
        repository=trigger.repository,
        workflow=pipeline.name,
        trigger=f"{trigger.event.value} {trigger.ref}",
        step_count=pipeline.step_count,
    )
    handle = controller.start(pipeline, trigger, run_id=run_id)

    try:
        for ev in controller.events(handle, 0):
            console.render_event(ev)
        result = controller.wait(handle)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling run...")
        controller.cancel(handle, "interrupted")
        result = controller.wait(handle)
        console.print_results(result)
        sys.exit(EXIT_CANCELLED)

    if result.aborted:
        console.print_error("Invalid workflow", result.error or "definition rejected")
        sys.exit(EXIT_INVALID)

    console.print_results(result)
    if result.status == RunStatus.SUCCEEDED:
        sys.exit(EXIT_OK)
    if result.status == RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    if result.error:
        console.print_error("Run failed", result.error)
    sys.exit(EXIT_FAILED)


@cli.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--trigger",
    "event",
    type=click.Choice([e.value for e in TriggerEvent]),
    default=TriggerEvent.PUSH.value,
    show_default=True,
)
@click.option("--ref", default="refs/heads/main", show_default=True, help="Git ref used to evaluate trigger filters")
@click.option("--repo", default="local/repository", show_default=True)
def plan(definition, event, ref, repo):
    """Print the execution stages of a workflow without running it."""
    console = get_console()
    pipeline = _load(definition)
    trigger = Trigger(event=TriggerEvent(event), repository=repo, ref=ref)
    try:
        env = resolve_environment("plan", pipeline, trigger, host_env=host_environment())
        dag = build_graph(pipeline, env)
    except (DefinitionError, GraphError) as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_INVALID)
    console.print_info(f"Workflow: {pipeline.name} ({len(dag)} steps)")
    console.print_plan(dag)


@cli.command()
@click.argument("run_id")
@click.option("--from", "from_offset", default=0, type=int, show_default=True, help="First event offset to print")
@click.option("--events-dir", default=None, help="Directory of JSON-lines event logs")
@click.option("--events-db", default=None, help="SQLAlchemy URL of the event log")
def events(run_id, from_offset, events_dir, events_db):
    """Print the persisted event log of a run."""
    console = get_console()
    log = _event_log(events_dir, events_db)
    found = log.read(run_id, from_offset)
    if not found and run_id not in log.run_ids():
        console.print_error("Unknown run", f"No events recorded for run {run_id}")
        sys.exit(EXIT_FAILED)
    for ev in found:
        console.print_event_line(ev)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--events-dir", default=None, help="Directory for JSON-lines event logs")
@click.option("--events-db", default=None, help="SQLAlchemy URL for the event log")
def serve(host, port, events_dir, events_db):
    """Serve the HTTP control plane."""
    import uvicorn

    from flowci.server import create_app

    settings = load_settings()
    controller = RunController(
        settings=settings,
        event_log=_event_log(events_dir, events_db),
        host_env=host_environment(),
    )
    uvicorn.run(create_app(controller), host=host, port=port)


if __name__ == "__main__":
    cli()
