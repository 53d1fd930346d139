# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
import threading
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Set
from urllib.parse import urljoin

import click

from . import dag
from .actions import default_registry
from .cache import CacheStore
from .dispatcher import Dispatcher
from .errors import RunNotFound, ValidationError
from .executor import JobExecutor
from .git_facts.git import current_branch, head_sha
from .loader import load_pipeline
from .model import Event, EventKind, PipelineDefinition, RunStatus
from .recorder import RunRecorder
from .scheduler import Scheduler
from .secrets import EnvSecretStore, SecretProvider
from .settings import Settings
from .triggers import InMemoryEventQueue, RedisEventQueue, TriggerEvaluator
from .ui.console import Console

EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------
# Pipeline discovery
# ---------------------------------------------------------------------

def find_pipeline_files(root: Path = Path(".")) -> list[Path]:
    """
    Find pipeline files under root.

    Looks for pipewright.yml / pipewright.yaml, then *_pipeline.{yml,yaml,py},
    then .github/workflows/*.yml.
    """
    found: List[Path] = []
    for name in ("pipewright.yml", "pipewright.yaml"):
        if (root / name).exists():
            found.append(root / name)
    for pattern in ("*_pipeline.yml", "*_pipeline.yaml", "*_pipeline.py"):
        found.extend(sorted(root.glob(pattern)))
    if not found:
        workflows = root / ".github" / "workflows"
        found.extend(sorted(workflows.glob("*.yml")) + sorted(workflows.glob("*.yaml")))
    return found


def discover_pipeline(console: Console, pipeline_arg: str | None) -> Path:
    """
    Pipeline file from the --pipeline argument, or the single discovered one.

    Exits when the file is missing or discovery is ambiguous.
    """
    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify a different path:\n  pipewright run --pipeline pipewright.yml",
            )
            sys.exit(EXIT_FAILED)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  pipewright.yml",
                "  *_pipeline.yml / *_pipeline.py",
                "  .github/workflows/*.yml",
            ],
            suggestion="Create pipewright.yml or pass --pipeline explicitly.",
        )
        sys.exit(EXIT_FAILED)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in files],
            suggestion=f"  pipewright run --pipeline {files[0]}",
        )
        sys.exit(EXIT_FAILED)

    return files[0]


def load_all(console: Console, pipeline_args: tuple[str, ...]) -> List[PipelineDefinition]:
    """Every named pipeline, or every discovered one. Exits 2 on an invalid file."""
    paths = [Path(p) for p in pipeline_args] or find_pipeline_files()
    definitions = []
    for path in paths:
        try:
            definitions.append(load_pipeline(path))
        except ValidationError as e:
            console.print_error("Invalid pipeline", f"{path}: {e.message}", details=e.problems)
            sys.exit(EXIT_INVALID)
    return definitions


# ---------------------------------------------------------------------
# Option parsing
# ---------------------------------------------------------------------

def _parse_event_kind(ctx, param, value: str) -> EventKind:
    try:
        return EventKind.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def parse_grants(values: tuple[str, ...]) -> Optional[Dict[str, Set[str]]]:
    """('NUGET_TOKEN=build,test',) -> {'NUGET_TOKEN': {'build', 'test'}}; None if no grants given."""
    if not values:
        return None
    grants: Dict[str, Set[str]] = {}
    for item in values:
        name, sep, jobs = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=job1,job2, got {item!r}", param_hint="--grant")
        grants.setdefault(name.strip(), set()).update(j.strip() for j in jobs.split(",") if j.strip())
    return grants


def _default_branch() -> str:
    try:
        return current_branch()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return ""


def _default_sha() -> Optional[str]:
    try:
        return head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------

def build_scheduler(
    settings: Settings,
    console: Console,
    *,
    recorder: RunRecorder,
    workers: Optional[int] = None,
    cache_dir: Optional[str] = None,
    source_root: str = ".",
    keep_workspace: bool = False,
) -> Scheduler:
    executor = JobExecutor(
        registry=default_registry(),
        source_root=Path(source_root),
        work_root=Path(settings.work_dir),
        runners=settings.runners,
        keep_workspace=keep_workspace,
        echo=console.print_log_line,
    )
    cache = CacheStore(cache_dir or settings.cache_dir, max_bytes=settings.cache_max_bytes)
    # runs always pass their own provider; the default grants nothing
    secrets = SecretProvider(EnvSecretStore(prefix=settings.secret_prefix), grants={})
    return Scheduler(
        executor,
        secrets,
        cache,
        recorder=recorder,
        max_workers=workers or settings.max_workers,
        console=console,
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--db", default=None, help="Run database URL (defaults to $PIPEWRIGHT_DATABASE_URL or local SQLite)")
@click.pass_context
def cli(ctx, debug, db):
    """pipewright: DAG pipeline runner with scoped secrets and keyed caching."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    if db:
        settings.database_url = db
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["console"] = Console(debug=debug)
    ctx.obj["settings"] = settings


# ---------------------------------------------------------------------
# run / validate
# ---------------------------------------------------------------------

@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (.yml/.yaml/.py); discovered if omitted")
@click.option("--event", "event_kind", default="push", show_default=True, callback=_parse_event_kind,
              help="Event kind: push, pull_request or workflow_dispatch")
@click.option("--branch", default=None, help="Branch the event refers to (defaults to the current git branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--source", default=".", show_default=True, help="Source tree checked out into job workspaces")
@click.option("--grant", "grants", multiple=True, metavar="NAME=JOB[,JOB]",
              help="Grant a secret to jobs (repeatable); defaults to what each job references")
@click.option("--stream-logs/--no-stream-logs", default=False, help="Echo job output as it is produced")
@click.option("--keep-workspace", is_flag=True, default=False, help="Keep job workspaces for inspection")
@click.pass_context
def run(ctx, pipeline, event_kind, branch, sha, workers, cache_dir, source, grants, stream_logs, keep_workspace):
    """Run a pipeline locally for an event."""
    console: Console = ctx.obj["console"]
    settings: Settings = ctx.obj["settings"]
    console.stream_logs = stream_logs

    pipeline_path = discover_pipeline(console, pipeline)
    try:
        definition = load_pipeline(pipeline_path)
    except ValidationError as e:
        console.print_error("Invalid pipeline", f"{pipeline_path}: {e.message}", details=e.problems)
        sys.exit(EXIT_INVALID)

    event = Event(
        kind=event_kind,
        branch=_default_branch() if branch is None else branch,
        sha=sha or _default_sha(),
    )
    if TriggerEvaluator([definition]).match(event) is None:
        console.print_info(
            f"Pipeline '{definition.name}' does not trigger on {event.kind.value} "
            f"({event.branch or '-'}); nothing to run."
        )
        return

    store = EnvSecretStore(prefix=settings.secret_prefix)
    granted = parse_grants(grants)
    provider = (
        SecretProvider(store, granted) if granted is not None else SecretProvider.from_definition(store, definition)
    )

    recorder = RunRecorder(settings.database_url)
    scheduler = build_scheduler(
        settings,
        console,
        recorder=recorder,
        workers=workers,
        cache_dir=cache_dir,
        source_root=source,
        keep_workspace=keep_workspace,
    )
    console.print_debug(
        f"{pipeline_path}: {len(definition.jobs)} jobs, {scheduler.max_workers} workers, cache {scheduler.cache.root}"
    )

    cancel = threading.Event()
    try:
        graph = dag.load(definition)
        # the run lives on a helper thread so Ctrl-C can cancel it cleanly
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipewright-run") as bg:
            fut = bg.submit(scheduler.run, graph, event, cancel=cancel, secrets=provider)
            try:
                result = fut.result()
            except KeyboardInterrupt:
                console.print_info("\nInterrupted by user, cancelling run...")
                cancel.set()
                result = fut.result()
                console.print_results(result)
                sys.exit(EXIT_INTERRUPTED)

        console.print_results(result)
        if result.status is not RunStatus.SUCCEEDED:
            sys.exit(EXIT_FAILED)

    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        recorder.close()


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (.yml/.yaml/.py); discovered if omitted")
@click.pass_context
def validate(ctx, pipeline):
    """Validate a pipeline and print its stage plan."""
    console: Console = ctx.obj["console"]
    pipeline_path = discover_pipeline(console, pipeline)
    try:
        definition = load_pipeline(pipeline_path)
    except ValidationError as e:
        console.print_error("Invalid pipeline", f"{pipeline_path}: {e.message}", details=e.problems)
        sys.exit(EXIT_INVALID)

    graph = dag.load(definition)
    console.print_header(f"Pipeline '{definition.name}' is valid ({len(graph)} jobs)")
    triggers = [rule.kind.value + (f" [{', '.join(rule.branches)}]" if rule.branches else "") for rule in definition.triggers]
    console.print_info(f"Triggers: {', '.join(triggers) or '-'}")
    console.print_plan(graph.levels())


# ---------------------------------------------------------------------
# status / logs
# ---------------------------------------------------------------------

@cli.command()
@click.argument("run_id", required=False)
@click.option("--limit", default=20, show_default=True, help="Runs to list when no RUN_ID is given")
@click.pass_context
def status(ctx, run_id, limit):
    """Show a recorded run, or list recent runs."""
    console: Console = ctx.obj["console"]
    recorder = RunRecorder(ctx.obj["settings"].database_url)
    try:
        if run_id is None:
            runs = recorder.list_runs(limit)
            if not runs:
                console.print_info("No runs recorded yet.")
            for r in runs:
                console.print_info(
                    f"{r.id}  {r.status.value:<10} {r.pipeline} {r.event_kind.value}({r.branch or '-'}) "
                    f"{r.created_at:%Y-%m-%d %H:%M:%S}"
                )
            return
        try:
            result = recorder.get(run_id)
        except RunNotFound as e:
            console.print_error("Run not found", str(e))
            sys.exit(EXIT_FAILED)
        console.print_results(result)
    finally:
        recorder.close()


@cli.command()
@click.argument("run_id")
@click.argument("job")
@click.pass_context
def logs(ctx, run_id, job):
    """Print the captured (redacted) logs of one job."""
    console: Console = ctx.obj["console"]
    recorder = RunRecorder(ctx.obj["settings"].database_url)
    try:
        try:
            result = recorder.get(run_id)
        except RunNotFound as e:
            console.print_error("Run not found", str(e))
            sys.exit(EXIT_FAILED)
        rec = result.jobs.get(job)
        if rec is None:
            console.print_error("Job not found", f"Run {run_id} has no job '{job}'", details=list(result.jobs))
            sys.exit(EXIT_FAILED)
        console.print_info(f"{rec.name}: {rec.status.value.upper()}")
        if rec.logs:
            console.print_info(rec.logs)
    finally:
        recorder.close()


# ---------------------------------------------------------------------
# submit / serve / dispatch
# ---------------------------------------------------------------------

@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--event", "event_kind", default="workflow_dispatch", show_default=True, callback=_parse_event_kind,
              help="Event kind: push, pull_request or workflow_dispatch")
@click.option("--branch", default=None, help="Branch (defaults to the current git branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.pass_context
def submit(ctx, api, event_kind, branch, sha):
    """Submit an event to a running control plane."""
    console: Console = ctx.obj["console"]

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "events")
    request_data = {
        "kind": event_kind.value,
        "branch": _default_branch() if branch is None else branch,
        "sha": sha or _default_sha(),
    }
    req = urllib.request.Request(
        url,
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(EXIT_FAILED)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(EXIT_FAILED)
    except json.JSONDecodeError as e:
        console.print_error("Invalid API response", "Could not parse JSON response from API.", details=[str(e)])
        sys.exit(EXIT_FAILED)

    console.print_info(f"Submitted {request_data['kind']} ({request_data['branch'] or '-'}) to {base_url}")
    console.print_info(f"  Event ID: {result.get('event_id')}")


def _event_queue(settings: Settings):
    if settings.redis_url:
        return RedisEventQueue.from_url(settings.redis_url, settings.queue_name)
    return InMemoryEventQueue()


@cli.command()
@click.option("--pipeline", "pipelines", multiple=True, help="Pipeline file(s) to serve; discovered if omitted")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.option("--no-dispatch", is_flag=True, default=False, help="Only accept events; run `pipewright dispatch` elsewhere")
@click.pass_context
def serve(ctx, pipelines, host, port, workers, no_dispatch):
    """Serve the control-plane API (with an in-process dispatcher)."""
    import uvicorn

    from .server import create_app

    console: Console = ctx.obj["console"]
    settings: Settings = ctx.obj["settings"]
    if no_dispatch and not settings.redis_url:
        console.print_error("No shared queue", "--no-dispatch needs REDIS_URL so a dispatcher can consume events.")
        sys.exit(EXIT_FAILED)

    queue = _event_queue(settings)
    recorder = RunRecorder(settings.database_url)
    dispatcher = None
    if not no_dispatch:
        definitions = load_all(console, pipelines)
        scheduler = build_scheduler(settings, console, recorder=recorder, workers=workers)
        dispatcher = Dispatcher(
            queue,
            TriggerEvaluator(definitions),
            scheduler,
            EnvSecretStore(prefix=settings.secret_prefix),
            console=console,
            queue_name=settings.queue_name if settings.redis_url else "memory",
        )
        dispatcher.start_background()

    try:
        uvicorn.run(create_app(queue, recorder, dispatcher), host=host, port=port)
    finally:
        if dispatcher is not None:
            dispatcher.stop()
        recorder.close()


@cli.command()
@click.option("--pipeline", "pipelines", multiple=True, help="Pipeline file(s) to dispatch; discovered if omitted")
@click.option("--poll-interval", default=5, type=int, help="Seconds to block on the queue per poll")
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.pass_context
def dispatch(ctx, pipelines, poll_interval, workers):
    """Consume events from Redis and run matching pipelines."""
    console: Console = ctx.obj["console"]
    settings: Settings = ctx.obj["settings"]
    if not settings.redis_url:
        console.print_error("No queue configured", "Set REDIS_URL to the queue shared with `pipewright serve`.")
        sys.exit(EXIT_FAILED)

    definitions = load_all(console, pipelines)
    recorder = RunRecorder(settings.database_url)
    dispatcher = Dispatcher(
        RedisEventQueue.from_url(settings.redis_url, settings.queue_name),
        TriggerEvaluator(definitions),
        build_scheduler(settings, console, recorder=recorder, workers=workers),
        EnvSecretStore(prefix=settings.secret_prefix),
        console=console,
        queue_name=settings.queue_name,
    )
    try:
        dispatcher.run_forever(poll_interval)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        recorder.close()


# ---------------------------------------------------------------------
# cache
# ---------------------------------------------------------------------

@cli.group()
def cache():
    """Inspect and prune the artifact cache."""


@cache.command("list")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_list(ctx, cache_dir):
    """List cache entries, most recently used first."""
    console: Console = ctx.obj["console"]
    store = CacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    entries = sorted(store.entries(), key=lambda e: e.last_access, reverse=True)
    if not entries:
        console.print_info("Cache is empty.")
    for entry in entries:
        console.print_info(f"{entry.size:>12}  {entry.key}")


@cache.command("prune")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--max-bytes", required=True, type=int, help="Evict least recently used entries beyond this size")
@click.pass_context
def cache_prune(ctx, cache_dir, max_bytes):
    """Evict least recently used entries until the cache fits in --max-bytes."""
    console: Console = ctx.obj["console"]
    store = CacheStore(cache_dir or ctx.obj["settings"].cache_dir)
    evicted = store.evict(max_bytes)
    console.print_info(f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}; {store.total_bytes()} bytes remain.")


if __name__ == "__main__":
    cli()
