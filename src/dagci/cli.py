# cli.py
from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path

import click

from dagci import settings
from dagci.cache import open_store
from dagci.controller import PipelineController
from dagci.dag import topo_levels
from dagci.errors import CacheStoreUnavailable, DagCIError, WorkflowLoadError
from dagci.loader import load_pipeline
from dagci.logs import LogStore
from dagci.model import PipelineStatus
from dagci.pool import RunnerPool
from dagci.reporting import ConsoleReporter, HttpReporter, JsonFileReporter
from dagci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("dagci.yml", "dagci.yaml", ".dagci.yml")


def find_pipeline_files(root: Path = Path(".")) -> list[Path]:
    """
    Find candidate pipeline files under `root`.

    Returns:
        Sorted list of paths: dagci.yml/.yaml, *_workflow.py and
        .github/workflows/*.yml
    """
    found: list[Path] = []
    for name in DEFAULT_PIPELINE_FILES:
        p = root / name
        if p.exists():
            found.append(p)
    found.extend(root.glob("*_workflow.py"))
    wf_dir = root / ".github" / "workflows"
    if wf_dir.is_dir():
        found.extend(wf_dir.glob("*.yml"))
        found.extend(wf_dir.glob("*.yaml"))
    return sorted(set(found))


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Raises:
        SystemExit: If no file, or more than one candidate, is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify an existing file:\n  dagci run path/to/pipeline.yml",
            )
            sys.exit(1)
        return path

    candidates = find_pipeline_files()
    if not candidates:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINE_FILES),
                     "  *_workflow.py", "  .github/workflows/*.yml"],
            suggestion="Create dagci.yml or pass a file:\n  dagci run path/to/pipeline.yml",
        )
        sys.exit(1)
    if len(candidates) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {c}" for c in candidates],
        )
        sys.exit(1)
    return candidates[0]


def parse_limits(values: tuple[str, ...]) -> dict[str, int]:
    limits: dict[str, int] = {}
    for raw in values:
        env_class, sep, count = raw.rpartition("=")
        if not sep or not env_class:
            raise click.BadParameter(f"expected CLASS=N, got {raw!r}", param_hint="--limit")
        try:
            limits[env_class] = int(count)
        except ValueError:
            raise click.BadParameter(f"slot count must be an integer: {raw!r}", param_hint="--limit")
    return limits


def _load_or_exit(path: Path):
    console = get_console()
    try:
        return load_pipeline(path)
    except WorkflowLoadError as e:
        console.print_error("Failed to load pipeline", f"Could not load {path}", details=[str(e)])
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """dagci: DAG job orchestration for CI pipelines."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--event", default="push", show_default=True, help="Trigger event name")
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="File cache directory")
@click.option("--redis-url", default=settings.REDIS_URL, help="Use a Redis cache backend instead of files")
@click.option("--log-dir", default=settings.LOG_DIR, show_default=True, help="Where step logs are written")
@click.option("--parallel", default=settings.MAX_PARALLEL, type=int, show_default=True, help="Max concurrently running jobs")
@click.option("--runner-limit", default=settings.RUNNER_LIMIT, type=int, show_default=True, help="Default slots per environment class")
@click.option("--limit", "limits", multiple=True, help="Slots for one environment class, CLASS=N (repeatable)")
@click.option("--acquire-timeout", default=settings.ACQUIRE_TIMEOUT, type=float, show_default=True, help="Seconds to wait for a runner slot")
@click.option("--report-json", default=None, help="Write the run result as JSON to this path")
@click.option("--report-url", default=None, help="POST the run result as JSON to this URL")
@click.pass_context
def run(ctx, pipeline, event, workspace, cache_dir, redis_url, log_dir, parallel,
        runner_limit, limits, acquire_timeout, report_json, report_url):
    """Run a pipeline for a trigger event."""
    console = get_console()
    path = discover_pipeline(pipeline)
    p = _load_or_exit(path)

    try:
        cache = open_store(cache_dir, redis_url)
    except CacheStoreUnavailable as e:
        console.print_error("Cache unavailable", str(e))
        sys.exit(1)

    reporters = [ConsoleReporter()]
    if report_json:
        reporters.append(JsonFileReporter(report_json))
    if report_url:
        reporters.append(HttpReporter(report_url))

    controller = PipelineController(
        RunnerPool(parse_limits(limits), default_limit=runner_limit, acquire_timeout=acquire_timeout),
        cache,
        workspace=workspace,
        log_store=LogStore(log_dir),
        max_parallel=parallel,
        reporters=reporters,
    )

    def _on_signal(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling pipeline...")
        # a second signal falls through to the default handler
        signal.signal(signal.SIGINT, signal.default_int_handler)
        threading.Thread(target=controller.cancel, daemon=True).start()

    previous = {s: signal.signal(s, _on_signal) for s in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = controller.run(p, event)
    except DagCIError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for s, handler in previous.items():
            signal.signal(s, handler)

    if result.cancelled:
        sys.exit(130)
    if result.status == PipelineStatus.FAILED:
        sys.exit(1)


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--event", default=None, help="Only jobs triggered by this event")
def plan(pipeline, event):
    """Print the expanded job instances as parallel stages."""
    console = get_console()
    path = discover_pipeline(pipeline)
    p = _load_or_exit(path)
    try:
        dag = PipelineController().plan(p, event)
    except DagCIError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)

    console.print_header(f"{p.name}: {len(dag)} job instance(s)")
    console.print_plan(topo_levels(dag))


@cli.command()
@click.argument("pipeline", required=False)
def validate(pipeline):
    """Check that a pipeline loads, expands and forms a DAG."""
    console = get_console()
    path = discover_pipeline(pipeline)
    p = _load_or_exit(path)
    try:
        dag = PipelineController().plan(p)
    except DagCIError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    console.print_info(f"OK: {path} ({len(p.templates)} job(s), {len(dag)} instance(s))")


if __name__ == "__main__":
    cli()
