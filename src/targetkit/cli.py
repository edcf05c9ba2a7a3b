# cli.py
from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

import click

from targetkit.cache import FingerprintStore
from targetkit.config import EngineConfig
from targetkit.dag import build
from targetkit.errors import BuildError, TargetkitError
from targetkit.runner import CancelToken, Scheduler, load_pipeline, outdated, read_target
from targetkit.ui.console import Console, get_console, set_console
from targetkit.workers import WorkerPool

DEFAULT_PIPELINE = "targetkit_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    pipeline_files = []
    current_dir = Path(".")

    default_pipeline = current_dir / DEFAULT_PIPELINE
    if default_pipeline.exists():
        pipeline_files.append(default_pipeline)

    for path in current_dir.glob("*_pipeline.py"):
        if path != default_pipeline:
            pipeline_files.append(path)

    return sorted(pipeline_files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        pipeline_path = Path(pipeline_arg)
        if not pipeline_path.exists() and pipeline_path.suffix != ".py":
            pipeline_path = Path(str(pipeline_path) + ".py")
        if not pipeline_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  targetkit make --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return pipeline_path

    pipeline_files = find_pipeline_files()

    if len(pipeline_files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_PIPELINE}",
                "  *_pipeline.py",
            ],
            suggestion=f"Create a pipeline file:\n  {DEFAULT_PIPELINE}\n\nOr specify one explicitly:\n  targetkit make --pipeline my_pipeline.py",
        )
        sys.exit(1)

    if len(pipeline_files) > 1:
        file_list = "\n".join(f"  {f}" for f in pipeline_files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a pipeline explicitly:\n  targetkit make --pipeline {DEFAULT_PIPELINE}",
        )
        sys.exit(1)

    return pipeline_files[0]


def _load_graph(ctx, pipeline):
    """Load the pipeline file and build its graph; exit 1 on build errors."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)
    config: EngineConfig = ctx.obj["config"]
    try:
        loaded = load_pipeline(pipeline_path)
        graph = build(loaded.specs, config=config, constants=loaded.constants)
    except BuildError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {pipeline_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)
    return pipeline_path, graph


pipeline_option = click.option(
    "--pipeline",
    default=None,
    help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE} if present)",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Hide per-target progress lines")
@click.option("--store", default=None, help="Store directory (default: $TARGETKIT_STORE or .targetkit)")
@click.pass_context
def cli(ctx, debug, quiet, store):
    """targetkit: reproducible, fingerprint-cached pipelines."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config"] = EngineConfig.from_env(store=store)


@cli.command()
@pipeline_option
@click.option("--workers", default=None, type=int, help="Maximum number of targets in flight")
@click.option("--remote-workers", default=None, type=int, help="Size of the out-of-process worker pool")
@click.option("--name", "names", multiple=True, help="Only build these targets (and what they need)")
@click.pass_context
def make(ctx, pipeline, workers, remote_workers, names):
    """Build the pipeline: run every outdated target."""
    console = get_console()
    pipeline_path, graph = _load_graph(ctx, pipeline)
    config = ctx.obj["config"].model_copy(
        update={
            k: v
            for k, v in {"max_workers": workers, "remote_workers": remote_workers}.items()
            if v is not None
        }
    )

    try:
        if names:
            graph = graph.subgraph(names)
        store = FingerprintStore(config.store)
        console.print_run_started(pipeline=pipeline_path.name, target_count=len(graph), store=str(store.root))

        cancel = CancelToken()

        def _signal_handler(signum, frame):
            console.print_info(f"\nReceived signal {signum}, letting running targets finish...")
            cancel.cancel()

        previous = signal.signal(signal.SIGINT, _signal_handler)
        try:
            with WorkerPool.from_config(config) as pool:
                report = Scheduler(store, console=console).run(graph, pool, cancel=cancel)
        finally:
            signal.signal(signal.SIGINT, previous)

        console.print_results(report)
        if report.cancelled:
            sys.exit(130)
        if not report.ok:
            sys.exit(1)

    except TargetkitError as e:
        console.print_exception(e)
        sys.exit(1)
    except ValueError as e:
        console.print_error("Invalid selection", str(e))
        sys.exit(1)


@cli.command()
@pipeline_option
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON instead of a table")
@click.pass_context
def manifest(ctx, pipeline, as_json):
    """Show target metadata without running anything."""
    _path, graph = _load_graph(ctx, pipeline)
    rows = graph.manifest()
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    for row in rows:
        extra = f" pattern={row['pattern']} reps={row['reps']}" if row["pattern"] else ""
        click.echo(f"{row['name']} [{row['format']}, {row['deployment']}]{extra}")
        click.echo(f"    {row['command']}")


@cli.command("outdated")
@pipeline_option
@click.pass_context
def outdated_cmd(ctx, pipeline):
    """List targets the next make would run."""
    _path, graph = _load_graph(ctx, pipeline)
    store = FingerprintStore(ctx.obj["config"].store)
    names = outdated(graph, store)
    for name in names:
        click.echo(name)
    if not names:
        click.echo("Everything is up to date.", err=True)


@cli.command()
@click.argument("name")
@click.option("--branch", "branches", multiple=True, type=int, help="Only these batch positions of a dynamic target")
@click.pass_context
def read(ctx, name, branches):
    """Print the stored value of a target."""
    console = get_console()
    store = FingerprintStore(ctx.obj["config"].store)
    try:
        value = read_target(name, store, branches=list(branches) or None)
    except TargetkitError as e:
        console.print_exception(e)
        sys.exit(1)
    click.echo(repr(value))


@cli.command()
@click.argument("name")
@click.pass_context
def meta(ctx, name):
    """Print the fingerprint record of a target."""
    console = get_console()
    store = FingerprintStore(ctx.obj["config"].store)
    try:
        fp = store.require(name)
    except TargetkitError as e:
        console.print_exception(e)
        sys.exit(1)
    click.echo(fp.model_dump_json(indent=2))


@cli.command()
@click.argument("names", nargs=-1, required=True)
@click.pass_context
def invalidate(ctx, names):
    """Forget records so the named targets rerun next time."""
    store = FingerprintStore(ctx.obj["config"].store)
    for name in names:
        if store.invalidate(name):
            click.echo(f"invalidated {name}")
        else:
            click.echo(f"no record for {name}", err=True)


@cli.command()
@pipeline_option
@click.pass_context
def prune(ctx, pipeline):
    """Delete records and objects of targets no longer in the pipeline."""
    _path, graph = _load_graph(ctx, pipeline)
    store = FingerprintStore(ctx.obj["config"].store)
    removed = store.prune(graph.order)
    for name in removed:
        click.echo(f"removed {name}")
    if not removed:
        click.echo("Nothing to prune.", err=True)


if __name__ == "__main__":
    cli()
