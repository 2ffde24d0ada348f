"""
computeflow - Command line entry point.

Usage:
    computeflow kinds
    computeflow validate graph.json
    computeflow run graph.json [--target NODE_ID]... [--max-in-flight N]
                               [--backend-url URL]
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from computeflow import __version__
from computeflow.core.errors import ComputeFlowError, PersistenceError
from computeflow.core.execution import NodeStatusEvent, RunStatus, RunSummary, Scheduler
from computeflow.core.node_kinds import all_kind_specs
from computeflow.core.persistence import load_graph_file
from computeflow.core.settings import EngineSettings, load_settings
from computeflow.nodes import NodeWorker

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for execution visibility."""
    if verbose:
        level, fmt = logging.DEBUG, "%(asctime)s %(name)s: %(message)s"
    else:
        level, fmt = logging.INFO, "%(levelname)s: %(message)s"
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def build_worker(settings: EngineSettings) -> NodeWorker:
    """NodeWorker with an HTTP generation backend when one is configured."""
    generator = None
    if settings.backend_url:
        from computeflow.backends import HttpGenerationWorker

        generator = HttpGenerationWorker.from_settings(settings)
    return NodeWorker(generator)


def summary_to_dict(summary: RunSummary) -> dict:
    return {
        "run_id": summary.run_id,
        "status": summary.status.value,
        "duration": round(summary.duration, 3),
        "nodes": {nid: status.value for nid, status in summary.node_statuses.items()},
        "errors": summary.errors,
        "outputs": summary.outputs,
        **({"error": summary.error} if summary.error else {}),
    }


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Settings file (default: ~/.config/computeflow/settings.json)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """computeflow - Run typed graphs of AI generation steps."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)


@cli.command()
def kinds() -> None:
    """List node kinds and their ports."""
    for spec in all_kind_specs():
        inputs = ", ".join(
            f"{d.name}: {d.data_type.value}"
            + ("" if d.max_connections == 1 else f" x{d.max_connections or 'n'}")
            for d in spec.inputs
        ) or "-"
        outputs = ", ".join(f"{d.name}: {d.data_type.value}" for d in spec.outputs) or "-"
        click.echo(f"{spec.kind.value:<10} in [{inputs}]  out [{outputs}]  {spec.description}")


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
def validate(file: Path) -> None:
    """Check that a graph document is valid."""
    try:
        graph = load_graph_file(file)
    except PersistenceError as e:
        click.echo(f"Invalid: {e}", err=True)
        for issue in getattr(e, "issues", []):
            click.echo(f"  - {issue}", err=True)
        sys.exit(1)

    click.echo(f"OK: {len(graph)} node(s), {len(graph.edges)} edge(s)")


async def _run_graph(
    scheduler: Scheduler,
    file: Path,
    targets: list[str],
) -> RunSummary:
    graph = load_graph_file(file)

    def on_status(event: NodeStatusEvent) -> None:
        node = graph.get_node(event.node_id)
        label = node.label if node else event.node_id
        line = f"[{event.status.value:>9}] {label}"
        if event.error:
            line += f": {event.error}"
        click.echo(line, err=True)

    handle = scheduler.execute_streaming(graph, on_node_status=on_status, targets=targets or None)

    loop = asyncio.get_running_loop()
    handles_sigint = True
    try:
        loop.add_signal_handler(signal.SIGINT, handle.cancel)
    except NotImplementedError:
        handles_sigint = False
        logger.debug("Signal handlers not supported; Ctrl+C will not cancel gracefully")

    try:
        return await handle.wait()
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--target", "-t", "targets", multiple=True, help="Only run this node and its inputs")
@click.option("--max-in-flight", type=int, default=None, help="Concurrent worker calls")
@click.option("--backend-url", default=None, help="Generation backend base URL")
@click.option("--api-key", envvar="COMPUTEFLOW_API_KEY", default=None, help="Backend API key")
@click.pass_context
def run(
    ctx: click.Context,
    file: Path,
    targets: tuple[str, ...],
    max_in_flight: int | None,
    backend_url: str | None,
    api_key: str | None,
) -> None:
    """Execute a graph document and print the run summary as JSON."""
    settings: EngineSettings = ctx.obj["settings"]
    if max_in_flight is not None:
        settings.max_in_flight = max_in_flight if max_in_flight > 0 else None
    if backend_url:
        settings.backend_url = backend_url
    if api_key:
        settings.api_key = api_key

    scheduler = Scheduler(build_worker(settings), settings)
    try:
        summary = asyncio.run(_run_graph(scheduler, file, list(targets)))
    except ComputeFlowError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(summary_to_dict(summary), indent=2, default=str))
    sys.exit(0 if summary.status == RunStatus.SUCCEEDED else 1)


def main() -> int:
    """
    Main entry point for computeflow.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    try:
        cli(obj={}, standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
