#!/usr/bin/env python3
"""
CLI for running and inspecting loopgraph graphs.

Graphs are referenced as ``module:attribute`` (or ``path/to/file.py:attribute``)
where the attribute is a GraphDefinition or a zero-argument factory that
returns one.

Usage:
    loopgraph run my_pkg.graphs:retry_graph --input '{"n": 0}'
    loopgraph run ./graphs.py:build --input @state.json --checkpoint-dir ./cp --auto-checkpoint
    loopgraph resume my_pkg.graphs:retry_graph 3f2a... --checkpoint-dir ./cp
    loopgraph export my_pkg.graphs:retry_graph --format mermaid
    loopgraph checkpoints list ./cp --graph retry
    loopgraph --version
"""

import importlib
import importlib.util
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer

from loopgraph import __version__
from loopgraph.checkpoint import FileCheckpointStore
from loopgraph.config import EngineConfig
from loopgraph.engine import ExecutionEngine
from loopgraph.exceptions import LoopGraphError
from loopgraph.graph import GraphDefinition

app = typer.Typer(
    name="loopgraph",
    help="loopgraph - cyclic state-graph execution engine",
    no_args_is_help=True,
    add_completion=False,
)

checkpoints_app = typer.Typer(
    name="checkpoints",
    help="Inspect and delete saved checkpoints",
    no_args_is_help=True,
)
app.add_typer(checkpoints_app, name="checkpoints")


class ExportFormat(str, Enum):
    """Output format for the export command."""
    text = "text"
    dot = "dot"
    mermaid = "mermaid"


def fail(message: str) -> NoReturn:
    """Print an error to stderr and exit with status 1."""
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def setup_logging(verbose: int, quiet: bool = False) -> int:
    """Configure logging based on verbosity flags and return the level."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose >= 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return level


def parse_input(value: Optional[str]) -> Dict[str, Any]:
    """
    Parse input from JSON string or @file.json.

    Raises:
        typer.Exit: On parse error
    """
    if value is None:
        return {}

    if value.startswith("@"):
        path = Path(value[1:])
        if not path.exists():
            fail(f"Input file not found: {path}")
        text = path.read_text(encoding="utf-8")
        source = "input file"
    else:
        text = value
        source = "--input"

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        fail(f"Invalid JSON in {source}: {e}")
    if not isinstance(result, dict):
        fail(f"Input must be a JSON object, got {type(result).__name__}")
    return result


def split_names(value: Optional[str]) -> Optional[list]:
    if not value:
        return None
    return [name.strip() for name in value.split(",") if name.strip()]


def load_target(target: str) -> GraphDefinition:
    """
    Resolve ``module:attribute`` or ``file.py:attribute`` to a GraphDefinition.

    Raises:
        typer.Exit: If the target cannot be imported or is not a graph.
    """
    module_ref, sep, attribute = target.rpartition(":")
    if not sep or not module_ref or not attribute:
        fail(f"Target must look like 'module:attribute', got '{target}'")

    if module_ref.endswith(".py"):
        path = Path(module_ref).resolve()
        if not path.exists():
            fail(f"Graph file not found: {path}")
        try:
            spec = importlib.util.spec_from_file_location(path.stem, path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load module spec from file: {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as e:
            fail(f"Failed to load Python file '{path}': {e}")
    else:
        try:
            module = importlib.import_module(module_ref)
        except ImportError as e:
            fail(f"Cannot import module '{module_ref}': {e}")

    if not hasattr(module, attribute):
        fail(f"'{module_ref}' has no attribute '{attribute}'")
    value = getattr(module, attribute)
    if callable(value) and not isinstance(value, GraphDefinition):
        try:
            value = value()
        except Exception as e:
            fail(f"Building '{target}' failed: {e}")
    if not isinstance(value, GraphDefinition):
        fail(f"'{target}' is not a GraphDefinition (got {type(value).__name__})")
    return value


def emit_ndjson_event(event_type: str, **kwargs):
    """Emit an NDJSON event to stdout."""
    event = {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **kwargs,
    }
    typer.echo(json.dumps(event, default=str))


def _drive(engine: ExecutionEngine, events, stream: bool, quiet: bool) -> None:
    """Consume an engine event stream and print the outcome."""
    try:
        for event in events:
            event_type = event["type"]
            if stream:
                payload = {k: v for k, v in event.items() if k != "type"}
                if "state" in payload:
                    payload["state"] = payload["state"].to_dict()
                emit_ndjson_event(event_type, **payload)
                continue
            if event_type == "node_end" and not quiet:
                typer.echo(f"✓ {event['node']} ({event['elapsed'] * 1000:.1f}ms)", err=True)
            elif event_type == "interrupt":
                typer.echo(
                    f"⏸  Interrupt at: {event['node']} (checkpoint: {event['checkpoint_id']})",
                    err=True,
                )
                typer.echo(json.dumps(event["state"].to_dict(), indent=2, default=str))
            elif event_type == "cancelled":
                fail(f"Execution cancelled at node '{event['node']}'")
            elif event_type == "final":
                typer.echo(json.dumps(event["state"].to_dict(), indent=2, default=str))
    except LoopGraphError as e:
        if stream:
            emit_ndjson_event("error", node=getattr(e, "node", None), error=str(e))
            raise typer.Exit(1)
        fail(str(e))
    except KeyboardInterrupt:
        typer.echo("\n\nExecution interrupted by user (Ctrl+C)", err=True)
        raise typer.Exit(130)


def _engine(
    definition: GraphDefinition,
    config_file: Optional[Path],
    verbose: int,
    quiet: bool,
    **overrides: Any,
) -> ExecutionEngine:
    level = setup_logging(verbose, quiet)
    try:
        config = EngineConfig.resolve(
            config_file,
            log_level=level if (verbose or quiet) else None,
            **overrides,
        )
        return ExecutionEngine.from_config(definition, config)
    except LoopGraphError as e:
        fail(str(e))


@app.command()
def run(
    target: str = typer.Argument(..., help="Graph as module:attribute or file.py:attribute"),
    input: Optional[str] = typer.Option(None, "--input", "-i", help="Initial state data as JSON or @file.json"),
    checkpoint_dir: Optional[str] = typer.Option(None, "--checkpoint-dir", "-c", help="Checkpoint directory or fsspec URL"),
    auto_checkpoint: bool = typer.Option(False, "--auto-checkpoint", help="Checkpoint after every node"),
    interrupt_before: Optional[str] = typer.Option(None, "--interrupt-before", help="Nodes to interrupt before (comma-separated)"),
    interrupt_after: Optional[str] = typer.Option(None, "--interrupt-after", help="Nodes to interrupt after (comma-separated)"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", help="Threads per fork"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="Engine configuration YAML"),
    stream: bool = typer.Option(False, "--stream", "-s", help="Output events as NDJSON"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
):
    """Execute a graph and print the final state as JSON."""
    initial_state = parse_input(input)
    definition = load_target(target)
    engine = _engine(
        definition,
        config_file,
        verbose,
        quiet,
        checkpoint_dir=checkpoint_dir,
        auto_checkpoint=True if auto_checkpoint else None,
        interrupt_before=split_names(interrupt_before),
        interrupt_after=split_names(interrupt_after),
        max_workers=max_workers,
    )
    _drive(engine, engine.stream(initial_state), stream, quiet)


@app.command()
def resume(
    target: str = typer.Argument(..., help="Graph as module:attribute or file.py:attribute"),
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id to resume"),
    checkpoint_dir: str = typer.Option(..., "--checkpoint-dir", "-c", help="Checkpoint directory or fsspec URL"),
    input: Optional[str] = typer.Option(None, "--input", "-i", help="State updates as JSON or @file.json"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="Engine configuration YAML"),
    stream: bool = typer.Option(False, "--stream", "-s", help="Output events as NDJSON"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress progress output"),
):
    """Resume a graph from a saved checkpoint."""
    state_update = parse_input(input)
    definition = load_target(target)
    engine = _engine(definition, config_file, verbose, quiet, checkpoint_dir=checkpoint_dir)
    _drive(engine, engine.stream(state_update or None, checkpoint_id=checkpoint_id), stream, quiet)


@app.command()
def export(
    target: str = typer.Argument(..., help="Graph as module:attribute or file.py:attribute"),
    format: ExportFormat = typer.Option(ExportFormat.text, "--format", "-f", help="Output format"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Print the graph structure as text, Graphviz DOT or Mermaid."""
    definition = load_target(target)
    if format == ExportFormat.dot:
        rendered = definition.to_dot()
    elif format == ExportFormat.mermaid:
        rendered = definition.to_mermaid()
    else:
        rendered = definition.to_text()

    if output is not None:
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.echo(f"✓ Graph written to {output}", err=True)
    else:
        typer.echo(rendered)


def _store(directory: str) -> FileCheckpointStore:
    try:
        return FileCheckpointStore(directory)
    except LoopGraphError as e:
        fail(str(e))


@checkpoints_app.command("list")
def checkpoints_list(
    directory: str = typer.Argument(..., help="Checkpoint directory or fsspec URL"),
    graph: Optional[str] = typer.Option(None, "--graph", "-g", help="Only checkpoints of this graph"),
):
    """List checkpoints, most recently updated first."""
    store = _store(directory)
    try:
        checkpoints = store.list(graph)
    except LoopGraphError as e:
        fail(str(e))
    if not checkpoints:
        typer.echo("No checkpoints found.", err=True)
        return
    for checkpoint in checkpoints:
        typer.echo(
            f"{checkpoint.id}  {checkpoint.graph_name}  next={checkpoint.current_node}  "
            f"steps={len(checkpoint.execution_history)}  updated={checkpoint.updated_at.isoformat()}"
        )


@checkpoints_app.command("show")
def checkpoints_show(
    directory: str = typer.Argument(..., help="Checkpoint directory or fsspec URL"),
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
):
    """Print one checkpoint as JSON."""
    store = _store(directory)
    try:
        checkpoint = store.load(checkpoint_id)
    except LoopGraphError as e:
        fail(str(e))
    if checkpoint is None:
        fail(f"Checkpoint not found: {checkpoint_id}")
    typer.echo(json.dumps(checkpoint.to_dict(), indent=2))


@checkpoints_app.command("delete")
def checkpoints_delete(
    directory: str = typer.Argument(..., help="Checkpoint directory or fsspec URL"),
    checkpoint_id: str = typer.Argument(..., help="Checkpoint id"),
):
    """Delete a checkpoint (no error if it does not exist)."""
    store = _store(directory)
    try:
        store.delete(checkpoint_id)
    except LoopGraphError as e:
        fail(str(e))
    typer.echo(f"✓ Deleted {checkpoint_id}", err=True)


def version_callback(value: bool):
    """Handle --version flag."""
    if value:
        typer.echo(f"loopgraph {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(None, "--version", callback=version_callback, is_eager=True,
                                 help="Show version and exit"),
):
    """loopgraph - cyclic state-graph execution engine."""


def main():
    """Entry point for the loopgraph CLI."""
    app()


if __name__ == "__main__":
    main()
