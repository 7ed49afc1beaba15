# -*- coding: utf-8 -*-
"""Sundial Command Line Interface - run compiled time-series queries over point files."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import SundialConfig
from .engine import Engine, QueryResult
from .errors import CompileError
from .execution.operator_graph import OperatorGraph
from .forecast import DEFAULT_REGISTRY
from .sources import IterableStreamingSource, ListSource
from .types import DataPoint, ResultKind, WindowResult

# Console for rich output
console = Console()

# Main CLI app
app = typer.Typer(
    name="sundial",
    help="Time-series analytics engine: windows, rolling aggregates, trends and forecasts",
    add_completion=False,
)

config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")


def _configure_logging(log_level: Optional[str], config: SundialConfig) -> None:
    level = (log_level or config.operational.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _read_json(path: Path) -> Any:
    try:
        return orjson.loads(path.read_bytes())
    except FileNotFoundError:
        console.print(f"[bold red]Error:[/bold red] file not found: {path}")
        raise typer.Exit(code=1)
    except orjson.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/bold red] invalid JSON in {path}: {e}")
        raise typer.Exit(code=1)


def _load_graph(path: Path) -> OperatorGraph:
    try:
        return OperatorGraph.from_dict(_read_json(path))
    except CompileError as e:
        console.print(f"[bold red]Compile error:[/bold red] {e.message}"
                      + (f" [dim](operator {e.node_id})[/dim]" if e.node_id else ""))
        raise typer.Exit(code=1)


def load_points(data: Any) -> Dict[str, List[DataPoint]]:
    """
    Group a points document by stream.

    Accepts either ``{"stream": [point, ...]}`` or a flat list of points
    that each carry a ``stream`` field.
    """
    grouped: Dict[str, List[DataPoint]] = {}
    if isinstance(data, dict):
        for stream, points in data.items():
            grouped[stream] = [DataPoint.from_dict({**p, 'stream': stream}) for p in points]
        return grouped
    for raw in data:
        point = DataPoint.from_dict(raw)
        if point.stream is None:
            raise ValueError(f"Point without stream: {raw}")
        grouped.setdefault(point.stream, []).append(point)
    return grouped


def _format_value(result: WindowResult) -> str:
    if result.kind == ResultKind.AGGREGATE:
        return ", ".join(f"{fn}={v:.6g}" if v is not None else f"{fn}=-" for fn, v in result.value.items())
    if result.kind == ResultKind.TREND:
        if result.value.slope is None:
            return "[dim]unavailable[/dim]"
        return f"slope={result.value.slope:.6g} intercept={result.value.intercept:.6g}"
    if not result.value.ok:
        return f"[yellow]{result.value.failure.reason.value}[/yellow]: {result.value.failure.message}"
    return ", ".join(f"{p.value:.6g}" for p in result.value.points)


def _print_result(result: QueryResult) -> None:
    table = Table(title=f"Results for {result.query}")
    table.add_column("Operator", style="cyan")
    table.add_column("Window")
    table.add_column("Key")
    table.add_column("Count", justify="right")
    table.add_column("Value")
    for r in result.results:
        window = f"[{r.window.start:g}, {r.window.end:g})" + (" [yellow]partial[/yellow]" if r.partial else "")
        table.add_row(r.operator_id, window, "" if r.key is None else str(r.key), str(r.count), _format_value(r))
    console.print(table)

    if result.late_points:
        console.print(f"[yellow]{len(result.late_points)} late point(s) diverted to side output[/yellow]")
    if result.error is not None:
        console.print(Panel(
            orjson.dumps(result.error.to_dict(), option=orjson.OPT_INDENT_2).decode(),
            title="[bold red]Query failed[/bold red]",
        ))


@app.callback()
def main_callback():
    """Sundial CLI - time-series analytics engine."""
    pass


@app.command()
def version():
    """Show Sundial version."""
    from . import __version__
    console.print(f"[bold blue]Sundial[/bold blue] version [bold green]{__version__}[/bold green]")


@app.command()
def validate(
    graph_file: Path = typer.Argument(..., help="Compiled operator graph (JSON)"),
):
    """Validate a compiled operator graph."""
    graph = _load_graph(graph_file)

    table = Table(title=f"Operator graph '{graph.name}' ({graph.time_unit.value})")
    table.add_column("Operator", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Inputs")
    for node in graph.topological_order():
        table.add_row(node.node_id, node.operator_type.value, ", ".join(node.inputs))
    console.print(table)
    console.print(f"[bold green]✓[/bold green] {len(graph)} operators, "
                  f"{len(graph.branches())} independent branch(es)")


@app.command()
def run(
    graph_file: Path = typer.Argument(..., help="Compiled operator graph (JSON)"),
    points_file: Path = typer.Argument(..., help="Points, as a list or keyed by stream (JSON)"),
    streaming: bool = typer.Option(False, "--streaming/--batch", help="Execution mode"),
    lateness: Optional[float] = typer.Option(None, help="Lateness tolerance in graph time units"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="JSON config file"),
    output_json: bool = typer.Option(False, "--json", help="Print the full result as JSON"),
    log_level: Optional[str] = typer.Option(None, "-l", "--loglevel", help="Logging level"),
    metrics: bool = typer.Option(False, "--metrics", help="Print Prometheus metrics after the run"),
):
    """Run a graph over a points file."""
    config = SundialConfig.load(str(config_file) if config_file else None)
    _configure_logging(log_level, config)

    graph = _load_graph(graph_file)
    try:
        grouped = load_points(_read_json(points_file))
    except (KeyError, TypeError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] malformed points file: {e}")
        raise typer.Exit(code=1)

    overrides = {} if lateness is None else {'lateness': lateness}
    engine = Engine(graph, config.to_query_context(**overrides))

    if streaming:
        sources = {s: IterableStreamingSource(s, pts) for s, pts in grouped.items()}
        result = asyncio.run(engine.run_streaming(sources))
    else:
        sources = {s: ListSource(s, pts) for s, pts in grouped.items()}
        result = engine.run_batch(sources)

    if output_json:
        sys.stdout.write(orjson.dumps(result.to_dict(), option=orjson.OPT_INDENT_2).decode() + "\n")
    else:
        _print_result(result)
    if metrics:
        console.print(engine.metrics.get_metrics_text())

    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def models():
    """List available forecast model kinds."""
    table = Table(title="Forecast models")
    table.add_column("Model", style="cyan")
    table.add_column("Description")
    for kind in DEFAULT_REGISTRY.kinds():
        adapter = DEFAULT_REGISTRY.get(kind)
        doc = (type(adapter).__doc__ or "").strip().splitlines()
        table.add_row(kind, doc[0] if doc else "")
    console.print(table)


@config_app.command("show")
def config_show(
    config_file: Optional[Path] = typer.Option(None, "--config", help="JSON config file"),
):
    """Show the effective configuration."""
    config = SundialConfig.load(str(config_file) if config_file else None)
    console.print(Panel(
        orjson.dumps(config.to_dict(), option=orjson.OPT_INDENT_2).decode(),
        title="[bold blue]Sundial configuration[/bold blue]",
    ))


def main():
    """Main CLI entry point - equivalent to 'sundial' command."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted by user[/dim]")
        sys.exit(1)


if __name__ == "__main__":
    main()
