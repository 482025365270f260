#!/usr/bin/env python3
"""
Data Fabric - Main Entry Point
"""
import asyncio
import json
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from datafabric.core.exceptions import FabricError
from datafabric.events.models import SinkKind
from datafabric.federation.models import Consistency, FederatedQuery, QueryStatus
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.reconciliation.models import ReconciliationStatus
from datafabric.utils.config import Config, ConfigDefaults, config_summary, load_config
from datafabric.utils.logger import setup_logger

console = Console()


def _load(config_path: str) -> Config:
    config = load_config(config_path)
    setup_logger(
        level=config.logging.level,
        log_file=config.logging.file,
        json_format=config.logging.format == ConfigDefaults.LOGGING_FORMAT_JSON
    )
    return config


def check_port_available(port: int, host: str = '0.0.0.0') -> bool:
    """Check if a port can be bound"""
    import socket

    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.close()
        return True
    except OSError:
        return False


async def _with_fabric(config: Config, action, catch_up: bool):
    fabric = DataFabric.from_config(config)
    try:
        if catch_up:
            counts = await fabric.sync_once()
            console.print(f"[dim]Caught up: {counts}[/dim]")
        return await action(fabric)
    finally:
        await fabric.close()


@click.group()
@click.option('--config', 'config_path', default=ConfigDefaults.CONFIG_PATH_DEFAULT,
              show_default=True, help='Path to the YAML configuration')
@click.pass_context
def cli(ctx: click.Context, config_path: str):
    """Keep a relational source in sync with vector, graph and keyword indexes"""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path


@cli.command()
@click.option('--port', default=None, type=int, help='Port to run server on')
@click.option('--host', default=None, help='Host to bind to')
@click.pass_context
def run(ctx: click.Context, port: Optional[int], host: Optional[str]):
    """Start the pipeline workers and the HTTP API"""
    import uvicorn

    from api.dependencies import AppState

    config = _load(ctx.obj['config_path'])
    AppState.set_config(config)
    host = host or config.server.host
    port = port or config.server.port

    if not check_port_available(port, host):
        console.print(f"[bold red]Port {port} is already in use[/bold red]")
        console.print(f"  Use a different port: [bold]python main.py run --port {port + 1}[/bold]")
        sys.exit(1)

    console.print("[bold blue]Starting Data Fabric[/bold blue]")
    for key, value in config_summary(config).items():
        console.print(f"  {key}: {value}")
    console.print(f"Server: http://{host}:{port}")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("[bold]Press Ctrl+C to stop[/bold]\n")

    try:
        uvicorn.run("api.main:app", host=host, port=port, reload=False)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped by user[/yellow]")


@cli.command()
@click.option('--sink', 'sinks', multiple=True, type=click.Choice([k.value for k in SinkKind]),
              help='Sink to audit (repeatable; all by default)')
@click.option('--table', 'tables', multiple=True, help='Source table to audit (repeatable)')
@click.option('--catch-up/--no-catch-up', default=True, help='Sync pending changes before auditing')
@click.pass_context
def reconcile(ctx: click.Context, sinks: Tuple[str, ...], tables: Tuple[str, ...], catch_up: bool):
    """Run one reconciliation pass and print the reports"""
    config = _load(ctx.obj['config_path'])

    async def action(fabric: DataFabric):
        return await fabric.reconcile(
            sinks=[SinkKind(s) for s in sinks] or None,
            table_names=list(tables) or None
        )

    try:
        reports = asyncio.run(_with_fabric(config, action, catch_up))
    except FabricError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        sys.exit(1)

    table = Table(title="Reconciliation")
    for column in ("Sink", "Table", "Partition", "Status", "Source", "Sink rows", "Mismatched"):
        table.add_column(column)
    colors = {
        ReconciliationStatus.IN_SYNC: "green",
        ReconciliationStatus.DRIFTED: "yellow",
        ReconciliationStatus.UNKNOWN: "red",
    }
    for report in reports:
        table.add_row(
            report.sink,
            report.source_table,
            str(report.partition),
            f"[{colors[report.status]}]{report.status.value}[/{colors[report.status]}]",
            str(report.source_count),
            str(report.sink_count),
            ", ".join(report.mismatched_keys[:5]) + (" ..." if len(report.mismatched_keys) > 5 else ""),
        )
    console.print(table)
    if any(r.status != ReconciliationStatus.IN_SYNC for r in reports):
        sys.exit(2)


@cli.command()
@click.argument('text')
@click.option('--filter', 'filters', default=None, help='Structured filters as JSON')
@click.option('--top-k', default=10, show_default=True, type=int)
@click.option('--consistency', default=Consistency.EVENTUAL.value,
              type=click.Choice([c.value for c in Consistency]))
@click.option('--deadline-ms', default=None, type=int)
@click.option('--catch-up/--no-catch-up', default=True, help='Sync pending changes before querying')
@click.pass_context
def query(ctx: click.Context, text: str, filters: Optional[str], top_k: int,
          consistency: str, deadline_ms: Optional[int], catch_up: bool):
    """Run one federated query"""
    config = _load(ctx.obj['config_path'])
    try:
        request = FederatedQuery(
            query_text=text,
            structured_filters=json.loads(filters) if filters else {},
            top_k=top_k,
            consistency=Consistency(consistency),
            deadline_ms=deadline_ms,
        )
    except ValueError as e:
        console.print(f"[bold red]Invalid query: {e}[/bold red]")
        sys.exit(1)

    async def action(fabric: DataFabric):
        return await fabric.query(request)

    try:
        response = asyncio.run(_with_fabric(config, action, catch_up))
    except FabricError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        sys.exit(1)

    table = Table(title=f"'{text}' ({response.took_ms:.1f}ms)")
    table.add_column("#")
    table.add_column("Document")
    table.add_column("Score")
    table.add_column("Sources")
    for rank, result in enumerate(response.results, start=1):
        table.add_row(str(rank), result.document_key, f"{result.score:.4f}", ", ".join(result.contributing_sources))
    console.print(table)
    if response.status == QueryStatus.DEGRADED:
        degraded = ", ".join(f"{o.source}={o.state.value}" for o in response.sources if o.error)
        console.print(f"[yellow]Degraded: {degraded}[/yellow]")


@cli.command()
@click.option('--table', 'tables', multiple=True, help='Table to re-snapshot (repeatable; all by default)')
@click.pass_context
def resync(ctx: click.Context, tables: Tuple[str, ...]):
    """Re-publish current source state as snapshot events"""
    config = _load(ctx.obj['config_path'])

    async def action(fabric: DataFabric):
        published = await fabric.resync(list(tables) or None)
        await fabric.sync_once()
        return published

    try:
        published = asyncio.run(_with_fabric(config, action, catch_up=False))
    except FabricError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        sys.exit(1)
    for name, count in published.items():
        console.print(f"[green]{name}[/green]: {count} rows re-published")


if __name__ == "__main__":
    cli()
