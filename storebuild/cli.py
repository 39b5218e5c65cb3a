"""Thin CLI wrapper for storebuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Annotated

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from storebuild import __version__
from storebuild.config import Settings, get_settings, print_settings_json
from storebuild.types import NodeStatus

app = typer.Typer(
    name="storebuild",
    help="storebuild - content-addressed build orchestrator",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit codes of the build command
EXIT_BUILD_FAILED = 1
EXIT_INVALID_GRAPH = 2
EXIT_STORE_CORRUPTION = 3
EXIT_INTERRUPTED = 130


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"storebuild version {__version__}")
        raise typer.Exit()


def _print_json(data: object) -> None:
    """Print JSON without wrapping or markup so it stays parseable."""
    console.print(json.dumps(data, indent=2), soft_wrap=True, markup=False, highlight=False)


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """storebuild - content-addressed build orchestrator."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


def _effective_settings(store: Path | None, jobs: int | None = None) -> Settings:
    settings = get_settings()
    updates: dict[str, object] = {}
    if store is not None:
        updates["store_dir"] = store
    if jobs is not None:
        updates["max_workers"] = jobs
    return settings.model_copy(update=updates) if updates else settings


def _load_request(file: Path, root: str | None, settings: Settings):
    """Load a description file and pick the root, exiting on errors."""
    from storebuild.builds.description import DescriptionError, DuplicateDescriptionError
    from storebuild.descriptions.io import load_catalog

    try:
        catalog, default_root = load_catalog(file, system=settings.system)
    except (ValidationError, DescriptionError, DuplicateDescriptionError) as e:
        err_console.print(f"[red]Invalid description file {file}:[/red]\n{e}")
        raise typer.Exit(code=EXIT_INVALID_GRAPH) from None
    except (OSError, ValueError, yaml.YAMLError) as e:
        err_console.print(f"[red]Cannot read {file}: {e}[/red]")
        raise typer.Exit(code=EXIT_INVALID_GRAPH) from None

    root_name = root or default_root
    if root_name is None:
        names = catalog.names()
        if len(names) != 1:
            err_console.print(
                "[red]No root given and the file does not set one[/red]"
            )
            err_console.print(f"Descriptions: {', '.join(names)}")
            raise typer.Exit(code=EXIT_INVALID_GRAPH)
        root_name = names[0]
    return catalog, root_name


@app.command()
def build(
    file: Annotated[Path, typer.Argument(help="Description file (YAML or JSON)")],
    root: Annotated[
        str | None,
        typer.Option("--root", "-r", help="Description to build (default: file root)"),
    ] = None,
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Content store directory"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, help="Maximum concurrent builders"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", min=0.001, help="Per-builder timeout in seconds"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a description and everything it depends on."""
    from storebuild.builds.environment import UnmaterializedReference
    from storebuild.builds.graph import CyclicDependency, UnresolvedReference
    from storebuild.builds.service import run_build_request
    from storebuild.builds.store import ContentStore, StoreCorruption
    from storebuild.db import create_all_tables, get_engine, get_session_factory

    settings = _effective_settings(store, jobs)
    catalog, root_name = _load_request(file, root, settings)
    content_store = ContentStore(settings.store_dir)

    session_factory = None
    if settings.record_builds:
        engine = get_engine(settings.db_url)
        create_all_tables(engine)
        session_factory = get_session_factory(engine)

    cancel_event = threading.Event()
    try:
        report = run_build_request(
            root_name,
            catalog,
            settings=settings,
            store=content_store,
            session_factory=session_factory,
            cancel_event=cancel_event,
            timeout=timeout,
        )
    except (CyclicDependency, UnresolvedReference) as e:
        err_console.print(f"[red]Invalid dependency graph: {e}[/red]")
        raise typer.Exit(code=EXIT_INVALID_GRAPH) from None
    except StoreCorruption as e:
        err_console.print(f"[red bold]Store corruption: {e}[/red bold]")
        raise typer.Exit(code=EXIT_STORE_CORRUPTION) from None
    except UnmaterializedReference:
        err_console.print("[red bold]Internal error: input built out of order[/red bold]")
        raise
    except KeyboardInterrupt:
        cancel_event.set()
        err_console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED) from None

    if json_output:
        output = {
            "root": report.root,
            "success": report.success,
            "path": str(report.root_entry.path) if report.root_entry else None,
            "nodes": [
                {
                    "name": r.name,
                    "address": r.address,
                    "status": r.status.value,
                    "path": str(r.entry.path) if r.entry else None,
                    "error": str(r.failure) if r.failure else None,
                    "log_path": str(r.failure.log_path)
                    if r.failure and r.failure.log_path
                    else None,
                }
                for r in report.results.values()
            ],
        }
        _print_json(output)
    else:
        console.print()
        console.print("[bold]Build Results:[/bold]")
        console.print(f"  [green]Built: {report.built}[/green]")
        console.print(f"  [blue]Cache hits: {report.cached}[/blue]")
        failed = report.count(NodeStatus.FAILED)
        skipped = report.count(NodeStatus.SKIPPED)
        cancelled = report.count(NodeStatus.CANCELLED)
        if failed:
            console.print(f"  [red]Failed: {failed}[/red]")
        if skipped:
            console.print(f"  [yellow]Skipped (dependency failed): {skipped}[/yellow]")
        if cancelled:
            console.print(f"  [yellow]Cancelled: {cancelled}[/yellow]")
        if failed:
            console.print()
            for failure in report.failures:
                if failure.failed_dependency is not None:
                    continue
                console.print(f"  [red]✗ {failure.name}[/red]")
                console.print(f"      {failure}")
                if failure.log_path:
                    console.print(f"      Log: {failure.log_path}")
        if report.root_entry is not None:
            console.print()
            console.print(
                str(report.root_entry.path), soft_wrap=True, markup=False, highlight=False
            )

    if not report.success:
        raise typer.Exit(code=EXIT_BUILD_FAILED)


@app.command()
def show(
    file: Annotated[Path, typer.Argument(help="Description file (YAML or JSON)")],
    root: Annotated[
        str | None,
        typer.Option("--root", "-r", help="Description to show (default: file root)"),
    ] = None,
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Content store directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve a description and show its graph without building."""
    from storebuild.builds.graph import CyclicDependency, UnresolvedReference, build_graph
    from storebuild.builds.service import describe_graph
    from storebuild.builds.store import ContentStore

    settings = _effective_settings(store)
    catalog, root_name = _load_request(file, root, settings)

    try:
        graph = build_graph(root_name, catalog)
    except (CyclicDependency, UnresolvedReference) as e:
        err_console.print(f"[red]Invalid dependency graph: {e}[/red]")
        raise typer.Exit(code=EXIT_INVALID_GRAPH) from None

    rows = describe_graph(graph, ContentStore(settings.store_dir))
    if json_output:
        _print_json(rows)
        return

    console.print(f"[bold]{len(rows)} node(s), in build order:[/bold]")
    console.print()
    for row in rows:
        state = "[blue]cached[/blue]" if row["cached"] else "[yellow]to build[/yellow]"
        marker = " (root)" if row["root"] else ""
        console.print(f"  [green]{row['name']}[/green]{marker} {state}")
        console.print(f"    Address: {row['address']}")
        console.print(f"    Path: {row['path']}")
        for binding, target in row["inputs"].items():
            console.print(f"    Input {binding}: {target}")
        console.print()


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False, highlight=False)
    else:
        timeout_display = (
            str(settings.build_timeout) if settings.build_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Store directory:     {settings.store_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  System:              {settings.system}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Record builds:       {settings.record_builds}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max workers:         {settings.max_workers}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {timeout_display}")
        console.print(f"  Terminate grace:     {settings.terminate_grace}")


store_app = typer.Typer(help="Inspect the content store")
app.add_typer(store_app, name="store")


@store_app.command("list")
def store_list(
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Content store directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List entries in the content store."""
    from storebuild.builds.store import ContentStore

    settings = _effective_settings(store)
    entries = ContentStore(settings.store_dir).list_entries()

    if not entries:
        if json_output:
            _print_json([])
        else:
            console.print("[yellow]Store is empty[/yellow]")
        return

    if json_output:
        output = [
            {
                "name": e.name,
                "address": e.address,
                "path": str(e.path),
                "outputs": list(e.outputs),
                "created_at": e.created_at,
            }
            for e in entries
        ]
        _print_json(output)
    else:
        console.print(f"[bold]Found {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}:[/bold]")
        console.print()
        for e in entries:
            console.print(f"  [green]{e.name}[/green]")
            console.print(f"    Address: {e.address}")
            console.print(f"    Path: {e.path}")
            console.print(f"    Files: {len(e.outputs)}")
            console.print()


@store_app.command("show")
def store_show(
    address: Annotated[str, typer.Argument(help="Content address (sha256:...)")],
    store: Annotated[
        Path | None,
        typer.Option("--store", help="Content store directory"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a store entry."""
    from storebuild.builds.cache_key import is_address
    from storebuild.builds.store import ContentStore, EntryNotFoundError

    if not is_address(address):
        console.print(f"[red]Malformed address: {address}[/red]")
        raise typer.Exit(code=1)

    settings = _effective_settings(store)
    try:
        entry = ContentStore(settings.store_dir).get(address)
    except EntryNotFoundError:
        console.print(f"[red]Entry not found: {address}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {
            "name": entry.name,
            "address": entry.address,
            "path": str(entry.path),
            "outputs": list(entry.outputs),
            "tree_hash": entry.tree_hash,
            "log_path": str(entry.log_path) if entry.log_path else None,
            "exit_status": entry.exit_status,
            "created_at": entry.created_at,
        }
        _print_json(output)
    else:
        console.print(f"[bold]{entry.name}[/bold]")
        console.print(f"  Address: {entry.address}")
        console.print(f"  Path: {entry.path}")
        console.print(f"  Tree hash: {entry.tree_hash}")
        console.print(f"  Created: {entry.created_at}")
        if entry.log_path:
            console.print(f"  Log: {entry.log_path}")
        console.print("  Files:")
        for output_path in entry.outputs:
            console.print(f"    {output_path}")


builds_app = typer.Typer(help="Inspect build records")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    address: Annotated[
        str | None,
        typer.Option("--address", "-a", help="Filter by content address"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status",
            "-s",
            help="Filter by status (running/succeeded/failed/cached/skipped/cancelled)",
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from storebuild.builds.service import list_builds
    from storebuild.db import create_all_tables, get_engine, get_session_factory

    status_filter: NodeStatus | None = None
    if status:
        try:
            status_filter = NodeStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(
                "Valid values: " + ", ".join(s.value for s in NodeStatus)
            )
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        builds = list_builds(session, address=address, status=status_filter, limit=limit)

        if not builds:
            if json_output:
                _print_json([])
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "request_id": b.request_id,
                    "name": b.name,
                    "address": b.address,
                    "status": b.status,
                    "is_cache_hit": b.is_cache_hit,
                    "started_at": b.started_at.isoformat() if b.started_at else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "exit_status": b.exit_status,
                    "log_path": b.log_path,
                    "error_type": b.error_type,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            _print_json(output)
        else:
            console.print(f"[bold]Found {len(builds)} build record(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "cached": "blue",
                    "failed": "red",
                    "skipped": "red",
                    "running": "yellow",
                    "cancelled": "yellow",
                }.get(b.status, "white")
                console.print(f"  [{status_color}]#{b.id} {b.name}[/{status_color}]")
                console.print(f"    Address: {b.address}")
                console.print(f"    Status: {b.status}")
                console.print(f"    Request: {b.request_id}")
                if b.log_path:
                    console.print(f"    Log: {b.log_path}")
                if b.error_message:
                    console.print(f"    Error: {b.error_message}")
                console.print()


__all__ = ["app"]
