"""quarry index / quarry refresh: build knowledge stores from their sources."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from quarry.cli.errors import err_build_failed, err_no_stores
from quarry.cli.project import ProjectDir, console, open_manager, require_store
from quarry.knowledge.manager import KnowledgeManager
from quarry.knowledge.metadata import ProgressEvent


def index_cmd(
    name: Annotated[str | None, typer.Argument(help="Store to index.")] = None,
    all_stores: Annotated[
        bool,
        typer.Option("--all", help="Index every defined store."),
    ] = False,
    project_dir: ProjectDir = Path("."),
) -> None:
    """Index a knowledge store (restores it unchanged if its sources have not changed)."""
    manager = open_manager(project_dir)

    if all_stores:
        names = [c.name for c in manager.list_configs()]
        if not names:
            console.print(err_no_stores(str(manager.knowledge_dir)))
            raise typer.Exit(0)
    elif name:
        require_store(manager, name)
        names = [name]
    else:
        console.print("[red]Error:[/] Give a store NAME or use --all.")
        raise typer.Exit(1)

    failed = asyncio.run(_run(manager, names, refresh=False))
    if failed:
        raise typer.Exit(1)


def refresh_cmd(
    name: Annotated[str, typer.Argument(help="Store to refresh.")],
    project_dir: ProjectDir = Path("."),
) -> None:
    """Re-index a store if its sources changed; do nothing otherwise."""
    manager = open_manager(project_dir)
    require_store(manager, name)
    failed = asyncio.run(_run(manager, [name], refresh=True))
    if failed:
        raise typer.Exit(1)


async def _run(manager: KnowledgeManager, names: list[str], refresh: bool) -> list[str]:
    """Build each store in turn with a progress bar. Returns the names that failed."""
    failed: list[str] = []
    try:
        for name in names:
            console.print(f"\n[bold]→ {name}[/]")
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                transient=True,
                console=console,
            ) as prog:
                task = prog.add_task("Starting…", total=100)

                def _on_progress(event: ProgressEvent) -> None:
                    prog.update(task, completed=event.progress, description=event.message)

                try:
                    if refresh:
                        await manager.refresh(name, _on_progress)
                    else:
                        await manager.initialize(name, _on_progress)
                except Exception as exc:
                    failed.append(name)
                    console.print(err_build_failed(name, exc))
                    continue

            status = manager.get_status(name)
            if status is not None:
                console.print(
                    f"  [green]✓[/] {status.chunk_count:,} chunks, {status.entity_count:,} entities, "
                    f"{status.edge_count:,} relationships ({status.last_index_duration_ms or 0} ms)"
                )
    finally:
        manager.close()
    return failed
