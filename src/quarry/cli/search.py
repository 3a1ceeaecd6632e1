"""quarry search: hybrid similarity search over one store."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Table

from quarry.cli.errors import err_build_failed
from quarry.cli.project import ProjectDir, console, open_manager, require_store
from quarry.db.models import SearchResult
from quarry.knowledge.manager import KnowledgeManager

_PREVIEW_CHARS = 200


def search_cmd(
    name: Annotated[str, typer.Argument(help="Store to search.")],
    query: Annotated[str, typer.Argument(help="Search text.")],
    k: Annotated[
        int | None,
        typer.Option("-k", "--top-k", min=1, help="Number of results (default: store's default_k)."),
    ] = None,
    project_dir: ProjectDir = Path("."),
) -> None:
    """Search a store; chunks and entity neighborhoods are ranked together."""
    manager = open_manager(project_dir)
    require_store(manager, name)

    try:
        results = asyncio.run(_search(manager, name, query, k))
    except Exception as exc:
        console.print(err_build_failed(name, exc))
        raise typer.Exit(1) from exc

    if not results:
        console.print("[yellow]No results.[/]")
        return

    table = Table(title=f"{name}: {query}", show_lines=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Content")
    table.add_column("Source", style="cyan")
    for i, r in enumerate(results, start=1):
        table.add_row(str(i), f"{r.score:.3f}", _preview(r.content), _source(r))
    console.print(table)


async def _search(manager: KnowledgeManager, name: str, query: str, k: int | None) -> list[SearchResult]:
    try:
        status = manager.get_status(name)
        if status is not None and status.status == "error":
            console.print(
                f"[yellow]'{name}' failed its last build; searching the data it left. "
                f"Run [bold]quarry index {name}[/bold] to retry.[/]"
            )
        else:
            await manager.initialize(name)
        return await manager.search(name, query, k)
    finally:
        manager.close()


def _preview(text: str) -> str:
    text = text.strip()
    return text if len(text) <= _PREVIEW_CHARS else text[:_PREVIEW_CHARS] + "…"


def _source(result: SearchResult) -> str:
    if result.metadata.get("type") == "entity_neighborhood":
        return f"entity: {result.metadata.get('entityName', '')}"
    return str(result.metadata.get("source", ""))
