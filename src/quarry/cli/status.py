"""quarry status / quarry graph: store overview and graph schema summary.

Neither command embeds anything: status reads the status records, graph
opens the store file with its recorded dimension.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from quarry.cli.errors import err_no_stores, err_not_indexed
from quarry.cli.project import ProjectDir, console, open_manager, require_store
from quarry.db.store import KnowledgeDB, read_dimensions

_STATUS_STYLE = {
    "indexed": "[green]indexed[/]",
    "indexing": "[yellow]indexing[/]",
    "error": "[red]error[/]",
    "not_indexed": "[dim]not indexed[/]",
}


def status_cmd(project_dir: ProjectDir = Path(".")) -> None:
    """Show every defined store with its index status and counts."""
    manager = open_manager(project_dir)
    configs = manager.list_configs()
    if not configs:
        console.print(err_no_stores(str(manager.knowledge_dir)))
        return

    statuses = manager.get_all_statuses()
    table = Table(title="Knowledge stores")
    table.add_column("Name", style="bold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Docs", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Entities", justify="right")
    table.add_column("Edges", justify="right")
    table.add_column("Last indexed")

    errors: list[str] = []
    for cfg in configs:
        meta = statuses.get(cfg.name)
        if meta is None:
            table.add_row(
                cfg.name,
                "graph" if cfg.has_graph else "vector",
                _STATUS_STYLE["not_indexed"],
                "-", "-", "-", "-", "-",
            )
            continue
        table.add_row(
            cfg.name,
            meta.kind,
            _STATUS_STYLE.get(meta.status, meta.status),
            f"{meta.document_count:,}",
            f"{meta.chunk_count:,}",
            f"{meta.entity_count:,}",
            f"{meta.edge_count:,}",
            (meta.last_indexed_at or "-")[:19].replace("T", " "),
        )
        if meta.status == "error" and meta.error_message:
            errors.append(f"[red]{cfg.name}:[/] {meta.error_message}")

    console.print(table)
    if errors:
        console.print(Panel("\n".join(errors), title="[bold]Errors[/]", expand=False))


def graph_cmd(
    name: Annotated[str, typer.Argument(help="Store to describe.")],
    project_dir: ProjectDir = Path("."),
) -> None:
    """Summarize a store's graph: entity and relationship types with counts."""
    manager = open_manager(project_dir)
    require_store(manager, name)

    path = manager.db_path(name)
    dimensions = read_dimensions(path)
    if dimensions is None:
        console.print(err_not_indexed(name))
        raise typer.Exit(1)

    with KnowledgeDB.open(path, dimensions) as db:
        schema = db.get_schema()
        chunks = db.chunk_count()

    console.print(
        f"[bold]{name}[/]  chunks: {chunks:,}  |  "
        f"entities: {sum(schema['entity_types'].values()):,}  |  "
        f"relationships: {sum(schema['relationship_types'].values()):,}"
    )
    if not schema["entity_types"]:
        console.print("[dim]No graph data. Add a graph.direct_mapping section to build one.[/]")
        return

    for title, key in (("Entity types", "entity_types"), ("Relationship types", "relationship_types")):
        table = Table(title=title)
        table.add_column("Type", style="cyan")
        table.add_column("Count", justify="right")
        for type_name, count in schema[key].items():
            table.add_row(type_name, f"{count:,}")
        console.print(table)
