"""Shared CLI plumbing: project directory option and manager construction."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from quarry.cli.errors import err_config, err_store_not_found
from quarry.config import load_config
from quarry.errors import ConfigError
from quarry.knowledge.manager import KnowledgeManager

console = Console()

ProjectDir = Annotated[
    Path,
    typer.Option(
        "--project-dir",
        "-p",
        help="Project root holding quarry.yaml and the knowledge/ directory.",
        file_okay=False,
    ),
]


def open_manager(project_dir: Path) -> KnowledgeManager:
    """Build a manager for *project_dir* with every store definition loaded.

    Exits with code 1 on an invalid ``quarry.yaml``.
    """
    try:
        config = load_config(project_dir)
    except ConfigError as exc:
        console.print(err_config(str(exc), str(project_dir / "quarry.yaml")))
        raise typer.Exit(1) from exc
    manager = KnowledgeManager(project_dir, config)
    manager.load_configs()
    return manager


def require_store(manager: KnowledgeManager, name: str) -> None:
    """Exit with code 1 unless *name* is a loaded store definition."""
    if manager.get_config(name) is None:
        console.print(err_store_not_found(name, [c.name for c in manager.list_configs()]))
        raise typer.Exit(1)
