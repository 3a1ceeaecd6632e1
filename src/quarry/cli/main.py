"""quarry CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from quarry import __version__
from quarry.cli.index import index_cmd, refresh_cmd
from quarry.cli.search import search_cmd
from quarry.cli.status import graph_cmd, status_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("quarry")
    except importlib.metadata.PackageNotFoundError:
        return __version__


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"quarry {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="quarry",
    help=(
        "quarry: hybrid knowledge store CLI.\n\n"
        "  quarry index NAME    Build a store from its *.knowledge.yaml definition.\n"
        "  quarry search NAME Q Search chunks and entity neighborhoods together."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """quarry: hybrid knowledge store CLI."""


app.command("index")(index_cmd)
app.command("refresh")(refresh_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("graph")(graph_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed quarry version."""
    typer.echo(f"quarry {_version()}")


if __name__ == "__main__":
    app()
