"""quarry rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from quarry.cli.errors import err_store_not_found
    console.print(err_store_not_found("docs", ["faq"]))
    raise typer.Exit(1)
"""

from __future__ import annotations

from quarry.errors import EmbeddingError, SsrfError


def err_store_not_found(name: str, known: list[str]) -> str:
    """No ``*.knowledge.yaml`` defines *name*."""
    known_list = ", ".join(sorted(known)) if known else "(none)"
    return (
        f"[red]Error:[/] Knowledge store '{name}' is not defined.\n"
        f"  Known stores: {known_list}\n"
        f"  Add a definition:  knowledge/{name}.knowledge.yaml"
    )


def err_no_stores(knowledge_dir: str) -> str:
    """The knowledge directory holds no store definitions."""
    return (
        f"[yellow]No knowledge stores defined in '{knowledge_dir}'.[/]\n"
        "  Create one, e.g.  knowledge/docs.knowledge.yaml:\n"
        "    name: docs\n"
        "    source: {type: directory, path: docs, pattern: '*.md'}"
    )


def err_not_indexed(name: str) -> str:
    """The store file does not exist yet."""
    return (
        f"[red]Error:[/] Knowledge store '{name}' has not been indexed.\n"
        f"  Run:  quarry index {name}"
    )


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "voyage": "VOYAGE_API_KEY",
        "mistral": "MISTRAL_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(message: str, path: str | None = None) -> str:
    """A config file is invalid."""
    where = f" in '{path}'" if path else ""
    return (
        f"[red]Error:[/] Invalid configuration{where}:\n"
        f"  {message}\n"
        "  Fix the file and run the command again."
    )


def err_build_failed(name: str, exc: Exception) -> str:
    """Indexing *name* failed; previously indexed data is still searchable."""
    if isinstance(exc, EmbeddingError) and "No API key found for provider" in str(exc):
        provider = str(exc).split("'")[1]
        return err_no_api_key(provider)
    if isinstance(exc, SsrfError):
        return f"[red]Error:[/] Indexing '{name}' blocked: {exc}\n  Use a publicly reachable URL."
    return (
        f"[red]Error:[/] Indexing '{name}' failed: {exc}\n"
        "  Any previously indexed data is still searchable.\n"
        f"  Fix the cause, then run:  quarry index {name}"
    )
