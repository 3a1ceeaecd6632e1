"""quarry configuration loader.

Two kinds of configuration live here:

Project settings, priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (QUARRY_EMBEDDING_MODEL, QUARRY_KNOWLEDGE_DIR, QUARRY_DATA_DIR)
  3. Per-project quarry.yaml
  4. Global ~/.quarry/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Knowledge store definitions: one ``*.knowledge.yaml`` per store inside the
knowledge directory. Keys may be written in snake_case or camelCase.

All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from quarry.errors import ConfigError
from quarry.graph.mapper import DirectMapping

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".quarry"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "quarry.yaml"

KNOWLEDGE_FILE_GLOB: str = "**/*.knowledge.yaml"

# Fields that suggest an API key; forbidden in global config.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["embedding", "storage", "search"])

LOADER_TYPES: frozenset[str] = frozenset(["text", "markdown", "json", "csv", "pdf", "html"])
SPLITTER_TYPES: frozenset[str] = frozenset(["character", "recursive"])


# ---------------------------------------------------------------------------
# Project settings
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (quarry.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Requested output dimensions, for models that support it.
        eos_token: Token appended to every embedded text (some local models need one).
        batch_size: Number of texts sent per embedding request.
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int | None = None
    eos_token: str | None = None
    batch_size: int = 100


@dataclass
class StorageCfg:
    """Where store definitions, data files and status records live (quarry.yaml: storage:)."""

    knowledge_dir: str = "knowledge"
    data_dir: str = ".knowledge-data"
    cache_dir: str = ".knowledge-cache"


@dataclass
class SearchCfg:
    """Search defaults (quarry.yaml: search:, or per store)."""

    default_k: int = 4
    score_threshold: float | None = None


@dataclass
class QuarryConfig:
    """Root project configuration, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)
    search: SearchCfg = field(default_factory=SearchCfg)


# ---------------------------------------------------------------------------
# Knowledge store definitions
# ---------------------------------------------------------------------------


@dataclass
class DirectorySource:
    path: str
    pattern: str = "*"
    recursive: bool = True
    type: str = "directory"


@dataclass
class FileSource:
    path: str
    type: str = "file"


@dataclass
class DatabaseSource:
    """Rows of a SQL query, one document per row.

    Attributes:
        connection_string: ``sqlite:///path/to.db`` (relative paths resolve against
            the project root).
        query: SQL query returning the rows to index.
        content_column: Column holding the document text.
        metadata_columns: Columns copied into document metadata (all columns when None).
        batch_size: Rows fetched per round trip.
    """

    connection_string: str
    query: str
    content_column: str = "content"
    metadata_columns: list[str] | None = None
    batch_size: int = 100
    type: str = "database"


@dataclass
class WebSource:
    url: str
    selector: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    json_path: str | None = None
    type: str = "web"


SourceCfg = Union[DirectorySource, FileSource, DatabaseSource, WebSource]


@dataclass
class LoaderCfg:
    type: str = "text"


@dataclass
class SplitterCfg:
    type: str = "character"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    separator: str | None = None


@dataclass
class GraphCfg:
    """Graph extraction settings. Only direct (model-free) mapping is supported."""

    direct_mapping: DirectMapping | None = None


@dataclass
class KnowledgeConfig:
    """One knowledge store definition (``<name>.knowledge.yaml``)."""

    name: str
    description: str = ""
    source: SourceCfg = field(default_factory=lambda: DirectorySource(path="."))
    loader: LoaderCfg = field(default_factory=LoaderCfg)
    splitter: SplitterCfg = field(default_factory=SplitterCfg)
    embedding: str | None = None
    graph: GraphCfg | None = None
    search: SearchCfg | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_graph(self) -> bool:
        return self.graph is not None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _pick(raw: dict[str, Any], name: str, default: Any = None) -> Any:
    """Return raw[name] or raw[camelCase(name)], else *default*."""
    if name in raw:
        return raw[name]
    return raw.get(_camel(name), default)


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_search(raw: dict[str, Any], defaults: SearchCfg) -> SearchCfg:
    threshold = _pick(raw, "score_threshold", defaults.score_threshold)
    return SearchCfg(
        default_k=int(_pick(raw, "default_k", defaults.default_k)),
        score_threshold=float(threshold) if threshold is not None else None,
    )


def _cfg_from_dict(data: dict[str, Any]) -> QuarryConfig:
    """Build a *QuarryConfig* from a merged raw YAML dict."""
    cfg = QuarryConfig()

    if "embedding" in data:
        e = data["embedding"] or {}
        dims = _pick(e, "dimensions")
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(dims) if dims is not None else None,
            eos_token=_pick(e, "eos_token"),
            batch_size=int(_pick(e, "batch_size", cfg.embedding.batch_size)),
        )

    if "storage" in data:
        s = data["storage"] or {}
        cfg.storage = StorageCfg(
            knowledge_dir=str(_pick(s, "knowledge_dir", cfg.storage.knowledge_dir)),
            data_dir=str(_pick(s, "data_dir", cfg.storage.data_dir)),
            cache_dir=str(_pick(s, "cache_dir", cfg.storage.cache_dir)),
        )

    if "search" in data:
        cfg.search = _parse_search(data["search"] or {}, cfg.search)

    return cfg


def _apply_env_overrides(cfg: QuarryConfig) -> QuarryConfig:
    """Apply QUARRY_* environment variable overrides."""
    if model := os.environ.get("QUARRY_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if knowledge_dir := os.environ.get("QUARRY_KNOWLEDGE_DIR"):
        cfg.storage.knowledge_dir = knowledge_dir
    if data_dir := os.environ.get("QUARRY_DATA_DIR"):
        cfg.storage.data_dir = data_dir
    return cfg


# ---------------------------------------------------------------------------
# Public API: project settings
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> QuarryConfig:
    """Load and return a merged *QuarryConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *quarry.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    return _apply_env_overrides(_cfg_from_dict(merged))


# ---------------------------------------------------------------------------
# Public API: knowledge store definitions
# ---------------------------------------------------------------------------


def _parse_source(raw: dict[str, Any], project_root: Path) -> SourceCfg:
    source_type = raw.get("type")
    if source_type == "directory":
        return DirectorySource(
            path=str(_require(raw, "path", "source")),
            pattern=str(raw.get("pattern") or "*"),
            recursive=bool(raw.get("recursive", True)),
        )
    if source_type == "file":
        return FileSource(path=str(_require(raw, "path", "source")))
    if source_type == "database":
        conn_str = str(_require(raw, "connection_string", "source"))
        return DatabaseSource(
            connection_string=_resolve_sqlite_path(conn_str, project_root),
            query=str(_require(raw, "query", "source")),
            content_column=str(_pick(raw, "content_column", "content")),
            metadata_columns=_pick(raw, "metadata_columns"),
            batch_size=int(_pick(raw, "batch_size", 100)),
        )
    if source_type == "web":
        url = str(_require(raw, "url", "source"))
        if not url.startswith(("http://", "https://")):
            raise ConfigError(f"source.url must be an http(s) URL, got '{url}'")
        return WebSource(
            url=url,
            selector=raw.get("selector"),
            headers=dict(raw.get("headers") or {}),
            json_path=_pick(raw, "json_path"),
        )
    raise ConfigError(f"Unknown source type: {source_type!r}")


def _require(raw: dict[str, Any], name: str, section: str) -> Any:
    value = _pick(raw, name)
    if value in (None, ""):
        raise ConfigError(f"{section}.{name} is required")
    return value


def _resolve_sqlite_path(conn_str: str, project_root: Path) -> str:
    """Resolve relative ``sqlite://`` paths against *project_root* so cwd does not matter."""
    if not conn_str.startswith("sqlite://"):
        return conn_str
    file_part = conn_str[len("sqlite://"):]
    if Path(file_part).is_absolute():
        return conn_str
    return f"sqlite://{(project_root / file_part).resolve()}"


def parse_knowledge_config(data: dict[str, Any], project_root: Path | None = None) -> KnowledgeConfig:
    """Build a *KnowledgeConfig* from a parsed ``*.knowledge.yaml`` dict.

    Raises:
        ConfigError: On a missing name, unknown source/loader/splitter type,
            or a graph section without a direct mapping.
    """
    if not isinstance(data, dict):
        raise ConfigError("Knowledge config must be a mapping")
    root = project_root if project_root is not None else Path.cwd()

    name = data.get("name")
    if not name:
        raise ConfigError("Knowledge config requires a 'name'")

    source = _parse_source(data.get("source") or {}, root)

    loader_raw = data.get("loader") or {}
    loader = LoaderCfg(type=str(loader_raw.get("type", "text")))
    if loader.type not in LOADER_TYPES:
        raise ConfigError(f"Unknown loader type: {loader.type!r}")

    sp = data.get("splitter") or {}
    splitter = SplitterCfg(
        type=str(sp.get("type", "character")),
        chunk_size=int(_pick(sp, "chunk_size", 1000)),
        chunk_overlap=int(_pick(sp, "chunk_overlap", 200)),
        separator=sp.get("separator"),
    )
    if splitter.type not in SPLITTER_TYPES:
        raise ConfigError(f"Unknown splitter type: {splitter.type!r}")
    if splitter.chunk_size < 1 or not 0 <= splitter.chunk_overlap < splitter.chunk_size:
        raise ConfigError("splitter.chunk_overlap must be >= 0 and smaller than chunk_size")

    graph = None
    if data.get("graph") is not None:
        g = data["graph"] or {}
        mapping_raw = _pick(g, "direct_mapping")
        if not mapping_raw:
            raise ConfigError(f"Graph config for '{name}' requires a direct_mapping configuration")
        graph = GraphCfg(direct_mapping=DirectMapping.from_dict(mapping_raw))

    search = _parse_search(data["search"] or {}, SearchCfg()) if "search" in data else None

    embedding = data.get("embedding")
    return KnowledgeConfig(
        name=str(name),
        description=str(data.get("description", "")),
        source=source,
        loader=loader,
        splitter=splitter,
        # "default" means: use the project-level embedding model
        embedding=None if embedding in (None, "default") else str(embedding),
        graph=graph,
        search=search,
        metadata=dict(data.get("metadata") or {}),
    )


def load_knowledge_file(path: Path, project_root: Path | None = None) -> KnowledgeConfig:
    """Read and parse a single ``*.knowledge.yaml`` file."""
    raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return parse_knowledge_config(raw, project_root)
