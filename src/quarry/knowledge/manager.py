"""Indexing orchestrator: builds, restores, refreshes and searches named knowledge stores.

One ``KnowledgeDB`` file per store name lives under the data directory; its
status record lives under the cache directory (see ``MetadataManager``).

Concurrency model: everything runs on one asyncio event loop. Store I/O is
synchronous SQLite on the loop thread; document loading and source hashing
run in worker threads. At most one build (initialize or refresh) runs per
store name: later callers attach to the running ``asyncio.Task`` instead of
starting another. Callers await the task through ``asyncio.shield`` so that
cancelling a caller never cancels the build itself.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Mapping
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Sequence

from quarry.config import (
    KNOWLEDGE_FILE_GLOB,
    DatabaseSource,
    KnowledgeConfig,
    QuarryConfig,
    WebSource,
    load_config,
    load_knowledge_file,
)
from quarry.db.models import Chunk, Entity, Neighborhood, SearchResult
from quarry.db.store import KnowledgeDB, validate_dimensions
from quarry.embeddings import Embeddings, ValidatedEmbeddings, create_embeddings
from quarry.errors import StoreNotFoundError, StoreNotReadyError
from quarry.graph.mapper import build_relationships, map_rows
from quarry.ingest.base import Document
from quarry.ingest.loaders import load_documents
from quarry.ingest.splitters import split_documents
from quarry.knowledge.hashing import compute_source_hashes, hashes_equal
from quarry.knowledge.metadata import (
    IndexingPhase,
    MetadataManager,
    ProgressCallback,
    ProgressEvent,
    StoreMetadata,
)
from quarry.log_config import get_logger, log_timing

log = get_logger(__name__)
search_log = get_logger("quarry.search")

DIMENSION_PROBE = "dimension test"
MAX_ENTITY_HITS = 5
NEIGHBORHOOD_DEPTH = 2
MAX_NEIGHBORHOOD_LINES = 10

EmbeddingsFactory = Callable[[KnowledgeConfig], Embeddings]


def format_neighborhood(entity: Entity, neighborhood: Neighborhood) -> str:
    """Render an entity and its direct links as one text passage.

    Example::

        [User] alice: User entity from database
        Relationships:
          -[AUTHORED]-> [Post] Hello World
    """
    lines = [f"[{entity.type}] {entity.name}: {entity.description}"]
    if neighborhood.relationships:
        lines.append("Relationships:")
        by_id = {e.id: e for e in neighborhood.entities}
        for rel in neighborhood.relationships[:MAX_NEIGHBORHOOD_LINES]:
            other_id = rel.target_id if rel.source_id == entity.id else rel.source_id
            other = by_id.get(other_id)
            if other is not None:
                lines.append(f"  -[{rel.type}]-> [{other.type}] {other.name}")
    return "\n".join(lines)


def _emit(
    on_progress: ProgressCallback | None,
    name: str,
    phase: IndexingPhase,
    progress: int,
    message: str,
) -> None:
    if on_progress is not None:
        on_progress(ProgressEvent(name=name, phase=phase, progress=progress, message=message))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)


def _stored_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Chunk metadata as persisted: loader-private keys (``_raw_row``) are dropped."""
    return {k: v for k, v in metadata.items() if not str(k).startswith("_")}


def _discard_store_file(path: Path) -> None:
    for candidate in (path, path.with_name(path.name + "-wal"), path.with_name(path.name + "-shm")):
        candidate.unlink(missing_ok=True)


class KnowledgeStore:
    """Handle on one built store: search, append, refresh, status."""

    def __init__(
        self,
        manager: KnowledgeManager,
        config: KnowledgeConfig,
        db: KnowledgeDB,
        embeddings: Embeddings,
        metadata: StoreMetadata,
    ) -> None:
        self._manager = manager
        self.config = config
        self._db = db
        self._embeddings = embeddings
        self._metadata = metadata

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def db(self) -> KnowledgeDB:
        return self._db

    @property
    def embeddings(self) -> Embeddings:
        return self._embeddings

    def get_metadata(self) -> StoreMetadata:
        """A copy of the store's current status record."""
        return StoreMetadata.from_dict(self._metadata.to_dict())

    async def search(self, query: str, k: int | None = None) -> list[SearchResult]:
        """Hybrid search over chunks and entity neighborhoods.

        Embeds *query* once, takes the top-k chunks and (when the store has
        entities) the top ``min(k, 5)`` entities rendered with their 2-hop
        neighborhoods, merges everything by score, applies the score
        threshold and returns the best *k*.

        Never raises: any failure is logged and yields ``[]``.
        """
        search_cfg = self.config.search or self._manager.config.search
        num_results = k if k is not None else search_cfg.default_k
        search_log.info(f"Searching '{self.name}' for: '{query[:50]}' (k={num_results})")

        try:
            vector = await self._embeddings.embed_query(query)
            chunk_hits = self._db.search_chunks(vector, num_results)

            entity_results: list[SearchResult] = []
            if self._db.entity_count() > 0:
                for hit in self._db.search_entities(vector, min(num_results, MAX_ENTITY_HITS)):
                    neighborhood = self._db.get_neighborhood(hit.entity.id, NEIGHBORHOOD_DEPTH)
                    entity_results.append(
                        SearchResult(
                            content=format_neighborhood(hit.entity, neighborhood),
                            metadata={
                                "type": "entity_neighborhood",
                                "entityId": hit.entity.id,
                                "entityName": hit.entity.name,
                            },
                            score=hit.score,
                        )
                    )

            results = [
                SearchResult(content=c.content, metadata=c.metadata, score=c.score)
                for c in chunk_hits
            ]
            results.extend(entity_results)
            results.sort(key=lambda r: r.score, reverse=True)

            if search_cfg.score_threshold is not None:
                results = [r for r in results if r.score >= search_cfg.score_threshold]

            final = results[: max(num_results, 0)]
            search_log.info(
                f"Results: {len(chunk_hits)} chunks, {len(entity_results)} entities → {len(final)} total"
            )
            return final
        except Exception:
            search_log.exception(f"Error during search of '{self.name}'")
            return []

    async def add_documents(self, documents: Sequence[Document | Mapping[str, Any] | str]) -> list[int]:
        """Embed and append chunks. Graph data is not re-mapped.

        Accepts ``Document`` objects, ``{"content": ..., "metadata": ...}``
        mappings or plain strings.

        Returns:
            The new chunk ids.
        """
        docs = [_as_document(d) for d in documents]
        if not docs:
            return []
        vectors = await self._embeddings.embed_documents([d.page_content for d in docs])
        chunks = [
            Chunk(
                content=d.page_content,
                metadata=_stored_metadata(d.metadata),
                source=str(d.metadata.get("source", "")),
                embedding=v,
            )
            for d, v in zip(docs, vectors)
        ]
        ids = self._db.insert_chunks(chunks)
        self._metadata.chunk_count = self._db.chunk_count()
        self._manager.metadata.save(self._metadata)
        return ids

    async def refresh(self, on_progress: ProgressCallback | None = None) -> None:
        await self._manager.refresh(self.name, on_progress)

    def close(self) -> None:
        self._db.close()


def _as_document(item: Document | Mapping[str, Any] | str) -> Document:
    if isinstance(item, Document):
        return item
    if isinstance(item, str):
        return Document(page_content=item)
    content = item.get("content", item.get("page_content"))
    if content is None:
        raise ValueError("Document input requires a 'content' field")
    return Document(page_content=str(content), metadata=dict(item.get("metadata") or {}))


class KnowledgeManager:
    """Owns every configured store of one project.

    Args:
        project_root: Directory holding ``quarry.yaml`` and the storage directories.
        config: Project settings. Loaded from *project_root* when omitted.
        embeddings_factory: Builds the embeddings provider for a store. The
            result is wrapped in ``ValidatedEmbeddings`` unless it already is one.
    """

    def __init__(
        self,
        project_root: Path | str,
        config: QuarryConfig | None = None,
        *,
        embeddings_factory: EmbeddingsFactory | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.config = config if config is not None else load_config(self.project_root)
        storage = self.config.storage
        self.knowledge_dir = self.project_root / storage.knowledge_dir
        self.data_dir = self.project_root / storage.data_dir
        self.metadata = MetadataManager(self.project_root / storage.cache_dir)
        self._embeddings_factory = embeddings_factory or self._default_embeddings
        self._configs: dict[str, KnowledgeConfig] = {}
        self._stores: dict[str, KnowledgeStore] = {}
        self._active: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Configs
    # ------------------------------------------------------------------

    def load_configs(self) -> list[KnowledgeConfig]:
        """Load every ``*.knowledge.yaml`` and reset statuses left in ``indexing``.

        Invalid files are logged and skipped.
        """
        if self.knowledge_dir.is_dir():
            for path in sorted(self.knowledge_dir.glob(KNOWLEDGE_FILE_GLOB)):
                try:
                    self.load_one(path)
                except Exception as exc:
                    log.warning(f"Skipping invalid knowledge file '{path.name}': {exc}")
        self.metadata.reset_stale_indexing(list(self._configs))
        return self.list_configs()

    async def load_all(self) -> list[KnowledgeConfig]:
        """``load_configs()``, then restore every store whose status is ``indexed``.

        Restoring is a warm open when sources are unchanged and a rebuild
        otherwise; a store that fails to restore is logged and left unloaded.
        """
        self.load_configs()
        for name, status in self.get_all_statuses().items():
            if status.status != "indexed" or name in self._stores:
                continue
            try:
                log.info(f"Restoring '{name}' from disk...")
                await self.initialize(name)
            except Exception as exc:
                log.warning(f"Failed to restore '{name}': {exc}")
        return self.list_configs()

    def load_one(self, path: Path | str) -> KnowledgeConfig:
        config = load_knowledge_file(Path(path), self.project_root)
        self._configs[config.name] = config
        return config

    def add_config(self, config: KnowledgeConfig) -> None:
        self._configs[config.name] = config

    def get(self, name: str) -> KnowledgeStore | None:
        return self._stores.get(name)

    def get_config(self, name: str) -> KnowledgeConfig | None:
        return self._configs.get(name)

    def list_configs(self) -> list[KnowledgeConfig]:
        return list(self._configs.values())

    def get_status(self, name: str) -> StoreMetadata | None:
        return self.metadata.load(name)

    def get_all_statuses(self) -> dict[str, StoreMetadata]:
        return self.metadata.get_all(list(self._configs))

    def is_indexing(self, name: str) -> bool:
        return name in self._active

    def db_path(self, name: str) -> Path:
        return self.data_dir / f"{name}.db"

    def close(self) -> None:
        for store in self._stores.values():
            store.close()
        self._stores.clear()

    # ------------------------------------------------------------------
    # Build coordination
    # ------------------------------------------------------------------

    async def initialize(self, name: str, on_progress: ProgressCallback | None = None) -> KnowledgeStore:
        """Return the store for *name*, building or restoring it if needed.

        Raises:
            StoreNotFoundError: If no config named *name* is loaded.
            Exception: Whatever failed the build; the status record is ``error``.
        """
        if (existing := self._stores.get(name)) is not None:
            log.info(f"'{name}' already initialized")
            return existing

        if (task := self._active.get(name)) is not None:
            log.info(f"'{name}' is already being indexed, waiting...")
            result = await asyncio.shield(task)
            return result if result is not None else self._stores[name]

        config = self._configs.get(name)
        if config is None:
            raise StoreNotFoundError(name)
        return await asyncio.shield(self._start(name, self._initialize(config, on_progress)))

    async def refresh(self, name: str, on_progress: ProgressCallback | None = None) -> None:
        """Rebuild *name* if its sources changed; otherwise a no-op.

        A store that is not loaded yet is initialized instead. A call made
        while a build for *name* is running waits for that build.
        """
        if (task := self._active.get(name)) is not None:
            log.info(f"'{name}' is already being indexed, waiting...")
            await asyncio.shield(task)
            return

        store = self._stores.get(name)
        if store is None:
            await self.initialize(name, on_progress)
            return
        await asyncio.shield(self._start(name, self._refresh(store, on_progress)))

    async def search(self, name: str, query: str, k: int | None = None) -> list[SearchResult]:
        """Search *name*. Never raises and never starts a build.

        A store that is not loaded (never initialized here, or left in
        ``error`` by a failed build) is searched read-only against whatever
        its last successful build left on disk. Unknown names and stores
        without data yield ``[]``.
        """
        store = self._stores.get(name)
        if store is not None:
            return await store.search(query, k)

        config = self._configs.get(name)
        if config is None:
            search_log.warning(f"Search on unknown store '{name}'")
            return []
        try:
            snapshot = self._open_snapshot(config)
        except Exception as exc:
            search_log.warning(f"'{name}' has no searchable data: {exc}")
            return []
        try:
            return await snapshot.search(query, k)
        finally:
            snapshot.close()

    async def add_documents(
        self, name: str, documents: Sequence[Document | Mapping[str, Any] | str]
    ) -> list[int]:
        """Append documents to a loaded store.

        Raises:
            StoreNotFoundError: If no config named *name* is loaded.
            StoreNotReadyError: If the store has not been initialized.
        """
        store = self._stores.get(name)
        if store is None:
            if name not in self._configs:
                raise StoreNotFoundError(name)
            raise StoreNotReadyError(name)
        return await store.add_documents(documents)

    def _open_snapshot(self, config: KnowledgeConfig) -> KnowledgeStore:
        """Read-only handle on the data a previous build left on disk."""
        db = KnowledgeDB.open_readonly(self.db_path(config.name))
        try:
            if not db.has_data():
                raise ValueError("store is empty")
            embeddings = self._make_embeddings(config)
        except BaseException:
            db.close()
            raise
        metadata = self.metadata.load(config.name) or StoreMetadata(name=config.name)
        return KnowledgeStore(self, config, db, embeddings, metadata)

    def _start(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"quarry-build:{name}")
        self._active[name] = task

        def _done(t: asyncio.Task) -> None:
            if self._active.get(name) is t:
                del self._active[name]
            if not t.cancelled():
                t.exception()  # retrieved; callers that stayed see it via shield

        task.add_done_callback(_done)
        return task

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _default_embeddings(self, config: KnowledgeConfig) -> Embeddings:
        emb = self.config.embedding
        return create_embeddings(
            config.embedding or emb.model,
            eos_token=emb.eos_token,
            batch_size=emb.batch_size,
            dimensions=emb.dimensions,
        )

    def _make_embeddings(self, config: KnowledgeConfig) -> Embeddings:
        embeddings = self._embeddings_factory(config)
        if isinstance(embeddings, ValidatedEmbeddings):
            return embeddings
        return ValidatedEmbeddings(embeddings, eos_token=self.config.embedding.eos_token)

    async def _initialize(
        self, config: KnowledgeConfig, on_progress: ProgressCallback | None
    ) -> KnowledgeStore:
        name = config.name
        log.info(f"Initializing '{name}' (graph: {config.has_graph})...")
        self._log_source(config)

        previous = self.metadata.load(name)
        metadata = StoreMetadata(
            name=name,
            kind="graph" if config.has_graph else "vector",
            status="indexing",
            embedding_model=config.embedding or self.config.embedding.model,
        )
        self.metadata.save(metadata)
        _emit(on_progress, name, "loading", 0, "Starting initialization...")
        start = perf_counter()
        db: KnowledgeDB | None = None

        try:
            embeddings = self._make_embeddings(config)
            dimensions = len(await embeddings.embed_query(DIMENSION_PROBE))
            log.info(f"Embedding dimensions: {dimensions}")

            path = self.db_path(name)
            if not validate_dimensions(path, dimensions):
                log.warning(f"Dimension mismatch for '{name}', discarding {path} and re-indexing")
                _discard_store_file(path)
            db = KnowledgeDB.open(path, dimensions)

            current = await asyncio.to_thread(compute_source_hashes, config, self.project_root)
            if db.has_data() and hashes_equal(db.get_source_hashes(), current):
                metadata.chunk_count = db.chunk_count()
                metadata.document_count = previous.document_count if previous else metadata.chunk_count
                metadata.entity_count = db.entity_count()
                metadata.edge_count = db.relationship_count()
                metadata.source_hashes = current
                log.info(
                    f"'{name}' restored from disk ({metadata.chunk_count} chunks, "
                    f"{metadata.entity_count} entities)"
                )
            else:
                await self._rebuild(config, db, embeddings, metadata, current, on_progress)

            store = KnowledgeStore(self, config, db, embeddings, metadata)
            self._stores[name] = store

            metadata.status = "indexed"
            metadata.last_indexed_at = _now()
            metadata.last_index_duration_ms = _elapsed_ms(start)
            metadata.error_message = None
            self.metadata.save(metadata)
            _emit(on_progress, name, "done", 100, "Initialization complete")
            log.info(f"'{name}' initialized successfully ({metadata.last_index_duration_ms}ms)")
            return store
        except Exception as exc:
            if db is not None:
                db.close()
            metadata.status = "error"
            metadata.error_message = str(exc)
            metadata.last_index_duration_ms = _elapsed_ms(start)
            self.metadata.save(metadata)
            _emit(on_progress, name, "error", 0, str(exc))
            log.error(f"Failed to initialize '{name}': {exc}")
            raise

    async def _refresh(self, store: KnowledgeStore, on_progress: ProgressCallback | None) -> None:
        name = store.name
        metadata = store._metadata
        metadata.status = "indexing"
        self.metadata.save(metadata)
        _emit(on_progress, name, "loading", 0, "Starting refresh...")
        start = perf_counter()

        try:
            _emit(on_progress, name, "loading", 10, "Checking for changes...")
            current = await asyncio.to_thread(compute_source_hashes, store.config, self.project_root)
            if hashes_equal(store.db.get_source_hashes(), current):
                log.info(f"No changes detected for '{name}', skipping refresh")
            else:
                log.info(f"Changes detected for '{name}', re-indexing...")
                await self._rebuild(store.config, store.db, store.embeddings, metadata, current, on_progress)

            metadata.status = "indexed"
            metadata.last_indexed_at = _now()
            metadata.last_index_duration_ms = _elapsed_ms(start)
            metadata.error_message = None
            self.metadata.save(metadata)
            _emit(on_progress, name, "done", 100, "Refresh complete")
        except Exception as exc:
            metadata.status = "error"
            metadata.error_message = str(exc)
            self.metadata.save(metadata)
            _emit(on_progress, name, "error", 0, str(exc))
            log.error(f"Failed to refresh '{name}': {exc}")
            raise

    async def _rebuild(
        self,
        config: KnowledgeConfig,
        db: KnowledgeDB,
        embeddings: Embeddings,
        metadata: StoreMetadata,
        source_hashes: dict[str, str],
        on_progress: ProgressCallback | None,
    ) -> None:
        """Load, split, embed and map, then swap the store contents in one transaction.

        Nothing is written until every embedding has been computed, so a
        failure before the final write leaves the previous contents in place.
        """
        name = config.name

        _emit(on_progress, name, "loading", 10, "Loading documents...")
        with log_timing(f"loading '{name}'", log):
            documents = await asyncio.to_thread(load_documents, config, self.project_root)
        log.info(f"Loaded {len(documents)} document(s)")

        _emit(on_progress, name, "splitting", 20, f"Splitting {len(documents)} documents...")
        pieces = split_documents(config.splitter, documents)
        log.info(f"Split into {len(pieces)} chunk(s)")

        _emit(on_progress, name, "embedding", 35, f"Embedding {len(pieces)} chunks...")
        with log_timing(f"embedding {len(pieces)} chunks", log):
            vectors = await embeddings.embed_documents([p.page_content for p in pieces])
        chunks = [
            Chunk(
                content=p.page_content,
                metadata=_stored_metadata(p.metadata),
                source=str(p.metadata.get("source", "")),
                embedding=v,
            )
            for p, v in zip(pieces, vectors)
        ]

        entities: list[Entity] = []
        relationships = []
        if config.graph is not None and config.graph.direct_mapping is not None:
            _emit(on_progress, name, "extracting", 60, "Extracting entities...")
            mapped = map_rows(documents, config.graph.direct_mapping)
            log.info(
                f"Extracted {len(mapped.entities)} entities, {len(mapped.relationships)} relationships"
            )
            if mapped.entities:
                _emit(on_progress, name, "embedding", 75, f"Embedding {len(mapped.entities)} entities...")
                entity_vectors = await embeddings.embed_documents(
                    [f"{e.name}: {e.description}" for e in mapped.entities]
                )
                entities = [
                    Entity(
                        id=e.id,
                        type=e.type,
                        name=e.name,
                        description=e.description,
                        properties=e.properties,
                        embedding=v,
                    )
                    for e, v in zip(mapped.entities, entity_vectors)
                ]
                relationships = build_relationships(mapped.relationships, [e.id for e in entities])

        _emit(on_progress, name, "building", 85, "Writing store...")
        db.replace_contents(chunks, entities, relationships, source_hashes)

        metadata.document_count = len(documents)
        metadata.chunk_count = db.chunk_count()
        metadata.entity_count = db.entity_count()
        metadata.edge_count = db.relationship_count()
        metadata.source_hashes = source_hashes

    @staticmethod
    def _log_source(config: KnowledgeConfig) -> None:
        source = config.source
        if isinstance(source, DatabaseSource):
            log.info(f"Source: database ({source.connection_string.rsplit('/', 1)[-1]})")
        elif isinstance(source, WebSource):
            log.info(f"Source: web ({source.url})")
        else:
            log.info(f"Source: {source.path}")
