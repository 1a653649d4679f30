"""
mnemos Bridge -- MemoryEngine, the service context behind the CLI and MCP server.

The engine owns the store, the embedding provider, the judgment LLM client,
the indexer and the supersession worker. It is created at start-up and
closed at shutdown; nothing here is a module-level singleton.

Public API:
    Memories:    save_memory, get_memory, restore_memory, create_link
    Search:      hybrid_search, search_memories, search_docs, search_code, assess_readiness
    Retention:   analyze_retention, apply_retention
    Graph:       auto_link_similar_memories, create_proximity_links, detect_communities,
                 update_centrality_cache, run_graph_maintenance, enrich_links,
                 prune_weak_links, find_connected, graph_stats
    Supersession: check_supersession
    Indexing:    index_paths, reindex_embeddings
    Lifecycle:   stats, close

Usage:
    with open_engine() as engine:
        engine.save_memory("Uses Redis for sessions", type="decision")
        hits = engine.search_memories("session storage")
"""

import contextlib
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from mnemos import knowledge_graph, retention, supersession
from mnemos.config import MnemosConfig, load_config
from mnemos.embeddings import LocalEmbedder
from mnemos.errors import EmbeddingError, ValidationError
from mnemos.hybrid import SearchResponse, hybrid_search
from mnemos.indexer import Indexer
from mnemos.llm import client_from_config
from mnemos.quality import score_quality
from mnemos.readiness import ReadinessAssessment, assess_readiness, format_readiness_header
from mnemos.sqlite_store import Memory, SQLiteStore
from mnemos.supersession import SupersessionWorker
from mnemos.types import Corpus, LinkRelation

logger = logging.getLogger("mnemos.bridge")


class MemoryEngine:
    """Explicit service context for one mnemos database."""

    def __init__(
        self,
        config: Optional[MnemosConfig] = None,
        store: Optional[SQLiteStore] = None,
        embedder=None,
        judge=None,
    ):
        self.config = config or load_config()
        cfg = self.config
        self.store = store or SQLiteStore(
            cfg.database,
            embedding_dim=cfg.embedding.dimension,
            bm25_k1=cfg.search.bm25_k1,
            bm25_b=cfg.search.bm25_b,
        )
        self.embedder = embedder or LocalEmbedder(
            dimension=cfg.embedding.dimension,
            skip_model=cfg.embedding.skip_model,
            cache_size=cfg.embedding.cache_size,
        )
        self.judge = judge or client_from_config(cfg.llm)
        self.indexer = Indexer(self.store, self.embedder, cfg.indexing)
        self.worker = SupersessionWorker(self._supersession_job, queue_size=cfg.supersession.queue_size)
        self._closed = False

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def _embed(self, text: str) -> Optional[List[float]]:
        """Semantic vector for ``text``, or None when none can be stored/compared."""
        if not self.embedder.is_semantic:
            return None
        try:
            vector = list(self.embedder.embed(text))
        except EmbeddingError as e:
            logger.warning("Embedding failed, continuing without a vector: %s", e)
            return None
        if len(vector) != self.store.embedding_dim:
            logger.warning(
                "Embedder returns %d dims but the store holds %d; run 'mnemos reindex'",
                len(vector),
                self.store.embedding_dim,
            )
            return None
        return vector

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def save_memory(
        self,
        content: str,
        type: str = "observation",
        tags: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
        quality_score: Optional[float] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        embedding: Optional[Sequence[float]] = None,
        check_supersession: bool = True,
        auto_link: bool = True,
    ) -> Dict[str, Any]:
        """Store a memory, then auto-link it and queue its supersession check.

        Returns as soon as the row is committed; supersession runs on the
        background worker and may finish later.
        """
        vector = list(embedding) if embedding is not None else self._embed(content)
        if quality_score is None and self.config.retention.score_quality_on_save:
            quality_score = self._score_quality(content, vector)
        memory_id, created = self.store.save_memory(
            content,
            embedding=vector,
            type=type,
            tags=tags,
            source=source,
            quality_score=quality_score,
            valid_from=valid_from,
            valid_until=valid_until,
        )
        result: Dict[str, Any] = {
            "id": memory_id,
            "created": created,
            "embedded": vector is not None,
            "quality_score": quality_score,
            "links": 0,
            "supersession": "skipped",
        }
        if not created or vector is None:
            return result

        if auto_link:
            result["links"] = knowledge_graph.auto_link_memory(
                self.store,
                memory_id,
                vector,
                self.config.graph.auto_link_threshold,
                self.config.graph.auto_link_max_links,
            )
        if check_supersession and self.config.supersession.enabled:
            queued = self.worker.submit(memory_id, content, vector)
            result["supersession"] = "queued" if queued else "dropped"
        return result

    def _score_quality(self, content: str, vector: Optional[List[float]]) -> float:
        top = None
        if vector is not None and len(vector) == self.store.embedding_dim:
            nearest = self.store.vector_candidates(
                Corpus.MEMORIES.value, vector, 1, self.config.search.brute_force_limit
            )
            if nearest:
                top = max(0.0, nearest[0][1])
        return round(score_quality(content, top).score, 4)

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self.store.get_memory(memory_id)

    def restore_memory(self, memory_id: str) -> bool:
        """Undo an invalidation (soft retention delete or supersession)."""
        return self.store.restore_memory(memory_id)

    def create_link(
        self,
        source_id: str,
        target_id: str,
        relation: str = LinkRelation.RELATED.value,
        weight: float = 1.0,
    ) -> Dict[str, Any]:
        return self.store.create_link(source_id, target_id, relation, weight)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _threshold(self, corpus: str) -> float:
        return getattr(self.config.search, f"{corpus}_threshold")

    def hybrid_search(
        self,
        corpus: str,
        query_text: str,
        query_vector: Optional[Sequence[float]] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        alpha: Optional[float] = None,
        mmr_lambda: Optional[float] = None,
        **filters: Any,
    ) -> SearchResponse:
        """Fused search over one corpus with config defaults filled in.

        The query is embedded unless ``query_vector`` is given; when the
        store needs a reindex the engine falls back to lexical-only.
        """
        try:
            corpus = Corpus(corpus).value
        except ValueError:
            raise ValidationError(f"Unknown corpus: {corpus!r}") from None
        s = self.config.search
        if query_vector is None and query_text and query_text.strip():
            query_vector = self._embed(query_text)
        return hybrid_search(
            self.store,
            corpus,
            query_text,
            query_vector,
            top_k=top_k or s.top_k,
            threshold=self._threshold(corpus) if threshold is None else threshold,
            alpha=s.alpha if alpha is None else alpha,
            candidate_multiplier=s.candidate_multiplier,
            brute_force_limit=s.brute_force_limit,
            centrality_weight=s.centrality_boost_weight if corpus == Corpus.MEMORIES.value else 0.0,
            mmr_lambda=s.mmr_lambda if mmr_lambda is None else mmr_lambda,
            **filters,
        )

    def assess_readiness(self, results: Sequence[Any], search_type: str) -> ReadinessAssessment:
        return assess_readiness(results, search_type, self.config.readiness)

    def _search(self, corpus: str, query: str, **kwargs: Any) -> Dict[str, Any]:
        response = self.hybrid_search(corpus, query, **kwargs)
        assessment = self.assess_readiness(response.results, corpus)
        payload = response.to_dict()
        payload["readiness"] = assessment.to_dict()
        payload["header"] = format_readiness_header(assessment)
        payload["reindex_required"] = self.store.needs_reindex or response.stale_embeddings > 0
        return payload

    def search_memories(self, query: str, **kwargs: Any) -> Dict[str, Any]:
        return self._search(Corpus.MEMORIES.value, query, **kwargs)

    def search_docs(self, query: str, **kwargs: Any) -> Dict[str, Any]:
        return self._search(Corpus.DOCS.value, query, **kwargs)

    def search_code(
        self, query: str, regex: Optional[str] = None, symbol: Optional[str] = None, **kwargs: Any
    ) -> Dict[str, Any]:
        return self._search(Corpus.CODE.value, query, regex=regex, symbol=symbol, **kwargs)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def analyze_retention(self, now: Optional[datetime] = None) -> retention.RetentionAnalysis:
        return retention.analyze_retention(self.store.list_memories(), self.config.retention, now)

    def apply_retention(self, mode: str = "soft", dry_run: bool = False) -> Dict[str, Any]:
        analysis = self.analyze_retention()
        return retention.apply_retention(self.store, analysis, mode=mode, dry_run=dry_run)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def auto_link_similar_memories(self, threshold: Optional[float] = None, max_links: Optional[int] = None) -> int:
        g = self.config.graph
        return knowledge_graph.auto_link_similar_memories(
            self.store,
            g.auto_link_threshold if threshold is None else threshold,
            max_links or g.auto_link_max_links,
        )

    def create_proximity_links(self, min_cooccurrence: Optional[int] = None, dry_run: bool = False) -> Dict[str, int]:
        return knowledge_graph.create_proximity_links(
            self.store, min_cooccurrence or self.config.graph.min_cooccurrence, dry_run
        )

    def detect_communities(
        self,
        max_iterations: Optional[int] = None,
        min_community_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        g = self.config.graph
        return knowledge_graph.detect_communities(
            self.store,
            max_iterations or g.max_iterations,
            min_community_size or g.min_community_size,
            g.community_tag_prefix,
            dry_run,
        )

    def update_centrality_cache(self, method: Optional[str] = None) -> Dict[str, Any]:
        return knowledge_graph.update_centrality_cache(self.store, method or self.config.graph.centrality_method)

    def run_graph_maintenance(self) -> Dict[str, Any]:
        return knowledge_graph.run_graph_maintenance(self.store, self.config.graph)

    def enrich_links(self, limit: Optional[int] = None) -> Dict[str, Any]:
        llm = self.config.llm
        return knowledge_graph.enrich_links(
            self.store,
            self.judge,
            limit or self.config.graph.enrich_batch_size,
            temperature=llm.temperature,
            max_output_tokens=llm.max_output_tokens,
            timeout=llm.timeout,
        )

    def prune_weak_links(self, threshold: Optional[float] = None, dry_run: bool = False) -> Dict[str, Any]:
        return knowledge_graph.prune_weak_links(
            self.store, self.config.graph.weak_link_threshold if threshold is None else threshold, dry_run
        )

    def find_connected(self, memory_id: str, max_depth: int = 2) -> List[Dict[str, Any]]:
        return knowledge_graph.find_connected(self.store, memory_id, max_depth)

    def graph_stats(self) -> Dict[str, Any]:
        return knowledge_graph.graph_stats(self.store)

    # ------------------------------------------------------------------
    # Supersession
    # ------------------------------------------------------------------

    def check_supersession(
        self,
        memory_id: str,
        content: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> Dict[str, Any]:
        """Run a supersession check synchronously (the worker calls this too)."""
        if content is None or embedding is None:
            memory = self.store.get_memory(memory_id)
            if memory is None:
                raise ValidationError(f"Memory not found: {memory_id}")
            content = memory.content if content is None else content
            embedding = memory.embedding if embedding is None else embedding
        s, llm = self.config.supersession, self.config.llm
        return supersession.check_supersession(
            self.store,
            self.judge,
            memory_id,
            content,
            embedding if embedding is not None else [],
            similarity_threshold=s.similarity_threshold,
            confidence_threshold=s.confidence_threshold,
            max_candidates=s.max_candidates,
            temperature=llm.temperature,
            max_output_tokens=llm.max_output_tokens,
            timeout=llm.timeout,
        )

    def _supersession_job(self, memory_id: str, content: str, embedding: Sequence[float]) -> Dict[str, Any]:
        return self.check_supersession(memory_id, content, embedding)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def index_paths(self, paths: Iterable, corpus: Optional[str] = None) -> Dict[str, Any]:
        return self.indexer.index_paths(paths, corpus)

    def reindex_embeddings(self) -> Dict[str, Any]:
        """Re-embed every memory and chunk at the embedder's dimension.

        Needed after an embedding-model or dimension change. Items whose
        embedding fails are left without a vector and reported.
        """
        if not self.embedder.is_semantic:
            raise ValidationError("No semantic embedding model is available; cannot reindex")
        dimension = self.embedder.dimension
        self.store.reset_embedding_dim(dimension)
        self.store.configured_dim = dimension
        summary: Dict[str, Any] = {"dimension": dimension, "memories": 0, "chunks": 0, "failed": 0, "errors": []}

        for memory in self.store.list_memories(include_invalidated=True):
            try:
                self.store.set_embedding(memory.id, self.embedder.embed(memory.content))
                summary["memories"] += 1
            except (EmbeddingError, ValidationError) as e:
                summary["failed"] += 1
                summary["errors"].append({"id": memory.id, "error": str(e)})
        for corpus in (Corpus.DOCS.value, Corpus.CODE.value):
            for chunk in self.store.list_chunks(corpus):
                try:
                    self.store.set_chunk_embedding(chunk.id, self.embedder.embed(chunk.content))
                    summary["chunks"] += 1
                except (EmbeddingError, ValidationError) as e:
                    summary["failed"] += 1
                    summary["errors"].append({"id": chunk.id, "error": str(e)})
        logger.info("Reindexed %d memories and %d chunks at %d dims", summary["memories"], summary["chunks"], dimension)
        return summary

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        data = self.store.stats()
        data["embedding"] = self.embedder.info() if hasattr(self.embedder, "info") else {}
        data["supersession_worker"] = {
            "running": self.worker.running,
            "recent": len(self.worker.results),
        }
        return data

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.worker.stop()
        if hasattr(self.embedder, "close"):
            self.embedder.close()
        self.store.close()


@contextlib.contextmanager
def open_engine(config: Optional[MnemosConfig] = None, **kwargs: Any) -> Iterator[MemoryEngine]:
    """Create an engine for the duration of a block and always close it."""
    engine = MemoryEngine(config, **kwargs)
    try:
        yield engine
    finally:
        engine.close()
