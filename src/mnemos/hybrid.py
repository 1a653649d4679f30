"""
mnemos Hybrid Search -- BM25 + vector fusion over one corpus.

Candidates are the union of the best lexical hits and the nearest stored
vectors. Every candidate then gets both scores computed independently:

    lexical  = bm25 / max(bm25 over the candidate set)      (0 when max is 0)
    vector   = clamp(cosine, 0, 1)                           (absolute)
    score    = alpha * vector + (1 - alpha) * lexical

The lexical side is relative to the candidate set; the vector side is kept
absolute so a similarity threshold means the same thing across queries.
Results below ``threshold`` are dropped, ties go to the newer item.

Usage:
    resp = hybrid_search(store, "memories", "session storage", query_vec, top_k=5)
    for r in resp.results:
        print(r.score, r.content)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from mnemos.bm25 import is_identifier_query, tokenizer_for
from mnemos.errors import DimensionMismatchError, ValidationError
from mnemos.sqlite_store import SQLiteStore
from mnemos.types import Corpus
from mnemos.vectors import clamp_unit, cosine_similarity, mmr_order

logger = logging.getLogger("mnemos.hybrid")

MAX_PATTERN_LENGTH = 500
IDENTIFIER_BOOST = 1.5

# A group that contains a quantifier and is itself quantified: (a+)+, (\w*x)*, (a{2,})+ ...
_NESTED_QUANTIFIER_RE = re.compile(r"\((?:[^()\\]|\\.)*(?:[+*]|\{\d*,?\d*\})(?:[^()\\]|\\.)*\)(?:[+*]|\{\d*,?\d*\})")


def compile_filter_pattern(pattern: str, max_length: int = MAX_PATTERN_LENGTH) -> Pattern:
    """Compile a user regex for content filtering, rejecting risky patterns.

    Patterns longer than ``max_length`` or containing a quantified group that
    itself holds a quantifier are refused before compilation.
    """
    if not isinstance(pattern, str) or not pattern:
        raise ValidationError("regex filter must be a non-empty string")
    if len(pattern) > max_length:
        raise ValidationError(f"regex filter is {len(pattern)} chars; the limit is {max_length}")
    if _NESTED_QUANTIFIER_RE.search(pattern):
        raise ValidationError(f"regex filter has nested quantifiers: {pattern!r}")
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ValidationError(f"invalid regex filter {pattern!r}: {e}") from e


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class SearchResult:
    """One fused hit. ``score`` is the fused similarity in [0, 1]."""

    __slots__ = (
        "id",
        "corpus",
        "content",
        "score",
        "lexical_score",
        "vector_score",
        "bm25",
        "created_at",
        "quality_score",
        "access_count",
        "last_accessed",
        "metadata",
        "mmr_score",
    )

    def __init__(
        self,
        id: str,
        corpus: str,
        content: str,
        score: float,
        lexical_score: float,
        vector_score: float,
        bm25: float = 0.0,
        created_at: Optional[datetime] = None,
        quality_score: Optional[float] = None,
        access_count: int = 0,
        last_accessed: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        mmr_score: Optional[float] = None,
    ):
        self.id = id
        self.corpus = corpus
        self.content = content
        self.score = score
        self.lexical_score = lexical_score
        self.vector_score = vector_score
        self.bm25 = bm25
        self.created_at = created_at
        self.quality_score = quality_score
        self.access_count = access_count
        self.last_accessed = last_accessed
        self.metadata = metadata or {}
        self.mmr_score = mmr_score

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "corpus": self.corpus,
            "content": self.content,
            "score": round(self.score, 4),
            "lexical_score": round(self.lexical_score, 4),
            "vector_score": round(self.vector_score, 4),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "quality_score": self.quality_score,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            **self.metadata,
        }
        if self.mmr_score is not None:
            data["mmr_score"] = round(self.mmr_score, 4)
        return data

    def __repr__(self) -> str:
        return f"SearchResult({self.id!r}, score={self.score:.3f})"


@dataclass
class SearchResponse:
    corpus: str
    results: List[SearchResult] = field(default_factory=list)
    candidates: int = 0
    stale_embeddings: int = 0
    alpha: float = 0.5

    def __iter__(self):
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "corpus": self.corpus,
            "alpha": self.alpha,
            "candidates": self.candidates,
            "stale_embeddings": self.stale_embeddings,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Candidate loading
# ---------------------------------------------------------------------------


class _Candidate:
    __slots__ = ("key", "content", "embedding", "created_at", "quality_score", "access_count",
                 "last_accessed", "metadata")

    def __init__(self, key, content, embedding, created_at, quality_score=None, access_count=0,
                 last_accessed=None, metadata=None):
        self.key = key
        self.content = content
        self.embedding = embedding
        self.created_at = created_at
        self.quality_score = quality_score
        self.access_count = access_count
        self.last_accessed = last_accessed
        self.metadata = metadata or {}


def _memory_loader(store: SQLiteStore, as_of: Optional[datetime], include_invalidated: bool):
    at = as_of or datetime.now(timezone.utc)

    def load(keys: Sequence[str]) -> Dict[str, _Candidate]:
        out = {}
        for key, mem in store.get_memories(keys).items():
            if include_invalidated:
                if mem.created_at > at:
                    continue
            elif not mem.visible_at(at, as_of=as_of is not None):
                continue
            out[key] = _Candidate(
                key,
                mem.content,
                mem.embedding,
                mem.created_at,
                quality_score=mem.quality_score,
                access_count=mem.access_count,
                last_accessed=mem.last_accessed,
                metadata={
                    "type": mem.type,
                    "tags": mem.tags,
                    "source": mem.source,
                    "invalidated_by": mem.invalidated_by,
                },
            )
        return out

    return load


def _chunk_loader(store: SQLiteStore, corpus: str, pattern: Optional[Pattern], symbol: Optional[str]):
    symbol_lower = symbol.lower() if symbol else None

    def load(keys: Sequence[str]) -> Dict[str, _Candidate]:
        out = {}
        for doc_id, chunk in store.get_chunks(keys).items():
            if chunk.corpus != corpus:
                continue
            if pattern is not None and not pattern.search(chunk.content):
                continue
            if symbol_lower and symbol_lower not in chunk.file_path.lower():
                continue
            out[str(doc_id)] = _Candidate(
                str(doc_id),
                chunk.content,
                chunk.embedding,
                chunk.updated_at,
                metadata={
                    "file_path": chunk.file_path,
                    "chunk_index": chunk.chunk_index,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                },
            )
        return out

    return load


def _take_visible(
    ranked: Sequence[Tuple[str, float]],
    load: Callable[[Sequence[str]], Dict[str, _Candidate]],
    pool: int,
    loaded: Dict[str, _Candidate],
) -> List[str]:
    """Walk a ranked key list in batches and keep the first ``pool`` loadable keys."""
    picked: List[str] = []
    for start in range(0, len(ranked), pool):
        batch = [key for key, _ in ranked[start : start + pool]]
        loaded.update(load([k for k in batch if k not in loaded]))
        for key in batch:
            if key in loaded:
                picked.append(key)
                if len(picked) >= pool:
                    return picked
    return picked


def _nearest_visible(
    store: SQLiteStore,
    corpus: str,
    query_vector: Sequence[float],
    load: Callable[[Sequence[str]], Dict[str, _Candidate]],
    pool: int,
    loaded: Dict[str, _Candidate],
    brute_force_limit: int,
    active_only: bool = True,
) -> List[str]:
    """Nearest ``pool`` loadable keys, widening the vector window while filters reject hits."""
    limit = pool * 2
    while True:
        nearest = store.vector_candidates(corpus, query_vector, limit, brute_force_limit, active_only=active_only)
        picked = _take_visible(nearest, load, pool, loaded)
        if len(picked) >= pool or len(nearest) < limit or limit >= brute_force_limit:
            return picked
        limit = min(limit * 4, brute_force_limit)


# ---------------------------------------------------------------------------
# Fusion
# ---------------------------------------------------------------------------


def fuse(lexical: float, vector: float, alpha: float) -> float:
    """Convex blend of two normalized scores."""
    return alpha * vector + (1.0 - alpha) * lexical


def _mmr_rerank(
    scored: List[SearchResult],
    loaded: Dict[str, _Candidate],
    dim: int,
    lam: float,
    top_k: int,
) -> List[SearchResult]:
    """Diversify ranked hits; vectors of another dimension rank after the rest."""
    vectors = []
    for r in scored:
        emb = loaded[r.id].embedding
        vectors.append(emb if emb is not None and len(emb) == dim else None)
    picked = []
    for index, mmr in mmr_order([r.score for r in scored], vectors, lam, top_k):
        scored[index].mmr_score = mmr
        picked.append(scored[index])
    return picked


def hybrid_search(
    store: SQLiteStore,
    corpus: str,
    query_text: str,
    query_vector: Optional[Sequence[float]] = None,
    top_k: int = 10,
    threshold: float = 0.0,
    alpha: float = 0.5,
    *,
    as_of: Optional[datetime] = None,
    include_invalidated: bool = False,
    regex: Optional[str] = None,
    symbol: Optional[str] = None,
    candidate_multiplier: int = 5,
    brute_force_limit: int = 10000,
    centrality_weight: float = 0.0,
    record_access: bool = True,
    mmr_lambda: Optional[float] = None,
) -> SearchResponse:
    """Rank one corpus by fused lexical + vector similarity.

    Without a query vector the search is purely lexical (alpha forced to 0);
    with a vector but no usable query tokens it is purely semantic.
    ``mmr_lambda`` re-orders the thresholded hits by Maximal Marginal
    Relevance (1.0 is pure relevance, 0.0 pure diversity); scores keep their
    fused values and each result carries its ``mmr_score``.
    Returned memories get their access counters bumped unless
    ``record_access`` is False.
    """
    try:
        corpus = Corpus(corpus).value
    except ValueError:
        raise ValidationError(f"Unknown corpus: {corpus!r}") from None
    query_text = query_text or ""
    query_vector = [float(x) for x in query_vector] if query_vector is not None else []
    if not query_text.strip() and len(query_vector) == 0:
        raise ValidationError("query_text and query_vector cannot both be empty")
    if not 0.0 <= alpha <= 1.0:
        raise ValidationError(f"alpha must be within [0, 1], got {alpha}")
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"threshold must be within [0, 1], got {threshold}")
    if mmr_lambda is not None and not 0.0 <= mmr_lambda <= 1.0:
        raise ValidationError(f"mmr_lambda must be within [0, 1], got {mmr_lambda}")
    if top_k <= 0:
        raise ValidationError(f"top_k must be positive, got {top_k}")
    if include_invalidated and as_of is None:
        raise ValidationError("include_invalidated requires as_of")
    if query_vector and len(query_vector) != store.embedding_dim:
        raise DimensionMismatchError(store.embedding_dim, len(query_vector))

    tokens = tokenizer_for(corpus)(query_text)
    if not query_vector:
        alpha = 0.0
    elif not tokens:
        alpha = 1.0

    pattern = compile_filter_pattern(regex) if regex else None
    if corpus == Corpus.MEMORIES.value:
        load = _memory_loader(store, as_of, include_invalidated)
    else:
        load = _chunk_loader(store, corpus, pattern, symbol)

    pool = top_k * max(1, candidate_multiplier)
    loaded: Dict[str, _Candidate] = {}

    # 1. Candidate generation
    lexical_keys: List[str] = []
    if tokens:
        lexical_keys = _take_visible(store.lexical_search(corpus, tokens), load, pool, loaded)
    vector_keys: List[str] = []
    if query_vector:
        vector_keys = _nearest_visible(
            store, corpus, query_vector, load, pool, loaded, brute_force_limit, active_only=as_of is None
        )
    keys = list(dict.fromkeys(lexical_keys + vector_keys))
    response = SearchResponse(corpus=corpus, candidates=len(keys), alpha=alpha)
    if not keys:
        return response

    # 2. Independent scores for every candidate
    raw_bm25 = store.lexical_scores(corpus, tokens, keys) if tokens else {k: 0.0 for k in keys}
    if corpus == Corpus.CODE.value and is_identifier_query(query_text):
        ident = query_text.strip()
        for key in keys:
            if ident in loaded[key].content:
                raw_bm25[key] *= IDENTIFIER_BOOST

    max_bm25 = max(raw_bm25.values()) if raw_bm25 else 0.0
    centrality = (
        store.get_centrality(keys) if corpus == Corpus.MEMORIES.value and centrality_weight > 0 else {}
    )

    scored: List[SearchResult] = []
    for key in keys:
        cand = loaded[key]
        lexical = raw_bm25.get(key, 0.0) / max_bm25 if max_bm25 > 0 else 0.0
        vector = 0.0
        if query_vector and cand.embedding is not None:
            cosine = cosine_similarity(query_vector, cand.embedding)
            if cosine is None:
                response.stale_embeddings += 1
            vector = clamp_unit(cosine)
        score = fuse(lexical, vector, alpha)
        if centrality:
            score = min(1.0, score + centrality_weight * centrality.get(key, 0.0))
        if score < threshold:
            continue
        scored.append(
            SearchResult(
                id=key,
                corpus=corpus,
                content=cand.content,
                score=score,
                lexical_score=lexical,
                vector_score=vector,
                bm25=raw_bm25.get(key, 0.0),
                created_at=cand.created_at,
                quality_score=cand.quality_score,
                access_count=cand.access_count,
                last_accessed=cand.last_accessed,
                metadata=cand.metadata,
            )
        )

    if response.stale_embeddings:
        logger.warning(
            "%d %s candidates have embeddings of another dimension; run 'mnemos reindex'",
            response.stale_embeddings,
            corpus,
        )

    # 3. Rank, tie-break on recency, truncate
    scored.sort(key=lambda r: (-r.score, -(r.created_at.timestamp() if r.created_at else 0.0)))
    if mmr_lambda is not None and query_vector and len(scored) > 1:
        response.results = _mmr_rerank(scored, loaded, len(query_vector), mmr_lambda, top_k)
    else:
        response.results = scored[:top_k]

    if record_access and corpus == Corpus.MEMORIES.value and response.results:
        store.record_access([r.id for r in response.results])

    return response
