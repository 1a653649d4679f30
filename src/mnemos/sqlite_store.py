"""
mnemos SQLite Store -- SQLite-backed storage with sqlite-vec for vector search.

One database file holds memories, typed memory links, document/code chunks,
the per-corpus BM25 tables and the centrality cache. Embeddings are stored
as float32 blobs on the owning row and mirrored into one sqlite-vec ``vec0``
table per corpus when the extension loads; otherwise vector candidates are
found by brute-force cosine with numpy. ``memories_vec`` only holds active
memories, so a KNN window is never filled by superseded rows.

Every write happens under the store lock in a single transaction, so a
memory row, its lexical postings and its vector row are committed together.

Usage:
    store = SQLiteStore(embedding_dim=384)
    mem_id, created = store.save_memory("Uses Redis for sessions", embedding=vec)
    store.create_link(mem_id, other_id, "related")
"""

import contextlib
import hashlib
import json
import logging
import os
import sqlite3
import threading
import time as _time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from mnemos.bm25 import LEXICAL_SCHEMA, LexicalIndex
from mnemos.errors import DimensionMismatchError, ValidationError
from mnemos.types import (
    Corpus,
    InvalidationReason,
    LinkRelation,
    MemoryType,
    Validity,
    validity_from_columns,
)
from mnemos.vectors import deserialize_f32, serialize_f32

logger = logging.getLogger("mnemos.sqlite_store")

SCHEMA_VERSION = 2
DEFAULT_EMBEDDING_DIM = 384

# One vec0 table per corpus; bump VEC_LAYOUT when their contents change meaning.
VEC_TABLES = {
    Corpus.MEMORIES.value: "memories_vec",
    Corpus.DOCS.value: "docs_vec",
    Corpus.CODE.value: "code_vec",
}
VEC_LAYOUT = "2"

# ---------------------------------------------------------------------------
# SQLite retry -- WAL + busy_timeout handle most contention; under heavy
# multi-process load the timeout can still expire, so retry with backoff.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (no tz), Z-suffix, and +00:00 suffix.
    Returns None when *value* is falsy.
    """
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    return sorted({t.strip() for t in (tags or []) if t and t.strip()})


# ---------------------------------------------------------------------------
# Row objects
# ---------------------------------------------------------------------------


class Memory:
    """Snapshot of one memory row."""

    __slots__ = (
        "id",
        "content",
        "type",
        "tags",
        "source",
        "quality_score",
        "access_count",
        "last_accessed",
        "created_at",
        "valid_from",
        "valid_until",
        "invalidated_by",
        "invalidation_reason",
        "invalidated_at",
        "embedding",
    )

    def __init__(
        self,
        id: str,
        content: str,
        type: str = MemoryType.OBSERVATION.value,
        tags: Optional[List[str]] = None,
        source: Optional[str] = None,
        quality_score: Optional[float] = None,
        access_count: int = 0,
        last_accessed: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        invalidated_by: Optional[str] = None,
        invalidation_reason: Optional[str] = None,
        invalidated_at: Optional[datetime] = None,
        embedding: Optional[List[float]] = None,
    ):
        self.id = id
        self.content = content
        self.type = type
        self.tags = list(tags or [])
        self.source = source
        self.quality_score = quality_score
        self.access_count = access_count
        self.last_accessed = last_accessed
        self.created_at = created_at or _now()
        self.valid_from = valid_from
        self.valid_until = valid_until
        self.invalidated_by = invalidated_by
        self.invalidation_reason = invalidation_reason
        self.invalidated_at = invalidated_at
        self.embedding = embedding

    @property
    def validity(self) -> Validity:
        return validity_from_columns(self.invalidated_by, self.invalidation_reason)

    @property
    def is_active(self) -> bool:
        return self.invalidation_reason is None

    def visible_at(self, at: Optional[datetime] = None, as_of: bool = False) -> bool:
        """Whether the memory is visible at ``at``.

        Without ``as_of`` only active memories are visible. With ``as_of`` a
        memory invalidated after ``at`` is still visible at ``at``.
        """
        at = at or _now()
        if as_of:
            if self.created_at > at:
                return False
            if self.invalidated_at is not None and self.invalidated_at <= at:
                return False
        elif not self.is_active:
            return False
        if self.valid_from is not None and self.valid_from > at:
            return False
        if self.valid_until is not None and self.valid_until <= at:
            return False
        return True

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or _now()
        return max(0.0, (now - self.created_at).total_seconds() / 86400.0)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "content": self.content,
            "type": self.type,
            "tags": list(self.tags),
            "source": self.source,
            "quality_score": self.quality_score,
            "access_count": self.access_count,
            "last_accessed": _iso(self.last_accessed),
            "created_at": _iso(self.created_at),
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "invalidated_by": self.invalidated_by,
            "invalidation_reason": self.invalidation_reason,
            "invalidated_at": _iso(self.invalidated_at),
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data

    def __repr__(self) -> str:
        return f"Memory({self.id!r}, {self.content[:40]!r})"


class MemoryLink:
    __slots__ = ("id", "source_id", "target_id", "relation", "weight", "created_at",
                 "valid_from", "valid_until", "llm_enriched")

    def __init__(self, id, source_id, target_id, relation, weight=1.0, created_at=None,
                 valid_from=None, valid_until=None, llm_enriched=False):
        self.id = id
        self.source_id = source_id
        self.target_id = target_id
        self.relation = relation
        self.weight = weight
        self.created_at = created_at or _now()
        self.valid_from = valid_from
        self.valid_until = valid_until
        self.llm_enriched = bool(llm_enriched)

    def valid_at(self, at: Optional[datetime] = None) -> bool:
        at = at or _now()
        if self.valid_from is not None and self.valid_from > at:
            return False
        if self.valid_until is not None and self.valid_until <= at:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relation": self.relation,
            "weight": self.weight,
            "created_at": _iso(self.created_at),
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "llm_enriched": self.llm_enriched,
        }


class DocumentChunk:
    __slots__ = ("id", "corpus", "file_path", "chunk_index", "content", "start_line",
                 "end_line", "embedding", "created_at", "updated_at")

    def __init__(self, id, corpus, file_path, chunk_index, content, start_line, end_line,
                 embedding=None, created_at=None, updated_at=None):
        self.id = id
        self.corpus = corpus
        self.file_path = file_path
        self.chunk_index = chunk_index
        self.content = content
        self.start_line = start_line
        self.end_line = end_line
        self.embedding = embedding
        self.created_at = created_at or _now()
        self.updated_at = updated_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "corpus": self.corpus,
            "file_path": self.file_path,
            "chunk_index": self.chunk_index,
            "content": self.content,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


_MEMORY_COLUMNS = (
    "node_id, content, type, tags, source, quality_score, access_count, last_accessed, "
    "created_at, valid_from, valid_until, invalidated_by, invalidation_reason, invalidated_at, embedding"
)
_LINK_COLUMNS = "id, source_id, target_id, relation, weight, created_at, valid_from, valid_until, llm_enriched"
_CHUNK_COLUMNS = "id, corpus, file_path, chunk_index, content, start_line, end_line, embedding, created_at, updated_at"


# ---------------------------------------------------------------------------
# SQLiteStore
# ---------------------------------------------------------------------------


class SQLiteStore:
    """SQLite-backed storage substrate for memories, links and document chunks."""

    _MAX_CONTENT_SIZE = int(os.environ.get("MNEMOS_MAX_CONTENT_SIZE", "1000000"))  # 1MB

    def __init__(
        self,
        db_path=None,
        embedding_dim: int = DEFAULT_EMBEDDING_DIM,
        bm25_k1: float = 1.3,
        bm25_b: float = 0.75,
    ):
        mnemos_home = Path(os.environ.get("MNEMOS_HOME", str(Path.home() / ".mnemos")))
        self.db_path = Path(db_path) if db_path else (mnemos_home / "mnemos.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        self._lock = threading.RLock()
        self._vec_available = False
        self._conn = self._connect()
        self._init_schema()

        stored_dim = self.get_meta("embedding_dim")
        if stored_dim is None:
            self.set_meta("embedding_dim", str(embedding_dim))
            self.embedding_dim = embedding_dim
        else:
            self.embedding_dim = int(stored_dim)
        self.configured_dim = embedding_dim
        if self.embedding_dim != embedding_dim:
            logger.warning(
                "Stored embeddings are %d-dim but %d-dim is configured; run 'mnemos reindex'",
                self.embedding_dim,
                embedding_dim,
            )
        self._init_vec_tables()

        self._lexical = {
            corpus.value: LexicalIndex(self._conn, corpus.value, k1=bm25_k1, b=bm25_b) for corpus in Corpus
        }

    @property
    def needs_reindex(self) -> bool:
        return self.embedding_dim != self.configured_dim

    @property
    def vec_available(self) -> bool:
        return self._vec_available

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection with WAL settings and sqlite-vec if present."""
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA cache_size=-16000")  # 16MB cache
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_available = True
        except (ImportError, AttributeError, sqlite3.OperationalError) as e:
            logger.warning("sqlite-vec not available, falling back to brute-force: %s", e)
            self._vec_available = False

        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist and apply migrations."""
        c = self._conn
        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_id TEXT UNIQUE NOT NULL,
                content TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'observation',
                tags TEXT NOT NULL DEFAULT '[]',
                source TEXT,
                quality_score REAL,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT,
                created_at TEXT NOT NULL,
                valid_from TEXT,
                valid_until TEXT,
                invalidated_by TEXT,
                invalidation_reason TEXT,
                invalidated_at TEXT,
                content_hash TEXT,
                embedding BLOB
            )
        """)
        for col in ("node_id", "type", "source", "created_at", "content_hash", "invalidation_reason"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_memories_{col} ON memories({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_links (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_id TEXT NOT NULL REFERENCES memories(node_id) ON DELETE CASCADE,
                target_id TEXT NOT NULL REFERENCES memories(node_id) ON DELETE CASCADE,
                relation TEXT NOT NULL,
                weight REAL NOT NULL DEFAULT 1.0,
                created_at TEXT NOT NULL,
                valid_from TEXT,
                valid_until TEXT,
                llm_enriched INTEGER NOT NULL DEFAULT 0
            )
        """)
        for col in ("source_id", "target_id", "relation"):
            c.execute(f"CREATE INDEX IF NOT EXISTS idx_memory_links_{col} ON memory_links({col})")

        c.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                corpus TEXT NOT NULL,
                file_path TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                start_line INTEGER NOT NULL,
                end_line INTEGER NOT NULL,
                embedding BLOB,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (corpus, file_path, chunk_index)
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_documents_path ON documents(corpus, file_path)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS file_hashes (
                corpus TEXT NOT NULL,
                file_path TEXT NOT NULL,
                content_hash TEXT NOT NULL,
                indexed_at TEXT NOT NULL,
                PRIMARY KEY (corpus, file_path)
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS centrality (
                memory_id TEXT PRIMARY KEY,
                degree INTEGER NOT NULL,
                score REAL NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        c.executescript(LEXICAL_SCHEMA)

        # Schema migration v1 -> v2: link enrichment flag
        current = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if current and current[0] < 2:
            try:
                c.execute("ALTER TABLE memory_links ADD COLUMN llm_enriched INTEGER NOT NULL DEFAULT 0")
            except sqlite3.OperationalError:
                pass  # Column already exists
            c.execute("UPDATE schema_version SET version = 2")
            logger.info("Schema migrated v1 -> v2: added memory_links.llm_enriched")

        c.commit()

    def _init_vec_tables(self) -> None:
        if not self._vec_available:
            return
        try:
            for table in VEC_TABLES.values():
                self._conn.execute(f"""
                    CREATE VIRTUAL TABLE IF NOT EXISTS {table}
                    USING vec0(embedding float[{self.embedding_dim}] distance_metric=cosine)
                """)
            self._conn.commit()
        except sqlite3.OperationalError as e:
            logger.warning("Failed to create vec tables: %s", e)
            self._vec_available = False
            return
        if self.get_meta("vec_layout") != VEC_LAYOUT:
            self._rebuild_vec_index()

    def _rebuild_vec_index(self) -> None:
        """Refill every vec0 table from the owning rows (active memories only)."""
        size = self.embedding_dim * 4
        with self._transaction() as c:
            # v1 layout kept docs and code in one table
            c.execute("DROP TABLE IF EXISTS documents_vec")
            for table in VEC_TABLES.values():
                c.execute(f"DELETE FROM {table}")
            c.execute(
                "INSERT INTO memories_vec (rowid, embedding) SELECT id, embedding FROM memories "
                "WHERE embedding IS NOT NULL AND invalidation_reason IS NULL AND length(embedding) = ?",
                (size,),
            )
            for corpus in (Corpus.DOCS.value, Corpus.CODE.value):
                c.execute(
                    f"INSERT INTO {VEC_TABLES[corpus]} (rowid, embedding) SELECT id, embedding FROM documents "
                    "WHERE corpus = ? AND embedding IS NOT NULL AND length(embedding) = ?",
                    (corpus, size),
                )
            c.execute(
                "INSERT INTO meta (key, value) VALUES ('vec_layout', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (VEC_LAYOUT,),
            )
        logger.info("Rebuilt sqlite-vec tables (layout %s)", VEC_LAYOUT)

    # ------------------------------------------------------------------
    # Resilient commit / transactions
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        """Commit with retry on 'database is locked'."""
        _retry_on_locked(self._conn.commit)

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write under the store lock; commit on success, roll back on error."""
        with self._lock:
            try:
                yield self._conn
                self._commit()
            except BaseException:
                self._conn.rollback()
                raise

    def _check_dim(self, embedding: Optional[Sequence[float]]) -> None:
        if embedding is not None and len(embedding) != self.embedding_dim:
            raise DimensionMismatchError(self.embedding_dim, len(embedding))

    def _vec_drop_memory(self, c: sqlite3.Connection, memory_id: str) -> None:
        if self._vec_available:
            c.execute(
                "DELETE FROM memories_vec WHERE rowid = (SELECT id FROM memories WHERE node_id = ?)", (memory_id,)
            )

    def _vec_put_memory(self, c: sqlite3.Connection, memory_id: str) -> None:
        """Mirror an active memory's stored embedding into memories_vec."""
        if not self._vec_available:
            return
        row = c.execute(
            "SELECT id, embedding FROM memories WHERE node_id = ? AND invalidation_reason IS NULL", (memory_id,)
        ).fetchone()
        if row is None or row[1] is None or len(row[1]) != self.embedding_dim * 4:
            return
        c.execute("DELETE FROM memories_vec WHERE rowid = ?", (row[0],))
        c.execute("INSERT INTO memories_vec (rowid, embedding) VALUES (?, ?)", row)

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._transaction() as c:
            c.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def save_memory(
        self,
        content: str,
        embedding: Optional[Sequence[float]] = None,
        type: str = MemoryType.OBSERVATION.value,
        tags: Optional[Iterable[str]] = None,
        source: Optional[str] = None,
        quality_score: Optional[float] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> Tuple[str, bool]:
        """Insert a memory. Returns (memory_id, created).

        An active memory with identical content is reused (created=False).
        """
        if not content or not content.strip():
            raise ValidationError("content must be a non-empty string")
        if len(content) > self._MAX_CONTENT_SIZE:
            raise ValidationError(
                f"Content size ({len(content):,} bytes) exceeds limit ({self._MAX_CONTENT_SIZE:,} bytes)"
            )
        if quality_score is not None and not 0.0 <= quality_score <= 1.0:
            raise ValidationError(f"quality_score must be within [0, 1], got {quality_score}")
        mem_type = MemoryType.coerce(type).value
        self._check_dim(embedding)

        content_hash = hashlib.sha256(content.encode()).hexdigest()
        created = created_at or _now()

        with self._transaction() as c:
            existing = c.execute(
                "SELECT node_id FROM memories WHERE content_hash = ? AND invalidation_reason IS NULL LIMIT 1",
                (content_hash,),
            ).fetchone()
            if existing:
                return existing[0], False

            node_id = f"mem-{uuid.uuid4().hex[:12]}"
            cur = c.execute(
                """INSERT INTO memories
                   (node_id, content, type, tags, source, quality_score, access_count,
                    created_at, valid_from, valid_until, content_hash, embedding)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                (
                    node_id,
                    content,
                    mem_type,
                    json.dumps(_normalize_tags(tags)),
                    source,
                    quality_score,
                    _iso(created),
                    _iso(valid_from),
                    _iso(valid_until),
                    content_hash,
                    serialize_f32(embedding) if embedding is not None else None,
                ),
            )
            if embedding is not None and self._vec_available:
                c.execute(
                    "INSERT INTO memories_vec (rowid, embedding) VALUES (?, ?)",
                    (cur.lastrowid, serialize_f32(embedding)),
                )
            self._lexical[Corpus.MEMORIES.value].add(node_id, content)
        return node_id, True

    def _row_to_memory(self, row: tuple) -> Memory:
        (node_id, content, mem_type, tags_json, source, quality, access_count, last_accessed,
         created_at, valid_from, valid_until, invalidated_by, reason, invalidated_at, blob) = row
        return Memory(
            id=node_id,
            content=content,
            type=mem_type,
            tags=json.loads(tags_json) if tags_json else [],
            source=source,
            quality_score=quality,
            access_count=access_count or 0,
            last_accessed=parse_dt(last_accessed),
            created_at=parse_dt(created_at),
            valid_from=parse_dt(valid_from),
            valid_until=parse_dt(valid_until),
            invalidated_by=invalidated_by,
            invalidation_reason=reason,
            invalidated_at=parse_dt(invalidated_at),
            embedding=deserialize_f32(blob) if blob else None,
        )

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE node_id = ?", (memory_id,)
            ).fetchone()
        return self._row_to_memory(row) if row else None

    def get_memories(self, memory_ids: Sequence[str]) -> Dict[str, Memory]:
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE node_id IN ({placeholders})", ids
            ).fetchall()
        return {row[0]: self._row_to_memory(row) for row in rows}

    def list_memories(
        self,
        include_invalidated: bool = False,
        with_embeddings_only: bool = False,
        as_of: Optional[datetime] = None,
    ) -> List[Memory]:
        """Snapshot of memories ordered by creation time.

        ``as_of`` returns what was visible at that instant (including memories
        invalidated later); otherwise invalidated memories are skipped unless
        ``include_invalidated``.
        """
        sql = f"SELECT {_MEMORY_COLUMNS} FROM memories"
        clauses = []
        if with_embeddings_only:
            clauses.append("embedding IS NOT NULL")
        if not include_invalidated and as_of is None:
            clauses.append("invalidation_reason IS NULL")
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        memories = [self._row_to_memory(r) for r in rows]
        if as_of is not None:
            memories = [m for m in memories if m.visible_at(as_of, as_of=True)]
        return memories

    def active_embeddings(self, exclude: Optional[Sequence[str]] = None) -> List[Tuple[str, List[float]]]:
        """All (id, embedding) pairs for non-invalidated memories."""
        skip = set(exclude or ())
        with self._lock:
            rows = self._conn.execute(
                "SELECT node_id, embedding FROM memories "
                "WHERE embedding IS NOT NULL AND invalidation_reason IS NULL ORDER BY created_at, id"
            ).fetchall()
        return [(node_id, deserialize_f32(blob)) for node_id, blob in rows if node_id not in skip]

    def memory_count(self, include_invalidated: bool = True) -> int:
        sql = "SELECT COUNT(*) FROM memories"
        if not include_invalidated:
            sql += " WHERE invalidation_reason IS NULL"
        with self._lock:
            return self._conn.execute(sql).fetchone()[0]

    def record_access(self, memory_ids: Sequence[str]) -> None:
        """Bump access_count / last_accessed for returned search results."""
        if not memory_ids:
            return
        now = _iso(_now())
        with self._transaction() as c:
            c.executemany(
                "UPDATE memories SET access_count = access_count + 1, last_accessed = ? WHERE node_id = ?",
                [(now, mid) for mid in memory_ids],
            )

    def set_embedding(self, memory_id: str, embedding: Sequence[float]) -> bool:
        self._check_dim(embedding)
        with self._transaction() as c:
            row = c.execute("SELECT id FROM memories WHERE node_id = ?", (memory_id,)).fetchone()
            if row is None:
                return False
            c.execute("UPDATE memories SET embedding = ? WHERE id = ?", (serialize_f32(embedding), row[0]))
            self._vec_put_memory(c, memory_id)
        return True

    def set_tags(self, updates: Dict[str, Iterable[str]]) -> int:
        """Replace tag sets for several memories in one transaction."""
        if not updates:
            return 0
        with self._transaction() as c:
            c.executemany(
                "UPDATE memories SET tags = ? WHERE node_id = ?",
                [(json.dumps(_normalize_tags(tags)), mid) for mid, tags in updates.items()],
            )
        return len(updates)

    # -- invalidation ----------------------------------------------------

    def invalidate_memory(self, memory_id: str, invalidated_by: str) -> bool:
        """Mark ``memory_id`` as superseded by ``invalidated_by``.

        Returns False (no-op) when the memory is missing or already invalidated,
        so a memory can never be invalidated by more than one target.
        """
        if memory_id == invalidated_by:
            raise ValidationError("a memory cannot supersede itself")
        with self._transaction() as c:
            cur = c.execute(
                """UPDATE memories SET invalidated_by = ?, invalidation_reason = ?, invalidated_at = ?
                   WHERE node_id = ? AND invalidation_reason IS NULL""",
                (invalidated_by, InvalidationReason.SUPERSEDED.value, _iso(_now()), memory_id),
            )
            if cur.rowcount > 0:
                self._vec_drop_memory(c, memory_id)
            return cur.rowcount > 0

    def invalidate_memories(self, memory_ids: Sequence[str]) -> int:
        """Soft-delete (system cleanup) a batch atomically; skips already-invalidated rows."""
        if not memory_ids:
            return 0
        now = _iso(_now())
        with self._transaction() as c:
            total = 0
            for mid in memory_ids:
                cur = c.execute(
                    """UPDATE memories SET invalidated_by = NULL, invalidation_reason = ?, invalidated_at = ?
                       WHERE node_id = ? AND invalidation_reason IS NULL""",
                    (InvalidationReason.SYSTEM_CLEANUP.value, now, mid),
                )
                if cur.rowcount > 0:
                    self._vec_drop_memory(c, mid)
                total += cur.rowcount
        return total

    def restore_memory(self, memory_id: str) -> bool:
        """Clear any invalidation on a memory. False if it was not invalidated."""
        with self._transaction() as c:
            cur = c.execute(
                """UPDATE memories SET invalidated_by = NULL, invalidation_reason = NULL, invalidated_at = NULL
                   WHERE node_id = ? AND invalidation_reason IS NOT NULL""",
                (memory_id,),
            )
            if cur.rowcount > 0:
                self._vec_put_memory(c, memory_id)
            return cur.rowcount > 0

    def delete_memories(self, memory_ids: Sequence[str]) -> int:
        """Hard delete a batch atomically (rows, postings, vectors, links, centrality)."""
        if not memory_ids:
            return 0
        deleted = 0
        with self._transaction() as c:
            for mid in memory_ids:
                row = c.execute("SELECT id FROM memories WHERE node_id = ?", (mid,)).fetchone()
                if row is None:
                    continue
                c.execute("DELETE FROM memory_links WHERE source_id = ? OR target_id = ?", (mid, mid))
                c.execute("DELETE FROM centrality WHERE memory_id = ?", (mid,))
                if self._vec_available:
                    c.execute("DELETE FROM memories_vec WHERE rowid = ?", (row[0],))
                self._lexical[Corpus.MEMORIES.value].remove(mid)
                c.execute("DELETE FROM memories WHERE id = ?", (row[0],))
                deleted += 1
        return deleted

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def _row_to_link(self, row: tuple) -> MemoryLink:
        lid, source_id, target_id, relation, weight, created_at, valid_from, valid_until, enriched = row
        return MemoryLink(
            id=lid,
            source_id=source_id,
            target_id=target_id,
            relation=relation,
            weight=weight,
            created_at=parse_dt(created_at),
            valid_from=parse_dt(valid_from),
            valid_until=parse_dt(valid_until),
            llm_enriched=enriched,
        )

    def create_link(
        self,
        source_id: str,
        target_id: str,
        relation: str = LinkRelation.RELATED.value,
        weight: float = 1.0,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create an explicit link. Returns {"id", "created"}.

        The same (source, target, relation) triple is reused with created=False.
        """
        try:
            relation = LinkRelation(relation).value
        except ValueError:
            raise ValidationError(f"Unknown link relation: {relation!r}") from None
        if source_id == target_id:
            raise ValidationError("cannot link a memory to itself")
        with self._transaction() as c:
            found = c.execute(
                "SELECT COUNT(*) FROM memories WHERE node_id IN (?, ?)", (source_id, target_id)
            ).fetchone()[0]
            if found < 2:
                raise ValidationError(f"both memories must exist: {source_id}, {target_id}")
            existing = c.execute(
                "SELECT id FROM memory_links WHERE source_id = ? AND target_id = ? AND relation = ?",
                (source_id, target_id, relation),
            ).fetchone()
            if existing:
                return {"id": existing[0], "created": False}
            cur = c.execute(
                """INSERT INTO memory_links (source_id, target_id, relation, weight, created_at, valid_from, valid_until)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (source_id, target_id, relation, round(weight, 4), _iso(_now()), _iso(valid_from), _iso(valid_until)),
            )
            return {"id": cur.lastrowid, "created": True}

    def create_links_if_absent(self, links: Sequence[Tuple[str, str, str, float]]) -> Tuple[int, int]:
        """Insert (source, target, relation, weight) links, skipping any pair that
        already has a link in either direction. One transaction for the batch.

        Returns (created, skipped).
        """
        created = skipped = 0
        now = _iso(_now())
        with self._transaction() as c:
            for source_id, target_id, relation, weight in links:
                exists = c.execute(
                    """SELECT 1 FROM memory_links
                       WHERE (source_id = ? AND target_id = ?) OR (source_id = ? AND target_id = ?)
                       LIMIT 1""",
                    (source_id, target_id, target_id, source_id),
                ).fetchone()
                if exists:
                    skipped += 1
                    continue
                c.execute(
                    """INSERT INTO memory_links (source_id, target_id, relation, weight, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (source_id, target_id, LinkRelation(relation).value, round(weight, 4), now),
                )
                created += 1
        return created, skipped

    def link_exists_between(self, a: str, b: str) -> bool:
        with self._lock:
            return (
                self._conn.execute(
                    """SELECT 1 FROM memory_links
                       WHERE (source_id = ? AND target_id = ?) OR (source_id = ? AND target_id = ?) LIMIT 1""",
                    (a, b, b, a),
                ).fetchone()
                is not None
            )

    def get_links(self, memory_id: Optional[str] = None, relation: Optional[str] = None) -> List[MemoryLink]:
        sql = f"SELECT {_LINK_COLUMNS} FROM memory_links"
        clauses, params = [], []
        if memory_id:
            clauses.append("(source_id = ? OR target_id = ?)")
            params.extend([memory_id, memory_id])
        if relation:
            clauses.append("relation = ?")
            params.append(relation)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_link(r) for r in rows]

    def active_links(self, at: Optional[datetime] = None) -> List[MemoryLink]:
        """Links valid at ``at`` whose endpoints are both non-invalidated."""
        with self._lock:
            rows = self._conn.execute(
                f"""SELECT {', '.join('l.' + c.strip() for c in _LINK_COLUMNS.split(','))}
                    FROM memory_links l
                    JOIN memories s ON s.node_id = l.source_id AND s.invalidation_reason IS NULL
                    JOIN memories t ON t.node_id = l.target_id AND t.invalidation_reason IS NULL
                    ORDER BY l.id"""
            ).fetchall()
        return [link for link in (self._row_to_link(r) for r in rows) if link.valid_at(at)]

    def update_link_relation(self, link_id: int, relation: str, weight: Optional[float] = None) -> bool:
        relation = LinkRelation(relation).value
        with self._transaction() as c:
            if weight is None:
                cur = c.execute(
                    "UPDATE memory_links SET relation = ?, llm_enriched = 1 WHERE id = ?", (relation, link_id)
                )
            else:
                cur = c.execute(
                    "UPDATE memory_links SET relation = ?, weight = ?, llm_enriched = 1 WHERE id = ?",
                    (relation, round(weight, 4), link_id),
                )
            return cur.rowcount > 0

    def mark_link_enriched(self, link_id: int) -> None:
        with self._transaction() as c:
            c.execute("UPDATE memory_links SET llm_enriched = 1 WHERE id = ?", (link_id,))

    def delete_links(self, link_ids: Sequence[int]) -> int:
        if not link_ids:
            return 0
        with self._transaction() as c:
            c.executemany("DELETE FROM memory_links WHERE id = ?", [(lid,) for lid in link_ids])
        return len(link_ids)

    def link_count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM memory_links").fetchone()[0]

    # ------------------------------------------------------------------
    # Centrality cache
    # ------------------------------------------------------------------

    def replace_centrality(self, scores: Dict[str, Tuple[int, float]]) -> int:
        """Overwrite the whole cache with {memory_id: (degree, score)}."""
        now = _iso(_now())
        with self._transaction() as c:
            c.execute("DELETE FROM centrality")
            c.executemany(
                "INSERT INTO centrality (memory_id, degree, score, updated_at) VALUES (?, ?, ?, ?)",
                [(mid, degree, score, now) for mid, (degree, score) in scores.items()],
            )
        return len(scores)

    def get_centrality(self, memory_ids: Optional[Sequence[str]] = None) -> Dict[str, float]:
        with self._lock:
            if memory_ids is None:
                rows = self._conn.execute("SELECT memory_id, score FROM centrality").fetchall()
            else:
                ids = list(memory_ids)
                if not ids:
                    return {}
                placeholders = ",".join("?" for _ in ids)
                rows = self._conn.execute(
                    f"SELECT memory_id, score FROM centrality WHERE memory_id IN ({placeholders})", ids
                ).fetchall()
        return {mid: score for mid, score in rows}

    # ------------------------------------------------------------------
    # Documents (docs / code corpora)
    # ------------------------------------------------------------------

    def get_file_hash(self, corpus: str, file_path: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT content_hash FROM file_hashes WHERE corpus = ? AND file_path = ?", (corpus, file_path)
            ).fetchone()
        return row[0] if row else None

    def indexed_files(self, corpus: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT file_path FROM file_hashes WHERE corpus = ? ORDER BY file_path", (corpus,)
            ).fetchall()
        return [r[0] for r in rows]

    def _delete_file_rows(self, c: sqlite3.Connection, corpus: str, file_path: str) -> int:
        rows = c.execute(
            "SELECT id FROM documents WHERE corpus = ? AND file_path = ?", (corpus, file_path)
        ).fetchall()
        for (doc_id,) in rows:
            self._lexical[corpus].remove(str(doc_id))
            if self._vec_available:
                c.execute(f"DELETE FROM {VEC_TABLES[corpus]} WHERE rowid = ?", (doc_id,))
        c.execute("DELETE FROM documents WHERE corpus = ? AND file_path = ?", (corpus, file_path))
        return len(rows)

    def replace_file_chunks(
        self,
        corpus: str,
        file_path: str,
        chunks: Sequence[Dict[str, Any]],
        embeddings: Sequence[Optional[Sequence[float]]],
        content_hash: str,
    ) -> int:
        """Swap a file's chunks for a new set and record its content hash, atomically."""
        Corpus(corpus)
        if corpus == Corpus.MEMORIES.value:
            raise ValidationError("documents belong to the docs or code corpus")
        for emb in embeddings:
            self._check_dim(emb)
        now = _iso(_now())
        with self._transaction() as c:
            self._delete_file_rows(c, corpus, file_path)
            for chunk, emb in zip(chunks, embeddings):
                blob = serialize_f32(emb) if emb is not None else None
                cur = c.execute(
                    """INSERT INTO documents
                       (corpus, file_path, chunk_index, content, start_line, end_line, embedding, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (corpus, file_path, chunk["chunk_index"], chunk["content"], chunk["start_line"],
                     chunk["end_line"], blob, now, now),
                )
                if blob is not None and self._vec_available:
                    c.execute(f"INSERT INTO {VEC_TABLES[corpus]} (rowid, embedding) VALUES (?, ?)", (cur.lastrowid, blob))
                self._lexical[corpus].add(str(cur.lastrowid), chunk["content"])
            c.execute(
                """INSERT INTO file_hashes (corpus, file_path, content_hash, indexed_at) VALUES (?, ?, ?, ?)
                   ON CONFLICT(corpus, file_path) DO UPDATE SET content_hash = excluded.content_hash,
                                                                indexed_at = excluded.indexed_at""",
                (corpus, file_path, content_hash, now),
            )
        return len(chunks)

    def delete_file(self, corpus: str, file_path: str) -> int:
        with self._transaction() as c:
            removed = self._delete_file_rows(c, corpus, file_path)
            c.execute("DELETE FROM file_hashes WHERE corpus = ? AND file_path = ?", (corpus, file_path))
        return removed

    def _row_to_chunk(self, row: tuple) -> DocumentChunk:
        doc_id, corpus, file_path, idx, content, start, end, blob, created_at, updated_at = row
        return DocumentChunk(
            id=doc_id,
            corpus=corpus,
            file_path=file_path,
            chunk_index=idx,
            content=content,
            start_line=start,
            end_line=end,
            embedding=deserialize_f32(blob) if blob else None,
            created_at=parse_dt(created_at),
            updated_at=parse_dt(updated_at),
        )

    def get_chunks(self, chunk_ids: Sequence[int]) -> Dict[int, DocumentChunk]:
        ids = list(dict.fromkeys(int(i) for i in chunk_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM documents WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row[0]: self._row_to_chunk(row) for row in rows}

    def list_chunks(self, corpus: str) -> List[DocumentChunk]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM documents WHERE corpus = ? ORDER BY file_path, chunk_index",
                (corpus,),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def set_chunk_embedding(self, chunk_id: int, embedding: Sequence[float]) -> None:
        self._check_dim(embedding)
        blob = serialize_f32(embedding)
        with self._transaction() as c:
            row = c.execute("SELECT corpus FROM documents WHERE id = ?", (chunk_id,)).fetchone()
            if row is None:
                return
            c.execute("UPDATE documents SET embedding = ? WHERE id = ?", (blob, chunk_id))
            if self._vec_available:
                table = VEC_TABLES[row[0]]
                c.execute(f"DELETE FROM {table} WHERE rowid = ?", (chunk_id,))
                c.execute(f"INSERT INTO {table} (rowid, embedding) VALUES (?, ?)", (chunk_id, blob))

    def document_count(self, corpus: str) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM documents WHERE corpus = ?", (corpus,)).fetchone()[0]

    # ------------------------------------------------------------------
    # Lexical + vector candidate retrieval
    # ------------------------------------------------------------------

    def lexical_search(self, corpus: str, tokens: Sequence[str]) -> List[Tuple[str, float]]:
        with self._lock:
            return self._lexical[corpus].search(tokens)

    def lexical_scores(self, corpus: str, tokens: Sequence[str], doc_keys: Sequence[str]) -> Dict[str, float]:
        with self._lock:
            return self._lexical[corpus].score_many(tokens, doc_keys)

    def lexical_stats(self, corpus: str) -> Tuple[int, float]:
        with self._lock:
            return self._lexical[corpus].stats()

    def rebuild_lexical(self, corpus: str) -> int:
        """Recompute one corpus partition from the owning rows."""
        with self._transaction() as c:
            if corpus == Corpus.MEMORIES.value:
                docs = c.execute("SELECT node_id, content FROM memories ORDER BY id").fetchall()
            else:
                docs = [
                    (str(doc_id), content)
                    for doc_id, content in c.execute(
                        "SELECT id, content FROM documents WHERE corpus = ? ORDER BY id", (corpus,)
                    ).fetchall()
                ]
            return self._lexical[corpus].rebuild(docs)

    def vector_candidates(
        self,
        corpus: str,
        query: Sequence[float],
        limit: int,
        brute_force_limit: int = 10000,
        active_only: bool = True,
    ) -> List[Tuple[str, float]]:
        """Nearest stored vectors as (doc_key, cosine similarity), best first.

        Uses sqlite-vec KNN when loaded, else numpy over up to
        ``brute_force_limit`` rows. Rows of another dimension are skipped.
        Invalidated memories are only reachable with ``active_only=False``,
        which always takes the brute-force path.
        """
        self._check_dim(query)
        if limit <= 0:
            return []
        if self._vec_available and (active_only or corpus != Corpus.MEMORIES.value):
            try:
                return self._vec_knn(corpus, query, limit)
            except sqlite3.OperationalError as e:
                logger.debug("Vec query failed, using brute force: %s", e)

        with self._lock:
            if corpus == Corpus.MEMORIES.value:
                sql = "SELECT node_id, embedding FROM memories WHERE embedding IS NOT NULL"
                if active_only:
                    sql += " AND invalidation_reason IS NULL"
                rows = self._conn.execute(sql + " LIMIT ?", (brute_force_limit,)).fetchall()
            else:
                rows = [
                    (str(doc_id), blob)
                    for doc_id, blob in self._conn.execute(
                        "SELECT id, embedding FROM documents WHERE corpus = ? AND embedding IS NOT NULL LIMIT ?",
                        (corpus, brute_force_limit),
                    ).fetchall()
                ]
        dim = len(query)
        keys = [key for key, blob in rows if len(blob) == dim * 4]
        if not keys:
            return []
        matrix = np.frombuffer(b"".join(blob for _, blob in rows if len(blob) == dim * 4), dtype=np.float32)
        matrix = matrix.reshape(len(keys), dim)
        q = np.asarray(query, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * max(float(np.linalg.norm(q)), 1e-9)
        sims = (matrix @ q) / np.clip(norms, a_min=1e-9, a_max=None)
        order = np.argsort(-sims)[:limit]
        return [(keys[i], float(sims[i])) for i in order]

    def _vec_knn(self, corpus: str, query: Sequence[float], limit: int) -> List[Tuple[str, float]]:
        blob = serialize_f32(query)
        with self._lock:
            if corpus == Corpus.MEMORIES.value:
                rows = self._conn.execute(
                    """SELECT m.node_id, v.distance
                       FROM (SELECT rowid, distance FROM memories_vec WHERE embedding MATCH ? AND k = ?) v
                       JOIN memories m ON m.id = v.rowid
                       ORDER BY v.distance""",
                    (blob, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"""SELECT CAST(v.rowid AS TEXT), v.distance
                        FROM (SELECT rowid, distance FROM {VEC_TABLES[corpus]} WHERE embedding MATCH ? AND k = ?) v
                        ORDER BY v.distance""",
                    (blob, limit),
                ).fetchall()
        return [(key, 1.0 - distance) for key, distance in rows]

    def reset_embedding_dim(self, dimension: int) -> None:
        """Drop every stored vector and switch the store to ``dimension``.

        Used by reindex after an embedding-model change.
        """
        with self._transaction() as c:
            c.execute("UPDATE memories SET embedding = NULL")
            c.execute("UPDATE documents SET embedding = NULL")
            if self._vec_available:
                for table in VEC_TABLES.values():
                    c.execute(f"DROP TABLE IF EXISTS {table}")
            c.execute(
                "INSERT INTO meta (key, value) VALUES ('embedding_dim', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (str(dimension),),
            )
        self.embedding_dim = dimension
        self._init_vec_tables()
        logger.info("Embedding dimension reset to %d", dimension)

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            c = self._conn
            by_reason = dict(
                c.execute(
                    "SELECT COALESCE(invalidation_reason, 'active'), COUNT(*) FROM memories "
                    "GROUP BY COALESCE(invalidation_reason, 'active')"
                ).fetchall()
            )
            by_type = dict(
                c.execute(
                    "SELECT type, COUNT(*) FROM memories WHERE invalidation_reason IS NULL GROUP BY type"
                ).fetchall()
            )
            by_relation = dict(c.execute("SELECT relation, COUNT(*) FROM memory_links GROUP BY relation").fetchall())
            docs = dict(c.execute("SELECT corpus, COUNT(*) FROM documents GROUP BY corpus").fetchall())
        return {
            "memories": sum(by_reason.values()),
            "active": by_reason.get("active", 0),
            "superseded": by_reason.get(InvalidationReason.SUPERSEDED.value, 0),
            "system_invalidated": by_reason.get(InvalidationReason.SYSTEM_CLEANUP.value, 0),
            "by_type": by_type,
            "links": sum(by_relation.values()),
            "links_by_relation": by_relation,
            "doc_chunks": docs.get(Corpus.DOCS.value, 0),
            "code_chunks": docs.get(Corpus.CODE.value, 0),
            "embedding_dim": self.embedding_dim,
            "needs_reindex": self.needs_reindex,
            "vec_available": self._vec_available,
            "db_path": str(self.db_path),
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Database close failed: %s", e)
