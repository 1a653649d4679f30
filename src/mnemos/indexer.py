"""
mnemos Indexer -- incremental chunking of documentation and source files.

Files are keyed by absolute path and a SHA-256 of their content. An
unchanged file is skipped; a changed one has its chunks (and their lexical
postings and vectors) replaced in one transaction; a file that vanished from
an indexed directory is removed.

Usage:
    indexer = Indexer(store, embedder, config.indexing)
    summary = indexer.index_paths(["docs/", "src/"])
"""

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from mnemos.config import IndexingConfig
from mnemos.errors import EmbeddingError, ValidationError
from mnemos.types import Corpus

logger = logging.getLogger("mnemos.indexer")

SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".tox", "dist", "build"}


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 50) -> List[Dict[str, Any]]:
    """Split text into line-aligned chunks of about ``chunk_size`` characters.

    Consecutive chunks share up to ``overlap`` characters of whole lines.
    Line numbers are 1-indexed and inclusive. A single line longer than
    ``chunk_size`` becomes its own chunk.
    """
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    lines = text.splitlines()
    chunks: List[Dict[str, Any]] = []
    start = 0
    while start < len(lines):
        end, size = start, 0
        while end < len(lines) and (end == start or size + len(lines[end]) + 1 <= chunk_size):
            size += len(lines[end]) + 1
            end += 1
        content = "\n".join(lines[start:end])
        if content.strip():
            chunks.append(
                {"chunk_index": len(chunks), "content": content, "start_line": start + 1, "end_line": end}
            )
        if end >= len(lines):
            break
        back, carried = end, 0
        while back - 1 > start and carried + len(lines[back - 1]) + 1 <= overlap:
            back -= 1
            carried += len(lines[back]) + 1
        start = back
    return chunks


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class Indexer:
    """Keeps the docs and code corpora in step with files on disk."""

    def __init__(self, store, embedder=None, config: Optional[IndexingConfig] = None):
        self.store = store
        self.embedder = embedder
        self.config = config or IndexingConfig()

    def corpus_for(self, path: Path) -> Optional[str]:
        suffix = path.suffix.lower()
        if suffix in self.config.code_extensions:
            return Corpus.CODE.value
        if suffix in self.config.doc_extensions:
            return Corpus.DOCS.value
        return None

    def _walk(self, root: Path) -> Iterator[Path]:
        for path in sorted(root.rglob("*")):
            if any(part in SKIP_DIRS or part.startswith(".") for part in path.relative_to(root).parts[:-1]):
                continue
            if path.is_file() and self.corpus_for(path):
                yield path

    def _embed_chunks(self, chunks: List[Dict[str, Any]]) -> List[Optional[List[float]]]:
        if self.embedder is None or not chunks or not self.embedder.is_semantic:
            return [None] * len(chunks)
        vectors = self.embedder.embed_batch([c["content"] for c in chunks])
        return [list(v) for v in vectors]

    def index_file(self, path, corpus: Optional[str] = None) -> str:
        """Index one file. Returns "indexed" or "skipped" (content unchanged).

        Raises OSError / ValidationError for unreadable or oversized files.
        An embedding failure still indexes the chunks for lexical search.
        """
        path = Path(path).resolve()
        corpus = corpus or self.corpus_for(path)
        if corpus not in (Corpus.DOCS.value, Corpus.CODE.value):
            raise ValidationError(f"{path} is not a docs or code file")
        if path.stat().st_size > self.config.max_file_bytes:
            raise ValidationError(f"{path} exceeds {self.config.max_file_bytes} bytes")
        text = path.read_text(encoding="utf-8", errors="replace")
        digest = content_hash(text)
        if self.store.get_file_hash(corpus, str(path)) == digest:
            return "skipped"

        chunks = chunk_text(text, self.config.chunk_size, self.config.chunk_overlap)
        try:
            embeddings = self._embed_chunks(chunks)
        except EmbeddingError as e:
            logger.warning("Embedding failed for %s, indexing lexically only: %s", path, e)
            embeddings = [None] * len(chunks)
        self.store.replace_file_chunks(corpus, str(path), chunks, embeddings, digest)
        logger.debug("Indexed %s (%d chunks)", path, len(chunks))
        return "indexed"

    def remove_file(self, path, corpus: Optional[str] = None) -> int:
        path = Path(path).resolve()
        corpus = corpus or self.corpus_for(path)
        return self.store.delete_file(corpus, str(path))

    def index_paths(self, paths: Iterable, corpus: Optional[str] = None) -> Dict[str, Any]:
        """Index files and directories; prune vanished files under indexed directories."""
        summary: Dict[str, Any] = {"indexed": 0, "skipped": 0, "removed": 0, "failed": 0, "errors": []}
        roots: List[Path] = []
        files: List[Path] = []
        for raw in paths:
            path = Path(raw).expanduser().resolve()
            if path.is_dir():
                roots.append(path)
                files.extend(self._walk(path))
            elif path.is_file():
                files.append(path)
            else:
                summary["failed"] += 1
                summary["errors"].append({"path": str(path), "error": "no such file or directory"})

        for path in files:
            try:
                status = self.index_file(path, corpus)
            except (OSError, ValidationError) as e:
                summary["failed"] += 1
                summary["errors"].append({"path": str(path), "error": str(e)})
                continue
            summary[status] += 1

        seen = {str(p) for p in files}
        for target in ([corpus] if corpus else [Corpus.DOCS.value, Corpus.CODE.value]):
            for indexed in self.store.indexed_files(target):
                under_root = any(indexed.startswith(str(root) + "/") for root in roots)
                if under_root and indexed not in seen and not Path(indexed).exists():
                    self.store.delete_file(target, indexed)
                    summary["removed"] += 1

        logger.info(
            "Indexing done: %d indexed, %d skipped, %d removed, %d failed",
            summary["indexed"], summary["skipped"], summary["removed"], summary["failed"],
        )
        return summary
