"""Tests for mnemos file chunking and incremental indexing."""
import pytest

from conftest import FakeEmbedder
from mnemos.config import IndexingConfig
from mnemos.errors import EmbeddingError, ValidationError
from mnemos.hybrid import hybrid_search
from mnemos.indexer import Indexer, chunk_text, content_hash


class TestChunking:
    def test_line_aligned_chunks(self):
        chunks = chunk_text("aaa\nbbb\nccc", chunk_size=8, overlap=0)
        assert [(c["start_line"], c["end_line"]) for c in chunks] == [(1, 2), (3, 3)]
        assert chunks[0]["content"] == "aaa\nbbb"
        assert [c["chunk_index"] for c in chunks] == [0, 1]

    def test_overlap_carries_whole_lines(self):
        chunks = chunk_text("aaa\nbbb\nccc", chunk_size=8, overlap=4)
        assert [(c["start_line"], c["end_line"]) for c in chunks] == [(1, 2), (2, 3)]

    def test_long_line_is_own_chunk(self):
        chunks = chunk_text("x" * 20 + "\nshort", chunk_size=5, overlap=0)
        assert chunks[0]["content"] == "x" * 20
        assert chunks[1]["content"] == "short"

    def test_blank_text(self):
        assert chunk_text("") == []
        assert chunk_text("\n\n   \n") == []

    def test_bad_size(self):
        with pytest.raises(ValidationError):
            chunk_text("abc", chunk_size=0)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    (root / "docs").mkdir(parents=True)
    (root / "src").mkdir()
    (root / "node_modules" / "pkg").mkdir(parents=True)
    (root / "docs" / "guide.md").write_text("# Deploying\nRun the deploy script after tagging a release.\n")
    (root / "src" / "app.py").write_text("def deployRelease(tag):\n    return tag\n")
    (root / "src" / "image.png").write_bytes(b"\x89PNG")
    (root / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1")
    return root


@pytest.fixture
def indexer(store):
    return Indexer(store, FakeEmbedder(), IndexingConfig())


class TestIndexer:
    def test_routes_files_to_corpora(self, indexer, store, project):
        summary = indexer.index_paths([project])
        assert summary["indexed"] == 2
        assert summary["failed"] == 0
        assert store.indexed_files("docs") == [str((project / "docs" / "guide.md").resolve())]
        assert store.indexed_files("code") == [str((project / "src" / "app.py").resolve())]

    def test_chunks_are_searchable_and_embedded(self, indexer, store, project):
        indexer.index_paths([project])
        resp = hybrid_search(store, "code", "deployRelease", None)
        assert resp.results[0].metadata["start_line"] == 1
        assert all(c.embedding is not None for c in store.list_chunks("docs"))

    def test_unchanged_files_are_skipped(self, indexer, project):
        indexer.index_paths([project])
        again = indexer.index_paths([project])
        assert again["indexed"] == 0
        assert again["skipped"] == 2

    def test_changed_file_is_replaced(self, indexer, store, project):
        indexer.index_paths([project])
        guide = project / "docs" / "guide.md"
        guide.write_text("# Rollback\nRevert to the previous tag.\n")
        summary = indexer.index_paths([project])
        assert summary["indexed"] == 1
        assert store.get_file_hash("docs", str(guide.resolve())) == content_hash(guide.read_text())
        assert hybrid_search(store, "docs", "deploy script", None).results == []
        assert hybrid_search(store, "docs", "rollback", None).results

    def test_vanished_file_is_removed(self, indexer, store, project):
        indexer.index_paths([project])
        (project / "src" / "app.py").unlink()
        summary = indexer.index_paths([project])
        assert summary["removed"] == 1
        assert store.indexed_files("code") == []
        assert store.document_count("code") == 0

    def test_missing_path_is_reported(self, indexer, tmp_path):
        summary = indexer.index_paths([tmp_path / "nope"])
        assert summary["failed"] == 1
        assert summary["errors"][0]["error"] == "no such file or directory"

    def test_oversized_file_fails_individually(self, store, project):
        small = Indexer(store, None, IndexingConfig(max_file_bytes=10))
        summary = small.index_paths([project])
        assert summary["failed"] == 2
        assert summary["indexed"] == 0

    def test_forced_corpus(self, indexer, store, project):
        indexer.index_file(project / "src" / "app.py", corpus="docs")
        assert store.document_count("docs") == 1
        with pytest.raises(ValidationError):
            indexer.index_file(project / "src" / "image.png")

    def test_embedding_failure_still_indexes_lexically(self, store, project):
        class Broken(FakeEmbedder):
            def embed_batch(self, texts):
                raise EmbeddingError("model offline")

        summary = Indexer(store, Broken()).index_paths([project / "docs"])
        assert summary["indexed"] == 1
        assert all(c.embedding is None for c in store.list_chunks("docs"))
        assert hybrid_search(store, "docs", "deploy", None).results
