"""Tests for mnemos SQLiteStore -- the storage substrate."""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import TEST_DIM, unit
from mnemos.errors import DimensionMismatchError, ValidationError
from mnemos.sqlite_store import SQLiteStore
from mnemos.types import Active, InvalidatedBy, SystemInvalidated


class TestMemoryBasics:
    """Core CRUD operations."""

    def test_save_and_get(self, store):
        mid, created = store.save_memory("Sessions live in Redis", type="decision", tags=["infra"], source="a.py")
        assert created is True
        assert mid.startswith("mem-")
        mem = store.get_memory(mid)
        assert mem.content == "Sessions live in Redis"
        assert mem.type == "decision"
        assert mem.tags == ["infra"]
        assert isinstance(mem.validity, Active)
        assert store.memory_count() == 1

    def test_dedup_on_active_content(self, store):
        a, _ = store.save_memory("Duplicate content")
        b, created = store.save_memory("Duplicate content")
        assert a == b
        assert created is False
        assert store.memory_count() == 1

    def test_dedup_ignores_invalidated(self, store):
        a, _ = store.save_memory("Same text")
        store.invalidate_memories([a])
        b, created = store.save_memory("Same text")
        assert created is True
        assert b != a

    def test_validation(self, store):
        with pytest.raises(ValidationError):
            store.save_memory("   ")
        with pytest.raises(ValidationError):
            store.save_memory("x", quality_score=1.5)
        with pytest.raises(ValidationError):
            store.save_memory("x", type="bogus")

    def test_embedding_dimension_checked(self, store):
        with pytest.raises(DimensionMismatchError):
            store.save_memory("bad vector", embedding=[0.1, 0.2])

    def test_embedding_round_trip(self, store):
        vec = unit(1, 2, 3)
        mid, _ = store.save_memory("has a vector", embedding=vec)
        assert store.get_memory(mid).embedding == pytest.approx(vec, rel=1e-6)

    def test_record_access(self, store):
        mid, _ = store.save_memory("accessed memory")
        store.record_access([mid, mid])
        mem = store.get_memory(mid)
        assert mem.access_count == 2
        assert mem.last_accessed is not None

    def test_lexical_index_follows_saves_and_deletes(self, store):
        mid, _ = store.save_memory("kubernetes deployment notes")
        assert [k for k, _ in store.lexical_search("memories", ["kubernetes"])] == [mid]
        store.delete_memories([mid])
        assert store.lexical_search("memories", ["kubernetes"]) == []
        assert store.lexical_stats("memories")[0] == 0


class TestInvalidation:
    def test_supersede_records_target(self, store):
        old, _ = store.save_memory("old fact")
        new, _ = store.save_memory("new fact")
        assert store.invalidate_memory(old, new) is True
        mem = store.get_memory(old)
        assert mem.validity == InvalidatedBy(new)
        assert mem.invalidated_at is not None

    def test_invalidated_only_once(self, store):
        old, _ = store.save_memory("old fact")
        a, _ = store.save_memory("newer fact A")
        b, _ = store.save_memory("newer fact B")
        assert store.invalidate_memory(old, a) is True
        assert store.invalidate_memory(old, b) is False
        assert store.get_memory(old).invalidated_by == a

    def test_cannot_supersede_self(self, store):
        mid, _ = store.save_memory("self")
        with pytest.raises(ValidationError):
            store.invalidate_memory(mid, mid)

    def test_soft_delete_and_restore(self, store):
        mid, _ = store.save_memory("to clean up")
        assert store.invalidate_memories([mid]) == 1
        assert isinstance(store.get_memory(mid).validity, SystemInvalidated)
        assert store.list_memories() == []
        assert store.restore_memory(mid) is True
        assert store.get_memory(mid).is_active
        assert store.restore_memory(mid) is False

    def test_list_as_of_sees_later_invalidations(self, store):
        before = datetime.now(timezone.utc)
        old, _ = store.save_memory("old", created_at=before - timedelta(days=2))
        new, _ = store.save_memory("new")
        store.invalidate_memory(old, new)
        snapshot = store.list_memories(as_of=before)
        assert [m.id for m in snapshot] == [old]

    def test_hard_delete_cascades_links(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        store.create_link(a, b, "related")
        assert store.delete_memories([a, "mem-missing"]) == 1
        assert store.get_memory(a) is None
        assert store.link_count() == 0


class TestLinks:
    def test_create_link_is_idempotent_per_triple(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        first = store.create_link(a, b, "caused_by", 0.5)
        second = store.create_link(a, b, "caused_by", 0.9)
        assert first["created"] is True
        assert second == {"id": first["id"], "created": False}
        third = store.create_link(a, b, "references")
        assert third["created"] is True

    def test_create_link_validation(self, store):
        a, _ = store.save_memory("a")
        with pytest.raises(ValidationError):
            store.create_link(a, a)
        with pytest.raises(ValidationError):
            store.create_link(a, "mem-nope")
        b, _ = store.save_memory("b")
        with pytest.raises(ValidationError):
            store.create_link(a, b, "likes")

    def test_links_if_absent_checks_both_directions(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        c, _ = store.save_memory("c")
        store.create_link(b, a, "related")
        created, skipped = store.create_links_if_absent([(a, b, "similar_to", 0.9), (a, c, "similar_to", 0.8)])
        assert (created, skipped) == (1, 1)
        assert store.link_exists_between(c, a)

    def test_active_links_skip_invalidated_endpoints(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        store.create_link(a, b)
        assert len(store.active_links()) == 1
        store.invalidate_memories([b])
        assert store.active_links() == []
        assert len(store.get_links(a)) == 1

    def test_link_validity_window(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        past = datetime.now(timezone.utc) - timedelta(days=1)
        store.create_link(a, b, valid_until=past)
        assert store.active_links() == []
        assert len(store.active_links(at=past - timedelta(hours=1))) == 1

    def test_update_relation_marks_enriched(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        link = store.create_link(a, b, "similar_to")
        assert store.update_link_relation(link["id"], "leads_to") is True
        updated = store.get_links(a)[0]
        assert updated.relation == "leads_to"
        assert updated.llm_enriched is True


class TestDocuments:
    def _chunks(self, *texts):
        return [
            {"chunk_index": i, "content": t, "start_line": i + 1, "end_line": i + 1}
            for i, t in enumerate(texts)
        ]

    def test_replace_file_chunks_swaps_postings(self, store):
        store.replace_file_chunks("docs", "/a.md", self._chunks("alpha guide", "beta notes"), [None, None], "h1")
        assert store.document_count("docs") == 2
        assert store.get_file_hash("docs", "/a.md") == "h1"
        store.replace_file_chunks("docs", "/a.md", self._chunks("gamma only"), [None], "h2")
        assert store.document_count("docs") == 1
        assert store.lexical_search("docs", ["alpha"]) == []
        assert len(store.lexical_search("docs", ["gamma"])) == 1

    def test_delete_file(self, store):
        store.replace_file_chunks("code", "/x.py", self._chunks("def foo"), [None], "h")
        assert store.delete_file("code", "/x.py") == 1
        assert store.indexed_files("code") == []
        assert store.lexical_stats("code")[0] == 0

    def test_memories_corpus_rejected(self, store):
        with pytest.raises(ValidationError):
            store.replace_file_chunks("memories", "/a.md", self._chunks("x"), [None], "h")

    def test_rebuild_lexical(self, store):
        store.replace_file_chunks("docs", "/a.md", self._chunks("alpha guide"), [None], "h1")
        before = store.lexical_search("docs", ["alpha"])
        assert store.rebuild_lexical("docs") == 1
        assert store.lexical_search("docs", ["alpha"]) == before


class TestVectorsAndDimensions:
    def test_vector_candidates_ranked(self, store):
        a, _ = store.save_memory("a", embedding=unit(1, 0))
        b, _ = store.save_memory("b", embedding=unit(1, 1))
        store.save_memory("c", embedding=unit(0, 1))
        ranked = store.vector_candidates("memories", unit(1, 0), limit=2)
        assert [k for k, _ in ranked] == [a, b]
        assert ranked[0][1] == pytest.approx(1.0, abs=1e-5)

    def test_vector_candidates_dimension_checked(self, store):
        with pytest.raises(DimensionMismatchError):
            store.vector_candidates("memories", [1.0, 0.0], limit=5)

    def test_dimension_recorded_and_mismatch_flagged(self, tmp_mnemos_dir):
        path = tmp_mnemos_dir / "dims.db"
        s = SQLiteStore(db_path=path, embedding_dim=TEST_DIM)
        assert s.get_meta("embedding_dim") == str(TEST_DIM)
        s.close()
        reopened = SQLiteStore(db_path=path, embedding_dim=16)
        assert reopened.embedding_dim == TEST_DIM
        assert reopened.needs_reindex is True
        reopened.reset_embedding_dim(16)
        reopened.configured_dim = 16
        assert reopened.needs_reindex is False
        assert reopened.get_meta("embedding_dim") == "16"
        reopened.close()

    def test_reset_drops_vectors(self, store):
        mid, _ = store.save_memory("vec", embedding=unit(1))
        store.reset_embedding_dim(4)
        assert store.get_memory(mid).embedding is None
        store.set_embedding(mid, [1.0, 0.0, 0.0, 0.0])
        assert store.vector_candidates("memories", [1.0, 0.0, 0.0, 0.0], 1)[0][0] == mid


class TestCentralityAndStats:
    def test_replace_centrality(self, store):
        store.replace_centrality({"mem-a": (2, 1.0), "mem-b": (1, 0.5)})
        assert store.get_centrality(["mem-b"]) == {"mem-b": 0.5}
        store.replace_centrality({"mem-c": (0, 0.0)})
        assert store.get_centrality() == {"mem-c": 0.0}

    def test_stats(self, store):
        a, _ = store.save_memory("a", type="decision")
        b, _ = store.save_memory("b")
        store.invalidate_memory(a, b)
        stats = store.stats()
        assert stats["memories"] == 2
        assert stats["active"] == 1
        assert stats["superseded"] == 1
        assert stats["embedding_dim"] == TEST_DIM
