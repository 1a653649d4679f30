"""Tests for mnemos hybrid search (BM25 + vector fusion)."""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import unit
from mnemos.errors import DimensionMismatchError, ValidationError
from mnemos.hybrid import compile_filter_pattern, fuse, hybrid_search
from mnemos.vectors import serialize_f32


@pytest.fixture
def corpus(store):
    """Three memories with hand-picked vectors."""
    ids = {}
    ids["redis"], _ = store.save_memory("Sessions are stored in Redis with a TTL", embedding=unit(1, 0, 0))
    ids["postgres"], _ = store.save_memory("Orders are stored in Postgres tables", embedding=unit(0.6, 0.8, 0))
    ids["frontend"], _ = store.save_memory("The frontend uses React hooks", embedding=unit(0, 0, 1))
    return ids


class TestFusion:
    def test_fuse_is_convex(self):
        assert fuse(1.0, 0.0, 0.25) == pytest.approx(0.25 * 0.0 + 0.75 * 1.0)
        assert fuse(0.4, 0.8, 0.5) == pytest.approx(0.6)

    def test_scores_are_bounded(self, store, corpus):
        resp = hybrid_search(store, "memories", "stored sessions redis", unit(1, 0.2, 0), alpha=0.5)
        assert resp.results
        for r in resp.results:
            assert 0.0 <= r.lexical_score <= 1.0
            assert 0.0 <= r.vector_score <= 1.0
            assert 0.0 <= r.score <= 1.0
            assert r.score == pytest.approx(0.5 * r.vector_score + 0.5 * r.lexical_score)

    def test_best_lexical_hit_normalizes_to_one(self, store, corpus):
        resp = hybrid_search(store, "memories", "redis sessions", None)
        assert resp.results[0].id == corpus["redis"]
        assert resp.results[0].lexical_score == pytest.approx(1.0)

    def test_alpha_zero_is_pure_lexical(self, store, corpus):
        resp = hybrid_search(store, "memories", "stored", unit(0, 0, 1), alpha=0.0)
        for r in resp.results:
            assert r.score == pytest.approx(r.lexical_score)

    def test_alpha_one_is_pure_vector(self, store, corpus):
        resp = hybrid_search(store, "memories", "stored", unit(0, 0, 1), alpha=1.0)
        assert resp.results[0].id == corpus["frontend"]
        for r in resp.results:
            assert r.score == pytest.approx(r.vector_score)

    def test_no_vector_forces_lexical(self, store, corpus):
        resp = hybrid_search(store, "memories", "react hooks", None, alpha=0.9)
        assert resp.alpha == 0.0
        assert [r.id for r in resp.results] == [corpus["frontend"]]

    def test_no_tokens_forces_vector(self, store, corpus):
        resp = hybrid_search(store, "memories", "", unit(0.6, 0.8, 0), alpha=0.2)
        assert resp.alpha == 1.0
        assert resp.results[0].id == corpus["postgres"]
        assert resp.results[0].score == pytest.approx(1.0, abs=1e-5)

    def test_vector_score_is_absolute_not_relative(self, store, corpus):
        # The best vector match is only cos=0.6; it must not be stretched to 1.0.
        resp = hybrid_search(store, "memories", "", unit(0.6, -0.8, 0), alpha=1.0, threshold=0.0)
        top = resp.results[0]
        assert top.id == corpus["redis"]
        assert top.vector_score == pytest.approx(0.6, abs=1e-5)

    def test_negative_cosine_clamped(self, store, corpus):
        resp = hybrid_search(store, "memories", "react", unit(0, 0, -1), alpha=0.5)
        hit = next(r for r in resp.results if r.id == corpus["frontend"])
        assert hit.vector_score == 0.0

    def test_threshold_drops_weak_results(self, store, corpus):
        resp = hybrid_search(store, "memories", "", unit(1, 0, 0), alpha=1.0, threshold=0.7)
        assert [r.id for r in resp.results] == [corpus["redis"]]

    def test_top_k_truncates(self, store, corpus):
        resp = hybrid_search(store, "memories", "", unit(1, 1, 1), top_k=2, alpha=1.0)
        assert len(resp.results) == 2

    def test_tie_goes_to_newer(self, store):
        old = datetime.now(timezone.utc) - timedelta(days=3)
        older, _ = store.save_memory("first note", embedding=unit(1, 1), created_at=old)
        newer, _ = store.save_memory("second note", embedding=unit(1, 1))
        resp = hybrid_search(store, "memories", "", unit(1, 1), alpha=1.0)
        assert [r.id for r in resp.results] == [newer, older]

    def test_access_is_recorded(self, store, corpus):
        hybrid_search(store, "memories", "react hooks", None)
        assert store.get_memory(corpus["frontend"]).access_count == 1
        hybrid_search(store, "memories", "react hooks", None, record_access=False)
        assert store.get_memory(corpus["frontend"]).access_count == 1

    def test_centrality_boost(self, store, corpus):
        store.replace_centrality({corpus["postgres"]: (3, 1.0)})
        plain = hybrid_search(store, "memories", "stored", None, record_access=False)
        boosted = hybrid_search(store, "memories", "stored", None, centrality_weight=0.5, record_access=False)
        p = {r.id: r.score for r in plain.results}
        b = {r.id: r.score for r in boosted.results}
        assert b[corpus["postgres"]] == pytest.approx(min(1.0, p[corpus["postgres"]] + 0.5))
        assert b[corpus["redis"]] == pytest.approx(p[corpus["redis"]])


class TestValidityFiltering:
    def test_invalidated_hidden_by_default(self, store, corpus):
        store.invalidate_memory(corpus["redis"], corpus["postgres"])
        resp = hybrid_search(store, "memories", "redis sessions", unit(1, 0, 0))
        assert corpus["redis"] not in [r.id for r in resp.results]

    def test_as_of_sees_memory_before_invalidation(self, store, corpus):
        before = datetime.now(timezone.utc) + timedelta(seconds=1)
        store.invalidate_memory(corpus["redis"], corpus["postgres"])
        resp = hybrid_search(store, "memories", "redis sessions", None, as_of=before)
        assert corpus["redis"] not in [r.id for r in resp.results]
        resp = hybrid_search(
            store, "memories", "redis sessions", None, as_of=before, include_invalidated=True
        )
        assert corpus["redis"] in [r.id for r in resp.results]

    def test_as_of_in_the_past(self, store):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        mid, _ = store.save_memory("legacy cache settings", created_at=old)
        newer, _ = store.save_memory("updated cache settings")
        store.invalidate_memory(mid, newer)
        resp = hybrid_search(store, "memories", "cache settings", None, as_of=old + timedelta(days=1))
        assert [r.id for r in resp.results] == [mid]

    def test_include_invalidated_requires_as_of(self, store, corpus):
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "redis", None, include_invalidated=True)

    def test_valid_until_hides_expired_fact(self, store):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        store.save_memory("temporary freeze on deploys", valid_until=past)
        assert hybrid_search(store, "memories", "deploys freeze", None).results == []


class TestValidationAndStaleness:
    def test_empty_query_and_vector(self, store):
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "  ", None)

    def test_bad_parameters(self, store, corpus):
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "redis", None, alpha=1.5)
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "redis", None, threshold=-0.1)
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "redis", None, top_k=0)
        with pytest.raises(ValidationError):
            hybrid_search(store, "wiki", "redis", None)

    def test_query_vector_dimension_mismatch(self, store, corpus):
        with pytest.raises(DimensionMismatchError):
            hybrid_search(store, "memories", "redis", [1.0, 0.0])

    def test_stale_embedding_scores_zero_and_is_counted(self, store, corpus):
        store._conn.execute(
            "UPDATE memories SET embedding = ? WHERE node_id = ?",
            (serialize_f32([1.0, 0.0, 0.0, 0.0]), corpus["redis"]),
        )
        store._conn.commit()
        resp = hybrid_search(store, "memories", "redis sessions", unit(1, 0, 0), alpha=0.5)
        hit = next(r for r in resp.results if r.id == corpus["redis"])
        assert hit.vector_score == 0.0
        assert resp.stale_embeddings == 1

    def test_empty_corpus(self, store):
        resp = hybrid_search(store, "docs", "anything here", None)
        assert resp.results == []
        assert resp.candidates == 0


class TestCodeSearch:
    @pytest.fixture
    def code(self, store):
        chunks = [
            ("/src/users.py", "def getUserName(user):\n    return user.name"),
            ("/src/users.py", "def get_user(uid):\n    return db.lookup(uid)"),
            ("/src/orders.py", "def get_order(oid):\n    user name lookup here"),
        ]
        for i, (path, content) in enumerate(chunks):
            store.replace_file_chunks(
                "code", path + f"#{i}", [{"chunk_index": 0, "content": content, "start_line": 1, "end_line": 2}],
                [None], f"h{i}",
            )
        return chunks

    def test_identifier_query_prefers_exact_name(self, store, code):
        resp = hybrid_search(store, "code", "getUserName", None)
        assert "getUserName" in resp.results[0].content
        assert resp.results[0].metadata["file_path"].startswith("/src/users.py")

    def test_regex_filter(self, store, code):
        resp = hybrid_search(store, "code", "user", None, regex=r"db\.lookup")
        assert len(resp.results) == 1
        assert "db.lookup" in resp.results[0].content

    def test_symbol_filter(self, store, code):
        resp = hybrid_search(store, "code", "user", None, symbol="orders")
        assert resp.results
        assert all("orders" in r.metadata["file_path"] for r in resp.results)

    def test_dangerous_regex_rejected(self, store, code):
        with pytest.raises(ValidationError):
            hybrid_search(store, "code", "user", None, regex="(a+)+$")


def _chunk(store, corpus, path, content, vec):
    store.replace_file_chunks(
        corpus, path, [{"chunk_index": 0, "content": content, "start_line": 1, "end_line": 1}], [vec], path
    )


class TestVectorWindow:
    """Nearest-vector candidates stay inside the queried corpus and the visible set."""

    def test_sqlite_vec_loaded_when_installed(self, store):
        pytest.importorskip("sqlite_vec")
        assert store.vec_available

    def test_code_chunk_found_behind_nearer_docs(self, store):
        for i in range(20):
            _chunk(store, "docs", f"/docs/page{i}.md", f"page {i}", unit(1, 0.01 * i))
        _chunk(store, "code", "/src/near.py", "x = 1", unit(1, 0.51))
        resp = hybrid_search(store, "code", "", unit(1, 0), top_k=1, alpha=1.0)
        assert len(resp.results) == 1
        assert resp.results[0].metadata["file_path"] == "/src/near.py"
        assert resp.results[0].vector_score == pytest.approx(0.89, abs=0.01)

    def test_docs_never_see_code_vectors(self, store):
        _chunk(store, "code", "/src/exact.py", "y = 2", unit(1, 0))
        _chunk(store, "docs", "/docs/far.md", "far away", unit(0, 1))
        resp = hybrid_search(store, "docs", "", unit(1, 0), top_k=5, alpha=1.0)
        assert [r.metadata["file_path"] for r in resp.results] == ["/docs/far.md"]

    @pytest.fixture
    def crowded(self, store):
        """One active memory behind twenty nearer invalidated ones."""
        stale = [store.save_memory(f"old fact {i}", embedding=unit(1, 0.01 * i))[0] for i in range(20)]
        active, _ = store.save_memory("current fact", embedding=unit(1, 0.6))
        before = datetime.now(timezone.utc)
        assert store.invalidate_memories(stale) == 20
        return stale, active, before

    def test_active_memory_found_behind_invalidated(self, store, crowded):
        _, active, _ = crowded
        resp = hybrid_search(store, "memories", "", unit(1, 0), top_k=1, alpha=1.0)
        assert [r.id for r in resp.results] == [active]

    def test_as_of_still_reaches_invalidated_vectors(self, store, crowded):
        stale, _, before = crowded
        resp = hybrid_search(store, "memories", "", unit(1, 0), top_k=1, alpha=1.0, as_of=before)
        assert [r.id for r in resp.results] == [stale[0]]

    def test_restore_returns_memory_to_vector_search(self, store, crowded):
        stale, _, _ = crowded
        assert store.restore_memory(stale[0])
        resp = hybrid_search(store, "memories", "", unit(1, 0), top_k=1, alpha=1.0)
        assert [r.id for r in resp.results] == [stale[0]]

    def test_expired_memories_widen_the_window(self, store):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        for i in range(20):
            store.save_memory(f"expired fact {i}", embedding=unit(1, 0.01 * i), valid_until=past)
        live, _ = store.save_memory("live fact", embedding=unit(1, 0.6))
        resp = hybrid_search(store, "memories", "", unit(1, 0), top_k=1, alpha=1.0)
        assert [r.id for r in resp.results] == [live]

    def test_numpy_query_vector(self, store, corpus):
        np = pytest.importorskip("numpy")
        query = np.asarray(unit(1, 0, 0), dtype=np.float32)
        resp = hybrid_search(store, "memories", "redis", query)
        assert resp.results[0].id == corpus["redis"]
        resp = hybrid_search(store, "memories", "", query, alpha=0.3)
        assert resp.alpha == 1.0


class TestDiversity:
    @pytest.fixture
    def near_duplicates(self, store):
        ids = {}
        ids["a"], _ = store.save_memory("Redis holds the session cache", embedding=unit(1, 0))
        ids["b"], _ = store.save_memory("Session cache lives in Redis", embedding=unit(1, 0.05))
        ids["c"], _ = store.save_memory("Sessions expire after an hour", embedding=unit(0.8, 0.6))
        return ids

    def test_without_mmr_duplicates_lead(self, store, near_duplicates):
        resp = hybrid_search(store, "memories", "", unit(1, 0.1), top_k=3)
        assert [r.id for r in resp.results] == [near_duplicates[k] for k in ("b", "a", "c")]
        assert all(r.mmr_score is None for r in resp.results)

    def test_mmr_promotes_the_distinct_memory(self, store, near_duplicates):
        resp = hybrid_search(store, "memories", "", unit(1, 0.1), top_k=3, mmr_lambda=0.5)
        assert [r.id for r in resp.results] == [near_duplicates[k] for k in ("b", "c", "a")]
        top = resp.results[0]
        assert top.mmr_score == pytest.approx(0.5 * top.score)
        assert top.score == pytest.approx(top.vector_score)
        assert "mmr_score" in top.to_dict()

    def test_mmr_respects_top_k(self, store, near_duplicates):
        resp = hybrid_search(store, "memories", "", unit(1, 0.1), top_k=2, mmr_lambda=0.5)
        assert [r.id for r in resp.results] == [near_duplicates["b"], near_duplicates["c"]]

    def test_mmr_lambda_range(self, store, near_duplicates):
        with pytest.raises(ValidationError):
            hybrid_search(store, "memories", "redis", unit(1), mmr_lambda=1.5)

    def test_engine_uses_configured_lambda(self, engine):
        for content, vec in (("alpha one", unit(1, 0)), ("alpha two", unit(1, 0.05)), ("beta", unit(0.8, 0.6))):
            engine.save_memory(content, embedding=vec, check_supersession=False, auto_link=False)
        engine.config.search.mmr_lambda = 0.5
        payload = engine.search_memories("", query_vector=unit(1, 0.1), top_k=2, threshold=0.0)
        assert [r["content"] for r in payload["results"]] == ["alpha two", "beta"]


class TestFilterPattern:
    def test_compiles_case_insensitive(self):
        assert compile_filter_pattern("redis").search("REDIS cluster")

    @pytest.mark.parametrize("pattern", ["(a+)+", r"(\w*x)*", "(a{2,})+", "([a-z]+)*"])
    def test_nested_quantifiers_rejected(self, pattern):
        with pytest.raises(ValidationError):
            compile_filter_pattern(pattern)

    def test_length_limit(self):
        with pytest.raises(ValidationError):
            compile_filter_pattern("a" * 501)

    def test_invalid_syntax(self):
        with pytest.raises(ValidationError):
            compile_filter_pattern("(unclosed")

    def test_plain_groups_allowed(self):
        assert compile_filter_pattern(r"(foo|bar)+").search("foobar")
