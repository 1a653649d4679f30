"""Tests for the mnemos knowledge graph: auto-link, proximity, communities, centrality."""
import pytest

from conftest import FakeJudge, unit
from mnemos.config import GraphConfig
from mnemos.errors import ClassificationParseError, LLMTimeoutError, ValidationError
from mnemos.knowledge_graph import (
    auto_link_memory,
    auto_link_similar_memories,
    build_adjacency,
    compute_centrality,
    cooccurrence_pairs,
    create_proximity_links,
    detect_communities,
    enrich_links,
    execute_run,
    find_connected,
    graph_stats,
    label_propagation,
    memory_contexts,
    normalize_source,
    parse_relation,
    prune_weak_links,
    run_graph_maintenance,
    update_centrality_cache,
)
from mnemos.types import LinkRelation, RunState


def _triangles(store):
    ids = [store.save_memory(f"node {i}")[0] for i in range(6)]
    for a, b in [(0, 1), (1, 2), (0, 2), (3, 4), (4, 5), (3, 5)]:
        store.create_link(ids[a], ids[b], "related")
    return ids


class TestAutoLink:
    def test_links_close_pairs_once(self, store):
        a, _ = store.save_memory("a", embedding=unit(1, 0))
        b, _ = store.save_memory("b", embedding=unit(1, 0.1))
        store.save_memory("c", embedding=unit(0, 1))
        assert auto_link_similar_memories(store, threshold=0.75) == 1
        links = store.get_links()
        assert len(links) == 1
        assert {links[0].source_id, links[0].target_id} == {a, b}
        assert links[0].relation == LinkRelation.SIMILAR_TO.value
        assert links[0].weight == pytest.approx(0.995, abs=0.01)

    def test_idempotent(self, store):
        for i in range(4):
            store.save_memory(f"m{i}", embedding=unit(1, 0.05 * i))
        first = auto_link_similar_memories(store, threshold=0.75, max_links=3)
        assert first > 0
        assert auto_link_similar_memories(store, threshold=0.75, max_links=3) == 0
        assert store.link_count() == first

    def test_existing_link_in_either_direction_wins(self, store):
        a, _ = store.save_memory("a", embedding=unit(1, 0))
        b, _ = store.save_memory("b", embedding=unit(1, 0))
        store.create_link(b, a, "caused_by")
        assert auto_link_similar_memories(store) == 0
        assert [l.relation for l in store.get_links()] == ["caused_by"]

    def test_max_links_per_memory(self, store):
        for i in range(5):
            store.save_memory(f"n{i}", embedding=unit(1, 0.01 * i))
        auto_link_similar_memories(store, threshold=0.5, max_links=1)
        assert store.link_count() <= 5

    def test_invalidated_memories_excluded(self, store):
        a, _ = store.save_memory("a", embedding=unit(1, 0))
        b, _ = store.save_memory("b", embedding=unit(1, 0))
        store.invalidate_memories([b])
        assert auto_link_similar_memories(store) == 0

    def test_bad_threshold(self, store):
        with pytest.raises(ValidationError):
            auto_link_similar_memories(store, threshold=2.0)

    def test_single_memory(self, store):
        a, _ = store.save_memory("a", embedding=unit(1, 0))
        b, _ = store.save_memory("b", embedding=unit(0.9, 0.1))
        store.save_memory("c", embedding=unit(0, 1))
        assert auto_link_memory(store, a, unit(1, 0), threshold=0.75) == 1
        assert store.link_exists_between(a, b)


class TestProximity:
    def test_normalize_source(self):
        assert normalize_source("/proj/src/app.py") == "/proj/src"
        assert normalize_source("C:\\proj\\src\\app.py") == "C:/proj/src"
        assert normalize_source("/proj/src") == "/proj/src"
        assert normalize_source("  Slack ") == "slack"
        assert normalize_source(None) == ""

    def test_contexts_include_tags(self, store):
        mid, _ = store.save_memory("x", source="/proj/api/a.py", tags=["session:S1", "file:/proj/web/b.ts", "misc"])
        assert memory_contexts(store.get_memory(mid)) == {"/proj/api", "s1", "/proj/web"}

    def test_four_memories_one_context(self, store):
        for i in range(4):
            store.save_memory(f"note {i}", source=f"/proj/src/f{i}.py")
        assert len(cooccurrence_pairs(store.list_memories())) == 6
        result = create_proximity_links(store, min_cooccurrence=1)
        assert result == {"created": 6, "skipped": 0, "total_pairs": 6}
        assert create_proximity_links(store, min_cooccurrence=1)["created"] == 0

    def test_min_cooccurrence_and_weight(self, store):
        a, _ = store.save_memory("a", source="/p/x.py", tags=["session:one"])
        b, _ = store.save_memory("b", source="/p/y.py", tags=["session:one"])
        store.save_memory("c", source="/p/z.py", tags=["session:two"])
        result = create_proximity_links(store, min_cooccurrence=2)
        assert result["total_pairs"] == 1
        link = store.get_links(a)[0]
        assert {link.source_id, link.target_id} == {a, b}
        assert link.relation == "related"
        assert link.weight == pytest.approx(1.0)

    def test_dry_run(self, store):
        for i in range(3):
            store.save_memory(f"n{i}", source="shared")
        assert create_proximity_links(store, min_cooccurrence=1, dry_run=True)["total_pairs"] == 3
        assert store.link_count() == 0


class TestCommunities:
    def test_two_triangles(self, store):
        ids = _triangles(store)
        result = detect_communities(store)
        assert len(result["communities"]) == 2
        assert sorted(c["size"] for c in result["communities"]) == [3, 3]
        tags = {mid: store.get_memory(mid).tags for mid in ids}
        first = {t for mid in ids[:3] for t in tags[mid]}
        second = {t for mid in ids[3:] for t in tags[mid]}
        assert len(first) == 1 and len(second) == 1
        assert first != second

    def test_rerun_replaces_community_tags_only(self, store):
        ids = _triangles(store)
        store.set_tags({ids[0]: ["keep-me", "community:99"]})
        detect_communities(store)
        tags = store.get_memory(ids[0]).tags
        assert "keep-me" in tags
        assert "community:99" not in tags
        assert sum(1 for t in tags if t.startswith("community:")) == 1

    def test_isolated_nodes(self, store):
        _triangles(store)
        store.save_memory("loner")
        result = detect_communities(store)
        assert result["isolated"] == 1

    def test_invalidated_members_lose_community_tag(self, store):
        ids = _triangles(store)
        detect_communities(store)
        store.set_tags({ids[0]: ["keep-me"] + store.get_memory(ids[0]).tags})
        store.invalidate_memories([ids[0]])
        result = detect_communities(store)
        assert result["tags_updated"] >= 1
        assert store.get_memory(ids[0]).tags == ["keep-me"]
        assert ids[0] not in {m for c in result["communities"] for m in c["members"]}

    def test_stale_tags_cleared_when_nothing_is_active(self, store):
        mid, _ = store.save_memory("gone")
        store.set_tags({mid: ["community:0"]})
        store.invalidate_memories([mid])
        result = detect_communities(store)
        assert result["communities"] == []
        assert store.get_memory(mid).tags == []

    def test_dry_run_writes_nothing(self, store):
        ids = _triangles(store)
        assert detect_communities(store, dry_run=True)["tags_updated"] == 0
        assert store.get_memory(ids[0]).tags == []

    def test_label_propagation_deterministic(self):
        class L:
            def __init__(self, s, t):
                self.source_id, self.target_id, self.weight = s, t, 1.0

        nodes = ["a", "b", "c", "d"]
        adj = build_adjacency([L("a", "b"), L("c", "d")])
        labels, _ = label_propagation(nodes, adj)
        assert labels["a"] == labels["b"]
        assert labels["c"] == labels["d"]
        assert labels["a"] != labels["c"]


class TestCentrality:
    def test_star(self, store):
        hub, _ = store.save_memory("hub")
        leaves = [store.save_memory(f"leaf {i}")[0] for i in range(3)]
        for leaf in leaves:
            store.create_link(hub, leaf)
        update_centrality_cache(store, "eigenvector")
        scores = store.get_centrality()
        assert scores[hub] == pytest.approx(1.0)
        assert all(scores[leaf] < 1.0 for leaf in leaves)

    def test_degree(self):
        class L:
            def __init__(self, s, t, w=1.0):
                self.source_id, self.target_id, self.weight = s, t, w

        adj = build_adjacency([L("a", "b"), L("a", "c", 2.0)])
        scores = compute_centrality(["a", "b", "c"], adj, "degree")
        assert scores["a"] == (2, 1.0)
        assert scores["c"][1] == pytest.approx(2 / 3, rel=1e-4)

    def test_unknown_method(self):
        with pytest.raises(ValidationError):
            compute_centrality(["a"], {}, "pagerank")


class TestEnrichAndPrune:
    def test_parse_relation(self):
        assert parse_relation('Sure! {"relation": "Leads_To", "confidence": 1.4}') == (LinkRelation.LEADS_TO, 1.0)
        with pytest.raises(ClassificationParseError):
            parse_relation('{"relation": "likes", "confidence": 0.5}')
        with pytest.raises(ClassificationParseError):
            parse_relation("no json here")

    def test_enrich_records_failures_per_link(self, store):
        ids = [store.save_memory(f"e{i}")[0] for i in range(4)]
        for a, b in [(0, 1), (1, 2), (2, 3)]:
            store.create_link(ids[a], ids[b], "similar_to", 0.9)
        judge = FakeJudge([
            '{"relation": "leads_to", "confidence": 0.8}',
            "garbage",
            LLMTimeoutError("slow"),
        ])
        result = enrich_links(store, judge)
        assert result["processed"] == 3
        assert result["enriched"] == 1
        assert result["failed"] == 2
        assert len(result["errors"]) == 2
        assert sorted(l.relation for l in store.get_links()) == ["leads_to", "similar_to", "similar_to"]
        assert "Memory A (type: observation)" in judge.prompts[0]

    def test_enriched_links_are_not_revisited(self, store):
        a, _ = store.save_memory("a")
        b, _ = store.save_memory("b")
        store.create_link(a, b, "similar_to", 0.9)
        enrich_links(store, FakeJudge(['{"relation": "similar_to", "confidence": 0.9}']))
        judge = FakeJudge()
        assert enrich_links(store, judge)["processed"] == 0
        assert judge.prompts == []

    def test_prune_weak_unenriched_similar_links(self, store):
        a, b, c = (store.save_memory(x)[0] for x in ("a", "b", "c"))
        store.create_link(a, b, "similar_to", 0.5)
        store.create_link(b, c, "similar_to", 0.9)
        store.create_link(a, c, "related", 0.1)
        assert prune_weak_links(store, 0.75, dry_run=True)["pruned"] == 1
        assert store.link_count() == 3
        assert prune_weak_links(store, 0.75)["pruned"] == 1
        assert store.link_count() == 2


class TestTraversalAndMaintenance:
    def test_find_connected(self, store):
        ids = [store.save_memory(f"chain {i}")[0] for i in range(4)]
        for a, b in zip(ids, ids[1:]):
            store.create_link(a, b, "leads_to")
        found = find_connected(store, ids[0], max_depth=2)
        assert [(f["id"], f["depth"]) for f in found] == [(ids[1], 1), (ids[2], 2)]
        assert found[0]["content"] == "chain 1"

    def test_find_connected_skips_invalidated(self, store):
        ids = [store.save_memory(f"chain {i}")[0] for i in range(3)]
        store.create_link(ids[0], ids[1])
        store.create_link(ids[1], ids[2])
        store.invalidate_memories([ids[1]])
        assert find_connected(store, ids[0]) == []
        assert find_connected(store, ids[1]) == []

    def test_execute_run_records_failure(self):
        def boom():
            raise RuntimeError("kaput")

        run = execute_run("boom", boom)
        assert run.state == RunState.FAILED
        assert run.error == "RuntimeError: kaput"
        ok = execute_run("count", lambda: 3)
        assert ok.state == RunState.COMPLETED
        assert ok.result == {"created": 3}

    def test_maintenance_failure_is_isolated(self, store):
        _triangles(store)
        report = run_graph_maintenance(store, GraphConfig.model_construct(centrality_method="bogus"))
        states = {r["name"]: r["state"] for r in report["runs"]}
        assert states["centrality"] == "failed"
        assert states["communities"] == "completed"
        assert report["completed"] == 3
        assert report["failed"] == 1

    def test_stats(self, store):
        _triangles(store)
        store.save_memory("loner")
        detect_communities(store)
        stats = graph_stats(store)
        assert stats["memories"] == 7
        assert stats["links"] == 6
        assert stats["by_relation"] == {"related": 6}
        assert stats["isolated"] == 1
        assert stats["communities"] == 2
