"""
mnemos Knowledge Graph -- typed links between memories and derived annotations.

Batch operations over the whole corpus:
- auto_link_similar_memories(): similar_to links by embedding similarity
- create_proximity_links(): related links from shared source contexts
- detect_communities(): label propagation, written back as community:<id> tags
- update_centrality_cache(): degree or eigenvector centrality, cached wholesale

Each batch reads a snapshot, computes its complete result, then writes it in
a single transaction, so concurrent saves and searches never observe a
half-applied run. Invalidated memories are never part of the graph.

Usage:
    created = auto_link_similar_memories(store, threshold=0.75, max_links=3)
    report = run_graph_maintenance(store, config.graph)
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from mnemos.config import GraphConfig
from mnemos.errors import ClassificationParseError, CollaboratorError, ValidationError
from mnemos.llm import extract_json_object
from mnemos.types import LinkRelation, RunState
from mnemos.vectors import cosine_similarity, similarity_matrix

logger = logging.getLogger("mnemos.knowledge_graph")

# Tag prefixes whose value is treated as an extra context for proximity linking.
CONTEXT_TAG_PREFIXES = ("session:", "file:")


# ---------------------------------------------------------------------------
# Maintenance run records
# ---------------------------------------------------------------------------


@dataclass
class MaintenanceRun:
    """One graph operation: idle -> running -> completed | failed."""

    name: str
    state: RunState = RunState.IDLE
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self) -> None:
        if self.state != RunState.IDLE:
            raise ValidationError(f"run {self.name!r} already {self.state.value}")
        self.state = RunState.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def complete(self, result: Dict[str, Any]) -> None:
        self.state = RunState.COMPLETED
        self.result = result
        self.finished_at = datetime.now(timezone.utc)

    def fail(self, error: str) -> None:
        self.state = RunState.FAILED
        self.error = error
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def execute_run(name: str, operation: Callable[[], Any]) -> MaintenanceRun:
    """Run one graph operation, recording success or failure instead of raising."""
    run = MaintenanceRun(name)
    run.start()
    try:
        result = operation()
    except Exception as e:
        logger.warning("Graph maintenance step %s failed: %s", name, e)
        run.fail(f"{type(e).__name__}: {e}")
        return run
    run.complete(result if isinstance(result, dict) else {"created": result})
    return run


# ---------------------------------------------------------------------------
# Adjacency
# ---------------------------------------------------------------------------


def build_adjacency(links: Iterable[Any], nodes: Optional[Set[str]] = None) -> Dict[str, Dict[str, float]]:
    """Undirected weighted adjacency; parallel links between a pair add up."""
    adjacency: Dict[str, Dict[str, float]] = defaultdict(dict)
    for link in links:
        a, b = link.source_id, link.target_id
        if a == b:
            continue
        if nodes is not None and (a not in nodes or b not in nodes):
            continue
        weight = link.weight if link.weight is not None else 1.0
        adjacency[a][b] = adjacency[a].get(b, 0.0) + weight
        adjacency[b][a] = adjacency[b].get(a, 0.0) + weight
    return adjacency


def _graph_snapshot(store) -> Tuple[List[str], Dict[str, Dict[str, float]], Dict[str, Any]]:
    memories = {m.id: m for m in store.list_memories()}
    nodes = sorted(memories)
    adjacency = build_adjacency(store.active_links(), set(nodes))
    return nodes, adjacency, memories


# ---------------------------------------------------------------------------
# Auto-link
# ---------------------------------------------------------------------------


def _similar_pairs(
    ids: Sequence[str], vectors: "np.ndarray", threshold: float, max_links: int
) -> Dict[Tuple[str, str], float]:
    sims = similarity_matrix(vectors)
    pairs: Dict[Tuple[str, str], float] = {}
    for i, source in enumerate(ids):
        row = sims[i].copy()
        row[i] = -1.0
        order = np.argsort(-row, kind="stable")
        taken = 0
        for j in order:
            if taken >= max_links or row[j] < threshold:
                break
            key = (source, ids[j]) if source < ids[j] else (ids[j], source)
            pairs.setdefault(key, float(row[j]))
            taken += 1
    return pairs


def _active_vectors(store, exclude: Sequence[str] = ()) -> Tuple[List[str], Optional["np.ndarray"]]:
    rows = [(mid, vec) for mid, vec in store.active_embeddings(exclude) if len(vec) == store.embedding_dim]
    if not rows:
        return [], None
    return [mid for mid, _ in rows], np.asarray([vec for _, vec in rows], dtype=np.float32)


def auto_link_similar_memories(store, threshold: float = 0.75, max_links: int = 3) -> int:
    """Link each memory to up to ``max_links`` neighbours with cosine >= threshold.

    A pair that already has any link (either direction, any relation) is left
    alone, so a second run on an unchanged corpus creates nothing.
    """
    if not 0.0 <= threshold <= 1.0:
        raise ValidationError(f"threshold must be within [0, 1], got {threshold}")
    ids, vectors = _active_vectors(store)
    if vectors is None or len(ids) < 2:
        return 0
    pairs = _similar_pairs(ids, vectors, threshold, max_links)
    created, skipped = store.create_links_if_absent(
        [(a, b, LinkRelation.SIMILAR_TO.value, sim) for (a, b), sim in sorted(pairs.items())]
    )
    logger.info("Auto-link: %d created, %d existing pairs skipped", created, skipped)
    return created


def auto_link_memory(
    store, memory_id: str, embedding: Sequence[float], threshold: float = 0.75, max_links: int = 3
) -> int:
    """Auto-link a single (newly saved) memory against the active corpus."""
    scored = []
    for other_id, vec in store.active_embeddings(exclude=[memory_id]):
        sim = cosine_similarity(embedding, vec)
        if sim is not None and sim >= threshold:
            scored.append((sim, other_id))
    scored.sort(key=lambda t: (-t[0], t[1]))
    if not scored:
        return 0
    created, _ = store.create_links_if_absent(
        [(memory_id, other_id, LinkRelation.SIMILAR_TO.value, sim) for sim, other_id in scored[:max_links]]
    )
    return created


# ---------------------------------------------------------------------------
# Contextual proximity
# ---------------------------------------------------------------------------


def normalize_source(source: Optional[str]) -> str:
    """Comparable context key: a file path collapses to its directory, other
    sources compare case-insensitively."""
    if not source:
        return ""
    trimmed = source.strip()
    if "/" in trimmed or "\\" in trimmed:
        normalized = trimmed.replace("\\", "/")
        parts = normalized.split("/")
        if len(parts) > 1 and "." in parts[-1]:
            return "/".join(parts[:-1])
        return normalized
    return trimmed.lower()


def memory_contexts(memory) -> Set[str]:
    """Every context a memory occurred in: its source plus session:/file: tags."""
    contexts = set()
    key = normalize_source(memory.source)
    if key:
        contexts.add(key)
    for tag in memory.tags:
        for prefix in CONTEXT_TAG_PREFIXES:
            if tag.startswith(prefix):
                value = normalize_source(tag[len(prefix):])
                if value:
                    contexts.add(value)
    return contexts


def cooccurrence_pairs(memories: Iterable[Any]) -> Dict[Tuple[str, str], int]:
    """Count shared contexts for every unordered pair (a < b) of memories."""
    groups: Dict[str, List[str]] = defaultdict(list)
    for mem in memories:
        for context in memory_contexts(mem):
            groups[context].append(mem.id)
    counts: Dict[Tuple[str, str], int] = defaultdict(int)
    for ids in groups.values():
        ordered = sorted(set(ids))
        for i in range(len(ordered)):
            for j in range(i + 1, len(ordered)):
                counts[(ordered[i], ordered[j])] += 1
    return dict(counts)


def create_proximity_links(store, min_cooccurrence: int = 2, dry_run: bool = False) -> Dict[str, int]:
    """Link memories that share at least ``min_cooccurrence`` contexts.

    Weight is count / max count. Existing links between a pair win.
    """
    pairs = cooccurrence_pairs(store.list_memories())
    eligible = {pair: count for pair, count in pairs.items() if count >= min_cooccurrence}
    if dry_run:
        return {"created": 0, "skipped": 0, "total_pairs": len(eligible)}
    max_count = max(eligible.values(), default=1)
    created, skipped = store.create_links_if_absent(
        [(a, b, LinkRelation.RELATED.value, count / max_count) for (a, b), count in sorted(eligible.items())]
    )
    logger.info("Proximity: %d pairs, %d created, %d skipped", len(eligible), created, skipped)
    return {"created": created, "skipped": skipped, "total_pairs": len(eligible)}


# ---------------------------------------------------------------------------
# Community detection
# ---------------------------------------------------------------------------


def label_propagation(
    nodes: Sequence[str], adjacency: Dict[str, Dict[str, float]], max_iterations: int = 100
) -> Tuple[Dict[str, int], int]:
    """Asynchronous label propagation in the given node order.

    Each node adopts the neighbour label with the largest summed edge weight,
    lowest label on ties. Isolated nodes keep their initial label. Returns
    (labels, iterations).
    """
    labels = {node: i for i, node in enumerate(nodes)}
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        changed = False
        for node in nodes:
            neighbours = adjacency.get(node)
            if not neighbours:
                continue
            totals: Dict[int, float] = defaultdict(float)
            for other, weight in neighbours.items():
                totals[labels[other]] += weight
            best = max(totals.values())
            winner = min(label for label, total in totals.items() if total == best)
            if winner != labels[node]:
                labels[node] = winner
                changed = True
        if not changed:
            break
    return labels, iterations


def group_communities(
    nodes: Sequence[str], labels: Dict[str, int], min_size: int = 2
) -> Tuple[List[List[str]], int]:
    """Dense 0-based communities by first appearance; small groups are dropped.

    Returns (communities as member lists, count of nodes left without one).
    """
    members: Dict[int, List[str]] = defaultdict(list)
    for node in nodes:
        members[labels[node]].append(node)
    communities: List[List[str]] = []
    seen: Set[int] = set()
    isolated = 0
    for node in nodes:
        label = labels[node]
        if label in seen:
            continue
        seen.add(label)
        if len(members[label]) >= min_size:
            communities.append(members[label])
        else:
            isolated += len(members[label])
    return communities, isolated


def detect_communities(
    store,
    max_iterations: int = 100,
    min_community_size: int = 2,
    tag_prefix: str = "community",
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Label-propagation communities written back as ``<prefix>:<id>`` tags.

    Every active memory loses its previous community tag; members of a
    community of at least ``min_community_size`` get the new one. Invalidated
    memories lose theirs too. Other tags are untouched. All tag changes go in
    one transaction.
    """
    nodes, adjacency, memories = _graph_snapshot(store)
    communities: List[List[str]] = []
    isolated = iterations = 0
    if nodes:
        labels, iterations = label_propagation(nodes, adjacency, max_iterations)
        communities, isolated = group_communities(nodes, labels, min_community_size)

    marker = f"{tag_prefix}:"
    assigned = {mid: idx for idx, group in enumerate(communities) for mid in group}
    updates: Dict[str, List[str]] = {}
    for mid in nodes:
        old = set(memories[mid].tags)
        new = {t for t in old if not t.startswith(marker)}
        if mid in assigned:
            new.add(f"{marker}{assigned[mid]}")
        if new != old:
            updates[mid] = sorted(new)
    for mem in store.list_memories(include_invalidated=True):
        if mem.id not in memories and any(t.startswith(marker) for t in mem.tags):
            updates[mem.id] = sorted(t for t in mem.tags if not t.startswith(marker))
    if not dry_run:
        store.set_tags(updates)

    logger.info("Communities: %d found, %d isolated, %d iterations", len(communities), isolated, iterations)
    return {
        "communities": [{"id": idx, "size": len(group), "members": group} for idx, group in enumerate(communities)],
        "isolated": isolated,
        "iterations": iterations,
        "tags_updated": 0 if dry_run else len(updates),
    }


# ---------------------------------------------------------------------------
# Centrality
# ---------------------------------------------------------------------------


def compute_centrality(
    nodes: Sequence[str],
    adjacency: Dict[str, Dict[str, float]],
    method: str = "eigenvector",
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> Dict[str, Tuple[int, float]]:
    """Return {node: (degree, score)} with scores scaled so the maximum is 1."""
    if method not in ("degree", "eigenvector"):
        raise ValidationError(f"centrality method must be 'degree' or 'eigenvector', got {method!r}")
    if not nodes:
        return {}
    index = {node: i for i, node in enumerate(nodes)}
    matrix = np.zeros((len(nodes), len(nodes)), dtype=np.float64)
    for a, neighbours in adjacency.items():
        for b, weight in neighbours.items():
            matrix[index[a], index[b]] = weight

    degree = [len(adjacency.get(node, {})) for node in nodes]
    if method == "degree":
        scores = matrix.sum(axis=1)
    else:
        propagate = matrix + np.eye(len(nodes))
        scores = np.ones(len(nodes))
        for _ in range(max_iterations):
            nxt = propagate @ scores
            nxt /= max(float(nxt.max()), 1e-12)
            if float(np.abs(nxt - scores).max()) < tolerance:
                scores = nxt
                break
            scores = nxt
    top = float(scores.max()) if len(scores) else 0.0
    if top > 0:
        scores = scores / top
    return {node: (degree[i], round(float(scores[i]), 6)) for i, node in enumerate(nodes)}


def update_centrality_cache(store, method: str = "eigenvector") -> Dict[str, Any]:
    """Recompute centrality for every active memory and replace the cache."""
    nodes, adjacency, _ = _graph_snapshot(store)
    scores = compute_centrality(nodes, adjacency, method)
    updated = store.replace_centrality(scores)
    logger.info("Centrality (%s): %d scores cached", method, updated)
    return {"updated": updated, "method": method}


# ---------------------------------------------------------------------------
# Link enrichment / pruning / traversal
# ---------------------------------------------------------------------------

RELATION_PROMPT = """Given two memories from a knowledge base, determine their relationship.

Choose ONE relation from: caused_by, leads_to, contradicts, implements, supersedes, references, related, similar_to

- caused_by: A was caused by or resulted from B
- leads_to: A leads to or enables B
- contradicts: A and B conflict or disagree
- implements: A is an implementation of B (a decision)
- supersedes: A replaces or updates B
- references: A mentions or cites B
- related: connected but none of the above fit
- similar_to: nearly identical content

Memory A (type: {type_a}): {content_a}

Memory B (type: {type_b}): {content_b}

Reply with ONLY valid JSON: {{"relation": "...", "confidence": 0.0-1.0}}"""


def parse_relation(text: str) -> Tuple[LinkRelation, float]:
    data = extract_json_object(text)
    try:
        relation = LinkRelation(str(data.get("relation", "")).strip().lower())
    except ValueError:
        raise ClassificationParseError(f"unknown relation {data.get('relation')!r}") from None
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        raise ClassificationParseError(f"bad confidence {data.get('confidence')!r}") from None
    return relation, max(0.0, min(1.0, confidence))


def enrich_links(
    store,
    client,
    limit: Optional[int] = None,
    temperature: float = 0.1,
    max_output_tokens: int = 200,
    timeout: float = 15.0,
) -> Dict[str, Any]:
    """Ask the judgment LLM to type un-enriched ``similar_to`` links.

    Failures are recorded per link; the batch always runs to the end.
    """
    links = [
        link for link in store.active_links()
        if link.relation == LinkRelation.SIMILAR_TO.value and not link.llm_enriched
    ]
    if limit:
        links = links[:limit]
    result: Dict[str, Any] = {"processed": len(links), "enriched": 0, "failed": 0, "errors": []}
    if not links:
        return result
    memories = store.get_memories({mid for link in links for mid in (link.source_id, link.target_id)})

    for link in links:
        a, b = memories.get(link.source_id), memories.get(link.target_id)
        if a is None or b is None:
            result["failed"] += 1
            result["errors"].append({"link_id": link.id, "error": "endpoint memory missing"})
            continue
        prompt = RELATION_PROMPT.format(
            type_a=a.type, content_a=a.content[:500], type_b=b.type, content_b=b.content[:500]
        )
        try:
            relation, _confidence = parse_relation(
                client.classify(prompt, temperature=temperature, max_output_tokens=max_output_tokens, timeout=timeout)
            )
        except (CollaboratorError, ClassificationParseError) as e:
            logger.warning("Link %s enrichment failed: %s", link.id, e)
            result["failed"] += 1
            result["errors"].append({"link_id": link.id, "error": str(e)})
            continue
        store.update_link_relation(link.id, relation.value)
        result["enriched"] += 1
    return result


def prune_weak_links(store, threshold: float = 0.75, dry_run: bool = False) -> Dict[str, Any]:
    """Remove un-enriched similar_to links weighted below ``threshold``."""
    weak = [
        link.id for link in store.get_links(relation=LinkRelation.SIMILAR_TO.value)
        if link.weight < threshold and not link.llm_enriched
    ]
    pruned = len(weak) if dry_run else store.delete_links(weak)
    return {"pruned": pruned, "dry_run": dry_run, "threshold": threshold}


def find_connected(store, memory_id: str, max_depth: int = 2) -> List[Dict[str, Any]]:
    """Breadth-first walk over links in both directions, skipping invalidated memories."""
    start = store.get_memory(memory_id)
    if start is None or not start.is_active:
        return []
    neighbours: Dict[str, List[Tuple[str, str, float]]] = defaultdict(list)
    for link in store.active_links():
        neighbours[link.source_id].append((link.target_id, link.relation, link.weight))
        neighbours[link.target_id].append((link.source_id, link.relation, link.weight))

    visited = {memory_id}
    found: List[Dict[str, Any]] = []
    queue = deque([(memory_id, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for other, relation, weight in sorted(neighbours.get(current, [])):
            if other in visited:
                continue
            visited.add(other)
            found.append({"id": other, "depth": depth + 1, "via": current, "relation": relation, "weight": weight})
            queue.append((other, depth + 1))
    if found:
        memories = store.get_memories([f["id"] for f in found])
        for entry in found:
            mem = memories.get(entry["id"])
            entry["content"] = mem.content if mem else ""
    return found


def graph_stats(store) -> Dict[str, Any]:
    nodes, adjacency, memories = _graph_snapshot(store)
    links = store.active_links()
    by_relation: Dict[str, int] = defaultdict(int)
    for link in links:
        by_relation[link.relation] += 1
    community_tags = {t for m in memories.values() for t in m.tags if t.startswith("community:")}
    connected = sum(1 for node in nodes if adjacency.get(node))
    return {
        "memories": len(nodes),
        "links": len(links),
        "by_relation": dict(by_relation),
        "isolated": len(nodes) - connected,
        "avg_degree": round(sum(len(adjacency.get(n, {})) for n in nodes) / len(nodes), 3) if nodes else 0.0,
        "communities": len(community_tags),
    }


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def run_graph_maintenance(store, config: Optional[GraphConfig] = None) -> Dict[str, Any]:
    """Run auto-link, proximity, communities and centrality independently.

    A failing step is reported and does not stop the others.
    """
    cfg = config or GraphConfig()
    runs = [
        execute_run(
            "auto_link",
            lambda: {"created": auto_link_similar_memories(store, cfg.auto_link_threshold, cfg.auto_link_max_links)},
        ),
        execute_run("proximity", lambda: create_proximity_links(store, cfg.min_cooccurrence)),
        execute_run(
            "communities",
            lambda: detect_communities(
                store, cfg.max_iterations, cfg.min_community_size, cfg.community_tag_prefix
            ),
        ),
        execute_run("centrality", lambda: update_centrality_cache(store, cfg.centrality_method)),
    ]
    return {
        "runs": [run.to_dict() for run in runs],
        "completed": sum(1 for run in runs if run.state == RunState.COMPLETED),
        "failed": sum(1 for run in runs if run.state == RunState.FAILED),
    }
