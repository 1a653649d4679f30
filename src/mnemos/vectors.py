"""
mnemos Vectors -- cosine scoring, MMR ordering, MRL truncation and float32 blobs.

cosine_similarity() returns None (never raises) when the two vectors have
different lengths: that is the signal that stored embeddings were produced by
another model and the corpus needs a reindex.
"""

import struct
from typing import List, Optional, Sequence, Tuple

import numpy as np

__all__ = [
    "cosine_similarity",
    "clamp_unit",
    "similarity_matrix",
    "mmr_order",
    "mrl_truncate",
    "serialize_f32",
    "deserialize_f32",
]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine similarity in [-1, 1], or None on dimension mismatch."""
    if len(a) != len(b):
        return None
    if len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def clamp_unit(value: Optional[float]) -> float:
    """Clamp a similarity into [0, 1]; the mismatch sentinel maps to 0."""
    if value is None:
        return 0.0
    return max(0.0, min(1.0, value))


def similarity_matrix(vectors: "np.ndarray") -> "np.ndarray":
    """Pairwise cosine similarities for an (n, dim) matrix."""
    if len(vectors) == 0:
        return np.zeros((0, 0), dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    unit = vectors / np.clip(norms, a_min=1e-9, a_max=None)
    return np.clip(unit @ unit.T, -1.0, 1.0)


def mmr_order(
    relevance: Sequence[float],
    vectors: Sequence[Optional[Sequence[float]]],
    lam: float,
    limit: Optional[int] = None,
) -> List[Tuple[int, Optional[float]]]:
    """Maximal Marginal Relevance order as ``(index, mmr_score)`` pairs.

    Greedy: each pick maximizes ``lam * relevance - (1 - lam) * max_sim``,
    where ``max_sim`` is the largest cosine to anything already picked (0
    before the first pick). Items whose vector is missing or of another
    length than the first usable one follow the ranked items in input order,
    with a score of None.
    """
    n = len(relevance)
    limit = n if limit is None else min(limit, n)
    width = next((len(v) for v in vectors if v is not None and len(v) > 0), 0)
    ranked = [i for i, v in enumerate(vectors) if v is not None and width and len(v) == width]
    taken = set(ranked)
    rest = [i for i in range(n) if i not in taken]
    if not ranked:
        return [(i, None) for i in range(limit)]

    sims = similarity_matrix(np.asarray([vectors[i] for i in ranked], dtype=np.float32))
    rel = np.asarray([relevance[i] for i in ranked], dtype=np.float64)
    max_sim = np.zeros(len(ranked), dtype=np.float64)
    remaining = list(range(len(ranked)))
    order: List[Tuple[int, Optional[float]]] = []
    while remaining and len(order) < limit:
        scores = lam * rel[remaining] - (1.0 - lam) * max_sim[remaining]
        best = int(np.argmax(scores))
        picked = remaining.pop(best)
        order.append((ranked[picked], float(scores[best])))
        max_sim = np.maximum(max_sim, sims[picked])
    order.extend((i, None) for i in rest)
    return order[:limit]


def mrl_truncate(vector: Sequence[float], dimension: int) -> List[float]:
    """Matryoshka truncation: keep the first ``dimension`` values and renormalize."""
    if dimension <= 0 or dimension >= len(vector):
        return list(vector)
    head = np.asarray(vector[:dimension], dtype=np.float32)
    norm = float(np.linalg.norm(head))
    if norm == 0.0:
        return head.tolist()
    return (head / norm).tolist()


def serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes (sqlite-vec compatible)."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(data: bytes) -> List[float]:
    """Deserialize a float32 blob; the dimension is implied by its length."""
    return list(struct.unpack(f"{len(data) // 4}f", data))
