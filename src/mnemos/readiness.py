"""
mnemos Readiness Gate -- confidence assessment for a ranked result set.

Never blocks results; it only attaches a confidence and a recommendation so
the consumer can decide how much to trust what came back.

Factors (each in [0, 1]):
    coverage        min(count / expected, 1)
    top_similarity  fused score of the first result
    coherence       1 - clamp(stddev / mean); 0 results -> 0, 1 result -> 0.5
    quality_avg     mean quality_score, 0.5 when none is known
    freshness       mean max(floor, exp(-ln2 * age / half_life)) over last access,
                    0.5 when nothing was ever accessed
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from mnemos.types import Corpus, Recommendation

MEMORY_WEIGHTS = {
    "coverage": 0.20,
    "top_similarity": 0.30,
    "coherence": 0.15,
    "quality_avg": 0.20,
    "freshness": 0.15,
}

DOC_CODE_WEIGHTS = {
    "coverage": 0.30,
    "top_similarity": 0.40,
    "coherence": 0.30,
    "quality_avg": 0.0,
    "freshness": 0.0,
}

FACTOR_NAMES = tuple(MEMORY_WEIGHTS)


@dataclass
class ReadinessAssessment:
    confidence: float
    recommendation: Recommendation
    factors: Dict[str, float] = field(default_factory=dict)
    weak_factors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": round(self.confidence, 4),
            "recommendation": self.recommendation.value,
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
            "weak_factors": list(self.weak_factors),
        }


def _get(result: Any, name: str):
    if isinstance(result, dict):
        return result.get(name)
    return getattr(result, name, None)


def _similarity(result: Any) -> float:
    value = _get(result, "score")
    if value is None:
        value = _get(result, "similarity")
    return float(value or 0.0)


def _as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def coverage(count: int, expected: int) -> float:
    if expected <= 0:
        return 1.0 if count > 0 else 0.0
    return min(count / expected, 1.0)


def coherence(similarities: Sequence[float]) -> float:
    if len(similarities) <= 1:
        return 0.5 if similarities else 0.0
    mean = sum(similarities) / len(similarities)
    if mean == 0:
        return 0.0
    variance = sum((s - mean) ** 2 for s in similarities) / len(similarities)
    cv = math.sqrt(variance) / mean
    return max(0.0, min(1.0, 1.0 - cv))


def quality_avg(results: Sequence[Any]) -> float:
    known = [q for q in (_get(r, "quality_score") for r in results) if q is not None]
    if not known:
        return 0.5
    return sum(known) / len(known)


def freshness(
    results: Sequence[Any],
    half_life_days: float = 7.0,
    floor: float = 0.1,
    now: Optional[datetime] = None,
) -> float:
    stamps = [_as_datetime(_get(r, "last_accessed")) for r in results]
    stamps = [s for s in stamps if s is not None]
    if not stamps:
        return 0.5
    now = now or datetime.now(timezone.utc)
    rate = math.log(2) / (half_life_days * 86400.0)
    decays = [max(floor, math.exp(-rate * max(0.0, (now - s).total_seconds()))) for s in stamps]
    return sum(decays) / len(decays)


def recommend(confidence: float, proceed_threshold: float = 0.7, warn_threshold: float = 0.4) -> Recommendation:
    if confidence >= proceed_threshold:
        return Recommendation.PROCEED
    if confidence >= warn_threshold:
        return Recommendation.WARN
    return Recommendation.INSUFFICIENT


def assess_readiness(
    results: Sequence[Any],
    search_type: str = Corpus.MEMORIES.value,
    config=None,
    now: Optional[datetime] = None,
) -> ReadinessAssessment:
    """Score a ranked result list.

    ``results`` are SearchResult objects or dicts carrying ``score`` (or
    ``similarity``), ``quality_score`` and ``last_accessed``. ``config`` is a
    ReadinessConfig; defaults apply when omitted.
    """
    proceed_threshold = getattr(config, "proceed_threshold", 0.7)
    warn_threshold = getattr(config, "warn_threshold", 0.4)
    expected = getattr(config, "expected_results", 5)
    half_life = getattr(config, "freshness_half_life_days", 7.0)
    floor = getattr(config, "freshness_floor", 0.1)

    results = list(results)
    if not results:
        return ReadinessAssessment(
            confidence=0.0,
            recommendation=Recommendation.INSUFFICIENT,
            factors={name: 0.0 for name in FACTOR_NAMES},
            weak_factors=["coverage", "top_similarity", "coherence"],
        )

    sims = [_similarity(r) for r in results]
    factors = {
        "coverage": coverage(len(results), expected),
        "top_similarity": sims[0],
        "coherence": coherence(sims),
        "quality_avg": quality_avg(results),
        "freshness": freshness(results, half_life, floor, now),
    }
    weights = MEMORY_WEIGHTS if search_type == Corpus.MEMORIES.value else DOC_CODE_WEIGHTS
    confidence = sum(weights[name] * factors[name] for name in FACTOR_NAMES)
    weak = [name for name in FACTOR_NAMES if weights[name] > 0 and factors[name] < 0.5]

    return ReadinessAssessment(
        confidence=confidence,
        recommendation=recommend(confidence, proceed_threshold, warn_threshold),
        factors=factors,
        weak_factors=weak,
    )


def format_readiness_header(assessment: ReadinessAssessment) -> str:
    """One-line markdown notice for weak result sets; empty when proceeding."""
    if assessment.recommendation == Recommendation.PROCEED:
        return ""
    pct = round(assessment.confidence * 100)
    weak = ""
    if assessment.weak_factors:
        weak = " Weak: " + ", ".join(
            f"{name} ({round(assessment.factors.get(name, 0.0) * 100)}%)" for name in assessment.weak_factors
        )
    if assessment.recommendation == Recommendation.WARN:
        return f"> **Confidence: {pct}%** -- Limited context available.{weak}"
    return f"> **Low confidence: {pct}%** -- Results may be unreliable.{weak}"
