"""
mnemos Retention -- decay-based keep / warn / delete classification.

    effective_score = quality * decay(age) + access_weight * min(log2(1 + accesses), max_access_boost)
    decay(age)      = exp(-decay_rate * age_days)   (1.0 when temporal decay is off)

Tiers: effective >= keep_threshold -> keep; < delete_threshold -> delete;
anything in between -> warn.

Cleanup has two modes. ``hard`` removes rows (irreversible); ``soft``
marks them SystemInvalidated so ``restore_memory`` can bring them back.
Memories that are already invalidated are never analysed or processed.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from mnemos.config import RetentionConfig
from mnemos.errors import ValidationError
from mnemos.types import RetentionTier

logger = logging.getLogger("mnemos.retention")

RETENTION_MODES = ("soft", "hard")


@dataclass
class RetentionScore:
    memory_id: str
    content: str
    quality_score: float
    access_count: int
    age_days: float
    decay: float
    access_boost: float
    effective_score: float
    tier: RetentionTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "content": self.content[:200],
            "quality_score": round(self.quality_score, 3),
            "access_count": self.access_count,
            "age_days": round(self.age_days, 1),
            "decay": round(self.decay, 3),
            "access_boost": round(self.access_boost, 3),
            "effective_score": round(self.effective_score, 3),
            "tier": self.tier.value,
        }


@dataclass
class RetentionAnalysis:
    keep: List[RetentionScore] = field(default_factory=list)
    warn: List[RetentionScore] = field(default_factory=list)
    delete: List[RetentionScore] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return {
            "keep": [s.to_dict() for s in self.keep[:limit]],
            "warn": [s.to_dict() for s in self.warn[:limit]],
            "delete": [s.to_dict() for s in self.delete[:limit]],
            "stats": self.stats,
        }


def temporal_decay(age_days: float, decay_rate: float, enabled: bool = True) -> float:
    if not enabled:
        return 1.0
    return math.exp(-decay_rate * max(0.0, age_days))


def access_boost(access_count: int) -> float:
    """Diminishing-returns access signal: 0 for never accessed, log2(1 + n) after."""
    return math.log2(1 + max(0, access_count))


def classify(effective_score: float, config: RetentionConfig) -> RetentionTier:
    if effective_score >= config.keep_threshold:
        return RetentionTier.KEEP
    if effective_score < config.delete_threshold:
        return RetentionTier.DELETE
    return RetentionTier.WARN


def calculate_effective_score(
    memory,
    config: Optional[RetentionConfig] = None,
    now: Optional[datetime] = None,
) -> RetentionScore:
    """Score one memory snapshot (anything with id/content/quality_score/access_count/created_at)."""
    cfg = config or RetentionConfig()
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - memory.created_at).total_seconds() / 86400.0)
    quality = memory.quality_score if memory.quality_score is not None else cfg.default_quality_score
    decay = temporal_decay(age_days, cfg.decay_rate, cfg.use_temporal_decay)
    boost = min(access_boost(memory.access_count), cfg.max_access_boost)
    effective = quality * decay + cfg.access_weight * boost
    return RetentionScore(
        memory_id=memory.id,
        content=memory.content,
        quality_score=quality,
        access_count=memory.access_count,
        age_days=age_days,
        decay=decay,
        access_boost=boost,
        effective_score=effective,
        tier=classify(effective, cfg),
    )


def retention_stats(scores: Sequence[RetentionScore]) -> Dict[str, Any]:
    total = len(scores)
    tiers = {tier: sum(1 for s in scores if s.tier == tier) for tier in RetentionTier}
    distribution = {
        "high": sum(1 for s in scores if s.effective_score >= 0.6),
        "medium": sum(1 for s in scores if 0.3 <= s.effective_score < 0.6),
        "low": sum(1 for s in scores if 0.15 <= s.effective_score < 0.3),
        "critical": sum(1 for s in scores if s.effective_score < 0.15),
    }

    def _avg(values, digits):
        return round(sum(values) / total, digits) if total else 0

    return {
        "total": total,
        "keep": tiers[RetentionTier.KEEP],
        "warn": tiers[RetentionTier.WARN],
        "delete": tiers[RetentionTier.DELETE],
        "avg_effective_score": _avg([s.effective_score for s in scores], 3),
        "avg_quality_score": _avg([s.quality_score for s in scores], 3),
        "avg_age_days": _avg([s.age_days for s in scores], 1),
        "avg_access_count": _avg([s.access_count for s in scores], 1),
        "distribution": distribution,
    }


def analyze_retention(
    memories: Sequence[Any],
    config: Optional[RetentionConfig] = None,
    now: Optional[datetime] = None,
) -> RetentionAnalysis:
    """Classify memories into keep / warn / delete.

    Invalidated memories in the input are skipped. Delete and warn lists
    are ordered weakest first, keep strongest first.
    """
    cfg = config or RetentionConfig()
    now = now or datetime.now(timezone.utc)
    scores = [
        calculate_effective_score(m, cfg, now)
        for m in memories
        if getattr(m, "is_active", True)
    ]
    analysis = RetentionAnalysis(
        keep=sorted((s for s in scores if s.tier == RetentionTier.KEEP), key=lambda s: -s.effective_score),
        warn=sorted((s for s in scores if s.tier == RetentionTier.WARN), key=lambda s: s.effective_score),
        delete=sorted((s for s in scores if s.tier == RetentionTier.DELETE), key=lambda s: s.effective_score),
    )
    analysis.stats = retention_stats(scores)
    return analysis


def apply_retention(
    store,
    analysis: RetentionAnalysis,
    mode: str = "soft",
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Process the delete candidates of ``analysis`` against ``store``.

    The whole batch is one transaction. Candidates that were invalidated
    or removed after analysis count as failed with a per-item error.
    """
    if mode not in RETENTION_MODES:
        raise ValidationError(f"retention mode must be one of {RETENTION_MODES}, got {mode!r}")
    ids = [s.memory_id for s in analysis.delete]
    result: Dict[str, Any] = {
        "mode": mode,
        "dry_run": dry_run,
        "processed": len(ids),
        "succeeded": 0,
        "failed": 0,
        "errors": [],
    }
    if not ids:
        return result
    if dry_run:
        result["would_process"] = ids
        return result

    current = store.get_memories(ids)
    eligible = []
    for mid in ids:
        mem = current.get(mid)
        if mem is None:
            result["errors"].append({"id": mid, "error": "memory no longer exists"})
        elif not mem.is_active:
            result["errors"].append({"id": mid, "error": "memory already invalidated"})
        else:
            eligible.append(mid)

    if mode == "hard":
        done = store.delete_memories(eligible)
    else:
        done = store.invalidate_memories(eligible)
    result["succeeded"] = done
    result["failed"] = len(ids) - done
    logger.info("Retention %s: %d/%d memories processed", mode, done, len(ids))
    return result


def _percent(part: int, total: int) -> str:
    return f"{round(part / total * 100)}%" if total else "0%"


def _preview(score: RetentionScore) -> List[str]:
    text = score.content[:60].replace("\n", " ")
    ellipsis = "..." if len(score.content) > 60 else ""
    return [
        f"  [{score.memory_id}] score={score.effective_score:.3f} age={score.age_days:.0f}d "
        f"access={score.access_count}",
        f'      "{text}{ellipsis}"',
    ]


def format_retention_report(analysis: RetentionAnalysis, verbose: bool = False) -> str:
    s = analysis.stats
    total = s.get("total", 0)
    lines = [
        "=== Memory Retention Analysis ===",
        "",
        "## Summary",
        f"Total memories: {total}",
        f"  Keep:   {s.get('keep', 0)} ({_percent(s.get('keep', 0), total)})",
        f"  Warn:   {s.get('warn', 0)} ({_percent(s.get('warn', 0), total)})",
        f"  Delete: {s.get('delete', 0)} ({_percent(s.get('delete', 0), total)})",
        "",
        "## Score Distribution",
        f"  High (>=0.6):      {s['distribution']['high']}",
        f"  Medium (0.3-0.6):  {s['distribution']['medium']}",
        f"  Low (0.15-0.3):    {s['distribution']['low']}",
        f"  Critical (<0.15):  {s['distribution']['critical']}",
        "",
        "## Averages",
        f"  Effective score: {s.get('avg_effective_score', 0)}",
        f"  Quality score:   {s.get('avg_quality_score', 0)}",
        f"  Age (days):      {s.get('avg_age_days', 0)}",
        f"  Access count:    {s.get('avg_access_count', 0)}",
        "",
    ]

    if analysis.delete:
        lines.append("## Delete Candidates")
        shown = analysis.delete if verbose else analysis.delete[:10]
        for score in shown:
            lines.extend(_preview(score))
        if len(analysis.delete) > len(shown):
            lines.append(f"  ... and {len(analysis.delete) - len(shown)} more")
        lines.append("")

    if verbose and analysis.warn:
        lines.append("## Warning (approaching delete threshold)")
        for score in analysis.warn[:10]:
            lines.extend(_preview(score))
        if len(analysis.warn) > 10:
            lines.append(f"  ... and {len(analysis.warn) - 10} more")
        lines.append("")

    return "\n".join(lines)
