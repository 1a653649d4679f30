"""
mnemos Quality -- offline heuristic quality score for new memories.

    score = 0.3 * specificity + 0.3 * clarity + 0.2 * relevance + 0.2 * uniqueness

Specificity rewards concrete detail (numbers, backtick spans, file names,
file:line references, identifiers, technical terms, actionable verbs) and
penalizes vague or very short text and bare praise. Clarity looks at
sentence length, lists, paragraphs and end punctuation. Relevance cannot be
judged without context and stays neutral. Uniqueness is ``1 - top
similarity`` to the stored memories, neutral when nothing comparable exists.

The score lands in ``quality_score`` when the caller supplies none, so
retention and readiness see a real value instead of the default.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional

WEIGHTS = {"specificity": 0.3, "clarity": 0.3, "relevance": 0.2, "uniqueness": 0.2}
NEUTRAL = 0.5
HEURISTIC_CONFIDENCE = 0.6

_NUMBER_RE = re.compile(r"\d+")
_CODE_SPAN_RE = re.compile(r"`[^`]+`|```.*?```", re.DOTALL)
_FILE_RE = re.compile(
    r"\.(ts|js|tsx|jsx|py|go|rs|java|cpp|c|h|md|json|yaml|yml|toml|sql|sh|bash|css|scss|html)\b"
)
_LINE_REF_RE = re.compile(r":\d+")
_CAMEL_RE = re.compile(r"[A-Z][a-z]+(?:[A-Z][a-z]+)+")
_SNAKE_RE = re.compile(r"[a-z]+_[a-z]+")
_TECH_RE = re.compile(
    r"\b(function|class|method|variable|parameter|return|error|bug|fix|feature|api|endpoint|database|"
    r"table|column|component|module|service|handler|controller|config|deploy|server|client|request|"
    r"response|query|mutation|schema|model|view|route|middleware|hook|callback|promise|async|await)\b",
    re.IGNORECASE,
)
_VERB_RE = re.compile(
    r"\b(implement|create|add|remove|fix|update|refactor|migrate|configure|deploy|test|resolve|optimize|"
    r"integrate|delete|modify|change|setup|install|build|run|execute|debug|trace|log|handle|process|"
    r"validate|parse|serialize|fetch|send|receive|connect|disconnect)\b",
    re.IGNORECASE,
)
_VAGUE_RE = re.compile(
    r"\b(maybe|perhaps|somehow|something|stuff|things|whatever|somewhere|anyone|anything|some|kinda|sorta)\b",
    re.IGNORECASE,
)
_GENERIC_RE = re.compile(
    r"\b(good|bad|nice|cool|great|interesting|awesome|works|fine|ok|okay|perfect|excellent)\b", re.IGNORECASE
)
_GENERIC_OK_RE = re.compile(
    r"\b(good practice|bad pattern|nice feature|works well because|works by|good for)\b", re.IGNORECASE
)
_PRAISE_ONLY_RE = re.compile(
    r"^(the )?(code|it|this|that)?\s*(is|are|was|were)?\s*(good|nice|great|fine|ok|cool|awesome|works|working)",
    re.IGNORECASE,
)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_LIST_RE = re.compile(r"^[-*•]|\n[-*•]|\n\d+\.")
_PARAGRAPH_RE = re.compile(r"\n{2,}|:\s*\n")
_CAPS_RE = re.compile(r"[A-Z]{3,}")
_REPEAT_RE = re.compile(r"(.)\1{4,}")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class QualityScore:
    score: float
    factors: Dict[str, float] = field(default_factory=dict)
    confidence: float = HEURISTIC_CONFIDENCE

    def to_dict(self) -> Dict[str, object]:
        return {
            "score": round(self.score, 4),
            "confidence": self.confidence,
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
        }


def specificity(content: str) -> float:
    text = content.strip()
    words = len(text.split())
    chars = len(content)
    has_code = bool(_CODE_SPAN_RE.search(content))
    has_file = bool(_FILE_RE.search(content))
    has_number = bool(_NUMBER_RE.search(content))

    score = 0.5
    if has_number:
        score += 0.1
    if has_code:
        score += 0.2
    if has_file:
        score += 0.15
    if _LINE_REF_RE.search(content):
        score += 0.1
    if _TECH_RE.search(content):
        score += 0.1
    if _CAMEL_RE.search(content) or _SNAKE_RE.search(content):
        score += 0.05
    if _VERB_RE.search(content):
        score += 0.1

    if _VAGUE_RE.search(content):
        score -= 0.2
    if chars < 15 or words < 3:
        score -= 0.35
    elif chars < 30 or words < 5:
        score -= 0.2
    if _GENERIC_RE.search(content) and not _GENERIC_OK_RE.search(content):
        score -= 0.15
    if _PRAISE_ONLY_RE.search(text):
        score -= 0.25
    if words < 8 and not (has_code or has_file or has_number):
        score -= 0.15
    return _clamp(score)


def clarity(content: str) -> float:
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(content) if s.strip()]
    avg_sentence = len(content) / max(len(sentences), 1)

    score = 0.5
    if 30 <= avg_sentence <= 150:
        score += 0.15
    if _LIST_RE.search(content):
        score += 0.1
    if _PARAGRAPH_RE.search(content):
        score += 0.05
    if content.strip()[-1:] in (".", "!", "?"):
        score += 0.1

    if len(_CAPS_RE.findall(content)) > 2:
        score -= 0.1
    if len(content) > 50 and " " not in content:
        score -= 0.3
    if _REPEAT_RE.search(content):
        score -= 0.2
    return _clamp(score)


def score_quality(content: str, top_similarity: Optional[float] = None) -> QualityScore:
    """Heuristic quality of ``content``; ``top_similarity`` is its nearest stored neighbour."""
    factors = {
        "specificity": specificity(content),
        "clarity": clarity(content),
        "relevance": NEUTRAL,
        "uniqueness": NEUTRAL if top_similarity is None else _clamp(1.0 - top_similarity),
    }
    score = sum(WEIGHTS[name] * value for name, value in factors.items())
    return QualityScore(score=_clamp(score), factors=factors)
