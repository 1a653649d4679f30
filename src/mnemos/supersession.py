"""
mnemos Supersession -- detect when a new memory replaces an older one.

After a save, the new memory is compared against every active memory. Those
with cosine >= 0.8 (top 5) are shown to the judgment LLM as OLD/NEW pairs and
classified as supersedes / refines / independent. Only ``supersedes`` at
confidence >= 0.9 invalidates the old memory; ``refines`` is counted and
left to auto-link.

Checks run on SupersessionWorker, a background thread fed by a bounded
queue, so a save never waits on (or fails because of) the LLM.
"""

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from mnemos.errors import ClassificationParseError, CollaboratorError
from mnemos.llm import extract_json_object
from mnemos.vectors import cosine_similarity

logger = logging.getLogger("mnemos.supersession")

SIMILARITY_THRESHOLD = 0.8
CONFIDENCE_THRESHOLD = 0.9
MAX_CANDIDATES = 5
LLM_TIMEOUT_S = 15.0
LLM_TEMPERATURE = 0.1
LLM_MAX_TOKENS = 200

RELATIONS = ("supersedes", "refines", "independent")

SUPERSESSION_PROMPT = """You are comparing two memories from a developer's project.

OLD memory:
{old_content}

NEW memory:
{new_content}

Classify the relationship. Choose exactly ONE:
- "supersedes": the NEW memory contradicts or replaces the OLD (preference changed, config updated, decision reversed)
- "refines": the NEW memory adds detail to the OLD without contradicting it
- "independent": the memories are about different things

Respond with JSON only:
{{"relation": "supersedes|refines|independent", "confidence": 0.0-1.0, "reason": "brief explanation"}}"""


@dataclass(frozen=True)
class Classification:
    relation: str
    confidence: float
    reason: str = ""


def parse_classification(text: str) -> Classification:
    """Pull the verdict out of a raw LLM reply. Raises ClassificationParseError."""
    data = extract_json_object(text)
    relation = str(data.get("relation", "")).strip().lower()
    if relation not in RELATIONS:
        raise ClassificationParseError(f"unknown relation {data.get('relation')!r}")
    try:
        confidence = float(data.get("confidence"))
    except (TypeError, ValueError):
        raise ClassificationParseError(f"missing or invalid confidence: {data.get('confidence')!r}") from None
    return Classification(relation, max(0.0, min(1.0, confidence)), str(data.get("reason", "")))


def find_candidates(
    store,
    memory_id: str,
    embedding: Sequence[float],
    similarity_threshold: float = SIMILARITY_THRESHOLD,
    max_candidates: int = MAX_CANDIDATES,
) -> List[Dict[str, Any]]:
    """Active memories (excluding ``memory_id``) most similar to ``embedding``."""
    scored = []
    for other_id, vec in store.active_embeddings(exclude=[memory_id]):
        sim = cosine_similarity(embedding, vec)
        if sim is not None and sim >= similarity_threshold:
            scored.append((sim, other_id))
    scored.sort(key=lambda t: (-t[0], t[1]))
    top = scored[:max_candidates]
    memories = store.get_memories([mid for _, mid in top])
    return [
        {"id": mid, "content": memories[mid].content, "similarity": sim}
        for sim, mid in top
        if mid in memories
    ]


def check_supersession(
    store,
    client,
    memory_id: str,
    content: str,
    embedding: Sequence[float],
    similarity_threshold: float = SIMILARITY_THRESHOLD,
    confidence_threshold: float = CONFIDENCE_THRESHOLD,
    max_candidates: int = MAX_CANDIDATES,
    temperature: float = LLM_TEMPERATURE,
    max_output_tokens: int = LLM_MAX_TOKENS,
    timeout: float = LLM_TIMEOUT_S,
) -> Dict[str, Any]:
    """Classify the new memory against its nearest neighbours.

    Returns {checked, superseded, refined, errors, invalidated}. An LLM or
    parse failure is recorded for that candidate and the rest still run.
    """
    result: Dict[str, Any] = {"checked": 0, "superseded": 0, "refined": 0, "errors": [], "invalidated": []}
    if embedding is None or len(embedding) == 0:
        return result
    candidates = find_candidates(store, memory_id, embedding, similarity_threshold, max_candidates)
    if candidates:
        logger.debug("Supersession: %d candidates for %s", len(candidates), memory_id)

    for candidate in candidates:
        result["checked"] += 1
        prompt = SUPERSESSION_PROMPT.format(old_content=candidate["content"], new_content=content)
        try:
            verdict = parse_classification(
                client.classify(prompt, temperature=temperature, max_output_tokens=max_output_tokens, timeout=timeout)
            )
        except (CollaboratorError, ClassificationParseError) as e:
            logger.warning("Supersession check %s vs %s failed: %s", memory_id, candidate["id"], e)
            result["errors"].append(f"{candidate['id']}: {e}")
            continue

        if verdict.relation == "supersedes" and verdict.confidence >= confidence_threshold:
            if store.invalidate_memory(candidate["id"], memory_id):
                result["superseded"] += 1
                result["invalidated"].append(candidate["id"])
                logger.info("Memory %s superseded by %s: %s", candidate["id"], memory_id, verdict.reason)
        elif verdict.relation == "refines":
            result["refined"] += 1
    return result


# ---------------------------------------------------------------------------
# Background worker
# ---------------------------------------------------------------------------

_STOP = object()


class SupersessionWorker:
    """Daemon thread that runs supersession checks off the save path.

    ``handler(memory_id, content, embedding)`` does the work. Outcomes land
    in ``results`` (and ``on_result`` when given) as dicts with either a
    ``result`` or an ``error`` key; nothing is ever raised back into
    ``submit``.
    """

    def __init__(
        self,
        handler: Callable[[str, str, Sequence[float]], Dict[str, Any]],
        queue_size: int = 256,
        on_result: Optional[Callable[[Dict[str, Any]], None]] = None,
        history: int = 1000,
    ):
        self._handler = handler
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._on_result = on_result
        self.results: Deque[Dict[str, Any]] = deque(maxlen=history)
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._stopped = False

    def start(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopped = False
            self._thread = threading.Thread(target=self._run, name="mnemos-supersession", daemon=True)
            self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, memory_id: str, content: str, embedding: Sequence[float]) -> bool:
        """Queue a check. Returns False (and records why) if it was dropped."""
        if self._stopped:
            self._publish({"memory_id": memory_id, "error": "worker stopped"})
            return False
        self.start()
        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait((memory_id, content, list(embedding)))
        except queue.Full:
            self._done()
            logger.warning("Supersession queue full; dropped check for %s", memory_id)
            self._publish({"memory_id": memory_id, "error": "supersession queue full"})
            return False
        return True

    def _publish(self, entry: Dict[str, Any]) -> None:
        self.results.append(entry)
        if self._on_result is not None:
            try:
                self._on_result(entry)
            except Exception as e:
                logger.debug("Supersession result callback failed: %s", e)

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            if job is _STOP:
                break
            memory_id, content, embedding = job
            try:
                outcome = self._handler(memory_id, content, embedding)
                self._publish({"memory_id": memory_id, "result": outcome})
            except Exception as e:
                logger.warning("Supersession check for %s crashed: %s", memory_id, e)
                self._publish({"memory_id": memory_id, "error": f"{type(e).__name__}: {e}"})
            finally:
                self._done()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every submitted check has finished. False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending <= 0, timeout=timeout)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Finish queued checks, then end the thread."""
        self._stopped = True
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
