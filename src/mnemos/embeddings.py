"""
mnemos Embeddings -- local embedding provider for semantic search.

Provides:
- LocalEmbedder.embed(text) -> normalized vector of the configured dimension
- LocalEmbedder.embed_batch(texts) -> list of vectors
- Async variants for the MCP server
- LRU cache for repeated queries
- Hash-based fallback when no ML model is available

Uses bge-small-en-v1.5 via ONNX Runtime (384 dims). Falls back to
SentenceTransformers (PyTorch) if ONNX is unavailable. A configured dimension
below the model's native one is applied with Matryoshka truncation.

The embedder is an instance owned by the MemoryEngine; tests substitute any
object with the same ``dimension`` / ``is_semantic`` / ``embed`` surface.
"""

import asyncio
import contextlib
import hashlib
import io
import logging
import math
import os
import random
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from mnemos.errors import EmbeddingError
from mnemos.vectors import mrl_truncate

logger = logging.getLogger("mnemos.embeddings")

NATIVE_DIMENSION = 384
MODEL_NAME = "bge-small-en-v1.5"
ONNX_DEFAULT_DIR = "~/.cache/mnemos/models/bge-small-en-v1.5-onnx"

_MAX_LOAD_ATTEMPTS = 3
_CIRCUIT_BREAKER_COOLDOWN_S = 300


def hash_embedding(text: str, dimension: int = NATIVE_DIMENSION) -> List[float]:
    """Fallback: deterministic pseudo-embedding from text hash."""
    seed = int.from_bytes(hashlib.md5(text.encode()).digest()[:4], byteorder="big")
    rng = random.Random(seed)
    vector = [rng.gauss(0, 1) for _ in range(dimension)]
    magnitude = math.sqrt(sum(x * x for x in vector))
    if magnitude == 0:
        return [1.0 / math.sqrt(dimension)] * dimension
    return [x / magnitude for x in vector]


def onnx_model_dir() -> Optional[str]:
    """Locate the ONNX model: MNEMOS_ONNX_MODEL_DIR first, then the default cache."""
    env_dir = os.environ.get("MNEMOS_ONNX_MODEL_DIR")
    if env_dir and (Path(env_dir) / "model.onnx").exists():
        return env_dir
    default = Path(os.path.expanduser(ONNX_DEFAULT_DIR))
    if (default / "model.onnx").exists():
        return str(default)
    return None


def _onnx_encode(tokenizer, session, texts: List[str]) -> "np.ndarray":
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class LocalEmbedder:
    """Lazy-loading local embedding model with a circuit breaker.

    ``embed`` never returns a vector of the wrong length: the model output is
    MRL-truncated to ``dimension``. When no model can be loaded it returns a
    hash embedding and ``is_semantic`` stays False, so callers can decide not
    to persist it.
    """

    def __init__(self, dimension: int = NATIVE_DIMENSION, skip_model: bool = False, cache_size: int = 512):
        if dimension > NATIVE_DIMENSION:
            raise EmbeddingError(
                f"Requested dimension {dimension} exceeds the model's native {NATIVE_DIMENSION}"
            )
        self.dimension = dimension
        self.skip_model = skip_model
        self._cache: OrderedDict = OrderedDict()
        self._cache_max = cache_size
        self._model = None
        self._backend: Optional[str] = None
        self._attempts = 0
        self._first_failure = 0.0
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Model loading
    # ------------------------------------------------------------------

    @property
    def backend(self) -> Optional[str]:
        """Active backend ("onnx" / "sentence-transformers"), or None for hash fallback."""
        return self._backend

    @property
    def is_semantic(self) -> bool:
        self._load()
        return self._backend is not None

    def _load(self):
        if self._model is not None:
            return self._model
        if self.skip_model:
            return None
        with self._lock:
            if self._model is not None:
                return self._model
            if self._attempts >= _MAX_LOAD_ATTEMPTS:
                if self._first_failure and time.monotonic() - self._first_failure >= _CIRCUIT_BREAKER_COOLDOWN_S:
                    logger.info("Circuit breaker cooldown expired, retrying model load")
                    self._attempts = 0
                    self._first_failure = 0.0
                else:
                    return None
            self._attempts += 1
            if self._attempts == 1:
                self._first_failure = time.monotonic()

            os.environ.setdefault("TQDM_DISABLE", "1")
            model_dir = onnx_model_dir()
            if model_dir:
                try:
                    import onnxruntime as ort
                    from tokenizers import Tokenizer

                    tokenizer = Tokenizer.from_file(f"{model_dir}/tokenizer.json")
                    tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
                    tokenizer.enable_truncation(max_length=512)
                    opts = ort.SessionOptions()
                    opts.log_severity_level = 4
                    opts.enable_cpu_mem_arena = False
                    with contextlib.redirect_stderr(io.StringIO()):
                        session = ort.InferenceSession(
                            f"{model_dir}/model.onnx",
                            sess_options=opts,
                            providers=["CPUExecutionProvider"],
                        )
                    self._model = (tokenizer, session)
                    self._backend = "onnx"
                    self._attempts = 0
                    logger.info("Loaded ONNX embedding model from %s", model_dir)
                    return self._model
                except Exception as e:
                    logger.warning("Failed to load ONNX model (attempt %d): %s", self._attempts, e)

            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer("BAAI/bge-small-en-v1.5")
                self._backend = "sentence-transformers"
                self._attempts = 0
                logger.info("Loaded sentence-transformers model (PyTorch fallback)")
                return self._model
            except ImportError:
                logger.debug("sentence-transformers not installed")
            except Exception as e:
                logger.warning("Failed to load sentence-transformers: %s", e)

            logger.warning(
                "No embedding model loaded (attempt %d/%d); using hash embeddings. ONNX dir: %s",
                self._attempts,
                _MAX_LOAD_ATTEMPTS,
                model_dir,
            )
            return None

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self._load()
        if model is None:
            return [hash_embedding(t, self.dimension) for t in texts]
        if self._backend == "onnx":
            tokenizer, session = model
            raw: List[List[float]] = []
            for i in range(0, len(texts), 32):
                raw.extend(_onnx_encode(tokenizer, session, texts[i : i + 32]).tolist())
        else:
            raw = [e.tolist() for e in model.encode(texts, normalize_embeddings=True, batch_size=32)]
        return [mrl_truncate(v, self.dimension) for v in raw]

    def embed(self, text: str) -> List[float]:
        """Embed one text. Raises EmbeddingError if the backend fails mid-call."""
        key = hashlib.md5(text.encode()).hexdigest()
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached
        try:
            vector = self._encode([text])[0]
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e
        if self._backend is not None:
            self._cache[key] = vector
            while len(self._cache) > self._cache_max:
                self._cache.popitem(last=False)
        return vector

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            return self._encode(list(texts))
        except Exception as e:
            raise EmbeddingError(f"Batch embedding failed: {e}") from e

    def info(self) -> Dict[str, Any]:
        return {
            "backend": self._backend or ("disabled" if self.skip_model else "hash-fallback"),
            "model": MODEL_NAME,
            "model_loaded": self._model is not None,
            "dimension": self.dimension,
            "native_dimension": NATIVE_DIMENSION,
            "onnx_model_dir": onnx_model_dir(),
            "cache_size": len(self._cache),
        }

    # ------------------------------------------------------------------
    # Async support
    # ------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embedding")
        return self._executor

    async def embed_async(self, text: str) -> List[float]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._get_executor(), self.embed, text)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._model = None
        self._backend = None
        self._cache.clear()
