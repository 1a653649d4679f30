"""mnemos test configuration."""
import hashlib
import math
import os
import sys
import pytest
from pathlib import Path

# Ensure the mnemos package is importable from a source checkout
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

TEST_DIM = 8


class FakeEmbedder:
    """Deterministic bag-of-words embedder: each token lands in a hashed bucket."""

    is_semantic = True

    def __init__(self, dimension: int = TEST_DIM):
        self.dimension = dimension
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        vec = [0.0] * self.dimension
        for token in text.lower().split():
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimension
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]

    def embed_batch(self, texts):
        return [self.embed(t) for t in texts]

    def info(self):
        return {"backend": "fake", "dimension": self.dimension}

    def close(self):
        pass


class FakeJudge:
    """Scripted judgment client.

    ``responses`` is consumed in order; an Exception instance is raised
    instead of returned. When the script runs out, ``default`` is returned.
    """

    def __init__(self, responses=None, default='{"relation": "independent", "confidence": 0.5}'):
        self.responses = list(responses or [])
        self.default = default
        self.prompts = []

    def classify(self, prompt, temperature=0.1, max_output_tokens=200, timeout=15.0):
        self.prompts.append(prompt)
        reply = self.responses.pop(0) if self.responses else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply


def unit(*values):
    """Normalize a short vector and pad it to TEST_DIM."""
    vec = list(values) + [0.0] * (TEST_DIM - len(values))
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


@pytest.fixture
def tmp_mnemos_dir(tmp_path):
    """Create a temporary MNEMOS_HOME for testing."""
    home = tmp_path / ".mnemos"
    home.mkdir()
    old = {k: os.environ.get(k) for k in ("MNEMOS_HOME", "MNEMOS_DB_PATH", "MNEMOS_EMBEDDING_DIM")}
    os.environ["MNEMOS_HOME"] = str(home)
    os.environ.pop("MNEMOS_DB_PATH", None)
    os.environ.pop("MNEMOS_EMBEDDING_DIM", None)
    yield home
    for key, value in old.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture
def store(tmp_mnemos_dir):
    """Create a fresh SQLiteStore for testing."""
    from mnemos.sqlite_store import SQLiteStore

    s = SQLiteStore(db_path=tmp_mnemos_dir / "test.db", embedding_dim=TEST_DIM)
    yield s
    s.close()


@pytest.fixture
def judge():
    return FakeJudge()


@pytest.fixture
def config(tmp_mnemos_dir):
    from mnemos.config import load_config

    return load_config(overrides={"embedding": {"dimension": TEST_DIM}})


@pytest.fixture
def engine(config, judge):
    """MemoryEngine with a fake embedder and a scripted judge."""
    from mnemos.bridge import MemoryEngine

    eng = MemoryEngine(config, embedder=FakeEmbedder(TEST_DIM), judge=judge)
    yield eng
    eng.close()
