"""mnemos -- Hybrid retrieval and memory graph for AI coding assistants.

Direct Python API -- no MCP server required::

    from mnemos import open_engine
    with open_engine() as engine:
        engine.save_memory("Sessions live in Redis", type="decision")
        hits = engine.search_memories("session storage")

Run ``mnemos serve`` for the MCP tools (stdio, or ``--http``).
"""

__version__ = "0.4.2"

from mnemos.bridge import MemoryEngine, open_engine
from mnemos.config import MnemosConfig, load_config
from mnemos.errors import (
    ClassificationParseError,
    CollaboratorError,
    ConfigError,
    DimensionMismatchError,
    MnemosError,
    ValidationError,
)
from mnemos.hybrid import SearchResponse, SearchResult, hybrid_search
from mnemos.readiness import ReadinessAssessment, assess_readiness
from mnemos.sqlite_store import SQLiteStore

__all__ = [
    "__version__",
    "MemoryEngine",
    "open_engine",
    "MnemosConfig",
    "load_config",
    "SQLiteStore",
    "hybrid_search",
    "SearchResult",
    "SearchResponse",
    "assess_readiness",
    "ReadinessAssessment",
    "MnemosError",
    "ValidationError",
    "DimensionMismatchError",
    "ConfigError",
    "CollaboratorError",
    "ClassificationParseError",
]
