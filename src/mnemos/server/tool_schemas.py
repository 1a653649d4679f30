"""mnemos MCP Tool Schemas -- 7 tools for memory, search, retention and graph upkeep.

Low-frequency operations are grouped behind an ``action`` discriminator.
"""

TOOL_SCHEMAS = [
    {
        "name": "mnemos_save",
        "description": "Store a memory (decision, learning, error, pattern, dead end or observation). The memory is embedded, auto-linked to similar memories, and checked in the background for superseding an older one.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "Memory content"},
                "type": {
                    "type": "string",
                    "enum": ["observation", "decision", "learning", "error", "pattern", "dead_end"],
                    "description": "Memory type (default: observation)",
                },
                "tags": {"type": "array", "items": {"type": "string"}},
                "source": {"type": "string", "description": "File path or context the memory came from"},
                "quality_score": {"type": "number", "minimum": 0, "maximum": 1},
                "valid_from": {"type": "string", "description": "ISO timestamp the fact becomes true"},
                "valid_until": {"type": "string", "description": "ISO timestamp the fact stops being true"},
            },
            "required": ["content"],
        },
    },
    {
        "name": "mnemos_search",
        "description": "Hybrid lexical + semantic search over memories, indexed docs or indexed code. Returns ranked results with a readiness assessment telling you whether the context is sufficient.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "corpus": {"type": "string", "enum": ["memories", "docs", "code"], "default": "memories"},
                "limit": {"type": "integer", "default": 10},
                "alpha": {"type": "number", "minimum": 0, "maximum": 1, "description": "0 = pure lexical, 1 = pure vector"},
                "threshold": {"type": "number", "minimum": 0, "maximum": 1},
                "mmr_lambda": {"type": "number", "minimum": 0, "maximum": 1, "description": "Diversify results by MMR: 1 = pure relevance, lower trades relevance for variety"},
                "as_of": {"type": "string", "description": "ISO timestamp: search memories as they were at this time"},
                "include_invalidated": {"type": "boolean", "default": False},
                "regex": {"type": "string", "description": "Content regex filter (code corpus)"},
                "symbol": {"type": "string", "description": "File path substring filter (code corpus)"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "mnemos_retention",
        "description": "Memory retention. Actions: 'analyze' (default) scores every active memory into keep/warn/delete tiers, 'apply' soft- or hard-deletes the delete tier, 'restore' undoes an invalidation.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["analyze", "apply", "restore"], "default": "analyze"},
                "mode": {"type": "string", "enum": ["soft", "hard"], "default": "soft"},
                "dry_run": {"type": "boolean", "default": False},
                "memory_id": {"type": "string", "description": "Memory to restore (action='restore')"},
                "verbose": {"type": "boolean", "default": False},
            },
        },
    },
    {
        "name": "mnemos_graph",
        "description": "Knowledge graph. Actions: 'stats' (default), 'connected' (BFS from memory_id), 'communities', 'centrality', 'proximity', 'autolink', 'enrich', 'prune', 'maintain' (all steps).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["stats", "connected", "communities", "centrality", "proximity", "autolink", "enrich", "prune", "maintain"],
                    "default": "stats",
                },
                "memory_id": {"type": "string"},
                "max_depth": {"type": "integer", "default": 2, "minimum": 1, "maximum": 5},
                "dry_run": {"type": "boolean", "default": False},
                "method": {"type": "string", "enum": ["degree", "eigenvector"]},
                "limit": {"type": "integer"},
            },
        },
    },
    {
        "name": "mnemos_link",
        "description": "Create a typed link between two memories.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "source_id": {"type": "string"},
                "target_id": {"type": "string"},
                "relation": {
                    "type": "string",
                    "enum": ["related", "caused_by", "leads_to", "similar_to", "contradicts", "implements", "supersedes", "references"],
                    "default": "related",
                },
                "weight": {"type": "number", "default": 1.0},
            },
            "required": ["source_id", "target_id"],
        },
    },
    {
        "name": "mnemos_index",
        "description": "Index documentation and source files (or directories) for docs/code search. Unchanged files are skipped.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "paths": {"type": "array", "items": {"type": "string"}},
                "corpus": {"type": "string", "enum": ["docs", "code"], "description": "Force a corpus (default: by extension)"},
            },
            "required": ["paths"],
        },
    },
    {
        "name": "mnemos_stats",
        "description": "Store, graph and embedding statistics.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]
