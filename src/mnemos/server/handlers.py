"""
mnemos MCP Handlers -- Maps tool names to async handler functions.

Every handler takes the running MemoryEngine and the tool arguments and
returns an MCP-compatible response dict. Failures never escape: they come
back as ``isError`` responses.
"""

import json
import logging
from typing import Any, Dict

from mnemos.errors import MnemosError, ValidationError
from mnemos.sqlite_store import parse_dt

logger = logging.getLogger("mnemos.server.handlers")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _float_or_none(value, name: str):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None


def _parse_time(value, name: str):
    try:
        return parse_dt(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO timestamp, got {value!r}") from None


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


def mcp_json(data: Any) -> dict:
    return mcp_response(json.dumps(data, indent=2, default=str))


# ============================================================================
# Handler: mnemos_save
# ============================================================================


async def handle_mnemos_save(engine, arguments: dict) -> dict:
    """Store a memory; supersession is checked in the background."""
    content = (arguments.get("content") or "").strip()
    if not content:
        return mcp_error("content is required")
    try:
        result = engine.save_memory(
            content,
            type=arguments.get("type", "observation"),
            tags=arguments.get("tags"),
            source=arguments.get("source"),
            quality_score=_float_or_none(arguments.get("quality_score"), "quality_score"),
            valid_from=_parse_time(arguments.get("valid_from"), "valid_from"),
            valid_until=_parse_time(arguments.get("valid_until"), "valid_until"),
        )
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_save failed: %s", e)
        return mcp_error(f"Failed to store memory: {e}")

    if not result["created"]:
        return mcp_response(f"Already stored as {result['id']} (identical active memory).")
    lines = [f"Stored memory {result['id']}."]
    if result["links"]:
        lines.append(f"Linked to {result['links']} similar memor{'y' if result['links'] == 1 else 'ies'}.")
    if not result["embedded"]:
        lines.append("No embedding stored; memory is searchable lexically only.")
    if result["supersession"] == "dropped":
        lines.append("Supersession check was dropped (queue full).")
    return mcp_response(" ".join(lines))


# ============================================================================
# Handler: mnemos_search
# ============================================================================


def _format_result(i: int, r: Dict[str, Any]) -> str:
    if r.get("file_path"):
        title = f"{r['file_path']}:{r.get('start_line')}-{r.get('end_line')}"
    else:
        title = f"{r['id']} [{r.get('type', 'memory')}]"
    return f"{i}. **{title}** ({r['score']:.0%})\n{r['content']}"


async def handle_mnemos_search(engine, arguments: dict) -> dict:
    """Hybrid search with a readiness header when confidence is low."""
    query = (arguments.get("query") or "").strip()
    if not query:
        return mcp_error("query is required")
    corpus = arguments.get("corpus", "memories")
    kwargs: Dict[str, Any] = {"top_k": _clamp_int(arguments.get("limit", 10), default=10, max_val=100)}
    try:
        for name in ("alpha", "threshold", "mmr_lambda"):
            value = _float_or_none(arguments.get(name), name)
            if value is not None:
                kwargs[name] = value
        if corpus == "memories":
            kwargs["as_of"] = _parse_time(arguments.get("as_of"), "as_of")
            kwargs["include_invalidated"] = bool(arguments.get("include_invalidated", False))
            payload = engine.search_memories(query, **kwargs)
        elif corpus == "docs":
            payload = engine.search_docs(query, **kwargs)
        elif corpus == "code":
            payload = engine.search_code(query, regex=arguments.get("regex"), symbol=arguments.get("symbol"), **kwargs)
        else:
            return mcp_error(f"Unknown corpus: {corpus}")
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_search failed: %s", e)
        return mcp_error(f"Search failed: {e}")

    parts = []
    if payload["header"]:
        parts.append(payload["header"])
    results = payload["results"]
    if not results:
        parts.append(f'No {corpus} found for "{query}".')
    else:
        parts.append(f"## {len(results)} {corpus} result(s) for \"{query}\"")
        parts.extend(_format_result(i, r) for i, r in enumerate(results, 1))
    if payload.get("reindex_required"):
        parts.append("_Some stored embeddings do not match the current model; run `mnemos reindex`._")
    return mcp_response("\n\n".join(parts))


# ============================================================================
# Handler: mnemos_retention
# ============================================================================


async def handle_mnemos_retention(engine, arguments: dict) -> dict:
    """Analyze retention tiers, apply cleanup, or restore a memory."""
    action = arguments.get("action", "analyze")
    try:
        if action == "analyze":
            from mnemos.retention import format_retention_report

            analysis = engine.analyze_retention()
            return mcp_response(format_retention_report(analysis, verbose=bool(arguments.get("verbose"))))
        if action == "apply":
            result = engine.apply_retention(
                mode=arguments.get("mode", "soft"), dry_run=bool(arguments.get("dry_run", False))
            )
            return mcp_json(result)
        if action == "restore":
            memory_id = (arguments.get("memory_id") or "").strip()
            if not memory_id:
                return mcp_error("memory_id is required for restore")
            if engine.restore_memory(memory_id):
                return mcp_response(f"Restored {memory_id}.")
            return mcp_error(f"{memory_id} is not invalidated or does not exist")
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_retention failed: %s", e)
        return mcp_error(f"Retention {action} failed: {e}")
    return mcp_error(f"Unknown action: {action}")


# ============================================================================
# Handler: mnemos_graph
# ============================================================================


async def handle_mnemos_graph(engine, arguments: dict) -> dict:
    """Graph statistics, traversal and maintenance steps."""
    action = arguments.get("action", "stats")
    dry_run = bool(arguments.get("dry_run", False))
    try:
        if action == "stats":
            result = engine.graph_stats()
        elif action == "connected":
            memory_id = (arguments.get("memory_id") or "").strip()
            if not memory_id:
                return mcp_error("memory_id is required for connected")
            depth = _clamp_int(arguments.get("max_depth", 2), default=2, max_val=5)
            result = engine.find_connected(memory_id, depth)
        elif action == "communities":
            result = engine.detect_communities(dry_run=dry_run)
        elif action == "centrality":
            result = engine.update_centrality_cache(method=arguments.get("method"))
        elif action == "proximity":
            result = engine.create_proximity_links(dry_run=dry_run)
        elif action == "autolink":
            result = {"created": engine.auto_link_similar_memories()}
        elif action == "enrich":
            limit = arguments.get("limit")
            result = engine.enrich_links(limit=_clamp_int(limit, default=50, max_val=1000) if limit else None)
        elif action == "prune":
            result = engine.prune_weak_links(dry_run=dry_run)
        elif action == "maintain":
            result = engine.run_graph_maintenance()
        else:
            return mcp_error(f"Unknown action: {action}")
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_graph %s failed: %s", action, e)
        return mcp_error(f"Graph {action} failed: {e}")
    return mcp_json(result)


# ============================================================================
# Handler: mnemos_link
# ============================================================================


async def handle_mnemos_link(engine, arguments: dict) -> dict:
    source_id = (arguments.get("source_id") or "").strip()
    target_id = (arguments.get("target_id") or "").strip()
    if not source_id or not target_id:
        return mcp_error("source_id and target_id are required")
    relation = arguments.get("relation", "related")
    try:
        weight = _float_or_none(arguments.get("weight"), "weight")
        if weight is None:
            weight = 1.0
        result = engine.create_link(source_id, target_id, relation, weight)
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_link failed: %s", e)
        return mcp_error(f"Failed to link memories: {e}")
    state = "Created" if result["created"] else "Already exists:"
    return mcp_response(f"{state} link #{result['id']} {source_id} -{relation}-> {target_id}")


# ============================================================================
# Handler: mnemos_index
# ============================================================================


async def handle_mnemos_index(engine, arguments: dict) -> dict:
    paths = arguments.get("paths") or []
    if isinstance(paths, str):
        paths = [paths]
    if not paths:
        return mcp_error("paths is required")
    try:
        summary = engine.index_paths(paths, corpus=arguments.get("corpus"))
    except MnemosError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("mnemos_index failed: %s", e)
        return mcp_error(f"Indexing failed: {e}")
    return mcp_json(summary)


# ============================================================================
# Handler: mnemos_stats
# ============================================================================


async def handle_mnemos_stats(engine, arguments: dict) -> dict:
    try:
        data = engine.stats()
        data["graph"] = engine.graph_stats()
    except Exception as e:
        logger.error("mnemos_stats failed: %s", e)
        return mcp_error(f"Failed to read stats: {e}")
    return mcp_json(data)


# ============================================================================
# Handler Registry
# ============================================================================

HANDLERS: Dict[str, Any] = {
    "mnemos_save": handle_mnemos_save,
    "mnemos_search": handle_mnemos_search,
    "mnemos_retention": handle_mnemos_retention,
    "mnemos_graph": handle_mnemos_graph,
    "mnemos_link": handle_mnemos_link,
    "mnemos_index": handle_mnemos_index,
    "mnemos_stats": handle_mnemos_stats,
}
