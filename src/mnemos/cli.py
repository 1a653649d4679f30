"""mnemos CLI -- memory, search, indexing, retention, graph and server commands."""

import argparse
import json
import logging
import os
import sys
import time

from mnemos.errors import MnemosError

logger = logging.getLogger("mnemos.cli")


def _engine():
    from mnemos.bridge import open_engine

    return open_engine()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_save(args):
    """Store a memory."""
    content = " ".join(args.content)
    if not content.strip():
        print("Usage: mnemos save <text> [-t TYPE] [--tag TAG] [--source SRC]", file=sys.stderr)
        sys.exit(1)
    with _engine() as engine:
        result = engine.save_memory(
            content,
            type=args.type,
            tags=args.tag,
            source=args.source,
            quality_score=args.quality,
        )
        if args.wait:
            engine.worker.join(timeout=30)
            result["supersession_results"] = list(engine.worker.results)
    if args.json:
        _print_json(result)
    elif result["created"]:
        print(f"Saved {result['id']} [{args.type}] ({result['links']} link(s))")
    else:
        print(f"Already stored as {result['id']}")


def cmd_search(args):
    """Hybrid search over memories, docs or code."""
    query_text = " ".join(args.query_text)
    if not query_text.strip():
        print("Usage: mnemos search <text> [--corpus memories|docs|code]", file=sys.stderr)
        sys.exit(1)
    start = time.monotonic()
    kwargs = {"top_k": args.limit}
    if args.alpha is not None:
        kwargs["alpha"] = args.alpha
    if args.threshold is not None:
        kwargs["threshold"] = args.threshold
    if args.mmr is not None:
        kwargs["mmr_lambda"] = args.mmr
    with _engine() as engine:
        if args.corpus == "code":
            payload = engine.search_code(query_text, regex=args.regex, symbol=args.symbol, **kwargs)
        elif args.corpus == "docs":
            payload = engine.search_docs(query_text, **kwargs)
        else:
            payload = engine.search_memories(query_text, **kwargs)
    elapsed = time.monotonic() - start

    if args.json:
        payload["elapsed_s"] = round(elapsed, 3)
        _print_json(payload)
        return
    if payload["header"]:
        print(payload["header"])
        print()
    results = payload["results"]
    if not results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return
    for r in results:
        preview = r["content"][:120].replace("\n", " ")
        where = r.get("file_path")
        if where:
            where = f"{where}:{r.get('start_line')}-{r.get('end_line')}"
        else:
            where = r["id"]
        print(f"{int(r['score'] * 100):>3}%  {where}  {preview}")
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s), confidence {payload['readiness']['confidence']:.0%}")
    if payload.get("reindex_required"):
        print("Stored embeddings use a different dimension; run 'mnemos reindex'.", file=sys.stderr)


def cmd_index(args):
    """Index documentation and source files."""
    with _engine() as engine:
        summary = engine.index_paths(args.paths, corpus=args.corpus)
    if args.json:
        _print_json(summary)
        return
    print(
        f"Indexed {summary['indexed']}, unchanged {summary['skipped']}, "
        f"removed {summary['removed']}, failed {summary['failed']}"
    )
    for err in summary["errors"][:10]:
        print(f"  {err['path']}: {err['error']}", file=sys.stderr)


def cmd_retention(args):
    """Analyze retention, optionally applying cleanup."""
    from mnemos.retention import format_retention_report

    with _engine() as engine:
        analysis = engine.analyze_retention()
        applied = None
        if args.apply:
            applied = engine.apply_retention(mode=args.mode, dry_run=args.dry_run)
    if args.json:
        payload = analysis.to_dict(limit=None if args.verbose else 20)
        if applied is not None:
            payload["applied"] = applied
        _print_json(payload)
        return
    print(format_retention_report(analysis, verbose=args.verbose))
    if applied is not None:
        prefix = "[dry-run] would process" if applied["dry_run"] else f"{applied['mode']} cleanup:"
        print(f"{prefix} {applied['processed']} memories, {applied['succeeded']} succeeded, {applied['failed']} failed")


def cmd_restore(args):
    """Restore a soft-deleted or superseded memory."""
    with _engine() as engine:
        restored = engine.restore_memory(args.memory_id)
    if restored:
        print(f"Restored {args.memory_id}")
    else:
        print(f"{args.memory_id} is not invalidated (or does not exist)", file=sys.stderr)
        sys.exit(1)


def cmd_graph(args):
    """Knowledge graph maintenance."""
    with _engine() as engine:
        action = args.graph_action
        if action == "communities":
            result = engine.detect_communities(dry_run=args.dry_run)
        elif action == "centrality":
            result = engine.update_centrality_cache(method=args.method)
        elif action == "proximity":
            result = engine.create_proximity_links(min_cooccurrence=args.min_cooccurrence, dry_run=args.dry_run)
        elif action == "autolink":
            result = {"created": engine.auto_link_similar_memories(threshold=args.threshold, max_links=args.max_links)}
        elif action == "maintain":
            result = engine.run_graph_maintenance()
        elif action == "enrich":
            result = engine.enrich_links(limit=args.limit)
        elif action == "prune":
            result = engine.prune_weak_links(threshold=args.threshold, dry_run=args.dry_run)
        else:
            result = engine.graph_stats()
    _print_json(result)


def cmd_link(args):
    """Create an explicit link between two memories."""
    with _engine() as engine:
        result = engine.create_link(args.source_id, args.target_id, args.relation, args.weight)
    state = "Created" if result["created"] else "Exists"
    print(f"{state} link #{result['id']}: {args.source_id} -{args.relation}-> {args.target_id}")


def cmd_reindex(args):
    """Re-embed every memory and chunk with the current model."""
    with _engine() as engine:
        summary = engine.reindex_embeddings()
    _print_json(summary)


def cmd_stats(args):
    """Show store, graph and embedding statistics."""
    with _engine() as engine:
        data = engine.stats()
        data["graph"] = engine.graph_stats()
    _print_json(data)


def cmd_serve(args):
    """Run the MCP server (stdio by default, streamable HTTP with --http)."""
    import asyncio

    if args.http:
        from mnemos.server.http_server import get_or_create_api_key, run_http

        api_key = None if args.no_auth else (args.api_key or get_or_create_api_key())
        asyncio.run(run_http(host=args.host, port=args.port, api_key=api_key))
        return

    from mnemos.server.mcp_server import main as serve_main

    asyncio.run(serve_main())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mnemos",
        description="mnemos -- hybrid retrieval and memory graph for coding assistants",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    save_parser = subparsers.add_parser("save", help="Store a memory")
    save_parser.add_argument("content", nargs="+", help="Memory text")
    save_parser.add_argument(
        "-t", "--type", default="observation",
        choices=["observation", "decision", "learning", "error", "pattern", "dead_end"],
    )
    save_parser.add_argument("--tag", action="append", default=[], help="Tag (repeatable)")
    save_parser.add_argument("--source", help="Source file path or context")
    save_parser.add_argument("--quality", type=float, help="Quality score 0-1")
    save_parser.add_argument("--wait", action="store_true", help="Wait for the supersession check")
    save_parser.add_argument("--json", action="store_true")

    search_parser = subparsers.add_parser("search", help="Hybrid lexical + semantic search")
    search_parser.add_argument("query_text", nargs="+")
    search_parser.add_argument("--corpus", default="memories", choices=["memories", "docs", "code"])
    search_parser.add_argument("--limit", type=int, default=10)
    search_parser.add_argument("--alpha", type=float, help="0 = pure lexical, 1 = pure vector")
    search_parser.add_argument("--threshold", type=float)
    search_parser.add_argument("--mmr", type=float, metavar="LAMBDA", help="Diversify results (1 = pure relevance)")
    search_parser.add_argument("--regex", help="Content regex filter (code)")
    search_parser.add_argument("--symbol", help="File path substring filter (code)")
    search_parser.add_argument("--json", action="store_true")

    index_parser = subparsers.add_parser("index", help="Index docs/code files or directories")
    index_parser.add_argument("paths", nargs="+")
    index_parser.add_argument("--corpus", choices=["docs", "code"], help="Force a corpus")
    index_parser.add_argument("--json", action="store_true")

    retention_parser = subparsers.add_parser("retention", help="Analyze memory retention")
    retention_parser.add_argument("--apply", action="store_true", help="Process delete candidates")
    retention_parser.add_argument("--mode", choices=["soft", "hard"], default="soft")
    retention_parser.add_argument("--dry-run", action="store_true")
    retention_parser.add_argument("-v", "--verbose", action="store_true")
    retention_parser.add_argument("--json", action="store_true")

    restore_parser = subparsers.add_parser("restore", help="Restore an invalidated memory")
    restore_parser.add_argument("memory_id")

    graph_parser = subparsers.add_parser("graph", help="Knowledge graph maintenance")
    graph_sub = graph_parser.add_subparsers(dest="graph_action")
    communities_parser = graph_sub.add_parser("communities", help="Detect communities (label propagation)")
    communities_parser.add_argument("--dry-run", action="store_true")
    centrality_parser = graph_sub.add_parser("centrality", help="Recompute the centrality cache")
    centrality_parser.add_argument("--method", choices=["degree", "eigenvector"])
    proximity_parser = graph_sub.add_parser("proximity", help="Link memories sharing source contexts")
    proximity_parser.add_argument("--min-cooccurrence", type=int)
    proximity_parser.add_argument("--dry-run", action="store_true")
    autolink_parser = graph_sub.add_parser("autolink", help="Link similar memories")
    autolink_parser.add_argument("--threshold", type=float)
    autolink_parser.add_argument("--max-links", type=int)
    graph_sub.add_parser("maintain", help="Run all graph maintenance steps")
    enrich_parser = graph_sub.add_parser("enrich", help="Type similar_to links with the judgment LLM")
    enrich_parser.add_argument("--limit", type=int)
    prune_parser = graph_sub.add_parser("prune", help="Remove weak similar_to links")
    prune_parser.add_argument("--threshold", type=float)
    prune_parser.add_argument("--dry-run", action="store_true")
    graph_sub.add_parser("stats", help="Graph statistics")

    link_parser = subparsers.add_parser("link", help="Link two memories")
    link_parser.add_argument("source_id")
    link_parser.add_argument("target_id")
    link_parser.add_argument(
        "-r", "--relation", default="related",
        choices=["related", "caused_by", "leads_to", "similar_to", "contradicts", "implements",
                 "supersedes", "references"],
    )
    link_parser.add_argument("-w", "--weight", type=float, default=1.0)

    subparsers.add_parser("reindex", help="Re-embed everything after a model/dimension change")
    subparsers.add_parser("stats", help="Show statistics")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server")
    serve_parser.add_argument("--http", action="store_true", help="Serve streamable HTTP instead of stdio")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8765)
    serve_parser.add_argument("--api-key", help="API key (default: generated and stored in MNEMOS_HOME)")
    serve_parser.add_argument("--no-auth", action="store_true", help="Disable API key check")
    return parser


def main(argv=None):
    logging.basicConfig(
        level=os.environ.get("MNEMOS_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "save": cmd_save,
        "search": cmd_search,
        "index": cmd_index,
        "retention": cmd_retention,
        "restore": cmd_restore,
        "graph": cmd_graph,
        "link": cmd_link,
        "reindex": cmd_reindex,
        "stats": cmd_stats,
        "serve": cmd_serve,
    }

    if args.command not in commands:
        parser.print_help()
        return
    try:
        commands[args.command](args)
    except MnemosError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
