"""docs-mcp CLI: main entry point.

Commands:
  build     Index a markdown corpus into an output directory
  validate  Resolve and chunk every file without embedding
  serve     Serve search and retrieval over a built corpus
  config    View and update corpus settings
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ALLOWED_CONFIG_KEYS = {
    "embedding_provider",
    "embedding_model",
    "embedding_dimensions",
    "embedding_base_url",
    "embedding_batch_size",
    "embedding_concurrency",
    "embedding_max_retries",
    "embedding_timeout",
    "tool_prefix",
    "corpus_description",
}
INT_CONFIG_KEYS = {
    "embedding_dimensions",
    "embedding_batch_size",
    "embedding_concurrency",
    "embedding_max_retries",
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docs-mcp",
        description="Index markdown documentation and serve ranked search over it",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # build
    build_parser = subparsers.add_parser("build", help="Index a markdown corpus")
    build_parser.add_argument("--docs-dir", required=True, help="Path to markdown corpus")
    build_parser.add_argument("--out", required=True, help="Output directory")
    build_parser.add_argument("--description", help="Corpus description")
    build_parser.add_argument("--embedding-provider", help="Embedding provider: none | hash | openai")
    build_parser.add_argument("--embedding-model", help="Embedding model override")
    build_parser.add_argument("--embedding-dimensions", type=int, help="Embedding dimensions")
    build_parser.add_argument("--embedding-base-url", help="Embedding API base URL")
    build_parser.add_argument("--embedding-batch-size", type=int, help="Embedding batch size")
    build_parser.add_argument("--embedding-concurrency", type=int, help="Embedding request concurrency")
    build_parser.add_argument("--embedding-max-retries", type=int, help="Embedding max retries for 429/5xx")
    build_parser.add_argument(
        "--rebuild-cache", action="store_true",
        help="Skip cache read and re-embed all chunks (still writes a fresh cache)",
    )
    build_parser.add_argument("--cache-dir", help="Directory for .embedding-cache/ (defaults to --out)")
    build_parser.add_argument("--source-commit", help="40-char commit SHA recorded in metadata")

    # validate
    validate_parser = subparsers.add_parser("validate", help="Check manifests and chunking")
    validate_parser.add_argument("--docs-dir", required=True, help="Path to markdown corpus")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Serve a built corpus over HTTP")
    serve_parser.add_argument("--out", required=True, help="Build output directory")
    serve_parser.add_argument("--docs-dir", help="Corpus directory (for settings lookup)")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8742, help="Bind port (default: 8742)")

    # config
    config_parser = subparsers.add_parser("config", help="View and update corpus settings")
    config_parser.add_argument("action", choices=["show", "get", "set"], help="Action to perform")
    config_parser.add_argument("key", nargs="?", help="Setting key (for get/set)")
    config_parser.add_argument("value", nargs="?", help="Setting value (for set)")
    config_parser.add_argument("--docs-dir", default=".", help="Corpus directory")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "build":
            return cmd_build(args)
        elif args.command == "validate":
            return cmd_validate(args)
        elif args.command == "serve":
            return cmd_serve(args)
        elif args.command == "config":
            return cmd_config(args)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


def _apply_build_overrides(settings, args: argparse.Namespace) -> None:
    overrides = {
        "embedding_provider": args.embedding_provider,
        "embedding_model": args.embedding_model,
        "embedding_dimensions": args.embedding_dimensions,
        "embedding_base_url": args.embedding_base_url,
        "embedding_batch_size": args.embedding_batch_size,
        "embedding_concurrency": args.embedding_concurrency,
        "embedding_max_retries": args.embedding_max_retries,
        "corpus_description": args.description,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(settings, key, value)


def cmd_build(args: argparse.Namespace) -> int:
    """Index a markdown corpus."""
    from docs_mcp.config import load_settings, validate_settings
    from docs_mcp.corpus.embedding import EmbeddingError, create_embedding_provider
    from docs_mcp.corpus.indexer import build_corpus
    from docs_mcp.corpus.manifest import ManifestError
    from docs_mcp.corpus.metadata import MetadataError

    docs_dir = Path(args.docs_dir)
    if not docs_dir.is_dir():
        print(f"Docs directory not found: {docs_dir}", file=sys.stderr)
        return 1

    settings = load_settings(docs_dir)
    _apply_build_overrides(settings, args)
    errors = validate_settings(settings)
    if errors:
        for error in errors:
            print(f"Invalid setting: {error}", file=sys.stderr)
        return 1

    try:
        provider = create_embedding_provider(
            settings.embedding_provider,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_base_url,
            batch_size=settings.embedding_batch_size,
            concurrency=settings.embedding_concurrency,
            max_retries=settings.embedding_max_retries,
            timeout=settings.embedding_timeout,
        )
        result = build_corpus(
            docs_dir,
            Path(args.out),
            provider,
            corpus_description=settings.corpus_description,
            rebuild_cache=args.rebuild_cache,
            cache_dir=Path(args.cache_dir) if args.cache_dir else None,
            source_commit=args.source_commit,
        )
    except (ManifestError, MetadataError, EmbeddingError) as e:
        print(f"Build failed: {e}", file=sys.stderr)
        return 1

    stats = result.embedding_stats
    print(
        f"Indexed {len(result.files)} files ({result.files_reused} unchanged), "
        f"{len(result.chunks)} chunks written to {args.out}"
    )
    if result.modified or result.deleted or result.files_reused:
        print(f"Changes: {len(result.added)} added, {len(result.modified)} modified, {len(result.deleted)} removed")
    if provider.dimensions > 0:
        hit_rate = (stats.hits / stats.total * 100) if stats.total else 0.0
        print(f"Embedding cache: {stats.hits} hits, {stats.misses} misses ({hit_rate:.1f}% hit rate)")
    if stats.estimated_cost > 0:
        print(f"Estimated embedding cost: ${stats.estimated_cost:.4f} (~{stats.estimated_tokens} tokens)")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Resolve and chunk every file, reporting per-file chunk counts."""
    from docs_mcp.corpus.indexer import validate_corpus
    from docs_mcp.corpus.manifest import ManifestError

    docs_dir = Path(args.docs_dir)
    if not docs_dir.is_dir():
        print(f"Docs directory not found: {docs_dir}", file=sys.stderr)
        return 1

    try:
        reports = validate_corpus(docs_dir)
    except ManifestError as e:
        print(f"Invalid manifest: {e}", file=sys.stderr)
        return 1

    for report in reports:
        marker = "" if report.has_manifest else "  (no manifest)"
        print(f"{report.filepath}: {report.chunk_count} chunks, chunk_by={report.strategy.chunk_by}{marker}")
    total = sum(r.chunk_count for r in reports)
    print(f"{len(reports)} files, {total} chunks")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Serve a built corpus over HTTP."""
    try:
        import uvicorn
    except ImportError:
        print("uvicorn not installed. Run: pip install uvicorn[standard]", file=sys.stderr)
        return 1

    os.environ["DOCS_MCP_OUT_DIR"] = str(Path(args.out).resolve())
    if args.docs_dir:
        os.environ["DOCS_MCP_DOCS_DIR"] = str(Path(args.docs_dir).resolve())

    uvicorn.run(
        "docs_mcp.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level="info",
    )
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """View and update corpus settings."""
    from docs_mcp.config import load_json_file, load_settings, validate_settings
    from docs_mcp.utils.paths import get_project_settings_path

    docs_dir = Path(args.docs_dir)
    action = args.action

    if action == "show":
        settings = load_settings(docs_dir)
        print(json.dumps(settings.to_dict(), indent=2))
        return 0

    if not args.key or (action == "set" and args.value is None):
        print(f"Usage: docs-mcp config {action} <key>{' <value>' if action == 'set' else ''}", file=sys.stderr)
        return 1
    if args.key not in ALLOWED_CONFIG_KEYS:
        print(
            f"Unknown key: {args.key}. "
            f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}",
            file=sys.stderr,
        )
        return 1

    if action == "get":
        value = getattr(load_settings(docs_dir), args.key)
        print(value if value is not None else "")
        return 0

    value: str | int | float = args.value
    try:
        if args.key in INT_CONFIG_KEYS:
            value = int(args.value)
        elif args.key == "embedding_timeout":
            value = float(args.value)
    except ValueError:
        print(f"{args.key} must be a number", file=sys.stderr)
        return 1

    settings_path = get_project_settings_path(docs_dir)
    data = load_json_file(settings_path)
    data[args.key] = value

    candidate = load_settings(docs_dir)
    setattr(candidate, args.key, value)
    errors = validate_settings(candidate)
    if errors:
        for error in errors:
            print(f"Invalid setting: {error}", file=sys.stderr)
        return 1

    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    print(f"Set {args.key} = {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
