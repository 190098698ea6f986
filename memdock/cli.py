"""
memdock CLI - Command-line interface for the memory cache and classifiers.

Usage:
    python -m memdock.cli [--json] [--org ORG] [--project PROJECT] [--cache-dir DIR] <command>

    python -m memdock.cli classify "<query>"
    python -m memdock.cli extract [--user TEXT] [--assistant TEXT] [--force]
    python -m memdock.cli cache-status
    python -m memdock.cli cache-search <term>
    python -m memdock.cli cache-get <key>
    python -m memdock.cli pending
    python -m memdock.cli sync
    python -m memdock.cli replay
    python -m memdock.cli capture [--user TEXT] [--assistant TEXT] [--force]

Global Options:
    --json              Output as JSON for automation/scripting
    --org ORG           Organization slug (default: MEMDOCK_ORG)
    --project PROJECT   Project slug (default: MEMDOCK_PROJECT)
    --cache-dir DIR     Local cache root (default: MEMDOCK_CACHE_DIR or ~/.memdock)
"""

import sys
import asyncio
import argparse
import json

import httpx

from .config import settings
from .errors import MemdockError
from .extractor import CandidateExtractor
from .intent import classify_search_intent
from .local_cache import LocalCache
from .logging_config import configure_logging


def safe_print(text: str, file=None) -> None:
    """Print text safely, handling Unicode encoding errors on Windows."""
    output = file or sys.stdout
    try:
        print(text, file=output)
    except UnicodeEncodeError:
        encoding = output.encoding or 'utf-8'
        safe_text = text.encode(encoding, errors='replace').decode(encoding, errors='replace')
        print(safe_text, file=output)


def _print_records(records: list, limit: int = 20) -> None:
    for record in records[:limit]:
        content = record['content'].replace("\n", " ")
        safe_print(f"  [{record['priority']}] {record['key']}: {content[:60]}")
    if len(records) > limit:
        print(f"  ... and {len(records) - limit} more")


def cache_status(cache: LocalCache) -> dict:
    last = cache.last_synced_at
    return {
        "org": cache.org,
        "project": cache.project,
        "cache_path": str(cache.cache_path),
        "last_synced_at": last.isoformat() if last else None,
        "stale": cache.is_stale(),
        "memories": len(cache.list()),
        "pending_writes": cache.pending_count(),
    }


async def run_remote(command: str, config, cache: LocalCache, args) -> dict:
    """Commands that talk to the remote store."""
    from .client import MemoryClient

    async with MemoryClient(config=config, local_cache=cache) as client:
        if command == "sync":
            count = await client.sync_local_cache()
            return {"synced": count}

        if command == "replay":
            result = await client.replay_pending_writes()
            return result.to_dict()

        if command == "capture":
            from .capture import TurnCapture

            capture = TurnCapture(client)
            result = await capture.capture(args.user, args.assistant, force_store=args.force)
            return result.to_dict()

    raise ValueError(f"Unknown remote command: {command}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="memdock CLI")

    # Global options
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--org", help="Organization slug")
    parser.add_argument("--project", help="Project slug")
    parser.add_argument("--cache-dir", help="Local cache root directory")
    parser.add_argument("--log-level", default=None, help="Log level (default: MEMDOCK_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    classify_parser = subparsers.add_parser("classify", help="Classify a search query's intent")
    classify_parser.add_argument("query", help="Search query")

    for name, help_text in (
        ("extract", "Propose memories from conversation text"),
        ("capture", "Extract, admit and store memories from a turn"),
    ):
        turn_parser = subparsers.add_parser(name, help=help_text)
        turn_parser.add_argument("--user", default=None, help="User message")
        turn_parser.add_argument("--assistant", default=None, help="Assistant message")
        turn_parser.add_argument("--force", action="store_true",
                                 help="Keep generic capability lines too")

    subparsers.add_parser("cache-status", help="Show local cache freshness and size")

    search_parser = subparsers.add_parser("cache-search", help="Substring search in the local cache")
    search_parser.add_argument("term", help="Search term")

    get_parser = subparsers.add_parser("cache-get", help="Get one memory from the local cache")
    get_parser.add_argument("key", help="Memory key")

    subparsers.add_parser("pending", help="List writes queued while offline")
    subparsers.add_parser("sync", help="Refresh the local cache from the remote store")
    subparsers.add_parser("replay", help="Re-send writes queued while offline")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.log_level or settings.log_level)

    overrides = {}
    if args.org:
        overrides["org"] = args.org
    if args.project:
        overrides["project"] = args.project
    if args.cache_dir:
        overrides["cache_dir"] = args.cache_dir
    config = settings.model_copy(update=overrides) if overrides else settings

    if args.command == "classify":
        result = classify_search_intent(args.query)
        if args.json:
            print(json.dumps(result.to_dict()))
        else:
            print(f"Intent: {result.intent} ({result.confidence})")
            print(f"Terms: {', '.join(result.extracted_terms) or '-'}")
            if result.suggested_types:
                print(f"Suggested types: {', '.join(result.suggested_types)}")
        return

    if args.command == "extract":
        candidates = CandidateExtractor(config.max_candidates).extract(
            args.user, args.assistant, force_store=args.force
        )
        if args.json:
            print(json.dumps([c.to_dict() for c in candidates]))
        else:
            print(f"Found {len(candidates)} candidate(s):")
            for c in candidates:
                safe_print(f"  [{c.type}] ({c.confidence:.2f}) {c.title}")
        return

    cache = LocalCache(config.org, config.project, config=config)

    try:
        if args.command == "cache-status":
            result = cache_status(cache)
            if args.json:
                print(json.dumps(result))
            else:
                print(f"Cache: {result['cache_path']}")
                print(f"Last synced: {result['last_synced_at'] or 'never'}")
                print(f"Stale: {'yes' if result['stale'] else 'no'}")
                print(f"Memories: {result['memories']}")
                print(f"Pending writes: {result['pending_writes']}")

        elif args.command == "cache-search":
            records = cache.search(args.term)
            if args.json:
                print(json.dumps({"memories": records}))
            else:
                print(f"Found {len(records)} memories:")
                _print_records(records)

        elif args.command == "cache-get":
            record = cache.get(args.key)
            if record is None:
                if args.json:
                    print(json.dumps({"memory": None}))
                else:
                    print(f"No cached memory with key '{args.key}'", file=sys.stderr)
                sys.exit(1)
            if args.json:
                print(json.dumps({"memory": record}))
            else:
                safe_print(f"{record['key']} (priority {record['priority']})")
                safe_print(record['content'])

        elif args.command == "pending":
            writes = cache.get_pending_writes()
            if args.json:
                print(json.dumps({"pending": [w.to_dict() for w in writes]}))
            else:
                print(f"Pending writes: {len(writes)}")
                for w in writes:
                    safe_print(f"  {w.method} {w.path} (queued {w.enqueued_at.isoformat()})")

        elif args.command in ("sync", "replay", "capture"):
            try:
                result = asyncio.run(run_remote(args.command, config, cache, args))
            except (MemdockError, httpx.HTTPError) as e:
                if args.json:
                    print(json.dumps({"error": str(e)}))
                else:
                    print(f"ERROR: {args.command} failed: {e}", file=sys.stderr)
                sys.exit(1)

            if args.json:
                print(json.dumps(result, default=str))
            elif args.command == "sync":
                print(f"Synced {result['synced']} memories into {cache.cache_path}")
            elif args.command == "replay":
                print(f"Replayed: {result['replayed']}")
                if result['cleared']:
                    print("Queue cleared.")
                elif result['failed']:
                    print(f"Stopped on failure: {result['error']}")
            else:
                print(f"Extracted: {result['extracted']}, stored: {result['stored']}, "
                      f"queued: {len(result['queued_keys'])}, rejected: {len(result['rejected'])}")
                for warning in result['warnings']:
                    safe_print(f"  {warning}")

            if args.command == "replay" and result['failed']:
                sys.exit(1)
    finally:
        cache.close()


if __name__ == "__main__":
    main()
