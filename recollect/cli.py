"""
Recollect CLI: maintenance and inspection for a local memory database.

Usage:
    recollect [global options] <command> [options]
    python -m recollect.cli --help

Commands:
    stats                 System-wide counts by type and importance.
    search                Search active memories (lexical/vector/hybrid/expanded).
    store                 Store one memory.
    cleanup-expired       Delete memories whose expiry has passed.
    rebuild-index         Rebuild the FTS5 lexical index from the memories table.
    backfill-embeddings   Embed active memories that have no vector yet.
    health                Report store, index and embedding service status.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

from recollect.core.config import RecollectConfig
from recollect.core.memory import MemoryService
from recollect.core.types import MemoryType, SearchStrategy
from recollect.errors import InvalidInputError

logger = logging.getLogger("Recollect.CLI")


def _load_config(args: argparse.Namespace) -> RecollectConfig:
    config = RecollectConfig.from_yaml(args.config) if args.config else RecollectConfig.from_env()
    if args.db:
        config.metadata.path = args.db
    if args.no_embedding:
        config.embedding.enabled = False
    if args.no_completion:
        config.completion.enabled = False
    return config


def _emit(payload: Any) -> None:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, sort_keys=True))


def _with_service(args: argparse.Namespace, action: Callable[[MemoryService], Awaitable[int]]) -> int:
    async def runner() -> int:
        service = MemoryService(_load_config(args))
        await service.initialize()
        try:
            return await action(service)
        finally:
            await service.shutdown()

    try:
        return asyncio.run(runner())
    except InvalidInputError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


def cmd_stats(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        _emit(service.get_stats())
        return 0

    return _with_service(args, action)


def cmd_search(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        response = await service.search(
            args.query,
            strategy=args.strategy,
            limit=args.limit,
            type=args.type,
            tags=args.tag or None,
        )
        for warning in response.warnings:
            print(f"warning: {warning}", file=sys.stderr)
        _emit(
            {
                "strategy": response.strategy.value,
                "total_found": response.total_found,
                "vector_search_used": response.vector_search_used,
                "results": [
                    {
                        "id": m.id,
                        "score": round(response.scores.get(m.id, 0.0), 6),
                        "type": m.type.value,
                        "importance": m.importance.value,
                        "content": m.content,
                        "tags": m.tags,
                    }
                    for m in response.memories
                ],
            }
        )
        return 0

    return _with_service(args, action)


def cmd_store(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        memory = await service.store(
            args.content,
            args.type,
            importance=args.importance,
            source=args.source,
            tags=args.tag,
            confidence=args.confidence,
        )
        _emit({"id": memory.id, "embedded": memory.embedding is not None, "tags": memory.tags})
        return 0

    return _with_service(args, action)


def cmd_cleanup_expired(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        _emit({"deleted": service.cleanup_expired()})
        return 0

    return _with_service(args, action)


def cmd_rebuild_index(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        ok = service.rebuild_index()
        _emit({"rebuilt": ok, "index": service.get_index_stats().model_dump()})
        return 0 if ok else 1

    return _with_service(args, action)


def cmd_backfill_embeddings(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        result = await service.backfill_embeddings(batch_size=args.batch_size, limit=args.limit)
        _emit(result)
        return 0 if result.failed_batches == 0 else 1

    return _with_service(args, action)


def cmd_health(args: argparse.Namespace) -> int:
    async def action(service: MemoryService) -> int:
        report = await service.check_health()
        _emit(report)
        return 0 if report.store else 1

    return _with_service(args, action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recollect",
        description="Recollect CLI: maintenance and inspection for the memory store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  recollect stats\n"
               "  recollect search \"input validation\" --strategy lexical\n"
               "  recollect store \"Prefer small PRs\" --type preference --tag process\n"
               "  recollect --no-embedding rebuild-index\n"
               "  recollect backfill-embeddings --batch-size 20\n",
    )
    parser.add_argument("--config", metavar="PATH", default=None, help="YAML config file (default: environment).")
    parser.add_argument("--db", metavar="PATH", default=None, help="SQLite database path override.")
    parser.add_argument("--no-embedding", action="store_true", help="Do not contact the embedding service.")
    parser.add_argument("--no-completion", action="store_true", help="Do not contact the completion service.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Show system-wide memory counts.")

    search = subparsers.add_parser("search", help="Search active memories.")
    search.add_argument("query")
    search.add_argument(
        "--strategy",
        choices=[s.value for s in SearchStrategy],
        default=None,
        help="Retrieval strategy (default: configured strategy, normally hybrid).",
    )
    search.add_argument("--limit", type=int, default=10)
    search.add_argument("--type", choices=[t.value for t in MemoryType], default=None)
    search.add_argument("--tag", action="append", default=[], help="Require this tag (repeatable).")

    store = subparsers.add_parser("store", help="Store one memory.")
    store.add_argument("content")
    store.add_argument("--type", choices=[t.value for t in MemoryType], required=True)
    store.add_argument("--importance", choices=["low", "medium", "high", "critical"], default=None)
    store.add_argument("--source", choices=["system", "worker", "human"], default="human")
    store.add_argument("--tag", action="append", default=[], help="Tag (repeatable).")
    store.add_argument("--confidence", type=float, default=1.0)

    subparsers.add_parser("cleanup-expired", help="Delete memories past their expiry.")
    subparsers.add_parser("rebuild-index", help="Rebuild the lexical index.")

    backfill = subparsers.add_parser("backfill-embeddings", help="Embed memories that lack a vector.")
    backfill.add_argument("--batch-size", type=int, default=10)
    backfill.add_argument("--limit", type=int, default=1000)

    subparsers.add_parser("health", help="Report component health.")
    return parser


COMMANDS = {
    "stats": cmd_stats,
    "search": cmd_search,
    "store": cmd_store,
    "cleanup-expired": cmd_cleanup_expired,
    "rebuild-index": cmd_rebuild_index,
    "backfill-embeddings": cmd_backfill_embeddings,
    "health": cmd_health,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
