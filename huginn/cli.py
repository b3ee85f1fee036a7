"""
Huginn CLI: operational utilities for a local Huginn data directory.

Usage:
    huginn check-config [--config PATH]
    huginn search REPOSITORY QUERY [--count N] [--config PATH]
    huginn reprocess [--limit N] [--config PATH]
    huginn stats [--config PATH]

Commands:
    check-config    Load and validate configuration; print the effective
                    settings (secrets are never printed).
    search          Run a progressive search against one repository.
    reprocess       Replay failed and deferred chunks through the gateway.
    stats           Print cache, queue and store statistics.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from huginn.core.config import HuginnConfig
from huginn.core.errors import HuginnError
from huginn.core.service import MemoryService

logger = logging.getLogger("Huginn")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "info", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def load_config(path: Optional[str]) -> HuginnConfig:
    if path:
        return HuginnConfig.from_yaml(path)
    return HuginnConfig.from_env()


def cmd_check_config(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except (ValidationError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Cannot read configuration: {e}", file=sys.stderr)
        return 2
    print(json.dumps(config.model_dump(mode="json"), indent=2))
    return 0


async def _with_service(config: HuginnConfig, fn):
    service = MemoryService(config)
    await service.start()
    try:
        return await fn(service)
    finally:
        await service.shutdown()


def cmd_search(args: argparse.Namespace, config: HuginnConfig) -> int:
    async def _run(service: MemoryService):
        return await service.search(args.repository, args.query, desired_count=args.count)

    results = asyncio.run(_with_service(config, _run))
    for rank, result in enumerate(results, 1):
        origin = f" [from {result.source_repository}]" if result.cross_repository else ""
        preview = result.chunk.content.replace("\n", " ")[:120]
        print(f"{rank:>2}. {result.score:.3f} ({result.pass_name}){origin} {preview}")
    if not results:
        print("No results.")
    return 0


def cmd_reprocess(args: argparse.Namespace, config: HuginnConfig) -> int:
    async def _run(service: MemoryService):
        return await service.reprocess_failed(limit=args.limit)

    summary = asyncio.run(_with_service(config, _run))
    print(json.dumps(summary, indent=2))
    return 1 if summary.get("failed") else 0


def cmd_stats(args: argparse.Namespace, config: HuginnConfig) -> int:
    async def _run(service: MemoryService):
        return await service.stats()

    print(json.dumps(asyncio.run(_with_service(config, _run)), indent=2, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    # --config is accepted before or after the command
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        metavar="PATH",
        help="YAML configuration file (default: HUGINN_* environment variables).",
    )

    parser = argparse.ArgumentParser(
        prog="huginn",
        description="Huginn CLI: operational utilities for the Huginn memory engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  huginn check-config --config huginn.yaml\n"
               "  huginn search my-repo \"why did we pick qdrant\" --count 5\n"
               "  huginn reprocess --limit 50\n"
               "  huginn stats\n",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="YAML configuration file (default: HUGINN_* environment variables).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "check-config", parents=[common], help="Validate configuration and print effective settings."
    )

    search = subparsers.add_parser("search", parents=[common], help="Progressive search in one repository.")
    search.add_argument("repository")
    search.add_argument("query")
    search.add_argument("--count", type=int, default=5, help="Desired number of results.")

    reprocess = subparsers.add_parser("reprocess", parents=[common], help="Replay failed and deferred chunks.")
    reprocess.add_argument("--limit", type=int, default=100, help="Maximum chunks to replay.")

    subparsers.add_parser("stats", parents=[common], help="Print cache, queue and store statistics.")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "check-config":
        return cmd_check_config(args)

    try:
        config = load_config(args.config)
    except (ValidationError, ValueError, OSError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging(config.logging.level, config.logging.file)

    try:
        if args.command == "search":
            return cmd_search(args, config)
        if args.command == "reprocess":
            return cmd_reprocess(args, config)
        if args.command == "stats":
            return cmd_stats(args, config)
    except HuginnError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
