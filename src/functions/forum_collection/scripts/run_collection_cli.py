"""CLI entry point for forum collection."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[4]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.forum_collection.core.orchestration.config_loader import build_collection_config
from src.functions.forum_collection.core.orchestration.service import build_service

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run forum collection jobs.")
    parser.add_argument("--sources-config", help="Path to sources.yaml (default: FORUM_SOURCES_CONFIG)")
    parser.add_argument("--storage", choices=("memory", "file", "supabase"), help="Storage backend override")
    parser.add_argument("--checkpoint-dir", help="Directory for file checkpoints")
    parser.add_argument("--concurrency", type=int, help="Concurrent extraction calls per item")
    parser.add_argument("--max-chunk-size", type=int, help="Maximum comments per chunk")
    parser.add_argument("--dry-run", action="store_true", help="Skip mention/entity writes")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--output",
        choices=("text", "json"),
        default="text",
        help="Output format for results (default: text)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("tick", help="Run one scheduler tick and execute the emitted jobs")

    manual = commands.add_parser("manual", help="Queue and run a manual job")
    manual.add_argument("source", help="Forum source, e.g. a subreddit name")
    manual.add_argument("--item", "-i", action="append", default=[], help="Post id to collect (can be repeated)")
    manual.add_argument("--keyword", "-k", help="Search keyword instead of latest posts")

    status = commands.add_parser("status", help="Show job status")
    status.add_argument("job_id", nargs="?", help="Show one job including its checkpoint")

    commands.add_parser("resume", help="Resume interrupted jobs from their checkpoints")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    load_env()
    setup_logging(level="DEBUG" if args.verbose else None)

    try:
        config = build_collection_config(
            {
                "sources_path": args.sources_config,
                "storage_backend": args.storage,
                "checkpoint_dir": args.checkpoint_dir,
                "concurrency": args.concurrency,
                "max_chunk_size": args.max_chunk_size,
                "dry_run": True if args.dry_run else None,
            }
        )
        service = build_service(config)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    if args.command == "tick":
        output = service.tick()
    elif args.command == "manual":
        job = service.request_manual(args.source, item_ids=args.item, keyword=args.keyword)
        output = {"requested": job.to_dict(), **service.tick()}
    elif args.command == "status":
        output = service.status(args.job_id)
    else:
        output = service.resume()

    if args.output == "json":
        json.dump(output, sys.stdout, indent=2, default=str)
        sys.stdout.write("\n")
    else:
        _print_summary(args.command, output)

    failed = (output.get("statuses") or {}).get("failed", 0)
    return 0 if failed == 0 else 2


def _print_summary(command: str, output: Dict[str, Any]) -> None:
    if command == "status":
        LOG.info("Status: %s", json.dumps(output, default=str))
        return
    LOG.info(
        "%s complete: %s jobs emitted, statuses %s",
        command.capitalize(),
        output.get("jobs_emitted"),
        output.get("statuses"),
    )
    for result in output.get("results") or []:
        summary = result["summary"]
        LOG.info(
            "[%s] %s: %s items, %s chunks, success %.2f%%",
            result["job"]["status"],
            summary["jobId"],
            summary["itemsProcessed"],
            summary["chunksTotal"],
            summary["successRate"],
        )
        if result.get("error"):
            LOG.warning("  error: %s", result["error"])


if __name__ == "__main__":  # pragma: no cover - manual execution entry
    sys.exit(run())
