#!/usr/bin/env python3
"""
Run the scan queue from the command line (cron or manual operation).

Usage:
    cd backend
    python -m scripts.queue_worker process [--limit 5]
    python -m scripts.queue_worker sweep
    python -m scripts.queue_worker enrich [--limit 5] [--user USER_ID]
    python -m scripts.queue_worker stats
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Load environment variables from .env before any other imports
from dotenv import load_dotenv
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from scan_pipeline.config import Config
from scan_pipeline.db import ensure_schema
from scan_pipeline.services.backfill import EnrichmentBackfill
from scan_pipeline.services.enrichment_queue import EnrichmentQueueStore
from scan_pipeline.services.pipeline import ScanPipeline
from scan_pipeline.services.queue_store import QueueStore
from scan_pipeline.services.sweeper import Sweeper

logger = logging.getLogger("queue_worker")


def cmd_process(queue: QueueStore, args: argparse.Namespace) -> int:
    result = asyncio.run(ScanPipeline(queue=queue).process_queue(args.limit))
    print(f"Processed {result.processed}, failed {result.failed} of {result.total}")
    for outcome in result.outcomes:
        if not outcome.success:
            print(f"  job {outcome.job_id}: {outcome.error_message}")
    return 0 if result.failed == 0 else 1


def cmd_sweep(queue: QueueStore, args: argparse.Namespace) -> int:
    result = Sweeper(queue=queue).run_sweep()
    print(f"Requeued {len(result.requeued)}, finalized {len(result.finalized)}")
    return 0


def cmd_enrich(queue: QueueStore, args: argparse.Namespace) -> int:
    backfill = EnrichmentBackfill(EnrichmentQueueStore(queue.db_path))
    if args.user:
        queued = backfill.queue_user_wines(args.user)
        print(f"Queued {queued.queued}, skipped {queued.skipped} for {args.user}")
    result = asyncio.run(backfill.process_enrichment_queue(args.limit))
    print(f"Enriched {result.processed}, failed {result.failed} of {result.total} (recovered {result.recovered})")
    for outcome in result.outcomes:
        if not outcome.success:
            print(f"  enrichment job {outcome.job_id}: {outcome.error_message}")
    return 0 if result.failed == 0 else 1


def _print_counts(title: str, counts: dict[str, int]) -> None:
    print(title)
    for status, count in sorted(counts.items()):
        print(f"  {status:<10} {count}")
    print(f"  {'total':<10} {sum(counts.values())}")


def cmd_stats(queue: QueueStore, args: argparse.Namespace) -> int:
    _print_counts("scan queue", queue.counts_by_status())
    _print_counts("enrichment queue", EnrichmentQueueStore(queue.db_path).counts_by_status())
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Operate the wine scan queue")
    parser.add_argument("--db", default=None, help="SQLite path (default: DATABASE_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Claim and process pending scans")
    process.add_argument("--limit", type=int, default=None, help="Jobs to claim (capped)")
    process.set_defaults(func=cmd_process)

    sweep = subparsers.add_parser("sweep", help="Requeue stuck and failed jobs")
    sweep.set_defaults(func=cmd_sweep)

    enrich = subparsers.add_parser("enrich", help="Fill missing details on stored wines")
    enrich.add_argument("--limit", type=int, default=None, help="Enrichment jobs to claim (capped)")
    enrich.add_argument("--user", default=None, help="Queue this user's journal wines first")
    enrich.set_defaults(func=cmd_enrich)

    stats = subparsers.add_parser("stats", help="Job counts by status for both queues")
    stats.set_defaults(func=cmd_stats)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, Config.log_level(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db_path = args.db or Config.database_path()
    ensure_schema(db_path)
    queue = QueueStore(db_path)
    try:
        return args.func(queue, args)
    finally:
        queue.close()


if __name__ == "__main__":
    sys.exit(main())
