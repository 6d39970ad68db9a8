#!/usr/bin/env python3
"""
Media engine CLI - run the worker and inspect the transcode queue.
"""

import argparse
import asyncio
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.table import Table

from broker.job_queue import BrokerUnavailableError, JobReference, RedisStreamQueue
from broker.job_store import JobLookupError, RedisJobStore
from broker.redis_client import RedisClient, redact_url
from config import ERROR_SUMMARY_MAX_LENGTH, LOG_LEVEL, REDIS_URL

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


async def _connect() -> RedisClient:
    if not REDIS_URL:
        raise CLIError("MEDIA_ENGINE_REDIS_URL is not set")
    client = await RedisClient.get_instance()
    if not await client.health_check(force=True):
        await RedisClient.reset_instance()
        raise CLIError(f"Could not connect to Redis at {redact_url(REDIS_URL)}")
    return client


async def enqueue_job(
    job_id: str,
    source: Optional[str] = None,
    profile: Optional[str] = None,
    output: Optional[str] = None,
) -> str:
    """Store job metadata (when a source is given) and publish the job. Returns the entry id."""
    client = await _connect()
    try:
        if source:
            source_uri = str(Path(source).resolve()) if "://" not in source else source
            await RedisJobStore(client).save_job(job_id, source_uri, profile=profile, output_target=output)
        queue = RedisStreamQueue(client)
        return await queue.publish_job(
            JobReference(job_id=job_id, profile=profile, created_at=datetime.now(timezone.utc))
        )
    finally:
        await RedisClient.reset_instance()


async def fetch_stats() -> Dict[str, Any]:
    client = await _connect()
    try:
        return await RedisStreamQueue(client).get_queue_stats()
    finally:
        await RedisClient.reset_instance()


async def fetch_dead_letters(count: int) -> List[Tuple[str, Dict[str, Any]]]:
    client = await _connect()
    try:
        return await RedisStreamQueue(client).list_dead_letters(count)
    finally:
        await RedisClient.reset_instance()


def cmd_worker(args):
    from worker.main import configure_logging, run_worker

    configure_logging(args.log_level.upper() if args.log_level else LOG_LEVEL)
    sys.exit(asyncio.run(run_worker()))


def cmd_enqueue(args):
    job_id = args.job_id or uuid.uuid4().hex[:12]
    if args.source and "://" not in args.source and not Path(args.source).is_file():
        print(f"Error: Source file not found: {args.source}")
        sys.exit(1)
    try:
        message_id = asyncio.run(enqueue_job(job_id, args.source, args.profile, args.output))
    except (CLIError, BrokerUnavailableError, JobLookupError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    print("Job queued.")
    print(f"  Job ID: {job_id}")
    print(f"  Entry: {message_id}")


def cmd_stats(args):
    try:
        stats = asyncio.run(fetch_stats())
    except (CLIError, BrokerUnavailableError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    table = Table(title=f"Stream {stats['stream']} (group {stats['group']})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Entries", str(stats["length"]))
    table.add_row("Pending", str(stats["pending"]))
    table.add_row("Dead-lettered", str(stats["dead_letter"]))
    console.print(table)

    if stats["consumers"]:
        consumers = Table(title="Consumers")
        consumers.add_column("Name")
        consumers.add_column("Pending", justify="right")
        consumers.add_column("Idle", justify="right")
        for c in stats["consumers"]:
            consumers.add_row(c["name"], str(c["pending"]), f"{c['idle_ms'] / 1000:.1f}s")
        console.print(consumers)


def cmd_dead_letters(args):
    try:
        records = asyncio.run(fetch_dead_letters(args.count))
    except (CLIError, BrokerUnavailableError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if not records:
        print("No dead-lettered jobs.")
        return

    table = Table(title=f"Dead-lettered jobs (newest {len(records)})")
    table.add_column("Entry")
    table.add_column("Job ID")
    table.add_column("Deliveries", justify="right")
    table.add_column("Failed At")
    table.add_column("Error")
    for entry_id, data in records:
        error = data.get("error", "")
        if len(error) > ERROR_SUMMARY_MAX_LENGTH:
            error = error[: ERROR_SUMMARY_MAX_LENGTH - 3] + "..."
        table.add_row(
            entry_id,
            data.get("jobID", data.get("job_id", "?")),
            data.get("delivery_count", "?"),
            data.get("failed_at", "")[:19],
            error,
        )
    console.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="media-engine", description="Media engine transcode worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run a transcode worker until SIGINT/SIGTERM")
    worker_parser.add_argument("--log-level", help="Override MEDIA_ENGINE_LOG_LEVEL")
    worker_parser.set_defaults(func=cmd_worker)

    enqueue_parser = subparsers.add_parser("enqueue", help="Publish a transcode job")
    enqueue_parser.add_argument("job_id", nargs="?", help="Job ID (default: random)")
    enqueue_parser.add_argument("-s", "--source", help="Source media path or file:// URI")
    enqueue_parser.add_argument("-p", "--profile", help="Transcode profile name")
    enqueue_parser.add_argument("-o", "--output", help="Output directory (default: OUTPUT_DIR/<job_id>)")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.set_defaults(func=cmd_stats)

    dlq_parser = subparsers.add_parser("dead-letters", help="List dead-lettered jobs")
    dlq_parser.add_argument("-n", "--count", type=positive_int, default=20, help="Records to show (default: 20)")
    dlq_parser.set_defaults(func=cmd_dead_letters)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
