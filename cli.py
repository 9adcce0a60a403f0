#!/usr/bin/env python3
"""
Lacquer — Command Line Interface
Admin entry points for the database, the ingestion worker and the queue.

Usage:
    python cli.py init-db
    python cli.py worker                 # blocking queue drain loop
    python cli.py worker --once          # drain one batch and exit
    python cli.py queue-stats
    python cli.py purge-queue --yes
    python cli.py job 42
"""
import argparse
import json
import logging
import sys

from config.settings import config


def setup_logging(debug: bool = False):
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )


def _services():
    from outputs.dashboard import build_services
    return build_services(config)


def cmd_init_db(args):
    """Create tables and indexes (idempotent)."""
    from models.db import ensure_tables
    ensure_tables()
    print("Schema ensured.")


def cmd_worker(args):
    """Drain the ingestion queue, once or forever on the poll interval."""
    svc = _services()
    if args.once:
        acked = svc.worker.drain(svc.queue, config.ingestion.drain_batch_size)
        print(f"Handled {acked} message(s).")
        return

    from apscheduler.schedulers.blocking import BlockingScheduler
    from apscheduler.triggers.interval import IntervalTrigger

    scheduler = BlockingScheduler(job_defaults={"coalesce": True, "max_instances": 1})
    scheduler.add_job(
        svc.worker.drain,
        IntervalTrigger(seconds=config.ingestion.poll_interval),
        args=[svc.queue, config.ingestion.drain_batch_size],
        id="ingestion_drain", name="Ingestion queue drain",
        replace_existing=True,
    )
    print(f"Worker draining '{config.ingestion.queue_name}' every {config.ingestion.poll_interval}s. Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        print("Worker stopped.")


def cmd_queue_stats(args):
    print(json.dumps(_services().queue.stats(), indent=2))


def cmd_purge_queue(args):
    if not args.yes:
        print("Refusing to purge without --yes")
        sys.exit(1)
    purged = _services().queue.purge()
    print(f"Purged {purged} message(s) from '{config.ingestion.queue_name}'.")


def cmd_job(args):
    from models.ingestion_store import job_to_api

    job = _services().job_store.get_job(args.job_id)
    if job is None:
        print(f"Ingestion job {args.job_id} not found")
        sys.exit(1)
    print(json.dumps(job_to_api(job), indent=2, default=str))


def main():
    parser = argparse.ArgumentParser(description="Lacquer — capture & ingestion admin")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create database tables")

    worker_parser = subparsers.add_parser("worker", help="Run the ingestion queue worker")
    worker_parser.add_argument("--once", action="store_true", help="Drain a single batch and exit")

    subparsers.add_parser("queue-stats", help="Show ingestion queue depth")

    purge_parser = subparsers.add_parser("purge-queue", help="Delete every queued ingestion message")
    purge_parser.add_argument("--yes", action="store_true", help="Confirm the purge")

    job_parser = subparsers.add_parser("job", help="Show one ingestion job")
    job_parser.add_argument("job_id", type=int, help="Ingestion job id")

    args = parser.parse_args()
    setup_logging(args.debug or config.debug)

    commands = {
        "init-db": cmd_init_db,
        "worker": cmd_worker,
        "queue-stats": cmd_queue_stats,
        "purge-queue": cmd_purge_queue,
        "job": cmd_job,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == "__main__":
    main()
