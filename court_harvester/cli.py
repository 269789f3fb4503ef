"""
Court Harvester - CLI

Command-line interface for harvest runs and snapshot inspection.
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from court_harvester.config import HarvesterConfig, get_config, reload_config
from court_harvester.credentials import CredentialRotator
from court_harvester.enumeration import EnumerationCrawler, HarvestSummary, LoggingProgressListener
from court_harvester.errors import ConfigError, CredentialError, SnapshotCorrupted
from court_harvester.logging_config import get_logger, setup_logging
from court_harvester.storage import SnapshotStore


def _load_config(args) -> HarvesterConfig:
    config = reload_config(args.config) if args.config else get_config()

    if getattr(args, "keys_dir", None):
        config.rotation.keys_dir = args.keys_dir
    if getattr(args, "output_dir", None):
        config.crawl.output_dir = args.output_dir
    if getattr(args, "log_level", None):
        config.log_level = args.log_level
    if getattr(args, "json_logs", False):
        config.json_logs = True
    if getattr(args, "phases", None):
        config.crawl.phases = [p.strip() for p in args.phases.split(",") if p.strip()]

    config.validate()
    return config


def print_summary(summary: HarvestSummary):
    print("\n" + "=" * 50)
    print("HARVEST RESULTS")
    print("=" * 50)
    print(f"Discovered total:  {summary.total_entities}")
    print(f"New this run:      {summary.new_entities}")
    print(f"Requests:          {summary.counters.get('requests', 0)}")
    print(f"Failed queries:    {summary.counters.get('failures', 0)}")
    print(f"Hot queries:       {summary.counters.get('hot_queries', 0)}")
    print(f"Probe queries:     {summary.counters.get('probe_queries', 0)}")
    print(f"Duration:          {summary.duration_seconds:.1f}s")
    print(f"Phases completed:  {', '.join(summary.completed_phases) or '(none)'}")

    if summary.verification:
        print("\nVerification:")
        for status, count in sorted(summary.verification.items()):
            print(f"  - {status}: {count}")

    if summary.exhausted:
        print("\nUnable to verify (budget exhausted):")
        for phase, items in summary.unverified.items():
            if items:
                preview = ", ".join(items[:10]) + (" ..." if len(items) > 10 else "")
                print(f"  - {phase}: {len(items)} left ({preview})")
            else:
                print(f"  - {phase}: not started")

    if summary.by_region:
        print("\nTop regions:")
        top = sorted(summary.by_region.items(), key=lambda kv: kv[1], reverse=True)[:10]
        for region, count in top:
            print(f"  - {region}: {count}")

    print(f"\nSaved to: {summary.output_path}")
    print("=" * 50)


def harvest(args) -> int:
    """Run a harvest, optionally resuming from a snapshot."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(level=config.log_level, json_format=config.json_logs, log_file=config.log_file)
    logger = get_logger("cli")

    snapshots = SnapshotStore(config.crawl.output_dir, key_field=config.crawl.key_field)
    snapshot = None
    if args.resume:
        name = config.crawl.checkpoint_name if args.resume is True else args.resume
        try:
            snapshot = snapshots.load(name)
        except FileNotFoundError as e:
            if not args.start_empty:
                print(f"{e}. Use --start-empty to begin without it.", file=sys.stderr)
                return 1
            logger.warning(f"{e}, starting empty")
        except SnapshotCorrupted as e:
            if not args.start_empty:
                print(f"{e}\nRefusing to continue. Use --start-empty to begin from nothing.", file=sys.stderr)
                return 1
            logger.warning(f"{e}, starting empty as requested")

    try:
        rotator = CredentialRotator.from_directory(
            rotation=config.rotation,
            gateway=config.gateway,
            key_field=config.crawl.key_field,
        )
    except CredentialError as e:
        print(f"Credential error: {e}", file=sys.stderr)
        return 1

    listeners = [LoggingProgressListener(every=config.crawl.progress_log_every)]

    async def _run() -> HarvestSummary:
        async with rotator:
            if snapshot is not None:
                crawler = EnumerationCrawler.from_snapshot(
                    snapshot, rotator, settings=config.crawl, snapshots=snapshots, listeners=listeners
                )
            else:
                crawler = EnumerationCrawler(
                    rotator, settings=config.crawl, snapshots=snapshots, listeners=listeners
                )
            return await crawler.harvest()

    try:
        summary = asyncio.run(_run())
    except KeyboardInterrupt:
        logger.warning("Interrupted; checkpoint written")
        return 130

    print_summary(summary)
    return 0


def status(args) -> int:
    """Show the meta block of a snapshot."""
    try:
        config = _load_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    setup_logging(level="WARNING")

    snapshots = SnapshotStore(config.crawl.output_dir, key_field=config.crawl.key_field)
    name = args.name or config.crawl.output_name
    try:
        snapshot = snapshots.load(name)
    except (FileNotFoundError, SnapshotCorrupted) as e:
        print(str(e), file=sys.stderr)
        return 1

    meta = snapshot.meta
    progress = snapshot.progress

    print("\n" + "=" * 50)
    print("SNAPSHOT STATUS")
    print("=" * 50)
    print(f"File:       {snapshots.path_for(name)}")
    print(f"Entities:   {len(snapshot)}")
    print(f"Timestamp:  {meta.get('timestamp', '?')}")
    print(f"Phase:      {meta.get('phase') or '?'}")
    print(f"Completed:  {', '.join(progress.get('completed_phases', [])) or '(none)'}")

    counters = progress.get("counters") or {}
    if counters:
        print("\nCounters:")
        for key, value in counters.items():
            print(f"  - {key}: {value}")

    pending = {k: v for k, v in (progress.get("pending") or {}).items() if v}
    print("\nPending:")
    if pending:
        for phase, items in pending.items():
            print(f"  - {phase}: {len(items)}")
    else:
        print("  (none)")

    print("=" * 50)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI main entry point."""
    parser = argparse.ArgumentParser(
        description="Court Harvester CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # harvest command
    harvest_parser = subparsers.add_parser(
        "harvest",
        help="Enumerate the entity space"
    )
    harvest_parser.add_argument(
        "--resume",
        nargs="?",
        const=True,
        metavar="NAME",
        help="Resume from a snapshot in the output directory (default: the checkpoint)"
    )
    harvest_parser.add_argument(
        "--start-empty",
        action="store_true",
        help="Start from nothing if the resume snapshot is missing or unreadable"
    )
    harvest_parser.add_argument("--config", help="Path to a YAML config file")
    harvest_parser.add_argument("--phases", help="Comma-separated phases, e.g. prefix,gap,tail")
    harvest_parser.add_argument("--keys-dir", help="Directory of credential files")
    harvest_parser.add_argument("--output-dir", help="Directory for snapshots")
    harvest_parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    harvest_parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    harvest_parser.set_defaults(func=harvest)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show a snapshot's summary"
    )
    status_parser.add_argument("name", nargs="?", help="Snapshot file name (default: final output)")
    status_parser.add_argument("--config", help="Path to a YAML config file")
    status_parser.add_argument("--output-dir", help="Directory for snapshots")
    status_parser.set_defaults(func=status)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
