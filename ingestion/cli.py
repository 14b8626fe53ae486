#!/usr/bin/env python3
"""
CLI for running crawls and inspecting sources.

Usage:
    python -m ingestion.cli crawl <source_id> [--max-pages N] [--max-listings N] [--dry-run]
    python -m ingestion.cli crawl-all [--limit N] [--dry-run]
    python -m ingestion.cli sources [--json]
    python -m ingestion.cli health <source_id> [--window N]

Examples:
    # Preview what Craigslist would yield without touching the store
    python -m ingestion.cli crawl craigslist-nyc --max-pages 1 --dry-run

    # Crawl every enabled source once
    python -m ingestion.cli crawl-all
"""

import argparse
import json
import sys

from ingestion.context import build_context
from ingestion.errors import ConfigurationError, SourceNotFoundError
from utils.config import Config
from utils.formatting import format_age, format_percent
from utils.log import configure_logging


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_crawl(args, context):
    """Crawl one source synchronously."""
    options = context.crawl_options(
        max_pages=args.max_pages,
        max_listings=args.max_listings,
        dry_run=args.dry_run,
    )
    try:
        result = context.orchestrator.run_crawl(args.source_id, options)
    except SourceNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(f"Error: {args.source_id} is misconfigured: {e}", file=sys.stderr)
        return 2

    _print_json(result.to_dict())
    return 0


def cmd_crawl_all(args, context):
    """Crawl enabled sources one after another."""
    sources = [s.id for s in context.registry.list_sources(enabled_only=True)]
    if args.limit:
        sources = sources[: args.limit]

    options = context.crawl_options(dry_run=args.dry_run)
    results = context.orchestrator.run_many(sources, options)

    _print_json({
        "sourcesCrawled": len(results),
        "totalFound": sum(r.listings_found for r in results),
        "totalNew": sum(r.new_listings for r in results),
        "totalDelisted": sum(r.delisted_listings for r in results),
        "results": [r.to_dict() for r in results],
    })
    return 0 if all(not r.errors or r.listings_found for r in results) else 1


def cmd_sources(args, context):
    """List sources with their health."""
    report = context.registry.status_report(context.listings.count_active_by_source())

    if args.json:
        _print_json([s.to_dict() for s in report])
        return 0

    for status in report:
        rate = format_percent(status.failure_rate) if status.failure_rate is not None else "-"
        print(
            f"{status.source_id:<20} {status.kind.value:<18} "
            f"{'on' if status.enabled else 'off':<4} p{status.priority:<3} "
            f"{status.status.value:<9} fail {rate:>6}  "
            f"{status.listings_count:>5} active  crawled {format_age(status.last_crawled_at)}"
        )
    return 0


def cmd_health(args, context):
    """Show the rolling health summary of one source."""
    try:
        context.registry.get_source(args.source_id)
    except SourceNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    summary = context.health.summary(args.source_id, window=args.window)
    _print_json(summary.to_dict())
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Rental listing ingestion - crawl and inspect sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m ingestion.cli crawl craigslist-nyc --max-pages 1 --dry-run
    python -m ingestion.cli sources
        """,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Crawl command
    crawl_parser = subparsers.add_parser("crawl", help="Crawl a single source")
    crawl_parser.add_argument("source_id", help="Source identifier")
    crawl_parser.add_argument("--max-pages", type=int, default=None)
    crawl_parser.add_argument("--max-listings", type=int, default=None)
    crawl_parser.add_argument("--dry-run", action="store_true", help="Fetch and normalise only")
    crawl_parser.set_defaults(func=cmd_crawl)

    # Crawl-all command
    all_parser = subparsers.add_parser("crawl-all", help="Crawl every enabled source")
    all_parser.add_argument("--limit", type=int, default=None, help="Crawl at most N sources")
    all_parser.add_argument("--dry-run", action="store_true")
    all_parser.set_defaults(func=cmd_crawl_all)

    # Sources command
    sources_parser = subparsers.add_parser("sources", help="List sources and their health")
    sources_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    sources_parser.set_defaults(func=cmd_sources)

    # Health command
    health_parser = subparsers.add_parser("health", help="Rolling health summary for a source")
    health_parser.add_argument("source_id", help="Source identifier")
    health_parser.add_argument("--window", type=int, default=7, help="Number of recent runs")
    health_parser.set_defaults(func=cmd_health)

    args = parser.parse_args(argv)

    config = Config.load()
    configure_logging(config.log_level)
    context = build_context(config)
    return args.func(args, context)


if __name__ == "__main__":
    sys.exit(main())
