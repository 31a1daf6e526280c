"""Command line interface for reconciliation operations.

Every command prints the JSON form of its result. Exit codes: 0 on
success, 1 when one or more dates failed, 2 on configuration errors.
"""

import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Any, List, Optional, Tuple

import structlog

from reconciler.core.config import get_settings
from reconciler.core.database import close_db
from reconciler.core.exceptions import ConfigurationError
from reconciler.core.logging import configure_logging
from reconciler.services.reconciliation_service import ReconciliationService

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected an integer, got '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"Expected a positive integer, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconciler",
        description="Reconcile curtailment records with bitcoin mining calculations",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Report overall completeness")
    status.add_argument("--start", type=parse_date)
    status.add_argument("--end", type=parse_date)

    analyze = subparsers.add_parser("analyze", help="Per-date completeness, worst first")
    analyze.add_argument("--start", type=parse_date)
    analyze.add_argument("--end", type=parse_date)
    analyze.add_argument("--export", metavar="CSV", help="Also write the report to a CSV file")

    details = subparsers.add_parser("details", help="Breakdown and missing combinations for a date")
    details.add_argument("date", type=parse_date)

    def add_batch_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--batch-size", type=positive_int)
        sub.add_argument("--concurrency", type=positive_int)
        sub.add_argument("--fresh", action="store_true", help="Ignore any saved checkpoint")
        sub.add_argument("--force", action="store_true", help="Recompute complete dates too")

    reconcile = subparsers.add_parser("reconcile", help="Analyze and fix every date with facts")
    reconcile.add_argument("--start", type=parse_date)
    reconcile.add_argument("--end", type=parse_date)
    add_batch_options(reconcile)

    fix_date = subparsers.add_parser("fix-date", help="Fix a single date")
    fix_date.add_argument("date", type=parse_date)
    fix_date.add_argument("--model", dest="models", action="append", help="Miner model (repeatable)")
    fix_date.add_argument("--force", action="store_true")

    fix_range = subparsers.add_parser("fix-range", help="Fix every date in a range")
    fix_range.add_argument("start", type=parse_date)
    fix_range.add_argument("end", type=parse_date)
    add_batch_options(fix_range)

    recent = subparsers.add_parser("recent", help="Reconcile the trailing look-back window")
    recent.add_argument("--days", type=positive_int)

    subparsers.add_parser("reset-checkpoint", help="Delete the saved checkpoint")

    return parser


def _default_range(args: argparse.Namespace) -> Tuple[date, date]:
    end = args.end or date.today()
    start = args.start or end.replace(day=1)
    return start, end


async def execute(args: argparse.Namespace, service: ReconciliationService) -> Tuple[Any, int]:
    """Run one parsed command; returns the JSON payload and exit code."""
    command = args.command

    if command == "status":
        result = await service.status(args.start, args.end)
        return result.model_dump(mode="json"), EXIT_OK

    if command == "analyze":
        start, end = _default_range(args)
        statuses = await service.analyze_range(start, end)
        payload = {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "dates": [status.model_dump(mode="json") for status in statuses],
        }
        if args.export:
            payload["exported_rows"] = await service.export_report(start, end, args.export)
            payload["export_path"] = args.export
        return payload, EXIT_OK

    if command == "details":
        result = await service.date_details(args.date)
        return result.model_dump(mode="json"), EXIT_OK

    if command in ("reconcile", "fix-range"):
        start = args.start
        end = args.end
        if command == "fix-range":
            batch = await service.fix_range(
                start, end, args.batch_size, args.concurrency, fresh=args.fresh, force=args.force
            )
        else:
            batch = await service.reconcile(
                start, end, args.batch_size, args.concurrency, fresh=args.fresh, force=args.force
            )
        return batch.model_dump(mode="json"), EXIT_FAILURES if batch.has_failures or batch.stopped_early else EXIT_OK

    if command == "fix-date":
        result = await service.fix_date(args.date, args.models, force=args.force)
        return result.model_dump(mode="json"), EXIT_OK if result.success else EXIT_FAILURES

    if command == "recent":
        batch = await service.reconcile_recent(args.days)
        return batch.model_dump(mode="json"), EXIT_FAILURES if batch.has_failures or batch.stopped_early else EXIT_OK

    if command == "reset-checkpoint":
        return {"reset": service.reset_checkpoint()}, EXIT_OK

    raise ConfigurationError(f"Unknown command: {command}")


async def _main(args: argparse.Namespace) -> int:
    try:
        service = ReconciliationService()
        payload, code = await execute(args, service)
    finally:
        await close_db()
    print(json.dumps(payload, indent=2))
    return code


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(args.log_level or settings.LOG_LEVEL, settings.LOG_JSON, stream=sys.stderr)

    try:
        return asyncio.run(_main(args))
    except ConfigurationError as e:
        logger.error("Configuration error", error=e.message)
        print(json.dumps({"error": e.message}), file=sys.stderr)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
