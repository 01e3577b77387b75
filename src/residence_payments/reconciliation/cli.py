#!/usr/bin/env python3
"""Command-line interface for reconciliation tools.

Lets an operator run a sweep, check one order against its gateway, or
produce the daily settlement report without the HTTP server.

Usage:
    residence-payments sweep
    residence-payments status STRIPE_145_1718000000000 --wait
    residence-payments report --date 2024-06-10 --format text
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from typing import Optional

from ..config import Settings
from ..connectors import build_connectors, close_connectors
from ..database import DatabaseManager, SqlLedgerStorage
from ..errors import PaymentsError, PollingTimeoutError
from .engine import ReconciliationEngine
from .report import DailyReportJob, ReportGenerator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def run_command_async(parsed_args: argparse.Namespace, settings: Optional[Settings] = None) -> int:
    """Run one CLI command against the configured database and gateways.

    Returns:
        Exit code (0 success, 1 issues found, 2 failure).
    """
    settings = settings or Settings()
    db = DatabaseManager(settings.database_url)
    await db.initialize()
    storage = SqlLedgerStorage(db)
    connectors = build_connectors(settings)
    engine = ReconciliationEngine(storage, connectors, settings)

    try:
        if parsed_args.command == "sweep":
            report = await engine.sweep()
            print(json.dumps(report.to_summary_dict(), indent=2))
            if report.errors or report.retry_later:
                logger.warning(
                    f"Sweep completed with issues: {report.errors} errors, "
                    f"{report.retry_later} to retry later"
                )
                return 1
            return 0

        if parsed_args.command == "status":
            if parsed_args.wait:
                result = await engine.wait_for_completion(parsed_args.order_id)
            else:
                result = await engine.poll(parsed_args.order_id)
            print(json.dumps(result.to_response(), indent=2))
            return 0

        if parsed_args.command == "report":
            job = DailyReportJob(storage, settings.reports_dir, settings.timezone)
            day = date.fromisoformat(parsed_args.date) if parsed_args.date else None
            report = await job.generate(day)
            generator = ReportGenerator(report)
            output = generator.to_json() if parsed_args.format == "json" else generator.to_summary_text()
            if parsed_args.output:
                with open(parsed_args.output, "w") as f:
                    f.write(output)
                logger.info(f"Report written to {parsed_args.output}")
            else:
                print(output)
            return 0

        return 1
    except PollingTimeoutError as e:
        logger.warning(e.message)
        return 1
    except PaymentsError as e:
        logger.error(e.message)
        return 2
    finally:
        await close_connectors(connectors)
        await db.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="residence-payments",
        description="Payment reconciliation tools for the residence back office.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "sweep",
        help="Reconcile every order stuck in processing",
    )

    status_parser = subparsers.add_parser(
        "status",
        help="Refresh one order from its gateway",
    )
    status_parser.add_argument("order_id", help="Local order id")
    status_parser.add_argument(
        "--wait", "-w",
        action="store_true",
        help="Keep polling until the order is completed or failed",
    )

    report_parser = subparsers.add_parser(
        "report",
        help="Print the daily settlement report",
    )
    report_parser.add_argument(
        "--date", "-d",
        help="Day to report on, YYYY-MM-DD (default: today)",
    )
    report_parser.add_argument(
        "--format", "-f",
        choices=["json", "text"],
        default="json",
        help="Output format (default: json)",
    )
    report_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "report" and parsed_args.date:
        try:
            date.fromisoformat(parsed_args.date)
        except ValueError:
            logger.error(f"Unable to parse date: {parsed_args.date}. Expected format: YYYY-MM-DD")
            return 1

    return asyncio.run(run_command_async(parsed_args))


if __name__ == "__main__":
    sys.exit(main())
