"""Daily settlement report generation."""

import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from ..database.models import OrderStatus, format_amount
from ..storage import LedgerStorage
from .models import DailySettlementReport, MethodTotals

logger = logging.getLogger(__name__)

REPORT_PREFIX = "report_"


class ReportGenerator:
    """Renders a daily settlement report as JSON or text."""

    def __init__(self, report: DailySettlementReport):
        """Initialize the report generator.

        Args:
            report: The daily report to render.
        """
        self.report = report

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include every order. If False, only totals.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        if include_details:
            data = self.report.to_full_dict()
        else:
            data = self.report.to_summary_dict()

        def json_serializer(obj):
            if isinstance(obj, (datetime, date)):
                return obj.isoformat()
            if isinstance(obj, Decimal):
                return str(obj)
            if isinstance(obj, Enum):
                return obj.value
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report."""
        summary = self.report.to_summary_dict()

        lines = [
            "=" * 60,
            "DAILY SETTLEMENT REPORT",
            "=" * 60,
            f"Day: {summary['day']} ({summary['timezone']})",
            f"Generated At: {summary['generated_at']}",
            "",
            f"Total Orders: {summary['total_orders']}",
            f"Completed Total: {summary['completed_total']} EUR",
            "",
            "By Status:",
        ]
        for status in OrderStatus:
            lines.append(f"  {status.value}: {summary['by_status'].get(status.value, 0)}")

        if summary["by_method"]:
            lines.extend(["", "By Gateway:"])
            for method, totals in sorted(summary["by_method"].items()):
                lines.append(
                    f"  {method}: {totals['orders']} orders, "
                    f"{totals['completed']} completed, {totals['completed_amount']} EUR"
                )

        lines.append("=" * 60)
        return "\n".join(lines)


def day_bounds(day: date, tz_name: str) -> Tuple[datetime, datetime]:
    """Start and end of a local calendar day as naive UTC datetimes."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return (
        start.astimezone(timezone.utc).replace(tzinfo=None),
        end.astimezone(timezone.utc).replace(tzinfo=None),
    )


class DailyReportJob:
    """Builds and stores the end-of-day settlement report."""

    def __init__(self, storage: LedgerStorage, reports_dir: str = "reports", tz_name: str = "Europe/Rome"):
        self.storage = storage
        self.reports_dir = Path(reports_dir)
        self.tz_name = tz_name

    def today(self) -> date:
        return datetime.now(ZoneInfo(self.tz_name)).date()

    async def generate(self, day: Optional[date] = None) -> DailySettlementReport:
        """Collect the orders created on ``day`` (local time, default today)."""
        day = day or self.today()
        start, end = day_bounds(day, self.tz_name)
        orders = await self.storage.get_payments_created_between(start, end)

        report = DailySettlementReport(day=day, timezone=self.tz_name)
        completed_minor = 0
        for order in orders:
            report.total_orders += 1
            report.by_status[order.status] = report.by_status.get(order.status, 0) + 1

            totals = report.by_method.setdefault(order.payment_method, MethodTotals())
            totals.orders += 1
            if order.status == OrderStatus.COMPLETED.value:
                totals.completed += 1
                totals.completed_amount += order.amount_decimal
                completed_minor += order.amount

            report.orders.append(order.to_dict())

        report.completed_total = format_amount(completed_minor)
        logger.info(
            f"Daily report for {day.isoformat()}: {report.total_orders} orders, "
            f"{report.completed_total} EUR completed"
        )
        return report

    def report_path(self, day: date) -> Path:
        return self.reports_dir / f"{REPORT_PREFIX}{day.isoformat()}.json"

    async def save(self, day: Optional[date] = None) -> Path:
        """Generate the report for ``day`` and write it as JSON.

        Returns:
            Path of the written file.
        """
        report = await self.generate(day)
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_path(report.day)
        path.write_text(ReportGenerator(report).to_json(), encoding="utf-8")
        logger.info(f"Daily report written to {path}")
        return path

    def clean_old_reports(self, days_to_keep: int = 30, today: Optional[date] = None) -> List[Path]:
        """Delete saved reports older than ``days_to_keep`` days.

        Returns:
            Paths that were removed.
        """
        if not self.reports_dir.exists():
            return []
        cutoff = (today or self.today()) - timedelta(days=days_to_keep)
        removed = []
        for path in sorted(self.reports_dir.glob(f"{REPORT_PREFIX}*.json")):
            try:
                report_day = date.fromisoformat(path.stem[len(REPORT_PREFIX):])
            except ValueError:
                continue
            if report_day < cutoff:
                path.unlink()
                removed.append(path)
        if removed:
            logger.info(f"Removed {len(removed)} report(s) older than {cutoff.isoformat()}")
        return removed
