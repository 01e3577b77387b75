"""Periodic jobs: the reconciliation sweep and the daily report."""

import logging
from datetime import date
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings
from .engine import ReconciliationEngine
from .models import SweepReport
from .report import DailyReportJob

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reconciliation_sweep"
REPORT_JOB_ID = "daily_settlement_report"


class ReconciliationScheduler:
    """Runs the sweep every few minutes and the report once a day."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        report_job: DailyReportJob,
        settings: Settings,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.engine = engine
        self.report_job = report_job
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.timezone)
        self.is_running = False

    def _add_jobs(self) -> None:
        self.scheduler.add_job(
            func=self._sweep_task,
            trigger=IntervalTrigger(minutes=self.settings.sweep_interval_minutes),
            id=SWEEP_JOB_ID,
            name="Reconciliation Sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            func=self._report_task,
            trigger=CronTrigger(
                hour=self.settings.daily_report_hour,
                minute=0,
                timezone=self.settings.timezone,
            ),
            id=REPORT_JOB_ID,
            name="Daily Settlement Report",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        """Register the jobs and start the scheduler. Must run inside an event loop."""
        if self.is_running:
            logger.warning("Reconciliation scheduler already running")
            return

        try:
            self._add_jobs()
            self.scheduler.start()
            self.is_running = True
            logger.info(
                f"Reconciliation scheduler started: sweep every "
                f"{self.settings.sweep_interval_minutes} min, daily report at "
                f"{self.settings.daily_report_hour}:00 {self.settings.timezone}"
            )
        except Exception as e:
            logger.error(f"Failed to start reconciliation scheduler: {e}", exc_info=True)
            raise

    def stop(self) -> None:
        if not self.is_running:
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Reconciliation scheduler stopped")
        except Exception as e:
            logger.error(f"Error stopping reconciliation scheduler: {e}", exc_info=True)

    async def _sweep_task(self) -> None:
        try:
            await self.engine.sweep()
        except Exception as e:
            logger.error(f"Scheduled sweep failed: {e}", exc_info=True)

    async def _report_task(self) -> None:
        try:
            await self.report_job.save()
            self.report_job.clean_old_reports()
        except Exception as e:
            logger.error(f"Scheduled daily report failed: {e}", exc_info=True)

    async def run_sweep_now(self) -> SweepReport:
        """Run a sweep immediately, outside the schedule."""
        logger.info("Manual sweep triggered")
        return await self.engine.sweep()

    async def run_report_now(self, day: Optional[date] = None) -> Path:
        logger.info("Manual daily report triggered")
        return await self.report_job.save(day)

    def status(self) -> dict:
        jobs = []
        if self.is_running:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                })
        return {"running": self.is_running, "jobs": jobs}
