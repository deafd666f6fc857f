"""Periodic execution of monitor runs and status reports using APScheduler."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .models import RunResult
from .runner import JobMonitor

logger = structlog.get_logger(__name__)

CHECK_JOB_ID = "keeper-check"
REPORT_JOB_ID = "keeper-periodic-report"


def format_uptime(seconds: float) -> str:
    seconds = int(max(0, seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, _ = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class MonitorScheduler:
    """Runs the monitor on an interval and, optionally, sends periodic status reports."""

    def __init__(self, monitor: JobMonitor):
        self.monitor = monitor
        self.config = monitor.config
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.started_monotonic = time.monotonic()
        self.last_result: Optional[RunResult] = None
        self.running = False

    @property
    def uptime(self) -> str:
        return format_uptime(time.monotonic() - self.started_monotonic)

    async def run_check(self) -> RunResult:
        result = await self.monitor.run_once()
        self.last_result = result
        if not result.success:
            logger.warning("Scheduled check failed", error=result.error)
        return result

    async def send_report(self) -> bool:
        summary = self.monitor.last_summary
        if summary is None:
            logger.info("No completed run yet; skipping periodic report")
            return False
        try:
            await self.monitor.dispatcher.send_periodic_report(
                total_jobs=summary.total_jobs,
                active_jobs=summary.healthy_jobs,
                stalled_jobs=summary.stalled_jobs,
                current_block=summary.current_block,
                from_block=summary.from_block,
                to_block=summary.to_block,
                uptime=self.uptime,
            )
        except Exception as e:
            logger.error("Failed to send periodic report", error=str(e))
            return False
        return True

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.run_check,
            trigger=IntervalTrigger(seconds=self.config.interval_seconds),
            id=CHECK_JOB_ID,
            name="Keeper job check",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        logger.info("Added interval job", job_id=CHECK_JOB_ID, interval_seconds=self.config.interval_seconds)

        if self.config.report_interval_minutes > 0:
            self.scheduler.add_job(
                self.send_report,
                trigger=IntervalTrigger(minutes=self.config.report_interval_minutes),
                id=REPORT_JOB_ID,
                name="Periodic status report",
                max_instances=1,
                coalesce=True,
            )
            logger.info(
                "Added interval job",
                job_id=REPORT_JOB_ID,
                interval_minutes=self.config.report_interval_minutes,
            )

        self.scheduler.start()
        self.running = True
        logger.info("Monitor scheduler started")

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Monitor scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "job_id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                }
            )
        return {
            "running": self.running,
            "uptime": self.uptime,
            "jobs": jobs,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    async def run_forever(self) -> None:
        self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            self.stop()
