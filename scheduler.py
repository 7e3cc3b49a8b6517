import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from config import get_settings
from services import BudgetAlertService, MonthlyReportService, RecurringTransactionService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECURRING_JOB = "recurring_daily"
BUDGET_ALERT_JOB = "budget_alerts"
MONTHLY_REPORT_JOB = "monthly_report"


class SchedulerManager:
    def __init__(
        self,
        *,
        recurring: Optional[RecurringTransactionService] = None,
        alerts: Optional[BudgetAlertService] = None,
        reports: Optional[MonthlyReportService] = None,
    ) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._recurring = recurring
        self._alerts = alerts
        self._reports = reports
        self.jobs: dict[str, Callable[[], BaseModel]] = {
            RECURRING_JOB: lambda: self.recurring.run(),
            BUDGET_ALERT_JOB: lambda: self.alerts.run(),
            MONTHLY_REPORT_JOB: lambda: self.reports.run(),
        }

    @property
    def recurring(self) -> RecurringTransactionService:
        if self._recurring is None:
            self._recurring = RecurringTransactionService()
        return self._recurring

    @property
    def alerts(self) -> BudgetAlertService:
        if self._alerts is None:
            self._alerts = BudgetAlertService()
        return self._alerts

    @property
    def reports(self) -> MonthlyReportService:
        if self._reports is None:
            self._reports = MonthlyReportService()
        return self._reports

    def run_job(self, job_id: str, source: str = "manual") -> BaseModel:
        if job_id not in self.jobs:
            raise KeyError(job_id)
        logger.info(f"scheduler_run: job={job_id} source={source}")
        result = self.jobs[job_id]()
        logger.info(f"scheduler_run: job={job_id} source={source} result={result.model_dump()}")
        return result

    def _run_scheduled(self, job_id: str, source: str) -> None:
        try:
            self.run_job(job_id, source)
        except Exception:
            # The next trigger re-evaluates due state from the store.
            logger.exception(f"scheduler_run_failed: job={job_id} source={source}")

    def configure(self) -> None:
        # Overlapping runs are allowed; every job is idempotent per item.
        common = {"replace_existing": True, "max_instances": 2, "coalesce": True}
        self.scheduler.add_job(
            self._run_scheduled,
            CronTrigger(hour=0, minute=0),
            args=[RECURRING_JOB, "daily_00:00"],
            id=RECURRING_JOB,
            misfire_grace_time=3600,
            **common,
        )
        self.scheduler.add_job(
            self._run_scheduled,
            IntervalTrigger(hours=6),
            args=[BUDGET_ALERT_JOB, "every_6h"],
            id=BUDGET_ALERT_JOB,
            misfire_grace_time=900,
            **common,
        )
        self.scheduler.add_job(
            self._run_scheduled,
            CronTrigger(day=1, hour=0, minute=0),
            args=[MONTHLY_REPORT_JOB, "monthly_day1"],
            id=MONTHLY_REPORT_JOB,
            misfire_grace_time=6 * 3600,
            **common,
        )

    def start(self) -> None:
        self.configure()
        # One-off catch-up right after boot; a date job without run_date fires now.
        self.scheduler.add_job(
            self._run_scheduled,
            args=[RECURRING_JOB, "startup"],
            id="recurring_startup",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started with daily recurring scan, 6-hourly budget alerts "
            "and monthly reports"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
