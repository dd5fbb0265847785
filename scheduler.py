import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import ReadOnlyError
from periods import current_month
from recurrence import local_today
from services import MonthService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, scheduler: Optional[BackgroundScheduler] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> bool:
        month = current_month(local_today())
        logger.info(f"scheduler_run: source={source} month={month}")
        try:
            with session_scope() as session:
                data = MonthService(session).generate_or_sync_month(month)
        except ReadOnlyError:
            logger.info(f"scheduler_skip: source={source} month={month} reason=read_only")
            return False
        logger.info(
            f"scheduler_run: source={source} month={month} "
            f"instances={len(data.bill_instances) + len(data.income_instances)}"
        )
        return True

    def start(self) -> None:
        self._run_job("startup")

        hour, minute = self.settings.sync_hour, self.settings.sync_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="month_sync_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="month_sync_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
