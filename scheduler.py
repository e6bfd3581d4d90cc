import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from recurrence import MaterializationResult
from services import process_recurring_entries


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAILY_JOB_ID = "recurring_daily"
SAFETY_JOB_ID = "recurring_hourly_safety"


class SchedulerManager:
    """Runs the recurring-entry pass on a daily cron plus an hourly catch-up."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.clock = clock
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def run_once(self, source: str = "manual") -> Optional[MaterializationResult]:
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope(self.session_factory) as session:
                result = process_recurring_entries(session, clock=self.clock)
        except Exception:
            logger.exception(f"scheduler_run: source={source} aborted")
            return None
        logger.info(
            f"scheduler_run: source={source} posted={result.posted} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        return result

    def start(self) -> None:
        self.run_once("startup")

        hour = self.settings.recurring_hour
        minute = self.settings.recurring_minute
        self.scheduler.add_job(
            self.run_once,
            CronTrigger(hour=hour, minute=minute),
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id=DAILY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
            coalesce=True,
        )

        # Entries that already fired today are skipped, so this only catches
        # a missed daily run.
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id=SAFETY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=300,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"scheduler_started: daily={hour:02d}:{minute:02d} "
            f"tz={self.settings.timezone} safety_net=hourly"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
