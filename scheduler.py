import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from recap import RecapJob


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, job: RecapJob | None = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.recap_hour = settings.recap_hour
        self.job = job or RecapJob()

    def _run_recap(self, source: str = "manual") -> None:
        logger.info(f"recap_scheduled: source={source}")
        results = self.job.run()
        failed = sum(1 for r in results if r.status != "sent")
        logger.info(f"recap_scheduled: source={source} users={len(results)} not_sent={failed}")

    def _run_subscription_check(self, source: str = "manual") -> None:
        logger.info(f"subscription_check_scheduled: source={source}")
        results = self.job.run_subscription_check()
        logger.info(
            f"subscription_check_scheduled: source={source} users={len(results)}"
        )

    def start(self) -> None:
        trigger = CronTrigger(hour=self.recap_hour, minute=0)
        self.scheduler.add_job(
            self._run_recap,
            trigger,
            args=[f"daily_{self.recap_hour:02d}:00"],
            id="daily_recap",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = CronTrigger(day_of_week="mon", hour=9, minute=0)
        self.scheduler.add_job(
            self._run_subscription_check,
            trigger,
            args=["weekly_mon_09:00"],
            id="subscription_check",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily recap at {self.recap_hour:02d}:00 "
            "and Monday subscription check"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
