# branchchat/scheduler/scheduler_service.py

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    One-shot deferred jobs (chat titles) on the running event loop.

    - AsyncIOScheduler, so coroutine jobs share the app's loop
    - jobs with the same id are not added twice
    """

    def __init__(self, timezone: str = "UTC"):
        self.scheduler = AsyncIOScheduler(timezone=timezone)
        self._started = False

    # --------------------------------------------------
    # Lifecycle
    # --------------------------------------------------

    def start(self) -> None:
        """Start scheduler (idempotent). Needs a running event loop."""
        if self._started:
            return
        logger.info("⏱ Starting SchedulerService...")
        self.scheduler.start()
        self._started = True

    def shutdown(self) -> None:
        if not self._started:
            return
        logger.info("🛑 Stopping SchedulerService...")
        self.scheduler.shutdown(wait=False)
        self._started = False

    # --------------------------------------------------
    # One-time jobs
    # --------------------------------------------------

    def add_one_time_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        args: Sequence[Any] = (),
        delay_seconds: float = 1,
    ) -> str:
        existing_job = self.scheduler.get_job(job_id)
        if existing_job:
            logger.info(f"⏳ Job already scheduled: {job_id}")
            return job_id

        run_time = datetime.now(self.scheduler.timezone) + timedelta(seconds=delay_seconds)
        self.scheduler.add_job(
            func,
            trigger=DateTrigger(run_date=run_time),
            args=list(args),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=3600,
        )
        logger.info(f"📝 Job scheduled: {job_id} at {run_time:%H:%M:%S}")
        return job_id

    def schedule_title(self, chat_id: str, func: Callable[..., Any], delay_seconds: float) -> str:
        return self.add_one_time_job(f"chat_title_{chat_id}", func, [chat_id], delay_seconds)

    def pending_jobs(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def get_job_status(self, job_id: str) -> Optional[str]:
        """Returns "scheduled" while the job waits, None once it ran or never existed."""
        return "scheduled" if self.scheduler.get_job(job_id) else None
