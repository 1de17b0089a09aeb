import atexit

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from propertyops.logging_config import get_logger
from propertyops.models import db

logger = get_logger(__name__)

OUTBOX_JOB_ID = "outbox_processor"


class OutboxScheduler:
    """
    Owns the recurring outbox tick for one process.

    start() and shutdown() tie the timer to the process lifecycle; tick() is the
    same unit of work the timer runs and can be invoked directly.
    """

    def __init__(self, app, processor, interval_seconds=10):
        self.app = app
        self.processor = processor
        self.interval_seconds = interval_seconds
        self._scheduler = None

    @property
    def running(self):
        return self._scheduler is not None and self._scheduler.running

    def tick(self):
        """Run one processor pass inside an application context. Never raises."""
        with self.app.app_context():
            try:
                processed = self.processor.run_once()
                if processed:
                    logger.info(f"Outbox processor succeeded {processed} event(s)")
                return processed
            except Exception as e:
                db.session.rollback()
                logger.error("Outbox processor tick failed", error=str(e), exc_info=True)
                return 0
            finally:
                db.session.remove()

    def start(self):
        if self.running:
            return self._scheduler

        # One worker and max_instances=1: ticks never overlap within a process
        executors = {"default": ThreadPoolExecutor(1)}
        scheduler = BackgroundScheduler(executors=executors)
        scheduler.add_job(
            func=self.tick,
            trigger="interval",
            seconds=self.interval_seconds,
            id=OUTBOX_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        atexit.register(self.shutdown)

        logger.info("Outbox scheduler started", interval_seconds=self.interval_seconds)
        return scheduler

    def shutdown(self, wait=False):
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Outbox scheduler stopped")
