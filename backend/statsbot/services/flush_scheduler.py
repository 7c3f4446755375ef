"""
Flush Scheduler
Periodic write-back of the in-memory aggregates to the durable store
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from backend.statsbot.services.aggregate_store import AggregateStore

logger = get_logger()

FLUSH_JOB_ID = 'flush_stats'


@dataclass
class FlushReport:
    """Outcome of one flush pass"""
    users_written: int = 0
    days_written: int = 0
    failed_rows: int = 0
    skipped: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.skipped and self.failed_rows == 0


class FlushScheduler:
    """
    Snapshots the aggregate store and merge-upserts it into the durable store.

    Only one pass runs at a time. A timer tick that lands while a pass is in
    progress is skipped, never queued. The store is only ever read here; a row
    that fails to write is logged and picked up again by the next pass because
    memory stays authoritative.

    `repository` must provide `upsert_user_aggregate` and `upsert_daily_aggregate`
    coroutines (see StatsRepository).
    """

    def __init__(self, store: AggregateStore, repository, interval_seconds: float = 10.0,
                 scheduler: Optional[AsyncIOScheduler] = None):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.store = store
        self.repository = repository
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._job = None
        self._flush_lock = asyncio.Lock()
        self.last_report: Optional[FlushReport] = None

    @property
    def running(self) -> bool:
        return self._job is not None

    @property
    def in_progress(self) -> bool:
        return self._flush_lock.locked()

    def start(self):
        """Register the interval job; must be called with the event loop running"""
        if self._job is not None:
            return
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone='UTC')
        self._job = self.scheduler.add_job(
            self.tick,
            'interval',
            seconds=self.interval_seconds,
            id=FLUSH_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Flush scheduler started", interval=self.interval_seconds)

    async def stop(self, final_flush: bool = True) -> Optional[FlushReport]:
        """
        Cancel the timer, then run the shutdown flush

        An in-progress pass is allowed to finish first; the final flush then
        writes whatever changed since its snapshot.

        Returns:
            Report of the final flush, or None when `final_flush` is False
        """
        if self._job is not None:
            self._job.remove()
            self._job = None
            if self._owns_scheduler and self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            logger.info("Flush scheduler stopped")

        if not final_flush:
            return None

        async with self._flush_lock:
            report = await self._flush()
        logger.info("Final flush completed", users=report.users_written, days=report.days_written,
                    failed_rows=report.failed_rows)
        return report

    async def tick(self) -> FlushReport:
        """One timer firing; skipped if a pass is still running"""
        if self._flush_lock.locked():
            logger.warning("Flush still in progress, skipping tick")
            return FlushReport(skipped=True)
        async with self._flush_lock:
            return await self._flush()

    async def flush_once(self) -> FlushReport:
        """Run a pass now, waiting for any pass already in progress"""
        async with self._flush_lock:
            return await self._flush()

    async def _flush(self) -> FlushReport:
        started = time.monotonic()
        snapshot = self.store.snapshot()
        report = FlushReport()

        for user_row in snapshot.user_rows():
            if await self._write(self.repository.upsert_user_aggregate, user_row.user_id, None,
                                 user_row.user_id, user_row.total_messages, user_row.total_voice_seconds):
                report.users_written += 1
            else:
                report.failed_rows += 1

            for day in snapshot.daily_rows(user_row.user_id):
                if await self._write(self.repository.upsert_daily_aggregate, day.user_id, day.date,
                                     day.user_id, day.date, day.messages, day.voice_seconds, day.channel_counts):
                    report.days_written += 1
                else:
                    report.failed_rows += 1

        report.duration = time.monotonic() - started
        self.last_report = report

        if report.failed_rows:
            logger.warning("Stats flushed with failures", users=report.users_written, days=report.days_written,
                           failed_rows=report.failed_rows, duration=round(report.duration, 3))
        else:
            logger.debug("Stats flushed to database", users=report.users_written, days=report.days_written,
                         duration=round(report.duration, 3))
        return report

    @staticmethod
    async def _write(operation, user_id: str, date: Optional[str], *args) -> bool:
        try:
            await operation(*args)
            return True
        except SQLAlchemyError as e:
            logger.error("Failed to write stats row", user_id=user_id, date=date, error=str(e))
        except Exception as e:
            logger.error("Unexpected error writing stats row", user_id=user_id, date=date,
                         error=str(e), exc_info=True)
        return False
