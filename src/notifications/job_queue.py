"""Durable queue of scheduled push notifications.

Jobs live in the ``notification_jobs`` table. A recurring APScheduler job
polls for due rows, claims them, and delivers each one by POSTing to the
internal ``/api/notifications/send`` endpoint with ``X-System-Job: true``.

Job lifecycle:  pending -> processing -> completed
                                      -> pending (retry, next poll)
                                      -> failed (attempts exhausted)
                pending / processing  -> cancelled

The processor stops itself after ``IDLE_STOP_CYCLES`` empty polls and is
restarted by the next ``add_job``.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import get_settings
from src.db.database import Base
from src.models.base import utcnow
from src.models.notification_job import (
    DEFAULT_MAX_ATTEMPTS,
    TERMINAL_STATUSES,
    NotificationJob,
    NotificationJobStatus,
)

IDLE_STOP_CYCLES = 40  # ~20 minutes at 30s interval
BATCH_SIZE = 5
PROCESSOR_JOB_ID = "notification_job_processor"
SEND_TIMEOUT = 30  # seconds


class NotificationSendError(Exception):
    """The send endpoint rejected a job's notification."""


class NotificationJobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
        app_url: Optional[str] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.http_client = http_client
        self.clock = clock
        self.app_url = (app_url or settings.app_url).rstrip("/")
        self.poll_interval = settings.notification_poll_interval_seconds
        self.stuck_job_timeout = timedelta(minutes=settings.notification_stuck_job_minutes)

        self._processor_job = None
        self._is_processing = False
        self._idle_cycles = 0
        self.last_processed_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._processor_job is not None

    async def initialize(self) -> None:
        """建立 job queue 資料表（已存在則略過）"""
        async with self.session_factory() as session:
            await session.run_sync(
                lambda sync_session: Base.metadata.create_all(
                    sync_session.connection(), tables=[NotificationJob.__table__]
                )
            )
            await session.commit()
        logger.info("Notification job queue initialized")

    async def add_job(
        self,
        *,
        title: str,
        body: str,
        scheduled_time: datetime,
        created_by: str,
        icon: Optional[str] = None,
        badge: Optional[str] = None,
        image: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        actions: Optional[List[Dict[str, Any]]] = None,
        tag: Optional[str] = None,
        require_interaction: bool = False,
        silent: bool = False,
        vibrate: Optional[List[int]] = None,
        user_ids: Optional[List[str]] = None,
        all_users: bool = False,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> str:
        """Insert a pending job and return its id. Input is validated by the caller."""
        job = NotificationJob(
            title=title,
            body=body,
            icon=icon,
            badge=badge,
            image=image,
            data=data,
            actions=actions,
            tag=tag,
            require_interaction=require_interaction,
            silent=silent,
            vibrate=vibrate,
            user_ids=user_ids,
            all_users=all_users,
            scheduled_time=scheduled_time,
            created_at=self.clock(),
            created_by=created_by,
            attempts=0,
            max_attempts=max_attempts,
            status=NotificationJobStatus.pending,
        )
        async with self.session_factory() as session:
            session.add(job)
            await session.commit()
            job_id = job.id

        logger.info(f"Added notification job {job_id} scheduled for {scheduled_time}")

        # 有新工作時確保 processor 在跑
        try:
            self.start_processor()
        except Exception as e:
            logger.warning(f"Could not start notification job processor: {e}")
        return job_id

    async def get_ready_jobs(self, limit: int = 10) -> List[NotificationJob]:
        """Due jobs with retry budget left, oldest due first."""
        stmt = (
            select(NotificationJob)
            .where(
                NotificationJob.status == NotificationJobStatus.pending,
                NotificationJob.scheduled_time <= self.clock(),
                NotificationJob.attempts < NotificationJob.max_attempts,
            )
            .order_by(NotificationJob.scheduled_time.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_job(self, job_id: str) -> Optional[NotificationJob]:
        async with self.session_factory() as session:
            return await session.get(NotificationJob, job_id)

    async def mark_job_processing(self, job_id: str) -> bool:
        """Claim a pending job and count the attempt. False if it was not pending."""
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status == NotificationJobStatus.pending,
            )
            .values(
                status=NotificationJobStatus.processing,
                attempts=NotificationJob.attempts + 1,
                started_at=self.clock(),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def mark_job_completed(self, job_id: str) -> None:
        now = self.clock()
        # 執行中被取消的工作維持 cancelled
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status == NotificationJobStatus.processing,
            )
            .values(status=NotificationJobStatus.completed, processed_at=now)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount == 0:
            logger.info(f"Job {job_id} was no longer processing; not marking completed")
        self.last_processed_at = now

    async def mark_job_failed(self, job_id: str, error: str) -> None:
        """Record the error; retry on the next poll unless attempts are used up."""
        now = self.clock()
        async with self.session_factory() as session:
            job = await session.get(NotificationJob, job_id)
            if job is None:
                logger.warning(f"Cannot mark missing notification job {job_id} as failed")
                return
            if job.status != NotificationJobStatus.processing:
                logger.info(
                    f"Job {job_id} is {job.status.value}, not processing; "
                    f"ignoring failure: {error}"
                )
                return

            job.error = error
            job.processed_at = now
            if job.attempts >= job.max_attempts:
                job.status = NotificationJobStatus.failed
                logger.error(
                    f"Job {job_id} failed permanently after {job.attempts} attempts: {error}"
                )
            else:
                job.status = NotificationJobStatus.pending
                logger.error(
                    f"Job {job_id} failed, will retry. "
                    f"Attempt {job.attempts}/{job.max_attempts}: {error}"
                )
            await session.commit()

        self.last_processed_at = now

    async def cancel_job(self, job_id: str) -> bool:
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.id == job_id,
                NotificationJob.status.in_(
                    [NotificationJobStatus.pending, NotificationJobStatus.processing]
                ),
            )
            .values(status=NotificationJobStatus.cancelled, processed_at=self.clock())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def requeue_stuck_jobs(self) -> int:
        """Release jobs left in processing longer than the stuck-job timeout."""
        cutoff = self.clock() - self.stuck_job_timeout
        stmt = select(NotificationJob).where(
            NotificationJob.status == NotificationJobStatus.processing,
            NotificationJob.started_at < cutoff,
        )
        async with self.session_factory() as session:
            stuck = (await session.execute(stmt)).scalars().all()
            for job in stuck:
                job.error = "Processing timed out"
                if job.attempts >= job.max_attempts:
                    job.status = NotificationJobStatus.failed
                    job.processed_at = self.clock()
                else:
                    job.status = NotificationJobStatus.pending
            await session.commit()

        if stuck:
            logger.warning(f"Requeued {len(stuck)} stuck notification jobs")
        return len(stuck)

    async def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in NotificationJobStatus}
        stats["total"] = 0

        stmt = select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        for status, count in rows:
            stats[status.value] = count
            stats["total"] += count
        return stats

    async def get_jobs(
        self,
        status: Optional[NotificationJobStatus] = None,
        limit: int = 50,
        offset: int = 0,
        created_by: Optional[str] = None,
    ) -> Tuple[List[NotificationJob], int]:
        """Page of jobs, newest first, and the total matching the filters."""
        conditions = []
        if status is not None:
            conditions.append(NotificationJob.status == status)
        if created_by:
            conditions.append(NotificationJob.created_by == created_by)

        count_stmt = select(func.count()).select_from(NotificationJob).where(*conditions)
        jobs_stmt = (
            select(NotificationJob)
            .where(*conditions)
            .order_by(NotificationJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            total = (await session.execute(count_stmt)).scalar_one()
            jobs = list((await session.execute(jobs_stmt)).scalars().all())
        return jobs, total

    async def count_jobs_since(self, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(NotificationJob)
            .where(NotificationJob.created_at >= since)
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def cleanup(self, older_than_days: int = 30) -> int:
        """Delete finished jobs processed more than ``older_than_days`` ago."""
        if (
            not isinstance(older_than_days, int)
            or isinstance(older_than_days, bool)
            or not 0 <= older_than_days <= 365
        ):
            raise ValueError(
                "Invalid older_than_days parameter: must be an integer between 0 and 365"
            )

        cutoff = self.clock() - timedelta(days=older_than_days)
        stmt = delete(NotificationJob).where(
            NotificationJob.status.in_(TERMINAL_STATUSES),
            NotificationJob.processed_at < cutoff,
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        deleted = result.rowcount
        if deleted > 0:
            logger.info(
                f"Cleaned up {deleted} old notification jobs older than {older_than_days} days"
            )
        return deleted

    def start_processor(self, interval_seconds: Optional[int] = None) -> None:
        if self._processor_job is not None:
            logger.debug("Job processor is already running")
            return

        interval = interval_seconds or self.poll_interval
        logger.info(f"Starting notification job processor with {interval}s interval")

        self._idle_cycles = 0
        self._processor_job = self.scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=interval),
            id=PROCESSOR_JOB_ID,
            name="Notification Job Processor",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def stop_processor(self) -> None:
        if self._processor_job is None:
            return

        try:
            self.scheduler.remove_job(PROCESSOR_JOB_ID)
        except JobLookupError:
            logger.debug("Notification job processor was already removed from the scheduler")
        self._processor_job = None
        self._idle_cycles = 0
        logger.info("Job processor stopped")

    async def _tick(self) -> None:
        if self._is_processing:
            logger.info("Skipping job processing - already in progress")
            return

        try:
            await self.requeue_stuck_jobs()
            processed = await self.process_jobs()
            if processed == 0:
                self._idle_cycles += 1
                if self._idle_cycles >= IDLE_STOP_CYCLES:
                    logger.info(
                        "No jobs for a while; stopping notification job processor"
                    )
                    self.stop_processor()
            else:
                self._idle_cycles = 0
        except Exception as e:
            logger.error(f"Job processing error: {e}")

    async def process_jobs(self) -> int:
        """Run one batch of ready jobs. Returns the number fetched."""
        if self._is_processing:
            return 0

        self._is_processing = True
        try:
            jobs = await self.get_ready_jobs(BATCH_SIZE)
            if not jobs:
                return 0

            logger.info(f"Processing {len(jobs)} notification jobs")

            for job in jobs:
                try:
                    if not await self.mark_job_processing(job.id):
                        logger.debug(f"Job {job.id} was claimed elsewhere, skipping")
                        continue
                    await self.execute_job(job)
                    await self.mark_job_completed(job.id)
                except Exception as e:
                    await self.mark_job_failed(job.id, str(e) or "Unknown error")
            return len(jobs)
        finally:
            self._is_processing = False

    async def execute_job(self, job: NotificationJob) -> None:
        """POST the job's notification to the send endpoint."""
        url = f"{self.app_url}/api/notifications/send"
        headers = {"X-System-Job": "true", "X-Job-Id": job.id}

        if self.http_client is not None:
            response = await self.http_client.post(url, json=job.to_payload(), headers=headers)
        else:
            async with httpx.AsyncClient(timeout=SEND_TIMEOUT) as client:
                response = await client.post(url, json=job.to_payload(), headers=headers)

        if not response.is_success:
            raise NotificationSendError(f"Failed to send notification: {response.text}")

        logger.info(f"Successfully processed notification job {job.id}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "lastProcessedAt": (
                self.last_processed_at.isoformat() if self.last_processed_at else None
            ),
        }
