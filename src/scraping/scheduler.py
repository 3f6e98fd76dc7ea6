"""DB-backed store for competitor scraping jobs.

Owns every read and write of ``scraping_jobs`` / ``scraping_job_results``;
the queue processor only decides *when* to run things.

Job lifecycle:  pending -> running -> pending (recurring, next_run_at moved)
                                   -> completed (manual jobs)
                                   -> pending (retry with backoff)
                                   -> failed (retries exhausted)
                pending <-> paused
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.models.base import utcnow
from src.models.intelligence_data import IntelligenceData
from src.models.scraping_job import (
    FrequencyType,
    JobPriority,
    JobType,
    ScrapingJob,
    ScrapingJobResult,
    ScrapingJobStatus,
)
from src.scraping.scraper import JobResult, WebScraper
from src.scraping.utils import calculate_next_run, calculate_retry_delay

DEFAULT_MAX_RETRIES = 3

_PRIORITY_RANK = case(
    (ScrapingJob.priority == JobPriority.critical, 4),
    (ScrapingJob.priority == JobPriority.high, 3),
    (ScrapingJob.priority == JobPriority.medium, 2),
    (ScrapingJob.priority == JobPriority.low, 1),
    else_=0,
)


class JobNotFoundError(Exception):
    pass


class ScrapingScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scraper: Optional[WebScraper] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.scraper = scraper or WebScraper()
        self.clock = clock

    async def start(self) -> None:
        logger.info("Starting scraping scheduler...")
        requeued = await self.requeue_stuck_jobs()
        async with self.session_factory() as session:
            pending = (
                await session.execute(
                    select(func.count())
                    .select_from(ScrapingJob)
                    .where(ScrapingJob.status == ScrapingJobStatus.pending)
                )
            ).scalar_one()
        logger.info(f"Scraping scheduler started: {pending} pending jobs, {requeued} requeued")

    def stop(self) -> None:
        logger.info("Scraping scheduler stopped")

    async def create_job(
        self,
        *,
        competitor_id: int,
        user_id: str,
        job_type: JobType,
        url: str,
        frequency_value: str,
        priority: JobPriority = JobPriority.medium,
        frequency_type: FrequencyType = FrequencyType.interval,
        frequency_timezone: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> str:
        frequency_type = FrequencyType(frequency_type)
        next_run_at = calculate_next_run(
            frequency_type, str(frequency_value), self.clock(), frequency_timezone
        )
        job = ScrapingJob(
            competitor_id=competitor_id,
            user_id=user_id,
            job_type=JobType(job_type),
            url=url,
            priority=JobPriority(priority),
            frequency_type=frequency_type,
            frequency_value=str(frequency_value),
            frequency_timezone=frequency_timezone,
            next_run_at=next_run_at,
            max_retries=max_retries,
            config=config or {},
            status=ScrapingJobStatus.pending,
        )
        async with self.session_factory() as session:
            session.add(job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[ScrapingJob]:
        async with self.session_factory() as session:
            return await session.get(ScrapingJob, job_id)

    async def get_jobs_to_run(self, limit: int = 10) -> List[ScrapingJob]:
        """Due jobs, highest priority first, then earliest due."""
        stmt = (
            select(ScrapingJob)
            .where(
                ScrapingJob.next_run_at <= self.clock(),
                ScrapingJob.status.in_([ScrapingJobStatus.pending, ScrapingJobStatus.failed]),
                or_(
                    ScrapingJob.last_run_at.is_(None),
                    ScrapingJob.retry_count < ScrapingJob.max_retries,
                ),
            )
            .order_by(_PRIORITY_RANK.desc(), ScrapingJob.next_run_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_job_status(
        self,
        job_id: str,
        status: ScrapingJobStatus,
        last_run_at: Optional[datetime] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status}
        if last_run_at is not None:
            values["last_run_at"] = last_run_at

        async with self.session_factory() as session:
            await session.execute(
                update(ScrapingJob).where(ScrapingJob.id == job_id).values(**values)
            )
            await session.commit()

    async def claim_job(self, job_id: str, now: Optional[datetime] = None) -> bool:
        """Mark a runnable job running. False if another run already took it."""
        stmt = (
            update(ScrapingJob)
            .where(
                ScrapingJob.id == job_id,
                ScrapingJob.status.in_([ScrapingJobStatus.pending, ScrapingJobStatus.failed]),
            )
            .values(status=ScrapingJobStatus.running, last_run_at=now or self.clock())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def get_last_success_data(self, job_id: str) -> Optional[Dict[str, Any]]:
        stmt = (
            select(ScrapingJobResult.data)
            .where(ScrapingJobResult.job_id == job_id, ScrapingJobResult.success.is_(True))
            .order_by(ScrapingJobResult.created_at.desc(), ScrapingJobResult.id.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def execute_job(self, job: ScrapingJob) -> JobResult:
        """Scrape the job's URL against its last successful snapshot."""
        start = time.monotonic()
        previous = await self.get_last_success_data(job.id)
        data = await self.scraper.scrape(job.url, job.config, previous)
        data["job_type"] = job.job_type.value
        return JobResult(
            success=True,
            data=data,
            execution_time=int((time.monotonic() - start) * 1000),
            changes_detected=data["changes_detected"],
            retry_count=job.retry_count,
        )

    async def record_job_result(self, job_id: str, result: JobResult) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            session.add(
                ScrapingJobResult(
                    job_id=job_id,
                    success=result.success,
                    data=result.data,
                    error=result.error,
                    execution_time=result.execution_time,
                    changes_detected=result.changes_detected,
                    retry_count=result.retry_count,
                    created_at=now,
                )
            )

            job = await session.get(ScrapingJob, job_id)
            if job is None:
                logger.warning(f"Result recorded for missing scraping job {job_id}")
                await session.commit()
                return

            if result.success:
                job.last_run_at = now
                job.retry_count = 0
                job.next_run_at = calculate_next_run(
                    job.frequency_type, job.frequency_value, now, job.frequency_timezone
                )
                job.status = (
                    ScrapingJobStatus.completed
                    if job.frequency_type == FrequencyType.manual
                    else ScrapingJobStatus.pending
                )
                if result.changes_detected and result.data:
                    self._store_intelligence_data(session, job, result.data, now)
            else:
                job.retry_count += 1
                if job.retry_count >= job.max_retries:
                    job.status = ScrapingJobStatus.failed
                    logger.error(
                        f"Scraping job {job_id} failed permanently after "
                        f"{job.retry_count} retries: {result.error}"
                    )
                else:
                    job.status = ScrapingJobStatus.pending
                    job.next_run_at = now + calculate_retry_delay(job.retry_count)
                    logger.warning(
                        f"Scraping job {job_id} failed, retry {job.retry_count}/"
                        f"{job.max_retries} at {job.next_run_at}: {result.error}"
                    )

            await session.commit()

    def _store_intelligence_data(
        self,
        session: AsyncSession,
        job: ScrapingJob,
        data: Dict[str, Any],
        now: datetime,
    ) -> None:
        session.add(
            IntelligenceData(
                competitor_id=job.competitor_id,
                user_id=job.user_id,
                source_type="website",
                source_url=job.url,
                data_type=job.job_type.value,
                raw_content=data,
                extracted_data={
                    "jobId": job.id,
                    "scrapedAt": now.isoformat(),
                    "changeDetected": True,
                    "changePercentage": data.get("change_percentage"),
                },
                importance=job.priority.value,
                tags=[job.job_type.value, "automated"],
                collected_at=now,
            )
        )

    async def requeue_stuck_jobs(self) -> int:
        """Jobs left running by a previous process go back to pending."""
        stmt = (
            update(ScrapingJob)
            .where(ScrapingJob.status == ScrapingJobStatus.running)
            .values(status=ScrapingJobStatus.pending, next_run_at=self.clock())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} scraping jobs left running")
        return result.rowcount

    async def pause_job(self, job_id: str) -> None:
        await self.update_job_status(job_id, ScrapingJobStatus.paused)

    async def resume_job(self, job_id: str) -> None:
        async with self.session_factory() as session:
            job = await session.get(ScrapingJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")

            job.status = ScrapingJobStatus.pending
            job.next_run_at = calculate_next_run(
                job.frequency_type, job.frequency_value, self.clock(), job.frequency_timezone
            )
            await session.commit()

    async def delete_job(self, job_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                delete(ScrapingJobResult).where(ScrapingJobResult.job_id == job_id)
            )
            await session.execute(delete(ScrapingJob).where(ScrapingJob.id == job_id))
            await session.commit()

    async def get_competitor_jobs(self, competitor_id: int, user_id: str) -> List[ScrapingJob]:
        stmt = (
            select(ScrapingJob)
            .where(ScrapingJob.competitor_id == competitor_id, ScrapingJob.user_id == user_id)
            .order_by(ScrapingJob.created_at.asc())
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def get_job_history(self, job_id: str, limit: int = 5) -> List[ScrapingJobResult]:
        stmt = (
            select(ScrapingJobResult)
            .where(ScrapingJobResult.job_id == job_id)
            .order_by(ScrapingJobResult.created_at.desc(), ScrapingJobResult.id.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def cleanup_results(self, older_than_days: int = 30) -> int:
        """Delete result rows older than ``older_than_days``.

        The newest successful result of each job is kept; it is the
        change-detection baseline for the next run.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")

        cutoff = self.clock() - timedelta(days=older_than_days)
        baselines = (
            select(func.max(ScrapingJobResult.id))
            .where(ScrapingJobResult.success.is_(True))
            .group_by(ScrapingJobResult.job_id)
        )
        stmt = delete(ScrapingJobResult).where(
            ScrapingJobResult.created_at < cutoff,
            ScrapingJobResult.id.not_in(baselines),
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        if result.rowcount:
            logger.info(
                f"Cleaned up {result.rowcount} scraping results older than {older_than_days} days"
            )
        return result.rowcount

    async def get_job_stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        stmt = select(ScrapingJob.status, func.count()).group_by(ScrapingJob.status)
        if user_id:
            stmt = stmt.where(ScrapingJob.user_id == user_id)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {status.value: count for status, count in rows}
