"""Polling processor for competitor scraping jobs.

Every tick asks the scheduler for due jobs and runs them in chunks of
``MAX_CONCURRENT_JOBS``; a failing job never aborts its siblings.
"""
from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger
from sqlalchemy import update

from src.config import get_settings
from src.models.scraping_job import (
    FrequencyType,
    JobPriority,
    JobType,
    ScrapingJob,
    ScrapingJobStatus,
)
from src.scraping.scheduler import ScrapingScheduler
from src.scraping.scraper import JobResult
from src.scraping.utils import adjust_interval, chunk

PROCESSOR_JOB_ID = "scraping_queue_processor"

# 新競爭對手的預設監控工作
DEFAULT_SITE_JOBS: List[Dict[str, Any]] = [
    {
        "job_type": JobType.website,
        "path": "",
        "priority": JobPriority.medium,
        "frequency_value": "360",  # 6 hours
        "threshold": 5,
        "selectors": {"content": ["main", ".content", "#content", "article"]},
    },
    {
        "job_type": JobType.pricing,
        "path": "/pricing",
        "priority": JobPriority.high,
        "frequency_value": "180",  # 3 hours
        "threshold": 1,
        "selectors": {"pricing": [".price", ".pricing", "[data-price]", ".cost"]},
    },
    {
        "job_type": JobType.products,
        "path": "/products",
        "priority": JobPriority.medium,
        "frequency_value": "720",  # 12 hours
        "threshold": 3,
        "selectors": {"products": [".product", ".feature", ".service"]},
    },
    {
        "job_type": JobType.jobs,
        "path": "/careers",
        "priority": JobPriority.medium,
        "frequency_value": "1440",  # 24 hours
        "threshold": 1,  # any new posting
        "selectors": None,
    },
]

DEFAULT_SOCIAL_FREQUENCIES = {
    "linkedin": "480",  # 8 hours
    "twitter": "240",  # 4 hours
}


class ScrapingQueueProcessor:
    def __init__(self, scraping_scheduler: ScrapingScheduler, scheduler):
        settings = get_settings()
        self.scraping_scheduler = scraping_scheduler
        self.scheduler = scheduler
        self.poll_interval = settings.scraping_poll_interval_seconds
        self.max_concurrent_jobs = settings.scraping_max_concurrent_jobs

        self._is_running = False
        self._is_processing = False
        self._started_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            logger.info("Queue processor already running")
            return

        logger.info("Starting scraping queue processor...")
        self._is_running = True
        self._started_at = time.monotonic()

        await self.scraping_scheduler.start()

        self.scheduler.add_job(
            self.process_queue,
            IntervalTrigger(seconds=self.poll_interval),
            id=PROCESSOR_JOB_ID,
            name="Scraping Queue Processor",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        await self.process_queue()
        logger.info("Scraping queue processor started")

    async def stop(self) -> None:
        if not self._is_running:
            return

        logger.info("Stopping scraping queue processor...")
        self._is_running = False
        self._started_at = None

        try:
            self.scheduler.remove_job(PROCESSOR_JOB_ID)
        except JobLookupError:
            logger.debug("Scraping queue processor was already removed from the scheduler")

        self.scraping_scheduler.stop()
        await self.scraping_scheduler.scraper.aclose()
        logger.info("Scraping queue processor stopped")

    async def process_queue(self) -> None:
        if not self._is_running:
            return
        if self._is_processing:
            logger.info("Skipping queue processing - previous cycle still in progress")
            return

        self._is_processing = True
        try:
            jobs = await self.scraping_scheduler.get_jobs_to_run()
            if not jobs:
                return

            logger.info(f"Processing {len(jobs)} jobs from queue")

            for batch in chunk(jobs, self.max_concurrent_jobs):
                results = await asyncio.gather(
                    *(self.process_job(job) for job in batch), return_exceptions=True
                )
                for job, result in zip(batch, results):
                    if isinstance(result, Exception):
                        logger.error(f"Unhandled error in scraping job {job.id}: {result}")
        except Exception as e:
            logger.error(f"Error in queue processing: {e}")
        finally:
            self._is_processing = False

    async def process_job(self, job: ScrapingJob) -> None:
        """Run one job and record its result; failures are recorded, not raised."""
        try:
            if not await self.scraping_scheduler.claim_job(job.id):
                logger.debug(f"Job {job.id} was claimed elsewhere, skipping")
                return

            logger.info(
                f"Processing job {job.id} ({job.job_type.value}) "
                f"for competitor {job.competitor_id}"
            )
            result = await self.scraping_scheduler.execute_job(job)
            await self.scraping_scheduler.record_job_result(job.id, result)
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}")
            await self.scraping_scheduler.record_job_result(
                job.id,
                JobResult(
                    success=False,
                    error=str(e) or "Unknown error",
                    execution_time=0,
                    changes_detected=False,
                    retry_count=job.retry_count or 0,
                ),
            )

    async def add_job(
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
    ) -> str:
        logger.info(f"Adding new job: {JobType(job_type).value} for competitor {competitor_id}")

        job_id = await self.scraping_scheduler.create_job(
            competitor_id=competitor_id,
            user_id=user_id,
            job_type=job_type,
            url=url,
            frequency_value=frequency_value,
            priority=priority,
            frequency_type=frequency_type,
            frequency_timezone=frequency_timezone,
            config=config,
        )

        logger.info(f"Job {job_id} added to queue")
        return job_id

    async def create_default_jobs(
        self,
        competitor_id: int,
        user_id: str,
        competitor_data: Dict[str, Any],
    ) -> List[str]:
        """建立新競爭對手的預設監控工作

        Args:
            competitor_id: Competitor being monitored.
            user_id: Owner of the competitor profile.
            competitor_data: ``domain`` and ``social_media_handles``
                (``{"linkedin": url, "twitter": url}``).

        Returns:
            Ids of the created jobs.
        """
        job_ids: List[str] = []

        domain = competitor_data.get("domain")
        if domain:
            for site_job in DEFAULT_SITE_JOBS:
                config: Dict[str, Any] = {
                    "changeDetection": {"enabled": True, "threshold": site_job["threshold"]},
                    "respectRobotsTxt": True,
                }
                if site_job["selectors"]:
                    config["selectors"] = site_job["selectors"]

                job_ids.append(
                    await self.add_job(
                        competitor_id=competitor_id,
                        user_id=user_id,
                        job_type=site_job["job_type"],
                        url=f"https://{domain}{site_job['path']}",
                        priority=site_job["priority"],
                        frequency_type=FrequencyType.interval,
                        frequency_value=site_job["frequency_value"],
                        config=config,
                    )
                )

        handles = competitor_data.get("social_media_handles") or {}
        for platform, frequency in DEFAULT_SOCIAL_FREQUENCIES.items():
            if not handles.get(platform):
                continue
            job_ids.append(
                await self.add_job(
                    competitor_id=competitor_id,
                    user_id=user_id,
                    job_type=JobType.social,
                    url=handles[platform],
                    priority=JobPriority.medium,
                    frequency_type=FrequencyType.interval,
                    frequency_value=frequency,
                    config={
                        "platform": platform,
                        "changeDetection": {"enabled": True, "threshold": 1},
                    },
                )
            )

        logger.info(
            f"Created {len(job_ids)} default monitoring jobs for competitor {competitor_id}"
        )
        return job_ids

    async def update_job_frequencies(
        self, competitor_id: int, user_id: str, threat_level: str
    ) -> None:
        """Rescale interval jobs by threat level (critical runs 4x as often, low half as often)."""
        jobs = await self.get_competitor_jobs(competitor_id, user_id)
        now = self.scraping_scheduler.clock()

        async with self.scraping_scheduler.session_factory() as session:
            for job in jobs:
                if job.frequency_type != FrequencyType.interval:
                    continue
                new_minutes = adjust_interval(int(job.frequency_value), threat_level)
                await session.execute(
                    update(ScrapingJob)
                    .where(ScrapingJob.id == job.id)
                    .values(
                        frequency_value=str(new_minutes),
                        next_run_at=now + timedelta(minutes=new_minutes),
                    )
                )
            await session.commit()

        logger.info(
            f"Updated job frequencies for competitor {competitor_id} "
            f"(threat level: {threat_level})"
        )

    async def get_competitor_jobs(self, competitor_id: int, user_id: str) -> List[ScrapingJob]:
        return await self.scraping_scheduler.get_competitor_jobs(competitor_id, user_id)

    async def pause_competitor_jobs(self, competitor_id: int, user_id: str) -> int:
        jobs = await self.get_competitor_jobs(competitor_id, user_id)
        pending = [job for job in jobs if job.status == ScrapingJobStatus.pending]
        for job in pending:
            await self.scraping_scheduler.pause_job(job.id)
        return len(pending)

    async def resume_competitor_jobs(self, competitor_id: int, user_id: str) -> int:
        jobs = await self.get_competitor_jobs(competitor_id, user_id)
        paused = [job for job in jobs if job.status == ScrapingJobStatus.paused]
        for job in paused:
            await self.scraping_scheduler.resume_job(job.id)
        return len(paused)

    async def delete_competitor_jobs(self, competitor_id: int, user_id: str) -> int:
        jobs = await self.get_competitor_jobs(competitor_id, user_id)
        for job in jobs:
            await self.scraping_scheduler.delete_job(job.id)
        return len(jobs)

    async def get_queue_stats(self) -> Dict[str, int]:
        stats = await self.scraping_scheduler.get_job_stats()
        return {
            "total": sum(stats.values()),
            "pending": stats.get("pending", 0),
            "running": stats.get("running", 0),
            "completed": stats.get("completed", 0),
            "failed": stats.get("failed", 0),
            "paused": stats.get("paused", 0),
        }

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self._is_running,
            "processingInterval": self.poll_interval,
            "maxConcurrentJobs": self.max_concurrent_jobs,
            "uptime": (
                round(time.monotonic() - self._started_at, 1) if self._started_at else 0
            ),
        }
