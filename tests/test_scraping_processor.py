import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.db.database import Base
from src.models.scraping_job import FrequencyType, JobPriority, JobType, ScrapingJobStatus
from src.scraping.processor import PROCESSOR_JOB_ID, ScrapingQueueProcessor
from src.scraping.scheduler import ScrapingScheduler
from src.scraping.scraper import ScrapingError


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeScraper:
    def __init__(self, failing_urls=()):
        self.failing_urls = set(failing_urls)
        self.urls = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def scrape(self, url, config=None, previous=None):
        self.urls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            if url in self.failing_urls:
                raise ScrapingError(f"HTTP 503 for {url}")
            return {"url": url, "content_hash": "h", "text": "t", "changes_detected": False}
        finally:
            self.active -= 1

    async def aclose(self):
        self.closed = True


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'processor.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 8, 0, 0))


@pytest.fixture
def scraper():
    return FakeScraper(failing_urls={"https://down.test/3"})


@pytest.fixture
def processor(session_factory, clock, scraper):
    scraping_scheduler = ScrapingScheduler(session_factory, scraper=scraper, clock=clock)
    return ScrapingQueueProcessor(scraping_scheduler, MagicMock())


async def _add(processor, **overrides):
    fields = {
        "competitor_id": 1,
        "user_id": "user-1",
        "job_type": JobType.website,
        "url": "https://acme.test",
        "frequency_value": "30",
    }
    fields.update(overrides)
    return await processor.add_job(**fields)


class TestDefaultJobs:
    async def test_domain_creates_four_site_jobs(self, processor):
        job_ids = await processor.create_default_jobs(1, "user-1", {"domain": "acme.test"})
        assert len(job_ids) == 4

        jobs = {job.job_type: job for job in await processor.get_competitor_jobs(1, "user-1")}
        assert set(jobs) == {JobType.website, JobType.pricing, JobType.products, JobType.jobs}

        website = jobs[JobType.website]
        assert website.url == "https://acme.test"
        assert website.frequency_value == "360"
        assert website.config["changeDetection"] == {"enabled": True, "threshold": 5}
        assert website.config["selectors"]["content"] == [
            "main",
            ".content",
            "#content",
            "article",
        ]
        assert website.config["respectRobotsTxt"] is True

        pricing = jobs[JobType.pricing]
        assert pricing.url == "https://acme.test/pricing"
        assert pricing.priority == JobPriority.high
        assert pricing.frequency_value == "180"
        assert pricing.config["changeDetection"]["threshold"] == 1

        products = jobs[JobType.products]
        assert products.url == "https://acme.test/products"
        assert products.frequency_value == "720"
        assert products.config["changeDetection"]["threshold"] == 3

        careers = jobs[JobType.jobs]
        assert careers.url == "https://acme.test/careers"
        assert careers.frequency_value == "1440"
        assert "selectors" not in careers.config

        assert all(job.frequency_type == FrequencyType.interval for job in jobs.values())

    async def test_one_social_handle_adds_one_job(self, processor):
        job_ids = await processor.create_default_jobs(
            1,
            "user-1",
            {
                "domain": "acme.test",
                "social_media_handles": {"linkedin": "https://linkedin.com/company/acme"},
            },
        )
        assert len(job_ids) == 5

        social = [
            job
            for job in await processor.get_competitor_jobs(1, "user-1")
            if job.job_type == JobType.social
        ]
        assert len(social) == 1
        assert social[0].url == "https://linkedin.com/company/acme"
        assert social[0].frequency_value == "480"
        assert social[0].config == {
            "platform": "linkedin",
            "changeDetection": {"enabled": True, "threshold": 1},
        }

    async def test_social_only(self, processor):
        job_ids = await processor.create_default_jobs(
            1,
            "user-1",
            {"social_media_handles": {"twitter": "https://x.com/acme", "linkedin": ""}},
        )
        assert len(job_ids) == 1

        job = await processor.scraping_scheduler.get_job(job_ids[0])
        assert job.frequency_value == "240"
        assert job.config["platform"] == "twitter"

    async def test_nothing_to_monitor(self, processor):
        assert await processor.create_default_jobs(1, "user-1", {}) == []


class TestUpdateJobFrequencies:
    async def test_critical(self, processor, clock):
        job_id = await _add(processor, frequency_value="240")
        cron_id = await _add(
            processor, frequency_type=FrequencyType.cron, frequency_value="0 9 * * *"
        )

        await processor.update_job_frequencies(1, "user-1", "critical")

        job = await processor.scraping_scheduler.get_job(job_id)
        assert job.frequency_value == "60"
        assert job.next_run_at == clock.now + timedelta(minutes=60)

        cron_job = await processor.scraping_scheduler.get_job(cron_id)
        assert cron_job.frequency_value == "0 9 * * *"

    async def test_low_halves_frequency(self, processor):
        job_id = await _add(processor, frequency_value="40")
        await processor.update_job_frequencies(1, "user-1", "low")

        job = await processor.scraping_scheduler.get_job(job_id)
        assert job.frequency_value == "80"

    async def test_floor_of_thirty_minutes(self, processor):
        job_id = await _add(processor, frequency_value="60")
        await processor.update_job_frequencies(1, "user-1", "critical")

        job = await processor.scraping_scheduler.get_job(job_id)
        assert job.frequency_value == "30"

    async def test_other_competitors_untouched(self, processor):
        other = await _add(processor, competitor_id=2, frequency_value="240")
        await processor.update_job_frequencies(1, "user-1", "critical")

        job = await processor.scraping_scheduler.get_job(other)
        assert job.frequency_value == "240"


class TestProcessQueue:
    async def test_noop_when_stopped(self, processor, clock, scraper):
        await _add(processor)
        clock.advance(hours=1)

        await processor.process_queue()

        assert scraper.urls == []

    async def test_start_registers_poller_and_processes_due_jobs(
        self, processor, clock, scraper
    ):
        for i in range(7):
            url = "https://down.test/3" if i == 3 else f"https://acme.test/{i}"
            await _add(processor, url=url)
        clock.advance(minutes=31)

        await processor.start()

        processor.scheduler.add_job.assert_called_once()
        assert processor.scheduler.add_job.call_args.kwargs["id"] == PROCESSOR_JOB_ID
        assert processor.is_running is True

        assert len(scraper.urls) == 7
        assert scraper.max_active <= 5

        jobs = await processor.get_competitor_jobs(1, "user-1")
        failed = [job for job in jobs if job.url == "https://down.test/3"]
        succeeded = [job for job in jobs if job.url != "https://down.test/3"]

        assert failed[0].retry_count == 1
        assert failed[0].status == ScrapingJobStatus.pending
        assert all(job.status == ScrapingJobStatus.pending for job in succeeded)
        assert all(job.last_run_at == clock.now for job in succeeded)
        assert all(job.retry_count == 0 for job in succeeded)

        history = await processor.scraping_scheduler.get_job_history(failed[0].id)
        assert history[0].success is False
        assert "HTTP 503" in history[0].error

    async def test_overlapping_cycles_run_job_once(self, processor, clock, scraper):
        job_id = await _add(processor, url="https://acme.test/solo")
        clock.advance(minutes=31)
        processor._is_running = True

        await asyncio.gather(processor.process_queue(), processor.process_queue())

        assert scraper.urls == ["https://acme.test/solo"]
        history = await processor.scraping_scheduler.get_job_history(job_id)
        assert len(history) == 1

    async def test_same_job_processed_concurrently_runs_once(self, processor, clock, scraper):
        job_id = await _add(processor, url="https://acme.test/solo")
        clock.advance(minutes=31)
        job = await processor.scraping_scheduler.get_job(job_id)

        await asyncio.gather(processor.process_job(job), processor.process_job(job))

        assert scraper.urls == ["https://acme.test/solo"]
        job = await processor.scraping_scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.pending

    async def test_next_cycle_runs_after_previous_finishes(self, processor, clock, scraper):
        await _add(processor, url="https://acme.test/solo")
        clock.advance(minutes=31)
        processor._is_running = True

        await processor.process_queue()
        clock.advance(minutes=31)
        await processor.process_queue()

        assert scraper.urls == ["https://acme.test/solo", "https://acme.test/solo"]

    async def test_process_job_records_unexpected_errors(self, processor, clock):
        job_id = await _add(processor)
        clock.advance(minutes=31)
        job = await processor.scraping_scheduler.get_job(job_id)

        with patch.object(
            processor.scraping_scheduler, "execute_job", side_effect=RuntimeError("boom")
        ):
            await processor.process_job(job)

        job = await processor.scraping_scheduler.get_job(job_id)
        assert job.retry_count == 1
        assert job.status == ScrapingJobStatus.pending

        history = await processor.scraping_scheduler.get_job_history(job_id)
        assert history[0].error == "boom"
        assert history[0].execution_time == 0
        assert history[0].changes_detected is False

    async def test_cycle_errors_are_logged(self, processor):
        processor._is_running = True
        with patch.object(
            processor.scraping_scheduler, "get_jobs_to_run", side_effect=RuntimeError("db")
        ):
            await processor.process_queue()

    async def test_stop(self, processor, scraper):
        await processor.start()
        await processor.stop()

        assert processor.is_running is False
        processor.scheduler.remove_job.assert_called_once_with(PROCESSOR_JOB_ID)
        assert scraper.closed is True

        await processor.stop()
        processor.scheduler.remove_job.assert_called_once()


class TestCompetitorJobs:
    async def test_pause_resume_delete(self, processor, clock):
        first = await _add(processor)
        await _add(processor)
        await _add(processor, competitor_id=2)

        assert await processor.pause_competitor_jobs(1, "user-1") == 2
        assert await processor.pause_competitor_jobs(1, "user-1") == 0

        clock.advance(hours=2)
        assert await processor.resume_competitor_jobs(1, "user-1") == 2
        job = await processor.scraping_scheduler.get_job(first)
        assert job.status == ScrapingJobStatus.pending
        assert job.next_run_at == clock.now + timedelta(minutes=30)

        assert await processor.delete_competitor_jobs(1, "user-1") == 2
        assert await processor.get_competitor_jobs(1, "user-1") == []
        assert len(await processor.get_competitor_jobs(2, "user-1")) == 1

    async def test_queue_stats(self, processor):
        await _add(processor)
        await _add(processor, competitor_id=2)
        await processor.pause_competitor_jobs(2, "user-1")

        assert await processor.get_queue_stats() == {
            "total": 2,
            "pending": 1,
            "running": 0,
            "completed": 0,
            "failed": 0,
            "paused": 1,
        }

    async def test_health_status(self, processor):
        health = processor.get_health_status()
        assert health == {
            "isRunning": False,
            "processingInterval": 30,
            "maxConcurrentJobs": 5,
            "uptime": 0,
        }

        await processor.start()
        assert processor.get_health_status()["isRunning"] is True
