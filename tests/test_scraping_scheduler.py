import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.db.database import Base
from src.models.intelligence_data import IntelligenceData
from src.models.scraping_job import (
    FrequencyType,
    JobPriority,
    JobType,
    ScrapingJobResult,
    ScrapingJobStatus,
)
from src.scraping.scheduler import JobNotFoundError, ScrapingScheduler
from src.scraping.scraper import JobResult


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scraping.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 8, 0, 0))


@pytest.fixture
def scraper():
    scraper = MagicMock()
    scraper.scrape = AsyncMock(
        return_value={"content_hash": "h1", "text": "hello", "changes_detected": False}
    )
    return scraper


@pytest.fixture
def scheduler(session_factory, clock, scraper):
    return ScrapingScheduler(session_factory, scraper=scraper, clock=clock)


async def _create(scheduler, **overrides):
    fields = {
        "competitor_id": 1,
        "user_id": "user-1",
        "job_type": JobType.website,
        "url": "https://acme.test",
        "frequency_value": "60",
    }
    fields.update(overrides)
    return await scheduler.create_job(**fields)


async def _results(session_factory, job_id):
    async with session_factory() as session:
        stmt = select(ScrapingJobResult).where(ScrapingJobResult.job_id == job_id)
        return (await session.execute(stmt)).scalars().all()


class TestCreateJob:
    async def test_defaults(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_value=360)

        job = await scheduler.get_job(job_id)
        assert uuid.UUID(job_id)
        assert job.status == ScrapingJobStatus.pending
        assert job.priority == JobPriority.medium
        assert job.frequency_value == "360"
        assert job.next_run_at == clock.now + timedelta(minutes=360)
        assert job.retry_count == 0
        assert job.max_retries == 3
        assert job.config == {}

    async def test_accepts_plain_strings(self, scheduler, clock):
        job_id = await _create(
            scheduler,
            job_type="pricing",
            priority="high",
            frequency_type="cron",
            frequency_value="0 9 * * *",
        )

        job = await scheduler.get_job(job_id)
        assert job.job_type == JobType.pricing
        assert job.priority == JobPriority.high
        assert job.next_run_at == datetime(2026, 3, 1, 9, 0, 0)

    async def test_unknown_job_type_rejected(self, scheduler):
        with pytest.raises(ValueError):
            await _create(scheduler, job_type="newsletter")


class TestJobsToRun:
    async def test_due_jobs_by_priority_then_time(self, scheduler, clock):
        low = await _create(scheduler, priority=JobPriority.low, frequency_value="30")
        critical = await _create(
            scheduler, priority=JobPriority.critical, frequency_value="50"
        )
        high_late = await _create(scheduler, priority=JobPriority.high, frequency_value="45")
        high_early = await _create(
            scheduler, priority=JobPriority.high, frequency_value="35"
        )
        await _create(scheduler, priority=JobPriority.critical, frequency_value="600")

        clock.advance(hours=1)
        jobs = await scheduler.get_jobs_to_run()

        assert [job.id for job in jobs] == [critical, high_early, high_late, low]

    async def test_limit(self, scheduler, clock):
        for _ in range(4):
            await _create(scheduler, frequency_value="30")
        clock.advance(hours=1)

        assert len(await scheduler.get_jobs_to_run(limit=3)) == 3

    async def test_paused_and_running_jobs_skipped(self, scheduler, clock):
        paused = await _create(scheduler, frequency_value="30")
        running = await _create(scheduler, frequency_value="30")
        await scheduler.pause_job(paused)
        await scheduler.update_job_status(running, ScrapingJobStatus.running)
        clock.advance(hours=1)

        assert await scheduler.get_jobs_to_run() == []

    async def test_exhausted_failed_job_skipped(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_value="30", max_retries=1)
        clock.advance(hours=1)
        await scheduler.update_job_status(job_id, ScrapingJobStatus.running, clock.now)
        await scheduler.record_job_result(job_id, JobResult(success=False, error="boom"))

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.failed

        clock.advance(days=1)
        assert await scheduler.get_jobs_to_run() == []


class TestClaimJob:
    async def test_claim_marks_running(self, scheduler, clock):
        job_id = await _create(scheduler)

        assert await scheduler.claim_job(job_id) is True

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.running
        assert job.last_run_at == clock.now

    async def test_claim_only_once(self, scheduler):
        job_id = await _create(scheduler)

        assert await scheduler.claim_job(job_id) is True
        assert await scheduler.claim_job(job_id) is False

    async def test_paused_job_not_claimed(self, scheduler):
        job_id = await _create(scheduler)
        await scheduler.pause_job(job_id)

        assert await scheduler.claim_job(job_id) is False

    async def test_failed_job_can_be_claimed(self, scheduler):
        job_id = await _create(scheduler)
        await scheduler.update_job_status(job_id, ScrapingJobStatus.failed)

        assert await scheduler.claim_job(job_id) is True


class TestRecordJobResult:
    async def test_success_reschedules_recurring_job(self, scheduler, session_factory, clock):
        job_id = await _create(scheduler, frequency_value="60")
        clock.advance(minutes=61)

        await scheduler.record_job_result(
            job_id,
            JobResult(success=True, data={"content_hash": "h1"}, execution_time=120),
        )

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.pending
        assert job.last_run_at == clock.now
        assert job.next_run_at == clock.now + timedelta(minutes=60)

        results = await _results(session_factory, job_id)
        assert len(results) == 1
        assert results[0].success is True
        assert results[0].execution_time == 120

    async def test_success_completes_manual_job(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_type=FrequencyType.manual)

        await scheduler.record_job_result(job_id, JobResult(success=True, data={}))

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.completed

    async def test_failure_backs_off(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_value="60")

        await scheduler.record_job_result(job_id, JobResult(success=False, error="HTTP 503"))

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.pending
        assert job.retry_count == 1
        assert clock.now + timedelta(minutes=2) <= job.next_run_at
        assert job.next_run_at <= clock.now + timedelta(minutes=2.2)

    async def test_failure_at_max_retries_fails(self, scheduler):
        job_id = await _create(scheduler)

        for _ in range(3):
            await scheduler.record_job_result(job_id, JobResult(success=False, error="x"))

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.failed
        assert job.retry_count == 3

    async def test_success_resets_retry_count(self, scheduler):
        job_id = await _create(scheduler)
        await scheduler.record_job_result(job_id, JobResult(success=False, error="x"))
        await scheduler.record_job_result(job_id, JobResult(success=True, data={}))

        job = await scheduler.get_job(job_id)
        assert job.retry_count == 0

    async def test_change_stores_intelligence(self, scheduler, session_factory, clock):
        job_id = await _create(
            scheduler, job_type=JobType.pricing, priority=JobPriority.high, competitor_id=7
        )

        await scheduler.record_job_result(
            job_id,
            JobResult(
                success=True,
                data={"content_hash": "h2", "change_percentage": 12.5},
                changes_detected=True,
            ),
        )

        async with session_factory() as session:
            rows = (await session.execute(select(IntelligenceData))).scalars().all()
        assert len(rows) == 1
        assert rows[0].competitor_id == 7
        assert rows[0].data_type == "pricing"
        assert rows[0].importance == "high"
        assert rows[0].tags == ["pricing", "automated"]
        assert rows[0].extracted_data["changePercentage"] == 12.5

    async def test_importance_follows_priority(self, scheduler, session_factory):
        job_id = await _create(scheduler, priority=JobPriority.low)

        await scheduler.record_job_result(
            job_id, JobResult(success=True, data={}, changes_detected=True)
        )

        async with session_factory() as session:
            row = (await session.execute(select(IntelligenceData))).scalar_one()
        assert row.importance == "low"

    async def test_no_change_stores_nothing(self, scheduler, session_factory):
        job_id = await _create(scheduler)
        await scheduler.record_job_result(job_id, JobResult(success=True, data={}))

        async with session_factory() as session:
            rows = (await session.execute(select(IntelligenceData))).scalars().all()
        assert rows == []


class TestExecuteJob:
    async def test_uses_last_success_as_baseline(self, scheduler, scraper):
        job_id = await _create(scheduler, config={"respectRobotsTxt": True})
        await scheduler.record_job_result(
            job_id, JobResult(success=True, data={"content_hash": "h0", "text": "old"})
        )
        await scheduler.record_job_result(job_id, JobResult(success=False, error="x"))

        job = await scheduler.get_job(job_id)
        result = await scheduler.execute_job(job)

        scraper.scrape.assert_awaited_once_with(
            "https://acme.test",
            {"respectRobotsTxt": True},
            {"content_hash": "h0", "text": "old"},
        )
        assert result.success is True
        assert result.data["job_type"] == "website"
        assert result.changes_detected is False
        assert result.retry_count == 1

    async def test_first_run_has_no_baseline(self, scheduler, scraper):
        job_id = await _create(scheduler)
        job = await scheduler.get_job(job_id)

        await scheduler.execute_job(job)

        assert scraper.scrape.call_args.args[2] is None


class TestLifecycle:
    async def test_pause_and_resume(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_value="60")
        await scheduler.pause_job(job_id)
        assert (await scheduler.get_job(job_id)).status == ScrapingJobStatus.paused

        clock.advance(hours=5)
        await scheduler.resume_job(job_id)

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.pending
        assert job.next_run_at == clock.now + timedelta(minutes=60)

    async def test_resume_unknown_job(self, scheduler):
        with pytest.raises(JobNotFoundError):
            await scheduler.resume_job(str(uuid.uuid4()))

    async def test_delete_removes_results(self, scheduler, session_factory):
        job_id = await _create(scheduler)
        await scheduler.record_job_result(job_id, JobResult(success=True, data={}))

        await scheduler.delete_job(job_id)

        assert await scheduler.get_job(job_id) is None
        assert await _results(session_factory, job_id) == []

    async def test_start_requeues_running_jobs(self, scheduler, clock):
        job_id = await _create(scheduler, frequency_value="600")
        await scheduler.update_job_status(job_id, ScrapingJobStatus.running, clock.now)

        await scheduler.start()

        job = await scheduler.get_job(job_id)
        assert job.status == ScrapingJobStatus.pending
        assert job.next_run_at == clock.now

    async def test_competitor_jobs_scoped_to_user(self, scheduler):
        mine = await _create(scheduler, competitor_id=3, user_id="user-1")
        await _create(scheduler, competitor_id=3, user_id="user-2")
        await _create(scheduler, competitor_id=4, user_id="user-1")

        jobs = await scheduler.get_competitor_jobs(3, "user-1")
        assert [job.id for job in jobs] == [mine]

    async def test_history_newest_first(self, scheduler, clock):
        job_id = await _create(scheduler)
        for i in range(7):
            clock.advance(minutes=1)
            await scheduler.record_job_result(
                job_id, JobResult(success=True, data={}, execution_time=i)
            )

        history = await scheduler.get_job_history(job_id)
        assert [r.execution_time for r in history] == [6, 5, 4, 3, 2]

    async def test_cleanup_results_keeps_baseline(self, scheduler, session_factory, clock):
        job_id = await _create(scheduler)
        await scheduler.record_job_result(
            job_id, JobResult(success=True, data={"content_hash": "h0"})
        )
        await scheduler.record_job_result(
            job_id, JobResult(success=True, data={"content_hash": "h1"})
        )
        await scheduler.record_job_result(job_id, JobResult(success=False, error="x"))
        clock.advance(days=40)
        await scheduler.record_job_result(job_id, JobResult(success=False, error="recent"))

        assert await scheduler.cleanup_results(30) == 2

        results = await _results(session_factory, job_id)
        assert len(results) == 2
        assert await scheduler.get_last_success_data(job_id) == {"content_hash": "h1"}
        assert {r.error for r in results} == {None, "recent"}

    async def test_cleanup_results_rejects_negative_age(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.cleanup_results(-1)

    async def test_job_stats(self, scheduler):
        first = await _create(scheduler)
        await _create(scheduler)
        await _create(scheduler, user_id="user-2")
        await scheduler.pause_job(first)

        assert await scheduler.get_job_stats() == {"pending": 2, "paused": 1}
        assert await scheduler.get_job_stats("user-1") == {"pending": 1, "paused": 1}
