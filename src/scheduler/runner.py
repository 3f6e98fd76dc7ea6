from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from src.notifications.job_queue import NotificationJobQueue
from src.scheduler.jobs import cleanup_notification_jobs, cleanup_scraping_results
from src.scraping.scheduler import ScrapingScheduler


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(timezone="UTC")


def schedule_maintenance(
    scheduler: AsyncIOScheduler,
    queue: NotificationJobQueue,
    scraping_scheduler: ScrapingScheduler,
) -> None:
    # 每日凌晨 4:00 清理已結束的通知工作
    scheduler.add_job(
        cleanup_notification_jobs,
        CronTrigger(hour=4, minute=0),
        args=[queue],
        id="cleanup_notification_jobs",
        name="Cleanup Notification Jobs",
        replace_existing=True,
    )

    # 每日凌晨 4:30 清理舊的爬取結果
    scheduler.add_job(
        cleanup_scraping_results,
        CronTrigger(hour=4, minute=30),
        args=[scraping_scheduler],
        id="cleanup_scraping_results",
        name="Cleanup Scraping Results",
        replace_existing=True,
    )

    logger.info("Scheduler configured with maintenance jobs")


def start_scheduler(scheduler: AsyncIOScheduler) -> AsyncIOScheduler:
    """Start the scheduler; must be called with a running event loop."""
    scheduler.start()
    logger.info("Scheduler started")
    return scheduler
