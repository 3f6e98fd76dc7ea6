from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger

from src.config import get_settings
from src.notifications.job_queue import NotificationJobQueue
from src.scraping.scheduler import ScrapingScheduler

settings = get_settings()


async def cleanup_notification_jobs(
    queue: NotificationJobQueue, older_than_days: Optional[int] = None
) -> int:
    """清理已結束的通知工作"""
    days = settings.notification_cleanup_days if older_than_days is None else older_than_days
    logger.info(f"Cleaning up notification jobs at {datetime.now()}")

    try:
        deleted = await queue.cleanup(days)
    except Exception as e:
        logger.error(f"Error cleaning up notification jobs: {e}")
        return 0

    logger.info(f"Deleted {deleted} notification jobs older than {days} days")
    return deleted


async def cleanup_scraping_results(
    scraping_scheduler: ScrapingScheduler, older_than_days: Optional[int] = None
) -> int:
    """清理舊的爬取結果（保留每個工作最新一次成功結果）"""
    days = (
        settings.scraping_result_retention_days if older_than_days is None else older_than_days
    )
    logger.info(f"Cleaning up scraping results at {datetime.now()}")

    try:
        deleted = await scraping_scheduler.cleanup_results(days)
    except Exception as e:
        logger.error(f"Error cleaning up scraping results: {e}")
        return 0

    logger.info(f"Deleted {deleted} scraping results older than {days} days")
    return deleted
