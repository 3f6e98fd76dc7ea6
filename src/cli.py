import argparse
import asyncio

from loguru import logger

from src.config import get_settings
from src.db.database import async_session, engine, init_db
from src.notifications.job_queue import NotificationJobQueue
from src.scheduler.jobs import cleanup_notification_jobs, cleanup_scraping_results
from src.scheduler.runner import create_scheduler
from src.scraping.scheduler import ScrapingScheduler

settings = get_settings()


def init_database():
    """初始化資料庫"""
    asyncio.run(_run(init_db()))
    logger.info("Database initialized")


def cleanup_jobs(days: int = None):
    """清理已結束的通知工作與舊的爬取結果"""

    async def _cleanup():
        queue = NotificationJobQueue(async_session, create_scheduler())
        jobs = await cleanup_notification_jobs(queue, days)
        results = await cleanup_scraping_results(ScrapingScheduler(async_session), days)
        return jobs, results

    jobs, results = asyncio.run(_run(_cleanup()))
    logger.info(f"Cleanup finished: {jobs} jobs and {results} scraping results deleted")


def show_stats():
    """顯示兩個 queue 的工作統計"""

    async def _stats():
        queue = NotificationJobQueue(async_session, create_scheduler())
        notification_stats = await queue.get_stats()
        scraping_stats = await ScrapingScheduler(async_session).get_job_stats()
        return notification_stats, scraping_stats

    notification_stats, scraping_stats = asyncio.run(_run(_stats()))
    logger.info(f"Notification jobs: {notification_stats}")
    logger.info(f"Scraping jobs: {scraping_stats}")


async def _run(coro):
    try:
        return await coro
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="BossRoom Job Queues CLI")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init command
    subparsers.add_parser("init", help="Initialize database")

    # serve command
    subparsers.add_parser("serve", help="Start API server")

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Delete finished notification jobs and old scraping results"
    )
    cleanup_parser.add_argument(
        "--days",
        "-d",
        type=int,
        default=None,
        help=(
            f"Age in days (default {settings.notification_cleanup_days} for jobs, "
            f"{settings.scraping_result_retention_days} for results)"
        ),
    )

    # stats command
    subparsers.add_parser("stats", help="Show job queue statistics")

    args = parser.parse_args()

    if args.command == "init":
        init_database()
    elif args.command == "serve":
        import uvicorn

        uvicorn.run(
            "src.main:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=settings.debug,
        )
    elif args.command == "cleanup":
        cleanup_jobs(args.days)
    elif args.command == "stats":
        show_stats()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
