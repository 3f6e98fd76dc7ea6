from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.api.deps import verify_admin_key
from src.api.router import api_router
from src.config import get_settings
from src.db.database import async_session, init_db
from src.notifications.job_queue import NotificationJobQueue
from src.scheduler.runner import create_scheduler, schedule_maintenance, start_scheduler
from src.scraping.processor import ScrapingQueueProcessor
from src.scraping.scheduler import ScrapingScheduler

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up...")
    await init_db()

    # 啟動排程器與兩個 queue
    scheduler = create_scheduler()
    notification_queue = NotificationJobQueue(async_session, scheduler)
    scraping_scheduler = ScrapingScheduler(async_session)
    scraping_processor = ScrapingQueueProcessor(scraping_scheduler, scheduler)
    schedule_maintenance(scheduler, notification_queue, scraping_scheduler)
    start_scheduler(scheduler)

    app.state.scheduler = scheduler
    app.state.notification_queue = notification_queue
    app.state.scraping_processor = scraping_processor

    await notification_queue.initialize()
    # 重啟前留下的 pending 工作
    notification_queue.start_processor()
    await scraping_processor.start()

    yield

    # 關閉排程器
    await scraping_processor.stop()
    notification_queue.stop_processor()
    scheduler.shutdown(wait=False)
    logger.info("Shutting down...")


# Disable interactive docs in production
docs_url = None if settings.is_production else "/docs"
redoc_url = None if settings.is_production else "/redoc"

app = FastAPI(
    title="BossRoom Job Queues API",
    description="通知排程與競爭對手監控 API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url=docs_url,
    redoc_url=redoc_url,
)

# Configure CORS origins
default_origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
if settings.cors_origins:
    cors_origins = [origin.strip() for origin in settings.cors_origins.split(",")]
else:
    cors_origins = default_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-Admin-Key"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/admin/status", dependencies=[Depends(verify_admin_key)])
async def admin_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    notification_queue = getattr(request.app.state, "notification_queue", None)
    scraping_processor = getattr(request.app.state, "scraping_processor", None)

    jobs = []
    if scheduler:
        for job in scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(job.next_run_time) if job.next_run_time else None,
                }
            )

    return {
        "scheduler_running": scheduler is not None and scheduler.running,
        "jobs": jobs,
        "notification_queue": notification_queue.get_status() if notification_queue else None,
        "scraping_processor": (
            scraping_processor.get_health_status() if scraping_processor else None
        ),
    }
