from typing import Optional

from fastapi import Header, HTTPException, Request

from src.config import get_settings
from src.notifications.job_queue import NotificationJobQueue
from src.scraping.processor import ScrapingQueueProcessor


def get_notification_queue(request: Request) -> NotificationJobQueue:
    queue = getattr(request.app.state, "notification_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Notification job queue not running")
    return queue


def get_scraping_processor(request: Request) -> ScrapingQueueProcessor:
    processor = getattr(request.app.state, "scraping_processor", None)
    if processor is None:
        raise HTTPException(status_code=503, detail="Scraping queue processor not running")
    return processor


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def verify_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    settings = get_settings()
    # Require admin key in production
    if settings.is_production:
        if not settings.admin_api_key:
            raise HTTPException(status_code=503, detail="Admin API not configured")
        if x_admin_key != settings.admin_api_key:
            raise HTTPException(status_code=401, detail="Invalid admin key")
