from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import get_current_user_id, get_notification_queue, verify_admin_key
from src.config import get_settings
from src.db.database import get_db
from src.models.base import as_naive_utc
from src.models.notification_job import DEFAULT_MAX_ATTEMPTS, NotificationJobStatus
from src.notifications.dispatcher import NotificationDispatcher
from src.notifications.errors import (
    DeliveryNotConfiguredError,
    MissingTargetError,
    NoSubscriptionsError,
)
from src.notifications.job_queue import NotificationJobQueue

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

MAX_PAGE_SIZE = 100
MAX_BULK_CANCEL = 50


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: Optional[HttpUrl] = None


class NotificationContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=100)
    body: str = Field(min_length=1, max_length=300)
    icon: Optional[HttpUrl] = None
    badge: Optional[HttpUrl] = None
    image: Optional[HttpUrl] = None
    data: Optional[Dict[str, Any]] = None
    actions: Optional[List[NotificationAction]] = Field(None, max_length=3)
    tag: Optional[str] = None
    require_interaction: bool = Field(False, alias="requireInteraction")
    silent: bool = False
    vibrate: Optional[List[int]] = Field(None, max_length=31)
    user_ids: Optional[List[str]] = Field(None, alias="userIds", max_length=1000)
    all_users: bool = Field(False, alias="allUsers")

    def job_fields(self) -> Dict[str, Any]:
        """Content and targeting as ``NotificationJobQueue.add_job`` keyword arguments."""
        return self.model_dump(
            mode="json", include=set(NotificationContent.model_fields)
        )

    def notification(self) -> Dict[str, Any]:
        """Content and targeting keyed the way the dispatcher reads them."""
        return self.model_dump(
            mode="json", by_alias=True, include=set(NotificationContent.model_fields)
        )


class SendNotificationRequest(NotificationContent):
    scheduled_time: Optional[datetime] = Field(None, alias="scheduledTime")


class CreateJobRequest(NotificationContent):
    scheduled_time: datetime = Field(alias="scheduledTime")
    max_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1, le=10, alias="maxAttempts")


class CancelJobsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_ids: List[str] = Field(alias="jobIds", min_length=1, max_length=MAX_BULK_CANCEL)


@router.post("/send")
async def send_notification(
    body: SendNotificationRequest,
    x_system_job: Optional[str] = Header(None),
    x_job_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_admin_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    queue: NotificationJobQueue = Depends(get_notification_queue),
):
    is_system_job = x_system_job == "true"
    user_id: Optional[str] = None

    if is_system_job:
        logger.info(f"Processing system job: {x_job_id}")
    else:
        user_id = get_current_user_id(x_user_id)
        verify_admin_key(x_admin_key)

    # 排程通知交給 job queue
    if body.scheduled_time is not None and not is_system_job:
        scheduled_time = as_naive_utc(body.scheduled_time)
        if scheduled_time <= queue.clock():
            raise HTTPException(status_code=400, detail="Scheduled time must be in the future")

        job_id = await queue.add_job(
            **body.job_fields(),
            scheduled_time=scheduled_time,
            created_by=user_id,
        )
        return {
            "success": True,
            "message": "Notification scheduled successfully",
            "scheduledTime": scheduled_time.isoformat(),
            "jobId": job_id,
        }

    dispatcher = NotificationDispatcher(db)
    try:
        summary = await dispatcher.dispatch(
            body.notification(),
            sent_by=user_id or "system",
            requester_id=user_id,
            is_system_job=is_system_job,
        )
    except MissingTargetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NoSubscriptionsError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DeliveryNotConfiguredError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": True,
        "message": f"Sent {summary['successCount']} notifications successfully",
        "summary": {
            "targetCount": summary["targetCount"],
            "successCount": summary["successCount"],
            "errorCount": summary["errorCount"],
        },
        "results": summary["results"],
        "errors": summary["errors"] or None,
    }


@router.get("/jobs", dependencies=[Depends(verify_admin_key)])
async def list_jobs(
    status: Optional[NotificationJobStatus] = Query(None),
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    created_by: Optional[str] = Query(None, alias="createdBy"),
    user_id: str = Depends(get_current_user_id),
    queue: NotificationJobQueue = Depends(get_notification_queue),
):
    if not get_settings().notifications_enabled:
        raise HTTPException(status_code=403, detail="Notifications are disabled")

    limit = min(limit, MAX_PAGE_SIZE)
    jobs, total = await queue.get_jobs(status, limit, offset, created_by)
    return {
        "jobs": [job.to_dict() for job in jobs],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        },
    }


@router.post("/jobs", status_code=201, dependencies=[Depends(verify_admin_key)])
async def create_job(
    body: CreateJobRequest,
    user_id: str = Depends(get_current_user_id),
    queue: NotificationJobQueue = Depends(get_notification_queue),
):
    now = queue.clock()
    scheduled_time = as_naive_utc(body.scheduled_time)
    if scheduled_time <= now:
        raise HTTPException(status_code=400, detail="Scheduled time must be in the future")

    # 24 小時內建立數量上限
    daily_cap = get_settings().notification_daily_cap
    if await queue.count_jobs_since(now - timedelta(hours=24)) >= daily_cap:
        raise HTTPException(
            status_code=429,
            detail=f"Daily notifications cap reached ({daily_cap}). Try again later.",
        )

    job_id = await queue.add_job(
        **body.job_fields(),
        scheduled_time=scheduled_time,
        created_by=user_id,
        max_attempts=body.max_attempts,
    )
    return {
        "success": True,
        "message": "Notification job scheduled successfully",
        "jobId": job_id,
        "scheduledTime": scheduled_time.isoformat(),
    }


@router.delete("/jobs", dependencies=[Depends(verify_admin_key)])
async def cancel_jobs(
    body: CancelJobsRequest,
    user_id: str = Depends(get_current_user_id),
    queue: NotificationJobQueue = Depends(get_notification_queue),
):
    results = []
    for job_id in body.job_ids:
        cancelled = await queue.cancel_job(job_id)
        results.append({"jobId": job_id, "cancelled": cancelled})

    cancelled_count = sum(1 for r in results if r["cancelled"])
    logger.info(f"User {user_id} cancelled {cancelled_count}/{len(body.job_ids)} jobs")
    return {
        "success": True,
        "message": f"Cancelled {cancelled_count} out of {len(body.job_ids)} jobs",
        "results": results,
    }


@router.get("/jobs/stats", dependencies=[Depends(verify_admin_key)])
async def job_stats(
    user_id: str = Depends(get_current_user_id),
    queue: NotificationJobQueue = Depends(get_notification_queue),
):
    return {
        "stats": await queue.get_stats(),
        "processor": queue.get_status(),
    }
