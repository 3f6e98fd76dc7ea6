from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, model_validator

from src.api.deps import get_current_user_id, get_scraping_processor, verify_admin_key
from src.models.scraping_job import FrequencyType, JobPriority, JobType
from src.scraping.processor import ScrapingQueueProcessor

router = APIRouter(prefix="/api", tags=["scraping"])


class FrequencySpec(BaseModel):
    type: FrequencyType = FrequencyType.interval
    value: Union[int, str]
    timezone: Optional[str] = None

    @model_validator(mode="after")
    def check_interval(self) -> "FrequencySpec":
        if self.type == FrequencyType.interval:
            try:
                minutes = int(self.value)
            except ValueError:
                raise ValueError("interval frequency must be a number of minutes")
            if minutes <= 0:
                raise ValueError("interval frequency must be positive")
        return self


class ScheduleJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_type: JobType = Field(alias="jobType")
    url: HttpUrl
    priority: JobPriority = JobPriority.medium
    frequency: FrequencySpec
    config: Optional[Dict[str, Any]] = None


class DefaultJobsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: Optional[str] = None
    social_media_handles: Optional[Dict[str, str]] = Field(None, alias="socialMediaHandles")


class FrequencyUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    threat_level: Literal["low", "medium", "high", "critical"] = Field(alias="threatLevel")


@router.get("/competitors/{competitor_id}/scraping")
async def list_competitor_jobs(
    competitor_id: int,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    scheduler = processor.scraping_scheduler
    jobs = await processor.get_competitor_jobs(competitor_id, user_id)

    items = []
    for job in jobs:
        history = await scheduler.get_job_history(job.id)
        items.append({**job.to_dict(), "history": [r.to_dict() for r in history]})

    return {
        "jobs": items,
        "metrics": await scheduler.get_job_stats(user_id),
    }


@router.post("/competitors/{competitor_id}/scraping", status_code=201)
async def schedule_job(
    competitor_id: int,
    body: ScheduleJobRequest,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    job_id = await processor.add_job(
        competitor_id=competitor_id,
        user_id=user_id,
        job_type=body.job_type,
        url=str(body.url),
        priority=body.priority,
        frequency_type=body.frequency.type,
        frequency_value=str(body.frequency.value),
        frequency_timezone=body.frequency.timezone,
        config=body.config,
    )
    job = await processor.scraping_scheduler.get_job(job_id)
    return {
        "jobId": job_id,
        "job": job.to_dict(),
        "message": "Scraping job scheduled successfully",
    }


@router.post("/competitors/{competitor_id}/scraping/defaults", status_code=201)
async def create_default_jobs(
    competitor_id: int,
    body: DefaultJobsRequest,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    if not body.domain and not body.social_media_handles:
        raise HTTPException(status_code=400, detail="domain 或 socialMediaHandles 至少提供一個")

    job_ids = await processor.create_default_jobs(competitor_id, user_id, body.model_dump())
    return {"jobIds": job_ids, "count": len(job_ids)}


@router.put("/competitors/{competitor_id}/scraping/frequency")
async def update_frequency(
    competitor_id: int,
    body: FrequencyUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    await processor.update_job_frequencies(competitor_id, user_id, body.threat_level)
    jobs = await processor.get_competitor_jobs(competitor_id, user_id)
    return {
        "threatLevel": body.threat_level,
        "jobs": [job.to_dict() for job in jobs],
    }


@router.post("/competitors/{competitor_id}/scraping/pause")
async def pause_jobs(
    competitor_id: int,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    return {"paused": await processor.pause_competitor_jobs(competitor_id, user_id)}


@router.post("/competitors/{competitor_id}/scraping/resume")
async def resume_jobs(
    competitor_id: int,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    return {"resumed": await processor.resume_competitor_jobs(competitor_id, user_id)}


@router.delete("/competitors/{competitor_id}/scraping")
async def delete_jobs(
    competitor_id: int,
    user_id: str = Depends(get_current_user_id),
    processor: ScrapingQueueProcessor = Depends(get_scraping_processor),
):
    return {"deleted": await processor.delete_competitor_jobs(competitor_id, user_id)}


@router.get("/scraping/stats", dependencies=[Depends(verify_admin_key)])
async def scraping_stats(processor: ScrapingQueueProcessor = Depends(get_scraping_processor)):
    return {
        "stats": await processor.get_queue_stats(),
        "health": processor.get_health_status(),
    }
