from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.db.database import Base
from src.models.base import TimestampMixin, utcnow


class JobType(enum.Enum):
    website = "website"
    pricing = "pricing"
    products = "products"
    jobs = "jobs"
    social = "social"


class JobPriority(enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class ScrapingJobStatus(enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    paused = "paused"


class FrequencyType(enum.Enum):
    interval = "interval"  # frequency_value 為分鐘數
    cron = "cron"  # frequency_value 為 crontab 表達式
    manual = "manual"


class ScrapingJob(Base, TimestampMixin):
    __tablename__ = "scraping_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    competitor_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    job_type: Mapped[JobType] = mapped_column(Enum(JobType), nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    priority: Mapped[JobPriority] = mapped_column(
        Enum(JobPriority), default=JobPriority.medium, nullable=False
    )
    frequency_type: Mapped[FrequencyType] = mapped_column(
        Enum(FrequencyType), default=FrequencyType.interval, nullable=False
    )
    frequency_value: Mapped[str] = mapped_column(String(100), nullable=False)
    frequency_timezone: Mapped[Optional[str]] = mapped_column(String(64))
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[ScrapingJobStatus] = mapped_column(
        Enum(ScrapingJobStatus),
        default=ScrapingJobStatus.pending,
        nullable=False,
        index=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "competitor_id": self.competitor_id,
            "user_id": self.user_id,
            "job_type": self.job_type.value,
            "url": self.url,
            "priority": self.priority.value,
            "frequency_type": self.frequency_type.value,
            "frequency_value": self.frequency_value,
            "frequency_timezone": self.frequency_timezone,
            "next_run_at": self.next_run_at.isoformat(),
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "config": self.config or {},
            "status": self.status.value,
        }

    def __repr__(self) -> str:
        return f"<ScrapingJob {self.job_type.value}:{self.url} {self.status.value}>"


class ScrapingJobResult(Base):
    __tablename__ = "scraping_job_results"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("scraping_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    error: Mapped[Optional[str]] = mapped_column(Text)
    execution_time: Mapped[int] = mapped_column(Integer, default=0)  # ms
    changes_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "execution_time": self.execution_time,
            "changes_detected": self.changes_detected,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<ScrapingJobResult job={self.job_id} success={self.success}>"
