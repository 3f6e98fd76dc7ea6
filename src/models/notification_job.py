from __future__ import annotations

import enum
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.db.database import Base
from src.models.base import utcnow

DEFAULT_MAX_ATTEMPTS = 3


class NotificationJobStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = (
    NotificationJobStatus.completed,
    NotificationJobStatus.failed,
    NotificationJobStatus.cancelled,
)


def generate_job_id() -> str:
    return f"notif_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=generate_job_id)

    # Content
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(Text)
    badge: Mapped[Optional[str]] = mapped_column(Text)
    image: Mapped[Optional[str]] = mapped_column(Text)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    actions: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    tag: Mapped[Optional[str]] = mapped_column(String(255))
    require_interaction: Mapped[bool] = mapped_column(Boolean, default=False)
    silent: Mapped[bool] = mapped_column(Boolean, default=False)
    vibrate: Mapped[Optional[List[int]]] = mapped_column(JSON)

    # Targeting
    user_ids: Mapped[Optional[List[str]]] = mapped_column(JSON)
    all_users: Mapped[bool] = mapped_column(Boolean, default=False)

    # Scheduling
    scheduled_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Job metadata
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_MAX_ATTEMPTS, nullable=False
    )
    status: Mapped[NotificationJobStatus] = mapped_column(
        Enum(NotificationJobStatus),
        default=NotificationJobStatus.pending,
        nullable=False,
        index=True,
    )
    error: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def to_payload(self) -> Dict[str, Any]:
        """Body posted to the notification-send endpoint."""
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "image": self.image,
            "data": self.data,
            "actions": self.actions,
            "tag": self.tag,
            "requireInteraction": self.require_interaction,
            "silent": self.silent,
            "vibrate": self.vibrate,
            "userIds": self.user_ids,
            "allUsers": self.all_users,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            **self.to_payload(),
            "scheduledTime": self.scheduled_time.isoformat(),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "createdBy": self.created_by,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "status": self.status.value,
            "error": self.error,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self) -> str:
        return f"<NotificationJob {self.id} {self.status.value}>"
