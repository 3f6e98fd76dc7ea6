from src.models.intelligence_data import IntelligenceData
from src.models.notification_job import NotificationJob, NotificationJobStatus
from src.models.notification_log import NotificationChannel, NotificationLog
from src.models.push_subscription import PushSubscription
from src.models.scraping_job import (
    FrequencyType,
    JobPriority,
    JobType,
    ScrapingJob,
    ScrapingJobResult,
    ScrapingJobStatus,
)

__all__ = [
    "FrequencyType",
    "IntelligenceData",
    "JobPriority",
    "JobType",
    "NotificationChannel",
    "NotificationJob",
    "NotificationJobStatus",
    "NotificationLog",
    "PushSubscription",
    "ScrapingJob",
    "ScrapingJobResult",
    "ScrapingJobStatus",
]
