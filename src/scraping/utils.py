from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from src.models.scraping_job import FrequencyType

MIN_INTERVAL_MINUTES = 30
MAX_RETRY_DELAY_MINUTES = 60

THREAT_LEVEL_MULTIPLIERS = {
    "critical": 4,  # 4x more frequent
    "high": 2,  # 2x more frequent
    "medium": 1,
    "low": 0.5,  # half as frequent
}


def calculate_next_run(
    frequency_type: FrequencyType,
    frequency_value: str,
    now: datetime,
    tz: Optional[str] = None,
) -> datetime:
    """下一次執行時間（naive UTC）

    interval: frequency_value 分鐘後
    cron: crontab 表達式的下一個觸發時間
    manual: 一年後（不自動排程）
    """
    if frequency_type == FrequencyType.interval:
        return now + timedelta(minutes=int(frequency_value))

    if frequency_type == FrequencyType.cron:
        try:
            trigger = CronTrigger.from_crontab(frequency_value, timezone=tz or "UTC")
            aware_now = now.replace(tzinfo=timezone.utc)
            next_fire = trigger.get_next_fire_time(None, aware_now)
        except (ValueError, KeyError) as e:
            logger.warning(f"Invalid cron expression '{frequency_value}': {e}")
            next_fire = None
        if next_fire is None:
            return now + timedelta(hours=1)
        return next_fire.astimezone(timezone.utc).replace(tzinfo=None)

    if frequency_type == FrequencyType.manual:
        return now + timedelta(days=365)

    return now + timedelta(hours=1)


def calculate_retry_delay(retry_count: int) -> timedelta:
    """Exponential backoff: 2^retry_count minutes, capped at an hour, plus up to 10% jitter."""
    base_minutes = min(2**retry_count, MAX_RETRY_DELAY_MINUTES)
    jitter = random.uniform(0, 0.1 * base_minutes)
    return timedelta(minutes=base_minutes + jitter)


def get_threat_level_multiplier(threat_level: str) -> float:
    return THREAT_LEVEL_MULTIPLIERS.get(threat_level, 1)


def adjust_interval(current_minutes: int, threat_level: str) -> int:
    """Scale an interval by threat level, never below the 30-minute floor."""
    multiplier = get_threat_level_multiplier(threat_level)
    return max(MIN_INTERVAL_MINUTES, int(current_minutes // multiplier))


def chunk(items: list, size: int) -> list:
    return [items[i : i + size] for i in range(0, len(items), size)]
