from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.base import utcnow
from src.models.notification_log import NotificationChannel, NotificationLog
from src.models.push_subscription import PushSubscription
from src.notifications.discord import DiscordSender
from src.notifications.errors import (
    DeliveryError,
    DeliveryNotConfiguredError,
    MissingTargetError,
    NoSubscriptionsError,
)
from src.notifications.formatter import format_push_notification
from src.notifications.telegram import TelegramSender

DEFAULT_VIBRATE = [200, 100, 200]


def _sender_class(channel: NotificationChannel):
    return TelegramSender if channel == NotificationChannel.telegram else DiscordSender


class NotificationDispatcher:
    """Delivers a push notification to every targeted subscription."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    async def resolve_subscriptions(
        self,
        user_ids: Optional[List[str]],
        all_users: bool,
        requester_id: Optional[str] = None,
        is_system_job: bool = False,
    ) -> List[PushSubscription]:
        """Active subscriptions matching the requested targets.

        System jobs must target explicitly; other callers without a
        target fall back to their own subscriptions.
        """
        stmt = select(PushSubscription).where(PushSubscription.is_active == True)  # noqa: E712
        if not all_users:
            if user_ids:
                stmt = stmt.where(PushSubscription.user_id.in_(user_ids))
            elif is_system_job:
                raise MissingTargetError(
                    "System jobs must specify userIds or set allUsers=true"
                )
            elif requester_id:
                stmt = stmt.where(PushSubscription.user_id == requester_id)
            else:
                raise MissingTargetError("No authenticated user and no targeting specified")

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    def _build_payload(self, notification: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": notification["title"],
            "body": notification["body"],
            "icon": notification.get("icon"),
            "badge": notification.get("badge"),
            "image": notification.get("image"),
            "data": {
                "timestamp": int(time.time() * 1000),
                "url": "/",
                **(notification.get("data") or {}),
            },
            "actions": notification.get("actions") or [],
            "tag": notification.get("tag"),
            "requireInteraction": notification.get("requireInteraction", False),
            "silent": notification.get("silent", False),
            "vibrate": notification.get("vibrate") or DEFAULT_VIBRATE,
        }

    async def _deliver(
        self, subscription: PushSubscription, message: Dict[str, Any], silent: bool
    ) -> None:
        if subscription.channel == NotificationChannel.telegram:
            await TelegramSender().send(subscription.endpoint, message["telegram"], silent=silent)
        else:
            await DiscordSender().send(
                subscription.endpoint, "", embeds=message["discord_embeds"]
            )

    async def dispatch(
        self,
        notification: Dict[str, Any],
        sent_by: str,
        requester_id: Optional[str] = None,
        is_system_job: bool = False,
    ) -> Dict[str, Any]:
        """Send a notification to all targeted subscriptions.

        Args:
            notification: Validated body of the send request (camelCase keys).
            sent_by: Id recorded on the notification log ("system" for jobs).
            requester_id: Caller used as the target when none is given.
            is_system_job: Request came from the notification job queue.

        Returns:
            Summary with targetCount, successCount, errorCount, results, errors.

        Raises:
            MissingTargetError: No usable targeting.
            NoSubscriptionsError: Targeting matched no active subscription.
            DeliveryNotConfiguredError: No channel can reach the targets.
        """
        if not self.settings.notifications_enabled:
            raise DeliveryNotConfiguredError("Notifications are disabled")

        subscriptions = await self.resolve_subscriptions(
            notification.get("userIds"),
            notification.get("allUsers", False),
            requester_id=requester_id,
            is_system_job=is_system_job,
        )
        if not subscriptions:
            raise NoSubscriptionsError("No active push subscriptions found for target users")

        deliverable = [s for s in subscriptions if _sender_class(s.channel).is_configured()]
        if not deliverable:
            raise DeliveryNotConfiguredError(
                "Push notifications not configured for the targeted channels"
            )

        payload = self._build_payload(notification)
        message = format_push_notification(payload)

        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for subscription in subscriptions:
            if subscription not in deliverable:
                errors.append(
                    {
                        "userId": subscription.user_id,
                        "subscriptionId": subscription.id,
                        "error": f"{subscription.channel.value} channel not configured",
                        "statusCode": None,
                    }
                )
                continue

            try:
                await self._deliver(subscription, message, payload["silent"])
                subscription.last_used_at = utcnow()
                results.append(
                    {
                        "userId": subscription.user_id,
                        "subscriptionId": subscription.id,
                        "success": True,
                    }
                )
            except DeliveryError as e:
                logger.error(
                    f"Failed to send notification to user {subscription.user_id}: {e}"
                )
                if e.subscription_gone:
                    subscription.is_active = False
                errors.append(
                    {
                        "userId": subscription.user_id,
                        "subscriptionId": subscription.id,
                        "error": str(e),
                        "statusCode": e.status_code,
                    }
                )

        self.session.add(
            NotificationLog(
                sent_by=sent_by,
                title=payload["title"],
                body=payload["body"],
                target_count=len(subscriptions),
                success_count=len(results),
                error_count=len(errors),
                payload=payload,
            )
        )
        await self.session.commit()

        logger.info(
            f"Push notification '{payload['title']}': "
            f"{len(results)}/{len(subscriptions)} delivered"
        )
        return {
            "targetCount": len(subscriptions),
            "successCount": len(results),
            "errorCount": len(errors),
            "results": results,
            "errors": errors,
        }
