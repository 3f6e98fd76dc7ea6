from __future__ import annotations

from typing import Optional


class DeliveryError(Exception):
    """A single channel delivery failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def subscription_gone(self) -> bool:
        return self.status_code in (404, 410)


class DeliveryNotConfiguredError(Exception):
    """No channel able to reach the targeted subscriptions is configured."""


class NoSubscriptionsError(Exception):
    """Targeting resolved to zero active push subscriptions."""


class MissingTargetError(Exception):
    """A system job named neither userIds nor allUsers."""
