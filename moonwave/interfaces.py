from __future__ import annotations
from typing import Protocol

from moonwave.domain import ReminderKey, ReminderNotice, SubscriptionPage


class SubscriptionSource(Protocol):
    async def list_active_subscriptions(self, page_token: str | None) -> SubscriptionPage:
        ...


class ReminderStore(Protocol):
    async def exists(self, key: ReminderKey) -> bool:
        ...

    async def insert_if_absent(self, key: ReminderKey) -> bool:
        """True if this call created the record, False if it was already there."""
        ...


class NotificationSink(Protocol):
    async def send(self, notice: ReminderNotice) -> None:
        """Deliver one reminder. Raises SinkError on failure."""
        ...
