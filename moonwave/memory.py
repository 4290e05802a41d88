"""In-process collaborators for tests and dry runs."""
from __future__ import annotations
import asyncio
from datetime import datetime, timezone

from moonwave.domain import ReminderKey, Subscription, SubscriptionPage


class MemorySubscriptionSource:
    def __init__(self, subscriptions: list[Subscription], page_size: int = 100):
        self.subscriptions = list(subscriptions)
        self.page_size = page_size

    async def list_active_subscriptions(self, page_token: str | None) -> SubscriptionPage:
        start = int(page_token) if page_token else 0
        end = start + self.page_size
        chunk = self.subscriptions[start:end]
        next_token = str(end) if end < len(self.subscriptions) else None
        return SubscriptionPage(
            subscriptions=[s for s in chunk if s.active],
            next_page_token=next_token,
        )


class MemoryReminderStore:
    def __init__(self):
        self.records: dict[ReminderKey, datetime] = {}
        self._lock = asyncio.Lock()

    async def exists(self, key: ReminderKey) -> bool:
        return key in self.records

    async def insert_if_absent(self, key: ReminderKey) -> bool:
        async with self._lock:
            if key in self.records:
                return False
            self.records[key] = datetime.now(timezone.utc)
            return True
