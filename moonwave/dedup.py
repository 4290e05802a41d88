from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from moonwave.domain import ReminderKey
from moonwave.errors import DedupStoreError
from moonwave.interfaces import ReminderStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_DELAY_SECONDS = 0.2

async def read_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    attempts: int,
    retry_on: tuple[type[BaseException], ...],
    what: str,
) -> T:
    """Run an idempotent read with a per-call timeout, retrying a few times.

    Only for reads: writes go through a single attempt so that a reminder is
    never recorded or sent twice.
    """
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(call(), timeout)
        except (asyncio.TimeoutError, *retry_on) as e:
            logger.warning("%s failed (attempt %d/%d): %r", what, attempt, attempts, e)
            if attempt >= attempts:
                raise
        attempt += 1
        await asyncio.sleep(RETRY_DELAY_SECONDS)

class Deduplicator:
    def __init__(self, store: ReminderStore, call_timeout: float = 10.0, read_attempts: int = 2):
        self.store = store
        self.call_timeout = call_timeout
        self.read_attempts = max(1, read_attempts)

    async def already_issued(self, key: ReminderKey) -> bool:
        # fail closed: an unreachable store must never look like "not issued"
        try:
            return await read_with_retry(
                lambda: self.store.exists(key),
                timeout=self.call_timeout,
                attempts=self.read_attempts,
                retry_on=(DedupStoreError, OSError),
                what=f"reminder lookup {key}",
            )
        except DedupStoreError:
            raise
        except (asyncio.TimeoutError, OSError) as e:
            raise DedupStoreError(f"reminder store unavailable for {key}: {e!r}") from e

    async def record_issued(self, key: ReminderKey) -> bool:
        try:
            return await asyncio.wait_for(self.store.insert_if_absent(key), self.call_timeout)
        except DedupStoreError:
            raise
        except (asyncio.TimeoutError, OSError) as e:
            # the insert may or may not have landed; treat as not ours
            raise DedupStoreError(f"could not record reminder {key}: {e!r}") from e
