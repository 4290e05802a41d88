from __future__ import annotations
import asyncio
import logging
from datetime import date, timedelta

from moonwave.dates import occurrences_between, utc_now
from moonwave.dedup import Deduplicator, read_with_retry
from moonwave.domain import (
    ReminderKey, ReminderKind, ReminderNotice, RunError, RunReport, Subscription
)
from moonwave.errors import DataSourceError, DedupStoreError, InvalidSubscriptionError, SinkError
from moonwave.interfaces import NotificationSink, SubscriptionSource
from moonwave.policy import due_reminders

logger = logging.getLogger(__name__)


class Scheduler:
    """One pass over all active subscriptions per call to run_once().

    Keeps no state between runs; which reminders went out lives in the
    reminder store behind the Deduplicator. A reminder is recorded before it
    is handed to the sink, so a failed send is reported but not retried.
    """

    def __init__(
        self,
        source: SubscriptionSource,
        dedup: Deduplicator,
        sink: NotificationSink,
        concurrency: int = 8,
        call_timeout: float = 10.0,
        read_attempts: int = 2,
    ):
        self.source = source
        self.dedup = dedup
        self.sink = sink
        self.concurrency = max(1, concurrency)
        self.call_timeout = call_timeout
        self.read_attempts = max(1, read_attempts)
        self._stop_requested = False

    def request_stop(self) -> None:
        """Stop picking up new subscriptions; sends already started finish."""
        self._stop_requested = True

    async def run_once(self, today: date) -> RunReport:
        self._stop_requested = False
        report = RunReport(today=today, started_at=utc_now())
        sem = asyncio.Semaphore(self.concurrency)
        logger.info("Reminder run for %s started", today)

        page_token: str | None = None
        first_page = True
        while True:
            if self._stop_requested:
                report.stopped = True
                break

            try:
                page = await read_with_retry(
                    lambda: self.source.list_active_subscriptions(page_token),
                    timeout=self.call_timeout,
                    attempts=self.read_attempts,
                    retry_on=(DataSourceError, OSError),
                    what=f"subscription page {page_token!r}",
                )
            except (DataSourceError, asyncio.TimeoutError, OSError) as e:
                if first_page:
                    logger.error("Subscription source unreachable, aborting run: %r", e)
                    if isinstance(e, DataSourceError):
                        raise
                    raise DataSourceError(f"subscription source unreachable: {e!r}") from e
                logger.error("Could not read subscription page %r, stopping early: %r", page_token, e)
                report.errors.append(RunError("source", f"page {page_token!r}: {e!r}"))
                break
            first_page = False

            for err in page.errors:
                report.errors.append(RunError("source", str(err), err.subscription_id))

            await asyncio.gather(*(
                self._process_guarded(sub, today, report, sem) for sub in page.subscriptions
            ))

            if page.next_page_token is None:
                break
            page_token = page.next_page_token

        report.finished_at = utc_now()
        logger.info(
            "Reminder run for %s done: scanned=%d issued=%d duplicates=%d errors=%d%s",
            today, report.subscriptions_scanned, report.reminders_issued,
            report.reminders_skipped_duplicate, len(report.errors),
            " (stopped)" if report.stopped else "",
        )
        return report

    async def _process_guarded(self, sub: Subscription, today: date, report: RunReport, sem: asyncio.Semaphore) -> None:
        async with sem:
            if self._stop_requested:
                report.stopped = True
                return
            report.subscriptions_scanned += 1
            try:
                await self._process(sub, today, report)
            except InvalidSubscriptionError as e:
                logger.warning("Subscription %s is malformed: %s", sub.id, e)
                report.errors.append(RunError("validate", str(e), sub.id))
            except Exception as e:
                # one bad subscription must not take the batch down
                logger.exception("Unexpected failure processing subscription %s", sub.id)
                report.errors.append(RunError("subscription", repr(e), sub.id))

    async def _process(self, sub: Subscription, today: date, report: RunReport) -> None:
        sub.validate()
        if not sub.reminder_windows:
            return
        # every billing date a window can reach from today; short cycles
        # (weekly) have more than one inside the seven-day window
        horizon = today + timedelta(days=max(k.offset_days for k in sub.reminder_windows))
        for occurrence in occurrences_between(
            sub.cycle, sub.anchor_day, sub.start_date, sub.end_date, today, horizon
        ):
            due = due_reminders(sub, occurrence, today)
            for kind in sorted(due, key=lambda k: k.offset_days, reverse=True):
                await self._issue(sub, kind, occurrence, report)

    async def _issue(self, sub: Subscription, kind: ReminderKind, occurrence: date, report: RunReport) -> None:
        key = ReminderKey(sub.id, kind, occurrence)
        try:
            if await self.dedup.already_issued(key):
                report.reminders_skipped_duplicate += 1
                return
            if not await self.dedup.record_issued(key):
                # another run recorded it between our check and insert
                report.reminders_skipped_duplicate += 1
                return
        except DedupStoreError as e:
            logger.error("Reminder store failed for %s: %s", key, e)
            report.errors.append(RunError("dedup", str(e), sub.id, kind))
            return

        notice = ReminderNotice.for_subscription(sub, kind, occurrence)
        try:
            await asyncio.wait_for(self.sink.send(notice), self.call_timeout)
        except (SinkError, asyncio.TimeoutError) as e:
            logger.error("Sending %s failed, record kept: %r", key, e)
            msg = str(e) if isinstance(e, SinkError) else f"send timed out after {self.call_timeout}s"
            report.errors.append(RunError("sink", msg, sub.id, kind))
            return
        report.reminders_issued += 1
