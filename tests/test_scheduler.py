import asyncio
from datetime import date, timedelta

import pytest

from moonwave.dedup import Deduplicator
from moonwave.domain import Cycle, ReminderKind, SubscriptionPage
from moonwave.errors import DataSourceError, DedupStoreError, InvalidSubscriptionError
from moonwave.memory import MemoryReminderStore, MemorySubscriptionSource
from moonwave.scheduler import Scheduler

from conftest import RecordingSink, make_sub

TODAY = date(2025, 3, 8)  # 7 days before the 15th


def _scheduler(subs, sink, store=None, **kw) -> Scheduler:
    store = store or MemoryReminderStore()
    return Scheduler(MemorySubscriptionSource(subs, page_size=kw.pop("page_size", 100)), Deduplicator(store), sink, **kw)


class DownStore:
    async def exists(self, key):
        raise DedupStoreError("reminder store unreachable")

    async def insert_if_absent(self, key):
        raise DedupStoreError("reminder store unreachable")


class FailingSource:
    """Serves `good_pages` pages and then fails."""

    def __init__(self, good_pages: list[SubscriptionPage]):
        self.good_pages = good_pages
        self.calls = 0

    async def list_active_subscriptions(self, page_token):
        self.calls += 1
        idx = int(page_token) if page_token else 0
        if idx < len(self.good_pages):
            return self.good_pages[idx]
        raise DataSourceError("subscription database unreachable")


@pytest.mark.asyncio
async def test_issues_due_reminder(sink):
    report = await _scheduler([make_sub()], sink).run_once(TODAY)

    assert report.subscriptions_scanned == 1
    assert report.reminders_issued == 1
    assert report.errors == []
    [notice] = sink.sent
    assert notice.kind is ReminderKind.SEVEN_DAY
    assert notice.occurrence_date == date(2025, 3, 15)
    assert notice.owner_id == "user-1"


@pytest.mark.asyncio
async def test_second_run_sends_nothing(sink):
    scheduler = _scheduler([make_sub(), make_sub(id="sub-spotify", anchor_day=11)], sink)

    first = await scheduler.run_once(TODAY)
    second = await scheduler.run_once(TODAY)

    assert first.reminders_issued == 2
    assert second.reminders_issued == 0
    assert second.reminders_skipped_duplicate == 2
    assert len(sink.sent) == 2


@pytest.mark.asyncio
async def test_weekly_seven_day_reminder_fires_every_week(sink):
    # weekly on Mondays; the seven-day reminder is for the Monday after next
    sub = make_sub(
        cycle=Cycle.WEEKLY, anchor_day=1, start_date=date(2025, 1, 1),
        reminder_windows=frozenset({ReminderKind.SEVEN_DAY}),
    )
    scheduler = _scheduler([sub], sink)

    sent_on = []
    day = date(2025, 3, 1)
    for _ in range(60):
        before = len(sink.sent)
        await scheduler.run_once(day)
        sent_on += [day] * (len(sink.sent) - before)
        day += timedelta(days=1)

    assert sent_on == [
        date(2025, 3, 3), date(2025, 3, 10), date(2025, 3, 17), date(2025, 3, 24), date(2025, 3, 31),
        date(2025, 4, 7), date(2025, 4, 14), date(2025, 4, 21), date(2025, 4, 28),
    ]
    assert all(n.kind is ReminderKind.SEVEN_DAY for n in sink.sent)
    assert [n.occurrence_date - d for n, d in zip(sink.sent, sent_on)] == [timedelta(days=7)] * 9


@pytest.mark.asyncio
async def test_weekly_same_day_and_seven_day_together(sink):
    sub = make_sub(
        cycle=Cycle.WEEKLY, anchor_day=1, start_date=date(2025, 1, 1),
        reminder_windows=frozenset({ReminderKind.SEVEN_DAY, ReminderKind.SAME_DAY}),
    )
    report = await _scheduler([sub], sink).run_once(date(2025, 3, 3))

    assert report.reminders_issued == 2
    assert {(n.kind, n.occurrence_date) for n in sink.sent} == {
        (ReminderKind.SAME_DAY, date(2025, 3, 3)),
        (ReminderKind.SEVEN_DAY, date(2025, 3, 10)),
    }


@pytest.mark.asyncio
async def test_one_time_charge_reminded_once(sink):
    sub = make_sub(id="sub-concert", cycle=Cycle.ONETIME, start_date=date(2025, 3, 15))
    scheduler = _scheduler([sub], sink)

    for day in (TODAY, date(2025, 3, 12), date(2025, 3, 15), date(2025, 4, 15)):
        await scheduler.run_once(day)

    assert [(n.kind, n.occurrence_date) for n in sink.sent] == [
        (ReminderKind.SEVEN_DAY, date(2025, 3, 15)),
        (ReminderKind.THREE_DAY, date(2025, 3, 15)),
        (ReminderKind.SAME_DAY, date(2025, 3, 15)),
    ]


@pytest.mark.asyncio
async def test_inactive_and_lapsed_are_quiet(sink):
    subs = [
        make_sub(id="inactive", active=False),
        make_sub(id="lapsed", start_date=date(2024, 1, 1), end_date=date(2025, 3, 1)),
    ]
    report = await _scheduler(subs, sink).run_once(TODAY)

    assert report.reminders_issued == 0
    assert report.errors == []
    assert sink.sent == []


@pytest.mark.asyncio
async def test_malformed_subscription_does_not_stop_batch(sink):
    subs = [make_sub(id="broken", anchor_day=40), make_sub(id="fine")]
    report = await _scheduler(subs, sink).run_once(TODAY)

    assert report.subscriptions_scanned == 2
    assert report.reminders_issued == 1
    [err] = report.errors
    assert err.stage == "validate"
    assert err.subscription_id == "broken"


@pytest.mark.asyncio
async def test_sink_failure_keeps_record():
    store = MemoryReminderStore()
    sink = RecordingSink(fail_for={"sub-netflix"})
    scheduler = _scheduler([make_sub()], sink, store=store)

    report = await scheduler.run_once(TODAY)
    assert report.reminders_issued == 0
    [err] = report.errors
    assert err.stage == "sink"
    assert err.kind is ReminderKind.SEVEN_DAY
    assert len(store.records) == 1

    # at most once: the next run does not retry the lost send
    sink.fail_for.clear()
    again = await scheduler.run_once(TODAY)
    assert again.reminders_skipped_duplicate == 1
    assert sink.sent == []


@pytest.mark.asyncio
async def test_store_outage_sends_nothing(sink):
    scheduler = Scheduler(
        MemorySubscriptionSource([make_sub()]), Deduplicator(DownStore(), read_attempts=1), sink
    )
    report = await scheduler.run_once(TODAY)

    assert sink.sent == []
    [err] = report.errors
    assert err.stage == "dedup"


@pytest.mark.asyncio
async def test_unreachable_source_aborts_run(sink):
    scheduler = Scheduler(FailingSource([]), Deduplicator(MemoryReminderStore()), sink, read_attempts=2)
    with pytest.raises(DataSourceError):
        await scheduler.run_once(TODAY)
    assert scheduler.source.calls == 2


@pytest.mark.asyncio
async def test_later_page_failure_is_reported(sink):
    source = FailingSource([SubscriptionPage([make_sub()], next_page_token="1")])
    scheduler = Scheduler(source, Deduplicator(MemoryReminderStore()), sink, read_attempts=1)

    report = await scheduler.run_once(TODAY)

    assert report.reminders_issued == 1
    [err] = report.errors
    assert err.stage == "source"


@pytest.mark.asyncio
async def test_source_record_errors_are_reported(sink):
    bad = InvalidSubscriptionError("unknown cycle 'daily'", "sub-old")
    source = FailingSource([SubscriptionPage([make_sub()], errors=[bad])])
    report = await Scheduler(source, Deduplicator(MemoryReminderStore()), sink).run_once(TODAY)

    assert report.reminders_issued == 1
    assert [(e.stage, e.subscription_id) for e in report.errors] == [("source", "sub-old")]


@pytest.mark.asyncio
async def test_pages_through_everything(sink):
    subs = [make_sub(id=f"sub-{i}") for i in range(5)]
    report = await _scheduler(subs, sink, page_size=2).run_once(TODAY)
    assert report.subscriptions_scanned == 5
    assert report.reminders_issued == 5


@pytest.mark.asyncio
async def test_overlapping_runs_send_once(sink):
    store = MemoryReminderStore()
    subs = [make_sub(id=f"sub-{i}") for i in range(20)]
    a = _scheduler(subs, sink, store=store, concurrency=4)
    b = _scheduler(subs, sink, store=store, concurrency=4)

    ra, rb = await asyncio.gather(a.run_once(TODAY), b.run_once(TODAY))

    assert len(sink.sent) == 20
    assert ra.reminders_issued + rb.reminders_issued == 20
    assert ra.reminders_skipped_duplicate + rb.reminders_skipped_duplicate == 20


@pytest.mark.asyncio
async def test_request_stop_lets_inflight_finish():
    subs = [make_sub(id=f"sub-{i}") for i in range(3)]

    class StoppingSink(RecordingSink):
        async def send(self, notice):
            await super().send(notice)
            scheduler.request_stop()

    sink = StoppingSink()
    scheduler = _scheduler(subs, sink, concurrency=1)
    report = await scheduler.run_once(TODAY)

    assert report.stopped is True
    assert report.subscriptions_scanned == 1
    assert len(sink.sent) == 1


@pytest.mark.asyncio
async def test_report_as_dict(sink):
    report = await _scheduler([make_sub(id="broken", anchor_day=0)], sink).run_once(TODAY)
    data = report.as_dict()
    assert data["today"] == "2025-03-08"
    assert data["errors"][0]["subscription_id"] == "broken"
    assert data["finished_at"] is not None
