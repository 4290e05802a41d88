from __future__ import annotations
from datetime import date, timedelta

from moonwave.domain import ReminderKind, Subscription

def due_reminders(sub: Subscription, occurrence_date: date, today: date) -> frozenset[ReminderKind]:
    """Reminder kinds that fire on ``today`` for the given billing date.

    Whole calendar days only; ``today`` must already be the date in the
    deployment timezone (see dates.today_in).
    """
    if not sub.active:
        return frozenset()

    return frozenset(
        kind for kind in sub.reminder_windows
        if occurrence_date - timedelta(days=kind.offset_days) == today
    )

def reminder_priority(kind: ReminderKind) -> str:
    if kind in (ReminderKind.SAME_DAY, ReminderKind.ONE_DAY):
        return "high"
    if kind is ReminderKind.THREE_DAY:
        return "medium"
    return "low"
