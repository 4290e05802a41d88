from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from moonwave.errors import InvalidSubscriptionError


class Cycle(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    ONETIME = "onetime"


# inclusive anchor_day bounds per cycle
ANCHOR_RANGE = {
    Cycle.WEEKLY: (1, 7),       # ISO weekday, 1 = Monday
    Cycle.MONTHLY: (1, 31),
    Cycle.QUARTERLY: (1, 31),
    Cycle.YEARLY: (1, 366),     # day of a leap year
    Cycle.ONETIME: (1, 31),     # informational, the charge is on start_date
}


class ReminderKind(str, enum.Enum):
    SEVEN_DAY = "sevenDay"
    THREE_DAY = "threeDay"
    ONE_DAY = "oneDay"
    SAME_DAY = "sameDay"

    @property
    def offset_days(self) -> int:
        return _OFFSETS[self]


_OFFSETS = {
    ReminderKind.SEVEN_DAY: 7,
    ReminderKind.THREE_DAY: 3,
    ReminderKind.ONE_DAY: 1,
    ReminderKind.SAME_DAY: 0,
}


@dataclass(frozen=True)
class Subscription:
    id: str
    owner_id: str
    name: str
    amount: Decimal
    currency: str
    cycle: Cycle
    anchor_day: int
    start_date: date
    end_date: date | None = None
    active: bool = True
    reminder_windows: frozenset[ReminderKind] = field(default_factory=frozenset)

    def validate(self) -> None:
        if not isinstance(self.cycle, Cycle):
            raise InvalidSubscriptionError(f"unknown cycle {self.cycle!r}", self.id)
        if self.amount < 0:
            raise InvalidSubscriptionError(f"negative amount {self.amount}", self.id)
        lo, hi = ANCHOR_RANGE[self.cycle]
        if not lo <= self.anchor_day <= hi:
            raise InvalidSubscriptionError(
                f"anchor_day {self.anchor_day} out of range {lo}-{hi} for {self.cycle.value}",
                self.id,
            )
        if self.end_date is not None and self.end_date <= self.start_date:
            raise InvalidSubscriptionError("end_date must be after start_date", self.id)


@dataclass(frozen=True)
class ReminderKey:
    subscription_id: str
    kind: ReminderKind
    occurrence_date: date

    def __str__(self) -> str:
        return f"{self.subscription_id}:{self.kind.value}:{self.occurrence_date.isoformat()}"


@dataclass(frozen=True)
class ReminderNotice:
    owner_id: str
    subscription_id: str
    kind: ReminderKind
    occurrence_date: date
    name: str
    amount: Decimal
    currency: str

    @classmethod
    def for_subscription(cls, sub: Subscription, kind: ReminderKind, occurrence_date: date) -> "ReminderNotice":
        return cls(
            owner_id=sub.owner_id,
            subscription_id=sub.id,
            kind=kind,
            occurrence_date=occurrence_date,
            name=sub.name,
            amount=sub.amount,
            currency=sub.currency,
        )


@dataclass
class SubscriptionPage:
    subscriptions: list[Subscription]
    next_page_token: str | None = None
    # per-record problems found while reading the page
    errors: list[InvalidSubscriptionError] = field(default_factory=list)


@dataclass
class RunError:
    stage: str  # source | validate | dedup | sink
    message: str
    subscription_id: str | None = None
    kind: ReminderKind | None = None

    def as_dict(self) -> dict:
        return {
            "stage": self.stage,
            "message": self.message,
            "subscription_id": self.subscription_id,
            "kind": self.kind.value if self.kind else None,
        }


@dataclass
class RunReport:
    today: date
    subscriptions_scanned: int = 0
    reminders_issued: int = 0
    reminders_skipped_duplicate: int = 0
    errors: list[RunError] = field(default_factory=list)
    stopped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def as_dict(self) -> dict:
        return {
            "today": self.today.isoformat(),
            "subscriptions_scanned": self.subscriptions_scanned,
            "reminders_issued": self.reminders_issued,
            "reminders_skipped_duplicate": self.reminders_skipped_duplicate,
            "errors": [e.as_dict() for e in self.errors],
            "stopped": self.stopped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
