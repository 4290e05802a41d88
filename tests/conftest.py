from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from moonwave.db import make_sessionmaker
from moonwave.domain import Cycle, ReminderKind, Subscription
from moonwave.errors import SinkError
from moonwave.migrate import create_tables

ALL_WINDOWS = frozenset({ReminderKind.SEVEN_DAY, ReminderKind.THREE_DAY, ReminderKind.SAME_DAY})


def make_sub(**overrides) -> Subscription:
    fields = dict(
        id="sub-netflix",
        owner_id="user-1",
        name="Netflix",
        amount=Decimal("17000"),
        currency="KRW",
        cycle=Cycle.MONTHLY,
        anchor_day=15,
        start_date=date(2023, 1, 15),
        end_date=None,
        active=True,
        reminder_windows=ALL_WINDOWS,
    )
    fields.update(overrides)
    return Subscription(**fields)


class RecordingSink:
    def __init__(self, fail_for: set[str] | None = None):
        self.sent = []
        self.fail_for = fail_for or set()

    async def send(self, notice) -> None:
        if notice.subscription_id in self.fail_for:
            raise SinkError(f"push service rejected {notice.subscription_id}")
        self.sent.append(notice)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'moonwave.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)
