"""SQLAlchemy-backed subscription source and reminder record store."""
from __future__ import annotations
import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moonwave.domain import Cycle, ReminderKey, ReminderKind, Subscription, SubscriptionPage
from moonwave.errors import DataSourceError, DedupStoreError, InvalidSubscriptionError
from moonwave.models import ReminderRecordRow, SubscriptionRow

logger = logging.getLogger(__name__)

_WINDOW_COLUMNS = (
    ("notify_seven_days", ReminderKind.SEVEN_DAY),
    ("notify_three_days", ReminderKind.THREE_DAY),
    ("notify_one_day", ReminderKind.ONE_DAY),
    ("notify_same_day", ReminderKind.SAME_DAY),
)

def subscription_from_row(row: SubscriptionRow) -> Subscription:
    try:
        cycle = Cycle(row.cycle)
    except ValueError:
        raise InvalidSubscriptionError(f"unknown cycle {row.cycle!r}", row.id)

    sub = Subscription(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        amount=Decimal(str(row.amount)),
        currency=row.currency,
        cycle=cycle,
        anchor_day=row.anchor_day,
        start_date=row.start_date,
        end_date=row.end_date,
        active=bool(row.is_active),
        reminder_windows=frozenset(kind for col, kind in _WINDOW_COLUMNS if getattr(row, col)),
    )
    sub.validate()
    return sub

class SqlSubscriptionSource:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], page_size: int = 200):
        self.session_factory = session_factory
        self.page_size = page_size

    async def list_active_subscriptions(self, page_token: str | None) -> SubscriptionPage:
        stmt = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.deleted_at.is_(None),
                SubscriptionRow.is_active.is_(True),
            )
            .order_by(SubscriptionRow.id)
            .limit(self.page_size)
        )
        if page_token is not None:
            stmt = stmt.where(SubscriptionRow.id > page_token)

        try:
            async with self.session_factory() as s:
                rows = (await s.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise DataSourceError(f"failed to read subscriptions after {page_token!r}: {e}") from e

        page = SubscriptionPage(subscriptions=[])
        for row in rows:
            try:
                page.subscriptions.append(subscription_from_row(row))
            except InvalidSubscriptionError as e:
                logger.warning("Skipping malformed subscription %s: %s", row.id, e)
                page.errors.append(e)

        if len(rows) == self.page_size:
            page.next_page_token = rows[-1].id
        return page

class SqlReminderStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def exists(self, key: ReminderKey) -> bool:
        stmt = select(ReminderRecordRow.id).where(
            ReminderRecordRow.subscription_id == key.subscription_id,
            ReminderRecordRow.kind == key.kind.value,
            ReminderRecordRow.occurrence_date == key.occurrence_date,
        )
        try:
            async with self.session_factory() as s:
                return (await s.execute(stmt)).first() is not None
        except (SQLAlchemyError, OSError) as e:
            raise DedupStoreError(f"lookup of {key} failed: {e}") from e

    async def insert_if_absent(self, key: ReminderKey) -> bool:
        try:
            async with self.session_factory() as s:
                s.add(ReminderRecordRow(
                    subscription_id=key.subscription_id,
                    kind=key.kind.value,
                    occurrence_date=key.occurrence_date,
                ))
                try:
                    await s.commit()
                except IntegrityError:
                    await s.rollback()
                    return False
                return True
        except (SQLAlchemyError, OSError) as e:
            raise DedupStoreError(f"insert of {key} failed: {e}") from e
