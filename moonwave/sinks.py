from __future__ import annotations
import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moonwave.domain import ReminderNotice
from moonwave.errors import SinkError
from moonwave.models import NotificationRow
from moonwave.policy import reminder_priority
from moonwave.texts import reminder_text, reminder_title

logger = logging.getLogger(__name__)


def _text(notice: ReminderNotice) -> str:
    return reminder_text(notice.kind, notice.name, notice.amount, notice.currency, notice.occurrence_date)


class LogSink:
    """Writes reminders to the log only. Useful for staging and dry runs."""

    async def send(self, notice: ReminderNotice) -> None:
        logger.info(
            "reminder %s for %s (owner %s, due %s): %s",
            notice.kind.value, notice.subscription_id, notice.owner_id,
            notice.occurrence_date, _text(notice),
        )


class TelegramSink:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, notice: ReminderNotice) -> None:
        # owners are telegram chat ids for this sink
        chat_id = int(notice.owner_id) if notice.owner_id.lstrip("-").isdigit() else notice.owner_id
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=f"{reminder_title(notice.name)}\n\n{_text(notice)}",
            )
        except TelegramAPIError as e:
            raise SinkError(f"telegram send to {notice.owner_id} failed: {str(e)[:800]}") from e


class InAppSink:
    """Stores reminders as unread in-app notifications."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def send(self, notice: ReminderNotice) -> None:
        try:
            async with self.session_factory() as s:
                s.add(NotificationRow(
                    user_id=notice.owner_id,
                    subscription_id=notice.subscription_id,
                    type="payment_reminder",
                    title=reminder_title(notice.name),
                    message=_text(notice),
                    priority=reminder_priority(notice.kind),
                    is_read=False,
                ))
                await s.commit()
        except SQLAlchemyError as e:
            raise SinkError(f"could not store notification for {notice.subscription_id}: {e}") from e
