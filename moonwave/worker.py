import asyncio
import contextlib
import logging
import signal
import sys
from datetime import date

from aiogram import Bot
from aiohttp import web
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moonwave.config import Config, load_config
from moonwave.dates import next_run_at, today_in, utc_now
from moonwave.db import make_engine, make_sessionmaker
from moonwave.dedup import Deduplicator, read_with_retry
from moonwave.domain import Subscription
from moonwave.errors import DataSourceError, InvalidSubscriptionError
from moonwave.interfaces import NotificationSink, ReminderStore, SubscriptionSource
from moonwave.memory import MemoryReminderStore
from moonwave.scheduler import Scheduler
from moonwave.sinks import InAppSink, LogSink, TelegramSink
from moonwave.stats import combined_total, totals_by_currency, upcoming_payments
from moonwave.stores import SqlReminderStore, SqlSubscriptionSource

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Moonwave-Trigger-Secret"
SUMMARY_DAYS_DEFAULT = 30
SUMMARY_DAYS_MAX = 366


def build_sink(cfg: Config, session_factory: async_sessionmaker[AsyncSession], bot: Bot | None = None) -> NotificationSink:
    if cfg.dry_run:
        return LogSink()
    if cfg.sink == "telegram":
        if bot is None:
            raise ValueError("telegram sink needs a Bot")
        return TelegramSink(bot)
    if cfg.sink == "inapp":
        return InAppSink(session_factory)
    return LogSink()


def build_scheduler(cfg: Config, session_factory: async_sessionmaker[AsyncSession], sink: NotificationSink) -> Scheduler:
    # a dry run keeps its records in memory so the next real run still sends
    store: ReminderStore = MemoryReminderStore() if cfg.dry_run else SqlReminderStore(session_factory)
    dedup = Deduplicator(
        store,
        call_timeout=cfg.call_timeout,
        read_attempts=cfg.read_attempts,
    )
    return Scheduler(
        SqlSubscriptionSource(session_factory, page_size=cfg.page_size),
        dedup,
        sink,
        concurrency=cfg.concurrency,
        call_timeout=cfg.call_timeout,
        read_attempts=cfg.read_attempts,
    )


async def collect_subscriptions(source: SubscriptionSource, cfg: Config) -> list[Subscription]:
    """Every valid active subscription, all pages. Malformed ones are logged and left out."""
    subs: list[Subscription] = []
    page_token: str | None = None
    while True:
        page = await read_with_retry(
            lambda: source.list_active_subscriptions(page_token),
            timeout=cfg.call_timeout,
            attempts=cfg.read_attempts,
            retry_on=(DataSourceError, OSError),
            what=f"subscription page {page_token!r}",
        )
        for err in page.errors:
            logger.warning("Skipping subscription %s in summary: %s", err.subscription_id, err)
        for sub in page.subscriptions:
            try:
                sub.validate()
            except InvalidSubscriptionError as e:
                logger.warning("Skipping subscription %s in summary: %s", sub.id, e)
                continue
            subs.append(sub)
        if page.next_page_token is None:
            return subs
        page_token = page.next_page_token


def build_summary(subs: list[Subscription], today: date, days: int, cfg: Config) -> dict:
    body = {
        "today": today.isoformat(),
        "days": days,
        "by_currency": {cur: t.as_dict() for cur, t in sorted(totals_by_currency(subs).items())},
        "combined": None,
        "upcoming": [p.as_dict() for p in upcoming_payments(subs, today, days)],
    }
    try:
        combined = combined_total(subs, cfg.base_currency, cfg.exchange_rates)
    except ValueError as e:
        logger.warning("No combined total: %s", e)
    else:
        body["combined"] = {"currency": cfg.base_currency, **combined.as_dict()}
    return body


def make_trigger_app(scheduler: Scheduler, cfg: Config) -> web.Application:
    """HTTP endpoint for an external cron / pub-sub schedule to start a run.

    Also serves a read-only spending summary on cfg.summary_path.
    """
    app = web.Application()

    async def handle_summary(request: web.Request):
        if request.headers.get(SECRET_HEADER) != cfg.trigger_secret:
            return web.Response(status=403, text="forbidden")

        raw_days = request.query.get("days", str(SUMMARY_DAYS_DEFAULT))
        try:
            days = int(raw_days)
        except ValueError:
            days = -1
        if not 0 <= days <= SUMMARY_DAYS_MAX:
            return web.json_response({"error": f"days must be 0-{SUMMARY_DAYS_MAX}, got {raw_days!r}"}, status=400)

        raw = request.query.get("date")
        if raw:
            try:
                today = date.fromisoformat(raw)
            except ValueError:
                return web.json_response({"error": f"bad date {raw!r}"}, status=400)
        else:
            today = today_in(cfg.timezone)

        try:
            subs = await collect_subscriptions(scheduler.source, cfg)
        except (DataSourceError, asyncio.TimeoutError, OSError) as e:
            logger.error("Summary aborted, subscription source unreachable: %r", e)
            return web.json_response({"error": f"subscription source unreachable: {e}"}, status=503)
        return web.json_response(build_summary(subs, today, days, cfg))

    async def handle_run(request: web.Request):
        if request.headers.get(SECRET_HEADER) != cfg.trigger_secret:
            return web.Response(status=403, text="forbidden")

        raw = request.query.get("date")
        if raw:
            try:
                today = date.fromisoformat(raw)
            except ValueError:
                return web.json_response({"error": f"bad date {raw!r}"}, status=400)
        else:
            today = today_in(cfg.timezone)

        try:
            report = await scheduler.run_once(today)
        except DataSourceError as e:
            logger.error("Triggered run for %s aborted: %s", today, e)
            return web.json_response({"error": str(e)}, status=503)
        return web.json_response(report.as_dict())

    app.router.add_post(cfg.trigger_path, handle_run)
    app.router.add_get(cfg.summary_path, handle_summary)
    return app


async def run_daily(scheduler: Scheduler, cfg: Config, stop: asyncio.Event):
    while not stop.is_set():
        now = utc_now()
        run_at = next_run_at(now, cfg.run_hour, cfg.timezone)
        logger.info("Next reminder run at %s", run_at.isoformat())

        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), (run_at - now).total_seconds())
        if stop.is_set():
            break

        today = today_in(cfg.timezone)
        try:
            await scheduler.run_once(today)
        except DataSourceError:
            # tomorrow's run tries again; the operator sees this in the log
            logger.exception("Reminder run for %s aborted", today)


async def run_http(scheduler: Scheduler, cfg: Config, stop: asyncio.Event):
    runner = web.AppRunner(make_trigger_app(scheduler, cfg))
    await runner.setup()
    site = web.TCPSite(runner, cfg.trigger_host, cfg.trigger_port)
    await site.start()
    logger.info("Trigger endpoint listening on %s:%d%s", cfg.trigger_host, cfg.trigger_port, cfg.trigger_path)
    try:
        await stop.wait()
    finally:
        await runner.cleanup()


async def main():
    cfg = load_config()
    logging.basicConfig(
        level=cfg.log_level,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = make_engine(cfg)
    session_factory = make_sessionmaker(engine)
    bot = Bot(token=cfg.bot_token) if cfg.sink == "telegram" and not cfg.dry_run else None
    if cfg.dry_run:
        logger.info("Dry run: reminders are logged only, nothing is recorded or sent")
    scheduler = build_scheduler(cfg, session_factory, build_sink(cfg, session_factory, bot))

    stop = asyncio.Event()

    def shutdown():
        logger.info("Shutdown requested")
        scheduler.request_stop()
        stop.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown)

    try:
        if cfg.mode == "daily":
            await run_daily(scheduler, cfg, stop)
        elif cfg.mode == "http":
            await run_http(scheduler, cfg, stop)
        else:
            await scheduler.run_once(today_in(cfg.timezone))
    finally:
        if bot is not None:
            await bot.session.close()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
