import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from moonwave.errors import ConfigError

load_dotenv()

SINKS = ("log", "telegram", "inapp")
MODES = ("once", "daily", "http")

@dataclass(frozen=True)
class Config:
    database_url: str
    bot_token: str
    timezone: str
    run_hour: int
    sink: str  # log | telegram | inapp

    page_size: int
    concurrency: int
    call_timeout: float
    read_attempts: int

    mode: str  # once | daily | http
    trigger_host: str
    trigger_port: int
    trigger_path: str
    trigger_secret: str

    log_level: str

    # record nothing and send nothing, only log what would go out
    dry_run: bool = False
    # spending summary: price of one unit of a currency in base_currency
    base_currency: str = "KRW"
    exchange_rates: dict[str, Decimal] = field(default_factory=lambda: {"USD": Decimal("1300")})
    summary_path: str = "/internal/reminders/summary"

def _int(name: str, default: str) -> int:
    raw = os.getenv(name, default).strip()
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")

def _float(name: str, default: str) -> float:
    raw = os.getenv(name, default).strip()
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")

def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

def _rates(name: str, default: str) -> dict[str, Decimal]:
    # "USD=1300,EUR=1450"
    rates = {}
    for part in os.getenv(name, default).split(","):
        if not part.strip():
            continue
        code, _, value = part.partition("=")
        try:
            rate = Decimal(value.strip())
        except InvalidOperation:
            raise ConfigError(f"{name}: bad rate {part.strip()!r}") from None
        if not code.strip() or not rate.is_finite() or rate <= 0:
            raise ConfigError(f"{name}: bad rate {part.strip()!r}")
        rates[code.strip().upper()] = rate
    return rates

def load_config() -> Config:
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        raise ConfigError("DATABASE_URL is required")

    cfg = Config(
        database_url=database_url,
        bot_token=os.getenv("BOT_TOKEN", "").strip(),
        timezone=os.getenv("MOONWAVE_TIMEZONE", "Asia/Seoul").strip(),
        run_hour=_int("MOONWAVE_RUN_HOUR", "9"),
        sink=os.getenv("MOONWAVE_SINK", "log").strip().lower(),

        page_size=_int("MOONWAVE_PAGE_SIZE", "200"),
        concurrency=_int("MOONWAVE_CONCURRENCY", "8"),
        call_timeout=_float("MOONWAVE_CALL_TIMEOUT", "10"),
        read_attempts=_int("MOONWAVE_READ_ATTEMPTS", "2"),

        mode=os.getenv("WORKER_MODE", "once").strip().lower(),
        trigger_host=os.getenv("TRIGGER_HOST", "0.0.0.0").strip(),
        trigger_port=_int("TRIGGER_PORT", "8080"),
        trigger_path=os.getenv("TRIGGER_PATH", "/internal/reminders/run").strip(),
        trigger_secret=os.getenv("TRIGGER_SECRET", "").strip(),

        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),

        dry_run=_bool("MOONWAVE_DRY_RUN", "0"),
        base_currency=os.getenv("MOONWAVE_BASE_CURRENCY", "KRW").strip().upper(),
        exchange_rates=_rates("MOONWAVE_EXCHANGE_RATES", "USD=1300"),
        summary_path=os.getenv("SUMMARY_PATH", "/internal/reminders/summary").strip(),
    )
    validate_config(cfg)
    return cfg

def validate_config(cfg: Config) -> None:
    try:
        ZoneInfo(cfg.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown timezone {cfg.timezone!r}") from None
    if not 0 <= cfg.run_hour <= 23:
        raise ConfigError("MOONWAVE_RUN_HOUR must be 0-23")
    if cfg.sink not in SINKS:
        raise ConfigError(f"MOONWAVE_SINK must be one of {', '.join(SINKS)}")
    if cfg.sink == "telegram" and not cfg.bot_token and not cfg.dry_run:
        raise ConfigError("BOT_TOKEN is required for the telegram sink")
    if cfg.mode not in MODES:
        raise ConfigError(f"WORKER_MODE must be one of {', '.join(MODES)}")
    if cfg.mode == "http" and not cfg.trigger_secret:
        raise ConfigError("TRIGGER_SECRET is required for WORKER_MODE=http")
    if cfg.page_size < 1 or cfg.concurrency < 1 or cfg.read_attempts < 1:
        raise ConfigError("page size, concurrency and read attempts must be positive")
    if cfg.call_timeout <= 0:
        raise ConfigError("MOONWAVE_CALL_TIMEOUT must be positive")
