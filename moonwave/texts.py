from datetime import date
from decimal import Decimal

from moonwave.domain import ReminderKind

ZERO_DECIMAL_CURRENCIES = {"KRW", "JPY"}

def fmt_date(d: date) -> str:
    return d.strftime("%Y.%m.%d")

def fmt_amount(amount: Decimal, currency: str) -> str:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return f"{amount:,.0f}{currency}"
    return f"{amount:,.2f} {currency}"

def _when(kind: ReminderKind) -> str:
    if kind is ReminderKind.SAME_DAY:
        return "오늘"
    if kind is ReminderKind.ONE_DAY:
        return "내일"
    return f"{kind.offset_days}일 후"

def reminder_title(name: str) -> str:
    return f"{name} 결제 예정"

def reminder_text(kind: ReminderKind, name: str, amount: Decimal, currency: str, occurrence_date: date) -> str:
    return (
        f"{_when(kind)} {name} 구독료 {fmt_amount(amount, currency)}가 결제됩니다.\n"
        f"결제일: {fmt_date(occurrence_date)}"
    )
