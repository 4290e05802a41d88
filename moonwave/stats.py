"""Spending summaries over subscription snapshots."""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Mapping

from moonwave.dates import occurrences_between
from moonwave.domain import Cycle, Subscription

# (multiplier, divisor) turning one charge into a monthly amount
_PER_MONTH = {
    Cycle.WEEKLY: (52, 12),
    Cycle.MONTHLY: (1, 1),
    Cycle.QUARTERLY: (1, 3),
    Cycle.YEARLY: (1, 12),
    Cycle.ONETIME: (0, 1),
}

@dataclass
class CurrencyTotals:
    count: int = 0
    monthly: Decimal = Decimal("0")
    yearly: Decimal = Decimal("0")

    def add(self, sub: Subscription, rate: Decimal = Decimal("1")) -> None:
        self.count += 1
        self.monthly += monthly_equivalent(sub) * rate
        self.yearly += yearly_equivalent(sub) * rate

    def as_dict(self) -> dict:
        return {"count": self.count, "monthly": str(self.monthly), "yearly": str(self.yearly)}

@dataclass(frozen=True)
class UpcomingPayment:
    subscription: Subscription
    payment_date: date
    days_until: int

    def as_dict(self) -> dict:
        return {
            "subscription_id": self.subscription.id,
            "name": self.subscription.name,
            "amount": str(self.subscription.amount),
            "currency": self.subscription.currency,
            "payment_date": self.payment_date.isoformat(),
            "days_until": self.days_until,
        }

def monthly_equivalent(sub: Subscription) -> Decimal:
    mult, div = _PER_MONTH[sub.cycle]
    return sub.amount * mult / div

def yearly_equivalent(sub: Subscription) -> Decimal:
    # a one-time charge counts once, in full, for the year it is paid in
    if sub.cycle is Cycle.ONETIME:
        return sub.amount
    return monthly_equivalent(sub) * 12

def totals_by_currency(subs: Iterable[Subscription]) -> dict[str, CurrencyTotals]:
    totals: dict[str, CurrencyTotals] = {}
    for sub in subs:
        if not sub.active:
            continue
        totals.setdefault(sub.currency, CurrencyTotals()).add(sub)
    return totals

def combined_total(
    subs: Iterable[Subscription],
    base_currency: str,
    exchange_rates: Mapping[str, Decimal],
) -> CurrencyTotals:
    """All active subscriptions in one currency.

    ``exchange_rates`` maps a currency code to the price of one unit in
    ``base_currency`` (e.g. {"USD": Decimal("1300")} for a KRW base).
    """
    total = CurrencyTotals()
    for sub in subs:
        if not sub.active:
            continue
        if sub.currency == base_currency:
            rate = Decimal("1")
        elif sub.currency in exchange_rates:
            rate = Decimal(exchange_rates[sub.currency])
        else:
            raise ValueError(f"no exchange rate from {sub.currency} to {base_currency}")
        total.add(sub, rate)
    return total

def upcoming_payments(subs: Iterable[Subscription], today: date, days: int) -> list[UpcomingPayment]:
    last = today + timedelta(days=days)
    out = []
    for sub in subs:
        if not sub.active:
            continue
        for d in occurrences_between(sub.cycle, sub.anchor_day, sub.start_date, sub.end_date, today, last):
            out.append(UpcomingPayment(sub, d, (d - today).days))
    out.sort(key=lambda p: (p.payment_date, p.subscription.name))
    return out
