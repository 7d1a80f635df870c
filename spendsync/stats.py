from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Tuple

# (amount, currency) -> amount in the target base currency.
Converter = Callable[[int, str], int]


@dataclass(frozen=True)
class LedgerEntry:
    amount: int
    type: str
    date: datetime
    base_currency: str


@dataclass(frozen=True)
class Stats:
    total_income: int
    total_expense: int
    balance: int
    monthly_income: int
    currency: str


def summarize(
    entries: Iterable[LedgerEntry],
    base_currency: str,
    today: date,
    convert: Converter,
) -> Stats:
    """Total income and expense in `base_currency`.

    Amounts are grouped by the base currency they were stored in, so each group
    is converted once rather than once per row.
    """
    month_start = today.replace(day=1)
    totals: Dict[Tuple[str, str], int] = defaultdict(int)
    monthly: Dict[str, int] = defaultdict(int)
    for entry in entries:
        entry_type = entry.type.strip().lower()
        totals[(entry_type, entry.base_currency)] += entry.amount
        if entry_type == "income" and entry.date.date() >= month_start:
            monthly[entry.base_currency] += entry.amount

    total_income = _sum_converted(
        {currency: amount for (kind, currency), amount in totals.items() if kind == "income"},
        base_currency,
        convert,
    )
    total_expense = _sum_converted(
        {currency: amount for (kind, currency), amount in totals.items() if kind == "expense"},
        base_currency,
        convert,
    )
    return Stats(
        total_income=total_income,
        total_expense=total_expense,
        balance=total_income - total_expense,
        monthly_income=_sum_converted(monthly, base_currency, convert),
        currency=base_currency,
    )


def daily_spending(
    entries: Iterable[LedgerEntry],
    base_currency: str,
    today: date,
    convert: Converter,
) -> List[Tuple[date, int]]:
    """Expense totals for each day from the first of the month through `today`."""
    month_start = today.replace(day=1)
    by_day: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for entry in entries:
        if entry.type.strip().lower() != "expense":
            continue
        day = entry.date.date()
        if month_start <= day <= today:
            by_day[day][entry.base_currency] += entry.amount

    series: List[Tuple[date, int]] = []
    current = month_start
    while current <= today:
        series.append((current, _sum_converted(by_day.get(current, {}), base_currency, convert)))
        current += timedelta(days=1)
    return series


def _sum_converted(amounts_by_currency: Dict[str, int], target_currency: str, convert: Converter) -> int:
    total = 0
    for currency, amount in amounts_by_currency.items():
        if currency == target_currency or amount == 0:
            total += amount
        else:
            total += convert(amount, currency)
    return total
