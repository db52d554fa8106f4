from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")
WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
RANGES = {"week", "month", "year"}


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    category: Optional[str] = None


@dataclass(frozen=True)
class Summary:
    income: Decimal
    expenses: Decimal
    net: Decimal
    total_balance: Decimal
    transaction_count: int
    average_transaction: Decimal


@dataclass(frozen=True)
class CategoryShare:
    name: str
    amount: Decimal
    percentage: Decimal


@dataclass(frozen=True)
class TrendBucket:
    label: str
    income: Decimal
    expense: Decimal


def normalize_range(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in RANGES:
        raise ValueError("Range must be one of: week, month, year.")
    return normalized


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return date(year, month, day)


def period_range(range_name: str, today: date) -> Tuple[date, date]:
    """Start and end dates covered by a dashboard range.

    ``week`` starts on this week's Monday, ``month`` and ``year`` reach back one
    month or one year from today.
    """
    normalized = normalize_range(range_name)
    if normalized == "week":
        return today - timedelta(days=today.weekday()), today
    if normalized == "year":
        return shift_month_keep_day(today, -12), today
    return shift_month_keep_day(today, -1), today


def summarize(transactions: Iterable[Transaction], balances: Iterable[Decimal]) -> Summary:
    income = ZERO
    expenses = ZERO
    count = 0
    for txn in transactions:
        count += 1
        if txn.type == "income":
            income += _coerce_amount(txn.amount)
        else:
            expenses += _coerce_amount(txn.amount)
    total_balance = sum((_coerce_amount(value) for value in balances), ZERO)
    average = (income + expenses) / count if count else ZERO
    return Summary(
        income=income,
        expenses=expenses,
        net=income - expenses,
        total_balance=total_balance,
        transaction_count=count,
        average_transaction=average,
    )


def category_breakdown(
    transactions: Iterable[Transaction],
    txn_type: str = "expense",
    top: int = 5,
) -> List[CategoryShare]:
    totals: Dict[str, Decimal] = {}
    for txn in transactions:
        if txn.type != txn_type:
            continue
        name = txn.category or "Uncategorized"
        totals[name] = totals.get(name, ZERO) + _coerce_amount(txn.amount)

    grand_total = sum(totals.values(), ZERO)
    if grand_total <= ZERO:
        return []
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [
        CategoryShare(name=name, amount=amount, percentage=amount / grand_total * HUNDRED)
        for name, amount in ranked[:top]
    ]


def weekly_trend(transactions: Iterable[Transaction], today: date) -> List[TrendBucket]:
    week_start = today - timedelta(days=today.weekday())
    week_end = week_start + timedelta(days=6)
    income = [ZERO] * 7
    expense = [ZERO] * 7
    for txn in transactions:
        if not week_start <= txn.date <= week_end:
            continue
        index = txn.date.weekday()
        if txn.type == "income":
            income[index] += _coerce_amount(txn.amount)
        else:
            expense[index] += _coerce_amount(txn.amount)
    return [
        TrendBucket(label=day, income=income[index], expense=expense[index])
        for index, day in enumerate(WEEKDAYS)
    ]


def monthly_trend(
    transactions: Iterable[Transaction], today: date, months: int = 6
) -> List[TrendBucket]:
    """Income and expense per month for the last ``months`` months, oldest first."""
    if months < 1:
        raise ValueError("months must be at least 1.")
    first = shift_month_keep_day(today.replace(day=1), -(months - 1))
    keys = [shift_month_keep_day(first, offset).strftime("%Y-%m") for offset in range(months)]
    income = {key: ZERO for key in keys}
    expense = {key: ZERO for key in keys}
    for txn in transactions:
        key = txn.date.strftime("%Y-%m")
        if key not in income:
            continue
        if txn.type == "income":
            income[key] += _coerce_amount(txn.amount)
        else:
            expense[key] += _coerce_amount(txn.amount)
    return [TrendBucket(label=key, income=income[key], expense=expense[key]) for key in keys]


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
