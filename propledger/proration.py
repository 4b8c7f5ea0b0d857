"""
proration.py - Pro-Ration Calculator

Splits a rental statement period into calendar-month fractions for reporting.

Both functions are pure and deterministic. Periods are inclusive on both ends:
2024-01-15 .. 2024-02-10 covers 17 days of January and 10 days of February.

prorate_to_monthly() uses an average month length and is an approximation
for display only. Payout amounts never depend on anything in this module.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Tuple

import numpy as np

from .core import AVERAGE_DAYS_PER_MONTH, DEFAULT_CURRENCY, InvalidPeriod
from .money import quantize_money, to_decimal


@dataclass(frozen=True, slots=True)
class MonthlyBreakdown:
    """
    The part of a period that falls in one calendar month.

    Attributes:
        month: "YYYY-MM"
        days_in_month: Calendar length of the month
        days_in_period: Days of the period inside the month (inclusive)
        factor: days_in_period / days_in_month
    """
    month: str
    days_in_month: int
    days_in_period: int
    factor: Decimal


@dataclass(frozen=True, slots=True)
class ProratedAmount:
    monthly_amount: Decimal
    total_days: int
    breakdown: Tuple[MonthlyBreakdown, ...]


def as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise InvalidPeriod(f"Expected a date, got {value!r}")


def _check_period(period_start: Any, period_end: Any) -> Tuple[date, date]:
    start = as_date(period_start)
    end = as_date(period_end)
    if start > end:
        raise InvalidPeriod(f"Period start {start} is after period end {end}")
    return start, end


def period_days(period_start: Any, period_end: Any) -> int:
    """Number of days in an inclusive period."""
    start, end = _check_period(period_start, period_end)
    return (end - start).days + 1


def monthly_breakdown(period_start: Any, period_end: Any) -> List[MonthlyBreakdown]:
    """
    One entry per calendar month overlapping the period.

    Raises:
        InvalidPeriod: if period_start is after period_end
    """
    start, end = _check_period(period_start, period_end)

    start_day = np.datetime64(start.isoformat(), "D")
    end_day = np.datetime64(end.isoformat(), "D")
    months = np.arange(
        start_day.astype("datetime64[M]"),
        end_day.astype("datetime64[M]") + 1,
        dtype="datetime64[M]",
    )
    month_first = months.astype("datetime64[D]")
    next_month_first = (months + 1).astype("datetime64[D]")

    days_in_month = (next_month_first - month_first).astype(int)
    overlap_first = np.maximum(month_first, start_day)
    overlap_last = np.minimum(next_month_first - np.timedelta64(1, "D"), end_day)
    days_in_period = (overlap_last - overlap_first).astype(int) + 1

    return [
        MonthlyBreakdown(
            month=str(month),
            days_in_month=int(dim),
            days_in_period=int(dip),
            factor=Decimal(int(dip)) / Decimal(int(dim)),
        )
        for month, dim, dip in zip(months, days_in_month, days_in_period)
    ]


def prorate_to_monthly(
    total: Any,
    period_start: Any,
    period_end: Any,
    currency: str = DEFAULT_CURRENCY,
) -> ProratedAmount:
    """
    Express a period total as a monthly-equivalent figure.

        monthly_amount = total / (total_days / 30.44)

    Display/reporting approximation; never used for payouts.
    """
    breakdown = monthly_breakdown(period_start, period_end)
    total_days = sum(b.days_in_period for b in breakdown)
    months_in_period = Decimal(total_days) / AVERAGE_DAYS_PER_MONTH
    monthly = quantize_money(to_decimal(total) / months_in_period, currency)
    return ProratedAmount(
        monthly_amount=monthly,
        total_days=total_days,
        breakdown=tuple(breakdown),
    )
