"""Period boundaries for recurring obligations.

Monthly periods are anchored to a billing day. Quarterly, half-yearly and
annual periods follow the fiscal year, which starts in
``settings.fiscal_year_start_month`` (April by default).
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

from app.config import settings
from app.models.compliance import Periodicity

ONE_TIME_KEY = "ONCE"


@dataclass(frozen=True)
class Period:
    key: str
    label: str
    start: date
    end: date


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _anchor(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _fiscal_year_start(day: date, start_month: int) -> int:
    return day.year if day.month >= start_month else day.year - 1


def _fy_label(fy_year: int, start_month: int) -> str:
    if start_month == 1:
        return f"FY{fy_year}"
    return f"FY{fy_year}-{(fy_year + 1) % 100:02d}"


def _monthly(day: date, billing_day: int) -> Period:
    start = _anchor(day.year, day.month, billing_day)
    if day < start:
        year, month = _add_months(day.year, day.month, -1)
        start = _anchor(year, month, billing_day)
    next_year, next_month = _add_months(start.year, start.month, 1)
    end = _anchor(next_year, next_month, billing_day) - timedelta(days=1)
    return Period(
        key=f"{start.year:04d}-{start.month:02d}",
        label=start.strftime("%b %Y"),
        start=start,
        end=end,
    )


def _fiscal_block(day: date, months: int, start_month: int) -> tuple[int, int, date, date]:
    fy_year = _fiscal_year_start(day, start_month)
    offset = (day.month - start_month) % 12
    index = offset // months
    start_year, start_mon = _add_months(fy_year, start_month, index * months)
    end_year, end_mon = _add_months(start_year, start_mon, months)
    start = date(start_year, start_mon, 1)
    end = date(end_year, end_mon, 1) - timedelta(days=1)
    return fy_year, index + 1, start, end


def period_containing(
    periodicity: Periodicity,
    day: date,
    billing_day: int | None = None,
    fiscal_year_start_month: int | None = None,
) -> Period:
    billing_day = billing_day or settings.billing_day
    start_month = fiscal_year_start_month or settings.fiscal_year_start_month

    if periodicity == Periodicity.monthly:
        return _monthly(day, billing_day)
    if periodicity == Periodicity.quarterly:
        fy_year, quarter, start, end = _fiscal_block(day, 3, start_month)
        label = _fy_label(fy_year, start_month)
        return Period(f"{label}-Q{quarter}", f"Q{quarter} {label}", start, end)
    if periodicity == Periodicity.half_yearly:
        fy_year, half, start, end = _fiscal_block(day, 6, start_month)
        label = _fy_label(fy_year, start_month)
        return Period(f"{label}-H{half}", f"H{half} {label}", start, end)
    if periodicity == Periodicity.annual:
        fy_year, _, start, end = _fiscal_block(day, 12, start_month)
        label = _fy_label(fy_year, start_month)
        return Period(label, label, start, end)
    if periodicity == Periodicity.one_time:
        return Period(ONE_TIME_KEY, ONE_TIME_KEY, day, day)
    raise ValueError(f"Unsupported periodicity: {periodicity}")


def next_period(periodicity: Periodicity, period: Period, **kwargs) -> Period | None:
    if periodicity == Periodicity.one_time:
        return None
    return period_containing(periodicity, period.end + timedelta(days=1), **kwargs)


def previous_period(periodicity: Periodicity, period: Period, **kwargs) -> Period | None:
    if periodicity == Periodicity.one_time:
        return None
    return period_containing(periodicity, period.start - timedelta(days=1), **kwargs)


def due_date_for(period: Period, due_offset_days: int) -> date:
    return period.end + timedelta(days=due_offset_days or 0)
