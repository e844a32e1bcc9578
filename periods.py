from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from errors import ValidationError

EPOCH = date(1970, 1, 1)


@dataclass(frozen=True)
class Period:
    """Half-open date window: ``start`` is included, ``end`` is not."""

    slug: str
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_window(year_month: Union[str, date]) -> Period:
    try:
        if isinstance(year_month, date):
            first = year_month.replace(day=1)
        else:
            year_str, month_str = year_month.strip().split("-")
            first = date(int(year_str), int(month_str), 1)
        end = add_months(first, 1)
    except (AttributeError, ValueError) as exc:
        raise ValidationError(
            f"Invalid month {year_month!r}, expected YYYY-MM"
        ) from exc
    return Period(first.strftime("%Y-%m"), first, end)


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    month: Optional[str] = None,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    tomorrow = today + timedelta(days=1)
    if period == "all":
        return Period("all", EPOCH, tomorrow)
    if period == "month_to_date":
        return Period("month_to_date", today.replace(day=1), tomorrow)
    if period == "last_month":
        window = month_window(add_months(today, -1))
        return Period("last_month", window.start, window.end)
    if period == "month":
        if not month:
            raise ValidationError("Month period requires a month (YYYY-MM)")
        return month_window(month)
    if period == "custom":
        if not start or not end:
            raise ValidationError("Custom period requires start and end dates")
        try:
            start_date = date.fromisoformat(start)
            end_date = date.fromisoformat(end)
        except ValueError as exc:
            raise ValidationError("Dates must be in YYYY-MM-DD format") from exc
        if start_date >= end_date:
            raise ValidationError("Start date must be before end date")
        return Period("custom", start_date, end_date)
    if period and period != "this_month":
        raise ValidationError(f"Unknown period {period!r}")

    window = month_window(today)
    return Period("this_month", window.start, window.end)
