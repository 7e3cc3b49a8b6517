from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def label(self) -> str:
        return self.start.strftime("%B %Y")


def month_end(day: date) -> date:
    first = day.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def month_to_date(today: date) -> Period:
    return Period("month_to_date", today.replace(day=1), today)


def calendar_month(day: date) -> Period:
    return Period("month", day.replace(day=1), month_end(day))


def previous_month(today: date) -> Period:
    last_month_end = today.replace(day=1) - date.resolution
    return Period("last_month", last_month_end.replace(day=1), last_month_end)


def is_new_month(last: Optional[datetime], now: datetime) -> bool:
    if last is None:
        return True
    return (last.year, last.month) != (now.year, now.month)
