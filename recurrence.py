from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurringInterval, Transaction, TransactionType


RECURRING_SUFFIX = "(Recurring)"


class InvalidInterval(ValueError):
    pass


def local_now() -> datetime:
    """Wall-clock time in the configured calendar, without tzinfo."""
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def _coerce_interval(interval: Union[RecurringInterval, str, None]) -> RecurringInterval:
    if isinstance(interval, RecurringInterval):
        return interval
    try:
        return RecurringInterval(interval)
    except ValueError as exc:
        raise InvalidInterval(f"Invalid recurring interval: {interval!r}") from exc


def advance(
    day: date,
    interval: Union[RecurringInterval, str, None],
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Return the occurrence one interval after ``day``.

    Month and year steps land on ``anchor_day`` (``day.day`` when omitted),
    clamped to the length of the target month, so a series anchored on the
    31st goes Jan 31, Feb 28, Mar 31.
    """
    unit = _coerce_interval(interval)
    desired_day = anchor_day or day.day
    if unit == RecurringInterval.daily:
        return day + timedelta(days=1)
    if unit == RecurringInterval.weekly:
        return day + timedelta(weeks=1)
    if unit == RecurringInterval.monthly:
        return _add_months(day, 1, desired_day=desired_day)
    return _add_months(day, 12, desired_day=desired_day)


@dataclass(frozen=True)
class OccurrenceDraft:
    user_id: int
    account_id: int
    type: TransactionType
    amount: Decimal
    description: str
    date: date
    category: str

    @property
    def signed_amount(self) -> Decimal:
        if self.type == TransactionType.expense:
            return -self.amount
        return self.amount


@dataclass(frozen=True)
class ReplayResult:
    template_id: int
    drafts: tuple[OccurrenceDraft, ...]
    next_date: date
    net_delta: Decimal


def is_due(template: Transaction, today: date) -> bool:
    if template.last_processed is None:
        return True
    if template.next_recurring_date is None:
        return False
    return template.next_recurring_date <= today


def replay_start(template: Transaction) -> date:
    if template.last_processed is not None and template.next_recurring_date:
        return template.next_recurring_date
    return template.date


def _recurring_description(description: Optional[str]) -> str:
    if not description:
        return RECURRING_SUFFIX
    return f"{description} {RECURRING_SUFFIX}"


def replay_missed(
    template: Transaction,
    today: date,
    *,
    max_occurrences: Optional[int] = None,
) -> ReplayResult:
    """Draft every occurrence of ``template`` dated before ``today``.

    Occurrences dated ``today`` are left for the next run. When more than
    ``max_occurrences`` are missing the returned date is still in the past,
    which keeps the template due so the next run resumes from there.
    """
    if max_occurrences is None:
        max_occurrences = get_settings().max_catch_up_occurrences
    interval = _coerce_interval(template.recurring_interval)
    anchor_day = template.date.day

    cursor = replay_start(template)
    drafts: list[OccurrenceDraft] = []
    while cursor < today and len(drafts) < max_occurrences:
        drafts.append(
            OccurrenceDraft(
                user_id=template.user_id,
                account_id=template.account_id,
                type=template.type,
                amount=template.amount,
                description=_recurring_description(template.description),
                date=cursor,
                category=template.category,
            )
        )
        cursor = advance(cursor, interval, anchor_day=anchor_day)

    net_delta = sum((draft.signed_amount for draft in drafts), Decimal("0"))
    return ReplayResult(
        template_id=template.id,
        drafts=tuple(drafts),
        next_date=cursor,
        net_delta=net_delta,
    )
