import re
from dataclasses import dataclass
from datetime import date

from errors import ValidationError

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class MonthPeriod:
    slug: str
    start: date
    end: date

    @property
    def year(self) -> int:
        return self.start.year

    @property
    def month(self) -> int:
        return self.start.month

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month_start = date(year + 1, 1, 1)
    else:
        next_month_start = date(year, month + 1, 1)
    return (next_month_start - date(year, month, 1)).days


def _month_end(year: int, month: int) -> date:
    return date(year, month, days_in_month(year, month))


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def resolve_month(month: str) -> MonthPeriod:
    match = _MONTH_RE.match(month or "")
    if not match:
        raise ValidationError(
            f"Invalid month {month!r}. Expected YYYY-MM", field="month"
        )
    year, num = int(match.group(1)), int(match.group(2))
    if not 1 <= num <= 12:
        raise ValidationError(f"Invalid month {month!r}", field="month")
    return MonthPeriod(month_key(year, num), date(year, num, 1), _month_end(year, num))


def shift_month(month: str, offset: int) -> str:
    period = resolve_month(month)
    total = period.year * 12 + (period.month - 1) + offset
    return month_key(total // 12, total % 12 + 1)


def previous_month(month: str) -> str:
    return shift_month(month, -1)


def next_month(month: str) -> str:
    return shift_month(month, 1)


def current_month(today: date) -> str:
    """Month key for ``today``; pass ``recurrence.local_today()`` for the configured zone."""
    return month_key(today.year, today.month)
