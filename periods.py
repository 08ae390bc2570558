from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional

from models import Rollover
from schemas import PaydaySettings


class PaydayConfigError(ValueError):
    pass


class _DateSpan:
    @property
    def end_of_day(self) -> datetime:
        return datetime.combine(self.end, time.max)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def days(self) -> Iterator[date]:
        day = self.start
        while day <= self.end:
            yield day
            day += timedelta(days=1)


@dataclass(frozen=True)
class Period(_DateSpan):
    slug: str
    start: date
    end: date


@dataclass(frozen=True)
class PaydayCycle(_DateSpan):
    """Budget period from one payday through the day before the next."""

    start: date
    end: date

    slug = "cycle"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    return total // 12, total % 12 + 1


def _checked(settings: Optional[PaydaySettings]) -> PaydaySettings:
    if settings is None:
        raise PaydayConfigError("Payday settings are not configured")
    if not 1 <= settings.payday <= 31:
        raise PaydayConfigError(
            f"Payday must be between 1 and 31, got {settings.payday}"
        )
    try:
        Rollover(settings.rollover)
    except ValueError as exc:
        raise PaydayConfigError(
            f"Unknown rollover policy: {settings.rollover}"
        ) from exc
    return settings


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def adjust_for_weekend(day: date, rollover: Rollover) -> date:
    # Saturday and Sunday are adjacent, so a single step is not always enough.
    step = timedelta(days=-1 if Rollover(rollover) == Rollover.before else 1)
    while is_weekend(day):
        day += step
    return day


def payday_date_for_month(
    month_reference: date, settings: Optional[PaydaySettings]
) -> date:
    settings = _checked(settings)
    year, month = month_reference.year, month_reference.month
    day = min(settings.payday, days_in_month(year, month))
    return adjust_for_weekend(date(year, month, day), settings.rollover)


def _payday(year: int, month: int, settings: PaydaySettings) -> date:
    return payday_date_for_month(date(year, month, 1), settings)


def get_payday_cycle(
    reference_date: date, settings: Optional[PaydaySettings]
) -> PaydayCycle:
    settings = _checked(settings)
    year, month = reference_date.year, reference_date.month
    # A weekend roll-over can push a payday across a month boundary (the 31st
    # rolled forward into the next month, the 1st rolled back into the
    # previous one), so step until payday(month) <= reference < payday(month+1).
    while _payday(year, month, settings) > reference_date:
        year, month = _shift_month(year, month, -1)
    next_year, next_month = _shift_month(year, month, 1)
    while _payday(next_year, next_month, settings) <= reference_date:
        year, month = next_year, next_month
        next_year, next_month = _shift_month(year, month, 1)

    start = _payday(year, month, settings)
    end = _payday(next_year, next_month, settings) - timedelta(days=1)
    return PaydayCycle(start=start, end=end)


def get_cycles_for_year(
    year: int, settings: Optional[PaydaySettings]
) -> list[PaydayCycle]:
    settings = _checked(settings)
    by_start: dict[date, PaydayCycle] = {}
    reference = date(year, 1, 1)
    for _ in range(13):
        cycle = get_payday_cycle(reference, settings)
        if cycle.start.year > year:
            break
        if cycle.start.year == year:
            by_start.setdefault(cycle.start, cycle)
        reference = cycle.end + timedelta(days=2)
    return [by_start[key] for key in sorted(by_start)][:12]


def adjacent_cycle(
    cycle: PaydayCycle, settings: Optional[PaydaySettings], step: int
) -> PaydayCycle:
    if step < 0:
        reference = cycle.start - timedelta(days=2)
    else:
        reference = cycle.end + timedelta(days=2)
    return get_payday_cycle(reference, settings)


def payday_month(
    cycle: PaydayCycle, settings: Optional[PaydaySettings]
) -> tuple[int, int]:
    """The (year, month) whose payday starts ``cycle``.

    Usually the month of ``cycle.start``, but a weekend roll-over can move the
    payday into the neighbouring month or year.
    """
    settings = _checked(settings)
    for delta in (0, -1, 1):
        year, month = _shift_month(cycle.start.year, cycle.start.month, delta)
        if _payday(year, month, settings) == cycle.start:
            return year, month
    raise PaydayConfigError(f"{cycle.start.isoformat()} is not a payday")


def format_cycle(cycle: _DateSpan) -> str:
    return f"{cycle.start.month}/{cycle.start.day} - {cycle.end.month}/{cycle.end.day}"


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    return Period("month", first, date(year, month, days_in_month(year, month)))


def year_period(year: int) -> Period:
    return Period("year", date(year, 1, 1), date(year, 12, 31))


def resolve_period(
    period: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    payday_settings: Optional[PaydaySettings] = None,
    today: Optional[date] = None,
) -> _DateSpan:
    today = today or date.today()
    anchor = date.fromisoformat(start) if start else today
    if period == "month":
        return month_period(anchor.year, anchor.month)
    if period == "year":
        return year_period(anchor.year)
    if period == "custom":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        end_date = date.fromisoformat(end)
        if anchor > end_date:
            raise ValueError("Start date must be before end date")
        return Period("custom", anchor, end_date)

    # default: the payday cycle containing the anchor date
    return get_payday_cycle(anchor, payday_settings)
