from datetime import date, timedelta

import pytest

from models import Rollover
from periods import (
    PaydayConfigError,
    adjacent_cycle,
    adjust_for_weekend,
    days_in_month,
    format_cycle,
    get_cycles_for_year,
    get_payday_cycle,
    payday_date_for_month,
    payday_month,
    resolve_period,
)
from schemas import PaydaySettings


def test_cycle_rolls_weekend_payday_back_to_friday() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)

    cycle = get_payday_cycle(date(2024, 3, 10), settings)

    assert cycle.start == date(2024, 2, 23)
    assert cycle.end == date(2024, 3, 24)
    assert format_cycle(cycle) == "2/23 - 3/24"


def test_cycle_starts_on_payday_itself() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)

    cycle = get_payday_cycle(date(2024, 3, 25), settings)

    assert cycle.start == date(2024, 3, 25)
    assert cycle.end == date(2024, 4, 24)


def test_cycle_rolls_over_the_year_boundary() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)

    cycle = get_payday_cycle(date(2024, 1, 10), settings)

    assert cycle.start == date(2023, 12, 25)
    assert cycle.end == date(2024, 1, 24)


def test_payday_rolls_forward_with_after_policy() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.after)

    assert payday_date_for_month(date(2024, 2, 1), settings) == date(2024, 2, 26)


def test_payday_is_clamped_to_month_end() -> None:
    settings = PaydaySettings(payday=31, rollover=Rollover.before)

    assert payday_date_for_month(date(2024, 2, 10), settings) == date(2024, 2, 29)
    # 2024-06-30 is a Sunday
    assert payday_date_for_month(date(2024, 6, 1), settings) == date(2024, 6, 28)


def test_weekend_adjustment_walks_past_both_weekend_days() -> None:
    assert adjust_for_weekend(date(2024, 8, 31), Rollover.after) == date(2024, 9, 2)
    assert adjust_for_weekend(date(2024, 9, 1), Rollover.before) == date(2024, 8, 30)


@pytest.mark.parametrize(
    "payday,rollover",
    [
        (1, Rollover.before),
        (25, Rollover.before),
        (25, Rollover.after),
        (31, Rollover.after),
        (31, Rollover.before),
    ],
)
def test_every_day_falls_inside_its_cycle(payday: int, rollover: Rollover) -> None:
    settings = PaydaySettings(payday=payday, rollover=rollover)
    day = date(2023, 12, 1)
    while day <= date(2025, 1, 31):
        cycle = get_payday_cycle(day, settings)
        assert cycle.start <= day <= cycle.end
        day += timedelta(days=1)


def test_cycles_for_year_are_contiguous_and_start_in_year() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)

    cycles = get_cycles_for_year(2024, settings)

    assert len(cycles) == 12
    assert [c.start.month for c in cycles] == list(range(1, 13))
    assert all(c.start.year == 2024 for c in cycles)
    for previous, current in zip(cycles, cycles[1:]):
        assert current.start == previous.end + timedelta(days=1)


ALL_SETTINGS = [
    PaydaySettings(payday=day, rollover=rollover)
    for day in range(1, 32)
    for rollover in (Rollover.before, Rollover.after)
]


def _settings_id(settings: PaydaySettings) -> str:
    return f"{settings.payday}-{settings.rollover.value}"


@pytest.mark.parametrize("settings", ALL_SETTINGS, ids=_settings_id)
def test_payday_is_always_a_weekday(settings: PaydaySettings) -> None:
    for year in (2023, 2024, 2025, 2026):
        for month in range(1, 13):
            payday = payday_date_for_month(date(year, month, 1), settings)
            last_day = days_in_month(year, month)
            clamped = date(year, month, min(settings.payday, last_day))
            assert payday.weekday() < 5
            assert abs((payday - clamped).days) <= 2


@pytest.mark.parametrize("settings", ALL_SETTINGS, ids=_settings_id)
def test_next_cycle_starts_the_day_after_the_previous_ends(
    settings: PaydaySettings,
) -> None:
    cycle = get_payday_cycle(date(2023, 1, 15), settings)
    while cycle.start < date(2026, 12, 1):
        following = get_payday_cycle(cycle.end + timedelta(days=1), settings)
        assert following.start == cycle.end + timedelta(days=1)
        assert adjacent_cycle(cycle, settings, 1) == following
        assert adjacent_cycle(following, settings, -1) == cycle
        year, month = payday_month(cycle, settings)
        assert payday_date_for_month(date(year, month, 1), settings) == cycle.start
        cycle = following


@pytest.mark.parametrize("settings", ALL_SETTINGS, ids=_settings_id)
def test_cycles_for_year_cover_the_year_paydays(settings: PaydaySettings) -> None:
    for year in (2023, 2024, 2025, 2026):
        cycles = get_cycles_for_year(year, settings)
        paydays = sorted(
            payday_date_for_month(date(y, m, 1), settings)
            for y, m in [
                (year - 1, 12),
                *((year, m) for m in range(1, 13)),
                (year + 1, 1),
            ]
        )
        starts_in_year = [p for p in paydays if p.year == year]

        assert [c.start for c in cycles] == starts_in_year[:12]
        assert len(cycles) in (11, 12)
        if len(starts_in_year) == 12:
            assert len(cycles) == 12
        for previous, current in zip(cycles, cycles[1:]):
            assert current.start == previous.end + timedelta(days=1)
        assert cycles == sorted(cycles, key=lambda c: c.start)


def test_adjacent_cycles_navigate_both_ways() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)
    cycle = get_payday_cycle(date(2024, 3, 10), settings)

    previous = adjacent_cycle(cycle, settings, -1)
    following = adjacent_cycle(cycle, settings, 1)

    assert previous.end == cycle.start - timedelta(days=1)
    assert following.start == cycle.end + timedelta(days=1)


def test_missing_or_invalid_settings_are_configuration_errors() -> None:
    with pytest.raises(PaydayConfigError):
        get_payday_cycle(date(2024, 3, 10), None)

    broken = PaydaySettings.model_construct(payday=32, rollover=Rollover.before)
    with pytest.raises(PaydayConfigError):
        payday_date_for_month(date(2024, 3, 1), broken)


def test_resolve_period_variants() -> None:
    settings = PaydaySettings(payday=25, rollover=Rollover.before)
    today = date(2024, 3, 10)

    month = resolve_period("month", None, None, today=today)
    assert (month.start, month.end) == (date(2024, 3, 1), date(2024, 3, 31))

    year = resolve_period("year", "2023-05-01", None, today=today)
    assert (year.start, year.end) == (date(2023, 1, 1), date(2023, 12, 31))

    cycle = resolve_period(None, None, None, payday_settings=settings, today=today)
    assert cycle.start == date(2024, 2, 23)

    with pytest.raises(ValueError):
        resolve_period("custom", "2024-03-10", "2024-03-01", today=today)
