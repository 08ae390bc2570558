from datetime import date
from typing import Iterable, Optional

from models import TransactionType
from periods import PaydayCycle, _DateSpan, days_in_month
from schemas import AnnualBudget, RecurringPayment, UserSettings


SALARY_TITLE = "Salary"
SUMMER_BONUS_TITLE = "Summer bonus"
WINTER_BONUS_TITLE = "Winter bonus"


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def payment_dates_in_cycle(payment: RecurringPayment, cycle: _DateSpan) -> list[date]:
    """The payment day in the cycle's start month, or the month after when that
    falls before the cycle start. At most one date per cycle."""
    candidate = _clamped(cycle.start.year, cycle.start.month, payment.payment_day)
    if candidate < cycle.start:
        year, month = _next_month(cycle.start.year, cycle.start.month)
        candidate = _clamped(year, month, payment.payment_day)
    if not cycle.contains(candidate):
        return []
    if payment.months and candidate.month not in payment.months:
        return []
    if payment.year is not None and candidate.year != payment.year:
        return []
    return [candidate]


def occurrences_in_cycle(
    payments: Iterable[RecurringPayment], cycle: _DateSpan
) -> list[tuple[date, RecurringPayment]]:
    found = [
        (day, payment)
        for payment in payments
        for day in payment_dates_in_cycle(payment, cycle)
    ]
    return sorted(found, key=lambda item: (item[0], item[1].title))


def _system_id(year: int, kind: str) -> str:
    return f"sys_{year}_{kind}"


def system_payments_for_budget(
    year: int, budget: AnnualBudget, settings: UserSettings
) -> list[RecurringPayment]:
    if not settings.income_categories:
        return []
    salary_category = settings.income_categories[0].id
    bonus_category = (
        settings.income_categories[1].id
        if len(settings.income_categories) > 1
        else salary_category
    )
    payday = settings.payday_settings.payday if settings.payday_settings else 25

    generated: list[RecurringPayment] = []
    if budget.monthly_income > 0:
        generated.append(
            RecurringPayment(
                id=_system_id(year, "salary"),
                title=SALARY_TITLE,
                amount=budget.monthly_income,
                payment_day=payday,
                category_id=salary_category,
                type=TransactionType.income,
                is_system_generated=True,
                year=year,
            )
        )
    seasons = (
        ("summer", SUMMER_BONUS_TITLE, budget.summer_bonus,
         budget.summer_bonus_months, budget.summer_bonus_payday),
        ("winter", WINTER_BONUS_TITLE, budget.winter_bonus,
         budget.winter_bonus_months, budget.winter_bonus_payday),
    )
    for kind, title, amount, months, payday_of_bonus in seasons:
        if amount <= 0 or not months:
            continue
        generated.append(
            RecurringPayment(
                id=_system_id(year, kind),
                title=title,
                amount=amount,
                payment_day=payday_of_bonus,
                category_id=bonus_category,
                type=TransactionType.income,
                is_system_generated=True,
                year=year,
                months=list(months),
            )
        )
    return generated


def merge_system_payments(
    existing: Iterable[RecurringPayment],
    year: int,
    generated: Iterable[RecurringPayment],
) -> list[RecurringPayment]:
    kept = [
        p for p in existing if not (p.is_system_generated and p.year == year)
    ]
    return kept + list(generated)


def next_payment_date(
    payment: RecurringPayment, from_date: date, *, limit_months: int = 24
) -> Optional[date]:
    year, month = from_date.year, from_date.month
    for _ in range(limit_months):
        candidate = _clamped(year, month, payment.payment_day)
        if (
            candidate >= from_date
            and (not payment.months or month in payment.months)
            and (payment.year is None or year == payment.year)
        ):
            return candidate
        year, month = _next_month(year, month)
    return None


def cycle_occurrences(
    payments: Iterable[RecurringPayment], cycle: PaydayCycle
) -> dict[date, list[str]]:
    markers: dict[date, list[str]] = {}
    for day, payment in occurrences_in_cycle(payments, cycle):
        markers.setdefault(day, []).append(payment.id)
    return markers
