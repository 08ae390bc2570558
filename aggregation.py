"""Planned vs. actual figures for cycles, months and years.

Everything here is a pure function of its arguments: callers fetch one
consistent snapshot (budget, registry, transactions) and call in once per
view. Nothing is cached between calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from models import TransactionType
from categories import CategoryRegistry
from periods import (
    PaydayCycle,
    _DateSpan,
    days_in_month,
    month_period,
    payday_month,
)
from schemas import AnnualBudget, PaydaySettings, Transaction


@dataclass(frozen=True)
class ExpenseDetail:
    category_id: str
    name: str
    budget: int
    actual: int

    @property
    def remaining(self) -> int:
        return self.budget - self.actual


@dataclass(frozen=True)
class CycleSummary:
    start: date
    end: date
    planned_income: int
    actual_income: int
    planned_expense: int
    actual_expense: int
    is_bonus_cycle: bool
    budget_by_category: dict[str, int] = field(default_factory=dict)
    expense_details: list[ExpenseDetail] = field(default_factory=list)

    @property
    def net(self) -> int:
        return self.actual_income - self.actual_expense

    @property
    def planned_net(self) -> int:
        return self.planned_income - self.planned_expense


@dataclass(frozen=True)
class BalancePoint:
    day: date
    net: int
    balance: int


@dataclass(frozen=True)
class MonthBalance:
    month: int
    planned_balance: int
    actual_balance: int
    net: int


@dataclass(frozen=True)
class DayTotals:
    income: int = 0
    expense: int = 0


def bonus_dates(budget: AnnualBudget, year: int) -> list[tuple[date, int]]:
    """Scheduled bonus payment dates for ``year`` with their amounts."""
    dates: list[tuple[date, int]] = []
    seasons = (
        (budget.summer_bonus, budget.summer_bonus_months, budget.summer_bonus_payday),
        (budget.winter_bonus, budget.winter_bonus_months, budget.winter_bonus_payday),
    )
    for amount, months, payday in seasons:
        if amount <= 0:
            continue
        for month in months:
            day = min(payday, days_in_month(year, month))
            dates.append((date(year, month, day), amount))
    return sorted(dates)


def _bonuses_in(
    span: _DateSpan,
    budget: AnnualBudget,
    following_budget: Optional[AnnualBudget],
) -> list[tuple[date, int]]:
    found = [
        (day, amount)
        for day, amount in bonus_dates(budget, span.start.year)
        if span.contains(day)
    ]
    if span.end.year != span.start.year and following_budget is not None:
        found += [
            (day, amount)
            for day, amount in bonus_dates(following_budget, span.end.year)
            if span.contains(day)
        ]
    return found


def in_span(transactions: Iterable[Transaction], span: _DateSpan) -> list[Transaction]:
    return [t for t in transactions if span.contains(t.date)]


def totals_by_type(transactions: Iterable[Transaction]) -> tuple[int, int]:
    income = 0
    expense = 0
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount
        else:
            expense += txn.amount
    return income, expense


def net_amount(transactions: Iterable[Transaction]) -> int:
    income, expense = totals_by_type(transactions)
    return income - expense


def spent_by_category(transactions: Iterable[Transaction]) -> dict[str, int]:
    spent: dict[str, int] = {}
    for txn in transactions:
        if txn.type == TransactionType.expense:
            spent[txn.category_id] = spent.get(txn.category_id, 0) + txn.amount
    return spent


def summarize_cycle(
    cycle: _DateSpan,
    budget: Optional[AnnualBudget],
    transactions: Iterable[Transaction],
    registry: CategoryRegistry,
    *,
    following_budget: Optional[AnnualBudget] = None,
) -> Optional[CycleSummary]:
    """Planned vs. actual for one cycle; ``None`` when no budget exists.

    ``registry`` supplies the ordered expense categories and their names.
    ``following_budget`` is the next year's budget, consulted only for bonus
    payments when the cycle crosses into January.
    """
    if budget is None:
        return None

    bonuses = _bonuses_in(cycle, budget, following_budget)
    is_bonus_cycle = bool(bonuses)
    planned_income = budget.monthly_income + sum(amount for _, amount in bonuses)
    allocations = budget.bonus_month_budget if is_bonus_cycle else budget.normal_month_budget
    budget_by_category = dict(allocations)

    scoped = in_span(transactions, cycle)
    actual_income, actual_expense = totals_by_type(scoped)
    spent = spent_by_category(scoped)

    details: list[ExpenseDetail] = []
    for category in registry.expense():
        planned = budget_by_category.get(category.id, 0)
        actual = spent.get(category.id, 0)
        if planned == 0 and actual == 0:
            continue
        details.append(
            ExpenseDetail(
                category_id=category.id,
                name=category.name,
                budget=planned,
                actual=actual,
            )
        )

    return CycleSummary(
        start=cycle.start,
        end=cycle.end,
        planned_income=planned_income,
        actual_income=actual_income,
        planned_expense=sum(budget_by_category.values()),
        actual_expense=actual_expense,
        is_bonus_cycle=is_bonus_cycle,
        budget_by_category=budget_by_category,
        expense_details=details,
    )


def summarize_month(
    year: int,
    month: int,
    budget: Optional[AnnualBudget],
    transactions: Iterable[Transaction],
    registry: CategoryRegistry,
) -> Optional[CycleSummary]:
    return summarize_cycle(month_period(year, month), budget, transactions, registry)


def opening_balance(
    cycle: PaydayCycle,
    budget: AnnualBudget,
    settings: PaydaySettings,
) -> int:
    """Planned balance carried into ``cycle``.

    ``budget`` is the budget of the year returned by ``payday_month``. A
    January cycle opens with the starting balance, any other with the planned
    balance of the month before its payday month.
    """
    _, month = payday_month(cycle, settings)
    if month == 1:
        return budget.starting_balance
    return budget.planned_balance[month - 2]


def daily_totals(transactions: Iterable[Transaction]) -> dict[date, DayTotals]:
    totals: dict[date, DayTotals] = {}
    for txn in transactions:
        current = totals.get(txn.date, DayTotals())
        if txn.type == TransactionType.income:
            current = DayTotals(current.income + txn.amount, current.expense)
        else:
            current = DayTotals(current.income, current.expense + txn.amount)
        totals[txn.date] = current
    return dict(sorted(totals.items()))


def balance_series(
    span: _DateSpan, opening: int, transactions: Iterable[Transaction]
) -> list[BalancePoint]:
    per_day = daily_totals(in_span(transactions, span))
    points: list[BalancePoint] = []
    balance = opening
    for day in span.days():
        totals = per_day.get(day, DayTotals())
        net = totals.income - totals.expense
        balance += net
        points.append(BalancePoint(day=day, net=net, balance=balance))
    return points


def annual_balance_series(
    year: int, budget: Optional[AnnualBudget], transactions: Iterable[Transaction]
) -> Optional[list[MonthBalance]]:
    if budget is None:
        return None
    net_by_month = [0] * 12
    for txn in transactions:
        if txn.date.year == year:
            net_by_month[txn.date.month - 1] += txn.signed_amount

    series: list[MonthBalance] = []
    balance = budget.starting_balance
    for index in range(12):
        balance += net_by_month[index]
        planned = (
            budget.planned_balance[index] if index < len(budget.planned_balance) else 0
        )
        series.append(
            MonthBalance(
                month=index + 1,
                planned_balance=planned,
                actual_balance=balance,
                net=net_by_month[index],
            )
        )
    return series
