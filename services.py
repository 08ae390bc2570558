from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from aggregation import (
    CycleSummary,
    annual_balance_series,
    balance_series,
    daily_totals,
    opening_balance,
    summarize_cycle,
    summarize_month,
)
from categories import (
    DEFAULT_EXPENSE_CATEGORIES,
    DEFAULT_INCOME_CATEGORIES,
    CategoryRegistry,
)
from config import get_settings
from models import Rollover, TransactionType
from periods import (
    PaydayCycle,
    _DateSpan,
    adjacent_cycle,
    format_cycle,
    get_cycles_for_year,
    get_payday_cycle,
    month_period,
    payday_month,
    year_period,
)
from recurrence import (
    cycle_occurrences,
    merge_system_payments,
    next_payment_date,
    occurrences_in_cycle,
    system_payments_for_budget,
)
from schemas import (
    AnnualBudget,
    CategoryIn,
    ExpenseCategory,
    IncomeCategory,
    PaydaySettings,
    RecurringPayment,
    RecurringPaymentIn,
    SettingsPatch,
    Transaction,
    TransactionIn,
    TransactionPatch,
    UserSettings,
    generate_category_id,
    generate_id,
)
from store import DocumentStore, Filter


logger = logging.getLogger(__name__)

DEFAULT_PAYDAY = PaydaySettings(payday=25, rollover=Rollover.before)


class NotFound(ValueError):
    pass


class SetupIncomplete(ValueError):
    pass


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def user_path(user_id: str) -> str:
    return f"users/{user_id}"


def transactions_path(user_id: str) -> str:
    return f"users/{user_id}/transactions"


def default_settings() -> UserSettings:
    return UserSettings(
        initial_balance=0,
        income_categories=[c.model_copy() for c in DEFAULT_INCOME_CATEGORIES],
        expense_categories=[c.model_copy() for c in DEFAULT_EXPENSE_CATEGORIES],
    )


def _clean_tags(tags: Iterable[str]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for tag in tags:
        name = tag.strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        cleaned.append(name)
    return cleaned


class SettingsService:
    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    @property
    def path(self) -> str:
        return user_path(self.user_id)

    def load(self) -> UserSettings:
        doc = self.store.get_document(self.path) or {}
        stored = doc.get("settings")
        if stored is None:
            settings = default_settings()
            self.store.update_document(self.path, {"settings": settings.to_document()})
            logger.info(f"settings_initialized: user_id={self.user_id}")
            return settings
        try:
            return UserSettings.model_validate(
                {**default_settings().to_document(), **stored}
            )
        except ValidationError as exc:
            raise SetupIncomplete(
                "Please complete setup: stored settings are invalid"
            ) from exc

    def registry(self) -> CategoryRegistry:
        return CategoryRegistry.from_settings(self.load())

    def payday_settings(self, use_default: bool = True) -> Optional[PaydaySettings]:
        settings = self.load().payday_settings
        if settings is None and use_default:
            return DEFAULT_PAYDAY.model_copy()
        return settings

    def setup_status(self, year: Optional[int] = None) -> dict:
        year = year or local_today().year
        settings = self.load()
        budget = AnnualBudgetService(self.store, self.user_id).get(year)
        return {
            "year": year,
            "payday_configured": settings.payday_settings is not None,
            "budget_configured": budget is not None,
            "has_categories": bool(settings.income_categories)
            and bool(settings.expense_categories),
        }

    def update(self, patch: SettingsPatch) -> UserSettings:
        fields: dict = {}
        if patch.initial_balance is not None:
            fields["settings.initialBalance"] = patch.initial_balance
        if patch.payday_settings is not None:
            fields["settings.paydaySettings"] = patch.payday_settings.to_document()
        if fields:
            self.load()
            self.store.update_document(self.path, fields)
            logger.info(
                f"settings_updated: user_id={self.user_id} fields={sorted(fields)}"
            )
        return self.load()

    def set_payday(self, payday: PaydaySettings) -> UserSettings:
        return self.update(SettingsPatch(payday_settings=payday))

    def _save_categories(self, settings: UserSettings) -> UserSettings:
        # re-validate so duplicate ids never reach the store
        settings = UserSettings.model_validate(settings.model_dump())
        self.store.update_document(
            self.path,
            {
                "settings.incomeCategories": [
                    c.to_document() for c in settings.income_categories
                ],
                "settings.expenseCategories": [
                    c.to_document() for c in settings.expense_categories
                ],
                "settings.retiredCategoryIds": list(settings.retired_category_ids),
            },
        )
        return settings

    def _new_category_id(self, settings: UserSettings) -> str:
        taken = {c.id for c in settings.income_categories + settings.expense_categories}
        taken.update(settings.retired_category_ids)
        category_id = generate_category_id()
        while category_id in taken:
            category_id = generate_category_id()
        return category_id

    def add_category(self, data: CategoryIn) -> IncomeCategory | ExpenseCategory:
        settings = self.load()
        name = data.name.strip()
        if not name:
            raise ValueError("Category name cannot be empty")
        kind = TransactionType(data.kind)
        existing = (
            settings.income_categories
            if kind == TransactionType.income
            else settings.expense_categories
        )
        if any(c.name.lower() == name.lower() for c in existing):
            raise ValueError("Category with this name already exists")

        category_id = self._new_category_id(settings)
        if kind == TransactionType.income:
            category = IncomeCategory(id=category_id, name=name)
            settings.income_categories.append(category)
        else:
            category = ExpenseCategory(id=category_id, name=name)
            settings.expense_categories.append(category)
        self._save_categories(settings)
        logger.info(
            f"category_added: user_id={self.user_id} id={category_id} kind={kind.value}"
        )
        return category

    def rename_category(
        self, category_id: str, name: str
    ) -> IncomeCategory | ExpenseCategory:
        settings = self.load()
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        for group in (settings.income_categories, settings.expense_categories):
            for index, category in enumerate(group):
                if category.id != category_id:
                    continue
                if any(
                    c.id != category_id and c.name.lower() == clean_name.lower()
                    for c in group
                ):
                    raise ValueError("Category with this name already exists")
                group[index] = category.model_copy(update={"name": clean_name})
                self._save_categories(settings)
                return group[index]
        raise NotFound("Category not found")

    def remove_category(self, category_id: str) -> None:
        settings = self.load()
        income = [c for c in settings.income_categories if c.id != category_id]
        expense = [c for c in settings.expense_categories if c.id != category_id]
        if len(income) + len(expense) == len(settings.income_categories) + len(
            settings.expense_categories
        ):
            raise NotFound("Category not found")
        settings.income_categories = income
        settings.expense_categories = expense
        if category_id not in settings.retired_category_ids:
            settings.retired_category_ids.append(category_id)
        self._save_categories(settings)
        logger.info(f"category_removed: user_id={self.user_id} id={category_id}")

    def reorder_categories(
        self, kind: TransactionType, ids: list[str]
    ) -> list[IncomeCategory | ExpenseCategory]:
        settings = self.load()
        kind = TransactionType(kind)
        group = (
            settings.income_categories
            if kind == TransactionType.income
            else settings.expense_categories
        )
        by_id = {c.id: c for c in group}
        if len(ids) != len(set(ids)) or set(ids) != set(by_id):
            raise ValueError("Category order must list every category exactly once")
        reordered = [by_id[category_id] for category_id in ids]
        if kind == TransactionType.income:
            settings.income_categories = reordered
        else:
            settings.expense_categories = reordered
        self._save_categories(settings)
        return reordered


class AnnualBudgetService:
    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def get(self, year: int) -> Optional[AnnualBudget]:
        doc = self.store.get_document(user_path(self.user_id)) or {}
        entry = (doc.get("annualData") or {}).get(str(year)) or {}
        raw = entry.get("budget")
        if raw is None:
            return None
        return AnnualBudget.model_validate(raw)

    def require(self, year: int) -> AnnualBudget:
        budget = self.get(year)
        if budget is None:
            raise SetupIncomplete(f"Please complete setup: no budget for {year}")
        return budget

    def save(self, year: int, budget: AnnualBudget) -> AnnualBudget:
        settings = SettingsService(self.store, self.user_id).load()
        known = {c.id for c in settings.expense_categories}
        known.update(settings.retired_category_ids)
        for allocations in (budget.normal_month_budget, budget.bonus_month_budget):
            unknown = sorted(set(allocations) - known)
            if unknown:
                raise ValueError(f"Unknown expense category: {', '.join(unknown)}")

        self.store.update_document(
            user_path(self.user_id), {f"annualData.{year}.budget": budget.to_document()}
        )
        logger.info(f"budget_saved: user_id={self.user_id} year={year}")
        RecurringPaymentService(self.store, self.user_id).regenerate_for_year(
            year, budget, settings
        )
        return budget

    def draft(self, year: int) -> AnnualBudget:
        stored = self.get(year)
        if stored is not None:
            return stored
        previous = self.get(year - 1)
        if previous is not None:
            starting = previous.planned_balance[11] or previous.starting_balance
        else:
            starting = SettingsService(self.store, self.user_id).load().initial_balance
        return AnnualBudget(starting_balance=starting)

    @staticmethod
    def copy_normal_to_bonus(budget: AnnualBudget) -> AnnualBudget:
        return budget.model_copy(
            update={"bonus_month_budget": dict(budget.normal_month_budget)}
        )


class RecurringPaymentService:
    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def list(self) -> list[RecurringPayment]:
        doc = self.store.get_document(user_path(self.user_id)) or {}
        return [
            RecurringPayment.model_validate(item)
            for item in doc.get("recurringPayments") or []
        ]

    def _save(self, payments: list[RecurringPayment]) -> None:
        self.store.update_document(
            user_path(self.user_id),
            {"recurringPayments": [p.to_document() for p in payments]},
        )

    def replace_user_payments(
        self, items: list[RecurringPaymentIn]
    ) -> list[RecurringPayment]:
        registry = SettingsService(self.store, self.user_id).registry()
        current = self.list()
        system = [p for p in current if p.is_system_generated]
        system_ids = {p.id for p in system}

        authored: list[RecurringPayment] = []
        seen: set[str] = set()
        for item in items:
            registry.require(item.category_id, item.type)
            payment_id = item.id or generate_id()
            if payment_id in system_ids:
                raise ValueError("System-generated payments cannot be edited")
            if payment_id in seen:
                raise ValueError(f"Duplicate recurring payment id: {payment_id}")
            seen.add(payment_id)
            authored.append(
                RecurringPayment(
                    id=payment_id,
                    title=item.title.strip(),
                    amount=item.amount,
                    payment_day=item.payment_day,
                    category_id=item.category_id,
                    type=item.type,
                    months=list(item.months),
                )
            )
        payments = authored + system
        self._save(payments)
        logger.info(
            f"recurring_saved: user_id={self.user_id} authored={len(authored)}"
        )
        return payments

    def regenerate_for_year(
        self,
        year: int,
        budget: AnnualBudget,
        settings: Optional[UserSettings] = None,
    ) -> list[RecurringPayment]:
        settings = settings or SettingsService(self.store, self.user_id).load()
        generated = system_payments_for_budget(year, budget, settings)
        payments = merge_system_payments(self.list(), year, generated)
        self._save(payments)
        logger.info(
            f"recurring_regenerated: user_id={self.user_id} year={year} "
            f"system={len(generated)}"
        )
        return payments

    def occurrences_in_cycle(self, cycle: _DateSpan):
        return occurrences_in_cycle(self.list(), cycle)

    def upcoming(self, from_date: Optional[date] = None) -> list[dict]:
        from_date = from_date or local_today()
        rows = []
        for payment in self.list():
            rows.append(
                {
                    **payment.model_dump(mode="json"),
                    "next_date": next_payment_date(payment, from_date),
                }
            )
        return rows


class TransactionService:
    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        registry: Optional[CategoryRegistry] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self._registry = registry

    @property
    def registry(self) -> CategoryRegistry:
        if self._registry is None:
            self._registry = SettingsService(self.store, self.user_id).registry()
        return self._registry

    def _path(self, transaction_id: str) -> str:
        return f"{transactions_path(self.user_id)}/{transaction_id}"

    def _document(self, txn: Transaction) -> dict:
        data = txn.to_document()
        data.pop("id", None)
        return data

    def _new_id(self) -> str:
        transaction_id = generate_id()
        while self.store.snapshot(self._path(transaction_id)).exists:
            transaction_id = generate_id()
        return transaction_id

    def add(self, data: TransactionIn) -> Transaction:
        self.registry.require(data.category_id, data.type)
        txn = Transaction(
            id=self._new_id(),
            user_id=self.user_id,
            type=data.type,
            date=data.date,
            description=data.description.strip(),
            amount=data.amount,
            category_id=data.category_id,
            tags=_clean_tags(data.tags),
        )
        self.store.set_document(self._path(txn.id), self._document(txn))
        logger.info(
            f"transaction_added: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} date={txn.date.isoformat()}"
        )
        return txn

    def get(self, transaction_id: str) -> Transaction:
        snap = self.store.snapshot(self._path(transaction_id))
        if not snap.exists:
            raise NotFound("Transaction not found")
        return Transaction.model_validate({**snap.to_dict(), "id": snap.id})

    def update(self, transaction_id: str, patch: TransactionPatch) -> Transaction:
        current = self.get(transaction_id)
        values = {
            "type": current.type,
            "date": current.date,
            "description": current.description,
            "amount": current.amount,
            "category_id": current.category_id,
            "tags": current.tags,
        }
        values.update(patch.model_dump(exclude_unset=True, exclude_none=True))
        data = TransactionIn.model_validate(values)
        self.registry.require(data.category_id, data.type)
        txn = Transaction(
            id=current.id,
            user_id=self.user_id,
            type=data.type,
            date=data.date,
            description=data.description.strip(),
            amount=data.amount,
            category_id=data.category_id,
            tags=_clean_tags(data.tags),
        )
        self.store.set_document(self._path(txn.id), self._document(txn))
        logger.info(f"transaction_updated: user_id={self.user_id} id={txn.id}")
        return txn

    def remove(self, transaction_id: str) -> None:
        if not self.store.delete_document(self._path(transaction_id)):
            raise NotFound("Transaction not found")
        logger.info(f"transaction_removed: user_id={self.user_id} id={transaction_id}")

    def query(
        self, start: date, end: date, order: str = "asc"
    ) -> list[Transaction]:
        if order not in ("asc", "desc"):
            raise ValueError("Order must be 'asc' or 'desc'")
        if start > end:
            raise ValueError("Start date must be before end date")
        snaps = self.store.query_collection(
            transactions_path(self.user_id),
            [Filter("date", ">=", start), Filter("date", "<=", end)],
            order_by="date",
            descending=order == "desc",
        )
        return [
            Transaction.model_validate({**snap.to_dict(), "id": snap.id})
            for snap in snaps
        ]

    def query_cycle(self, cycle: _DateSpan, order: str = "asc") -> list[Transaction]:
        return self.query(cycle.start, cycle.end, order)


def _summary_payload(summary: CycleSummary) -> dict:
    payload = asdict(summary)
    payload["net"] = summary.net
    payload["planned_net"] = summary.planned_net
    for detail, raw in zip(summary.expense_details, payload["expense_details"]):
        raw["remaining"] = detail.remaining
    return payload


def _cycle_payload(cycle: _DateSpan) -> dict:
    return {
        "start": cycle.start.isoformat(),
        "end": cycle.end.isoformat(),
        "label": format_cycle(cycle),
    }


class DashboardService:
    """Read-side views over one user's budget, ledger and recurring payments.

    Each call reads one snapshot of the inputs and runs the aggregation engine
    on it; nothing is cached between calls.
    """

    def __init__(self, store: DocumentStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self.settings_service = SettingsService(store, user_id)
        self.budgets = AnnualBudgetService(store, user_id)

    def _payday(self) -> PaydaySettings:
        return self.settings_service.payday_settings()

    def cycles(self, year: int) -> list[dict]:
        return [_cycle_payload(c) for c in get_cycles_for_year(year, self._payday())]

    def cycle(self, reference: Optional[date] = None) -> dict:
        payday = self._payday()
        cycle = get_payday_cycle(reference or local_today(), payday)
        return {
            **_cycle_payload(cycle),
            "previous": _cycle_payload(adjacent_cycle(cycle, payday, -1)),
            "next": _cycle_payload(adjacent_cycle(cycle, payday, 1)),
        }

    def _budgets_for(
        self, cycle: _DateSpan
    ) -> tuple[Optional[AnnualBudget], Optional[AnnualBudget]]:
        budget = self.budgets.get(cycle.start.year)
        following = None
        if cycle.end.year != cycle.start.year:
            following = self.budgets.get(cycle.end.year)
        return budget, following

    def _opening(
        self, cycle: PaydayCycle, payday: PaydaySettings, budget: AnnualBudget
    ) -> int:
        year, _ = payday_month(cycle, payday)
        if year != cycle.start.year:
            budget = self.budgets.get(year) or budget
        return opening_balance(cycle, budget, payday)

    def dashboard(self, reference: Optional[date] = None) -> dict:
        payday = self._payday()
        cycle = get_payday_cycle(reference or local_today(), payday)
        registry = self.settings_service.registry()
        budget, following = self._budgets_for(cycle)
        base = {"cycle": self.cycle(cycle.start), "year": cycle.start.year}
        if budget is None:
            return {**base, "setup_required": True}

        transactions = TransactionService(self.store, self.user_id, registry)
        txns = transactions.query_cycle(cycle)
        summary = summarize_cycle(
            cycle, budget, txns, registry, following_budget=following
        )
        opening = self._opening(cycle, payday, budget)
        return {
            **base,
            "setup_required": False,
            "summary": _summary_payload(summary),
            "opening_balance": opening,
            "closing_balance": opening + summary.net,
            "recent": [
                t.model_dump(mode="json") for t in reversed(txns[-10:])
            ],
        }

    def monthly(self, year: int, month: int) -> dict:
        budget = self.budgets.get(year)
        base = {"year": year, "month": month}
        if budget is None:
            return {**base, "setup_required": True}
        registry = self.settings_service.registry()
        period = month_period(year, month)
        txns = TransactionService(self.store, self.user_id, registry).query_cycle(
            period
        )
        summary = summarize_month(year, month, budget, txns, registry)
        return {**base, "setup_required": False, "summary": _summary_payload(summary)}

    def calendar(self, reference: Optional[date] = None) -> dict:
        payday = self._payday()
        cycle = get_payday_cycle(reference or local_today(), payday)
        budget = self.budgets.get(cycle.start.year)
        base = {"cycle": _cycle_payload(cycle)}
        if budget is None:
            return {**base, "setup_required": True}

        txns = TransactionService(self.store, self.user_id).query_cycle(cycle)
        opening = self._opening(cycle, payday, budget)
        recurring = RecurringPaymentService(self.store, self.user_id).list()
        return {
            **base,
            "setup_required": False,
            "opening_balance": opening,
            "balances": [
                {"day": p.day.isoformat(), "net": p.net, "balance": p.balance}
                for p in balance_series(cycle, opening, txns)
            ],
            "daily_totals": {
                day.isoformat(): asdict(totals)
                for day, totals in daily_totals(txns).items()
            },
            "recurring": {
                day.isoformat(): ids
                for day, ids in cycle_occurrences(recurring, cycle).items()
            },
        }

    def annual(self, year: int) -> dict:
        budget = self.budgets.get(year)
        if budget is None:
            return {"year": year, "setup_required": True}
        span = year_period(year)
        txns = TransactionService(self.store, self.user_id).query_cycle(span)
        series = annual_balance_series(year, budget, txns)
        return {
            "year": year,
            "setup_required": False,
            "starting_balance": budget.starting_balance,
            "months": [asdict(point) for point in series],
        }

    def insight_inputs(
        self, start: date, end: date, budget_total: Optional[int] = None
    ) -> tuple[list[Transaction], int, CategoryRegistry]:
        registry = self.settings_service.registry()
        txns = TransactionService(self.store, self.user_id, registry).query(start, end)
        if budget_total is None:
            budget = self.budgets.require(start.year)
            cycle = PaydayCycle(start=start, end=end)
            summary = summarize_cycle(cycle, budget, txns, registry)
            budget_total = summary.planned_expense
        return txns, budget_total, registry
