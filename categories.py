from typing import Iterable, Optional, Union

from models import TransactionType
from schemas import Category, ExpenseCategory, IncomeCategory, UserSettings


DEFAULT_INCOME_CATEGORIES = [
    IncomeCategory(id="cat_salary", name="Salary"),
    IncomeCategory(id="cat_bonus", name="Bonus"),
]

DEFAULT_EXPENSE_CATEGORIES = [
    ExpenseCategory(id="cat_food", name="Food"),
    ExpenseCategory(id="cat_housing", name="Housing"),
    ExpenseCategory(id="cat_utilities", name="Utilities"),
    ExpenseCategory(id="cat_transport", name="Transport"),
    ExpenseCategory(id="cat_comm", name="Communication"),
    ExpenseCategory(id="cat_ent", name="Social & entertainment"),
    ExpenseCategory(id="cat_medical", name="Medical"),
    ExpenseCategory(id="cat_other", name="Other"),
]


class UnknownCategory(ValueError):
    pass


class CategoryKindMismatch(ValueError):
    pass


class CategoryRegistry:
    """Ordered, read-only view over a user's income and expense categories."""

    def __init__(
        self,
        income: Iterable[IncomeCategory] = (),
        expense: Iterable[ExpenseCategory] = (),
    ) -> None:
        self._income = list(income)
        self._expense = list(expense)
        self._by_id: dict[str, Category] = {
            c.id: c for c in [*self._income, *self._expense]
        }

    @classmethod
    def from_settings(cls, settings: UserSettings) -> "CategoryRegistry":
        return cls(settings.income_categories, settings.expense_categories)

    def __contains__(self, category_id: str) -> bool:
        return category_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def all(self) -> list[Category]:
        return [*self._income, *self._expense]

    def income(self) -> list[IncomeCategory]:
        return list(self._income)

    def expense(self) -> list[ExpenseCategory]:
        return list(self._expense)

    def of_kind(
        self, kind: TransactionType
    ) -> list[Union[IncomeCategory, ExpenseCategory]]:
        return self.income() if kind == TransactionType.income else self.expense()

    def get(self, category_id: str) -> Optional[Category]:
        return self._by_id.get(category_id)

    def name_for(self, category_id: str) -> str:
        category = self._by_id.get(category_id)
        return category.name if category else category_id

    def require(self, category_id: str, kind: TransactionType) -> Category:
        category = self._by_id.get(category_id)
        if category is None:
            raise UnknownCategory("Category not found")
        if category.kind != TransactionType(kind).value:
            raise CategoryKindMismatch("Category type mismatch")
        return category
