import datetime as dt
import random
import string
from datetime import date
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import Rollover, TransactionType


Money = Annotated[int, Field(ge=0)]


def _random_suffix(length: int = 7) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def generate_category_id() -> str:
    return f"cat_{_random_suffix()}"


def generate_id() -> str:
    return f"id_{_random_suffix()}"


class StoredModel(BaseModel):
    """Base for shapes persisted in the document store (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class IncomeCategory(StoredModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    kind: Literal["income"] = "income"


class ExpenseCategory(StoredModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    kind: Literal["expense"] = "expense"


Category = Annotated[
    Union[IncomeCategory, ExpenseCategory], Field(discriminator="kind")
]


class PaydaySettings(StoredModel):
    payday: int = Field(..., ge=1, le=31)
    rollover: Rollover = Rollover.before


class UserSettings(StoredModel):
    initial_balance: Money = 0
    income_categories: list[IncomeCategory] = Field(default_factory=list)
    expense_categories: list[ExpenseCategory] = Field(default_factory=list)
    payday_settings: Optional[PaydaySettings] = None
    retired_category_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_category_ids(self) -> "UserSettings":
        ids = [c.id for c in self.income_categories + self.expense_categories]
        if len(ids) != len(set(ids)):
            raise ValueError("Category ids must be unique")
        return self


class SettingsPatch(BaseModel):
    initial_balance: Optional[Money] = None
    payday_settings: Optional[PaydaySettings] = None


class AnnualBudget(StoredModel):
    starting_balance: Money = 0
    planned_balance: list[Money] = Field(default_factory=lambda: [0] * 12)
    normal_month_budget: dict[str, Money] = Field(default_factory=dict)
    bonus_month_budget: dict[str, Money] = Field(default_factory=dict)
    monthly_income: Money = 0
    summer_bonus: Money = 0
    winter_bonus: Money = 0
    summer_bonus_months: list[Annotated[int, Field(ge=1, le=12)]] = Field(
        default_factory=lambda: [7]
    )
    winter_bonus_months: list[Annotated[int, Field(ge=1, le=12)]] = Field(
        default_factory=lambda: [12]
    )
    summer_bonus_payday: int = Field(10, ge=1, le=31)
    winter_bonus_payday: int = Field(10, ge=1, le=31)

    @field_validator("planned_balance")
    @classmethod
    def _twelve_months(cls, value: list[int]) -> list[int]:
        if len(value) != 12:
            raise ValueError("plannedBalance needs exactly 12 monthly entries")
        return value

    @field_validator("summer_bonus_months", "winter_bonus_months")
    @classmethod
    def _sorted_months(cls, value: list[int]) -> list[int]:
        return sorted(set(value))


class TransactionIn(BaseModel):
    type: TransactionType
    date: date
    description: str = Field("", max_length=200)
    amount: int = Field(..., gt=0)
    category_id: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)


class TransactionPatch(BaseModel):
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(None, max_length=200)
    amount: Optional[int] = Field(None, gt=0)
    category_id: Optional[str] = Field(None, min_length=1)
    tags: Optional[list[str]] = None


class Transaction(StoredModel):
    id: str
    user_id: str
    type: TransactionType
    date: date
    description: str = ""
    amount: int = Field(..., gt=0)
    category_id: str = Field(..., alias="category")
    tags: list[str] = Field(default_factory=list)

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type == TransactionType.income else -self.amount


class RecurringPayment(StoredModel):
    id: str = Field(default_factory=generate_id)
    title: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    payment_day: int = Field(..., ge=1, le=31)
    category_id: str = Field(..., min_length=1)
    type: TransactionType
    is_system_generated: bool = False
    year: Optional[int] = None
    months: list[Annotated[int, Field(ge=1, le=12)]] = Field(default_factory=list)


class RecurringPaymentIn(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=120)
    amount: int = Field(..., gt=0)
    payment_day: int = Field(..., ge=1, le=31)
    category_id: str = Field(..., min_length=1)
    type: TransactionType
    months: list[Annotated[int, Field(ge=1, le=12)]] = Field(default_factory=list)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: TransactionType


class CategoryRename(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOrder(BaseModel):
    kind: TransactionType
    ids: list[str]


class SignInIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    password: Optional[str] = Field(None, max_length=256)


class SignUpIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., max_length=256)


class SuggestCategoryIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)


class InsightsIn(BaseModel):
    start: dt.date
    end: dt.date
    budget: Optional[Money] = None


class SpendingInsights(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    summary: str = Field(..., min_length=1)
    overruns: list[str] = Field(default_factory=list, alias="budgetOverruns")
    recommendations: list[str] = Field(default_factory=list)
