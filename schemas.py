import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    model_validator,
)

from models import CategoryType
from money import parse_amount, present

AmountIn = Annotated[Decimal, BeforeValidator(parse_amount)]
Amount = Annotated[
    Decimal,
    PlainSerializer(
        lambda v: float(present(v)), return_type=float, when_used="json"
    ),
]
Percent = Amount


class InputModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OutputModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RegisterIn(InputModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=72)


class LoginIn(InputModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=72)


class UserOut(OutputModel):
    id: int
    name: str
    email: str


class CategoryIn(InputModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: CategoryType = CategoryType.expense


class CategoryOut(OutputModel):
    id: int
    user_id: int
    name: str
    type: CategoryType
    created_at: datetime
    updated_at: datetime


class PaymentMethodIn(InputModel):
    name: str = Field(..., min_length=1, max_length=255)


class PaymentMethodOut(OutputModel):
    id: int
    user_id: int
    name: str
    created_at: datetime
    updated_at: datetime


class ExpenseIn(InputModel):
    description: str = Field(..., min_length=1, max_length=255)
    amount: AmountIn
    date: dt.date
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None
    notes: Optional[str] = None


class ExpenseOut(OutputModel):
    id: int
    user_id: int
    description: str
    amount: Amount
    date: dt.date
    category_id: Optional[int]
    payment_method_id: Optional[int]
    notes: Optional[str]
    category_name: Optional[str]
    payment_method_name: Optional[str]
    created_at: datetime
    updated_at: datetime


class IncomeIn(InputModel):
    description: str = Field(..., min_length=1, max_length=255)
    amount: AmountIn
    date: dt.date
    category_id: Optional[int] = None
    notes: Optional[str] = None


class IncomeOut(OutputModel):
    id: int
    user_id: int
    description: str
    amount: Amount
    date: dt.date
    category_id: Optional[int]
    notes: Optional[str]
    category_name: Optional[str]
    created_at: datetime
    updated_at: datetime


class BudgetIn(InputModel):
    category_id: int
    amount: AmountIn
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class BudgetUpdateIn(InputModel):
    category_id: int
    amount: AmountIn


class BudgetOut(OutputModel):
    id: int
    user_id: int
    category_id: int
    category_name: Optional[str]
    amount: Amount
    month: int
    year: int
    created_at: datetime
    updated_at: datetime


class BudgetProgressOut(BudgetOut):
    spent: Amount
    remaining: Amount
    percentage: Percent
    is_over_budget: bool


class GoalIn(InputModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    target_amount: AmountIn
    current_amount: AmountIn = Decimal("0")
    start_date: date
    target_date: date
    category_id: Optional[int] = None
    is_completed: bool = False

    @model_validator(mode="after")
    def _check_dates(self) -> "GoalIn":
        if self.target_date <= self.start_date:
            raise ValueError("Target date must be after start date")
        return self


class GoalOut(OutputModel):
    id: int
    user_id: int
    title: str
    description: Optional[str]
    target_amount: Amount
    current_amount: Amount
    start_date: date
    target_date: date
    category_id: Optional[int]
    category_name: Optional[str]
    is_completed: bool
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def remaining_amount(self) -> Amount:
        return max(Decimal("0"), self.target_amount - self.current_amount)

    @computed_field
    @property
    def progress(self) -> Percent:
        if self.target_amount <= 0:
            return Decimal("100")
        return min(Decimal("100"), self.current_amount / self.target_amount * 100)

    @computed_field
    @property
    def days_remaining(self) -> int:
        return (self.target_date - date.today()).days

    @computed_field
    @property
    def is_overdue(self) -> bool:
        return not self.is_completed and self.days_remaining < 0

    @computed_field
    @property
    def completed_on(self) -> Optional[date]:
        return self.updated_at.date() if self.is_completed else None


class SuccessOut(BaseModel):
    success: bool = True


class DashboardStats(BaseModel):
    total_expenses: Amount
    monthly_expenses: Amount
    total_income: Amount
    monthly_income: Amount
    categories: int
    payment_methods: int
    savings: Amount
    monthly_savings: Amount


class CategoryTotal(BaseModel):
    name: str
    value: Amount


class TrendPoint(BaseModel):
    year: int
    month: int
    expenses: Amount
    income: Amount


class Prediction(BaseModel):
    name: str
    average_amount: Amount
    frequency: int


class DashboardOut(BaseModel):
    month: int
    year: int
    stats: DashboardStats
    expenses_by_category: list[CategoryTotal]
    recent_expenses: list[ExpenseOut]
    monthly_trend: list[TrendPoint]
    predictions: list[Prediction]
