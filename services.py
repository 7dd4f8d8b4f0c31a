from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import extract, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from errors import ConflictError, NotFoundError, StoreError, ValidationError
from models import (
    Budget,
    Category,
    CategoryType,
    Expense,
    FinancialGoal,
    Income,
    PaymentMethod,
)
from periods import Period, add_months, resolve_month, trailing_months
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    ExpenseIn,
    GoalIn,
    IncomeIn,
    PaymentMethodIn,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass
class RecordFilters:
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    category_id: Optional[int] = None
    payment_method_id: Optional[int] = None


def _owned_category(
    session: Session,
    user_id: int,
    category_id: Optional[int],
    expected_type: Optional[CategoryType] = None,
) -> Optional[Category]:
    if category_id is None:
        return None
    category = session.get(Category, category_id)
    if not category or category.user_id != user_id:
        raise NotFoundError("Category not found")
    if expected_type is not None and category.type != expected_type:
        raise ValidationError("Category type mismatch")
    return category


def _owned_payment_method(
    session: Session, user_id: int, payment_method_id: Optional[int]
) -> Optional[PaymentMethod]:
    if payment_method_id is None:
        return None
    method = session.get(PaymentMethod, payment_method_id)
    if not method or method.user_id != user_id:
        raise NotFoundError("Payment method not found")
    return method


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, type: Optional[CategoryType] = CategoryType.expense) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.id == category_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type: CategoryType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.name == name,
            Category.type == type,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _in_use(self, category_id: int) -> bool:
        for model in (Expense, Income, Budget, FinancialGoal):
            stmt = select(model.id).where(
                model.user_id == self.user_id, model.category_id == category_id
            )
            if self.session.scalar(stmt.limit(1)) is not None:
                return True
        return False

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        if self._name_taken(name, data.type):
            raise ConflictError("Category already exists")
        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category already exists") from exc
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        if self._name_taken(name, data.type, exclude_id=category.id):
            raise ConflictError("Category already exists")
        if data.type != category.type and self._in_use(category.id):
            raise ValidationError("Category type cannot change while records use it")
        category.name = name
        category.type = data.type
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category already exists") from exc
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        # Budgets go with the category; expenses, income and goals keep
        # their rows with category_id set to NULL by the database.
        self.session.delete(category)
        self.session.commit()
        self.session.expire_all()
        logger.info(f"category_deleted: user_id={self.user_id} category_id={category_id}")


class PaymentMethodService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .order_by(PaymentMethod.name, PaymentMethod.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, payment_method_id: int) -> PaymentMethod:
        method = self.session.scalar(
            select(PaymentMethod).where(
                PaymentMethod.user_id == self.user_id,
                PaymentMethod.id == payment_method_id,
            )
        )
        if not method:
            raise NotFoundError("Payment method not found")
        return method

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(PaymentMethod.id).where(
            PaymentMethod.user_id == self.user_id, PaymentMethod.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentMethod.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: PaymentMethodIn) -> PaymentMethod:
        name = data.name.strip()
        if not name:
            raise ValidationError("Payment method name cannot be empty")
        if self._name_taken(name):
            raise ConflictError("Payment method already exists")
        method = PaymentMethod(user_id=self.user_id, name=name)
        self.session.add(method)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Payment method already exists") from exc
        self.session.refresh(method)
        return method

    def update(self, payment_method_id: int, data: PaymentMethodIn) -> PaymentMethod:
        method = self.get(payment_method_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Payment method name cannot be empty")
        if self._name_taken(name, exclude_id=method.id):
            raise ConflictError("Payment method already exists")
        method.name = name
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Payment method already exists") from exc
        self.session.refresh(method)
        return method

    def delete(self, payment_method_id: int) -> None:
        method = self.get(payment_method_id)
        self.session.delete(method)
        self.session.commit()
        self.session.expire_all()


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base_query(self):
        return (
            select(Expense)
            .options(joinedload(Expense.category), joinedload(Expense.payment_method))
            .where(Expense.user_id == self.user_id)
        )

    def list(self, filters: Optional[RecordFilters] = None) -> list[Expense]:
        filters = filters or RecordFilters()
        stmt = self._base_query().order_by(Expense.date.desc(), Expense.id.desc())
        if filters.from_date:
            stmt = stmt.where(Expense.date >= filters.from_date)
        if filters.to_date:
            stmt = stmt.where(Expense.date <= filters.to_date)
        if filters.category_id:
            stmt = stmt.where(Expense.category_id == filters.category_id)
        if filters.payment_method_id:
            stmt = stmt.where(Expense.payment_method_id == filters.payment_method_id)
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 5) -> list[Expense]:
        stmt = (
            self._base_query()
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def get(self, expense_id: int) -> Expense:
        expense = self.session.scalar(self._base_query().where(Expense.id == expense_id))
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def _check_references(self, data: ExpenseIn) -> None:
        _owned_category(self.session, self.user_id, data.category_id, CategoryType.expense)
        _owned_payment_method(self.session, self.user_id, data.payment_method_id)

    def create(self, data: ExpenseIn) -> Expense:
        self._check_references(data)
        expense = Expense(
            user_id=self.user_id,
            description=data.description.strip(),
            amount=data.amount,
            date=data.date,
            category_id=data.category_id,
            payment_method_id=data.payment_method_id,
            notes=data.notes or None,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.expire_all()
        return self.get(expense.id)

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        self._check_references(data)
        expense.description = data.description.strip()
        expense.amount = data.amount
        expense.date = data.date
        expense.category_id = data.category_id
        expense.payment_method_id = data.payment_method_id
        expense.notes = data.notes or None
        self.session.commit()
        self.session.expire_all()
        return self.get(expense_id)

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()


class IncomeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base_query(self):
        return (
            select(Income)
            .options(joinedload(Income.category))
            .where(Income.user_id == self.user_id)
        )

    def list(self, filters: Optional[RecordFilters] = None) -> list[Income]:
        filters = filters or RecordFilters()
        stmt = self._base_query().order_by(Income.date.desc(), Income.id.desc())
        if filters.from_date:
            stmt = stmt.where(Income.date >= filters.from_date)
        if filters.to_date:
            stmt = stmt.where(Income.date <= filters.to_date)
        if filters.category_id:
            stmt = stmt.where(Income.category_id == filters.category_id)
        return self.session.scalars(stmt).all()

    def get(self, income_id: int) -> Income:
        income = self.session.scalar(self._base_query().where(Income.id == income_id))
        if not income:
            raise NotFoundError("Income not found")
        return income

    def create(self, data: IncomeIn) -> Income:
        _owned_category(self.session, self.user_id, data.category_id, CategoryType.income)
        income = Income(
            user_id=self.user_id,
            description=data.description.strip(),
            amount=data.amount,
            date=data.date,
            category_id=data.category_id,
            notes=data.notes or None,
        )
        self.session.add(income)
        self.session.commit()
        self.session.expire_all()
        return self.get(income.id)

    def update(self, income_id: int, data: IncomeIn) -> Income:
        income = self.get(income_id)
        _owned_category(self.session, self.user_id, data.category_id, CategoryType.income)
        income.description = data.description.strip()
        income.amount = data.amount
        income.date = data.date
        income.category_id = data.category_id
        income.notes = data.notes or None
        self.session.commit()
        self.session.expire_all()
        return self.get(income_id)

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.delete(income)
        self.session.commit()


class BudgetService:
    UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base_query(self):
        return (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
        )

    def list(self, month: Optional[int] = None, year: Optional[int] = None) -> list[Budget]:
        stmt = self._base_query().join(Category, Category.id == Budget.category_id)
        if month:
            stmt = stmt.where(Budget.month == month)
        if year:
            stmt = stmt.where(Budget.year == year)
        stmt = stmt.order_by(Category.name, Budget.year, Budget.month, Budget.id)
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(self._base_query().where(Budget.id == budget_id))
        if not budget:
            raise NotFoundError("Budget not found")
        return budget

    def upsert(self, data: BudgetIn) -> Budget:
        _owned_category(self.session, self.user_id, data.category_id, CategoryType.expense)
        dialect = self.session.get_bind().dialect.name
        insert = self.UPSERT_DIALECTS.get(dialect)
        if insert is None:
            return self._upsert_by_lookup(data)

        now = datetime.utcnow()
        stmt = insert(Budget).values(
            user_id=self.user_id,
            category_id=data.category_id,
            amount=data.amount,
            month=data.month,
            year=data.year,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "category_id", "month", "year"],
            set_={"amount": stmt.excluded.amount, "updated_at": now},
        ).returning(Budget.id)
        budget_id = self.session.execute(stmt).scalar_one()
        self.session.commit()
        self.session.expire_all()
        return self.get(budget_id)

    def _upsert_by_lookup(self, data: BudgetIn) -> Budget:
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.month == data.month,
                Budget.year == data.year,
            )
        )
        if existing:
            existing.amount = data.amount
            self.session.commit()
            self.session.expire_all()
            return self.get(existing.id)

        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount=data.amount,
            month=data.month,
            year=data.year,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.expire_all()
        return self.get(budget.id)

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        _owned_category(self.session, self.user_id, data.category_id, CategoryType.expense)
        budget.category_id = data.category_id
        budget.amount = data.amount
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("A budget for this category and month already exists") from exc
        self.session.expire_all()
        return self.get(budget_id)

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def spent_by_category_for_month(self, year: int, month: int) -> dict[int, Decimal]:
        period = resolve_month(month, year)
        stmt = (
            select(
                Expense.category_id,
                func.coalesce(func.sum(Expense.amount), 0).label("spent"),
            )
            .where(
                Expense.user_id == self.user_id,
                Expense.category_id.isnot(None),
                Expense.date.between(period.start, period.end),
            )
            .group_by(Expense.category_id)
        )
        return {row.category_id: row.spent for row in self.session.execute(stmt)}

    def progress_for_month(self, year: int, month: int) -> list[dict[str, object]]:
        spent_map = self.spent_by_category_for_month(year, month)
        out: list[dict[str, object]] = []
        for budget in self.list(month=month, year=year):
            spent = spent_map.get(budget.category_id, ZERO)
            if budget.amount > 0:
                percentage = spent / budget.amount * HUNDRED
            else:
                percentage = HUNDRED if spent > 0 else ZERO
            out.append(
                {
                    "budget": budget,
                    "spent": spent,
                    "remaining": budget.amount - spent,
                    "percentage": min(percentage, HUNDRED),
                    "is_over_budget": spent > budget.amount,
                }
            )
        return out


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base_query(self):
        return (
            select(FinancialGoal)
            .options(joinedload(FinancialGoal.category))
            .where(FinancialGoal.user_id == self.user_id)
        )

    def list(self, is_completed: Optional[bool] = None) -> list[FinancialGoal]:
        stmt = self._base_query().order_by(
            FinancialGoal.target_date.asc(), FinancialGoal.id.asc()
        )
        if is_completed is not None:
            stmt = stmt.where(FinancialGoal.is_completed.is_(is_completed))
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> FinancialGoal:
        goal = self.session.scalar(self._base_query().where(FinancialGoal.id == goal_id))
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> FinancialGoal:
        _owned_category(self.session, self.user_id, data.category_id)
        goal = FinancialGoal(
            user_id=self.user_id,
            title=data.title.strip(),
            description=data.description,
            target_amount=data.target_amount,
            current_amount=data.current_amount,
            start_date=data.start_date,
            target_date=data.target_date,
            category_id=data.category_id,
            is_completed=data.is_completed,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.expire_all()
        return self.get(goal.id)

    def update(self, goal_id: int, data: GoalIn) -> FinancialGoal:
        goal = self.get(goal_id)
        _owned_category(self.session, self.user_id, data.category_id)
        goal.title = data.title.strip()
        goal.description = data.description
        goal.target_amount = data.target_amount
        goal.current_amount = data.current_amount
        goal.start_date = data.start_date
        goal.target_date = data.target_date
        goal.category_id = data.category_id
        goal.is_completed = data.is_completed
        self.session.commit()
        self.session.expire_all()
        return self.get(goal_id)

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()


class DashboardService:
    """Read-only aggregates over one user's expenses and income."""

    PREDICTION_MONTHS = 3
    PREDICTION_LIMIT = 5
    RECENT_LIMIT = 5

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _sum(self, model, start: Optional[date] = None, end: Optional[date] = None) -> Decimal:
        stmt = select(func.coalesce(func.sum(model.amount), 0)).where(
            model.user_id == self.user_id
        )
        if start is not None and end is not None:
            stmt = stmt.where(model.date.between(start, end))
        return self.session.execute(stmt).scalar_one() or ZERO

    def expenses_by_category(self, start: date, end: date) -> list[dict[str, object]]:
        total = func.sum(Expense.amount)
        stmt = (
            select(Category.name, total.label("value"))
            .join(Category, Category.id == Expense.category_id)
            .where(
                Expense.user_id == self.user_id,
                Expense.date.between(start, end),
            )
            .group_by(Category.name)
            .order_by(total.desc(), Category.name)
        )
        return [
            {"name": row.name, "value": row.value or ZERO}
            for row in self.session.execute(stmt)
        ]

    def _monthly_totals(self, model, start: date, end: date) -> dict[tuple[int, int], Decimal]:
        year = extract("year", model.date).label("year")
        month = extract("month", model.date).label("month")
        stmt = (
            select(year, month, func.sum(model.amount).label("total"))
            .where(model.user_id == self.user_id, model.date.between(start, end))
            .group_by(year, month)
        )
        return {
            (int(row.year), int(row.month)): row.total or ZERO
            for row in self.session.execute(stmt)
        }

    def monthly_trend(
        self, months: int, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        start, end = trailing_months(months, today=today)
        expenses = self._monthly_totals(Expense, start, end)
        income = self._monthly_totals(Income, start, end)

        # Only months with activity in either table appear in the series.
        out: list[dict[str, object]] = []
        for key in sorted(set(expenses) | set(income)):
            out.append(
                {
                    "year": key[0],
                    "month": key[1],
                    "expenses": expenses.get(key, ZERO),
                    "income": income.get(key, ZERO),
                }
            )
        return out

    def predictions(self, *, today: Optional[date] = None) -> list[dict[str, object]]:
        today = today or date.today()
        since = add_months(today, -self.PREDICTION_MONTHS)
        stmt = (
            select(
                Category.name,
                func.sum(Expense.amount).label("total"),
                func.count(Expense.id).label("frequency"),
            )
            .join(Category, Category.id == Expense.category_id)
            .where(Expense.user_id == self.user_id, Expense.date >= since)
            .group_by(Category.name)
        )
        rows = [
            {
                "name": row.name,
                "average_amount": (row.total or ZERO) / row.frequency,
                "frequency": int(row.frequency),
            }
            for row in self.session.execute(stmt)
            if row.frequency
        ]
        rows.sort(key=lambda r: (-r["average_amount"], r["name"]))
        return rows[: self.PREDICTION_LIMIT]

    def summary(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        time_range: int = 6,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        today = today or date.today()
        try:
            period = resolve_month(month, year, today=today)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if time_range < 1:
            raise ValidationError("Trend window must be at least one month")

        # The dashboard is all or nothing: a failed query fails the whole payload.
        try:
            return self._aggregate(period, time_range, today)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreError() from exc

    def _aggregate(self, period: Period, time_range: int, today: date) -> dict[str, object]:
        total_expenses = self._sum(Expense)
        total_income = self._sum(Income)
        monthly_expenses = self._sum(Expense, period.start, period.end)
        monthly_income = self._sum(Income, period.start, period.end)

        categories = self.session.execute(
            select(func.count(Category.id)).where(
                Category.user_id == self.user_id,
                Category.type == CategoryType.expense,
            )
        ).scalar_one()
        payment_methods = self.session.execute(
            select(func.count(PaymentMethod.id)).where(
                PaymentMethod.user_id == self.user_id
            )
        ).scalar_one()

        return {
            "month": period.month,
            "year": period.year,
            "stats": {
                "total_expenses": total_expenses,
                "monthly_expenses": monthly_expenses,
                "total_income": total_income,
                "monthly_income": monthly_income,
                "categories": int(categories or 0),
                "payment_methods": int(payment_methods or 0),
                "savings": total_income - total_expenses,
                "monthly_savings": monthly_income - monthly_expenses,
            },
            "expenses_by_category": self.expenses_by_category(period.start, period.end),
            "recent_expenses": ExpenseService(self.session, self.user_id).recent(
                self.RECENT_LIMIT
            ),
            "monthly_trend": self.monthly_trend(time_range, today=today),
            "predictions": self.predictions(today=today),
        }
