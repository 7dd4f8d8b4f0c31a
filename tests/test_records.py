from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaError
from sqlalchemy import func, select

from errors import ConflictError, NotFoundError, ValidationError
from models import Budget, Category, CategoryType
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    ExpenseIn,
    GoalIn,
    GoalOut,
    IncomeIn,
    PaymentMethodIn,
)
from services import (
    BudgetService,
    CategoryService,
    ExpenseService,
    GoalService,
    IncomeService,
    PaymentMethodService,
    RecordFilters,
)


def _expense(description: str, amount: str, day: date, **kwargs) -> ExpenseIn:
    return ExpenseIn(description=description, amount=amount, date=day, **kwargs)


def test_records_are_isolated_per_user(session, make_user) -> None:
    alice = make_user("alice@x.com")
    bob = make_user("bob@x.com")
    food = CategoryService(session, alice.id).create(CategoryIn(name="Food"))

    created = ExpenseService(session, alice.id).create(
        _expense("Lunch", "12.50", date(2025, 3, 1), category_id=food.id)
    )

    bob_expenses = ExpenseService(session, bob.id)
    assert bob_expenses.list() == []
    with pytest.raises(NotFoundError):
        bob_expenses.get(created.id)
    with pytest.raises(NotFoundError):
        bob_expenses.delete(created.id)
    with pytest.raises(NotFoundError):
        CategoryService(session, bob.id).get(food.id)

    # Bob cannot file his own expense against Alice's category.
    with pytest.raises(NotFoundError):
        bob_expenses.create(
            _expense("Sneaky", "1", date(2025, 3, 2), category_id=food.id)
        )

    assert [e.id for e in ExpenseService(session, alice.id).list()] == [created.id]


def test_duplicate_category_conflicts_without_insert(session, make_user) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    categories.create(CategoryIn(name="Travel"))

    with pytest.raises(ConflictError):
        categories.create(CategoryIn(name="Travel"))
    # Same name with the other type is a different category.
    categories.create(CategoryIn(name="Travel", type=CategoryType.income))

    count = session.scalar(
        select(func.count()).select_from(Category).where(Category.user_id == user.id)
    )
    assert count == 2


def test_duplicate_payment_method_conflicts(session, make_user) -> None:
    user = make_user()
    methods = PaymentMethodService(session, user.id)
    card = methods.create(PaymentMethodIn(name="Card"))
    cash = methods.create(PaymentMethodIn(name="Cash"))

    with pytest.raises(ConflictError):
        methods.create(PaymentMethodIn(name="Card"))
    with pytest.raises(ConflictError):
        methods.update(cash.id, PaymentMethodIn(name="Card"))

    assert methods.update(card.id, PaymentMethodIn(name="Card")).name == "Card"
    assert [m.name for m in methods.list_all()] == ["Card", "Cash"]


def test_category_type_is_locked_once_records_use_it(session, make_user) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Food"))
    spare = categories.create(CategoryIn(name="Spare"))
    ExpenseService(session, user.id).create(
        _expense("Lunch", "10", date(2025, 1, 2), category_id=food.id)
    )
    BudgetService(session, user.id).upsert(
        BudgetIn(category_id=food.id, amount="100", month=1, year=2025)
    )

    with pytest.raises(ValidationError):
        categories.update(food.id, CategoryIn(name="Food", type=CategoryType.income))

    assert categories.get(food.id).type == CategoryType.expense
    assert categories.update(food.id, CategoryIn(name="Groceries")).name == "Groceries"
    retyped = categories.update(spare.id, CategoryIn(name="Spare", type=CategoryType.income))
    assert retyped.type == CategoryType.income


def test_payment_method_delete_detaches_expenses(session, make_user) -> None:
    user = make_user()
    methods = PaymentMethodService(session, user.id)
    card = methods.create(PaymentMethodIn(name="Card"))
    expenses = ExpenseService(session, user.id)
    expense = expenses.create(
        _expense("Taxi", "18", date(2025, 2, 1), payment_method_id=card.id)
    )
    assert expense.payment_method_name == "Card"

    methods.delete(card.id)

    kept = expenses.get(expense.id)
    assert kept.payment_method_id is None
    assert kept.payment_method_name is None
    assert kept.amount == Decimal("18")
    with pytest.raises(NotFoundError):
        methods.get(card.id)


def test_category_type_must_match_record_kind(session, make_user) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    food = categories.create(CategoryIn(name="Food"))

    with pytest.raises(ValidationError):
        ExpenseService(session, user.id).create(
            _expense("Lunch", "10", date(2025, 1, 1), category_id=salary.id)
        )
    with pytest.raises(ValidationError):
        IncomeService(session, user.id).create(
            IncomeIn(description="Pay", amount="10", date=date(2025, 1, 1), category_id=food.id)
        )
    with pytest.raises(ValidationError):
        BudgetService(session, user.id).upsert(
            BudgetIn(category_id=salary.id, amount="100", month=1, year=2025)
        )


def test_expense_filters_and_ordering(session, make_user) -> None:
    user = make_user()
    food = CategoryService(session, user.id).create(CategoryIn(name="Food"))
    card = PaymentMethodService(session, user.id).create(PaymentMethodIn(name="Card"))
    expenses = ExpenseService(session, user.id)

    a = expenses.create(_expense("A", "1", date(2025, 1, 5), category_id=food.id))
    b = expenses.create(
        _expense("B", "2", date(2025, 2, 5), payment_method_id=card.id)
    )
    c = expenses.create(_expense("C", "3", date(2025, 3, 5), category_id=food.id))

    assert [e.id for e in expenses.list()] == [c.id, b.id, a.id]
    assert [e.id for e in expenses.list(RecordFilters(category_id=food.id))] == [c.id, a.id]
    assert [
        e.id for e in expenses.list(RecordFilters(payment_method_id=card.id))
    ] == [b.id]
    window = RecordFilters(from_date=date(2025, 2, 1), to_date=date(2025, 3, 5))
    assert [e.id for e in expenses.list(window)] == [c.id, b.id]
    assert c.category_name == "Food"
    assert b.payment_method_name == "Card"
    assert b.category_name is None


def test_update_expense_replaces_fields(session, make_user) -> None:
    user = make_user()
    expenses = ExpenseService(session, user.id)
    created = expenses.create(_expense("Taxi", "20", date(2025, 4, 1), notes="late"))

    updated = expenses.update(created.id, _expense("Bus", "2.75", date(2025, 4, 2)))

    assert updated.description == "Bus"
    assert updated.amount == Decimal("2.75")
    assert updated.date == date(2025, 4, 2)
    assert updated.notes is None


def test_budget_upsert_keeps_one_row(session, make_user) -> None:
    user = make_user()
    utilities = CategoryService(session, user.id).create(CategoryIn(name="Utilities"))
    budgets = BudgetService(session, user.id)

    first = budgets.upsert(
        BudgetIn(category_id=utilities.id, amount="200", month=3, year=2025)
    )
    second = budgets.upsert(
        BudgetIn(category_id=utilities.id, amount="250", month=3, year=2025)
    )

    assert second.id == first.id
    assert second.amount == Decimal("250")
    rows = session.scalar(
        select(func.count()).select_from(Budget).where(Budget.user_id == user.id)
    )
    assert rows == 1
    assert [b.id for b in budgets.list(month=3, year=2025)] == [first.id]
    assert budgets.list(month=4, year=2025) == []


def test_budget_lookup_fallback_matches_upsert(session, make_user) -> None:
    user = make_user()
    food = CategoryService(session, user.id).create(CategoryIn(name="Food"))
    budgets = BudgetService(session, user.id)

    first = budgets._upsert_by_lookup(
        BudgetIn(category_id=food.id, amount="80", month=7, year=2025)
    )
    second = budgets._upsert_by_lookup(
        BudgetIn(category_id=food.id, amount="95.5", month=7, year=2025)
    )

    assert second.id == first.id
    assert second.amount == Decimal("95.5")
    assert len(budgets.list(month=7, year=2025)) == 1


def test_budget_update_conflicts_with_existing_month(session, make_user) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Food"))
    rent = categories.create(CategoryIn(name="Rent"))
    budgets = BudgetService(session, user.id)
    budgets.upsert(BudgetIn(category_id=food.id, amount="100", month=5, year=2025))
    rent_budget = budgets.upsert(
        BudgetIn(category_id=rent.id, amount="900", month=5, year=2025)
    )

    with pytest.raises(ConflictError):
        budgets.update(rent_budget.id, BudgetUpdateIn(category_id=food.id, amount="50"))
    assert budgets.get(rent_budget.id).category_id == rent.id


def test_budget_progress_reports_spent_and_overrun(session, make_user) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Food"))
    rent = categories.create(CategoryIn(name="Rent"))
    budgets = BudgetService(session, user.id)
    budgets.upsert(BudgetIn(category_id=food.id, amount="100", month=6, year=2025))
    budgets.upsert(BudgetIn(category_id=rent.id, amount="1000", month=6, year=2025))
    expenses = ExpenseService(session, user.id)
    expenses.create(_expense("Groceries", "80", date(2025, 6, 3), category_id=food.id))
    expenses.create(_expense("Dinner", "45", date(2025, 6, 20), category_id=food.id))
    expenses.create(_expense("Rent", "250", date(2025, 6, 1), category_id=rent.id))
    expenses.create(_expense("May food", "999", date(2025, 5, 31), category_id=food.id))

    progress = {p["budget"].category_name: p for p in budgets.progress_for_month(2025, 6)}

    assert progress["Food"]["spent"] == Decimal("125")
    assert progress["Food"]["remaining"] == Decimal("-25")
    assert progress["Food"]["percentage"] == Decimal("100")
    assert progress["Food"]["is_over_budget"] is True
    assert progress["Rent"]["spent"] == Decimal("250")
    assert progress["Rent"]["percentage"] == Decimal("25")
    assert progress["Rent"]["is_over_budget"] is False


def test_category_delete_cascades_budgets_and_detaches_records(
    session, make_user
) -> None:
    user = make_user()
    categories = CategoryService(session, user.id)
    food = categories.create(CategoryIn(name="Food"))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))

    expense = ExpenseService(session, user.id).create(
        _expense("Lunch", "10", date(2025, 1, 2), category_id=food.id)
    )
    income = IncomeService(session, user.id).create(
        IncomeIn(description="Pay", amount="1000", date=date(2025, 1, 1), category_id=salary.id)
    )
    goal = GoalService(session, user.id).create(
        GoalIn(
            title="Eat out less",
            target_amount="500",
            start_date=date(2025, 1, 1),
            target_date=date(2025, 12, 31),
            category_id=food.id,
        )
    )
    BudgetService(session, user.id).upsert(
        BudgetIn(category_id=food.id, amount="300", month=1, year=2025)
    )

    categories.delete(food.id)
    categories.delete(salary.id)

    assert BudgetService(session, user.id).list() == []
    kept_expense = ExpenseService(session, user.id).get(expense.id)
    assert kept_expense.category_id is None
    assert kept_expense.category_name is None
    assert IncomeService(session, user.id).get(income.id).category_id is None
    assert GoalService(session, user.id).get(goal.id).category_id is None


def test_goal_dates_must_be_ordered() -> None:
    with pytest.raises(SchemaError):
        GoalIn(
            title="Trip",
            target_amount="1000",
            start_date=date(2025, 6, 1),
            target_date=date(2025, 6, 1),
        )


def test_goal_filters_and_metrics(session, make_user) -> None:
    user = make_user()
    goals = GoalService(session, user.id)
    far = goals.create(
        GoalIn(
            title="House",
            target_amount="10000",
            current_amount="2500",
            start_date=date(2020, 1, 1),
            target_date=date(2999, 1, 1),
        )
    )
    done = goals.create(
        GoalIn(
            title="Laptop",
            target_amount="1000",
            current_amount="1200",
            start_date=date(2020, 1, 1),
            target_date=date(2021, 1, 1),
            is_completed=True,
        )
    )
    late = goals.create(
        GoalIn(
            title="Bike",
            target_amount="400",
            start_date=date(2020, 1, 1),
            target_date=date(2020, 6, 1),
        )
    )

    assert [g.id for g in goals.list()] == [late.id, done.id, far.id]
    assert [g.id for g in goals.list(is_completed=True)] == [done.id]
    assert [g.id for g in goals.list(is_completed=False)] == [late.id, far.id]

    far_out = GoalOut.model_validate(far)
    assert far_out.remaining_amount == Decimal("7500")
    assert far_out.progress == Decimal("25")
    assert far_out.is_overdue is False
    assert far_out.completed_on is None

    done_out = GoalOut.model_validate(done)
    assert done_out.remaining_amount == Decimal("0")
    assert done_out.progress == Decimal("100")
    assert done_out.is_overdue is False
    assert done_out.completed_on == done.updated_at.date()

    late_out = GoalOut.model_validate(late)
    assert late_out.is_overdue is True
    assert late_out.days_remaining < 0
