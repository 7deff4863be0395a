from datetime import date
from decimal import Decimal

import pytest

from errors import ConflictError, NotFoundError
from models import BudgetPeriod
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, ExpenseIn, SignUpIn
from services import BudgetService, CategoryService, ExpenseService, UserService


def _expense(store, user_id, amount, day, category_id=None):
    ExpenseService(store, user_id).create(
        ExpenseIn(
            amount=Decimal(amount),
            description="Purchase",
            expense_date=day,
            category_id=category_id,
        )
    )


def _budget(amount="500", category_id=None, period=BudgetPeriod.monthly, start=None):
    return BudgetIn(
        amount=Decimal(amount),
        period=period,
        start_date=start or date(2024, 3, 1),
        category_id=category_id,
    )


def test_spent_counts_only_matching_expenses_in_interval(store, user, categories) -> None:
    food = categories["Food & Dining"]
    travel = categories["Travel"]
    other = UserService(store).sign_up(
        SignUpIn(email="bo@example.com", password="secret1", full_name="Bo Chen")
    )

    _expense(store, user.id, "100.10", date(2024, 3, 1), food.id)
    _expense(store, user.id, "0.20", date(2024, 3, 31), food.id)
    _expense(store, user.id, "50.00", date(2024, 4, 1), food.id)
    _expense(store, user.id, "50.00", date(2024, 2, 29), food.id)
    _expense(store, user.id, "7.00", date(2024, 3, 10), travel.id)
    _expense(store, user.id, "3.00", date(2024, 3, 10))
    _expense(store, other.id, "999.00", date(2024, 3, 10), food.id)

    budgets = BudgetService(store, user.id)
    assert budgets.spent_for_budget(food.id, date(2024, 3, 1), date(2024, 4, 1)) == 10030
    assert budgets.spent_for_budget(None, date(2024, 3, 1), date(2024, 4, 1)) == 300
    assert budgets.spent_for_budget(food.id, date(2025, 1, 1), date(2025, 2, 1)) == 0


def test_budget_with_spent_metrics(store, user, categories) -> None:
    food = categories["Food & Dining"]
    _expense(store, user.id, "450.00", date(2024, 3, 5), food.id)

    created = BudgetService(store, user.id).create(_budget("500", food.id))
    assert created.spent_cents == 45000
    assert created.percentage == 90
    assert created.remaining_cents == 5000
    assert created.end_date == date(2024, 4, 1)
    assert created.category.name == "Food & Dining"


def test_over_budget_has_negative_remaining(store, user) -> None:
    _expense(store, user.id, "120.00", date(2024, 3, 2))
    item = BudgetService(store, user.id).create(
        _budget("100", None, BudgetPeriod.weekly)
    )
    assert item.percentage == 120
    assert item.remaining_cents == -2000


def test_second_active_budget_conflicts_until_first_is_deactivated(
    store, user, categories
) -> None:
    food = categories["Food & Dining"]
    budgets = BudgetService(store, user.id)
    first = budgets.create(_budget("500", food.id))

    with pytest.raises(ConflictError) as excinfo:
        budgets.create(_budget("300", food.id))
    assert excinfo.value.code == "BUDGET_EXISTS"

    budgets.deactivate(first.budget.id)
    second = budgets.create(_budget("300", food.id))
    assert second.budget.is_active


def test_uncategorized_budgets_are_unique_too(store, user) -> None:
    budgets = BudgetService(store, user.id)
    budgets.create(_budget("100"))
    with pytest.raises(ConflictError):
        budgets.create(_budget("200", period=BudgetPeriod.yearly))


def test_deactivated_budget_hidden_from_active_list(store, user, categories) -> None:
    budgets = BudgetService(store, user.id)
    item = budgets.create(_budget("500", categories["Travel"].id))
    budgets.deactivate(item.budget.id)
    # Deactivating twice is not an error.
    budgets.deactivate(item.budget.id)

    assert budgets.list(active_only=True) == []
    listed = budgets.list(active_only=False)
    assert [b.budget.id for b in listed] == [item.budget.id]
    assert listed[0].budget.is_active is False


def test_update_rechecks_conflict_excluding_itself(store, user, categories) -> None:
    food = categories["Food & Dining"]
    travel = categories["Travel"]
    budgets = BudgetService(store, user.id)
    food_budget = budgets.create(_budget("500", food.id))
    travel_budget = budgets.create(_budget("200", travel.id))

    updated = budgets.update(
        food_budget.budget.id, BudgetUpdateIn(amount=Decimal("650"), category_id=food.id)
    )
    assert updated.budget.amount_cents == 65000

    with pytest.raises(ConflictError):
        budgets.update(travel_budget.budget.id, BudgetUpdateIn(category_id=food.id))


def test_reactivating_budget_checks_conflict(store, user, categories) -> None:
    food = categories["Food & Dining"]
    budgets = BudgetService(store, user.id)
    old = budgets.create(_budget("500", food.id))
    budgets.deactivate(old.budget.id)
    budgets.create(_budget("400", food.id))

    with pytest.raises(ConflictError):
        budgets.update(old.budget.id, BudgetUpdateIn(is_active=True))


def test_update_without_category_keeps_it(store, user, categories) -> None:
    food = categories["Food & Dining"]
    budgets = BudgetService(store, user.id)
    item = budgets.create(_budget("500", food.id))
    updated = budgets.update(
        item.budget.id, BudgetUpdateIn(period=BudgetPeriod.weekly)
    )
    assert updated.budget.category_id == food.id
    assert updated.end_date == date(2024, 3, 8)


def test_budget_category_must_be_visible(store, user) -> None:
    other = UserService(store).sign_up(
        SignUpIn(email="bo@example.com", password="secret1", full_name="Bo Chen")
    )
    private = CategoryService(store, other.id).create(CategoryIn(name="Hobbies"))

    with pytest.raises(NotFoundError) as excinfo:
        BudgetService(store, user.id).create(_budget("50", private.id))
    assert excinfo.value.code == "CATEGORY_NOT_FOUND"


def test_budget_of_another_user_is_not_found(store, user) -> None:
    other = UserService(store).sign_up(
        SignUpIn(email="bo@example.com", password="secret1", full_name="Bo Chen")
    )
    item = BudgetService(store, other.id).create(_budget("50"))
    with pytest.raises(NotFoundError):
        BudgetService(store, user.id).get(item.budget.id)
    with pytest.raises(NotFoundError):
        BudgetService(store, user.id).deactivate(item.budget.id)


def test_budget_stats(store, user, categories) -> None:
    food = categories["Food & Dining"]
    travel = categories["Travel"]
    _expense(store, user.id, "95.00", date(2024, 3, 3), food.id)
    _expense(store, user.id, "250.00", date(2024, 3, 3), travel.id)

    budgets = BudgetService(store, user.id)
    budgets.create(_budget("100", food.id))
    budgets.create(_budget("200", travel.id))
    retired = budgets.create(_budget("10"))
    budgets.deactivate(retired.budget.id)

    stats = budgets.stats()
    assert stats.total_budgets == 3
    assert stats.active_budgets == 2
    assert stats.total_budget_cents == 30000
    assert stats.total_spent_cents == 34500
    assert stats.total_remaining_cents == -4500
    assert stats.average_utilization == pytest.approx(110.0)
    assert stats.over_budget == 1
    assert stats.near_limit == 1
