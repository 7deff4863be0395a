from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from errors import ConflictError
from models import Budget, BudgetPeriod, Profile, User
from schemas import ExpenseIn, SignUpIn
from services import ExpenseService, UserService
from storage import ByCategory, ByDateRange, ByUser, MemoryStorage


def _add(store, user_id, amount, day, category_id=None, description="Item"):
    return ExpenseService(store, user_id).create(
        ExpenseIn(
            amount=Decimal(amount),
            description=description,
            expense_date=day,
            category_id=category_id,
        )
    )


def test_category_filter_none_selects_uncategorized_only(store, user, categories) -> None:
    food = categories["Food & Dining"]
    _add(store, user.id, "10.00", date(2024, 5, 1), food.id)
    _add(store, user.id, "4.50", date(2024, 5, 2))

    uncategorized = store.find_expenses([ByUser(user.id), ByCategory(None)])
    assert [e.amount_cents for e in uncategorized] == [450]
    assert store.sum_expenses([ByUser(user.id)]) == 1450


def test_date_range_is_half_open_unless_inclusive(store, user) -> None:
    for day in (date(2024, 5, 1), date(2024, 5, 15), date(2024, 6, 1)):
        _add(store, user.id, "1.00", day)

    half_open = [ByUser(user.id), ByDateRange(date(2024, 5, 1), date(2024, 6, 1))]
    inclusive = [
        ByUser(user.id),
        ByDateRange(date(2024, 5, 1), date(2024, 6, 1), end_inclusive=True),
    ]
    assert store.count_expenses(half_open) == 2
    assert store.count_expenses(inclusive) == 3
    assert store.count_expenses([ByUser(user.id), ByDateRange(start=date(2024, 5, 2))]) == 2


def test_sum_is_zero_when_nothing_matches(store, user) -> None:
    assert store.sum_expenses([ByUser(user.id)]) == 0
    assert store.sum_expenses([ByUser(user.id + 100)]) == 0


def test_expenses_are_newest_first_with_paging(store, user) -> None:
    first = _add(store, user.id, "1.00", date(2024, 1, 1), description="first")
    second = _add(store, user.id, "2.00", date(2024, 1, 2), description="second")
    third = _add(store, user.id, "3.00", date(2024, 1, 2), description="third")

    rows = store.find_expenses([ByUser(user.id)])
    assert [e.id for e in rows] == [third.id, second.id, first.id]
    page = store.find_expenses([ByUser(user.id)], limit=1, offset=1)
    assert [e.id for e in page] == [second.id]
    oldest = store.find_expenses([ByUser(user.id)], newest_first=False, limit=1)
    assert [e.id for e in oldest] == [first.id]


def test_unknown_filter_is_rejected(store, user) -> None:
    with pytest.raises(TypeError):
        store.find_expenses([ByUser(user.id), "category=1"])
    with pytest.raises(TypeError):
        store.sum_expenses([object()])


def test_user_and_profile_are_created_together(store) -> None:
    user = store.add_user(
        User(email="bo@example.com", password_hash="x", full_name="Bo Chen"),
        Profile(full_name="Bo Chen"),
    )
    profile = store.get_profile(user.id)
    assert profile is not None
    assert profile.user_id == user.id
    assert store.get_user_by_email("BO@example.com").id == user.id


def test_duplicate_email_leaves_no_orphan_profile(store) -> None:
    users = UserService(store)
    first = users.sign_up(
        SignUpIn(email="cy@example.com", password="secret1", full_name="Cy Park")
    )
    with pytest.raises(ConflictError) as exc:
        store.add_user(
            User(email="cy@example.com", password_hash="x", full_name="Other"),
            Profile(full_name="Other"),
        )
    assert exc.value.code == "USER_EXISTS"
    assert store.get_user_by_email("cy@example.com").id == first.id
    assert store.get_profile(first.id).full_name == "Cy Park"
    assert store.get_profile(first.id + 1) is None


def _budget(user_id, category_id=None, amount_cents=50000, is_active=True):
    return Budget(
        user_id=user_id,
        category_id=category_id,
        amount_cents=amount_cents,
        period=BudgetPeriod.monthly,
        start_date=date(2024, 5, 1),
        is_active=is_active,
    )


@pytest.mark.parametrize("category_name", [None, "Groceries"])
def test_second_active_budget_is_rejected_by_store(
    store, user, categories, category_name
) -> None:
    category_id = categories[category_name].id if category_name else None
    store.add_budget(_budget(user.id, category_id))

    with pytest.raises(ConflictError) as exc:
        store.add_budget(_budget(user.id, category_id, amount_cents=70000))
    assert exc.value.code == "BUDGET_EXISTS"
    assert store.count_budgets(user.id, active_only=True) == 1

    store.add_budget(_budget(user.id, category_id, is_active=False))
    assert store.count_budgets(user.id) == 2


def test_reactivating_budget_conflicts_on_save(store, user) -> None:
    store.add_budget(_budget(user.id))
    retired = store.add_budget(_budget(user.id, is_active=False))

    retired.is_active = True
    with pytest.raises(ConflictError) as exc:
        store.save(retired)
    assert exc.value.code == "BUDGET_EXISTS"


def test_memory_store_allows_one_active_budget_under_concurrency() -> None:
    store = MemoryStorage()
    user = store.add_user(
        User(email="dee@example.com", password_hash="x"), Profile()
    )

    def attempt(_):
        try:
            store.add_budget(_budget(user.id))
        except ConflictError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(32)))

    assert results.count(True) == 1
    assert store.count_budgets(user.id, active_only=True) == 1
