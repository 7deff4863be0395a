import pytest

from errors import ConflictError, NotFoundError
from schemas import CategoryIn, CategoryUpdateIn, ExpenseIn, SignUpIn
from services import (
    DEFAULT_CATEGORIES,
    CategoryService,
    ExpenseService,
    UserService,
    ensure_default_categories,
)


def test_defaults_are_seeded_once(store) -> None:
    assert ensure_default_categories(store) == len(DEFAULT_CATEGORIES)
    assert ensure_default_categories(store) == 0
    defaults = store.list_categories(None, defaults_only=True)
    assert len(defaults) == 10
    assert all(c.is_default and c.user_id is None for c in defaults)


def test_visible_set_is_defaults_plus_own(store, user) -> None:
    other = UserService(store).sign_up(
        SignUpIn(email="bo@example.com", password="secret1", full_name="Bo Chen")
    )
    CategoryService(store, other.id).create(CategoryIn(name="Their Stuff"))
    mine = CategoryService(store, user.id).create(
        CategoryIn(name="Pets", icon="🐶", color="#123ABC")
    )

    visible = CategoryService(store, user.id).list_all()
    names = [c.name for c in visible]
    assert len(visible) == 11
    assert "Pets" in names
    assert "Their Stuff" not in names
    assert visible[-1].id == mine.id


def test_duplicate_own_name_is_case_insensitive(store, user) -> None:
    service = CategoryService(store, user.id)
    service.create(CategoryIn(name="Pets"))
    with pytest.raises(ConflictError) as excinfo:
        service.create(CategoryIn(name="  pets "))
    assert excinfo.value.code == "CATEGORY_EXISTS"


def test_own_category_may_shadow_default_name(store, user) -> None:
    created = CategoryService(store, user.id).create(CategoryIn(name="Travel"))
    assert created.is_default is False


def test_default_categories_cannot_be_changed(store, user) -> None:
    default = store.list_categories(None, defaults_only=True)[0]
    service = CategoryService(store, user.id)
    with pytest.raises(NotFoundError):
        service.update(default.id, CategoryUpdateIn(name="Renamed"))
    with pytest.raises(NotFoundError):
        service.delete(default.id)


def test_update_own_category(store, user) -> None:
    service = CategoryService(store, user.id)
    pets = service.create(CategoryIn(name="Pets"))
    service.create(CategoryIn(name="Garden"))

    renamed = service.update(pets.id, CategoryUpdateIn(name="Pet Care", color="#00FF00"))
    assert renamed.name == "Pet Care"
    assert renamed.color == "#00FF00"
    with pytest.raises(ConflictError):
        service.update(pets.id, CategoryUpdateIn(name="garden"))


def test_category_in_use_cannot_be_deleted(store, user) -> None:
    service = CategoryService(store, user.id)
    pets = service.create(CategoryIn(name="Pets"))
    expense = ExpenseService(store, user.id).create(
        ExpenseIn(
            amount="15.00",
            description="Food bowl",
            expense_date="2024-05-01",
            category_id=pets.id,
        )
    )

    with pytest.raises(ConflictError) as excinfo:
        service.delete(pets.id)
    assert excinfo.value.code == "CATEGORY_IN_USE"

    ExpenseService(store, user.id).delete(expense.id)
    service.delete(pets.id)
    with pytest.raises(NotFoundError):
        service.get(pets.id)
