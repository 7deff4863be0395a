from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
import threading
from itertools import count
from typing import Optional, Sequence, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AppError, ConflictError
from models import Budget, Expense, ExpenseCategory, Profile, User


@dataclass(frozen=True)
class ByUser:
    user_id: int


@dataclass(frozen=True)
class ByCategory:
    # None selects uncategorized expenses, not every category.
    category_id: Optional[int]


@dataclass(frozen=True)
class ByDateRange:
    start: Optional[date] = None
    end: Optional[date] = None
    end_inclusive: bool = False


ExpenseFilter = Union[ByUser, ByCategory, ByDateRange]


def _user_exists() -> ConflictError:
    return ConflictError("User with this email already exists", "USER_EXISTS")


def _budget_exists() -> ConflictError:
    return ConflictError(
        "Active budget already exists for this category", "BUDGET_EXISTS"
    )


class Storage(ABC):
    """Persistence gateway used by every service."""

    # users

    @abstractmethod
    def add_user(self, user: User, profile: Profile) -> User:
        """Persist a user together with its profile, or neither."""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def get_profile(self, user_id: int) -> Optional[Profile]: ...

    # categories

    @abstractmethod
    def add_category(self, category: ExpenseCategory) -> ExpenseCategory: ...

    @abstractmethod
    def get_category(self, category_id: int) -> Optional[ExpenseCategory]: ...

    @abstractmethod
    def list_categories(
        self, user_id: Optional[int], *, defaults_only: bool = False
    ) -> list[ExpenseCategory]:
        """Default categories plus the user's own, defaults first then by name."""

    @abstractmethod
    def find_own_category_by_name(
        self, user_id: int, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[ExpenseCategory]: ...

    @abstractmethod
    def category_usage(self, category_id: int) -> tuple[int, int]:
        """Number of expenses and budgets referencing the category."""

    @abstractmethod
    def delete_category(self, category: ExpenseCategory) -> None: ...

    # expenses

    @abstractmethod
    def add_expense(self, expense: Expense) -> Expense: ...

    @abstractmethod
    def get_expense(self, expense_id: int) -> Optional[Expense]: ...

    @abstractmethod
    def find_expenses(
        self,
        filters: Sequence[ExpenseFilter],
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[Expense]: ...

    @abstractmethod
    def count_expenses(self, filters: Sequence[ExpenseFilter]) -> int: ...

    @abstractmethod
    def sum_expenses(self, filters: Sequence[ExpenseFilter]) -> int:
        """Sum of ``amount_cents``; 0 when nothing matches."""

    @abstractmethod
    def delete_expense(self, expense: Expense) -> None: ...

    # budgets

    @abstractmethod
    def add_budget(self, budget: Budget) -> Budget:
        """Raises ConflictError when an active budget for the category exists."""

    @abstractmethod
    def get_budget(self, budget_id: int) -> Optional[Budget]: ...

    @abstractmethod
    def list_budgets(self, user_id: int, *, active_only: bool = False) -> list[Budget]:
        """Newest first."""

    @abstractmethod
    def find_active_budget(
        self,
        user_id: int,
        category_id: Optional[int],
        *,
        exclude_id: Optional[int] = None,
    ) -> Optional[Budget]: ...

    @abstractmethod
    def count_budgets(self, user_id: int, *, active_only: bool = False) -> int: ...

    # unit of work

    @abstractmethod
    def save(self, obj: object) -> None:
        """Persist in-place changes made to a loaded object."""


class SqlStorage(Storage):
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _expense_clauses(filters: Sequence[ExpenseFilter]) -> list:
        clauses = []
        for f in filters:
            if isinstance(f, ByUser):
                clauses.append(Expense.user_id == f.user_id)
            elif isinstance(f, ByCategory):
                if f.category_id is None:
                    clauses.append(Expense.category_id.is_(None))
                else:
                    clauses.append(Expense.category_id == f.category_id)
            elif isinstance(f, ByDateRange):
                if f.start is not None:
                    clauses.append(Expense.expense_date >= f.start)
                if f.end is not None:
                    if f.end_inclusive:
                        clauses.append(Expense.expense_date <= f.end)
                    else:
                        clauses.append(Expense.expense_date < f.end)
            else:
                raise TypeError(f"Unsupported expense filter: {f!r}")
        return clauses

    def _commit(self, conflict: Optional[AppError] = None) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            if conflict is None:
                raise
            raise conflict from exc
        except Exception:
            self.session.rollback()
            raise

    def add_user(self, user: User, profile: Profile) -> User:
        try:
            self.session.add(user)
            self.session.flush()
            profile.user_id = user.id
            self.session.add(profile)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise _user_exists() from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(user)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.lower())
        )

    def get_profile(self, user_id: int) -> Optional[Profile]:
        return self.session.scalar(select(Profile).where(Profile.user_id == user_id))

    def add_category(self, category: ExpenseCategory) -> ExpenseCategory:
        self.session.add(category)
        self._commit()
        self.session.refresh(category)
        return category

    def get_category(self, category_id: int) -> Optional[ExpenseCategory]:
        return self.session.get(ExpenseCategory, category_id)

    def list_categories(
        self, user_id: Optional[int], *, defaults_only: bool = False
    ) -> list[ExpenseCategory]:
        stmt = select(ExpenseCategory).order_by(
            ExpenseCategory.is_default.desc(), ExpenseCategory.name.asc()
        )
        if defaults_only or user_id is None:
            stmt = stmt.where(ExpenseCategory.is_default.is_(True))
        else:
            stmt = stmt.where(
                ExpenseCategory.is_default.is_(True)
                | (ExpenseCategory.user_id == user_id)
            )
        return list(self.session.scalars(stmt).all())

    def find_own_category_by_name(
        self, user_id: int, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[ExpenseCategory]:
        stmt = select(ExpenseCategory).where(
            ExpenseCategory.user_id == user_id,
            ExpenseCategory.is_default.is_(False),
            func.lower(ExpenseCategory.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(ExpenseCategory.id != exclude_id)
        return self.session.scalars(stmt).first()

    def category_usage(self, category_id: int) -> tuple[int, int]:
        expenses = self.session.execute(
            select(func.count(Expense.id)).where(Expense.category_id == category_id)
        ).scalar_one()
        budgets = self.session.execute(
            select(func.count(Budget.id)).where(Budget.category_id == category_id)
        ).scalar_one()
        return int(expenses or 0), int(budgets or 0)

    def delete_category(self, category: ExpenseCategory) -> None:
        self.session.delete(category)
        self._commit()

    def add_expense(self, expense: Expense) -> Expense:
        self.session.add(expense)
        self._commit()
        self.session.refresh(expense)
        return expense

    def get_expense(self, expense_id: int) -> Optional[Expense]:
        return self.session.get(Expense, expense_id)

    def find_expenses(
        self,
        filters: Sequence[ExpenseFilter],
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[Expense]:
        stmt = select(Expense).where(*self._expense_clauses(filters))
        if newest_first:
            stmt = stmt.order_by(Expense.expense_date.desc(), Expense.id.desc())
        else:
            stmt = stmt.order_by(Expense.expense_date.asc(), Expense.id.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def count_expenses(self, filters: Sequence[ExpenseFilter]) -> int:
        stmt = select(func.count(Expense.id)).where(*self._expense_clauses(filters))
        return int(self.session.execute(stmt).scalar_one() or 0)

    def sum_expenses(self, filters: Sequence[ExpenseFilter]) -> int:
        stmt = select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
            *self._expense_clauses(filters)
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete_expense(self, expense: Expense) -> None:
        self.session.delete(expense)
        self._commit()

    def add_budget(self, budget: Budget) -> Budget:
        self.session.add(budget)
        self._commit(_budget_exists())
        self.session.refresh(budget)
        return budget

    def get_budget(self, budget_id: int) -> Optional[Budget]:
        return self.session.get(Budget, budget_id)

    def list_budgets(self, user_id: int, *, active_only: bool = False) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == user_id)
            .order_by(Budget.created_at.desc(), Budget.id.desc())
        )
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def find_active_budget(
        self,
        user_id: int,
        category_id: Optional[int],
        *,
        exclude_id: Optional[int] = None,
    ) -> Optional[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == user_id,
            Budget.is_active.is_(True),
            Budget.category_id.is_(None)
            if category_id is None
            else Budget.category_id == category_id,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalars(stmt).first()

    def count_budgets(self, user_id: int, *, active_only: bool = False) -> int:
        stmt = select(func.count(Budget.id)).where(Budget.user_id == user_id)
        if active_only:
            stmt = stmt.where(Budget.is_active.is_(True))
        return int(self.session.execute(stmt).scalar_one() or 0)

    def save(self, obj: object) -> None:
        self.session.add(obj)
        self._commit(_budget_exists() if isinstance(obj, Budget) else None)
        self.session.refresh(obj)


class MemoryStorage(Storage):
    """Dict-backed storage; each instance is an isolated database.

    Writes and uniqueness checks hold one lock, so a single instance can be
    shared by the request threadpool.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._users: dict[int, User] = {}
        self._profiles: dict[int, Profile] = {}
        self._categories: dict[int, ExpenseCategory] = {}
        self._expenses: dict[int, Expense] = {}
        self._budgets: dict[int, Budget] = {}
        self._ids = {
            "users": count(1),
            "profiles": count(1),
            "categories": count(1),
            "expenses": count(1),
            "budgets": count(1),
        }

    def _stamp(self, obj, table: str) -> None:
        now = datetime.utcnow()
        obj.id = next(self._ids[table])
        obj.created_at = now
        obj.updated_at = now

    @staticmethod
    def _matches(expense: Expense, f: ExpenseFilter) -> bool:
        if isinstance(f, ByUser):
            return expense.user_id == f.user_id
        if isinstance(f, ByCategory):
            return expense.category_id == f.category_id
        if isinstance(f, ByDateRange):
            if f.start is not None and expense.expense_date < f.start:
                return False
            if f.end is not None:
                if f.end_inclusive:
                    return expense.expense_date <= f.end
                return expense.expense_date < f.end
            return True
        raise TypeError(f"Unsupported expense filter: {f!r}")

    def _filtered(self, filters: Sequence[ExpenseFilter]) -> list[Expense]:
        for f in filters:
            if not isinstance(f, (ByUser, ByCategory, ByDateRange)):
                raise TypeError(f"Unsupported expense filter: {f!r}")
        return [
            e
            for e in list(self._expenses.values())
            if all(self._matches(e, f) for f in filters)
        ]

    def add_user(self, user: User, profile: Profile) -> User:
        with self._lock:
            if self.get_user_by_email(user.email) is not None:
                raise _user_exists()
            self._stamp(user, "users")
            self._stamp(profile, "profiles")
            profile.user_id = user.id
            self._users[user.id] = user
            self._profiles[user.id] = profile
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        for user in list(self._users.values()):
            if user.email.lower() == email.lower():
                return user
        return None

    def get_profile(self, user_id: int) -> Optional[Profile]:
        return self._profiles.get(user_id)

    def add_category(self, category: ExpenseCategory) -> ExpenseCategory:
        with self._lock:
            self._stamp(category, "categories")
            self._categories[category.id] = category
        return category

    def get_category(self, category_id: int) -> Optional[ExpenseCategory]:
        return self._categories.get(category_id)

    def list_categories(
        self, user_id: Optional[int], *, defaults_only: bool = False
    ) -> list[ExpenseCategory]:
        visible = [
            c
            for c in list(self._categories.values())
            if c.is_default
            or (not defaults_only and user_id is not None and c.user_id == user_id)
        ]
        return sorted(visible, key=lambda c: (not c.is_default, c.name))

    def find_own_category_by_name(
        self, user_id: int, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[ExpenseCategory]:
        wanted = name.strip().lower()
        for category in list(self._categories.values()):
            if (
                category.user_id == user_id
                and not category.is_default
                and category.name.lower() == wanted
                and category.id != exclude_id
            ):
                return category
        return None

    def category_usage(self, category_id: int) -> tuple[int, int]:
        expenses = sum(
            1 for e in list(self._expenses.values()) if e.category_id == category_id
        )
        budgets = sum(
            1 for b in list(self._budgets.values()) if b.category_id == category_id
        )
        return expenses, budgets

    def delete_category(self, category: ExpenseCategory) -> None:
        with self._lock:
            self._categories.pop(category.id, None)

    def add_expense(self, expense: Expense) -> Expense:
        with self._lock:
            self._stamp(expense, "expenses")
            self._expenses[expense.id] = expense
        return expense

    def get_expense(self, expense_id: int) -> Optional[Expense]:
        return self._expenses.get(expense_id)

    def find_expenses(
        self,
        filters: Sequence[ExpenseFilter],
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[Expense]:
        rows = sorted(
            self._filtered(filters),
            key=lambda e: (e.expense_date, e.id),
            reverse=newest_first,
        )
        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return rows

    def count_expenses(self, filters: Sequence[ExpenseFilter]) -> int:
        return len(self._filtered(filters))

    def sum_expenses(self, filters: Sequence[ExpenseFilter]) -> int:
        return sum(e.amount_cents for e in self._filtered(filters))

    def delete_expense(self, expense: Expense) -> None:
        with self._lock:
            self._expenses.pop(expense.id, None)

    def add_budget(self, budget: Budget) -> Budget:
        with self._lock:
            if budget.is_active and self.find_active_budget(
                budget.user_id, budget.category_id
            ):
                raise _budget_exists()
            self._stamp(budget, "budgets")
            self._budgets[budget.id] = budget
        return budget

    def get_budget(self, budget_id: int) -> Optional[Budget]:
        return self._budgets.get(budget_id)

    def list_budgets(self, user_id: int, *, active_only: bool = False) -> list[Budget]:
        rows = [
            b
            for b in list(self._budgets.values())
            if b.user_id == user_id and (b.is_active or not active_only)
        ]
        return sorted(rows, key=lambda b: (b.created_at, b.id), reverse=True)

    def find_active_budget(
        self,
        user_id: int,
        category_id: Optional[int],
        *,
        exclude_id: Optional[int] = None,
    ) -> Optional[Budget]:
        for budget in list(self._budgets.values()):
            if (
                budget.user_id == user_id
                and budget.is_active
                and budget.category_id == category_id
                and budget.id != exclude_id
            ):
                return budget
        return None

    def count_budgets(self, user_id: int, *, active_only: bool = False) -> int:
        return len(self.list_budgets(user_id, active_only=active_only))

    def save(self, obj: object) -> None:
        with self._lock:
            if (
                isinstance(obj, Budget)
                and obj.is_active
                and self.find_active_budget(
                    obj.user_id, obj.category_id, exclude_id=obj.id
                )
            ):
                raise _budget_exists()
            obj.updated_at = datetime.utcnow()
