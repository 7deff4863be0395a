from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from analytics import (
    TOP_CATEGORIES,
    CategoryTotal,
    SpendingByPeriod,
    TrendPoint,
    average_daily,
    category_breakdown,
    daily_totals,
    daily_trend,
    monthly_totals,
    monthly_trend,
    spending_by_period,
    sum_cents,
    within,
)
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from models import Budget, Expense, ExpenseCategory, Profile, User
from money import percentage, to_cents
from periods import end_date_for_period, local_today, this_month
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    ExpenseIn,
    ExpenseUpdateIn,
    ProfileUpdateIn,
    SignInIn,
    SignUpIn,
)
from security import hash_password, verify_password
from storage import ByCategory, ByDateRange, ByUser, ExpenseFilter, Storage

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: list[tuple[str, str, str]] = [
    ("Food & Dining", "🍽️", "#FF6B6B"),
    ("Transportation", "🚗", "#4ECDC4"),
    ("Shopping", "🛍️", "#45B7D1"),
    ("Entertainment", "🎬", "#96CEB4"),
    ("Bills & Utilities", "💡", "#FFEAA7"),
    ("Healthcare", "🏥", "#DDA0DD"),
    ("Education", "📚", "#98D8C8"),
    ("Travel", "✈️", "#F7DC6F"),
    ("Groceries", "🛒", "#BB8FCE"),
    ("Other", "💰", "#85C1E9"),
]

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def ensure_default_categories(store: Storage) -> int:
    """Create any missing default category; returns how many were added."""
    existing = {c.name for c in store.list_categories(None, defaults_only=True)}
    added = 0
    for name, icon, color in DEFAULT_CATEGORIES:
        if name in existing:
            continue
        store.add_category(
            ExpenseCategory(
                user_id=None, name=name, icon=icon, color=color, is_default=True
            )
        )
        added += 1
    if added:
        logger.info(f"categories: seeded_defaults count={added}")
    return added


class UserService:
    def __init__(self, store: Storage) -> None:
        self.store = store

    def sign_up(self, data: SignUpIn) -> User:
        email = data.email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError("User with this email already exists", "USER_EXISTS")
        full_name = data.full_name.strip()
        user = User(
            email=email,
            password_hash=hash_password(data.password),
            full_name=full_name,
        )
        profile = Profile(full_name=full_name)
        self.store.add_user(user, profile)
        logger.info(f"auth: signup user_id={user.id}")
        return user

    def sign_in(self, data: SignInIn) -> User:
        user = self.store.get_user_by_email(data.email.strip().lower())
        if not user or not verify_password(data.password, user.password_hash):
            logger.info("auth: signin_failed")
            raise AuthError("Invalid email or password", "INVALID_CREDENTIALS")
        return user

    def get(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", "USER_NOT_FOUND")
        return user

    def profile(self, user_id: int) -> tuple[User, Optional[Profile]]:
        user = self.get(user_id)
        return user, self.store.get_profile(user_id)

    def update_profile(self, user_id: int, data: ProfileUpdateIn) -> User:
        user, profile = self.profile(user_id)
        changes = data.model_dump(exclude_unset=True)
        if "full_name" in changes and changes["full_name"] is not None:
            changes["full_name"] = changes["full_name"].strip()
        for field, value in changes.items():
            setattr(user, field, value)
            if profile is not None:
                setattr(profile, field, value)
        self.store.save(user)
        if profile is not None:
            self.store.save(profile)
        return user


class CategoryService:
    def __init__(self, store: Storage, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def list_all(self) -> list[ExpenseCategory]:
        return self.store.list_categories(self.user_id)

    def defaults(self) -> list[ExpenseCategory]:
        return self.store.list_categories(None, defaults_only=True)

    def visible(self) -> dict[int, ExpenseCategory]:
        return {c.id: c for c in self.list_all()}

    def get(self, category_id: int) -> ExpenseCategory:
        category = self.store.get_category(category_id)
        if not category or not (
            category.is_default or category.user_id == self.user_id
        ):
            raise NotFoundError("Category not found", "CATEGORY_NOT_FOUND")
        return category

    def _get_own(self, category_id: int) -> ExpenseCategory:
        category = self.store.get_category(category_id)
        if not category or category.is_default or category.user_id != self.user_id:
            raise NotFoundError(
                "Category not found or cannot be modified", "CATEGORY_NOT_FOUND"
            )
        return category

    def create(self, data: CategoryIn) -> ExpenseCategory:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        if self.store.find_own_category_by_name(self.user_id, name):
            raise ConflictError(
                "Category with this name already exists", "CATEGORY_EXISTS"
            )
        category = ExpenseCategory(
            user_id=self.user_id,
            name=name,
            icon=data.icon,
            color=data.color,
            is_default=False,
        )
        return self.store.add_category(category)

    def update(self, category_id: int, data: CategoryUpdateIn) -> ExpenseCategory:
        category = self._get_own(category_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            name = changes["name"].strip()
            if not name:
                raise ValidationError("Category name cannot be empty")
            if self.store.find_own_category_by_name(
                self.user_id, name, exclude_id=category.id
            ):
                raise ConflictError(
                    "Category with this name already exists", "CATEGORY_EXISTS"
                )
            category.name = name
        if "icon" in changes:
            category.icon = changes["icon"]
        if "color" in changes:
            category.color = changes["color"]
        self.store.save(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self._get_own(category_id)
        expenses, budgets = self.store.category_usage(category.id)
        if expenses or budgets:
            logger.info(
                f"categories: delete_blocked id={category.id} "
                f"expenses={expenses} budgets={budgets}"
            )
            raise ConflictError(
                "Cannot delete category that is used by expenses or budgets",
                "CATEGORY_IN_USE",
            )
        self.store.delete_category(category)


@dataclass(frozen=True)
class ExpensePage:
    expenses: list[Expense]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass(frozen=True)
class ExpenseStats:
    total_cents: int
    total_count: int
    monthly_cents: int
    breakdown: list[CategoryTotal]


class ExpenseService:
    def __init__(self, store: Storage, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None:
            CategoryService(self.store, self.user_id).get(category_id)

    def create(self, data: ExpenseIn) -> Expense:
        self._check_category(data.category_id)
        expense = Expense(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=to_cents(data.amount),
            description=data.description.strip(),
            expense_date=data.expense_date,
        )
        return self.store.add_expense(expense)

    def get(self, expense_id: int) -> Expense:
        expense = self.store.get_expense(expense_id)
        if not expense or expense.user_id != self.user_id:
            raise NotFoundError("Expense not found", "EXPENSE_NOT_FOUND")
        return expense

    def update(self, expense_id: int, data: ExpenseUpdateIn) -> Expense:
        expense = self.get(expense_id)
        fields = data.model_fields_set
        if "category_id" in fields:
            self._check_category(data.category_id)
            expense.category_id = data.category_id
        if "amount" in fields and data.amount is not None:
            expense.amount_cents = to_cents(data.amount)
        if "description" in fields and data.description is not None:
            expense.description = data.description.strip()
        if "expense_date" in fields and data.expense_date is not None:
            expense.expense_date = data.expense_date
        self.store.save(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        self.store.delete_expense(self.get(expense_id))

    def list(
        self,
        *,
        category: Optional[ByCategory] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> ExpensePage:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        filters: list[ExpenseFilter] = [ByUser(self.user_id)]
        if category is not None:
            filters.append(category)
        if start is not None or end is not None:
            filters.append(ByDateRange(start, end, end_inclusive=True))
        rows = self.store.find_expenses(filters, limit=limit, offset=offset)
        total = self.store.count_expenses(filters)
        return ExpensePage(expenses=rows, total=total, limit=limit, offset=offset)

    def stats(
        self,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        today: Optional[date] = None,
    ) -> ExpenseStats:
        today = today or local_today()
        filters: list[ExpenseFilter] = [ByUser(self.user_id)]
        if start is not None or end is not None:
            filters.append(ByDateRange(start, end, end_inclusive=True))
        expenses = self.store.find_expenses(filters, newest_first=False)
        categories = CategoryService(self.store, self.user_id).visible()
        return ExpenseStats(
            total_cents=sum_cents(expenses),
            total_count=len(expenses),
            monthly_cents=sum_cents(within(expenses, this_month(today))),
            breakdown=category_breakdown(expenses, categories),
        )


@dataclass(frozen=True)
class BudgetWithSpent:
    budget: Budget
    category: Optional[ExpenseCategory]
    spent_cents: int
    end_date: date

    @property
    def percentage(self) -> float:
        return percentage(self.spent_cents, self.budget.amount_cents)

    @property
    def remaining_cents(self) -> int:
        # Negative when over budget.
        return self.budget.amount_cents - self.spent_cents


@dataclass(frozen=True)
class BudgetStats:
    total_budgets: int
    active_budgets: int
    total_budget_cents: int
    total_spent_cents: int
    average_utilization: float
    over_budget: int
    near_limit: int
    budgets: list[BudgetWithSpent]

    @property
    def total_remaining_cents(self) -> int:
        return self.total_budget_cents - self.total_spent_cents


class BudgetService:
    def __init__(self, store: Storage, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def spent_for_budget(
        self, category_id: Optional[int], start: date, end: date
    ) -> int:
        """Cents spent in ``[start, end)`` on exactly ``category_id``.

        ``None`` is the uncategorized bucket, not every category.
        """
        return self.store.sum_expenses(
            [
                ByUser(self.user_id),
                ByCategory(category_id),
                ByDateRange(start, end),
            ]
        )

    def with_spent(self, budget: Budget) -> BudgetWithSpent:
        end = end_date_for_period(budget.start_date, budget.period)
        category = (
            self.store.get_category(budget.category_id)
            if budget.category_id is not None
            else None
        )
        return BudgetWithSpent(
            budget=budget,
            category=category,
            spent_cents=self.spent_for_budget(
                budget.category_id, budget.start_date, end
            ),
            end_date=end,
        )

    def _get(self, budget_id: int) -> Budget:
        budget = self.store.get_budget(budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found", "BUDGET_NOT_FOUND")
        return budget

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None:
            CategoryService(self.store, self.user_id).get(category_id)

    def _check_conflict(
        self, category_id: Optional[int], exclude_id: Optional[int] = None
    ) -> None:
        existing = self.store.find_active_budget(
            self.user_id, category_id, exclude_id=exclude_id
        )
        if existing:
            logger.info(
                f"budgets: conflict user_id={self.user_id} "
                f"category_id={category_id} existing_id={existing.id}"
            )
            raise ConflictError(
                "Active budget already exists for this category", "BUDGET_EXISTS"
            )

    def list(self, *, active_only: bool = True) -> list[BudgetWithSpent]:
        budgets = self.store.list_budgets(self.user_id, active_only=active_only)
        return [self.with_spent(b) for b in budgets]

    def get(self, budget_id: int) -> BudgetWithSpent:
        return self.with_spent(self._get(budget_id))

    def create(self, data: BudgetIn) -> BudgetWithSpent:
        self._check_category(data.category_id)
        self._check_conflict(data.category_id)
        budget = Budget(
            user_id=self.user_id,
            category_id=data.category_id,
            amount_cents=to_cents(data.amount),
            period=data.period,
            start_date=data.start_date,
            is_active=True,
        )
        self.store.add_budget(budget)
        return self.with_spent(budget)

    def update(self, budget_id: int, data: BudgetUpdateIn) -> BudgetWithSpent:
        budget = self._get(budget_id)
        fields = data.model_fields_set

        category_id = budget.category_id
        if "category_id" in fields:
            self._check_category(data.category_id)
            category_id = data.category_id
        is_active = budget.is_active
        if "is_active" in fields and data.is_active is not None:
            is_active = data.is_active
        if is_active:
            self._check_conflict(category_id, exclude_id=budget.id)

        budget.category_id = category_id
        budget.is_active = is_active
        if "amount" in fields and data.amount is not None:
            budget.amount_cents = to_cents(data.amount)
        if "period" in fields and data.period is not None:
            budget.period = data.period
        if "start_date" in fields and data.start_date is not None:
            budget.start_date = data.start_date
        self.store.save(budget)
        return self.with_spent(budget)

    def deactivate(self, budget_id: int) -> None:
        budget = self._get(budget_id)
        if budget.is_active:
            budget.is_active = False
            self.store.save(budget)

    def stats(self) -> BudgetStats:
        active = self.list(active_only=True)
        utilizations = [b.percentage for b in active]
        return BudgetStats(
            total_budgets=self.store.count_budgets(self.user_id),
            active_budgets=len(active),
            total_budget_cents=sum(b.budget.amount_cents for b in active),
            total_spent_cents=sum(b.spent_cents for b in active),
            average_utilization=(
                sum(utilizations) / len(utilizations) if utilizations else 0.0
            ),
            over_budget=sum(1 for p in utilizations if p >= 100),
            near_limit=sum(1 for p in utilizations if 90 <= p < 100),
            budgets=active,
        )


@dataclass(frozen=True)
class Overview:
    total_cents: int
    monthly_cents: int
    categories_count: int
    budgets_count: int


@dataclass(frozen=True)
class FullAnalytics:
    total_cents: int
    total_count: int
    monthly_cents: int
    monthly_count: int
    average_daily_cents: float
    breakdown: list[CategoryTotal]
    monthly_trend: list[TrendPoint]
    daily_trend: list[TrendPoint]
    by_period: SpendingByPeriod

    @property
    def top_categories(self) -> list[CategoryTotal]:
        return self.breakdown[:TOP_CATEGORIES]


class AnalyticsService:
    def __init__(self, store: Storage, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def _expenses(self, start: Optional[date] = None) -> list[Expense]:
        filters: list[ExpenseFilter] = [ByUser(self.user_id)]
        if start is not None:
            filters.append(ByDateRange(start=start))
        return self.store.find_expenses(filters, newest_first=False)

    def _categories(self) -> dict[int, ExpenseCategory]:
        return CategoryService(self.store, self.user_id).visible()

    def full(self, today: Optional[date] = None) -> FullAnalytics:
        today = today or local_today()
        expenses = self._expenses()
        this_months = within(expenses, this_month(today))
        return FullAnalytics(
            total_cents=sum_cents(expenses),
            total_count=len(expenses),
            monthly_cents=sum_cents(this_months),
            monthly_count=len(this_months),
            average_daily_cents=average_daily(expenses, today),
            breakdown=category_breakdown(expenses, self._categories()),
            monthly_trend=monthly_trend(expenses, today),
            daily_trend=daily_trend(expenses, today),
            by_period=spending_by_period(expenses, today),
        )

    def monthly_trend(self, today: Optional[date] = None) -> list[TrendPoint]:
        return monthly_trend(self._expenses(), today or local_today())

    def daily_trend(self, today: Optional[date] = None) -> list[TrendPoint]:
        return daily_trend(self._expenses(), today or local_today())

    def spending_by_period(self, today: Optional[date] = None) -> SpendingByPeriod:
        return spending_by_period(self._expenses(), today or local_today())

    def overview(self, today: Optional[date] = None) -> Overview:
        month = this_month(today or local_today())
        user = ByUser(self.user_id)
        return Overview(
            total_cents=self.store.sum_expenses([user]),
            monthly_cents=self.store.sum_expenses(
                [user, ByDateRange(month.start, month.end, end_inclusive=True)]
            ),
            categories_count=len(self.store.list_categories(self.user_id)),
            budgets_count=self.store.count_budgets(self.user_id, active_only=True),
        )

    def categories(self, start: Optional[date] = None) -> list[CategoryTotal]:
        return category_breakdown(self._expenses(start), self._categories())

    def monthly(self, start: Optional[date] = None) -> list[TrendPoint]:
        return monthly_totals(self._expenses(start))

    def daily(self, start: Optional[date] = None) -> list[TrendPoint]:
        return daily_totals(self._expenses(start))
