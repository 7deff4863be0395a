"""Seed default categories plus a demo account with sample data.

    python seed.py            # categories and demo user
    python seed.py --no-demo  # categories only
"""

import argparse
import logging
from datetime import timedelta
from decimal import Decimal

from database import Base, engine, session_scope
from models import Budget, BudgetPeriod, Expense
from money import to_cents
from periods import local_today, month_start
from schemas import SignUpIn
from services import UserService, ensure_default_categories
from storage import SqlStorage, Storage

logger = logging.getLogger(__name__)

DEMO_EMAIL = "demo@financemanager.com"
DEMO_PASSWORD = "demo123"

DEMO_EXPENSES = [
    ("25.50", "Lunch at restaurant", "Food & Dining", 1),
    ("15.00", "Uber ride", "Transportation", 2),
    ("89.99", "Grocery shopping", "Groceries", 3),
    ("12.00", "Netflix subscription", "Entertainment", 5),
    ("45.00", "Gas bill", "Bills & Utilities", 7),
    ("120.00", "Doctor visit", "Healthcare", 10),
    ("35.00", "Coffee and snacks", "Food & Dining", 12),
    ("200.00", "Online shopping", "Shopping", 15),
    ("18.50", "Public transport", "Transportation", 18),
    ("75.00", "Textbooks", "Education", 20),
]

DEMO_BUDGETS = [
    ("500", "Food & Dining"),
    ("200", "Transportation"),
    ("100", "Entertainment"),
    ("300", "Groceries"),
]


def seed_demo(store: Storage) -> bool:
    """Create the demo user with expenses and monthly budgets; False if present."""
    if store.get_user_by_email(DEMO_EMAIL):
        logger.info(f"seed: demo_exists email={DEMO_EMAIL}")
        return False

    user = UserService(store).sign_up(
        SignUpIn(email=DEMO_EMAIL, password=DEMO_PASSWORD, full_name="Demo User")
    )
    by_name = {c.name: c for c in store.list_categories(None, defaults_only=True)}
    today = local_today()

    for amount, description, category_name, days_ago in DEMO_EXPENSES:
        category = by_name.get(category_name)
        store.add_expense(
            Expense(
                user_id=user.id,
                category_id=category.id if category else None,
                amount_cents=to_cents(Decimal(amount)),
                description=description,
                expense_date=today - timedelta(days=days_ago),
            )
        )

    for amount, category_name in DEMO_BUDGETS:
        category = by_name.get(category_name)
        store.add_budget(
            Budget(
                user_id=user.id,
                category_id=category.id if category else None,
                amount_cents=to_cents(Decimal(amount)),
                period=BudgetPeriod.monthly,
                start_date=month_start(today),
                is_active=True,
            )
        )

    logger.info(
        f"seed: demo_created user_id={user.id} expenses={len(DEMO_EXPENSES)} "
        f"budgets={len(DEMO_BUDGETS)}"
    )
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the finance database.")
    parser.add_argument(
        "--no-demo",
        action="store_true",
        help="Only create the default categories.",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    Base.metadata.create_all(engine)
    with session_scope() as session:
        store = SqlStorage(session)
        ensure_default_categories(store)
        if not args.no_demo:
            seed_demo(store)


if __name__ == "__main__":
    main()
