import json
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from errors import DependencyUnavailable
from recommendations import (
    FALLBACK_RECOMMENDATIONS,
    ONBOARDING_RECOMMENDATIONS,
    AIAdvisor,
    BudgetStatus,
    CategorySpend,
    RecommendationService,
    SpendingData,
    parse_ai_recommendations,
    rule_based_recommendations,
)
from schemas import BudgetIn, ExpenseIn
from services import BudgetService, ExpenseService


class FakeAdvisor(AIAdvisor):
    def __init__(self, reply=None, error=None):
        super().__init__(api_key="test-key", model="test-model", timeout=1)
        self.reply = reply
        self.error = error
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


def _fake_client(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def _data(categories=(), budgets=(), total=0, monthly=0):
    return SpendingData(
        total_cents=total,
        monthly_cents=monthly,
        categories=list(categories),
        budgets=list(budgets),
    )


def test_top_category_rule() -> None:
    data = _data(
        categories=[
            CategorySpend("Food", 45000, 45.0),
            CategorySpend("Travel", 55000 - 45000, 10.0),
        ],
        total=100000,
    )
    recs = rule_based_recommendations(data, date(2024, 5, 10))
    assert [r.type for r in recs] == ["category"]
    assert recs[0].title == "High Food Spending"
    assert recs[0].impact == "high"
    assert "45.0% of your expenses ($450.00)" in recs[0].description


@pytest.mark.parametrize(
    ("percent", "expected"),
    [(89.99, None), (90.0, "medium"), (99.9, "medium"), (100.0, "high"), (140.0, "high")],
)
def test_budget_rule_thresholds(percent, expected) -> None:
    data = _data(budgets=[BudgetStatus("Food", 50000, int(500 * percent), percent)])
    recs = [r for r in rule_based_recommendations(data, date(2024, 5, 10)) if r.type == "budget"]
    if expected is None:
        assert recs == []
    else:
        assert len(recs) == 1
        assert recs[0].impact == expected
        assert recs[0].title == "Budget Alert: Food"


def test_daily_average_rule_uses_day_of_month() -> None:
    recs = rule_based_recommendations(_data(monthly=30000), date(2024, 5, 10))
    assert [r.type for r in recs] == ["savings"]
    assert "$30.00" in recs[0].description
    assert "$90.00 per month" in recs[0].description


def test_diversification_rule_needs_more_than_five_categories() -> None:
    five = [CategorySpend(f"C{i}", 100, 20.0) for i in range(5)]
    six = [CategorySpend(f"C{i}", 100, 100 / 6) for i in range(6)]
    assert rule_based_recommendations(_data(categories=five), date(2024, 5, 10)) == []
    recs = rule_based_recommendations(_data(categories=six), date(2024, 5, 10))
    assert [(r.type, r.impact) for r in recs] == [("trend", "low")]


def test_parse_json_array_drops_invalid_entries() -> None:
    text = json.dumps(
        [
            {"type": "savings", "title": "Cook at home", "description": "Save", "impact": "High"},
            {"type": "unknown", "title": "x", "description": "y", "impact": "low"},
            {"type": "budget", "title": "", "description": "y", "impact": "low"},
            "not an object",
        ]
    )
    recs = parse_ai_recommendations(f"```json\n{text}\n```")
    assert [(r.type, r.title, r.impact, r.actionable) for r in recs] == [
        ("savings", "Cook at home", "high", True)
    ]


def test_parse_numbered_lines() -> None:
    text = (
        "Here are some ideas:\n"
        "1. [Cut Subscriptions] - Cancel unused streaming services (Impact: High)\n"
        "2. Meal Prep - Plan lunches for the week (Impact: medium)\n"
        "3. Something without an impact\n"
    )
    recs = parse_ai_recommendations(text)
    assert [(r.title, r.impact, r.type) for r in recs] == [
        ("Cut Subscriptions", "high", "savings"),
        ("Meal Prep", "medium", "savings"),
    ]


def test_parse_keeps_hyphens_inside_titles() -> None:
    text = (
        "1. [Cut Take-out Meals] - Cook at home twice a week (Impact: High)\n"
        "2. Re-shop Insurance - Compare car insurance quotes yearly (Impact: Low)\n"
    )
    recs = parse_ai_recommendations(text)
    assert [(r.title, r.description, r.impact) for r in recs] == [
        ("Cut Take-out Meals", "Cook at home twice a week", "high"),
        ("Re-shop Insurance", "Compare car insurance quotes yearly", "low"),
    ]


def test_parse_garbage_is_empty() -> None:
    assert parse_ai_recommendations("I cannot help with that.") == []


def test_advisor_without_key_is_unavailable() -> None:
    advisor = AIAdvisor(api_key="", model="m", timeout=1)
    assert not advisor.configured
    with pytest.raises(DependencyUnavailable):
        advisor.client()


def test_advisor_wraps_client_errors() -> None:
    def create(**kwargs):
        raise OpenAIError("connection reset")

    advisor = AIAdvisor(api_key="k", model="m", timeout=1, client=_fake_client(create))
    with pytest.raises(DependencyUnavailable):
        advisor.complete("hello")


def test_advisor_parses_completion() -> None:
    seen = {}

    def create(**kwargs):
        seen.update(kwargs)
        content = '[{"type": "trend", "title": "T", "description": "D", "impact": "low"}]'
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))]
        )

    advisor = AIAdvisor(api_key="k", model="m", timeout=1, client=_fake_client(create))
    recs = advisor.recommend("prompt")
    assert [r.title for r in recs] == ["T"]
    assert seen["model"] == "m"
    assert seen["messages"][-1] == {"role": "user", "content": "prompt"}


def test_new_user_gets_onboarding_advice(store, user) -> None:
    recs = RecommendationService(store, user.id).recommendations(date(2024, 5, 10))
    assert recs == ONBOARDING_RECOMMENDATIONS
    assert {r.type for r in recs} == {"trend"}


def test_ai_failure_keeps_rule_output(store, user, categories) -> None:
    ExpenseService(store, user.id).create(
        ExpenseIn(
            amount=Decimal("50"),
            description="Dinner",
            expense_date=date(2024, 5, 2),
            category_id=categories["Food & Dining"].id,
        )
    )
    advisor = FakeAdvisor(error=DependencyUnavailable("timeout"))
    recs = RecommendationService(store, user.id, advisor).recommendations(date(2024, 5, 10))

    assert [r.type for r in recs] == ["category", "savings"]
    assert advisor.prompts and "Food & Dining" in advisor.prompts[0]


def test_ai_output_is_appended_after_rules(store, user, categories) -> None:
    ExpenseService(store, user.id).create(
        ExpenseIn(
            amount=Decimal("50"),
            description="Dinner",
            expense_date=date(2024, 5, 2),
            category_id=categories["Food & Dining"].id,
        )
    )
    advisor = FakeAdvisor(reply="1. [Plan Meals] - Cook more often (Impact: Low)")
    recs = RecommendationService(store, user.id, advisor).recommendations(date(2024, 5, 10))
    assert [r.title for r in recs][-1] == "Plan Meals"


def test_budget_advisory_from_spending_data(store, user, categories) -> None:
    food = categories["Food & Dining"]
    ExpenseService(store, user.id).create(
        ExpenseIn(
            amount=Decimal("450"),
            description="Groceries",
            expense_date=date(2024, 5, 3),
            category_id=food.id,
        )
    )
    BudgetService(store, user.id).create(
        BudgetIn(
            amount=Decimal("500"),
            period="monthly",
            start_date=date(2024, 5, 1),
            category_id=food.id,
        )
    )
    service = RecommendationService(store, user.id)
    data = service.spending_data(date(2024, 5, 10))
    assert data.monthly_cents == 45000
    assert data.budgets[0].percent == 90

    budget_recs = [r for r in service.recommendations(date(2024, 5, 10)) if r.type == "budget"]
    assert [(r.title, r.impact) for r in budget_recs] == [("Budget Alert: Food & Dining", "medium")]


def test_custom_prompt_falls_back_to_generic_advice(store, user) -> None:
    service = RecommendationService(store, user.id, FakeAdvisor(error=DependencyUnavailable("down")))
    assert service.custom_recommendations("help me save") == FALLBACK_RECOMMENDATIONS
    assert len(FALLBACK_RECOMMENDATIONS) == 5
    assert RecommendationService(store, user.id).custom_recommendations("x") == FALLBACK_RECOMMENDATIONS
