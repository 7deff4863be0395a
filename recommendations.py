"""Spending advisories: fixed threshold rules plus optional AI suggestions.

The rule pass always runs first and on its own; the AI advisor is best-effort
and any failure there degrades to the rule output (or the fixed fallbacks on
the custom-prompt path) instead of failing the request.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import Optional

from openai import OpenAI, OpenAIError

from config import get_settings
from errors import DependencyUnavailable
from money import percentage
from periods import local_today, this_month
from services import BudgetService
from storage import ByDateRange, ByUser, Storage

logger = logging.getLogger(__name__)

TYPES = ("savings", "budget", "category", "trend")
IMPACTS = ("high", "medium", "low")

TOP_CATEGORY_SHARE = 40
BUDGET_ALERT_PERCENT = 90
DIVERSIFICATION_CATEGORIES = 5
UNCATEGORIZED_LABEL = "Other"

SYSTEM_PROMPT = (
    "You are a personal finance advisor. Provide practical, actionable "
    "recommendations based on spending data. Always respond with valid JSON "
    "array format."
)

_LINE_RE = re.compile(
    r"^\s*\d+\.\s*(?:\[([^\]]+)\]|(.+?))\s+-\s+(.+?)\s*\(Impact:\s*(High|Medium|Low)\)",
    re.IGNORECASE,
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(frozen=True)
class Recommendation:
    type: str
    title: str
    description: str
    impact: str
    actionable: bool = True

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class CategorySpend:
    category: str
    amount_cents: int
    percent: float


@dataclass(frozen=True)
class BudgetStatus:
    category: str
    budget_cents: int
    spent_cents: int
    percent: float


@dataclass(frozen=True)
class SpendingData:
    total_cents: int
    monthly_cents: int
    categories: list[CategorySpend]
    budgets: list[BudgetStatus]


ONBOARDING_RECOMMENDATIONS = [
    Recommendation(
        type="trend",
        title="Start Tracking Your Expenses",
        description=(
            "Add your everyday expenses to get personalized insights into "
            "where your money goes."
        ),
        impact="medium",
    ),
    Recommendation(
        type="trend",
        title="Create Your First Budget",
        description=(
            "Set a monthly budget for your main spending category to stay in "
            "control and receive alerts before you overspend."
        ),
        impact="medium",
    ),
]

FALLBACK_RECOMMENDATIONS = [
    Recommendation(
        type="savings",
        title="Build an Emergency Fund",
        description=(
            "Aim to set aside three to six months of essential expenses in a "
            "separate savings account."
        ),
        impact="high",
    ),
    Recommendation(
        type="budget",
        title="Follow the 50/30/20 Rule",
        description=(
            "Allocate 50% of income to needs, 30% to wants and 20% to savings "
            "and debt repayment."
        ),
        impact="medium",
    ),
    Recommendation(
        type="category",
        title="Review Subscriptions",
        description=(
            "Cancel recurring subscriptions and memberships you no longer use."
        ),
        impact="medium",
    ),
    Recommendation(
        type="savings",
        title="Automate Your Savings",
        description=(
            "Schedule an automatic transfer to savings right after each payday."
        ),
        impact="medium",
    ),
    Recommendation(
        type="trend",
        title="Track Spending Weekly",
        description=(
            "Review your expenses once a week to catch unusual spending early."
        ),
        impact="low",
    ),
]


def _money(cents: float) -> str:
    return f"${cents / 100:.2f}"


def rule_based_recommendations(
    data: SpendingData, today: date
) -> list[Recommendation]:
    recs: list[Recommendation] = []

    if data.categories:
        top = data.categories[0]
        if top.percent > TOP_CATEGORY_SHARE:
            recs.append(
                Recommendation(
                    type="category",
                    title=f"High {top.category} Spending",
                    description=(
                        f"{top.category} represents {top.percent:.1f}% of your "
                        f"expenses ({_money(top.amount_cents)}). Consider "
                        "reviewing these expenses for potential savings."
                    ),
                    impact="high",
                )
            )

    for status in data.budgets:
        if status.percent >= BUDGET_ALERT_PERCENT:
            recs.append(
                Recommendation(
                    type="budget",
                    title=f"Budget Alert: {status.category}",
                    description=(
                        f"You've spent {status.percent:.1f}% of your "
                        f"{status.category} budget ({_money(status.spent_cents)} "
                        f"of {_money(status.budget_cents)})."
                    ),
                    impact="high" if status.percent >= 100 else "medium",
                )
            )

    if data.monthly_cents > 0:
        daily_average = data.monthly_cents / today.day
        recs.append(
            Recommendation(
                type="savings",
                title="Daily Spending Insight",
                description=(
                    "Your daily average spending this month is "
                    f"{_money(daily_average)}. Reducing by just 10% could save "
                    f"you {_money(daily_average * 0.1 * 30)} per month."
                ),
                impact="medium",
            )
        )

    if len(data.categories) > DIVERSIFICATION_CATEGORIES:
        recs.append(
            Recommendation(
                type="trend",
                title="Spending Diversification",
                description=(
                    f"You have expenses across {len(data.categories)} "
                    "categories. Consider consolidating similar expenses or "
                    "focusing on your top 3-4 spending categories for better "
                    "budget control."
                ),
                impact="low",
            )
        )

    return recs


def build_prompt(data: SpendingData) -> str:
    categories = "\n".join(
        f"- {c.category}: {_money(c.amount_cents)} ({c.percent:.1f}%)"
        for c in data.categories
    )
    budgets = "\n".join(
        f"- {b.category}: {_money(b.spent_cents)} of {_money(b.budget_cents)} "
        f"({b.percent:.1f}%)"
        for b in data.budgets
    )
    return f"""As a personal finance advisor, analyze this spending data and provide 3-5 specific, actionable recommendations:

Spending Summary:
- Total Expenses: {_money(data.total_cents)}
- This Month: {_money(data.monthly_cents)}

Category Breakdown:
{categories or "- none"}

Budget Status:
{budgets or "- none"}

Provide recommendations in this JSON format:
[
  {{
    "type": "savings|budget|category|trend",
    "title": "Recommendation Title",
    "description": "Detailed description of the recommendation",
    "impact": "high|medium|low",
    "actionable": true
  }}
]

Focus on practical, actionable advice for improving financial health."""


def _from_json_item(item: object) -> Optional[Recommendation]:
    if not isinstance(item, dict):
        return None
    kind = str(item.get("type", "")).strip().lower()
    impact = str(item.get("impact", "")).strip().lower()
    title = item.get("title")
    description = item.get("description")
    if kind not in TYPES or impact not in IMPACTS:
        return None
    if not isinstance(title, str) or not title.strip():
        return None
    if not isinstance(description, str) or not description.strip():
        return None
    actionable = item.get("actionable", True)
    return Recommendation(
        type=kind,
        title=title.strip(),
        description=description.strip(),
        impact=impact,
        actionable=actionable if isinstance(actionable, bool) else True,
    )


def parse_ai_recommendations(text: str) -> list[Recommendation]:
    """Parse model output given as a JSON array or as numbered lines.

    Numbered lines look like ``1. [Title] - Description (Impact: High)`` and
    become ``savings`` advisories. Entries that do not fit are dropped.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict):
        payload = payload.get("recommendations")
    if isinstance(payload, list):
        return [rec for rec in map(_from_json_item, payload) if rec is not None]

    recs = []
    for line in cleaned.splitlines():
        match = _LINE_RE.match(line)
        if not match:
            continue
        bracketed, plain, description, impact = match.groups()
        title = bracketed or plain
        recs.append(
            Recommendation(
                type="savings",
                title=title.strip(),
                description=description.strip(),
                impact=impact.lower(),
            )
        )
    return recs


class AIAdvisor:
    """Chat-completion client that turns prompts into advisories."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls) -> "AIAdvisor":
        settings = get_settings()
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.ai_timeout_secs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def client(self) -> OpenAI:
        if self._client is None:
            if not self.api_key:
                raise DependencyUnavailable("OpenAI API key not configured")
            self._client = OpenAI(
                api_key=self.api_key, timeout=self.timeout, max_retries=1
            )
        return self._client

    def complete(self, prompt: str) -> str:
        client = self.client()
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=1000,
            )
        except OpenAIError as exc:
            raise DependencyUnavailable(f"AI request failed: {exc}") from exc
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise DependencyUnavailable("No response from AI service")
        return content

    def recommend(self, prompt: str) -> list[Recommendation]:
        recs = parse_ai_recommendations(self.complete(prompt))
        if not recs:
            raise DependencyUnavailable("AI response could not be parsed")
        return recs


class RecommendationService:
    def __init__(
        self, store: Storage, user_id: int, advisor: Optional[AIAdvisor] = None
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.advisor = advisor

    def spending_data(self, today: Optional[date] = None) -> SpendingData:
        today = today or local_today()
        expenses = self.store.find_expenses([ByUser(self.user_id)], newest_first=False)
        names = {c.id: c.name for c in self.store.list_categories(self.user_id)}

        totals: dict[str, int] = {}
        for expense in expenses:
            name = names.get(expense.category_id, UNCATEGORIZED_LABEL)
            totals[name] = totals.get(name, 0) + expense.amount_cents
        total = sum(totals.values())
        categories = sorted(
            (
                CategorySpend(name, cents, percentage(cents, total))
                for name, cents in totals.items()
            ),
            key=lambda c: c.amount_cents,
            reverse=True,
        )

        month = this_month(today)
        monthly = self.store.sum_expenses(
            [
                ByUser(self.user_id),
                ByDateRange(month.start, month.end, end_inclusive=True),
            ]
        )

        budgets = [
            BudgetStatus(
                category=b.category.name if b.category else UNCATEGORIZED_LABEL,
                budget_cents=b.budget.amount_cents,
                spent_cents=b.spent_cents,
                percent=b.percentage,
            )
            for b in BudgetService(self.store, self.user_id).list(active_only=True)
        ]
        return SpendingData(
            total_cents=total,
            monthly_cents=monthly,
            categories=categories,
            budgets=budgets,
        )

    def _ask_advisor(self, prompt: str) -> list[Recommendation]:
        if self.advisor is None or not self.advisor.configured:
            raise DependencyUnavailable("AI advisor not configured")
        return self.advisor.recommend(prompt)

    def recommendations(self, today: Optional[date] = None) -> list[Recommendation]:
        today = today or local_today()
        data = self.spending_data(today)
        recs = rule_based_recommendations(data, today)

        try:
            recs.extend(self._ask_advisor(build_prompt(data)))
        except DependencyUnavailable as exc:
            logger.warning(
                f"recommendations: ai_unavailable user_id={self.user_id} "
                f"reason={exc.message}"
            )

        if not recs:
            recs = list(ONBOARDING_RECOMMENDATIONS)
        return recs

    def custom_recommendations(self, prompt: str) -> list[Recommendation]:
        try:
            return self._ask_advisor(prompt)
        except DependencyUnavailable as exc:
            logger.warning(
                f"recommendations: custom_fallback user_id={self.user_id} "
                f"reason={exc.message}"
            )
            return list(FALLBACK_RECOMMENDATIONS)
