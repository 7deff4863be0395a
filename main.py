import logging
import tomllib
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from analytics import CategoryTotal, TrendPoint
from config import get_settings
from database import Base, SessionLocal, engine, session_scope
from errors import AppError, AuthError, ValidationError
from models import Expense, ExpenseCategory, User
from money import cents_to_amount
from recommendations import AIAdvisor, RecommendationService, SpendingData
from schemas import (
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    CategoryUpdateIn,
    CustomRecommendationIn,
    ExpenseIn,
    ExpenseUpdateIn,
    ProfileUpdateIn,
    SignInIn,
    SignUpIn,
)
from security import issue_token, read_token
from services import (
    AnalyticsService,
    BudgetService,
    BudgetWithSpent,
    CategoryService,
    ExpenseService,
    UserService,
    ensure_default_categories,
)
from storage import ByCategory, MemoryStorage, SqlStorage, Storage

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

UNCATEGORIZED_PARAM = "uncategorized"

app = FastAPI(title="Personal Finance Tracker")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_app_version() -> str:
    try:
        with open(Path(__file__).with_name("pyproject.toml"), "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


@app.on_event("startup")
def startup_event():
    if settings.storage_backend == "memory":
        app.state.memory_store = MemoryStorage()
        ensure_default_categories(app.state.memory_store)
        logger.info("startup: storage=memory")
        return
    Base.metadata.create_all(engine)
    with session_scope() as session:
        ensure_default_categories(SqlStorage(session))
    logger.info("startup: storage=sql")


def get_store(request: Request) -> Iterator[Storage]:
    if settings.storage_backend == "memory":
        yield request.app.state.memory_store
        return
    session = SessionLocal()
    try:
        yield SqlStorage(session)
    finally:
        session.close()


# Shared by every request; the OpenAI client is built once and reused.
@lru_cache(maxsize=1)
def get_advisor() -> Optional[AIAdvisor]:
    return AIAdvisor.from_settings()


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: Storage = Depends(get_store),
) -> User:
    if credentials is None:
        raise AuthError("Access token required", "MISSING_TOKEN")
    user = store.get_user(read_token(credentials.credentials))
    if not user:
        raise AuthError("Invalid token", "INVALID_TOKEN")
    return user


def ok(message: str, data: object) -> dict:
    return {"message": message, "data": data}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        details.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "code": "VALIDATION_ERROR",
            "details": details,
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": str(exc.detail),
            "code": _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"request: unhandled_error path={request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


# serializers


def user_out(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "avatarUrl": user.avatar_url,
        "createdAt": user.created_at,
        "updatedAt": user.updated_at,
    }


def category_out(category: ExpenseCategory) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "isDefault": category.is_default,
        "userId": category.user_id,
        "createdAt": category.created_at,
    }


def category_brief(category: Optional[ExpenseCategory]) -> Optional[dict]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
    }


def expense_out(expense: Expense, store: Storage) -> dict:
    category = (
        store.get_category(expense.category_id)
        if expense.category_id is not None
        else None
    )
    return {
        "id": expense.id,
        "amount": cents_to_amount(expense.amount_cents),
        "description": expense.description,
        "expenseDate": expense.expense_date,
        "categoryId": expense.category_id,
        "category": category_brief(category),
        "createdAt": expense.created_at,
        "updatedAt": expense.updated_at,
    }


def budget_out(item: BudgetWithSpent) -> dict:
    budget = item.budget
    return {
        "id": budget.id,
        "amount": cents_to_amount(budget.amount_cents),
        "period": budget.period.value,
        "startDate": budget.start_date,
        "endDate": item.end_date,
        "isActive": budget.is_active,
        "categoryId": budget.category_id,
        "category": category_brief(item.category),
        "spent": cents_to_amount(item.spent_cents),
        "percentage": item.percentage,
        "remaining": cents_to_amount(item.remaining_cents),
        "createdAt": budget.created_at,
        "updatedAt": budget.updated_at,
    }


def category_total_out(total: CategoryTotal) -> dict:
    return {
        "categoryId": total.category_id,
        "category": {
            "id": total.category_id,
            "name": total.name,
            "icon": total.icon,
            "color": total.color,
        },
        "amount": cents_to_amount(total.amount_cents),
        "count": total.count,
        "percentage": total.percent,
    }


def trend_out(point: TrendPoint) -> dict:
    return {
        "key": point.key,
        "label": point.label,
        "amount": cents_to_amount(point.amount_cents),
        "count": point.count,
    }


def spending_data_out(data: SpendingData) -> dict:
    return {
        "totalExpenses": cents_to_amount(data.total_cents),
        "monthlyExpenses": cents_to_amount(data.monthly_cents),
        "categoryBreakdown": [
            {
                "category": c.category,
                "amount": cents_to_amount(c.amount_cents),
                "percentage": c.percent,
            }
            for c in data.categories
        ],
        "budgetStatus": [
            {
                "category": b.category,
                "budget": cents_to_amount(b.budget_cents),
                "spent": cents_to_amount(b.spent_cents),
                "percentage": b.percent,
            }
            for b in data.budgets
        ],
    }


# auth and users


@app.post("/api/auth/signup", status_code=201)
def sign_up(data: SignUpIn, store: Storage = Depends(get_store)):
    user = UserService(store).sign_up(data)
    return ok(
        "User created successfully",
        {"user": user_out(user), "token": issue_token(user.id)},
    )


@app.post("/api/auth/signin")
def sign_in(data: SignInIn, store: Storage = Depends(get_store)):
    user = UserService(store).sign_in(data)
    return ok(
        "Signed in successfully",
        {"user": user_out(user), "token": issue_token(user.id)},
    )


@app.get("/api/auth/me")
def me(user: User = Depends(get_current_user)):
    return ok("User retrieved successfully", {"user": user_out(user)})


@app.put("/api/auth/profile")
def auth_update_profile(
    data: ProfileUpdateIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    updated = UserService(store).update_profile(user.id, data)
    return ok("Profile updated successfully", {"user": user_out(updated)})


@app.get("/api/users/profile")
def get_profile(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    user, profile = UserService(store).profile(user.id)
    data = user_out(user)
    if profile is not None:
        data["fullName"] = profile.full_name
        data["avatarUrl"] = profile.avatar_url
    return ok("Profile retrieved successfully", {"profile": data})


@app.put("/api/users/profile")
def update_profile(
    data: ProfileUpdateIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    updated = UserService(store).update_profile(user.id, data)
    return ok("Profile updated successfully", {"profile": user_out(updated)})


# categories


@app.get("/api/categories")
def list_categories(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    categories = CategoryService(store, user.id).list_all()
    return ok(
        "Categories retrieved successfully",
        {"categories": [category_out(c) for c in categories]},
    )


@app.get("/api/categories/default")
def default_categories(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    categories = CategoryService(store, user.id).defaults()
    return ok(
        "Default categories retrieved successfully",
        {"categories": [category_out(c) for c in categories]},
    )


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    category = CategoryService(store, user.id).get(category_id)
    return ok("Category retrieved successfully", {"category": category_out(category)})


@app.post("/api/categories", status_code=201)
def create_category(
    data: CategoryIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    category = CategoryService(store, user.id).create(data)
    return ok("Category created successfully", {"category": category_out(category)})


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    data: CategoryUpdateIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    category = CategoryService(store, user.id).update(category_id, data)
    return ok("Category updated successfully", {"category": category_out(category)})


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    CategoryService(store, user.id).delete(category_id)
    return ok("Category deleted successfully", None)


# expenses


def _category_filter(raw: Optional[str]) -> Optional[ByCategory]:
    if raw is None or raw == "":
        return None
    if raw.lower() == UNCATEGORIZED_PARAM:
        return ByCategory(None)
    try:
        return ByCategory(int(raw))
    except ValueError as exc:
        raise ValidationError(
            "categoryId must be an id or 'uncategorized'",
            details=[{"field": "categoryId", "message": "Invalid category id"}],
        ) from exc


@app.get("/api/expenses")
def list_expenses(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    limit: int = Query(50),
    offset: int = Query(0),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    page = ExpenseService(store, user.id).list(
        category=_category_filter(category_id),
        start=start_date,
        end=end_date,
        limit=limit,
        offset=offset,
    )
    return ok(
        "Expenses retrieved successfully",
        {
            "expenses": [expense_out(e, store) for e in page.expenses],
            "pagination": {
                "total": page.total,
                "limit": page.limit,
                "offset": page.offset,
                "hasMore": page.has_more,
            },
        },
    )


@app.get("/api/expenses/stats")
def expense_stats(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    stats = ExpenseService(store, user.id).stats(start=start_date, end=end_date)
    return ok(
        "Expense statistics retrieved successfully",
        {
            "totalAmount": cents_to_amount(stats.total_cents),
            "totalCount": stats.total_count,
            "monthlyAmount": cents_to_amount(stats.monthly_cents),
            "categoryBreakdown": [category_total_out(t) for t in stats.breakdown],
        },
    )


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    expense = ExpenseService(store, user.id).get(expense_id)
    return ok("Expense retrieved successfully", {"expense": expense_out(expense, store)})


@app.post("/api/expenses", status_code=201)
def create_expense(
    data: ExpenseIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    expense = ExpenseService(store, user.id).create(data)
    return ok("Expense created successfully", {"expense": expense_out(expense, store)})


@app.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    data: ExpenseUpdateIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    expense = ExpenseService(store, user.id).update(expense_id, data)
    return ok("Expense updated successfully", {"expense": expense_out(expense, store)})


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    ExpenseService(store, user.id).delete(expense_id)
    return ok("Expense deleted successfully", None)


# budgets


@app.get("/api/budgets")
def list_budgets(
    active_only: bool = Query(True, alias="activeOnly"),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    budgets = BudgetService(store, user.id).list(active_only=active_only)
    return ok(
        "Budgets retrieved successfully", {"budgets": [budget_out(b) for b in budgets]}
    )


@app.get("/api/budgets/stats")
def budget_stats(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    stats = BudgetService(store, user.id).stats()
    return ok(
        "Budget statistics retrieved successfully",
        {
            "totalBudgets": stats.total_budgets,
            "activeBudgets": stats.active_budgets,
            "totalBudgetAmount": cents_to_amount(stats.total_budget_cents),
            "totalSpent": cents_to_amount(stats.total_spent_cents),
            "totalRemaining": cents_to_amount(stats.total_remaining_cents),
            "averageUtilization": stats.average_utilization,
            "overBudget": stats.over_budget,
            "nearLimit": stats.near_limit,
            "budgets": [budget_out(b) for b in stats.budgets],
        },
    )


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    budget = BudgetService(store, user.id).get(budget_id)
    return ok("Budget retrieved successfully", {"budget": budget_out(budget)})


@app.post("/api/budgets", status_code=201)
def create_budget(
    data: BudgetIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    budget = BudgetService(store, user.id).create(data)
    return ok("Budget created successfully", {"budget": budget_out(budget)})


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    budget = BudgetService(store, user.id).update(budget_id, data)
    return ok("Budget updated successfully", {"budget": budget_out(budget)})


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    BudgetService(store, user.id).deactivate(budget_id)
    return ok("Budget deleted successfully", None)


# analytics


@app.get("/api/analytics")
def analytics(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    result = AnalyticsService(store, user.id).full()
    by_period = result.by_period
    return ok(
        "Analytics retrieved successfully",
        {
            "totalExpenses": cents_to_amount(result.total_cents),
            "totalCount": result.total_count,
            "monthlyExpenses": cents_to_amount(result.monthly_cents),
            "monthlyCount": result.monthly_count,
            "averageDaily": cents_to_amount(round(result.average_daily_cents)),
            "categoryBreakdown": [category_total_out(t) for t in result.breakdown],
            "monthlyTrend": [trend_out(p) for p in result.monthly_trend],
            "dailyTrend": [trend_out(p) for p in result.daily_trend],
            "topCategories": [category_total_out(t) for t in result.top_categories],
            "spendingByPeriod": {
                "thisWeek": cents_to_amount(by_period.this_week),
                "thisMonth": cents_to_amount(by_period.this_month),
                "thisYear": cents_to_amount(by_period.this_year),
                "lastMonth": cents_to_amount(by_period.last_month),
                "lastYear": cents_to_amount(by_period.last_year),
            },
        },
    )


@app.get("/api/analytics/monthly-trend")
def analytics_monthly_trend(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    points = AnalyticsService(store, user.id).monthly_trend()
    return ok(
        "Monthly trend retrieved successfully",
        {"monthlyTrend": [trend_out(p) for p in points]},
    )


@app.get("/api/analytics/daily-trend")
def analytics_daily_trend(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    points = AnalyticsService(store, user.id).daily_trend()
    return ok(
        "Daily trend retrieved successfully",
        {"dailyTrend": [trend_out(p) for p in points]},
    )


@app.get("/api/analytics/spending-by-period")
def analytics_spending_by_period(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    by_period = AnalyticsService(store, user.id).spending_by_period()
    return ok(
        "Spending by period retrieved successfully",
        {
            "thisWeek": cents_to_amount(by_period.this_week),
            "thisMonth": cents_to_amount(by_period.this_month),
            "thisYear": cents_to_amount(by_period.this_year),
            "lastMonth": cents_to_amount(by_period.last_month),
            "lastYear": cents_to_amount(by_period.last_year),
        },
    )


@app.get("/api/analytics/overview")
def analytics_overview(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    overview = AnalyticsService(store, user.id).overview()
    return ok(
        "Overview retrieved successfully",
        {
            "totalExpenses": cents_to_amount(overview.total_cents),
            "monthlyExpenses": cents_to_amount(overview.monthly_cents),
            "categoriesCount": overview.categories_count,
            "budgetsCount": overview.budgets_count,
        },
    )


@app.get("/api/analytics/categories")
def analytics_categories(
    start_date: Optional[date] = Query(None, alias="startDate"),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    totals = AnalyticsService(store, user.id).categories(start_date)
    return ok(
        "Category analytics retrieved successfully",
        [
            {
                "category": t.name,
                "amount": cents_to_amount(t.amount_cents),
                "color": t.color,
            }
            for t in totals
        ],
    )


@app.get("/api/analytics/monthly")
def analytics_monthly(
    start_date: Optional[date] = Query(None, alias="startDate"),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    points = AnalyticsService(store, user.id).monthly(start_date)
    return ok(
        "Monthly analytics retrieved successfully",
        [{"month": p.label, "amount": cents_to_amount(p.amount_cents)} for p in points],
    )


@app.get("/api/analytics/daily")
def analytics_daily(
    start_date: Optional[date] = Query(None, alias="startDate"),
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
):
    points = AnalyticsService(store, user.id).daily(start_date)
    return ok(
        "Daily analytics retrieved successfully",
        [{"date": p.label, "amount": cents_to_amount(p.amount_cents)} for p in points],
    )


# recommendations


@app.get("/api/ai/recommendations")
def ai_recommendations(
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
    advisor: Optional[AIAdvisor] = Depends(get_advisor),
):
    recs = RecommendationService(store, user.id, advisor).recommendations()
    return ok(
        "AI recommendations generated successfully",
        {"recommendations": [r.to_dict() for r in recs]},
    )


@app.post("/api/ai/recommendations")
def ai_custom_recommendations(
    data: CustomRecommendationIn,
    user: User = Depends(get_current_user),
    store: Storage = Depends(get_store),
    advisor: Optional[AIAdvisor] = Depends(get_advisor),
):
    recs = RecommendationService(store, user.id, advisor).custom_recommendations(
        data.prompt
    )
    return ok(
        "AI recommendations generated successfully",
        {"recommendations": [r.to_dict() for r in recs]},
    )


@app.get("/api/ai/spending-data")
def ai_spending_data(
    user: User = Depends(get_current_user), store: Storage = Depends(get_store)
):
    data = RecommendationService(store, user.id).spending_data()
    return ok("Spending data retrieved successfully", spending_data_out(data))


# service info


@app.get("/health")
def health():
    return {
        "status": "OK",
        "timestamp": datetime.utcnow().isoformat(),
        "version": APP_VERSION,
        "storage": settings.storage_backend,
    }


@app.get("/")
def root():
    return {
        "message": "Personal Finance Tracker API",
        "version": APP_VERSION,
        "docs": "/docs",
        "health": "/health",
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
