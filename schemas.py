from datetime import date
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from models import BudgetPeriod

Amount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid"
    )


class SignUpIn(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    full_name: str = Field(..., min_length=2, max_length=100)


class SignInIn(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ProfileUpdateIn(CamelModel):
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    avatar_url: Optional[str] = Field(
        default=None, max_length=500, pattern=r"^https?://\S+$"
    )


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class CategoryUpdateIn(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=10)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")


class ExpenseIn(CamelModel):
    amount: Amount
    description: str = Field(..., min_length=1, max_length=500)
    expense_date: date
    category_id: Optional[int] = None


class ExpenseUpdateIn(CamelModel):
    amount: Optional[Amount] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    expense_date: Optional[date] = None
    category_id: Optional[int] = None


class BudgetIn(CamelModel):
    amount: Amount
    period: BudgetPeriod
    start_date: date
    category_id: Optional[int] = None


class BudgetUpdateIn(CamelModel):
    amount: Optional[Amount] = None
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    is_active: Optional[bool] = None
    category_id: Optional[int] = None


class CustomRecommendationIn(CamelModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
