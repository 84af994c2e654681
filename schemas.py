from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import BudgetPeriod, Direction

AmountField = Union[str, int, float]


class RegisterIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class ProfileIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr


class PasswordChangeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(
        ..., alias="newPassword", min_length=6, max_length=128
    )


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    slug: Optional[str] = Field(default=None, max_length=60)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)


class TagUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    slug: Optional[str] = Field(default=None, max_length=60)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=16)


class TransactionIn(BaseModel):
    amount: AmountField
    description: str = Field(..., max_length=500)
    direction: Direction
    occurred_at: Optional[datetime] = None
    merchant: Optional[str] = Field(default=None, max_length=120)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tag_id: Optional[int] = None


class TransactionUpdateIn(BaseModel):
    amount: Optional[AmountField] = None
    description: Optional[str] = Field(default=None, max_length=500)
    direction: Optional[Direction] = None
    occurred_at: Optional[datetime] = None
    merchant: Optional[str] = Field(default=None, max_length=120)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tag_id: Optional[int] = None


class BudgetCategoryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tag_id: int = Field(..., alias="tagId")
    amount: AmountField


class BudgetIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=100)
    amount: AmountField
    period: BudgetPeriod
    start_date: date = Field(..., alias="startDate")
    end_date: date = Field(..., alias="endDate")
    categories: list[BudgetCategoryIn] = Field(default_factory=list)


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[AmountField] = None
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = Field(default=None, alias="startDate")
    end_date: Optional[date] = Field(default=None, alias="endDate")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    categories: Optional[list[BudgetCategoryIn]] = None
