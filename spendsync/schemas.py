from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from spendsync.currency_conversion import validate_supported_currency
from spendsync.recurring import normalize_frequency

TransactionType = Literal["income", "expense"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CredentialsPayload(ApiModel):
    username: str
    password: str


class UserResponse(ApiModel):
    id: int
    username: str
    created_at: datetime | None = None


class ExpensePayload(ApiModel):
    amount: int = Field(gt=0)
    currency: str = "USD"
    description: str = Field(min_length=1)
    date: datetime
    category: str = Field(min_length=1)
    type: TransactionType
    is_recurring: bool = False
    recurring_id: int | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return validate_supported_currency(value)

    @field_validator("description", "category")
    @classmethod
    def strip_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Must not be blank")
        return stripped


class ExpenseUpdatePayload(ApiModel):
    amount: int | None = Field(default=None, gt=0)
    currency: str | None = None
    description: str | None = None
    date: datetime | None = None
    category: str | None = None
    type: TransactionType | None = None
    is_recurring: bool | None = None
    recurring_id: int | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str | None) -> str | None:
        return validate_supported_currency(value) if value is not None else None


class ExpenseResponse(ApiModel):
    id: int
    user_id: int
    amount: int
    original_amount: int | None = None
    currency: str
    base_currency: str
    exchange_rate: str | None = None
    description: str
    date: datetime
    category: str
    type: str
    is_recurring: bool = False
    recurring_id: int | None = None
    created_at: datetime | None = None


class StatsResponse(ApiModel):
    total_income: int
    total_expense: int
    balance: int
    monthly_income: int
    currency: str


class DailySpendingEntry(ApiModel):
    date: date
    amount: int


class RecurringPayload(ApiModel):
    amount: int = Field(gt=0)
    currency: str = "USD"
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)
    frequency: str = "monthly"
    next_due_date: datetime
    active: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return validate_supported_currency(value)

    @field_validator("frequency")
    @classmethod
    def validate_frequency(cls, value: str) -> str:
        return normalize_frequency(value)


class RecurringResponse(ApiModel):
    id: int
    user_id: int
    amount: int
    currency: str
    description: str
    category: str
    frequency: str
    next_due_date: datetime
    active: bool


class RecurringProcessResponse(ApiModel):
    created: int


class InvoiceResponse(ApiModel):
    id: int
    user_id: int
    file_url: str
    processed_data: dict[str, Any] | None = None
    status: str
    created_at: datetime | None = None


class InvoiceProcessResponse(ApiModel):
    success: bool
    data: dict[str, Any]


class SettingsPayload(ApiModel):
    base_currency: str

    @field_validator("base_currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return validate_supported_currency(value)


class SettingsResponse(ApiModel):
    id: int
    user_id: int
    base_currency: str
    updated_at: datetime | None = None
