from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import BillingCycle, SubscriptionStatus


def _upper_or_none(value: object) -> object:
    if isinstance(value, str):
        clean = value.strip()
        return clean.upper() if clean else None
    return value


class AverageAmount(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal
    currency_code: Optional[str] = Field(default=None, alias="iso_currency_code")


class RawStream(BaseModel):
    """A recurring stream as reported by the bank-aggregation provider."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stream_id: str
    description: str = ""
    frequency: Optional[str] = None
    average_amount: AverageAmount
    is_active: bool = True
    category: Optional[str] = None
    predicted_next_date: Optional[date] = None


class SubscriptionFilters(BaseModel):
    status: Optional[SubscriptionStatus] = None
    sort_by: Optional[str] = None
    sort_order: Literal["asc", "desc"] = "asc"

    @field_validator("status", mode="before")
    @classmethod
    def _status_upper(cls, value: object) -> object:
        return _upper_or_none(value)

    @field_validator("sort_order", mode="before")
    @classmethod
    def _order_lower(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "asc"
        return value.strip().lower() if isinstance(value, str) else value


class SubscriptionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    merchant_name: Optional[str] = Field(
        default=None, alias="name", min_length=1, max_length=200
    )
    amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    billing_cycle: Optional[BillingCycle] = None
    status: Optional[SubscriptionStatus] = None
    category: Optional[str] = Field(default=None, max_length=100)
    next_billing_date: Optional[date] = None

    @field_validator("status", "billing_cycle", "currency", mode="before")
    @classmethod
    def _enum_upper(cls, value: object) -> object:
        return _upper_or_none(value)


class LinkConnectionIn(BaseModel):
    access_token: str = Field(..., min_length=1)
    item_id: Optional[str] = Field(default=None, max_length=128)
    institution: Optional[str] = Field(default=None, max_length=120)


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_stream_id: Optional[str]
    name: str
    merchant_name: str
    amount: Decimal
    currency: str
    billing_cycle: str
    status: str
    category: Optional[str]
    confidence: float
    detection_method: str
    next_billing_date: Optional[date]
    created_at: datetime
    updated_at: datetime

    @field_validator("billing_cycle", "status", mode="before")
    @classmethod
    def _display_lower(cls, value: object) -> object:
        if isinstance(value, (BillingCycle, SubscriptionStatus)):
            return value.value.lower()
        return value


class HighestSubscriptionOut(BaseModel):
    name: str
    amount: Decimal


class StatsOut(BaseModel):
    total_monthly_cost: Decimal
    yearly_total: Decimal
    active_count: int
    total_count: int
    highest_subscription: Optional[HighestSubscriptionOut]
    by_category: dict[str, Decimal]
    by_cycle: dict[str, int]


class ReconcileOut(BaseModel):
    detected: int
