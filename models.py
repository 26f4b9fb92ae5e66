from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from money import from_cents, to_cents


class BillingCycle(str, Enum):
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    quarterly = "QUARTERLY"
    yearly = "YEARLY"


class SubscriptionStatus(str, Enum):
    active = "ACTIVE"
    inactive = "INACTIVE"
    cancelled = "CANCELLED"
    price_changed = "PRICE_CHANGED"
    trial = "TRIAL"


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


BILLING_CYCLE_ENUM = SAEnum(
    BillingCycle, name="billingcycle", values_callable=_values
)
SUBSCRIPTION_STATUS_ENUM = SAEnum(
    SubscriptionStatus, name="subscriptionstatus", values_callable=_values
)

DETECTION_PROVIDER_RECURRING = "provider_recurring"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_stream_id: Mapped[Optional[str]] = mapped_column(String(128))
    merchant_name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        BILLING_CYCLE_ENUM, nullable=False, default=BillingCycle.monthly
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SUBSCRIPTION_STATUS_ENUM, nullable=False, default=SubscriptionStatus.active
    )
    category: Mapped[Optional[str]] = mapped_column(String(100))
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    detection_method: Mapped[str] = mapped_column(
        String(40), nullable=False, default=DETECTION_PROVIDER_RECURRING
    )
    next_billing_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "external_stream_id", name="uq_subscription_owner_stream"
        ),
        Index("ix_subscriptions_owner_status", "owner_id", "status"),
        CheckConstraint("amount_cents >= 0", name="ck_subscription_amount_positive"),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_subscription_confidence"
        ),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents or 0)

    @amount.setter
    def amount(self, value: Decimal) -> None:
        self.amount_cents = to_cents(value)

    @property
    def name(self) -> str:
        return self.merchant_name


class BankConnection(Base, TimestampMixin):
    __tablename__ = "bank_connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    item_id: Mapped[Optional[str]] = mapped_column(String(128))
    institution: Mapped[Optional[str]] = mapped_column(String(120))
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        UniqueConstraint("owner_id", name="uq_bank_connection_owner"),
    )
