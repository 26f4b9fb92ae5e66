from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from errors import PersistenceFailure
from models import BillingCycle, Subscription, SubscriptionStatus
from schemas import AverageAmount, RawStream
from services import (
    ReconciliationService,
    StatsService,
    monthly_equivalent,
)
from store import SubscriptionStore


def make_session() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_sub(
    session: Session,
    merchant: str,
    amount: str,
    cycle: BillingCycle = BillingCycle.monthly,
    *,
    owner_id: str = "alice",
    status: SubscriptionStatus = SubscriptionStatus.active,
    category: str | None = None,
    stream_id: str | None = None,
    created_at: datetime | None = None,
) -> Subscription:
    sub = Subscription(
        owner_id=owner_id,
        external_stream_id=stream_id,
        merchant_name=merchant,
        currency="USD",
        billing_cycle=cycle,
        status=status,
        category=category,
    )
    sub.amount = Decimal(amount)
    if created_at is not None:
        sub.created_at = created_at
    session.add(sub)
    session.commit()
    return sub


def test_monthly_equivalent_by_cycle() -> None:
    assert monthly_equivalent(Decimal("30"), BillingCycle.quarterly) == Decimal("10")
    assert monthly_equivalent(Decimal("5"), BillingCycle.weekly) == Decimal("20")
    assert monthly_equivalent(Decimal("120"), BillingCycle.yearly) == Decimal("10")
    assert monthly_equivalent(Decimal("15.99"), BillingCycle.monthly) == Decimal(
        "15.99"
    )


def test_stats_project_mixed_cycles() -> None:
    session = make_session()
    add_sub(session, "Insurance", "30", BillingCycle.quarterly, stream_id="q")
    add_sub(session, "Coffee club", "5", BillingCycle.weekly, stream_id="w")
    add_sub(session, "Domain", "120", BillingCycle.yearly, stream_id="y")

    report = StatsService(session, "alice").compute()

    assert report.total_monthly_cost == Decimal("40.00")
    assert report.yearly_total == Decimal("480.00")
    assert report.by_cycle == {"WEEKLY": 1, "MONTHLY": 0, "QUARTERLY": 1, "YEARLY": 1}
    assert report.active_count == 3


def test_sample_scenario_after_reconcile() -> None:
    session = make_session()
    ReconciliationService(session, "alice").reconcile(
        [
            RawStream(
                stream_id="s1",
                description="Netflix",
                frequency="MONTHLY",
                average_amount=AverageAmount(
                    amount=Decimal("-15.99"), currency_code="USD"
                ),
                is_active=True,
            )
        ]
    )

    report = StatsService(session, "alice").compute()

    assert report.total_monthly_cost == Decimal("15.99")
    assert report.yearly_total == Decimal("191.88")
    assert report.by_cycle["MONTHLY"] == 1
    assert report.by_category == {"Uncategorized": Decimal("15.99")}
    assert report.highest_subscription.name == "Netflix"
    assert report.highest_subscription.amount == Decimal("15.99")


def test_yearly_total_is_projected_before_rounding() -> None:
    session = make_session()
    add_sub(session, "Storage", "10", BillingCycle.quarterly, stream_id="q")

    report = StatsService(session, "alice").compute()

    assert report.total_monthly_cost == Decimal("3.33")
    assert report.yearly_total == Decimal("40.00")


def test_highest_subscription_uses_raw_amount() -> None:
    session = make_session()
    add_sub(session, "A", "12", stream_id="a")
    add_sub(session, "B", "45", stream_id="b")
    add_sub(session, "C", "7", stream_id="c")
    add_sub(session, "D", "300", BillingCycle.yearly, stream_id="d")

    report = StatsService(session, "alice").compute()

    assert report.highest_subscription.name == "D"
    assert report.highest_subscription.amount == Decimal("300.00")


def test_highest_subscription_among_monthly() -> None:
    session = make_session()
    for name, amount in (("A", "12"), ("B", "45"), ("C", "7")):
        add_sub(session, name, amount, stream_id=name)

    report = StatsService(session, "alice").compute()

    assert report.highest_subscription.amount == Decimal("45.00")


def test_highest_subscription_tie_keeps_first_encountered() -> None:
    session = make_session()
    add_sub(session, "First", "20", stream_id="1", created_at=datetime(2025, 1, 1))
    add_sub(session, "Second", "20", stream_id="2", created_at=datetime(2025, 2, 1))

    report = StatsService(session, "alice").compute()

    assert report.highest_subscription.name == "First"


def test_counts_and_categories() -> None:
    session = make_session()
    add_sub(session, "Netflix", "15", category="Streaming", stream_id="1")
    add_sub(session, "Hulu", "5", category="Streaming", stream_id="2")
    add_sub(session, "Gym", "40", stream_id="3")
    add_sub(
        session,
        "Old",
        "99",
        status=SubscriptionStatus.cancelled,
        stream_id="4",
    )
    add_sub(session, "Other owner", "1", owner_id="bob", stream_id="5")

    report = StatsService(session, "alice").compute()

    assert report.active_count == 3
    assert report.total_count == 4
    assert report.by_category == {
        "Streaming": Decimal("20.00"),
        "Uncategorized": Decimal("40.00"),
    }
    assert report.total_monthly_cost == Decimal("60.00")


def test_legacy_duplicates_are_collapsed_keeping_newest() -> None:
    session = make_session()
    add_sub(
        session,
        "Gym",
        "25",
        category="Old category",
        created_at=datetime(2024, 1, 1),
    )
    add_sub(
        session,
        "Gym",
        "25",
        category="Fitness",
        created_at=datetime(2025, 1, 1),
    )

    report = StatsService(session, "alice").compute()

    assert report.active_count == 1
    assert report.total_count == 2
    assert report.by_category == {"Fitness": Decimal("25.00")}


def test_empty_stats() -> None:
    session = make_session()

    report = StatsService(session, "alice").compute()

    assert report.total_monthly_cost == Decimal("0.00")
    assert report.yearly_total == Decimal("0.00")
    assert report.highest_subscription is None
    assert report.by_category == {}
    assert report.active_count == 0
    assert report.total_count == 0


def test_stats_are_deterministic() -> None:
    session = make_session()
    add_sub(session, "A", "12.34", BillingCycle.quarterly, stream_id="a")
    add_sub(session, "B", "7.77", BillingCycle.weekly, category="x", stream_id="b")

    service = StatsService(session, "alice")

    assert service.compute() == service.compute()


def test_stats_do_not_swallow_store_failures() -> None:
    class BrokenStore(SubscriptionStore):
        def count_by_owner(self, owner_id: str) -> int:
            raise PersistenceFailure("Could not count subscription")

    session = make_session()
    add_sub(session, "A", "1", stream_id="a")

    with pytest.raises(PersistenceFailure):
        StatsService(session, "alice", store=BrokenStore(session)).compute()
