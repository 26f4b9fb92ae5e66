from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator, Mapping, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from dedup import StreamIdIndex, dedupe_subscriptions, stream_key
from errors import (
    InvalidInput,
    NotFound,
    PersistenceFailure,
    ReconciliationInProgress,
    UpstreamUnavailable,
)
from models import (
    DETECTION_PROVIDER_RECURRING,
    BankConnection,
    BillingCycle,
    Subscription,
    SubscriptionStatus,
)
from money import ZERO, quantize_money, to_cents
from normalization import (
    normalize_amount,
    normalize_currency,
    normalize_cycle,
    normalize_status,
)
from provider import RecurringStreamProvider
from schemas import LinkConnectionIn, RawStream, SubscriptionFilters, SubscriptionPatch
from store import SORTABLE_FIELDS, SubscriptionStore

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
UNKNOWN_MERCHANT = "Unknown merchant"


class _OwnerLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class OwnerLocks:
    """One lock per owner so reconciliation passes never interleave.

    Entries are reference counted and dropped once no pass holds or waits
    on them, so the map only contains owners with work in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _OwnerLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, owner_id: str) -> _OwnerLock:
        with self._guard:
            entry = self._locks.get(owner_id)
            if entry is None:
                entry = _OwnerLock()
                self._locks[owner_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, owner_id: str, entry: _OwnerLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[owner_id]

    @contextmanager
    def hold(self, owner_id: str, timeout: float) -> Iterator[None]:
        entry = self._checkout(owner_id)
        try:
            if not entry.lock.acquire(timeout=timeout):
                raise ReconciliationInProgress(
                    f"Reconciliation already running for owner {owner_id}"
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(owner_id, entry)


owner_locks = OwnerLocks()


@dataclass(frozen=True)
class ReconcileResult:
    detected: int
    received: int = 0
    duplicates: int = 0
    failed: int = 0


class ReconciliationService:
    def __init__(
        self,
        session: Session,
        owner_id: str,
        *,
        store: Optional[SubscriptionStore] = None,
        locks: Optional[OwnerLocks] = None,
    ) -> None:
        self.session = session
        self.owner_id = owner_id
        self.store = store or SubscriptionStore(session)
        self.locks = locks or owner_locks

    @staticmethod
    def _fields_for(
        stream: RawStream,
    ) -> tuple[dict[str, object], dict[str, object]]:
        amount_cents = to_cents(normalize_amount(stream.average_amount.amount))
        status = normalize_status(stream.is_active)
        create_fields: dict[str, object] = {
            "merchant_name": stream.description.strip() or UNKNOWN_MERCHANT,
            "amount_cents": amount_cents,
            "currency": normalize_currency(stream.average_amount.currency_code),
            "billing_cycle": normalize_cycle(stream.frequency),
            "status": status,
            "category": (stream.category or "").strip() or None,
            "confidence": 1.0,
            "detection_method": DETECTION_PROVIDER_RECURRING,
            "next_billing_date": stream.predicted_next_date,
        }
        # Descriptive fields are left alone on update to keep manual edits.
        update_fields: dict[str, object] = {
            "amount_cents": amount_cents,
            "status": status,
        }
        return create_fields, update_fields

    def _reconcile(self, streams: Iterable[RawStream]) -> ReconcileResult:
        index = StreamIdIndex()
        received = 0
        duplicates = 0
        failed = 0

        for stream in streams:
            received += 1
            key = stream_key(stream.stream_id)
            if key is None:
                failed += 1
                logger.warning(
                    f"reconcile_skip: owner={self.owner_id} reason=missing_stream_id"
                )
                continue
            if key in index:
                duplicates += 1
                logger.debug(
                    f"reconcile_duplicate: owner={self.owner_id} stream_id={key}"
                )
                continue

            try:
                create_fields, update_fields = self._fields_for(stream)
                self.store.upsert_by_external_key(
                    self.owner_id, key, create_fields, update_fields
                )
            except (ValueError, PersistenceFailure) as exc:
                failed += 1
                logger.warning(
                    f"reconcile_item_failed: owner={self.owner_id} stream_id={key} "
                    f"error={exc}"
                )
                continue
            index.mark(key)

        result = ReconcileResult(
            detected=len(index),
            received=received,
            duplicates=duplicates,
            failed=failed,
        )
        logger.info(
            f"reconcile: owner={self.owner_id} detected={result.detected} "
            f"received={received} duplicates={duplicates} failed={failed}"
        )
        return result

    def reconcile(self, streams: Iterable[RawStream]) -> ReconcileResult:
        timeout = get_settings().reconcile_lock_timeout_secs
        with self.locks.hold(self.owner_id, timeout):
            return self._reconcile(streams)

    def detect(self, provider: RecurringStreamProvider) -> ReconcileResult:
        timeout = get_settings().reconcile_lock_timeout_secs
        with self.locks.hold(self.owner_id, timeout):
            connection = ConnectionService(self.session, self.owner_id).require()
            try:
                streams = provider.fetch_recurring_streams(connection.access_token)
            except UpstreamUnavailable:
                raise
            except Exception as exc:
                raise UpstreamUnavailable("Provider fetch failed") from exc

            result = self._reconcile(streams)

            try:
                connection.last_sync_at = datetime.utcnow()
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise PersistenceFailure("Could not record sync time") from exc
            return result


def monthly_equivalent(amount: Decimal, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.weekly:
        return amount * 4
    if cycle == BillingCycle.quarterly:
        return amount / 3
    if cycle == BillingCycle.yearly:
        return amount / 12
    return amount


@dataclass(frozen=True)
class HighestSubscription:
    name: str
    amount: Decimal


@dataclass(frozen=True)
class StatsReport:
    total_monthly_cost: Decimal
    yearly_total: Decimal
    active_count: int
    total_count: int
    highest_subscription: Optional[HighestSubscription]
    by_category: dict[str, Decimal] = field(default_factory=dict)
    by_cycle: dict[str, int] = field(default_factory=dict)


class StatsService:
    def __init__(
        self,
        session: Session,
        owner_id: str,
        *,
        store: Optional[SubscriptionStore] = None,
    ) -> None:
        self.session = session
        self.owner_id = owner_id
        self.store = store or SubscriptionStore(session)

    def compute(self) -> StatsReport:
        active = dedupe_subscriptions(
            self.store.find_by_owner_and_status(
                self.owner_id, SubscriptionStatus.active
            )
        )

        total = ZERO
        by_category: dict[str, Decimal] = {}
        by_cycle: dict[str, int] = {cycle.value: 0 for cycle in BillingCycle}
        highest: Optional[Subscription] = None

        for sub in active:
            monthly = monthly_equivalent(sub.amount, sub.billing_cycle)
            total += monthly
            by_cycle[sub.billing_cycle.value] += 1

            category = (sub.category or "").strip() or UNCATEGORIZED
            by_category[category] = by_category.get(category, ZERO) + monthly

            if highest is None or sub.amount_cents > highest.amount_cents:
                highest = sub

        report = StatsReport(
            total_monthly_cost=quantize_money(total),
            yearly_total=quantize_money(total * 12),
            active_count=len(active),
            total_count=self.store.count_by_owner(self.owner_id),
            highest_subscription=(
                HighestSubscription(name=highest.merchant_name, amount=highest.amount)
                if highest
                else None
            ),
            by_category={
                name: quantize_money(amount) for name, amount in by_category.items()
            },
            by_cycle=by_cycle,
        )
        logger.debug(
            f"stats: owner={self.owner_id} active={report.active_count} "
            f"total={report.total_count} monthly={report.total_monthly_cost}"
        )
        return report


class SubscriptionService:
    def __init__(
        self,
        session: Session,
        owner_id: str,
        *,
        store: Optional[SubscriptionStore] = None,
    ) -> None:
        self.session = session
        self.owner_id = owner_id
        self.store = store or SubscriptionStore(session)

    def list(
        self,
        filters: Union[SubscriptionFilters, Mapping[str, object], None] = None,
    ) -> list[Subscription]:
        if not isinstance(filters, SubscriptionFilters):
            try:
                filters = SubscriptionFilters.model_validate(dict(filters or {}))
            except ValidationError as exc:
                raise InvalidInput(f"Invalid filter: {exc}") from exc

        sort_by = filters.sort_by if filters.sort_by in SORTABLE_FIELDS else None
        if filters.sort_by and sort_by is None:
            logger.debug(f"list_subscriptions: ignoring sort_by={filters.sort_by}")

        subscriptions = self.store.find_by_owner_and_status(
            self.owner_id,
            filters.status,
            sort_by=sort_by,
            sort_order=filters.sort_order,
        )
        return dedupe_subscriptions(subscriptions)

    def get(self, subscription_id: int) -> Subscription:
        sub = self.store.find_by_owner_and_id(self.owner_id, subscription_id)
        if not sub:
            raise NotFound("Subscription not found")
        return sub

    def update(
        self,
        subscription_id: int,
        patch: Union[SubscriptionPatch, Mapping[str, object]],
    ) -> Subscription:
        sub = self.get(subscription_id)
        if not isinstance(patch, SubscriptionPatch):
            try:
                patch = SubscriptionPatch.model_validate(dict(patch))
            except ValidationError as exc:
                raise InvalidInput(f"Invalid update: {exc}") from exc

        fields = patch.model_dump(exclude_unset=True)
        for required in ("merchant_name", "amount", "currency", "billing_cycle", "status"):
            if required in fields and fields[required] is None:
                raise InvalidInput(f"{required} cannot be empty")

        if "merchant_name" in fields:
            fields["merchant_name"] = fields["merchant_name"].strip()
            if not fields["merchant_name"]:
                raise InvalidInput("merchant_name cannot be empty")
        if "amount" in fields:
            try:
                fields["amount_cents"] = to_cents(fields.pop("amount"))
            except ValueError as exc:
                raise InvalidInput(str(exc)) from exc
        if "category" in fields:
            fields["category"] = (fields["category"] or "").strip() or None

        return self.store.update(sub.id, fields)

    def delete(self, subscription_id: int) -> dict[str, object]:
        sub = self.get(subscription_id)
        self.store.delete(sub.id)
        return {"success": True}


class ConnectionService:
    def __init__(self, session: Session, owner_id: str) -> None:
        self.session = session
        self.owner_id = owner_id

    def get(self) -> Optional[BankConnection]:
        return self.session.scalar(
            select(BankConnection).where(BankConnection.owner_id == self.owner_id)
        )

    def require(self) -> BankConnection:
        connection = self.get()
        if not connection or not connection.access_token:
            raise UpstreamUnavailable("No bank account connected")
        return connection

    def link(self, data: LinkConnectionIn) -> BankConnection:
        existing = self.get()
        try:
            if existing:
                existing.access_token = data.access_token
                existing.item_id = data.item_id
                existing.institution = data.institution
                self.session.commit()
                self.session.refresh(existing)
                return existing

            connection = BankConnection(
                owner_id=self.owner_id,
                access_token=data.access_token,
                item_id=data.item_id,
                institution=data.institution,
            )
            self.session.add(connection)
            self.session.commit()
            self.session.refresh(connection)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure("Could not store bank connection") from exc
        logger.info(f"connection_linked: owner={self.owner_id}")
        return connection

    def disconnect(
        self, provider: Optional[RecurringStreamProvider] = None
    ) -> dict[str, object]:
        connection = self.get()
        if not connection:
            raise NotFound("No bank account connected")

        if provider is not None:
            try:
                provider.remove_item(connection.access_token)
            except UpstreamUnavailable as exc:
                logger.warning(
                    f"connection_remove_failed: owner={self.owner_id} error={exc}"
                )

        # Both deletes land in the single commit issued by the store.
        self.session.delete(connection)
        removed = SubscriptionStore(self.session).delete_by_owner(self.owner_id)
        logger.info(f"connection_removed: owner={self.owner_id} subscriptions={removed}")
        return {"success": True, "removed": removed}


def connected_owner_ids(session: Session) -> list[str]:
    stmt = select(BankConnection.owner_id).order_by(BankConnection.owner_id)
    return list(session.scalars(stmt).all())
