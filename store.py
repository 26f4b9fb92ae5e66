from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dedup import stream_key
from errors import PersistenceFailure
from models import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# sqlite3 raises OverflowError for integers beyond 64 bits without wrapping it.
STORE_ERRORS = (SQLAlchemyError, ArithmeticError)

SORTABLE_FIELDS = {
    "name": Subscription.merchant_name,
    "merchant_name": Subscription.merchant_name,
    "merchantName": Subscription.merchant_name,
    "amount": Subscription.amount_cents,
    "nextBillingDate": Subscription.next_billing_date,
    "next_billing_date": Subscription.next_billing_date,
    "status": Subscription.status,
    "category": Subscription.category,
    "billingCycle": Subscription.billing_cycle,
    "billing_cycle": Subscription.billing_cycle,
    "createdAt": Subscription.created_at,
    "created_at": Subscription.created_at,
}


class SubscriptionStore:
    """Persistence operations for subscriptions.

    Every write commits on success. On a database error the session is rolled
    back and ``PersistenceFailure`` is raised, so earlier committed writes in
    the same session are unaffected.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _fail(self, action: str, exc: Exception) -> PersistenceFailure:
        self.session.rollback()
        logger.warning(
            f"store_failure: action={action} error={exc.__class__.__name__}"
        )
        return PersistenceFailure(f"Could not {action} subscription")

    def _find_by_external_key(
        self, owner_id: str, key: str
    ) -> Optional[Subscription]:
        return self.session.scalar(
            select(Subscription).where(
                Subscription.owner_id == owner_id,
                Subscription.external_stream_id == key,
            )
        )

    def upsert_by_external_key(
        self,
        owner_id: str,
        key: str,
        create_fields: dict[str, object],
        update_fields: dict[str, object],
    ) -> Subscription:
        clean_key = stream_key(key)
        if clean_key is None:
            raise ValueError("External key is required for upsert")
        try:
            existing = self._find_by_external_key(owner_id, clean_key)
            if existing:
                for field, value in update_fields.items():
                    setattr(existing, field, value)
                self.session.commit()
                return existing

            sub = Subscription(
                owner_id=owner_id, external_stream_id=clean_key, **create_fields
            )
            self.session.add(sub)
            try:
                self.session.commit()
            except IntegrityError:
                # Lost an insert race on the unique key; apply the update instead.
                self.session.rollback()
                existing = self._find_by_external_key(owner_id, clean_key)
                if existing is None:
                    raise
                for field, value in update_fields.items():
                    setattr(existing, field, value)
                self.session.commit()
                return existing
            return sub
        except STORE_ERRORS as exc:
            raise self._fail("upsert", exc) from exc

    def find_by_owner_and_status(
        self,
        owner_id: str,
        status: Optional[SubscriptionStatus] = None,
        *,
        sort_by: Optional[str] = None,
        sort_order: str = "asc",
    ) -> Sequence[Subscription]:
        stmt = select(Subscription).where(Subscription.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Subscription.status == status)
        column = SORTABLE_FIELDS.get(sort_by or "")
        if column is not None:
            stmt = stmt.order_by(
                column.desc() if sort_order == "desc" else column.asc()
            )
        stmt = stmt.order_by(Subscription.created_at.asc(), Subscription.id.asc())
        try:
            return self.session.scalars(stmt).all()
        except STORE_ERRORS as exc:
            raise self._fail("list", exc) from exc

    def find_by_owner_and_id(
        self, owner_id: str, subscription_id: int
    ) -> Optional[Subscription]:
        try:
            sub = self.session.get(Subscription, subscription_id)
        except STORE_ERRORS as exc:
            raise self._fail("load", exc) from exc
        if not sub or sub.owner_id != owner_id:
            return None
        return sub

    def update(self, subscription_id: int, fields: dict[str, object]) -> Subscription:
        try:
            sub = self.session.get(Subscription, subscription_id)
            if sub is None:
                raise LookupError(f"Subscription {subscription_id} does not exist")
            for field, value in fields.items():
                setattr(sub, field, value)
            self.session.commit()
            self.session.refresh(sub)
        except STORE_ERRORS as exc:
            raise self._fail("update", exc) from exc
        return sub

    def delete(self, subscription_id: int) -> None:
        try:
            sub = self.session.get(Subscription, subscription_id)
            if sub is None:
                raise LookupError(f"Subscription {subscription_id} does not exist")
            self.session.delete(sub)
            self.session.commit()
        except STORE_ERRORS as exc:
            raise self._fail("delete", exc) from exc

    def delete_by_owner(self, owner_id: str) -> int:
        try:
            result = self.session.execute(
                delete(Subscription).where(Subscription.owner_id == owner_id)
            )
            self.session.commit()
        except STORE_ERRORS as exc:
            raise self._fail("delete", exc) from exc
        return int(result.rowcount or 0)

    def count_by_owner(self, owner_id: str) -> int:
        try:
            return int(
                self.session.execute(
                    select(func.count(Subscription.id)).where(
                        Subscription.owner_id == owner_id
                    )
                ).scalar_one()
            )
        except STORE_ERRORS as exc:
            raise self._fail("count", exc) from exc
