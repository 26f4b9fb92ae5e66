"""Duplicate collapsing for subscription records.

Two key policies are used:

* Primary key: the provider's stream id. During a reconciliation pass a
  ``StreamIdIndex`` remembers which stream ids were already handled so a
  repeated entry in the same payload is dropped.
* Fallback key: ``(merchant_name, amount)`` for stored records that have no
  stream id. Within such a group the most recently created record wins and
  ties keep the first one seen.

``dedupe_subscriptions`` applies both to a sequence of stored records and
returns the survivors in their original relative order, so the result only
depends on the input ordering.
"""

from __future__ import annotations

from datetime import datetime
from typing import Hashable, Iterable, Optional

from models import Subscription


def stream_key(value: Optional[str]) -> Optional[str]:
    clean = (value or "").strip()
    return clean or None


class StreamIdIndex:
    """Stream ids handled so far in one reconciliation pass."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def __contains__(self, stream_id: object) -> bool:
        return isinstance(stream_id, str) and stream_key(stream_id) in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def mark(self, stream_id: str) -> None:
        key = stream_key(stream_id)
        if key is None:
            raise ValueError("Cannot index an empty stream id")
        self._seen.add(key)


def _fallback_key(sub: Subscription) -> Hashable:
    return (sub.merchant_name, sub.amount_cents)


def _is_newer(candidate: Subscription, current: Subscription) -> bool:
    cand_at: Optional[datetime] = candidate.created_at
    curr_at: Optional[datetime] = current.created_at
    if cand_at is None or curr_at is None:
        return False
    return cand_at > curr_at


def dedupe_subscriptions(subscriptions: Iterable[Subscription]) -> list[Subscription]:
    seen_streams: set[str] = set()
    seen_ids: set[int] = set()
    winners: dict[Hashable, Subscription] = {}
    keep: list[Subscription] = []

    for sub in subscriptions:
        key = stream_key(sub.external_stream_id)
        if key is not None:
            if key in seen_streams:
                continue
            seen_streams.add(key)
            keep.append(sub)
            continue

        if sub.id is not None:
            if sub.id in seen_ids:
                continue
            seen_ids.add(sub.id)
        group = _fallback_key(sub)
        current = winners.get(group)
        if current is None or _is_newer(sub, current):
            winners[group] = sub
        keep.append(sub)

    retained = {id(sub) for sub in winners.values()}
    return [
        sub
        for sub in keep
        if stream_key(sub.external_stream_id) is not None or id(sub) in retained
    ]
