from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..schema import ListingQuery

log = logging.getLogger(__name__)

Record = dict

_DATETIME = TypeAdapter(datetime)
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class FeedEvent:
    """One delivery from a feed: either a full snapshot of records or an error."""

    records: Optional[List[Record]] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


FeedCallback = Callable[[FeedEvent], None]


class Subscription:
    """Handle returned by ``ListingFeed.subscribe``. ``unsubscribe`` is idempotent."""

    def __init__(self, feed: ListingFeed, query: ListingQuery, callback: FeedCallback) -> None:
        self.feed = feed
        self.query = query
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed._detach(self)

    def deliver(self, event: FeedEvent) -> None:
        if self.active:
            self.callback(event)


def _created_key(record: Record) -> datetime:
    raw = record.get("createdAt", record.get("created_at"))
    if raw is None:
        return _OLDEST
    try:
        value = _DATETIME.validate_python(raw)
    except PydanticValidationError:
        return _OLDEST
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _value(raw: Any) -> Any:
    return getattr(raw, "value", raw)


def apply_descriptor(records: List[Record], query: ListingQuery) -> List[Record]:
    """Evaluate the backend side of a query: equality/`in` filters, newest first, capped.

    A query naming ``listing_id`` selects that one record whatever its status.
    """
    if query.listing_id is not None:
        return [r for r in records if r.get("id") == query.listing_id][:1]

    status = _value(query.status)
    categories = {_value(c) for c in query.categories}
    availability = {_value(a) for a in query.availability}

    out = [r for r in records if r.get("status", "active") == status]
    if categories:
        out = [r for r in out if r.get("category") in categories]
    if availability:
        out = [r for r in out if r.get("availability") in availability]
    out.sort(key=_created_key, reverse=True)
    return out[: query.limit]


class ListingFeed(ABC):
    """A live query service for listing records."""

    name: str

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    def subscribe(self, query: ListingQuery, callback: FeedCallback) -> Subscription:
        sub = Subscription(self, query, callback)
        self._subscriptions.append(sub)
        log.debug("[%s] subscribed (%d live)", self.name, len(self._subscriptions))
        self._on_subscribe(sub)
        return sub

    def _on_subscribe(self, sub: Subscription) -> None:
        pass

    def _detach(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            log.debug("[%s] unsubscribed (%d live)", self.name, len(self._subscriptions))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _broadcast(self, records: List[Record]) -> None:
        for sub in list(self._subscriptions):
            sub.deliver(FeedEvent(records=apply_descriptor(records, sub.query)))

    def _broadcast_error(self, error: BaseException) -> None:
        # a failed stream is terminated; listeners must resubscribe
        for sub in list(self._subscriptions):
            sub.deliver(FeedEvent(error=error))
            sub.unsubscribe()


class PollingFeed(ListingFeed):
    """Feed backed by a snapshot source that is re-read on every ``poll()``."""

    @abstractmethod
    def _load(self) -> List[Record]:
        raise NotImplementedError

    def poll(self) -> int:
        """Load one snapshot and deliver it to every live subscriber.

        Returns the number of records loaded, or -1 when loading failed.
        """
        try:
            records = self._load()
        except Exception as exc:
            log.exception("[%s] Failed to load listings", self.name)
            self._broadcast_error(exc)
            return -1
        log.info("[%s] Got %d records", self.name, len(records))
        self._broadcast(records)
        return len(records)
