from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .base import ListingFeed, Record, Subscription, FeedEvent, apply_descriptor

log = logging.getLogger(__name__)


class InMemoryFeed(ListingFeed):
    """Push-style feed: every ``publish`` is delivered to all live subscribers.

    New subscribers immediately receive the current snapshot.
    """

    name = "memory"

    def __init__(self, records: Optional[Iterable[Record]] = None) -> None:
        super().__init__()
        self._records: List[Record] = list(records or [])

    @property
    def records(self) -> List[Record]:
        return list(self._records)

    def _on_subscribe(self, sub: Subscription) -> None:
        sub.deliver(FeedEvent(records=apply_descriptor(self._records, sub.query)))

    def publish(self, records: Iterable[Record]) -> None:
        self._records = list(records)
        self._broadcast(self._records)

    def fail(self, error: BaseException) -> None:
        log.warning("[%s] stream failed: %s", self.name, error)
        self._broadcast_error(error)
