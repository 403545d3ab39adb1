"""Live listing synchronization.

``ListingSync`` owns one feed subscription at a time. Every snapshot the feed
delivers is converted into ``Listing`` values, narrowed by viewport, distance
and free-text query, and published whole to a single observer callback.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import GeometryError, SubscriptionError, ValidationError
from .feeds.base import FeedEvent, ListingFeed, Record, Subscription
from .formatting import format_distance, format_expiry, format_time_left
from .geo import distance_meters, in_viewport
from .schema import Coordinates, Listing, ListingQuery, ListingRecord, ViewportBounds, utcnow

log = logging.getLogger(__name__)

URGENT_WINDOW_S = 2 * 3600
MIN_QUERY_LENGTH = 2


@dataclass(frozen=True)
class SyncResult:
    listings: List[Listing] = field(default_factory=list)
    error: Optional[SubscriptionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


SyncObserver = Callable[[SyncResult], None]


def validate_search_query(query: Optional[str]) -> str:
    """Return the trimmed query; reject one-character queries."""
    q = (query or "").strip()
    if 0 < len(q) < MIN_QUERY_LENGTH:
        raise ValidationError(
            f"Search query must be at least {MIN_QUERY_LENGTH} characters long."
        )
    return q


def is_urgent(seconds_left: float) -> bool:
    return 0 < seconds_left <= URGENT_WINDOW_S


def listing_from_record(
    record: Record | ListingRecord,
    user_location: Optional[Coordinates] = None,
    now: Optional[datetime] = None,
) -> Listing:
    """Build a ``Listing`` from a raw feed record.

    Raises ``GeometryError`` for out-of-range coordinates and pydantic's
    ``ValidationError`` for structurally malformed records.
    """
    now = now or utcnow()
    rec = record if isinstance(record, ListingRecord) else ListingRecord.model_validate(record)
    coords = Coordinates(latitude=rec.location.latitude, longitude=rec.location.longitude)

    distance_m: Optional[float] = None
    if user_location is not None:
        distance_m = distance_meters(user_location, coords)

    seconds_left = (rec.expires_at - now).total_seconds()

    return Listing(
        id=rec.id,
        title=rec.title,
        description=rec.description,
        category=rec.category,
        availability=rec.availability,
        coordinates=coords,
        address=rec.address,
        provider=rec.provider,
        images=rec.images,
        quantity=rec.quantity,
        created_at=rec.created_at,
        expires_at=rec.expires_at,
        rating=rec.rating,
        review_count=rec.review_count,
        pickup_instructions=rec.pickup_instructions,
        distance_m=distance_m,
        distance_label=format_distance(distance_m) if distance_m is not None else None,
        seconds_left=seconds_left,
        time_left=format_time_left(seconds_left),
        expires_label=format_expiry(seconds_left),
        is_urgent=is_urgent(seconds_left),
    )


def matches_text(listing: Listing, query: str) -> bool:
    q = query.lower()
    return (
        q in listing.title.lower()
        or q in listing.description.lower()
        or q in listing.provider.name.lower()
        or q in listing.category.value
    )


def narrow(
    listings: List[Listing],
    query: ListingQuery,
    viewport: Optional[ViewportBounds] = None,
) -> List[Listing]:
    out = listings
    if viewport is not None:
        out = [l for l in out if in_viewport(l.coordinates, viewport)]
    if query.max_distance_km is not None and query.user_location is not None:
        out = [
            l for l in out
            if l.distance_km is not None and l.distance_km <= query.max_distance_km
        ]
    text = (query.search_query or "").strip()
    if text:
        out = [l for l in out if matches_text(l, text)]
    return out


class ListingSync:
    """Keeps a live, filtered ``Listing`` list in step with a feed.

    A callback that arrives from a subscription which has already been torn
    down is dropped.
    """

    def __init__(
        self,
        feed: ListingFeed,
        query: Optional[ListingQuery] = None,
        viewport: Optional[ViewportBounds] = None,
        observer: Optional[SyncObserver] = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        query = query or ListingQuery()
        validate_search_query(query.search_query)
        self.feed = feed
        self.observer = observer
        self.enabled = enabled
        self.clock = clock
        self._query = query
        self._viewport = viewport
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._listings: List[Listing] = []
        self._error: Optional[SubscriptionError] = None
        self._loading = False
        self.rejected = 0

    # --- state ---

    @property
    def query(self) -> ListingQuery:
        return self._query

    @property
    def viewport(self) -> Optional[ViewportBounds]:
        return self._viewport

    @property
    def listings(self) -> List[Listing]:
        return list(self._listings)

    @property
    def error(self) -> Optional[SubscriptionError]:
        return self._error

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    # --- lifecycle ---

    def start(self) -> None:
        self.stop()
        if not self.enabled:
            log.debug("Listing sync disabled, not subscribing")
            return

        self._generation += 1
        generation = self._generation
        self._loading = True
        self._error = None

        def _on_event(event: FeedEvent) -> None:
            self._handle(generation, event)

        try:
            self._subscription = self.feed.subscribe(self._query, _on_event)
        except Exception as exc:
            log.exception("Failed to subscribe to %s feed", self.feed.name)
            self._fail(SubscriptionError(f"subscribe failed: {exc}", cause=exc))

    def stop(self) -> None:
        # bump first so callbacks racing the teardown are ignored
        self._generation += 1
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def refresh(self) -> None:
        self.start()

    def update_query(self, **changes) -> ListingQuery:
        """Replace fields of the query descriptor and resubscribe."""
        if "search_query" in changes:
            validate_search_query(changes["search_query"])
        self._query = ListingQuery.model_validate({**self._query.model_dump(), **changes})
        self.start()
        return self._query

    def update_viewport(self, viewport: Optional[ViewportBounds]) -> None:
        self._viewport = viewport
        self.start()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        self.start()

    # --- feed callbacks ---

    def _handle(self, generation: int, event: FeedEvent) -> None:
        if generation != self._generation:
            log.debug("Dropping callback from a torn-down subscription")
            return
        if event.error is not None:
            # the feed ends the stream after an error
            self._subscription = None
            self._fail(SubscriptionError(f"listing stream failed: {event.error}", cause=event.error))
            return
        self._publish(self._convert(event.records or []))

    def _convert(self, records: List[Record]) -> List[Listing]:
        now = self.clock()
        listings: List[Listing] = []
        for record in records:
            try:
                listings.append(listing_from_record(record, self._query.user_location, now))
            except (GeometryError, PydanticValidationError) as exc:
                self.rejected += 1
                log.warning("Rejected listing record %s: %s", record.get("id", "?"), exc)
        return narrow(listings, self._query, self._viewport)

    def _publish(self, listings: List[Listing]) -> None:
        self._listings = listings
        self._loading = False
        self._error = None
        log.info("Listings updated: %d", len(listings))
        if self.observer is not None:
            self.observer(SyncResult(listings=list(listings)))

    def _fail(self, error: SubscriptionError) -> None:
        self._error = error
        self._loading = False
        log.error("Real-time listings error: %s", error)
        if self.observer is not None:
            self.observer(SyncResult(listings=list(self._listings), error=error))


@dataclass(frozen=True)
class WatchResult:
    listing: Optional[Listing] = None
    error: Optional[SubscriptionError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


WatchObserver = Callable[[WatchResult], None]


class ListingWatch:
    """Follows one listing by id.

    Publishes ``None`` when the listing is missing from the feed or can no
    longer be converted. The listing is delivered whatever its status, so a
    watcher sees it become reserved.
    """

    def __init__(
        self,
        feed: ListingFeed,
        listing_id: Optional[str] = None,
        user_location: Optional[Coordinates | tuple[float, float]] = None,
        observer: Optional[WatchObserver] = None,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.feed = feed
        self.observer = observer
        self.enabled = enabled
        self.clock = clock
        self._query = ListingQuery(listing_id=listing_id, user_location=user_location)
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._listing: Optional[Listing] = None
        self._error: Optional[SubscriptionError] = None
        self._loading = False

    @property
    def listing_id(self) -> Optional[str]:
        return self._query.listing_id

    @property
    def listing(self) -> Optional[Listing]:
        return self._listing

    @property
    def error(self) -> Optional[SubscriptionError]:
        return self._error

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        self.stop()
        if not self.enabled or not self.listing_id:
            return

        self._generation += 1
        generation = self._generation
        self._loading = True
        self._error = None

        def _on_event(event: FeedEvent) -> None:
            self._handle(generation, event)

        try:
            self._subscription = self.feed.subscribe(self._query, _on_event)
        except Exception as exc:
            log.exception("Failed to watch listing %s", self.listing_id)
            self._fail(SubscriptionError(f"subscribe failed: {exc}", cause=exc))

    def stop(self) -> None:
        self._generation += 1
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def refresh(self) -> None:
        self.start()

    def watch(self, listing_id: Optional[str]) -> None:
        """Switch to another listing; ``None`` stops watching."""
        self._query = self._query.model_copy(update={"listing_id": listing_id})
        self._listing = None
        self.start()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        self.start()

    def _handle(self, generation: int, event: FeedEvent) -> None:
        if generation != self._generation:
            return
        if event.error is not None:
            self._subscription = None
            self._fail(SubscriptionError(f"listing watch failed: {event.error}", cause=event.error))
            return
        record = next((r for r in event.records or [] if r.get("id") == self.listing_id), None)
        self._publish(self._convert(record))

    def _convert(self, record: Optional[Record]) -> Optional[Listing]:
        if record is None:
            return None
        try:
            return listing_from_record(record, self._query.user_location, self.clock())
        except (GeometryError, PydanticValidationError) as exc:
            log.warning("Watched listing %s is unreadable: %s", self.listing_id, exc)
            return None

    def _publish(self, listing: Optional[Listing]) -> None:
        self._listing = listing
        self._loading = False
        self._error = None
        log.debug("Listing %s updated (exists=%s)", self.listing_id, listing is not None)
        if self.observer is not None:
            self.observer(WatchResult(listing=listing))

    def _fail(self, error: SubscriptionError) -> None:
        self._error = error
        self._loading = False
        log.error("Real-time listing error: %s", error)
        if self.observer is not None:
            self.observer(WatchResult(listing=self._listing, error=error))
